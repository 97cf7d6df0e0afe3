"""
Unit tests for target ranking and the mechanism-thread hypothesis.
"""

import asyncio
import json
from unittest.mock import AsyncMock, Mock

import pytest

from targetgraph.core.config import Config
from targetgraph.core.exceptions import DatabaseUnavailableError, SchemaValidationError
from targetgraph.core.ranking import (
    MAX_RANKED,
    RankingEngine,
    build_ranking_row,
    mechanism_thread_fallback,
    normalize_weights,
    rank_targets_fallback,
    score_row,
    scored_targets,
)
from targetgraph.models import RankingResponse, RankingWeights


def row(index, association=0.5, drugs=0, interactions=0, articles=0, trials=0, pathways=()):
    return build_ranking_row(
        f"target:ENSG{index:05d}",
        f"SYM{index}",
        association,
        pathways,
        drugs,
        interactions,
        articles,
        trials,
    )


def fake_llm(result=None, error=None):
    llm = Mock()
    llm.available = True
    llm.complete_json = AsyncMock(return_value=result, side_effect=error)
    return llm


@pytest.mark.unit
class TestWeights:

    def test_defaults_without_sliders(self):
        weights = normalize_weights()
        assert weights == RankingWeights()
        assert (weights.open_targets_evidence, weights.drug_actionability,
                weights.network_centrality, weights.literature_support) == (0.4, 0.25, 0.2, 0.15)

    def test_centred_sliders_match_defaults(self):
        weights = normalize_weights(50, 50)
        assert weights.open_targets_evidence == pytest.approx(0.4)
        assert weights.drug_actionability == pytest.approx(0.25)
        assert weights.network_centrality == pytest.approx(0.2)
        assert weights.literature_support == pytest.approx(0.15)

    @pytest.mark.parametrize("actionability,risk", [(0, 0), (100, 100), (100, 0), (20, 80)])
    def test_weights_sum_to_one(self, actionability, risk):
        weights = normalize_weights(actionability, risk)
        assert sum(weights.model_dump().values()) == pytest.approx(1.0, abs=1e-3)

    def test_actionability_favours_drugs(self):
        novel = normalize_weights(0, 50)
        actionable = normalize_weights(100, 50)
        assert actionable.drug_actionability > novel.drug_actionability
        assert actionable.network_centrality < novel.network_centrality


@pytest.mark.unit
class TestRows:

    def test_sub_factors_are_clamped(self):
        r = build_ranking_row("target:T1", "IL6", 1.7, ["R-HSA-1"], 20, 3, 8, 4)
        assert r.open_targets_evidence == 1.0
        assert r.drug_actionability == 1.0
        assert r.network_centrality == pytest.approx(3 / 8)
        assert r.literature_support == 1.0

    def test_score_is_bounded(self):
        maxed = build_ranking_row("target:T1", "IL6", 1.0, [], 99, 99, 99, 99)
        empty = build_ranking_row("target:T2", "IL7", 0.0, [], 0, 0, 0, 0)
        assert score_row(maxed, RankingWeights()) == pytest.approx(1.0)
        assert score_row(empty, RankingWeights()) == 0.0

    def test_score_never_exceeds_one_across_sliders(self):
        maxed = build_ranking_row("target:T1", "IL6", 1.0, [], 99, 99, 99, 99)
        worst = []
        for actionability in range(0, 101, 5):
            for risk in range(0, 101, 5):
                weights = normalize_weights(actionability, risk)
                score = score_row(maxed, weights)
                ranked = rank_targets_fallback([maxed], weights).ranked_targets[0].score
                if score > 1.0 or ranked > 1.0 or round(sum(weights.model_dump().values()), 4) != 1.0:
                    worst.append((actionability, risk, score, ranked))
        assert not worst


@pytest.mark.unit
class TestFallbackRanking:

    def test_orders_and_truncates(self):
        rows = [row(i, association=i / 30) for i in range(30)]
        ranking = rank_targets_fallback(rows)

        assert len(ranking.ranked_targets) == MAX_RANKED
        assert ranking.ranked_targets[0].symbol == "SYM29"
        assert [t.rank for t in ranking.ranked_targets] == list(range(1, MAX_RANKED + 1))
        scores = [t.score for t in ranking.ranked_targets]
        assert scores == sorted(scores, reverse=True)
        assert all(0.0 <= s <= 1.0 for s in scores)
        assert ranking.refined is False

    def test_summary(self):
        rows = [
            row(1, 0.9, drugs=4, pathways=["R-HSA-1", "R-HSA-2"]),
            row(2, 0.6, articles=2, pathways=["R-HSA-2", "R-HSA-3"]),
        ]
        ranking = rank_targets_fallback(rows)
        summary = ranking.system_summary
        assert summary.key_pathways == ["R-HSA-1", "R-HSA-2", "R-HSA-3"]
        assert summary.actionable_targets == ["SYM1", "SYM2"]
        assert summary.data_gaps

        first = ranking.ranked_targets[0]
        assert first.caveats == ["No literature snippets provided"]
        assert first.drug_hooks == ["4 compounds"]
        assert {ref.field for ref in first.evidence_refs} == {
            "open_targets_evidence", "drug_actionability", "network_centrality", "literature_support",
        }

    def test_empty_rows(self):
        ranking = rank_targets_fallback([])
        assert ranking.ranked_targets == []
        assert ranking.system_summary.actionable_targets == []


@pytest.mark.unit
class TestMechanismThread:

    def test_fallback_uses_top_target(self):
        rows = [row(1, 0.9, drugs=3), row(2, 0.4)]
        targets = scored_targets(rows, rank_targets_fallback(rows))
        thread = mechanism_thread_fallback("R-HSA-6785807", targets, ["no expression data"], output_count=1)

        assert [t.symbol for t in thread.recommended_targets] == ["SYM1"]
        assert thread.recommended_targets[0].pathway_id == "R-HSA-6785807"
        assert "SYM1" in thread.mechanism_thread.claim
        assert thread.mechanism_thread.caveats == ["no expression data"]
        assert len(thread.mechanism_thread.evidence_bullets) == 2

    def test_fallback_without_targets(self):
        thread = mechanism_thread_fallback("R-HSA-1", [], [])
        assert thread.recommended_targets == []
        assert "Insufficient evidence" in thread.mechanism_thread.claim


@pytest.mark.unit
class TestRankingEngine:

    def test_disabled_without_key(self):
        engine = RankingEngine.from_config(Config(env="testing"))
        assert not engine.enabled
        assert engine.ranking_timeout == 1.0

    def test_configured_key_enables_refinement(self):
        engine = RankingEngine.from_config(Config(env="testing", overrides={"openai_api_key": "sk-test"}))
        assert engine.llm is not None
        assert engine.enabled

    async def test_disabled_returns_fallback(self):
        rows = [row(1)]
        fallback = rank_targets_fallback(rows)
        assert await RankingEngine().rank_targets(rows, fallback) is fallback

    async def test_refined_ranking_is_accepted(self):
        rows = [row(1, 0.9), row(2, 0.2)]
        fallback = rank_targets_fallback(rows)
        reordered = fallback.model_copy(update={'ranked_targets': list(reversed(fallback.ranked_targets))})
        llm = fake_llm(result=reordered)

        refined = await RankingEngine(llm).rank_targets(rows, fallback)

        assert refined.refined is True
        assert refined.ranked_targets[0].id == rows[1].id
        schema_name, model_cls = llm.complete_json.await_args.args[:2]
        assert schema_name == "targetgraph_ranking"
        assert model_cls is RankingResponse
        assert json.loads(llm.complete_json.await_args.args[3].split("\n", 1)[1])[0]["id"] == rows[0].id

    async def test_unknown_ids_are_rejected(self):
        rows = [row(1)]
        fallback = rank_targets_fallback(rows)
        invented = fallback.ranked_targets[0].model_copy(update={'id': "target:ENSG_INVENTED"})
        llm = fake_llm(result=fallback.model_copy(update={'ranked_targets': [invented]}))

        assert await RankingEngine(llm).rank_targets(rows, fallback) is fallback

    @pytest.mark.parametrize("error", [
        SchemaValidationError("targetgraph_ranking", "bad"),
        DatabaseUnavailableError("openai", "rate-limit cooldown active", retry_after=5),
        asyncio.TimeoutError(),
    ])
    async def test_failures_keep_fallback(self, error):
        rows = [row(1)]
        fallback = rank_targets_fallback(rows)
        assert await RankingEngine(fake_llm(error=error)).rank_targets(rows, fallback) is fallback

    async def test_hypothesis_rejects_unknown_ids(self):
        rows = [row(1, 0.8)]
        targets = scored_targets(rows, rank_targets_fallback(rows))
        bogus = mechanism_thread_fallback("R-HSA-1", targets, [])
        bogus.recommended_targets[0].id = "target:ENSG_INVENTED"

        thread = await RankingEngine(fake_llm(result=bogus)).generate_mechanism_thread(
            "EFO_0000270", "R-HSA-1", targets, [],
        )
        assert thread.recommended_targets[0].id == rows[0].id
