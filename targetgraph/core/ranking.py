"""
Ranking Engine

Deterministic weighted-linear target scoring with an optional LLM refinement
pass, plus the mechanism-thread hypothesis built on top of the ranking.

The deterministic ranking never touches the network and is always produced
first; refinement results are accepted only when they validate against the
schema and mention no target id outside the input rows.
"""

import asyncio
import json
import logging
from typing import Dict, Iterable, List, Optional

from ..llm import StructuredLLMClient
from ..models.data_models import (
    EvidenceRef,
    HypothesisResponse,
    MechanismThread,
    RankedTarget,
    RankingResponse,
    RankingRow,
    RankingWeights,
    RecommendedTarget,
    ScoreBreakdown,
    ScoredTarget,
    SystemSummary,
)
from .exceptions import SchemaValidationError, TargetGraphException
from .graph_store import clamp, normalize_score

logger = logging.getLogger(__name__)

MAX_RANKED = 20
DATA_GAPS = [
    "Evidence derived from currently available MCP/API responses only",
    "No claim of efficacy or clinical recommendation",
]

RANKING_PROMPT = (
    "You rank disease targets from an evidence table. Use ONLY the provided fields and node IDs. "
    "If information is missing, explicitly state 'not provided'. Never claim efficacy or provide "
    "clinical recommendation. Output must satisfy the supplied JSON schema."
)
HYPOTHESIS_PROMPT = (
    "Generate a mechanism thread from provided hypothesis evidence. Use only supplied values and IDs. "
    "If a detail is not provided, write 'not provided'. No efficacy claims and no clinical "
    "recommendations. Output strict JSON schema."
)


# =============================================================================
# Weights & Rows
# =============================================================================

def normalize_weights(
    novelty_to_actionability: Optional[float] = None,
    risk_tolerance: Optional[float] = None,
) -> RankingWeights:
    """
    Map the two 0-100 sliders onto weights that sum to 1.

    Actionability shifts weight from network centrality to drug
    actionability; low risk tolerance favours association evidence and
    literature. Both sliders at 50 (or absent) give 0.4/0.25/0.2/0.15.
    """
    if novelty_to_actionability is None and risk_tolerance is None:
        return RankingWeights()

    actionability = clamp((50.0 if novelty_to_actionability is None else novelty_to_actionability) / 100.0)
    caution = 1.0 - clamp((50.0 if risk_tolerance is None else risk_tolerance) / 100.0)

    raw = {
        'open_targets_evidence': 0.25 + 0.3 * caution,
        'drug_actionability': 0.1 + 0.3 * actionability,
        'network_centrality': 0.1 + 0.2 * (1.0 - actionability),
        'literature_support': 0.05 + 0.2 * caution,
    }
    total = sum(raw.values())
    weights = {key: round(value / total, 4) for key, value in raw.items()}
    # Rounding residue goes to the evidence weight so the sum stays exactly 1
    weights['open_targets_evidence'] = round(
        1.0 - sum(value for key, value in weights.items() if key != 'open_targets_evidence'), 4
    )
    return RankingWeights(**weights)


def build_ranking_row(
    target_id: str,
    symbol: str,
    association_score: float,
    pathway_ids: Iterable[str],
    drug_count: int,
    interaction_count: int,
    article_count: int,
    trial_count: int,
) -> RankingRow:
    """Per-target evidence row with every sub-factor clamped to [0, 1]."""
    return RankingRow(
        id=target_id,
        symbol=symbol,
        pathway_ids=list(pathway_ids),
        open_targets_evidence=normalize_score(association_score),
        drug_actionability=min(1.0, drug_count / 8),
        network_centrality=min(1.0, interaction_count / 8),
        literature_support=min(1.0, (article_count + trial_count) / 10),
        drug_count=drug_count,
        interaction_count=interaction_count,
        article_count=article_count,
        trial_count=trial_count,
    )


def score_row(row: RankingRow, weights: RankingWeights) -> float:
    return clamp(
        weights.open_targets_evidence * clamp(row.open_targets_evidence)
        + weights.drug_actionability * clamp(row.drug_actionability)
        + weights.network_centrality * clamp(row.network_centrality)
        + weights.literature_support * clamp(row.literature_support)
    )


def breakdown(row: RankingRow) -> ScoreBreakdown:
    return ScoreBreakdown(
        open_targets_evidence=row.open_targets_evidence,
        drug_actionability=row.drug_actionability,
        network_centrality=row.network_centrality,
        literature_support=row.literature_support,
    )


# =============================================================================
# Deterministic Ranking
# =============================================================================

def rank_targets_fallback(rows: List[RankingRow], weights: Optional[RankingWeights] = None) -> RankingResponse:
    """Weighted-linear ranking; top 20, scores rounded to 4 places."""
    weights = weights or RankingWeights()
    scored = sorted(((score_row(row, weights), row) for row in rows), key=lambda item: item[0], reverse=True)
    scored = scored[:MAX_RANKED]

    ranked = []
    for index, (score, row) in enumerate(scored):
        ranked.append(RankedTarget(
            id=row.id,
            symbol=row.symbol,
            rank=index + 1,
            score=round(score, 4),
            reasons=[
                f"OpenTargets evidence {row.open_targets_evidence:.2f}",
                f"Drug actionability {row.drug_actionability:.2f} with {row.drug_count} linked drugs",
            ],
            caveats=[
                "No literature snippets provided" if row.article_count == 0
                else f"{row.article_count} article snippets provided"
            ],
            pathway_hooks=row.pathway_ids[:3],
            drug_hooks=[f"{row.drug_count} compounds"],
            interaction_hooks=[f"{row.interaction_count} interaction edges"],
            evidence_refs=[
                EvidenceRef(field='open_targets_evidence', value=row.open_targets_evidence),
                EvidenceRef(field='drug_actionability', value=row.drug_actionability),
                EvidenceRef(field='network_centrality', value=row.network_centrality),
                EvidenceRef(field='literature_support', value=row.literature_support),
            ],
        ))

    pathways = list(dict.fromkeys(pid for _, row in scored for pid in row.pathway_ids))
    return RankingResponse(
        ranked_targets=ranked,
        system_summary=SystemSummary(
            key_pathways=pathways[:8],
            actionable_targets=[row.symbol for _, row in scored[:5]],
            data_gaps=list(DATA_GAPS),
        ),
    )


def scored_targets(rows: List[RankingRow], ranking: RankingResponse) -> List[ScoredTarget]:
    """Ranking order joined back to the evidence rows."""
    by_id = {row.id: row for row in rows}
    return [
        ScoredTarget(id=item.id, symbol=item.symbol, score=item.score, score_breakdown=breakdown(by_id[item.id]))
        for item in ranking.ranked_targets
        if item.id in by_id
    ]


def mechanism_thread_fallback(
    pathway_id: str,
    targets: List[ScoredTarget],
    missing_inputs: List[str],
    output_count: int = 3,
) -> HypothesisResponse:
    if targets:
        claim = (
            f"Within pathway {pathway_id}, {targets[0].symbol} is the strongest mechanistic "
            "lever in this evidence table."
        )
    else:
        claim = f"Insufficient evidence rows to generate a pathway-specific claim for {pathway_id}."

    bullets = [
        f"{t.symbol}: OT={t.score_breakdown.open_targets_evidence:.2f}, "
        f"Drug={t.score_breakdown.drug_actionability:.2f}, "
        f"Centrality={t.score_breakdown.network_centrality:.2f}, "
        f"Literature={t.score_breakdown.literature_support:.2f}"
        for t in targets[:3]
    ]
    return HypothesisResponse(
        recommended_targets=[
            RecommendedTarget(
                id=t.id,
                symbol=t.symbol,
                score=round(t.score, 4),
                score_breakdown=t.score_breakdown,
                pathway_id=pathway_id,
            )
            for t in targets[:output_count]
        ],
        mechanism_thread=MechanismThread(
            claim=claim,
            evidence_bullets=bullets,
            counterfactuals=["Alternative same-pathway targets may change if missing inputs are added."],
            caveats=list(missing_inputs) or ["No explicit missing input flags were provided."],
            next_experiments=[
                "Confirm target perturbation effect in pathway-relevant cellular model.",
                "Compare prioritized targets with matched perturbation controls.",
            ],
        ),
        missing_inputs=list(missing_inputs),
    )


# =============================================================================
# LLM Refinement
# =============================================================================

class RankingEngine:
    """
    Optional LLM pass over the deterministic ranking and hypothesis.

    Any failure (no key, cooldown, timeout, bad schema, unknown ids) returns
    the deterministic result unchanged.
    """

    def __init__(self, llm: Optional[StructuredLLMClient] = None,
                 ranking_timeout: float = 180.0, hypothesis_timeout: float = 10.0):
        self.llm = llm
        self.ranking_timeout = ranking_timeout
        self.hypothesis_timeout = hypothesis_timeout

    @classmethod
    def from_config(cls, config, llm: Optional[StructuredLLMClient] = None) -> 'RankingEngine':
        return cls(
            llm=llm or StructuredLLMClient.from_config(config),
            ranking_timeout=config.ranking_timeout_ms / 1000,
            hypothesis_timeout=config.hypothesis_timeout_ms / 1000,
        )

    @property
    def enabled(self) -> bool:
        return self.llm is not None and self.llm.available

    async def rank_targets(self, rows: List[RankingRow], fallback: RankingResponse) -> RankingResponse:
        """LLM-refined ranking, or ``fallback``."""
        if not self.enabled or not rows:
            return fallback
        payload = json.dumps([row.model_dump() for row in rows], indent=2)
        try:
            refined = await asyncio.wait_for(
                self.llm.complete_json(
                    "targetgraph_ranking",
                    RankingResponse,
                    RANKING_PROMPT,
                    f"Evidence table:\n{payload}",
                    timeout=self.ranking_timeout,
                ),
                timeout=self.ranking_timeout,
            )
            _check_known_ids((t.id for t in refined.ranked_targets), {row.id for row in rows}, "targetgraph_ranking")
        except (TargetGraphException, asyncio.TimeoutError) as e:
            logger.info(f"Keeping deterministic ranking: {type(e).__name__}")
            return fallback
        if not refined.ranked_targets:
            return fallback
        return refined.model_copy(update={'refined': True})

    async def generate_mechanism_thread(
        self,
        disease_id: str,
        pathway_id: str,
        targets: List[ScoredTarget],
        missing_inputs: List[str],
        output_count: int = 3,
    ) -> HypothesisResponse:
        fallback = mechanism_thread_fallback(pathway_id, targets, missing_inputs, output_count)
        if not self.enabled or not targets:
            return fallback

        payload: Dict = {
            'disease_id': disease_id,
            'pathway_id': pathway_id,
            'output_count': output_count,
            'missing_inputs': missing_inputs,
            'scored_targets': [t.model_dump() for t in targets],
        }
        try:
            parsed = await asyncio.wait_for(
                self.llm.complete_json(
                    "targetgraph_hypothesis",
                    HypothesisResponse,
                    HYPOTHESIS_PROMPT,
                    json.dumps(payload, indent=2),
                    timeout=self.hypothesis_timeout,
                ),
                timeout=self.hypothesis_timeout,
            )
            _check_known_ids(
                (t.id for t in parsed.recommended_targets), {t.id for t in targets}, "targetgraph_hypothesis"
            )
        except (TargetGraphException, asyncio.TimeoutError) as e:
            logger.info(f"Keeping deterministic mechanism thread: {type(e).__name__}")
            return fallback
        return parsed


def _check_known_ids(ids: Iterable[str], known: set, schema: str) -> None:
    unknown = [item for item in ids if item not in known]
    if unknown:
        raise SchemaValidationError(schema, f"unknown target id(s): {', '.join(unknown[:5])}")
