"""
Unit tests for the query planner.
"""

from unittest.mock import AsyncMock, Mock

import pytest

from targetgraph.core.caching import MemoryCache
from targetgraph.core.config import Config
from targetgraph.core.exceptions import DatabaseConnectionError
from targetgraph.models import Anchor, DrugTargetHint, SearchHit
from targetgraph.resolver import QueryPlanner, dedupe_anchors, filter_unresolved_mentions

ASTHMA = SearchHit(id="EFO_0000270", name="asthma", entity="disease")
IL6 = SearchHit(id="ENSG00000136244", name="IL6", description="interleukin 6", entity="target")
TOCILIZUMAB = SearchHit(id="CHEMBL1237", name="TOCILIZUMAB", entity="drug")


def hits_for(*catalogue):
    """Search stub returning catalogue hits whose name the query contains."""
    def search(query, size):
        wanted = query.lower().replace("-", "").replace(" ", "")
        return [hit for hit in catalogue if hit.name.lower() in wanted or wanted in hit.name.lower()]
    return search


@pytest.fixture
def sources():
    fake = Mock()
    fake.opentargets.search_diseases = AsyncMock(side_effect=hits_for(ASTHMA))
    fake.opentargets.search_targets = AsyncMock(side_effect=hits_for(IL6))
    fake.opentargets.search_drugs = AsyncMock(side_effect=hits_for(TOCILIZUMAB))
    fake.chembl.search_drug_candidates = AsyncMock(return_value=[])
    fake.chembl.get_drug_target_hints = AsyncMock(return_value=[
        DrugTargetHint(id="ENSG00000160712", symbol="IL6R", name="Interleukin-6 receptor subunit alpha"),
        DrugTargetHint(id="CHEMBL612545", symbol="HeLa", name="HeLa", description="cell line"),
    ])
    return fake


def anchor(entity_type, mention, name, confidence, **kwargs):
    return Anchor(
        mention=mention,
        entity_type=entity_type,
        id=kwargs.pop("id", f"{entity_type}-{name}"),
        name=name,
        confidence=confidence,
        **kwargs,
    )


@pytest.mark.unit
class TestQueryPlanner:

    async def test_disease_and_target_anchors(self, sources):
        planner = QueryPlanner(sources, config=Config(env="testing"))

        plan = await planner.plan("between asthma and IL6")

        assert [(a.entity_type, a.id) for a in plan.anchors] == [
            ("disease", "EFO_0000270"),
            ("target", "ENSG00000136244"),
        ]
        assert not any("between" in a.mention for a in plan.anchors)
        assert all(0.0 <= a.confidence <= 0.98 for a in plan.anchors)
        assert plan.unresolved_mentions == []
        assert plan.followups[0].seed_entity_ids == ["EFO_0000270", "ENSG00000136244"]

    async def test_drug_anchor_expands_to_mechanism_target(self, sources):
        planner = QueryPlanner(sources, config=Config(env="testing"))

        plan = await planner.plan("tocilizumab")

        by_type = {a.entity_type: a for a in plan.anchors}
        assert by_type["drug"].id == "CHEMBL1237"
        hint = by_type["target"]
        assert hint.id == "ENSG00000160712"
        assert hint.source == "chembl"
        assert hint.confidence == 0.9
        assert all(a.name != "HeLa" for a in plan.anchors)

    async def test_source_failures_leave_mentions_unresolved(self):
        failing = Mock()
        error = DatabaseConnectionError("opentargets", "refused")
        failing.opentargets.search_diseases = AsyncMock(side_effect=error)
        failing.opentargets.search_targets = AsyncMock(side_effect=error)
        failing.opentargets.search_drugs = AsyncMock(side_effect=error)
        failing.chembl.search_drug_candidates = AsyncMock(side_effect=error)

        plan = await QueryPlanner(failing, config=Config(env="testing")).plan("between asthma and IL6")

        assert plan.anchors == []
        assert plan.unresolved_mentions == ["asthma", "il6"]

    async def test_plans_are_cached_by_normalised_query(self, sources):
        planner = QueryPlanner(sources, cache=MemoryCache(), config=Config(env="testing"))

        first = await planner.plan("between asthma and IL6")
        calls = sources.opentargets.search_diseases.await_count
        second = await planner.plan("Between asthma and IL6 ")

        assert second == first
        assert sources.opentargets.search_diseases.await_count == calls


@pytest.mark.unit
class TestPlanHelpers:

    def test_disease_reading_wins_collision(self, sources):
        anchors = [
            anchor("disease", "lupus", "systemic lupus erythematosus", 0.9),
            anchor("target", "lupus", "LUPUS1", 0.85),
        ]
        planner = QueryPlanner(sources, config=Config(env="testing"))
        assert [a.entity_type for a in planner._disambiguate(anchors)] == ["disease"]

        lenient = QueryPlanner(
            sources, config=Config(env="testing", overrides={"disease_over_target_confidence": 0.95})
        )
        assert len(lenient._disambiguate(anchors)) == 2

    def test_dedupe_prefers_confidence_then_ontology(self):
        anchors = [
            anchor("disease", "asthma", "asthma", 0.9, id="MONDO_0004979"),
            anchor("disease", "asthma", "Asthma", 0.9, id="EFO_0000270"),
            anchor("disease", "asthma", "asthma", 0.7, id="HP_0002099"),
        ]
        assert [a.id for a in dedupe_anchors(anchors)] == ["EFO_0000270"]

    def test_unresolved_filter(self):
        anchors = [anchor("disease", "asthma", "asthma", 0.98)]
        kept = filter_unresolved_mentions(["asthma", "airway", "inflammatory signaling", "CXCL8"], anchors)
        assert kept == ["CXCL8"]
