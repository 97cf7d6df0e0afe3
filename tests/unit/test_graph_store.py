"""
Unit tests for the evidence graph store and its helpers.
"""

import math

import pytest

from targetgraph.core.graph_store import (
    GraphStore,
    chunk,
    clean_text,
    compact_label,
    make_edge_id,
    make_node_id,
    normalize_score,
    preferred_label,
    sankey_rows,
)
from targetgraph.models import GraphEdge, GraphNode


def node(node_type, primary_id, score=0.5, **meta):
    return GraphNode(
        id=make_node_id(node_type, primary_id),
        type=node_type,
        primary_id=primary_id,
        label=primary_id,
        score=score,
        meta=meta,
    )


def edge(source, target, edge_type, weight=0.5, meta=None):
    return GraphEdge(
        id=make_edge_id(source, target, edge_type),
        source=source,
        target=target,
        type=edge_type,
        weight=weight,
        meta=meta or {},
    )


@pytest.mark.unit
class TestHelpers:

    def test_ids_are_deterministic(self):
        assert make_node_id("target", "ENSG00000136244") == "target:ENSG00000136244"
        assert make_edge_id("a", "b", "target_drug") == "a→b:target_drug"

    @pytest.mark.parametrize("value,expected", [
        (0.4, 0.4),
        (3, 1.0),
        (-2, 0.0),
        (math.nan, 0.0),
        (None, 0.0),
        ("0.7", 0.0),
        (True, 0.0),
    ])
    def test_normalize_score(self, value, expected):
        assert normalize_score(value) == expected

    def test_chunk(self):
        assert chunk([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]
        with pytest.raises(ValueError):
            chunk([1], 0)

    def test_clean_text(self):
        assert clean_text("  interleukin   6 ") == "interleukin 6"
        assert clean_text(["", None, "asthma"]) == "asthma"
        assert clean_text({"displayName": "Asthma"}) == "Asthma"
        assert clean_text(42) is None

    def test_labels(self):
        assert compact_label("short") == "short"
        assert compact_label("x" * 40, 10) == "x" * 9 + "…"
        assert preferred_label([None, " IL6 "], "ENSG1") == "IL6"
        assert preferred_label([], "ENSG1") == "ENSG1"


@pytest.mark.unit
class TestGraphStore:

    def test_node_reinsert_merges_meta(self):
        store = GraphStore()
        store.upsert_nodes([node("target", "T1", stage="P1", openTargetsEvidence=0.8)])
        changed = store.upsert_nodes([node("target", "T1", stage="P5", articleCount=3)])

        assert len(store) == 1
        assert len(changed) == 1
        merged = store.get_node("target:T1")
        assert merged.meta == {"stage": "P5", "openTargetsEvidence": 0.8, "articleCount": 3}

    def test_identical_reinsert_reports_no_change(self):
        store = GraphStore()
        store.upsert_nodes([node("pathway", "R-HSA-1", species="Homo sapiens")])
        assert store.upsert_nodes([node("pathway", "R-HSA-1", species="Homo sapiens")]) == []

    def test_edge_first_writer_wins(self):
        store = GraphStore()
        first = edge("target:T1", "drug:D1", "target_drug", weight=0.9, meta={"source": "OpenTargets"})
        second = edge("target:T1", "drug:D1", "target_drug", weight=0.1, meta={"source": "ChEMBL"})

        assert store.upsert_edges([first]) == [first]
        assert store.upsert_edges([second]) == []
        assert store.edge_count == 1
        _, edges = store.snapshot()
        assert edges[0].weight == 0.9
        assert edges[0].meta["source"] == "OpenTargets"

    def test_snapshot_is_a_copy(self):
        store = GraphStore()
        store.upsert_nodes([node("disease", "EFO_1")])
        nodes, _ = store.snapshot()
        nodes[0].meta["mutated"] = True
        assert "mutated" not in store.get_node("disease:EFO_1").meta

    def test_store_never_shrinks(self):
        store = GraphStore()
        store.merge([node("disease", "EFO_1"), node("target", "T1")], [edge("disease:EFO_1", "target:T1", "disease_target")])
        before = (store.node_count, store.edge_count)
        store.merge([node("target", "T1")], [edge("disease:EFO_1", "target:T1", "disease_target")])
        assert (store.node_count, store.edge_count) == before

    def test_update_meta(self):
        store = GraphStore()
        store.upsert_nodes([node("target", "T1", stage="P1")])
        updated = store.update_meta("target:T1", trialCount=2)
        assert updated.meta == {"stage": "P1", "trialCount": 2}
        assert store.update_meta("target:missing", x=1) is None

    def test_stats(self):
        store = GraphStore()
        store.merge(
            [node("disease", "EFO_1"), node("target", "T1"), node("target", "T2"), node("drug", "D1")],
            [edge("disease:EFO_1", "target:T1", "disease_target")],
        )
        stats = store.stats()
        assert stats["total_nodes"] == 4
        assert stats["total_edges"] == 1
        assert stats["targets"] == 2
        assert stats["drugs"] == 1
        assert stats["pathways"] == 0


@pytest.mark.unit
class TestSankeyRows:

    def test_direct_and_derived_flows(self):
        disease = node("disease", "EFO_1", displayName="Asthma")
        target = node("target", "T1", targetSymbol="IL6")
        pathway = node("pathway", "R-HSA-1", displayName="Interleukin-6 signaling")
        drug = node("drug", "CHEMBL1", displayName="Tocilizumab")
        edges = [
            edge(disease.id, target.id, "disease_target", 0.8),
            edge(target.id, pathway.id, "target_pathway", 0.65),
            edge(target.id, drug.id, "target_drug", 1.0),
            edge(target.id, "interaction:STAT3", "target_target", 0.9),
        ]

        rows = sankey_rows([disease, target, pathway, drug], edges)
        pairs = {(row.source, row.target) for row in rows}

        assert ("Asthma", "IL6") in pairs
        assert ("IL6", "Interleukin-6 signaling") in pairs
        assert ("IL6", "Tocilizumab") in pairs
        assert ("Asthma", "Interleukin-6 signaling") in pairs
        assert ("Interleukin-6 signaling", "Tocilizumab") in pairs
        assert all(row.source_type != "interaction" for row in rows)
        values = [row.value for row in rows]
        assert values == sorted(values, reverse=True)
