"""
Unit tests for the bridge / path analyzer.
"""

import pytest

from targetgraph.core.bridge import (
    DISCONNECTED_REASON,
    analyze,
    analyze_bridge,
    bridge_signature,
    build_graph,
    collect_anchors,
    shortest_path,
)
from targetgraph.core.graph_store import make_edge_id, make_node_id
from targetgraph.models import Anchor, BridgeAnchor, GraphEdge, GraphNode


def node(node_type, primary_id, label=None, **meta):
    return GraphNode(
        id=make_node_id(node_type, primary_id),
        type=node_type,
        primary_id=primary_id,
        label=label or primary_id,
        score=0.5,
        meta=meta,
    )


def edge(source, target, edge_type, meta=None):
    return GraphEdge(
        id=make_edge_id(source, target, edge_type),
        source=source,
        target=target,
        type=edge_type,
        meta=meta or {},
    )


def bridge_anchor(entity_type, primary_id, label):
    return BridgeAnchor(key=f"{entity_type}:{primary_id}", label=label, entity_type=entity_type, id=primary_id)


@pytest.fixture
def two_route_graph():
    """asthma -> IL6 -> tocilizumab, plus a longer detour through a pathway."""
    nodes = [
        node("disease", "EFO_0000270", "asthma"),
        node("target", "T_IL6", "IL6"),
        node("target", "T_JAK1", "JAK1"),
        node("target", "T_STAT3", "STAT3"),
        node("pathway", "R-HSA-1", "IL-6 signaling"),
        node("drug", "CHEMBL1237", "tocilizumab"),
    ]
    edges = [
        edge("disease:EFO_0000270", "target:T_IL6", "disease_target"),
        edge("target:T_IL6", "drug:CHEMBL1237", "target_drug"),
        edge("disease:EFO_0000270", "target:T_JAK1", "disease_target"),
        edge("target:T_JAK1", "pathway:R-HSA-1", "target_pathway"),
        edge("target:T_STAT3", "pathway:R-HSA-1", "target_pathway"),
        edge("target:T_STAT3", "drug:CHEMBL1237", "target_drug"),
    ]
    return nodes, edges


@pytest.mark.unit
class TestShortestPath:

    def test_two_hop_route_beats_detour(self, two_route_graph):
        nodes, edges = two_route_graph
        anchors = [
            bridge_anchor("disease", "EFO_0000270", "asthma"),
            bridge_anchor("drug", "CHEMBL1237", "tocilizumab"),
        ]

        result = analyze(anchors, nodes, edges)

        assert result.status == "connected"
        pair = result.pairs[0]
        assert pair.status == "connected"
        assert pair.node_ids == ["disease:EFO_0000270", "target:T_IL6", "drug:CHEMBL1237"]
        assert len(pair.edge_ids) == 2
        assert pair.intermediate_hops == 1
        assert result.active_pair_id == "pair:0"
        assert result.virtual_nodes == []

    def test_path_helper_on_missing_nodes(self, two_route_graph):
        _, edges = two_route_graph
        graph = build_graph(edges)
        assert shortest_path(graph, "disease:EFO_0000270", "target:nope") is None
        assert shortest_path(graph, "target:T_IL6", "target:T_IL6") == (["target:T_IL6"], [])


@pytest.mark.unit
class TestUnresolvedAnchors:

    def test_unresolved_anchor_gets_virtual_node(self, two_route_graph):
        nodes, edges = two_route_graph
        anchors = [
            bridge_anchor("disease", "EFO_0000270", "asthma"),
            bridge_anchor("target", "ENSG_UNKNOWN", "CXCL8"),
        ]

        result = analyze(anchors, nodes, edges)

        assert result.status == "no_connection"
        pair = result.pairs[0]
        assert pair.status == "no_connection"
        assert "unresolved anchor" in pair.reason
        assert pair.to_node_id.startswith("virtual-anchor:")
        assert [v.id for v in result.virtual_nodes] == [pair.to_node_id]
        assert result.virtual_nodes[0].meta["virtual"] is True

        gap = result.virtual_edges[0]
        assert gap.meta["source"] == "query_gap"
        assert pair.edge_ids == [gap.id]
        # gap edges live outside the real edge list
        assert gap.id not in {e.id for e in edges}

    def test_proxy_edges_are_not_hops(self):
        nodes = [node("disease", "EFO_1", "asthma"), node("disease", "EFO_2", "obesity")]
        edges = [edge("disease:EFO_1", "disease:EFO_2", "disease_disease", meta={"source": "query_anchor"})]
        anchors = [bridge_anchor("disease", "EFO_1", "asthma"), bridge_anchor("disease", "EFO_2", "obesity")]

        pair = analyze(anchors, nodes, edges).pairs[0]

        assert pair.status == "no_connection"
        assert pair.reason == DISCONNECTED_REASON

    def test_single_anchor_is_pending(self, two_route_graph):
        nodes, edges = two_route_graph
        result = analyze([bridge_anchor("disease", "EFO_0000270", "asthma")], nodes, edges)
        assert result.status == "pending"
        assert result.pairs == []


@pytest.mark.unit
class TestAnchorsAndSignature:

    def test_most_specific_pair_is_active(self, two_route_graph):
        nodes, edges = two_route_graph
        anchors = [
            bridge_anchor("target", "T_IL6", "IL6"),
            bridge_anchor("disease", "EFO_0000270", "asthma"),
            bridge_anchor("target", "T_STAT3", "STAT3"),
        ]
        result = analyze(anchors, nodes, edges)

        hops = {p.pair_id: p.intermediate_hops for p in result.pairs}
        assert hops["pair:1"] > hops["pair:0"]
        assert result.active_pair_id == "pair:1"

    def test_collect_anchors_orders_by_query_position(self):
        plan = [
            Anchor(mention="IL6", requested_type="target", entity_type="target",
                   id="ENSG00000136244", name="IL6", confidence=0.9),
            Anchor(mention="asthma", requested_type="disease", entity_type="disease",
                   id="EFO_0000270", name="asthma", confidence=0.98),
        ]
        anchors = collect_anchors("between asthma and IL6", plan, [])
        assert [a.label for a in anchors] == ["asthma", "IL6"]
        assert all(a.origin == "plan" for a in anchors)

    def test_signature_tracks_changes(self, two_route_graph):
        nodes, edges = two_route_graph
        plan = [
            Anchor(mention="asthma", entity_type="disease", id="EFO_0000270", name="asthma", confidence=0.98),
            Anchor(mention="tocilizumab", entity_type="drug", id="CHEMBL1237", name="tocilizumab",
                   confidence=0.9, source="chembl"),
        ]
        before = analyze_bridge("asthma and tocilizumab", plan, nodes[:1], [])
        after = analyze_bridge("asthma and tocilizumab", plan, nodes, edges)

        assert before.status == "no_connection"
        assert after.status == "connected"
        assert bridge_signature(before) != bridge_signature(after)
        assert bridge_signature(after) == bridge_signature(
            analyze_bridge("asthma and tocilizumab", plan, nodes, edges)
        )
