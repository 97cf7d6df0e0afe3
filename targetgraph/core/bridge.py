"""
Bridge / Path Analyzer

Given two or more anchors, finds the shortest mechanistic path between each
consecutive pair over the current graph snapshot. Unresolved anchors get a
virtual placeholder node and disconnected pairs a virtual gap edge; neither
is ever written into the :class:`GraphStore`.
"""

import logging
import re
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import networkx as nx

from ..models.data_models import (
    Anchor,
    BridgeAnalysis,
    BridgeAnchor,
    GraphEdge,
    GraphNode,
    PairOutcome,
)
from ..resolver.mentions import extract_structured_mentions
from ..resolver.text import normalize

logger = logging.getLogger(__name__)

PROXY_EDGE_SOURCES = ('query_anchor', 'query_gap')
MAX_ANCHORS = 5
MATCH_THRESHOLD = 0.5

UNRESOLVED_REASON = "unresolved anchor: one or both anchors are not in the graph yet"
DISCONNECTED_REASON = "resolved but disconnected: no mechanistic path in the current graph"
PENDING_SUMMARY = "Waiting for at least two anchors to evaluate multihop connectivity."


def slug(value: str) -> str:
    return normalize(value).replace(" ", "-")[:52] or "anchor"


def label_key(value: str) -> str:
    """Normalised label without plural 's' and generic disease words."""
    tokens = []
    for token in normalize(value).split():
        if len(token) >= 5 and token.endswith("s"):
            token = token[:-1]
        if token and not re.match(r"^(disease|disorder|syndrome)$", token):
            tokens.append(token)
    return " ".join(tokens)


def text_similarity(left: str, right: str) -> float:
    a = normalize(left)
    b = normalize(right)
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    if a in b or b in a:
        return 0.72
    a_tokens = a.split()
    b_set = set(b.split())
    shared = sum(1 for token in a_tokens if token in b_set)
    if shared == 0:
        return 0.0
    return shared / max(len(a_tokens), len(b_set))


def _role_order(role) -> int:
    if not isinstance(role, str):
        return 9
    role = role.lower()
    if role == 'query_anchor_primary':
        return 0
    if role == 'query_anchor_secondary':
        return 1
    return 2 if 'query_anchor' in role else 9


def _display_name(node: GraphNode) -> str:
    display = node.meta.get('displayName')
    if isinstance(display, str) and display.strip():
        return display.strip()
    return node.label.strip()


# =============================================================================
# Anchor Collection
# =============================================================================

def _unique(anchors: Iterable[BridgeAnchor], key_of) -> List[BridgeAnchor]:
    seen = set()
    kept = []
    for anchor in anchors:
        key = key_of(anchor)
        if not key or key in seen:
            continue
        seen.add(key)
        kept.append(anchor)
    return kept


def collect_anchors(
    query: str,
    plan_anchors: Sequence[Anchor],
    nodes: Sequence[GraphNode],
) -> List[BridgeAnchor]:
    """
    Ordered anchor list from the graph's query-anchor diseases, the plan and,
    when fewer than two typed anchors exist, raw query mentions.
    """
    graph_nodes = sorted(
        (
            node for node in nodes
            if node.type == 'disease'
            and (_role_order(node.meta.get('role')) < 9 or node.meta.get('queryAnchor'))
        ),
        key=lambda node: (_role_order(node.meta.get('role')), -node.score),
    )
    from_graph = [
        BridgeAnchor(
            key=f"disease:{node.primary_id}",
            label=_display_name(node),
            entity_type='disease',
            id=node.primary_id,
            origin='graph',
        )
        for node in graph_nodes
    ]
    from_plan = [
        BridgeAnchor(
            key=f"{anchor.entity_type}:{anchor.id}",
            label=anchor.name,
            entity_type=anchor.entity_type,
            id=anchor.id,
            origin='plan',
            confidence=anchor.confidence,
        )
        for anchor in plan_anchors
    ]
    mentions_by_key = {f"{a.entity_type}:{a.id}": a.mention for a in plan_anchors}

    seeded = _unique(
        from_graph + from_plan,
        lambda a: f"{a.entity_type}:{label_key(a.label) or normalize(a.label)}",
    )
    typed_count = sum(1 for a in seeded if a.entity_type != 'unknown')
    parsed = [] if typed_count >= 2 else [
        BridgeAnchor(key=f"query:{slug(m)}", label=m, entity_type='unknown', origin='query')
        for m in extract_structured_mentions(query)
    ]
    merged = _unique(seeded + parsed, lambda a: normalize(a.label))

    query_norm = normalize(query)

    def position(anchor: BridgeAnchor) -> int:
        token = normalize(mentions_by_key.get(anchor.key) or anchor.label)
        index = query_norm.find(token) if token and query_norm else -1
        return index if index >= 0 else len(query_norm) + 1

    merged.sort(key=lambda a: (a.entity_type == 'unknown', position(a), len(a.label)))
    typed = [a for a in merged if a.entity_type != 'unknown']
    return (typed if len(typed) >= 2 else merged)[:MAX_ANCHORS]


def match_anchor(anchor: BridgeAnchor, nodes: Sequence[GraphNode]) -> Optional[str]:
    """Graph node id for ``anchor``: exact primary id first, then best label match."""
    if anchor.id and anchor.entity_type in ('disease', 'target', 'drug'):
        wanted = anchor.id.lower()
        for node in nodes:
            if node.primary_id.lower() == wanted:
                return node.id

    best: Tuple[float, Optional[str]] = (0.0, None)
    for node in nodes:
        if anchor.entity_type != 'unknown' and node.type != anchor.entity_type:
            continue
        names = [node.label, node.meta.get('displayName'), node.meta.get('targetSymbol')]
        score = max(
            (text_similarity(anchor.label, name) for name in names if isinstance(name, str) and name),
            default=0.0,
        )
        if score >= MATCH_THRESHOLD and score > best[0]:
            best = (score, node.id)
    return best[1]


def _dedupe_resolved(anchors: List[BridgeAnchor]) -> List[BridgeAnchor]:
    """Merge anchors that hit the same node or share a semantic label."""
    kept: List[BridgeAnchor] = []
    index_of: Dict[str, int] = {}

    def keys(anchor: BridgeAnchor) -> List[str]:
        found = [f"{anchor.entity_type}:{label_key(anchor.label) or normalize(anchor.label)}"]
        if anchor.node_id:
            found.insert(0, f"node:{anchor.node_id}")
        return found

    for anchor in anchors:
        anchor_keys = keys(anchor)
        existing = next((index_of[k] for k in anchor_keys if k in index_of), None)
        if existing is None:
            kept.append(anchor)
            for key in anchor_keys:
                index_of[key] = len(kept) - 1
            continue
        current = kept[existing]
        if not current.node_id and anchor.node_id and anchor.entity_type != 'unknown':
            kept[existing] = anchor
        for key in anchor_keys + keys(kept[existing]):
            index_of[key] = existing
    return kept


# =============================================================================
# Path Search
# =============================================================================

def build_graph(edges: Iterable[GraphEdge], exclude_disease_disease: bool = False) -> nx.Graph:
    """
    Undirected graph over mechanistic edges.

    Proxy ``disease_disease`` edges tagged ``query_anchor``/``query_gap`` are
    never hops. Parallel edges keep the first edge id seen.
    """
    graph = nx.Graph()
    for edge in edges:
        if edge.type == 'disease_disease':
            if exclude_disease_disease:
                continue
            tag = str(edge.meta.get('source', '')).lower()
            if tag in PROXY_EDGE_SOURCES:
                continue
        if not graph.has_edge(edge.source, edge.target):
            graph.add_edge(edge.source, edge.target, id=edge.id)
    return graph


def shortest_path(graph: nx.Graph, start: str, end: str) -> Optional[Tuple[List[str], List[str]]]:
    """Fewest-hop path as (node ids, edge ids), or None."""
    if start == end:
        return [start], []
    if start not in graph or end not in graph:
        return None
    try:
        node_ids = nx.shortest_path(graph, start, end)
    except nx.NetworkXNoPath:
        return None
    edge_ids = [graph.edges[a, b]['id'] for a, b in zip(node_ids, node_ids[1:])]
    return node_ids, edge_ids


def _virtual_node(anchor: BridgeAnchor) -> GraphNode:
    node_id = f"virtual-anchor:{slug(anchor.label)}"
    node_type = anchor.entity_type if anchor.entity_type in ('target', 'drug') else 'disease'
    return GraphNode(
        id=node_id,
        type=node_type,
        primary_id=node_id,
        label=anchor.label,
        score=0.18,
        size=28 if anchor.entity_type == 'target' else 34,
        meta={
            'virtual': True,
            'queryAnchor': True,
            'displayName': anchor.label,
            'note': "Anchor from query not yet resolved to graph entity.",
        },
    )


def _gap_edge(source: BridgeAnchor, target: BridgeAnchor, source_node: str, target_node: str,
              resolved: bool) -> GraphEdge:
    return GraphEdge(
        id=f"gap:{slug(source.label)}:{slug(target.label)}",
        source=source_node,
        target=target_node,
        type='disease_disease',
        weight=0.08,
        meta={
            'source': 'query_gap',
            'status': 'no_connection',
            'note': (
                "No mechanistic path found between these anchors in the current graph."
                if resolved else "At least one anchor is still unresolved in this run."
            ),
        },
    )


def _trail(anchors: List[BridgeAnchor], pairs: List[PairOutcome]) -> Tuple[List[str], Optional[str]]:
    trail: List[str] = []
    for pair in pairs:
        if not pair.node_ids:
            continue
        if trail and pair.node_ids[0] == trail[-1]:
            trail.extend(pair.node_ids[1:])
        else:
            trail.extend(pair.node_ids)
    if not trail:
        return [], None

    connected = sum(1 for pair in pairs if pair.status == 'connected')
    if connected == len(pairs):
        suffix = "connected"
    elif connected:
        suffix = "partial bridge"
    else:
        suffix = "no-connection"
    labels = " -> ".join(a.label for a in anchors if a.label)
    return list(dict.fromkeys(trail)), f"{labels} ({suffix})"


def analyze(
    anchors: Sequence[BridgeAnchor],
    nodes: Sequence[GraphNode],
    edges: Sequence[GraphEdge],
) -> BridgeAnalysis:
    """
    Evaluate consecutive anchor pairs over one graph snapshot.

    The connected pair with the most intermediate hops becomes the active
    path; otherwise the first pair is active.
    """
    resolved = _dedupe_resolved([
        anchor.model_copy(update={'node_id': anchor.node_id or match_anchor(anchor, nodes)})
        for anchor in anchors
    ])
    if len(resolved) < 2:
        return BridgeAnalysis(status='pending', summary=PENDING_SUMMARY, anchors=resolved)

    mechanistic = build_graph(edges, exclude_disease_disease=True)
    with_shortcuts = build_graph(edges)

    virtual_nodes: List[GraphNode] = []
    bridged: List[BridgeAnchor] = []
    for anchor in resolved:
        if anchor.node_id:
            bridged.append(anchor)
            continue
        virtual = _virtual_node(anchor)
        if all(v.id != virtual.id for v in virtual_nodes):
            virtual_nodes.append(virtual)
        bridged.append(anchor.model_copy(update={'virtual_node_id': virtual.id}))

    pairs: List[PairOutcome] = []
    virtual_edges: List[GraphEdge] = []
    for index, (left, right) in enumerate(zip(bridged, bridged[1:])):
        left_node = left.node_id or left.virtual_node_id
        right_node = right.node_id or right.virtual_node_id
        both_resolved = bool(left.node_id and right.node_id)
        common = dict(
            pair_id=f"pair:{index}",
            from_key=left.key,
            to_key=right.key,
            from_label=left.label,
            to_label=right.label,
            from_node_id=left_node,
            to_node_id=right_node,
        )

        if both_resolved:
            found = shortest_path(mechanistic, left_node, right_node) or \
                shortest_path(with_shortcuts, left_node, right_node)
            if found is not None:
                node_ids, edge_ids = found
                hops = max(0, len(node_ids) - 2)
                pairs.append(PairOutcome(
                    status='connected',
                    node_ids=node_ids,
                    edge_ids=edge_ids,
                    intermediate_hops=hops,
                    reason=f"Connected via {hops} intermediate hops.",
                    **common,
                ))
                continue

        gap = _gap_edge(left, right, left_node, right_node, both_resolved)
        virtual_edges.append(gap)
        pairs.append(PairOutcome(
            status='no_connection',
            node_ids=[left_node, right_node],
            edge_ids=[gap.id],
            reason=DISCONNECTED_REASON if both_resolved else UNRESOLVED_REASON,
            **common,
        ))

    connected = [pair for pair in pairs if pair.status == 'connected']
    best = min(
        connected,
        key=lambda p: (-p.intermediate_hops, -len(p.edge_ids), p.pair_id),
        default=None,
    )
    active = best or (pairs[0] if pairs else None)
    trail, trail_summary = _trail(bridged, pairs)

    if connected:
        status = 'connected'
        if len(connected) == len(pairs):
            summary = f"{len(connected)}/{len(pairs)} anchor pair(s) connected by an explicit multihop path."
        else:
            summary = f"{len(connected)}/{len(pairs)} anchor pair(s) connected; remaining pairs are unresolved."
    else:
        status = 'no_connection'
        summary = "No full anchor-to-anchor path found yet; unresolved anchor pairs remain visible."

    return BridgeAnalysis(
        status=status,
        summary=summary,
        anchors=bridged,
        pairs=pairs,
        virtual_nodes=virtual_nodes,
        virtual_edges=virtual_edges,
        active_pair_id=active.pair_id if active else None,
        active_path_summary=(
            f"{best.from_label} -> {best.intermediate_hops} hop(s) -> {best.to_label}" if best else None
        ),
        query_trail=trail,
        query_trail_summary=trail_summary,
    )


def analyze_bridge(
    query: str,
    plan_anchors: Sequence[Anchor],
    nodes: Sequence[GraphNode],
    edges: Sequence[GraphEdge],
) -> BridgeAnalysis:
    """Collect anchors for ``query`` and analyze them against the snapshot."""
    return analyze(collect_anchors(query, plan_anchors, nodes), nodes, edges)


def bridge_signature(analysis: BridgeAnalysis) -> Tuple:
    """Comparable fingerprint used to emit bridge events only on change."""
    return (
        analysis.status,
        tuple((p.pair_id, p.status, tuple(p.node_ids), tuple(p.edge_ids)) for p in analysis.pairs),
    )
