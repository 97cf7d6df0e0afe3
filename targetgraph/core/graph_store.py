"""
Evidence Graph Store

Mutable, append/merge-only node and edge maps owned by a single run.
Node ids derive from (type, primary_id) and edge ids from
(source, target, type), so rediscovering an entity is always idempotent.

Merge rules:
- Nodes: top-level fields from the newer insert win; ``meta`` is merged
  key-by-key so later phases can enrich a node without clobbering it.
- Edges: first writer wins; a duplicate edge is discarded entirely.

All mutations are synchronous, so under asyncio a merge can never be
interleaved with another task's merge.
"""

import math
import re
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from ..models.data_models import GraphEdge, GraphNode, SankeyRow

T = TypeVar('T')

SANKEY_EDGE_TYPES = ('disease_target', 'target_pathway', 'target_drug')


# =============================================================================
# Id & Value Helpers
# =============================================================================

def make_node_id(node_type: str, primary_id: str) -> str:
    return f"{node_type}:{primary_id}"


def make_edge_id(source_id: str, target_id: str, edge_type: str) -> str:
    return f"{source_id}→{target_id}:{edge_type}"


def normalize_score(value: Any) -> float:
    """Coerce to a float in [0, 1]; None, NaN and non-numbers become 0."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    if math.isnan(value):
        return 0.0
    return min(1.0, max(0.0, float(value)))


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def chunk(items: Sequence[T], size: int) -> List[List[T]]:
    """Split ``items`` into consecutive lists of at most ``size`` elements."""
    if size < 1:
        raise ValueError("chunk size must be >= 1")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def clean_text(value: Any) -> Optional[str]:
    """First non-empty whitespace-collapsed string found in ``value``."""
    if isinstance(value, str):
        normalized = re.sub(r"\s+", " ", value).strip()
        return normalized or None
    if isinstance(value, (list, tuple)):
        for item in value:
            cleaned = clean_text(item)
            if cleaned:
                return cleaned
        return None
    if isinstance(value, dict):
        return clean_text(value.get('name')) or clean_text(value.get('displayName'))
    return None


def compact_label(value: str, max_length: int = 32) -> str:
    if len(value) <= max_length:
        return value
    return f"{value[:max(8, max_length - 1)]}…"


def preferred_label(candidates: Iterable[Any], fallback: str, max_length: int = 32) -> str:
    for candidate in candidates:
        cleaned = clean_text(candidate)
        if cleaned:
            return compact_label(cleaned, max_length)
    return compact_label(fallback, max_length)


# =============================================================================
# Graph Store
# =============================================================================

class GraphStore:
    """
    Node/edge maps for one run.

    Example:
        >>> store = GraphStore()
        >>> changed = store.upsert_nodes([node])
        >>> added = store.upsert_edges([edge])
        >>> nodes, edges = store.snapshot()
    """

    def __init__(self):
        self._nodes: Dict[str, GraphNode] = {}
        self._edges: Dict[str, GraphEdge] = {}

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    @property
    def node_count(self) -> int:
        return len(self._nodes)

    @property
    def edge_count(self) -> int:
        return len(self._edges)

    def get_node(self, node_id: str) -> Optional[GraphNode]:
        return self._nodes.get(node_id)

    def has_edge(self, edge_id: str) -> bool:
        return edge_id in self._edges

    def upsert_nodes(self, nodes: Iterable[GraphNode]) -> List[GraphNode]:
        """
        Insert or merge nodes.

        Returns:
            The new or changed nodes, in their stored (merged) form.
        """
        changed: List[GraphNode] = []
        for node in nodes:
            existing = self._nodes.get(node.id)
            if existing is None:
                stored = node.model_copy(deep=True)
            else:
                incoming = node.model_dump(exclude={'meta'}, exclude_unset=True)
                merged_meta = {**existing.meta, **node.meta}
                stored = existing.model_copy(update={**incoming, 'meta': merged_meta}, deep=True)
                if stored == existing:
                    continue
            self._nodes[node.id] = stored
            changed.append(stored)
        return changed

    def update_meta(self, node_id: str, **meta: Any) -> Optional[GraphNode]:
        """Merge ``meta`` into an existing node; returns the stored node or None."""
        existing = self._nodes.get(node_id)
        if existing is None:
            return None
        stored = existing.model_copy(update={'meta': {**existing.meta, **meta}}, deep=True)
        self._nodes[node_id] = stored
        return stored

    def upsert_edges(self, edges: Iterable[GraphEdge]) -> List[GraphEdge]:
        """
        Insert edges whose id is not yet present.

        Returns:
            Only the newly inserted edges.
        """
        added: List[GraphEdge] = []
        for edge in edges:
            if edge.id in self._edges:
                continue
            stored = edge.model_copy(deep=True)
            self._edges[edge.id] = stored
            added.append(stored)
        return added

    def merge(self, nodes: Iterable[GraphNode], edges: Iterable[GraphEdge]) -> Tuple[List[GraphNode], List[GraphEdge]]:
        """Upsert nodes then edges in one synchronous step."""
        return self.upsert_nodes(nodes), self.upsert_edges(edges)

    def snapshot(self) -> Tuple[List[GraphNode], List[GraphEdge]]:
        """Copies of all nodes and edges in insertion order."""
        return (
            [node.model_copy(deep=True) for node in self._nodes.values()],
            [edge.model_copy(deep=True) for edge in self._edges.values()],
        )

    def stats(self) -> Dict[str, int]:
        """Totals per node type plus overall node and edge counts."""
        by_type = Counter(node.type for node in self._nodes.values())
        return {
            'total_nodes': len(self._nodes),
            'total_edges': len(self._edges),
            'diseases': by_type.get('disease', 0),
            'targets': by_type.get('target', 0),
            'pathways': by_type.get('pathway', 0),
            'drugs': by_type.get('drug', 0),
            'interactions': by_type.get('interaction', 0),
        }


# =============================================================================
# Sankey Rows
# =============================================================================

def _readable_label(node: GraphNode) -> str:
    display = clean_text(node.meta.get('displayName'))
    if node.type == 'target':
        return clean_text(node.meta.get('targetSymbol')) or display or node.label
    return display or node.label


def sankey_rows(nodes: Iterable[GraphNode], edges: Iterable[GraphEdge], limit: int = 260) -> List[SankeyRow]:
    """
    Mechanism flow rows: direct disease→target, target→pathway and
    target→drug flows plus derived disease→pathway and pathway→drug flows.
    """
    node_map = {node.id: node for node in nodes}
    rows: List[SankeyRow] = []
    disease_targets: Dict[str, List[Tuple[str, float]]] = {}
    target_pathways: Dict[str, List[Tuple[str, float]]] = {}
    target_drugs: Dict[str, List[Tuple[str, float]]] = {}

    for edge in edges:
        if edge.type not in SANKEY_EDGE_TYPES:
            continue
        source = node_map.get(edge.source)
        target = node_map.get(edge.target)
        if source is None or target is None:
            continue

        rows.append(SankeyRow(
            source=_readable_label(source),
            target=_readable_label(target),
            value=edge.weight,
            source_type=source.type,
            target_type=target.type,
        ))
        bucket = {
            'disease_target': disease_targets,
            'target_pathway': target_pathways,
            'target_drug': target_drugs,
        }[edge.type]
        bucket.setdefault(source.id, []).append((target.id, edge.weight))

    pathway_drug: Dict[str, SankeyRow] = {}
    for target_id, pathways in target_pathways.items():
        for pathway_id, pathway_value in pathways[:8]:
            for drug_id, drug_value in target_drugs.get(target_id, [])[:8]:
                value = min(pathway_value, drug_value) * 0.8
                key = f"{pathway_id}=>{drug_id}"
                if key in pathway_drug:
                    pathway_drug[key].value += value
                    continue
                pathway_drug[key] = SankeyRow(
                    source=_readable_label(node_map[pathway_id]),
                    target=_readable_label(node_map[drug_id]),
                    value=value,
                    source_type='pathway',
                    target_type='drug',
                )

    disease_pathway: Dict[str, SankeyRow] = {}
    for disease_id, targets in disease_targets.items():
        for target_id, target_value in targets:
            for pathway_id, pathway_value in target_pathways.get(target_id, [])[:8]:
                value = min(target_value, pathway_value) * 0.85
                key = f"{disease_id}=>{pathway_id}"
                if key in disease_pathway:
                    disease_pathway[key].value += value
                    continue
                disease_pathway[key] = SankeyRow(
                    source=_readable_label(node_map[disease_id]),
                    target=_readable_label(node_map[pathway_id]),
                    value=value,
                    source_type='disease',
                    target_type='pathway',
                )

    def by_value(items: Iterable[SankeyRow]) -> List[SankeyRow]:
        return sorted(items, key=lambda row: row.value, reverse=True)

    enriched = rows + by_value(disease_pathway.values())[:40] + by_value(pathway_drug.values())[:80]
    return by_value(enriched)[:limit]
