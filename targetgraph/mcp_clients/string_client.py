"""
STRING Client

Protein-protein interaction neighborhood for a set of seed symbols (human,
taxon 9606). MCP ``get_interaction_network`` first, STRING REST network
endpoint as fallback. Node and edge counts are capped by configuration.
"""

import logging
from typing import Any, Dict, Iterable, List

from .base import SourceClient, as_list, dig
from ..models.data_models import InteractionEdge, InteractionNetwork, InteractionNode

logger = logging.getLogger(__name__)

HUMAN_TAXON = "9606"


def _score(value: Any) -> float:
    try:
        score = float(value or 0)
    except (TypeError, ValueError):
        return 0.0
    # MCP servers report either 0-1 or 0-1000
    if score > 1:
        score = score / 1000
    return max(0.0, min(1.0, score))


def _evidence(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(item) for item in value]
    if isinstance(value, str):
        return [value]
    return []


class STRINGClient(SourceClient):
    """STRING MCP client with REST fallback."""

    source_name = "string"

    def __init__(self, *args, api_url: str, max_added_nodes: int = 80,
                 max_added_edges: int = 180, max_neighbors_per_seed: int = 8, **kwargs):
        super().__init__(*args, **kwargs)
        self.api_url = api_url.rstrip("/")
        self.max_added_nodes = max_added_nodes
        self.max_added_edges = max_added_edges
        self.max_neighbors_per_seed = max_neighbors_per_seed

    async def get_interaction_network(
        self,
        symbols: Iterable[str],
        confidence: float = 0.7,
        add_nodes: int = 8,
    ) -> InteractionNetwork:
        """
        Interaction network around ``symbols``.

        Args:
            symbols: Seed gene symbols (deduplicated and sorted)
            confidence: Minimum combined score in [0, 1]
            add_nodes: Neighbors STRING may add beyond the seeds

        Returns:
            InteractionNetwork with scores normalized to [0, 1]
        """
        proteins = sorted({s.strip() for s in symbols if s and s.strip()})
        required_score = round(max(0.0, min(1.0, confidence)) * 1000)

        async def via_mcp() -> InteractionNetwork:
            payload = await self._mcp_call("get_interaction_network", {
                "protein_ids": proteins,
                "species": HUMAN_TAXON,
                "add_nodes": add_nodes,
                "required_score": required_score,
            })
            return self._from_mcp(payload)

        return await self._fetch(
            "get_interaction_network",
            {"proteins": ",".join(proteins), "confidence": confidence, "add_nodes": add_nodes},
            via_mcp,
            lambda: self._via_rest(proteins, required_score, add_nodes),
        )

    def _from_mcp(self, payload: Any) -> InteractionNetwork:
        nodes = []
        for node in as_list(dig(payload, "nodes")):
            if not isinstance(node, dict):
                continue
            symbol = node.get("protein_name")
            node_id = node.get("string_id") or symbol
            if not node_id or not symbol:
                continue
            nodes.append(InteractionNode(id=str(node_id), symbol=str(symbol), annotation=node.get("annotation")))

        edges = []
        for edge in as_list(dig(payload, "edges")):
            if not isinstance(edge, dict) or not edge.get("protein_a") or not edge.get("protein_b"):
                continue
            edges.append(InteractionEdge(
                source_symbol=str(edge["protein_a"]),
                target_symbol=str(edge["protein_b"]),
                score=_score(edge.get("confidence_score")),
                evidence=_evidence(edge.get("evidence_types")),
            ))

        return InteractionNetwork(nodes=nodes[:self.max_added_nodes], edges=edges[:self.max_added_edges])

    async def _via_rest(self, proteins: List[str], required_score: int, add_nodes: int) -> InteractionNetwork:
        raw = await self.get_json(f"{self.api_url}/json/network", params={
            "identifiers": "\r".join(proteins),
            "species": HUMAN_TAXON,
            "required_score": required_score,
            "add_white_nodes": min(add_nodes, self.max_neighbors_per_seed),
        })

        nodes: Dict[str, InteractionNode] = {}
        edges: List[InteractionEdge] = []
        for row in as_list(raw):
            if not isinstance(row, dict):
                continue
            a = row.get("preferredName_A") or row.get("preferredNameA")
            b = row.get("preferredName_B") or row.get("preferredNameB")
            if not a or not b:
                continue
            nodes[a] = InteractionNode(id=str(row.get("stringId_A") or a), symbol=str(a))
            nodes[b] = InteractionNode(id=str(row.get("stringId_B") or b), symbol=str(b))
            edges.append(InteractionEdge(source_symbol=str(a), target_symbol=str(b), score=_score(row.get("score"))))

        return InteractionNetwork(
            nodes=list(nodes.values())[:self.max_added_nodes],
            edges=edges[:self.max_added_edges],
        )
