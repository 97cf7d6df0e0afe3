"""
Reactome Client

Gene -> pathway lookup. The MCP ``find_pathways_by_gene`` tool is tried
first; the fallback resolves the gene to a Reactome protein entity via the
Content Service search and lists its lowest-level pathways.
"""

import logging
from typing import Any, List

from .base import SourceClient, as_list, dig
from ..models.data_models import PathwayHit

logger = logging.getLogger(__name__)


class ReactomeClient(SourceClient):
    """Reactome MCP client with Content Service fallback."""

    source_name = "reactome"

    def __init__(self, *args, content_url: str, **kwargs):
        super().__init__(*args, **kwargs)
        self.content_url = content_url.rstrip("/")

    async def find_pathways_by_gene(self, gene_symbol: str) -> List[PathwayHit]:
        """Human pathways containing a gene."""

        async def via_mcp() -> List[PathwayHit]:
            payload = await self._mcp_call("find_pathways_by_gene", {
                "gene": gene_symbol,
                "species": "Homo sapiens",
            })
            return [
                PathwayHit(
                    id=str(pathway["id"]),
                    name=str(pathway.get("name") or pathway["id"]),
                    species=pathway.get("species"),
                )
                for pathway in as_list(dig(payload, "pathways"))
                if isinstance(pathway, dict) and pathway.get("id")
            ]

        return await self._fetch(
            "find_pathways_by_gene",
            {"gene": gene_symbol.upper()},
            via_mcp,
            lambda: self._pathways_via_content_service(gene_symbol),
        )

    async def _pathways_via_content_service(self, gene_symbol: str) -> List[PathwayHit]:
        search = await self.get_json(
            f"{self.content_url}/search/query",
            params={"query": gene_symbol, "types": "Protein", "cluster": "true"},
        )
        protein_group = next(
            (group for group in as_list(dig(search, "results"))
             if isinstance(group, dict) and group.get("typeName") == "Protein"),
            None,
        )
        entries = as_list(dig(protein_group, "entries"))
        st_id = dig(entries[0], "stId") if entries else None
        if not st_id:
            logger.debug(f"Reactome has no protein entity for {gene_symbol}")
            return []

        raw = await self.get_json(f"{self.content_url}/data/pathways/low/entity/{st_id}")
        return [
            PathwayHit(
                id=str(pathway["stId"]),
                name=str(pathway.get("name") or pathway["stId"]),
                species=_species_name(pathway.get("species")),
            )
            for pathway in as_list(raw)
            if isinstance(pathway, dict) and pathway.get("stId")
        ]


def _species_name(species: Any):
    first = as_list(species)[:1]
    return dig(first[0], "name") if first else None
