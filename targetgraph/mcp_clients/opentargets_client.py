"""
OpenTargets Client

Disease/target/drug search, disease-target associations and known drugs.
MCP tools first; the Platform GraphQL API is the fallback (and the only
transport for known drugs).
"""

import logging
from typing import Any, Dict, List

from .base import SourceClient, as_list, dig
from ..models.data_models import KnownDrug, SearchHit, TargetAssociation

logger = logging.getLogger(__name__)

SEARCH_QUERY = """
query Search($queryString: String!, $entityNames: [String!]) {
  search(queryString: $queryString, entityNames: $entityNames) {
    hits { id name description entity }
  }
}
"""

DISEASE_TARGETS_QUERY = """
query DiseaseTargets($efoId: String!, $size: Int!) {
  disease(efoId: $efoId) {
    associatedTargets(page: {index: 0, size: $size}) {
      rows {
        score
        target { id approvedName approvedSymbol }
      }
    }
  }
}
"""

KNOWN_DRUGS_QUERY = """
query KnownDrugs($ensemblId: String!) {
  target(ensemblId: $ensemblId) {
    knownDrugs(size: 50) {
      rows {
        phase
        status
        mechanismOfAction
        drug { id name maximumClinicalTrialPhase drugType }
      }
    }
  }
}
"""


def _non_empty(items: List[Any]) -> bool:
    return len(items) > 0


class OpenTargetsClient(SourceClient):
    """OpenTargets Platform client."""

    source_name = "opentargets"

    def __init__(self, *args, graphql_url: str, **kwargs):
        super().__init__(*args, **kwargs)
        self.graphql_url = graphql_url

    async def _graphql(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        payload = await self.post_json(self.graphql_url, {"query": query, "variables": variables})
        if not isinstance(payload, dict):
            return {}
        return payload.get("data") or {}

    # Search
    async def _search_graphql(self, query: str, entity: str, size: int) -> List[SearchHit]:
        data = await self._graphql(SEARCH_QUERY, {"queryString": query, "entityNames": [entity]})
        hits = []
        for hit in as_list(dig(data, "search", "hits")):
            if not isinstance(hit, dict) or not hit.get("id"):
                continue
            hits.append(SearchHit(
                id=str(hit["id"]),
                name=str(hit.get("name") or hit["id"]),
                description=hit.get("description"),
                entity=entity,
            ))
        return hits[:size]

    async def search_diseases(self, query: str, size: int = 8) -> List[SearchHit]:
        """Free-text disease search."""

        async def via_mcp() -> List[SearchHit]:
            payload = await self._mcp_call("search_diseases", {"query": query, "size": size})
            hits = as_list(dig(payload, "data", "search", "hits")) or as_list(dig(payload, "hits"))
            return [
                SearchHit(
                    id=str(hit["id"]),
                    name=str(hit.get("name") or hit["id"]),
                    description=hit.get("description"),
                    entity="disease",
                )
                for hit in hits
                if isinstance(hit, dict) and hit.get("id")
            ][:size]

        return await self._fetch(
            "search_diseases",
            {"query": query.lower(), "size": size},
            via_mcp,
            lambda: self._search_graphql(query, "disease", size),
            cache_if=_non_empty,
        )

    async def search_targets(self, query: str, size: int = 8) -> List[SearchHit]:
        """Free-text target search (GraphQL)."""
        return await self._fetch(
            "search_targets",
            {"query": query.lower(), "size": size},
            None,
            lambda: self._search_graphql(query, "target", size),
            cache_if=_non_empty,
        )

    async def search_drugs(self, query: str, size: int = 8) -> List[SearchHit]:
        """Free-text drug search (GraphQL)."""
        return await self._fetch(
            "search_drugs",
            {"query": query.lower(), "size": size},
            None,
            lambda: self._search_graphql(query, "drug", size),
            cache_if=_non_empty,
        )

    # Associations
    async def get_disease_targets_summary(self, disease_id: str, size: int = 20) -> List[TargetAssociation]:
        """Top associated targets for a disease, highest evidence first."""

        async def via_mcp() -> List[TargetAssociation]:
            payload = await self._mcp_call(
                "get_disease_targets_summary", {"diseaseId": disease_id, "size": size}
            )
            rows = []
            for row in as_list(dig(payload, "topTargets")):
                if not isinstance(row, dict) or not row.get("targetId") or not row.get("targetSymbol"):
                    continue
                rows.append(TargetAssociation(
                    target_id=str(row["targetId"]),
                    target_symbol=str(row["targetSymbol"]),
                    target_name=str(row.get("targetName") or row["targetSymbol"]),
                    association_score=row.get("associationScore") or 0.0,
                ))
            return rows[:size]

        async def via_rest() -> List[TargetAssociation]:
            data = await self._graphql(DISEASE_TARGETS_QUERY, {"efoId": disease_id, "size": size})
            rows = []
            for row in as_list(dig(data, "disease", "associatedTargets", "rows")):
                target = dig(row, "target") or {}
                if not target.get("id") or not target.get("approvedSymbol"):
                    continue
                rows.append(TargetAssociation(
                    target_id=str(target["id"]),
                    target_symbol=str(target["approvedSymbol"]),
                    target_name=str(target.get("approvedName") or target["approvedSymbol"]),
                    association_score=row.get("score") or 0.0,
                ))
            return rows[:size]

        return await self._fetch(
            "get_disease_targets_summary",
            {"disease_id": disease_id, "size": size},
            via_mcp,
            via_rest,
            cache_if=_non_empty,
        )

    async def get_known_drugs_for_target(self, target_id: str, size: int = 20) -> List[KnownDrug]:
        """Known drugs for an Ensembl target id with their max clinical phase."""

        async def via_rest() -> List[KnownDrug]:
            data = await self._graphql(KNOWN_DRUGS_QUERY, {"ensemblId": target_id})
            drugs = []
            for row in as_list(dig(data, "target", "knownDrugs", "rows")):
                drug = dig(row, "drug") or {}
                if not drug.get("id") or not drug.get("name"):
                    continue
                phase = row.get("phase") or drug.get("maximumClinicalTrialPhase") or 0
                drugs.append(KnownDrug(
                    drug_id=str(drug["id"]),
                    name=str(drug["name"]),
                    phase=float(phase),
                    status=row.get("status"),
                    mechanism_of_action=row.get("mechanismOfAction"),
                    drug_type=drug.get("drugType"),
                ))
            return drugs[:size]

        return await self._fetch(
            "get_known_drugs_for_target",
            {"target_id": target_id, "size": size},
            None,
            via_rest,
        )
