"""
ChEMBL Client

Bioactivity-backed compounds for a target symbol, drug candidate search
and drug -> target hints. MCP tools first, ChEMBL REST API as fallback.
"""

import asyncio
import logging
import math
from typing import Any, List, Optional

from .base import SourceClient, as_list, dig
from ..core.exceptions import TargetGraphException
from ..models.data_models import ActivityDrug, DrugTargetHint, SearchHit

logger = logging.getLogger(__name__)


def _potency(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        potency = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(potency) else potency


def _potency_key(drug: ActivityDrug) -> float:
    return drug.potency if drug.potency is not None else math.inf


class ChEMBLClient(SourceClient):
    """ChEMBL MCP client with REST fallbacks."""

    source_name = "chembl"

    def __init__(self, *args, api_url: str, **kwargs):
        super().__init__(*args, **kwargs)
        self.api_url = api_url.rstrip("/")

    # =========================================================================
    # Target Activity Drugs
    # =========================================================================

    async def resolve_target_chembl_ids(self, symbol: str) -> List[str]:
        """ChEMBL target ids for a gene symbol (human)."""

        async def via_mcp() -> List[str]:
            payload = await self._mcp_call("search_targets", {
                "query": symbol,
                "organism": "Homo sapiens",
                "limit": 5,
            })
            ids = [t.get("target_chembl_id") for t in as_list(dig(payload, "targets")) if isinstance(t, dict)]
            ids = [str(i) for i in ids if i]
            if not ids and self.transport_mode == "auto":
                return await via_rest()
            return ids

        async def via_rest() -> List[str]:
            payload = await self.get_json(
                f"{self.api_url}/target/search.json", params={"q": symbol, "limit": 5}
            )
            ids = [t.get("target_chembl_id") for t in as_list(dig(payload, "targets")) if isinstance(t, dict)]
            return [str(i) for i in ids if i]

        return await self._fetch(
            "resolve_target_chembl_ids",
            {"symbol": symbol.upper()},
            via_mcp,
            via_rest,
            cache_if=bool,
        )

    async def _target_activities(self, target_chembl_id: str) -> List[Any]:
        async def via_mcp() -> List[Any]:
            payload = await self._mcp_call("search_activities", {
                "target_chembl_id": target_chembl_id,
                "limit": 30,
            })
            return as_list(dig(payload, "activities"))

        async def via_rest() -> List[Any]:
            payload = await self.get_json(
                f"{self.api_url}/activity.json",
                params={"target_chembl_id": target_chembl_id, "limit": 30},
            )
            return as_list(dig(payload, "activities"))

        return await self._fetch(
            "search_activities",
            {"target_chembl_id": target_chembl_id},
            via_mcp,
            via_rest,
        )

    async def molecule_name(self, molecule_id: str) -> str:
        """Preferred name, else first synonym, else the id itself."""
        try:
            payload = await self.get_json(f"{self.api_url}/molecule/{molecule_id}.json")
        except TargetGraphException as e:
            logger.debug(f"ChEMBL molecule lookup failed for {molecule_id}: {e}")
            return molecule_id

        if not isinstance(payload, dict):
            return molecule_id
        if payload.get("pref_name"):
            return str(payload["pref_name"])
        for synonym in as_list(payload.get("molecule_synonyms")):
            if isinstance(synonym, dict) and synonym.get("molecule_synonym"):
                return str(synonym["molecule_synonym"])
        return molecule_id

    async def get_target_activity_drugs(self, symbol: str, n: int = 10) -> List[ActivityDrug]:
        """
        Most potent compounds measured against a target.

        Activities from the first two matching ChEMBL targets are deduped by
        molecule (lowest potency wins), sorted ascending by potency (missing
        potency last) and truncated to ``n``.
        """
        target_ids = await self.resolve_target_chembl_ids(symbol)
        if not target_ids:
            return []

        best = {}
        for target_chembl_id in target_ids[:2]:
            for activity in await self._target_activities(target_chembl_id):
                if not isinstance(activity, dict) or not activity.get("molecule_chembl_id"):
                    continue
                drug = ActivityDrug(
                    molecule_id=str(activity["molecule_chembl_id"]),
                    name=str(activity["molecule_chembl_id"]),
                    activity_type=activity.get("standard_type"),
                    potency=_potency(activity.get("standard_value")),
                    potency_units=activity.get("standard_units"),
                )
                existing = best.get(drug.molecule_id)
                if existing is None or _potency_key(drug) < _potency_key(existing):
                    best[drug.molecule_id] = drug

        top = sorted(best.values(), key=_potency_key)[:n]
        names = await asyncio.gather(*(self.molecule_name(drug.molecule_id) for drug in top))
        return [drug.model_copy(update={"name": name}) for drug, name in zip(top, names)]

    # =========================================================================
    # Drug Search & Target Hints
    # =========================================================================

    async def search_drug_candidates(self, query: str, size: int = 8) -> List[SearchHit]:
        """Molecules matching a drug name or synonym."""

        def to_hits(molecules: List[Any]) -> List[SearchHit]:
            hits = []
            for molecule in molecules:
                if not isinstance(molecule, dict) or not molecule.get("molecule_chembl_id"):
                    continue
                chembl_id = str(molecule["molecule_chembl_id"])
                phase = molecule.get("max_phase")
                hits.append(SearchHit(
                    id=chembl_id,
                    name=str(molecule.get("pref_name") or chembl_id),
                    description=f"max phase {phase}" if phase is not None else molecule.get("molecule_type"),
                    entity="drug",
                ))
            return hits[:size]

        async def via_mcp() -> List[SearchHit]:
            payload = await self._mcp_call("search_compounds", {"query": query, "limit": size})
            return to_hits(as_list(dig(payload, "molecules")))

        async def via_rest() -> List[SearchHit]:
            payload = await self.get_json(
                f"{self.api_url}/molecule/search.json", params={"q": query, "limit": size}
            )
            return to_hits(as_list(dig(payload, "molecules")))

        return await self._fetch(
            "search_drug_candidates",
            {"query": query.lower(), "size": size},
            via_mcp,
            via_rest,
            cache_if=bool,
        )

    async def _target_symbol(self, target_chembl_id: str) -> Optional[DrugTargetHint]:
        try:
            payload = await self.get_json(f"{self.api_url}/target/{target_chembl_id}.json")
        except TargetGraphException as e:
            logger.debug(f"ChEMBL target lookup failed for {target_chembl_id}: {e}")
            return None
        if not isinstance(payload, dict):
            return None

        symbol = None
        for component in as_list(payload.get("target_components")):
            for synonym in as_list(dig(component, "target_component_synonyms")):
                if isinstance(synonym, dict) and synonym.get("syn_type") == "GENE_SYMBOL":
                    symbol = synonym.get("component_synonym")
                    break
            if symbol:
                break
        if not symbol:
            return None
        return DrugTargetHint(
            id=target_chembl_id,
            symbol=str(symbol).upper(),
            name=str(payload.get("pref_name") or symbol),
            description=payload.get("target_type"),
        )

    async def get_drug_target_hints(self, drug_id: str, n: int = 4) -> List[DrugTargetHint]:
        """Targets a drug acts on, from its recorded mechanisms of action."""

        async def via_mcp() -> List[Any]:
            payload = await self._mcp_call("get_mechanism_of_action", {"drug_chembl_id": drug_id})
            return as_list(dig(payload, "mechanisms"))

        async def via_rest() -> List[Any]:
            payload = await self.get_json(
                f"{self.api_url}/mechanism.json", params={"molecule_chembl_id": drug_id, "limit": 20}
            )
            return as_list(dig(payload, "mechanisms"))

        mechanisms = await self._fetch(
            "get_mechanism_of_action", {"drug_id": drug_id}, via_mcp, via_rest
        )

        seen = []
        actions = {}
        for mechanism in mechanisms:
            if not isinstance(mechanism, dict) or not mechanism.get("target_chembl_id"):
                continue
            target_id = str(mechanism["target_chembl_id"])
            if target_id not in actions:
                seen.append(target_id)
                actions[target_id] = mechanism.get("action_type") or mechanism.get("mechanism_of_action")

        hints = await asyncio.gather(*(self._target_symbol(target_id) for target_id in seen[:n]))
        return [
            hint.model_copy(update={"action_type": actions[hint.id]})
            for hint in hints
            if hint is not None
        ]
