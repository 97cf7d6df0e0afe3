"""
BioMCP Client

Literature and clinical-trial snippets for a (disease, target) pair.
BioMCP answers in markdown-ish text, so article and trial identifiers are
scraped line by line. Europe PMC and ClinicalTrials.gov are queried only
when BioMCP yields nothing for that half of the bundle.
"""

import asyncio
import logging
import re
from typing import Any, List, Optional

from .base import SourceClient, as_list, dig
from ..core.caching import CacheKey
from ..core.exceptions import TargetGraphException
from ..models.data_models import Article, LiteratureBundle, Trial

logger = logging.getLogger(__name__)

MAX_SNIPPETS = 5
THINK_TIMEOUT = 8.0

PMID_PATTERN = re.compile(r"PMID[:\s]+(\d+)", re.IGNORECASE)
DOI_PATTERN = re.compile(r"10\.\d{4,9}/[\w.\-;()/:]+", re.IGNORECASE)
NCT_PATTERN = re.compile(r"(NCT\d{8})", re.IGNORECASE)
BULLET_PATTERN = re.compile(r"^[-*]\s*")


def parse_article_lines(raw: str) -> List[Article]:
    """Articles from lines carrying a PMID or DOI; at most five."""
    articles: List[Article] = []
    for line in (line.strip() for line in raw.split("\n")):
        pmid = PMID_PATTERN.search(line)
        doi = DOI_PATTERN.search(line)
        if not pmid and not doi:
            continue

        article_id = pmid.group(1) if pmid else doi.group(0)
        url = (
            f"https://pubmed.ncbi.nlm.nih.gov/{pmid.group(1)}/"
            if pmid else f"https://doi.org/{doi.group(0)}"
        )
        articles.append(Article(
            id=article_id,
            title=BULLET_PATTERN.sub("", line)[:180],
            source="BioMCP",
            url=url,
        ))
        if len(articles) >= MAX_SNIPPETS:
            break
    return articles


def parse_trial_lines(raw: str) -> List[Trial]:
    """Trials from lines carrying an NCT id; at most five."""
    trials: List[Trial] = []
    for line in (line.strip() for line in raw.split("\n")):
        match = NCT_PATTERN.search(line)
        if not match:
            continue
        nct_id = match.group(1).upper()
        trials.append(Trial(
            id=nct_id,
            title=BULLET_PATTERN.sub("", line)[:180],
            url=f"https://clinicaltrials.gov/study/{nct_id}",
        ))
        if len(trials) >= MAX_SNIPPETS:
            break
    return trials


class BioMCPClient(SourceClient):
    """BioMCP client with Europe PMC and ClinicalTrials.gov fallbacks."""

    source_name = "biomcp"

    def __init__(self, *args, europepmc_url: str, clinicaltrials_url: str, **kwargs):
        super().__init__(*args, **kwargs)
        self.europepmc_url = europepmc_url.rstrip("/")
        self.clinicaltrials_url = clinicaltrials_url.rstrip("/")

    async def _think(self, thought: str) -> None:
        """Advisory planning call; failures never matter."""
        if self.mcp is None or self.transport_mode == "fallback_only":
            return
        try:
            await asyncio.wait_for(
                self.mcp.call_tool_raw("think", {
                    "thought": thought,
                    "thoughtNumber": 1,
                    "totalThoughts": 1,
                    "nextThoughtNeeded": False,
                }),
                timeout=THINK_TIMEOUT,
            )
        except (TargetGraphException, asyncio.TimeoutError) as e:
            logger.debug(f"BioMCP think skipped: {e}")

    async def get_literature_and_trials(
        self,
        disease: str,
        symbol: str,
        drug_hint: Optional[str] = None,
    ) -> LiteratureBundle:
        """
        Up to five articles and five trials for a disease/target pair.

        Args:
            disease: Disease display name
            symbol: Target gene symbol
            drug_hint: Optional intervention name to narrow trial search

        Raises:
            DatabaseError: If both BioMCP and the REST fallback fail
        """
        return await self.cache.get_or_load(
            CacheKey.literature(disease, symbol, drug_hint),
            lambda: self._load(disease, symbol, drug_hint),
        )

    async def _load(self, disease: str, symbol: str, drug_hint: Optional[str]) -> LiteratureBundle:
        intervention = f" and intervention {drug_hint}" if drug_hint else ""
        await self._think(f"Plan BioMCP evidence search for {disease} with target {symbol}{intervention}.")

        articles = await self._articles(disease, symbol)
        trials = await self._trials(disease, symbol, drug_hint)
        return LiteratureBundle(articles=articles[:MAX_SNIPPETS], trials=trials[:MAX_SNIPPETS])

    async def _articles(self, disease: str, symbol: str) -> List[Article]:
        async def via_mcp() -> List[Article]:
            raw = await self._mcp_call_raw("article_searcher", {
                "diseases": [disease],
                "genes": [symbol],
                "page_size": MAX_SNIPPETS,
                "include_preprints": False,
            })
            articles = parse_article_lines(raw)
            if not articles and self.transport_mode == "auto":
                return await via_rest()
            return articles

        async def via_rest() -> List[Article]:
            payload = await self.get_json(self.europepmc_url, params={
                "query": f"{symbol} {disease}",
                "format": "json",
                "pageSize": MAX_SNIPPETS,
                "resultType": "core",
            })
            return [_europepmc_article(item) for item in as_list(dig(payload, "resultList", "result"))[:MAX_SNIPPETS]
                    if isinstance(item, dict)]

        return await self._guarded("article_searcher", via_mcp, via_rest)

    async def _trials(self, disease: str, symbol: str, drug_hint: Optional[str]) -> List[Trial]:
        async def via_mcp() -> List[Trial]:
            params = {"conditions": [disease], "page_size": MAX_SNIPPETS}
            if drug_hint:
                params["interventions"] = [drug_hint]
            trials = parse_trial_lines(await self._mcp_call_raw("trial_searcher", params))
            if not trials and self.transport_mode == "auto":
                return await via_rest()
            return trials

        async def via_rest() -> List[Trial]:
            payload = await self.get_json(self.clinicaltrials_url, params={
                "query.term": f"{disease} {symbol}",
                "pageSize": MAX_SNIPPETS,
            })
            return [_clinicaltrials_study(study) for study in as_list(dig(payload, "studies"))[:MAX_SNIPPETS]]

        return await self._guarded("trial_searcher", via_mcp, via_rest)


def _europepmc_article(item: Any) -> Article:
    pmid = item.get("pmid")
    doi = item.get("doi")
    if pmid:
        url = f"https://pubmed.ncbi.nlm.nih.gov/{pmid}/"
    elif doi:
        url = f"https://doi.org/{doi}"
    else:
        url = "https://europepmc.org/"
    return Article(
        id=str(pmid or doi or item.get("id") or "unknown"),
        title=item.get("title") or "Untitled article",
        source=item.get("journalTitle") or "Europe PMC",
        url=url,
    )


def _clinicaltrials_study(study: Any) -> Trial:
    identification = dig(study, "protocolSection", "identificationModule") or {}
    status = dig(study, "protocolSection", "statusModule") or {}
    nct_id = identification.get("nctId") or "Unknown"
    return Trial(
        id=str(nct_id),
        title=identification.get("briefTitle") or "Untitled trial",
        status=status.get("overallStatus") or status.get("studyStatus"),
        url=f"https://clinicaltrials.gov/study/{identification.get('nctId') or ''}",
    )
