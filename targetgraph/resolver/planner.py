"""
Query Planner

Resolves a free-text question into typed anchors (disease / target / drug),
unresolved mentions and follow-up questions. Every source call runs under a
hard timeout and degrades to an empty candidate list; LLM steps are optional
and fall back to lexical extraction.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from ..core.caching import CacheKey, MemoryCache
from ..core.config import Config, get_config
from ..core.exceptions import TargetGraphException
from ..core.logging_config import log_execution_time, log_with_context
from ..llm import StructuredLLMClient
from ..models import Anchor, Constraint, Followup, Mention, QueryPlan, SearchHit
from .mentions import (
    LexicalExtractor,
    MentionExtractorChain,
    RescueExtractor,
    SearchVariantExpander,
    StructuredExtractor,
    split_fallback_mentions,
)
from .scoring import DRUG_LIKE_TYPES, TARGET_LIKE_TYPES, SimilarityScorer
from .text import (
    alnum_compact,
    compact,
    disease_id_priority,
    is_explicit_target_lexeme,
    is_generic_mechanism_mention,
    is_high_signal_drug_target_hint,
    normalize,
    symbol_hint_from_mention,
)

logger = logging.getLogger(__name__)

SEARCH_SIZE = 8
SEARCH_TIMEOUT = 5.0
MENTION_TIMEOUT = 2.2
MAX_ANCHORS = 16
MAX_FOLLOWUPS = 8
MAX_UNRESOLVED = 8
MAX_CONSTRAINTS = 10


@dataclass
class CandidateRow:
    """One scored search hit for one mention."""
    mention: str
    requested_type: str
    entity_type: str
    id: str
    name: str
    description: Optional[str]
    score: float
    source: str = 'opentargets'

    @property
    def key(self) -> str:
        return f"{self.entity_type}:{self.id}"


def _clamp_confidence(value: float, floor: float, ceiling: float) -> float:
    return max(floor, min(ceiling, round(value, 3)))


def _prefer(current: Anchor, candidate: Anchor) -> Anchor:
    """Higher confidence, then canonical disease ontology, then shorter name."""
    if candidate.confidence != current.confidence:
        return candidate if candidate.confidence > current.confidence else current
    if current.entity_type == 'disease' and candidate.entity_type == 'disease':
        current_priority = disease_id_priority(current.id)
        candidate_priority = disease_id_priority(candidate.id)
        if candidate_priority != current_priority:
            return candidate if candidate_priority > current_priority else current
    return candidate if len(candidate.name) < len(current.name) else current


def dedupe_anchors(anchors: List[Anchor]) -> List[Anchor]:
    """Collapse anchors that share entity type and normalised name."""
    by_key: Dict[str, Anchor] = {}
    for anchor in anchors:
        key = f"{anchor.entity_type}:{normalize(anchor.name)}"
        existing = by_key.get(key)
        by_key[key] = anchor if existing is None else _prefer(existing, anchor)
    return list(by_key.values())


def _canonical_compact(value: str) -> str:
    compacted = alnum_compact(value)
    if len(compacted) >= 5 and compacted.endswith("s"):
        return compacted[:-1]
    return compacted


def filter_unresolved_mentions(unresolved: List[str], anchors: List[Anchor]) -> List[str]:
    """Drop leftovers that an anchor already covers, or that carry no entity."""
    resolved_forms = set()
    resolved_compact = set()
    for anchor in anchors:
        for candidate in (anchor.mention, anchor.name):
            normalized = normalize(candidate)
            if not normalized:
                continue
            resolved_forms.add(normalized)
            compacted = _canonical_compact(candidate)
            if compacted:
                resolved_compact.add(compacted)

    has_disease_anchor = any(anchor.entity_type == 'disease' for anchor in anchors)
    kept = []
    for mention in unresolved:
        normalized = normalize(mention)
        if not normalized or is_generic_mechanism_mention(mention):
            continue
        single_plain_word = (
            len(normalized.split()) == 1
            and not any(ch.isdigit() for ch in normalized)
            and not any(ch.isupper() for ch in mention)
            and '-' not in mention and '+' not in mention
        )
        if has_disease_anchor and single_plain_word:
            continue
        if normalized in resolved_forms:
            continue
        mention_compact = _canonical_compact(mention)
        if mention_compact and mention_compact in resolved_compact:
            continue
        if mention_compact and len(mention_compact) >= 4 and any(
            len(item) >= 4 and (item in mention_compact or mention_compact in item)
            for item in resolved_compact
        ):
            continue
        kept.append(mention)
    return kept


def _add_followup(bucket: List[Followup], question: str, reason: str, seeds: List[str]) -> None:
    if not question.strip():
        return
    if any(item.question.lower() == question.lower() for item in bucket):
        return
    bucket.append(Followup(
        question=compact(question, 180),
        reason=compact(reason, 200),
        seed_entity_ids=[seed for seed in seeds if seed][:8],
    ))


def derive_followups(anchors: List[Anchor], constraints: List[Constraint]) -> List[Followup]:
    followups: List[Followup] = []
    diseases = [a for a in anchors if a.entity_type == 'disease']
    targets = [a for a in anchors if a.entity_type == 'target']
    drugs = [a for a in anchors if a.entity_type == 'drug']

    principal = anchors[:4]
    pairs = [(left, right) for i, left in enumerate(principal) for right in principal[i + 1:]]
    for left, right in pairs[:3]:
        _add_followup(
            followups,
            f"Test mechanistic bridge evidence between {left.name} and {right.name}.",
            "Multi-anchor query detected; preserve explicit anchor pairs during exploration.",
            [left.id, right.id],
        )

    if len(diseases) >= 2:
        _add_followup(
            followups,
            f"Find shared pathways and target intersections between {diseases[0].name} and {diseases[1].name}.",
            "Comparative disease anchors detected.",
            [diseases[0].id, diseases[1].id],
        )
    if diseases and targets:
        _add_followup(
            followups,
            f"Map pathway and interaction evidence linking {targets[0].name} to {diseases[0].name}.",
            "Disease+target anchor pair detected.",
            [diseases[0].id, targets[0].id],
        )
    if targets:
        _add_followup(
            followups,
            f"Expand compounds and PubMed evidence for {targets[0].name}, then rank caveats.",
            "Target-centric follow-up for translational depth.",
            [targets[0].id],
        )
    if drugs:
        _add_followup(
            followups,
            f"Resolve mechanism and downstream target neighborhood for {drugs[0].name}.",
            "Drug anchor detected.",
            [drugs[0].id],
        )
    for constraint in constraints[:3]:
        _add_followup(
            followups,
            f"Verify candidate thread against constraint: {constraint.text}.",
            "Explicit user constraint to validate.",
            [],
        )

    _add_followup(
        followups,
        "Collect bibliography support and flag weak evidence branches.",
        "Evidence hardening step for final recommendation quality.",
        [a.id for a in anchors[:3]],
    )
    return followups[:MAX_FOLLOWUPS]


class QueryPlanner:
    """
    Free text -> :class:`QueryPlan`.

    Example:
        >>> planner = QueryPlanner(sources, llm=StructuredLLMClient.from_config(config))
        >>> plan = await planner.plan("between asthma and IL6")
        >>> [(a.entity_type, a.name) for a in plan.anchors]
        [('disease', 'asthma'), ('target', 'IL6')]
    """

    def __init__(
        self,
        sources,
        llm: Optional[StructuredLLMClient] = None,
        cache: Optional[MemoryCache] = None,
        config: Optional[Config] = None,
        scorer: Optional[SimilarityScorer] = None,
        search_timeout: float = SEARCH_TIMEOUT,
        mention_timeout: float = MENTION_TIMEOUT,
    ):
        """
        Args:
            sources: Object exposing ``opentargets`` and ``chembl`` clients
                (normally a :class:`SourceClientManager`)
            llm: Optional structured LLM client for extraction and variants
            cache: Plan cache; plans are not cached when omitted
            config: Configuration (defaults to the global config)
            scorer: Candidate scoring strategy
        """
        self.sources = sources
        self.llm = llm
        self.cache = cache
        self.config = config or get_config()
        self.scorer = scorer or SimilarityScorer()
        self.search_timeout = search_timeout
        self.mention_timeout = mention_timeout
        self.extractors = MentionExtractorChain([StructuredExtractor(llm), LexicalExtractor()])
        self.rescue = RescueExtractor()
        self.variants = SearchVariantExpander(llm)

    @log_execution_time(logger)
    async def plan(self, query: str) -> QueryPlan:
        normalized_query = (query or "").strip()
        cache_key = CacheKey.query_plan(normalize(normalized_query))
        if self.cache is not None:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                return cached

        extracted = await self.extractors.extract(normalized_query)
        mentions = extracted.mentions or split_fallback_mentions(normalized_query)
        variants = await self.variants.expand(normalized_query, mentions)

        selected: Dict[str, Anchor] = {}
        unresolved: List[str] = []
        rows_by_mention = await self._resolve_all(mentions, variants)
        for mention in mentions:
            anchor = self._select_anchor(mention, rows_by_mention.get(mention.text, []), 1.05, 0.15)
            if anchor is None:
                if mention.text not in unresolved:
                    unresolved.append(mention.text)
            else:
                selected.setdefault(f"{anchor.entity_type}:{anchor.id}", anchor)

        if not selected:
            rescued = await self.rescue.extract(normalized_query)
            rescue_mentions = rescued.mentions if rescued is not None else []
            rescue_rows = await self._resolve_all(rescue_mentions, {})
            for mention in rescue_mentions:
                anchor = self._select_anchor(mention, rescue_rows.get(mention.text, []), 1.04, 0.16)
                if anchor is not None:
                    selected.setdefault(f"{anchor.entity_type}:{anchor.id}", anchor)

        await self._expand_drug_targets(selected)

        anchors = self._top(dedupe_anchors(list(selected.values())))
        anchors = await asyncio.gather(*(self._canonicalize_target(a) for a in anchors))
        anchors = self._disambiguate(self._top(dedupe_anchors(list(anchors))))

        plan = QueryPlan(
            query=normalized_query,
            intent=extracted.intent or 'multihop-discovery',
            anchors=anchors,
            constraints=extracted.constraints[:MAX_CONSTRAINTS],
            unresolved_mentions=filter_unresolved_mentions(unresolved, anchors)[:MAX_UNRESOLVED],
            followups=derive_followups(anchors, extracted.constraints),
            rationale=extracted.rationale,
        )
        log_with_context(
            logger, "info", "plan_resolved",
            anchors=len(plan.anchors),
            unresolved=len(plan.unresolved_mentions),
            followups=len(plan.followups),
        )

        if self.cache is not None and (plan.anchors or plan.followups):
            await self.cache.set(cache_key, plan)
        return plan

    # ------------------------------------------------------------------
    # Candidate search
    # ------------------------------------------------------------------

    async def _search(self, source: str, call: Callable[[], Awaitable[List[SearchHit]]]) -> List[SearchHit]:
        try:
            return await asyncio.wait_for(call(), timeout=self.search_timeout)
        except (TargetGraphException, asyncio.TimeoutError) as e:
            logger.debug(f"{source} search skipped: {type(e).__name__}")
            return []

    def _rows(self, mention: str, requested_type: str, search_query: str, entity_type: str,
              hits: List[SearchHit], source: str, with_description: bool) -> List[CandidateRow]:
        rows = []
        for hit in hits:
            texts = [hit.name] + ([hit.description or ""] if with_description else [])
            similarity = max(
                self.scorer.similarity(q, text) for q in (mention, search_query) for text in texts
            )
            score = similarity + self.scorer.entity_preference(
                mention, requested_type, entity_type, hit.name, hit.description
            )
            if entity_type == 'target':
                score += self.scorer.symbol_hint(mention, hit) + self.scorer.symbol_hint(search_query, hit)
            rows.append(CandidateRow(
                mention=mention,
                requested_type=requested_type,
                entity_type=entity_type,
                id=hit.id,
                name=hit.name,
                description=hit.description,
                score=score,
                source=source,
            ))
        return rows

    async def _disease_rows(self, mention: str, requested_type: str, search_query: str) -> List[CandidateRow]:
        hits = await self._search(
            'opentargets', lambda: self.sources.opentargets.search_diseases(search_query, SEARCH_SIZE)
        )
        return self._rows(mention, requested_type, search_query, 'disease', hits, 'opentargets', False)

    async def _target_rows(self, mention: str, requested_type: str, search_query: str) -> List[CandidateRow]:
        hits = await self._search(
            'opentargets', lambda: self.sources.opentargets.search_targets(search_query, SEARCH_SIZE)
        )
        return self._rows(mention, requested_type, search_query, 'target', hits, 'opentargets', True)

    async def _drug_rows(self, mention: str, requested_type: str, search_query: str) -> List[CandidateRow]:
        opentargets_hits, chembl_hits = await asyncio.gather(
            self._search('opentargets', lambda: self.sources.opentargets.search_drugs(search_query, SEARCH_SIZE)),
            self._search('chembl', lambda: self.sources.chembl.search_drug_candidates(search_query, SEARCH_SIZE)),
        )
        return (
            self._rows(mention, requested_type, search_query, 'drug', opentargets_hits, 'opentargets', False)
            + self._rows(mention, requested_type, search_query, 'drug', chembl_hits, 'chembl', True)
        )

    async def resolve_mention_candidates(
        self, mention: str, requested_type: str, search_queries: Optional[List[str]] = None
    ) -> List[CandidateRow]:
        """Scored, deduplicated candidates for one mention (best first, max 8)."""
        query = mention.strip()
        if not query:
            return []

        tokens = query.split()
        variants = [query]
        for variant in search_queries or []:
            if variant not in variants:
                variants.append(variant)
        for size in range(1, (len(tokens) if len(tokens) <= 2 else 2) + 1):
            tail = " ".join(tokens[-size:])
            if len(tail) >= 2 and tail not in variants:
                variants.append(tail)
        variants = variants[:3]

        if requested_type == 'disease':
            searches = (self._disease_rows,)
        elif requested_type in TARGET_LIKE_TYPES:
            searches = (self._target_rows, self._disease_rows)
        elif requested_type in DRUG_LIKE_TYPES:
            searches = (self._drug_rows, self._target_rows)
        else:
            searches = (self._disease_rows, self._target_rows, self._drug_rows)

        batches = await asyncio.gather(
            *(search(query, requested_type, variant) for variant in variants for search in searches)
        )

        best: Dict[str, CandidateRow] = {}
        for rows in batches:
            for row in rows:
                existing = best.get(row.key)
                if existing is None or row.score > existing.score:
                    best[row.key] = row

        kept = [
            row for row in best.values()
            if row.score >= self.scorer.candidate_cutoff(query, row.entity_type)
        ]
        kept.sort(key=lambda row: row.score, reverse=True)
        return kept[:8]

    async def _resolve_all(
        self, mentions: List[Mention], variants: Dict[str, List[str]]
    ) -> Dict[str, List[CandidateRow]]:
        async def resolve(mention: Mention) -> List[CandidateRow]:
            try:
                return await asyncio.wait_for(
                    self.resolve_mention_candidates(mention.text, mention.type, variants.get(mention.text, [])),
                    timeout=self.mention_timeout,
                )
            except asyncio.TimeoutError:
                log_with_context(logger, "info", "mention_resolution_timeout", mention=mention.text)
                return []

        results = await asyncio.gather(*(resolve(m) for m in mentions))
        return {mention.text: rows for mention, rows in zip(mentions, results)}

    def _select_anchor(self, mention: Mention, rows: List[CandidateRow],
                       boost: float, floor: float) -> Optional[Anchor]:
        if not rows:
            return None
        top = max(rows, key=lambda row: row.score)
        if top.score < self.scorer.anchor_threshold(mention.text, mention.type):
            return None
        return Anchor(
            mention=mention.text,
            requested_type=mention.type,
            entity_type=top.entity_type,
            id=top.id,
            name=top.name,
            description=top.description,
            confidence=_clamp_confidence(top.score * boost, floor, 0.98),
            source=top.source,
        )

    # ------------------------------------------------------------------
    # Post-processing
    # ------------------------------------------------------------------

    async def _expand_drug_targets(self, selected: Dict[str, Anchor]) -> None:
        """Add mechanism targets of the first three drug anchors."""
        drugs = [a for a in selected.values() if a.entity_type == 'drug'][:3]
        if not drugs:
            return
        hint_lists = await asyncio.gather(*(
            self._search('chembl', lambda drug_id=drug.id: self.sources.chembl.get_drug_target_hints(drug_id, 4))
            for drug in drugs
        ))
        for drug, hints in zip(drugs, hint_lists):
            for hint in hints:
                name = hint.symbol or hint.name
                if not is_high_signal_drug_target_hint(name, hint.description or hint.name):
                    continue
                selected.setdefault(f"target:{hint.id}", Anchor(
                    mention=drug.name,
                    requested_type='intervention',
                    entity_type='target',
                    id=hint.id,
                    name=name,
                    description=hint.description or hint.name or None,
                    confidence=_clamp_confidence(drug.confidence * 0.92, 0.2, 0.9),
                    source='chembl',
                ))

    async def _canonicalize_target(self, anchor: Anchor) -> Anchor:
        """Swap a fuzzy target match for the exact symbol hit when one exists."""
        if anchor.entity_type != 'target':
            return anchor
        symbol = symbol_hint_from_mention(anchor.mention)
        if not symbol or alnum_compact(anchor.name).upper() == symbol:
            return anchor
        hits = await self._search(
            'opentargets', lambda: self.sources.opentargets.search_targets(symbol, SEARCH_SIZE)
        )
        exact = next((hit for hit in hits if alnum_compact(hit.name).upper() == symbol), None)
        if exact is None:
            return anchor
        return anchor.model_copy(update={
            'id': exact.id,
            'name': exact.name,
            'description': exact.description,
            'confidence': max(anchor.confidence, 0.92),
            'source': 'opentargets',
        })

    def _disambiguate(self, anchors: List[Anchor]) -> List[Anchor]:
        """Prefer the disease reading of a mention that also resolved to a target."""
        threshold = float(self.config.get('disease_over_target_confidence', 0.82))
        disease_confidence: Dict[str, float] = {}
        for anchor in anchors:
            if anchor.entity_type != 'disease':
                continue
            key = normalize(anchor.mention or anchor.name)
            if key:
                disease_confidence[key] = max(disease_confidence.get(key, 0.0), anchor.confidence)

        kept = []
        for anchor in anchors:
            key = normalize(anchor.mention or anchor.name)
            if (
                anchor.entity_type == 'target'
                and key
                and disease_confidence.get(key, 0.0) >= threshold
                and not is_explicit_target_lexeme(anchor.mention)
            ):
                logger.debug(f"Dropping target reading of '{anchor.mention}' in favour of disease")
                continue
            kept.append(anchor)
        return kept

    @staticmethod
    def _top(anchors: List[Anchor]) -> List[Anchor]:
        return sorted(anchors, key=lambda a: a.confidence, reverse=True)[:MAX_ANCHORS]
