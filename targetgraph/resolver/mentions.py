"""
Mention Extraction

Turns a free-text question into resolver-ready mentions. Strategies are
tried in order by :class:`MentionExtractorChain`; the first one that yields
mentions wins. The lexical strategy never needs the network, so the chain
always produces an answer.
"""

import json
import logging
import re
from typing import Dict, Iterable, List, Optional, Sequence

from ..core.exceptions import TargetGraphException
from ..core.logging_config import log_with_context
from ..llm import StructuredLLMClient
from ..models import ExtractedMentions, Mention, MentionVariants
from .text import (
    alnum_compact,
    base_mention_variants,
    clean,
    compact,
    infer_mention_type,
    is_generic_mechanism_mention,
    is_likely_symbol_mention,
    mention_has_surface_support,
    normalize,
)

logger = logging.getLogger(__name__)

FALLBACK_INTENT = "multihop-discovery"
FALLBACK_RATIONALE = "Fallback extractor used due unavailable/timeout structured planner call."

EXTRACT_TIMEOUT = 4.2
VARIANT_TIMEOUT = 3.5

EXTRACT_PROMPT = (
    "Extract resolver-ready biomedical mentions and explicit constraints from the user query. "
    "Preserve all principal entities explicitly mentioned by the user (including mediator "
    "molecules/cytokines, diseases, targets, and interventions) when resolvable. Return only "
    "entities that can be resolved with tools; keep language exact; do not invent entities."
)
VARIANT_PROMPT = (
    "Generate canonical biomedical search variants for entity resolver mentions. "
    "Use semantically equivalent aliases only (e.g., abbreviations, canonical punctuation, "
    "known synonymous naming). Do not invent new concepts and do not add generic words. "
    "Return up to 3 high-precision search queries per mention."
)

TAIL = r"(?:\s+(?:through|via|using|with)\s+(.+))?$"
RELATION_WORDS = r"(?:connect(?:ed|ing|s)?|connection|relationship|link(?:ed|ing)?|overlap|related|relates)"
STRUCTURE_PATTERNS = (
    re.compile(r"\bbetween\s+(.+?)\s+and\s+(.+?)" + TAIL, re.IGNORECASE),
    re.compile(r"\b" + RELATION_WORDS + r"\s+(?:between\s+)?(.+?)\s+(?:to|with|and|vs|versus)\s+(.+?)" + TAIL,
               re.IGNORECASE),
    re.compile(r"(.+?)\s+" + RELATION_WORDS + r"\s+(?:to|with|and|vs|versus)\s+(.+?)" + TAIL, re.IGNORECASE),
    re.compile(r"\b(.+?)\s+(?:vs|versus)\s+(.+?)" + TAIL, re.IGNORECASE),
    re.compile(
        r"\b(.+?)\s+(?:lead|leads|leading|drives?|driven|contributes?|causes?|triggers?|promotes?|predisposes?)"
        r"\s+(?:to\s+)?(.+?)(?:\s+(?:through|via|using|with|by)\s+(.+))?$",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(.+?)\s+(?:results?\s+in|linked\s+to|associated\s+with|correlat(?:ed|es?|ion)\s+with)"
        r"\s+(.+?)(?:\s+(?:through|via|using|with|by)\s+(.+))?$",
        re.IGNORECASE,
    ),
)
QUOTED_SPAN = re.compile(r"[\"'`](.{2,90}?)[\"'`]")
QUESTION_HEAD = re.compile(r"^(?:what|which|how|why)\b", re.IGNORECASE)
RELATION_NOISE = re.compile(
    r"\b(connect(?:ed|ing|s)?|connection|relationship|related|relates|compare|between)\b", re.IGNORECASE
)
RESCUE_NOISE = re.compile(
    r"\b(connect(?:ed|ing|s)?|connection|relationship|related|relates|compare|between|versus|vs)\b",
    re.IGNORECASE,
)

RELATION_PREFIXES = (
    re.compile(r"^(?:through|via|by|using)\s+", re.IGNORECASE),
    re.compile(r"^(?:how|what|which|why)\s+(?:might|may|does|do|did|is|are|can|could|would|will|should)\s+",
               re.IGNORECASE),
    re.compile(r"^(?:how|what|which|why)\s+", re.IGNORECASE),
    re.compile(r"^(?:might|may|does|do|did|is|are|can|could|would|will|should)\s+", re.IGNORECASE),
    re.compile(r"^(?:the|a|an)\s+", re.IGNORECASE),
    re.compile(
        r"^(?:lead(?:s|ing)?|driv(?:e|es|en|ing)|contribut(?:e|es|ed|ing)|caus(?:e|es|ed|ing)|"
        r"trigger(?:s|ed|ing)?|promot(?:e|es|ed|ing)|predispos(?:e|es|ed|ing)|link(?:s|ed|ing)?|"
        r"relat(?:e|es|ed|ing)|associat(?:e|es|ed|ing)|correlat(?:e|es|ed|ing)|connect(?:s|ed|ing)?)"
        r"\s+(?:to\s+)?",
        re.IGNORECASE,
    ),
    re.compile(r"^(?:to|into|toward|towards)\s+", re.IGNORECASE),
)
PREPOSITION_TAIL = re.compile(r"\b(?:in|for|of|with|through|via|by|using)\s+(.+)$", re.IGNORECASE)


def sanitize(value: str) -> str:
    return normalize(value)


def normalize_relation_mention(value: str) -> str:
    """Strip question words, verbs and prepositions around a relation operand."""
    mention = sanitize(value)
    if not mention:
        return ""
    for prefix in RELATION_PREFIXES:
        mention = prefix.sub("", mention, count=1)
    tail_match = PREPOSITION_TAIL.search(mention)
    if tail_match:
        tail = sanitize(tail_match.group(1))
        if len(tail) >= 3:
            mention = tail
    if is_generic_mechanism_mention(mention):
        return ""
    return mention


def _mention_parts(value: str) -> List[str]:
    raw = (value or "").strip()
    if not raw:
        return []
    pieces = re.split(r"\s*,\s*|\s+(?:and|&)\s+", raw, flags=re.IGNORECASE)
    parts = [p for p in (normalize_relation_mention(item) for item in pieces) if p]
    if len(parts) > 1:
        return parts
    single = normalize_relation_mention(raw)
    return [single] if single else []


def extract_structured_mentions(query: str) -> List[str]:
    """Operands of between/connect/versus/causal phrasing and quoted spans (max 8)."""
    cleaned = clean(query)
    if not cleaned:
        return []

    mentions: Dict[str, None] = {}

    def add(value: Optional[str]) -> None:
        for mention in _mention_parts(value or ""):
            if len(mention) < 2 or len(mention) > 90:
                continue
            if len(mention.split()) > 6 or is_generic_mechanism_mention(mention):
                continue
            mentions.setdefault(mention, None)

    for pattern in STRUCTURE_PATTERNS:
        match = pattern.search(cleaned)
        if match:
            for group in match.groups():
                add(group)

    for match in QUOTED_SPAN.finditer(cleaned):
        add(match.group(1))

    return list(mentions)[:8]


def mention_score(mention: str) -> float:
    """Heuristic preference for fallback mentions: short specific phrases first."""
    parts = mention.split()
    if not parts:
        return -10.0
    alpha_numeric = len(re.sub(r"[^a-z0-9]", "", mention, flags=re.IGNORECASE))
    score = 0.0
    if len(parts) == 1:
        score += 1.8 if alpha_numeric >= 4 else 0.2
    elif len(parts) == 2:
        score += 0.9
    elif len(parts) <= 4:
        score += 1.1
    elif len(parts) <= 6:
        score += 0.35
    else:
        score -= 0.9

    compacted = alnum_compact(mention)
    if 3 <= len(compacted) <= 10:
        score += 0.35
    if re.search(r"\d", mention):
        score += 0.25
    if len(mention) > 52:
        score -= 1.1
    return score + min(0.9, alpha_numeric / 28)


def split_fallback_mentions(query: str) -> List[Mention]:
    """Deterministic lexical mentions, best first (max 12)."""
    text_raw = clean(re.sub(r"[\n\r\t]+", " ", query or ""))
    if not text_raw:
        return []
    tokens = [token for token in normalize(text_raw).split() if len(token) >= 2]
    if not tokens:
        return []

    found: Dict[str, None] = dict.fromkeys(extract_structured_mentions(text_raw))

    for token_raw in text_raw.split():
        compacted = alnum_compact(token_raw)
        if len(compacted) < 3 or len(compacted) > 18:
            continue
        if re.search(r"[0-9]", compacted) or re.search(r"[A-Z]", token_raw) or re.search(r"[-+]", token_raw):
            found.setdefault(sanitize(token_raw), None)

    if not found:
        for index, token in enumerate(tokens):
            token = sanitize(token)
            if len(token) < 4:
                continue
            if index == len(tokens) - 1 or len(token) >= 8:
                found.setdefault(token, None)
        max_tail = min(4, max(2, len(tokens) - 1))
        for size in range(2, max_tail + 1):
            tail = sanitize(" ".join(tokens[-size:]))
            if len(tail) >= 3:
                found.setdefault(tail, None)

    candidates = []
    for mention in (sanitize(m) for m in found):
        if len(mention) < 3 or not re.search(r"[a-z0-9]", mention, re.IGNORECASE):
            continue
        if QUESTION_HEAD.search(mention) or RELATION_NOISE.search(mention):
            continue
        if is_generic_mechanism_mention(mention) or mention in candidates:
            continue
        candidates.append(mention)

    candidates.sort(key=mention_score, reverse=True)
    return [Mention(text=m, type=infer_mention_type(m)) for m in candidates[:12]]


def rescue_fallback_mentions(query: str) -> List[Mention]:
    """Last-chance mentions: structured operands plus tail n-grams, longest first."""
    tokens = [token for token in normalize(query).split() if len(token) >= 3]
    if not tokens:
        return []

    found: Dict[str, None] = dict.fromkeys(extract_structured_mentions(query))
    if len(tokens[-1]) >= 4:
        found.setdefault(tokens[-1], None)
    bigram = " ".join(tokens[-2:])
    if len(bigram) >= 4:
        found.setdefault(bigram, None)
    trigram = " ".join(tokens[-3:])
    if len(trigram) >= 5:
        found.setdefault(trigram, None)

    values = []
    for value in (sanitize(v) for v in found):
        if len(value) < 3 or QUESTION_HEAD.search(value) or RESCUE_NOISE.search(value):
            continue
        if is_generic_mechanism_mention(value) or value in values:
            continue
        values.append(value)
    values.sort(key=len, reverse=True)
    return [Mention(text=v, type=infer_mention_type(v)) for v in values[:8]]


def should_preserve_single_token_mention(mention: str) -> bool:
    normalized = clean(mention)
    if not normalized:
        return False
    if re.search(r"[-+0-9]", normalized) or re.match(r"^[A-Z0-9-]{2,10}$", normalized):
        return True
    compacted = alnum_compact(normalized)
    return bool(compacted) and bool(re.match(r"^[a-z]{1,6}\d{1,3}[a-z]?$", compacted, re.IGNORECASE))


def prune_subsumed_single_token_mentions(mentions: List[Mention]) -> List[Mention]:
    """Drop single words already contained in a multi-word mention, unless symbol-like."""
    if len(mentions) <= 1:
        return mentions
    multi = [value for value in (sanitize(m.text) for m in mentions) if len(value.split()) > 1]
    if not multi:
        return mentions

    kept = []
    for item in mentions:
        tokens = sanitize(item.text).split()
        if len(tokens) != 1:
            kept.append(item)
            continue
        if should_preserve_single_token_mention(item.text):
            kept.append(item)
            continue
        token_re = re.compile(r"(^|\s)" + re.escape(tokens[0]) + r"(\s|$)", re.IGNORECASE)
        if not any(token_re.search(value) for value in multi):
            kept.append(item)
    return kept


def _dedupe_mentions(groups: Iterable[Iterable[Mention]]) -> List[Mention]:
    merged: Dict[str, Mention] = {}
    for group in groups:
        for item in group:
            key = normalize(item.text)
            if key and key not in merged:
                merged[key] = item
    return list(merged.values())


# =============================================================================
# Strategies
# =============================================================================

class MentionExtractor:
    """One extraction strategy; ``extract`` returns None to defer to the next one."""

    name = "base"

    async def extract(self, query: str) -> Optional[ExtractedMentions]:
        raise NotImplementedError


class StructuredExtractor(MentionExtractor):
    """LLM extraction validated against :class:`ExtractedMentions`."""

    name = "structured"

    def __init__(self, llm: Optional[StructuredLLMClient], timeout: float = EXTRACT_TIMEOUT):
        self.llm = llm
        self.timeout = timeout

    async def extract(self, query: str) -> Optional[ExtractedMentions]:
        if self.llm is None or not self.llm.available:
            return None
        try:
            parsed = await self.llm.complete_json(
                "query_plan_extract",
                ExtractedMentions,
                EXTRACT_PROMPT,
                query,
                model=self.llm.small_model,
                timeout=self.timeout,
            )
        except TargetGraphException as e:
            log_with_context(logger, "info", "structured_extraction_skipped",
                             reason=type(e).__name__)
            return None

        model_mentions = [
            Mention(text=compact(m.text, 90), type=m.type)
            for m in parsed.mentions
            if len(compact(m.text, 90)) >= 2 and mention_has_surface_support(query, m.text)
        ]
        if not model_mentions:
            return None

        lexical_symbols = [m for m in split_fallback_mentions(query) if is_likely_symbol_mention(m.text)]
        mentions = prune_subsumed_single_token_mentions(
            _dedupe_mentions([model_mentions, lexical_symbols])
        )[:10]
        if not mentions:
            return None

        return ExtractedMentions(
            intent=parsed.intent or FALLBACK_INTENT,
            mentions=mentions,
            constraints=parsed.constraints[:8],
            rationale=parsed.rationale or "Structured mention extraction complete.",
        )


class LexicalExtractor(MentionExtractor):
    """Pattern and token heuristics; needs no network."""

    name = "lexical"

    async def extract(self, query: str) -> Optional[ExtractedMentions]:
        return ExtractedMentions(
            intent=FALLBACK_INTENT,
            mentions=split_fallback_mentions(query),
            constraints=[],
            rationale=FALLBACK_RATIONALE,
        )


class RescueExtractor(MentionExtractor):
    """Tail n-grams; used only when nothing else resolved."""

    name = "rescue"

    async def extract(self, query: str) -> Optional[ExtractedMentions]:
        mentions = rescue_fallback_mentions(query)
        if not mentions:
            return None
        return ExtractedMentions(
            intent=FALLBACK_INTENT,
            mentions=mentions,
            constraints=[],
            rationale=FALLBACK_RATIONALE,
        )


class MentionExtractorChain:
    """
    Ordered strategies; the first non-empty result wins.

    Example:
        >>> chain = MentionExtractorChain([StructuredExtractor(llm), LexicalExtractor()])
        >>> extracted = await chain.extract("between asthma and IL6")
    """

    def __init__(self, strategies: Sequence[MentionExtractor]):
        self.strategies = list(strategies)

    async def extract(self, query: str) -> ExtractedMentions:
        for strategy in self.strategies:
            result = await strategy.extract(query)
            if result is not None and result.mentions:
                logger.debug(f"Mentions from {strategy.name}: {[m.text for m in result.mentions]}")
                return result
        return ExtractedMentions(intent=FALLBACK_INTENT, mentions=[], constraints=[], rationale=FALLBACK_RATIONALE)


# =============================================================================
# Search variants
# =============================================================================

class SearchVariantExpander:
    """Base variants per mention, optionally widened by an LLM alias pass."""

    def __init__(self, llm: Optional[StructuredLLMClient] = None, timeout: float = VARIANT_TIMEOUT):
        self.llm = llm
        self.timeout = timeout

    async def expand(self, query: str, mentions: List[Mention]) -> Dict[str, List[str]]:
        result = {m.text: base_mention_variants(m.text) for m in mentions}
        if not mentions or self.llm is None or not self.llm.available:
            return result

        payload = json.dumps(
            {"query": query, "mentions": [{"mention": m.text, "type": m.type} for m in mentions]},
            indent=2,
        )
        try:
            parsed = await self.llm.complete_json(
                "resolver_search_variants",
                MentionVariants,
                VARIANT_PROMPT,
                payload,
                model=self.llm.small_model,
                timeout=self.timeout,
            )
        except TargetGraphException as e:
            log_with_context(logger, "info", "variant_expansion_skipped", reason=type(e).__name__)
            return result

        for item in parsed.items:
            mention = clean(item.mention)
            if mention not in result:
                continue
            merged = list(result[mention])
            for variant in (clean(q) for q in item.queries):
                if len(variant) >= 2 and variant not in merged:
                    merged.append(variant)
            result[mention] = merged[:4]
        return result
