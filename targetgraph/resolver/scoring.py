"""
Candidate Scoring

String similarity plus entity-type preference, kept behind a small strategy
object so weights and cutoffs can be tuned without touching the planner.
"""

import re
from dataclasses import dataclass
from typing import Optional

from .text import (
    alnum_compact,
    has_disease_cue,
    is_generic_mechanism_mention,
    is_likely_symbol_mention,
    is_measurement_like,
    normalize,
    target_symbol_hint_boost,
    token_initials,
    tokenize,
)

TARGET_LIKE_TYPES = ('target', 'protein', 'molecule')
DRUG_LIKE_TYPES = ('drug', 'intervention')


@dataclass(frozen=True)
class ScoringWeights:
    """Documented weights used by :class:`SimilarityScorer`."""
    exact: float = 1.0
    prefix: float = 0.88
    containment: float = 0.74
    compact_prefix: float = 0.9
    initials_single: float = 0.94
    token_prefix: float = 0.81
    initials_multi: float = 0.92

    measurement_penalty: float = -1.2
    requested_target_bonus: float = 0.35
    requested_target_disease_penalty: float = -0.45
    requested_drug_bonus: float = 0.3
    requested_drug_disease_penalty: float = -0.3
    symbol_bonus: float = 0.28
    symbol_disease_penalty: float = -0.35
    disease_cue_bonus: float = 0.42
    disease_cue_other_penalty: float = -0.24


class SimilarityScorer:
    """
    Scores search hits against the mention they were found for.

    score = similarity + entity preference (+ symbol hint for targets).
    Cutoffs are length dependent: one-token mentions need a closer match.
    """

    def __init__(self, weights: Optional[ScoringWeights] = None):
        self.weights = weights or ScoringWeights()

    def similarity(self, query: str, candidate: str) -> float:
        w = self.weights
        q = normalize(query)
        c = normalize(candidate)
        if not q or not c:
            return 0.0
        if q == c:
            return w.exact
        if c.startswith(q):
            return w.prefix
        if q in c or c in q:
            return w.containment

        q_compact = alnum_compact(q)
        c_compact = alnum_compact(c)
        if q_compact and q_compact == c_compact:
            return w.exact
        if q_compact and c_compact.startswith(q_compact) and len(q_compact) >= 3:
            return w.compact_prefix

        q_tokens = tokenize(q)
        c_tokens = tokenize(c)
        if not q_tokens or not c_tokens:
            return 0.0

        if len(q_tokens) == 1:
            single = alnum_compact(q_tokens[0])
            if len(single) >= 3 and len(c_tokens) >= 2 and single == token_initials(c_tokens):
                return w.initials_single
            if any(alnum_compact(t) == single or alnum_compact(t).startswith(single) for t in c_tokens):
                return w.token_prefix
        if len(q_tokens) >= 2 and len(c_tokens) >= 2:
            initials = token_initials(q_tokens)
            if len(initials) >= 2 and initials == token_initials(c_tokens):
                return w.initials_multi

        c_set = set(c_tokens)
        overlap = sum(1 for token in q_tokens if token in c_set)
        if overlap == 0:
            return 0.0
        precision = overlap / len(q_tokens)
        recall = overlap / len(c_tokens)
        return (2 * precision * recall) / max(precision + recall, 1e-6)

    def entity_preference(
        self,
        mention: str,
        requested_type: str,
        entity_type: str,
        name: str,
        description: Optional[str] = None,
    ) -> float:
        w = self.weights
        if entity_type == 'disease' and is_measurement_like(name, description):
            return w.measurement_penalty

        if requested_type in TARGET_LIKE_TYPES:
            if entity_type == 'target':
                return w.requested_target_bonus
            if entity_type == 'disease':
                return w.requested_target_disease_penalty
        if requested_type in DRUG_LIKE_TYPES:
            if entity_type == 'drug':
                return w.requested_drug_bonus
            if entity_type == 'disease':
                return w.requested_drug_disease_penalty

        if requested_type == 'unknown':
            if is_likely_symbol_mention(mention):
                if entity_type in ('target', 'drug'):
                    return w.symbol_bonus
                if entity_type == 'disease':
                    return w.symbol_disease_penalty
            if has_disease_cue(mention):
                return w.disease_cue_bonus if entity_type == 'disease' else w.disease_cue_other_penalty
        return 0.0

    @staticmethod
    def symbol_hint(mention: str, hit) -> float:
        """Bonus when a gene-symbol-shaped mention appears in a target hit."""
        return target_symbol_hint_boost(mention, hit.name, hit.description)

    def candidate_cutoff(self, mention: str, entity_type: str) -> float:
        """Minimum score for a search hit to be kept as a candidate at all."""
        token_count = len(tokenize(mention))
        generic = is_generic_mechanism_mention(mention)
        if entity_type == 'disease':
            if token_count <= 1:
                lowered = mention.strip().lower()
                return 0.58 if re.match(r"^[a-z]{4,}$", lowered) else 0.5
            return 0.7 if generic else 0.34
        if token_count <= 1:
            return 0.52
        if generic:
            return 0.46 if is_likely_symbol_mention(mention) else 0.72
        return 0.4

    @staticmethod
    def anchor_threshold(mention: str, requested_type: str) -> float:
        """Minimum score for the best candidate to become an anchor."""
        token_count = len(tokenize(mention))
        unknown = requested_type == 'unknown'
        if token_count <= 1:
            return 0.56 if unknown else 0.5
        if token_count == 2:
            return 0.34 if unknown else 0.3
        return 0.24
