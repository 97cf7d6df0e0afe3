"""
Entity Resolver & Query Planner

Free-text question -> typed anchors, unresolved mentions and follow-ups.
"""

from .mentions import (
    LexicalExtractor,
    MentionExtractor,
    MentionExtractorChain,
    RescueExtractor,
    SearchVariantExpander,
    StructuredExtractor,
    extract_structured_mentions,
    split_fallback_mentions,
)
from .planner import QueryPlanner, dedupe_anchors, derive_followups, filter_unresolved_mentions
from .scoring import ScoringWeights, SimilarityScorer

__all__ = [
    'LexicalExtractor',
    'MentionExtractor',
    'MentionExtractorChain',
    'RescueExtractor',
    'SearchVariantExpander',
    'StructuredExtractor',
    'extract_structured_mentions',
    'split_fallback_mentions',
    'QueryPlanner',
    'dedupe_anchors',
    'derive_followups',
    'filter_unresolved_mentions',
    'ScoringWeights',
    'SimilarityScorer',
]
