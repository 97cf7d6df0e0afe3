"""
Data Models

Pydantic models for the evidence graph, source results, plans, bridge
analysis, run events and ranking.
"""

from .data_models import (
    GraphNode, GraphEdge, SankeyRow,
    SearchHit, TargetAssociation, PathwayHit, KnownDrug, ActivityDrug,
    DrugTargetHint, InteractionNode, InteractionEdge, InteractionNetwork,
    Article, Trial, LiteratureBundle,
    Mention, Constraint, Anchor, Followup, QueryPlan, ExtractedMentions, MentionVariantItem,
    MentionVariants,
    BridgeAnchor, PairOutcome, BridgeAnalysis,
    PhaseStatus, GraphPatch, RunErrorEvent, StreamEvent,
    RankingRow, EvidenceRef, RankedTarget, SystemSummary, RankingResponse,
    RankingWeights, ScoreBreakdown, ScoredTarget, RecommendedTarget,
    MechanismThread, HypothesisResponse,
    RunRequest,
    SOURCE_NAMES, PHASES,
)

__all__ = [
    'GraphNode', 'GraphEdge', 'SankeyRow',
    'SearchHit', 'TargetAssociation', 'PathwayHit', 'KnownDrug', 'ActivityDrug',
    'DrugTargetHint', 'InteractionNode', 'InteractionEdge', 'InteractionNetwork',
    'Article', 'Trial', 'LiteratureBundle',
    'Mention', 'Constraint', 'Anchor', 'Followup', 'QueryPlan', 'ExtractedMentions',
    'MentionVariantItem', 'MentionVariants',
    'BridgeAnchor', 'PairOutcome', 'BridgeAnalysis',
    'PhaseStatus', 'GraphPatch', 'RunErrorEvent', 'StreamEvent',
    'RankingRow', 'EvidenceRef', 'RankedTarget', 'SystemSummary', 'RankingResponse',
    'RankingWeights', 'ScoreBreakdown', 'ScoredTarget', 'RecommendedTarget',
    'MechanismThread', 'HypothesisResponse',
    'RunRequest',
    'SOURCE_NAMES', 'PHASES',
]
