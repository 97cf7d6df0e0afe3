"""
Pydantic Data Models

Typed models for the evidence graph, source client results, query plans,
bridge analysis, run status/events, ranking and hypotheses.
"""

from typing import Dict, List, Optional, Literal, Any, Union
from pydantic import BaseModel, ConfigDict, Field


NodeType = Literal['disease', 'target', 'pathway', 'drug', 'interaction']
EdgeType = Literal['disease_target', 'target_pathway', 'target_drug', 'target_target', 'disease_disease']
SourceName = Literal['opentargets', 'reactome', 'string', 'chembl', 'biomcp', 'openai']
HealthState = Literal['green', 'yellow', 'red']
PhaseName = Literal['P0', 'P1', 'P2', 'P3', 'P4', 'P5', 'P6']
EntityType = Literal['disease', 'target', 'drug']
MentionType = Literal[
    'disease', 'target', 'drug', 'intervention', 'pathway', 'protein',
    'molecule', 'effect', 'phenotype', 'anatomy', 'unknown'
]

SOURCE_NAMES = ('opentargets', 'reactome', 'string', 'chembl', 'biomcp', 'openai')
PHASES = ('P0', 'P1', 'P2', 'P3', 'P4', 'P5', 'P6')


# =============================================================================
# Evidence Graph
# =============================================================================

class GraphNode(BaseModel):
    """Node of the evidence graph; id is derived from (type, primary_id)."""
    id: str = Field(..., description="Deterministic id '{type}:{primary_id}'")
    type: NodeType = Field(..., description="Entity type")
    primary_id: str = Field(..., description="Source identifier (EFO, ENSG, R-HSA, CHEMBL, symbol)")
    label: str = Field(..., description="Short display label")
    score: float = Field(0.0, ge=0.0, le=1.0, description="Evidence score (0-1)")
    size: float = Field(20.0, ge=0.0, description="Render size hint")
    meta: Dict[str, Any] = Field(default_factory=dict, description="Per-phase metadata")


class GraphEdge(BaseModel):
    """Edge of the evidence graph; id is derived from (source, target, type)."""
    id: str = Field(..., description="Deterministic id '{source}→{target}:{type}'")
    source: str = Field(..., description="Source node id")
    target: str = Field(..., description="Target node id")
    type: EdgeType = Field(..., description="Relation type")
    weight: float = Field(0.5, ge=0.0, le=1.0, description="Evidence weight (0-1)")
    meta: Dict[str, Any] = Field(default_factory=dict)


class SankeyRow(BaseModel):
    """Flow row for mechanism sankey rendering."""
    source: str
    target: str
    value: float = Field(..., ge=0.0)
    source_type: str
    target_type: str


# =============================================================================
# Source Client Results
# =============================================================================

class SearchHit(BaseModel):
    """Entity search hit (disease, target or drug)."""
    id: str
    name: str
    description: Optional[str] = None
    entity: Optional[str] = Field(None, description="Entity kind reported by the source")


class TargetAssociation(BaseModel):
    """Disease-target association summary row."""
    target_id: str
    target_symbol: str
    target_name: str = ""
    association_score: float = Field(0.0, description="Overall association score")


class PathwayHit(BaseModel):
    """Reactome pathway containing a gene."""
    id: str
    name: str
    species: Optional[str] = None


class KnownDrug(BaseModel):
    """Clinical-stage drug acting on a target."""
    drug_id: str
    name: str
    phase: Optional[float] = None
    status: Optional[str] = None
    mechanism_of_action: Optional[str] = None
    drug_type: Optional[str] = None


class ActivityDrug(BaseModel):
    """Compound with measured activity against a target."""
    molecule_id: str
    name: str
    activity_type: Optional[str] = None
    potency: Optional[float] = Field(None, description="Potency value (nM when units are nM)")
    potency_units: Optional[str] = None


class DrugTargetHint(BaseModel):
    """Target suggested by a drug mechanism record."""
    id: str
    symbol: str
    name: str = ""
    description: Optional[str] = None
    action_type: Optional[str] = None


class InteractionNode(BaseModel):
    id: str
    symbol: str
    annotation: Optional[str] = None


class InteractionEdge(BaseModel):
    source_symbol: str
    target_symbol: str
    score: float = Field(0.0, ge=0.0, le=1.0)
    evidence: List[str] = Field(default_factory=list)


class InteractionNetwork(BaseModel):
    """STRING neighborhood around a symbol set."""
    nodes: List[InteractionNode] = Field(default_factory=list)
    edges: List[InteractionEdge] = Field(default_factory=list)


class Article(BaseModel):
    id: str = Field(..., description="PMID or DOI")
    title: str = ""
    source: Optional[str] = None
    url: Optional[str] = None


class Trial(BaseModel):
    id: str = Field(..., description="NCT identifier")
    title: str = ""
    status: Optional[str] = None
    url: Optional[str] = None


class LiteratureBundle(BaseModel):
    """Literature and trial snippets for a disease/target pair."""
    articles: List[Article] = Field(default_factory=list)
    trials: List[Trial] = Field(default_factory=list)


# =============================================================================
# Query Plan
# =============================================================================

class Mention(BaseModel):
    """Raw text span extracted from a query."""
    text: str
    type: MentionType = 'unknown'


class Constraint(BaseModel):
    text: str
    polarity: Literal['include', 'avoid', 'optimize'] = 'include'


class Anchor(BaseModel):
    """Typed entity resolved from a query mention."""
    mention: str
    requested_type: MentionType = 'unknown'
    entity_type: EntityType
    id: str
    name: str
    description: Optional[str] = None
    confidence: float = Field(..., ge=0.0, le=1.0)
    source: Literal['opentargets', 'chembl'] = 'opentargets'


class Followup(BaseModel):
    question: str = Field(..., max_length=180)
    reason: str = Field(..., max_length=200)
    seed_entity_ids: List[str] = Field(default_factory=list, max_length=8)


class QueryPlan(BaseModel):
    """Resolver output consumed by the orchestrator and bridge analyzer."""
    query: str
    intent: str = 'multihop-discovery'
    anchors: List[Anchor] = Field(default_factory=list)
    constraints: List[Constraint] = Field(default_factory=list)
    unresolved_mentions: List[str] = Field(default_factory=list)
    followups: List[Followup] = Field(default_factory=list, max_length=8)
    rationale: str = ''


class ExtractedMentions(BaseModel):
    """Strict schema for structured (LLM) mention extraction."""
    model_config = ConfigDict(extra='forbid')

    intent: str
    mentions: List[Mention]
    constraints: List[Constraint]
    rationale: str


class MentionVariantItem(BaseModel):
    model_config = ConfigDict(extra='forbid')

    mention: str
    queries: List[str]


class MentionVariants(BaseModel):
    """Strict schema for LLM search-variant expansion."""
    model_config = ConfigDict(extra='forbid')

    items: List[MentionVariantItem]


# =============================================================================
# Bridge Analysis
# =============================================================================

class BridgeAnchor(BaseModel):
    """Anchor placed into the graph for path finding."""
    key: str = Field(..., description="Stable anchor key, e.g. 'disease:EFO_0000270'")
    label: str
    entity_type: Literal['disease', 'target', 'drug', 'unknown'] = 'unknown'
    id: Optional[str] = None
    origin: Literal['graph', 'plan', 'query'] = 'plan'
    confidence: Optional[float] = None
    node_id: Optional[str] = Field(None, description="Matched graph node")
    virtual_node_id: Optional[str] = Field(None, description="Placeholder node when unresolved")

    @property
    def endpoint_id(self) -> str:
        return self.node_id or self.virtual_node_id or self.key


class PairOutcome(BaseModel):
    pair_id: str
    from_key: str
    to_key: str
    from_label: str
    to_label: str
    from_node_id: str
    to_node_id: str
    status: Literal['connected', 'no_connection']
    node_ids: List[str] = Field(default_factory=list, description="Path nodes, endpoints included")
    edge_ids: List[str] = Field(default_factory=list)
    intermediate_hops: int = 0
    reason: str = ''


class BridgeAnalysis(BaseModel):
    status: Literal['connected', 'no_connection', 'pending']
    summary: str
    anchors: List[BridgeAnchor] = Field(default_factory=list)
    pairs: List[PairOutcome] = Field(default_factory=list)
    virtual_nodes: List[GraphNode] = Field(default_factory=list)
    virtual_edges: List[GraphEdge] = Field(default_factory=list)
    active_pair_id: Optional[str] = None
    active_path_summary: Optional[str] = None
    query_trail: List[str] = Field(default_factory=list, description="Joined node ids along all pairs")
    query_trail_summary: Optional[str] = None


# =============================================================================
# Run Status & Events
# =============================================================================

class PhaseStatus(BaseModel):
    phase: PhaseName
    message: str
    pct: float = Field(..., ge=0.0, le=100.0)
    counts: Dict[str, int] = Field(default_factory=dict)
    source_health: Dict[str, HealthState] = Field(default_factory=dict)
    partial: bool = False
    elapsed_ms: int = Field(0, ge=0)
    timeout_ms: Optional[int] = None


class GraphPatch(BaseModel):
    """Additive set of new or changed nodes and new edges."""
    nodes: List[GraphNode] = Field(default_factory=list)
    edges: List[GraphEdge] = Field(default_factory=list)
    stats: Dict[str, int] = Field(default_factory=dict)


class RunErrorEvent(BaseModel):
    phase: str
    message: str
    recoverable: bool = True


EventName = Literal[
    'status', 'graph_patch', 'sankey', 'bridge', 'ranking',
    'enrichment_ready', 'error', 'done'
]


class StreamEvent(BaseModel):
    """Transport-agnostic event envelope."""
    event: EventName
    run_id: str
    seq: int = Field(..., ge=0)
    data: Any = None


# =============================================================================
# Ranking & Hypothesis
# =============================================================================

class RankingRow(BaseModel):
    """Per-target evidence row assembled after P5."""
    id: str
    symbol: str
    pathway_ids: List[str] = Field(default_factory=list)
    open_targets_evidence: float = 0.0
    drug_actionability: float = 0.0
    network_centrality: float = 0.0
    literature_support: float = 0.0
    drug_count: int = 0
    interaction_count: int = 0
    article_count: int = 0
    trial_count: int = 0


class EvidenceRef(BaseModel):
    model_config = ConfigDict(extra='forbid')

    field: str
    value: Union[str, float, bool]


class RankedTarget(BaseModel):
    model_config = ConfigDict(extra='forbid')

    id: str
    symbol: str
    rank: int = Field(..., ge=1)
    score: float
    reasons: List[str]
    caveats: List[str]
    pathway_hooks: List[str]
    drug_hooks: List[str]
    interaction_hooks: List[str]
    evidence_refs: List[EvidenceRef]


class SystemSummary(BaseModel):
    model_config = ConfigDict(extra='forbid')

    key_pathways: List[str]
    actionable_targets: List[str]
    data_gaps: List[str]


class RankingResponse(BaseModel):
    model_config = ConfigDict(extra='forbid')

    ranked_targets: List[RankedTarget]
    system_summary: SystemSummary
    refined: bool = Field(False, description="True when produced by the LLM pass")


class RankingWeights(BaseModel):
    open_targets_evidence: float = 0.4
    drug_actionability: float = 0.25
    network_centrality: float = 0.2
    literature_support: float = 0.15


class ScoreBreakdown(BaseModel):
    model_config = ConfigDict(extra='forbid')

    open_targets_evidence: float
    drug_actionability: float
    network_centrality: float
    literature_support: float


class ScoredTarget(BaseModel):
    id: str
    symbol: str
    score: float
    score_breakdown: ScoreBreakdown


class RecommendedTarget(BaseModel):
    model_config = ConfigDict(extra='forbid')

    id: str
    symbol: str
    score: float
    score_breakdown: ScoreBreakdown
    pathway_id: str


class MechanismThread(BaseModel):
    model_config = ConfigDict(extra='forbid')

    claim: str
    evidence_bullets: List[str]
    counterfactuals: List[str]
    caveats: List[str]
    next_experiments: List[str]


class HypothesisResponse(BaseModel):
    model_config = ConfigDict(extra='forbid')

    recommended_targets: List[RecommendedTarget]
    mechanism_thread: MechanismThread
    missing_inputs: List[str]


# =============================================================================
# Run Request
# =============================================================================

class RunRequest(BaseModel):
    """Parameters of one evidence run."""
    query: str = Field(..., min_length=1)
    disease_id_hint: Optional[str] = None
    session_id: Optional[str] = None
    max_targets: int = Field(20, ge=1, le=40)
    seed_targets: List[str] = Field(default_factory=list)
    plan_query: bool = Field(True, description="Resolve anchors before P0")
    include_pathways: bool = True
    include_drugs: bool = True
    include_interactions: bool = True
    include_literature: bool = True
    novelty_to_actionability: Optional[float] = Field(None, ge=0.0, le=100.0)
    risk_tolerance: Optional[float] = Field(None, ge=0.0, le=100.0)
