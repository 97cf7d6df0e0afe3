"""
Evidence Orchestrator

Runs the ordered phase pipeline for one RunContext:

    P0 resolve disease -> P1 targets -> P2 pathways -> P3 drugs
    -> P4 interactions -> P5 literature/trials -> P6 rank + done

Each phase fans out in small settle-all batches under per-call timeouts and
a phase deadline, merges results into the run's GraphStore, emits patches
and status updates, and degrades source health instead of failing. P6
always runs.
"""

import asyncio
import logging
import random
import re
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..models.data_models import (
    ActivityDrug,
    GraphEdge,
    GraphNode,
    KnownDrug,
    QueryPlan,
    RankingRow,
    TargetAssociation,
)
from ..utils.batch_queries import iter_batches, parallel_query, settle_all
from .config import Config, get_config
from .exceptions import PhaseExecutionError, TargetGraphException
from .graph_store import clean_text, make_edge_id, make_node_id, normalize_score, preferred_label
from .logging_config import log_with_context
from .metrics import record_phase
from .ranking import RankingEngine, build_ranking_row, normalize_weights, rank_targets_fallback
from .run_context import LiteratureCounts, RunContext

logger = logging.getLogger(__name__)

DISEASE_ID_PATTERN = re.compile(r"^(EFO|MONDO|ORPHANET|DOID|HP)[_:]", re.IGNORECASE)

MAX_SECONDARY_DISEASES = 3
MAX_SEED_TARGETS = 20
TARGET_BATCH = 5
PATHWAY_BATCH = 4
DRUG_BATCH = 2
LITERATURE_BATCH = 3
DRUG_TARGETS = 10
INTERACTION_SEEDS = 12
PATHWAYS_PER_TARGET = 8
DRUGS_PER_SOURCE = 8

SOURCE_ERRORS = (TargetGraphException, asyncio.TimeoutError)


def query_node_id(query: str) -> str:
    return "QUERY_" + re.sub(r"\s+", "_", query.strip())


class EvidenceOrchestrator:
    """
    Phase pipeline over a source client manager.

    Args:
        sources: Object exposing ``opentargets``, ``reactome``, ``string``,
            ``chembl`` and ``biomcp`` clients
        planner: Optional QueryPlanner used before P0
        ranking: Optional RankingEngine for the P6 refinement pass
        config: Configuration (defaults to the global config)
    """

    def __init__(self, sources, planner=None, ranking: Optional[RankingEngine] = None,
                 config: Optional[Config] = None):
        self.sources = sources
        self.planner = planner
        self.config = config or get_config()
        self.ranking = ranking or RankingEngine.from_config(self.config)

    async def run(self, ctx: RunContext) -> Dict[str, int]:
        request = ctx.request
        ctx.plan = await self._plan(ctx)

        await self._phase(ctx, 'P0', 'opentargets', self._resolve_disease)
        await self._phase(ctx, 'P1', 'opentargets', self._targets)

        if request.include_pathways:
            await self._phase(ctx, 'P2', 'reactome', self._pathways)
        else:
            ctx.status('P2', "Pathway expansion skipped by build profile", 52, partial=True)
            ctx.emit_sankey()

        if request.include_drugs:
            await self._phase(ctx, 'P3', 'chembl', self._drugs)
        else:
            ctx.status('P3', "Drug enrichment skipped by build profile", 68, partial=True)

        if request.include_interactions:
            await self._phase(ctx, 'P4', 'string', self._interactions)
        else:
            ctx.status('P4', "Interaction overlay skipped by build profile", 80, partial=True)

        if request.include_literature:
            await self._phase(ctx, 'P5', 'biomcp', self._literature)
        else:
            ctx.status('P5', "Literature/trials enrichment skipped by build profile", 90, partial=True)

        await self._phase(ctx, 'P6', 'openai', self._rank)

        stats = {**ctx.store.stats(), **ctx.counts(), 'elapsed_ms': ctx.elapsed_ms}
        ctx.status('P6', "Build complete", 100, counts=stats)
        ctx.emit('done', {'stats': stats})
        return stats

    # -------------------------------------------------------------------------
    # Phase plumbing
    # -------------------------------------------------------------------------

    async def _phase(self, ctx: RunContext, phase: str, source: str,
                     body: Callable[[RunContext], Awaitable[None]]) -> None:
        """
        Run one phase body.

        Source errors that escape the body degrade ``source`` and become a
        recoverable error event; anything else is a programming error.
        """
        started = time.perf_counter()
        log_with_context(logger, "info", "phase_started", run_id=ctx.run_id, phase=phase)
        try:
            await body(ctx)
        except SOURCE_ERRORS as e:
            ctx.degrade(source, 'yellow', phase, type(e).__name__)
            ctx.partial_phases.add(phase)
            ctx.error(phase, f"{source} phase degraded: {str(e) or type(e).__name__}")
        except Exception as e:
            raise PhaseExecutionError(ctx.run_id, phase, e) from e
        duration = time.perf_counter() - started
        partial = phase in ctx.partial_phases
        record_phase(phase, duration, partial)
        log_with_context(
            logger,
            "info",
            "phase_completed",
            run_id=ctx.run_id,
            phase=phase,
            partial=partial,
            duration_ms=round(duration * 1000, 1),
            **ctx.counts(),
        )

    async def _pause(self, scale: float = 1.0) -> None:
        low = self.config.batch_min_delay_ms * scale
        high = self.config.batch_max_delay_ms * scale
        if high <= 0:
            return
        await asyncio.sleep(random.uniform(low, high) / 1000)

    async def _call(self, operation: Awaitable[Any], timeout: float) -> Any:
        return await asyncio.wait_for(operation, timeout=timeout)

    async def _plan(self, ctx: RunContext) -> QueryPlan:
        request = ctx.request
        if not request.plan_query or self.planner is None:
            return QueryPlan(query=request.query)
        try:
            return await self.planner.plan(request.query)
        except SOURCE_ERRORS as e:
            log_with_context(logger, "warning", "plan_failed", run_id=ctx.run_id, error_type=type(e).__name__)
            return QueryPlan(query=request.query)

    # -------------------------------------------------------------------------
    # P0: disease
    # -------------------------------------------------------------------------

    async def _resolve_disease(self, ctx: RunContext) -> None:
        request = ctx.request
        ctx.status('P0', "Resolving disease query", 5)

        plan_diseases = [a for a in ctx.anchors if a.entity_type == 'disease']
        hint = request.disease_id_hint or next(
            (a.id for a in plan_diseases if DISEASE_ID_PATTERN.match(a.id)), None
        )
        description = None
        via_hint = bool(hint)

        try:
            if hint:
                disease_id = hint
                planned = next((a for a in plan_diseases if a.id == hint), None)
                name = planned.name if planned else request.query
                description = planned.description if planned else None
                if planned is None:
                    try:
                        hits = await self._call(
                            self.sources.opentargets.search_diseases(request.query, 12), ctx.phase_timeout
                        )
                        exact = next((h for h in hits if h.id == hint), None)
                        if exact is not None:
                            name = exact.name or name
                            description = exact.description
                    except SOURCE_ERRORS as e:
                        ctx.degrade('opentargets', 'yellow', 'P0', type(e).__name__)
            else:
                hits = await self._call(
                    self.sources.opentargets.search_diseases(request.query, 8), ctx.phase_timeout
                )
                disease = next((h for h in hits if DISEASE_ID_PATTERN.match(h.id)), None) or (hits[0] if hits else None)
                disease_id = disease.id if disease else query_node_id(request.query)
                name = disease.name if disease else request.query
                description = disease.description if disease else None
        except SOURCE_ERRORS as e:
            ctx.degrade('opentargets', 'red', 'P0', type(e).__name__)
            ctx.error('P0', f"Disease resolution failed: {str(e) or type(e).__name__}")
            ctx.disease_id = query_node_id(request.query)
            ctx.disease_name = request.query
            ctx.merge([GraphNode(
                id=make_node_id('disease', ctx.disease_id),
                type='disease',
                primary_id=ctx.disease_id,
                label=preferred_label([request.query], ctx.disease_id, 40),
                score=0.5,
                size=80,
                meta={'degraded': True, 'role': 'query_anchor_primary', 'queryAnchor': True},
            )])
            return

        ctx.disease_id = disease_id
        ctx.disease_name = name
        primary_id = make_node_id('disease', disease_id)
        nodes = [GraphNode(
            id=primary_id,
            type='disease',
            primary_id=disease_id,
            label=preferred_label([name], disease_id, 40),
            score=1.0,
            size=80,
            meta={
                'description': description,
                'displayName': name,
                'query': request.query,
                'role': 'query_anchor_primary',
                'queryAnchor': True,
            },
        )]
        edges = []
        secondary = [a for a in plan_diseases if a.id != disease_id][:MAX_SECONDARY_DISEASES]
        for anchor in secondary:
            node_id = make_node_id('disease', anchor.id)
            nodes.append(GraphNode(
                id=node_id,
                type='disease',
                primary_id=anchor.id,
                label=preferred_label([anchor.name], anchor.id, 40),
                score=normalize_score(anchor.confidence),
                size=60,
                meta={
                    'description': anchor.description,
                    'displayName': anchor.name,
                    'role': 'query_anchor_secondary',
                    'queryAnchor': True,
                },
            ))
            edges.append(GraphEdge(
                id=make_edge_id(primary_id, node_id, 'disease_disease'),
                source=primary_id,
                target=node_id,
                type='disease_disease',
                weight=0.2,
                meta={'source': 'query_anchor'},
            ))
        ctx.merge(nodes, edges)

        suffix = " via disease entity match" if via_hint else ""
        ctx.status('P0', f"Resolved to {name} ({disease_id}){suffix}", 12)

    # -------------------------------------------------------------------------
    # P1: targets
    # -------------------------------------------------------------------------

    def _seed_symbols(self, ctx: RunContext) -> List[str]:
        symbols = [a.name for a in ctx.anchors if a.entity_type == 'target']
        symbols += list(ctx.request.seed_targets)
        cleaned = [s.strip().upper() for s in symbols if len(s.strip()) >= 2]
        return list(dict.fromkeys(cleaned))[:MAX_SEED_TARGETS]

    async def _seeded_targets(self, ctx: RunContext, seeds: List[str]) -> List[TargetAssociation]:
        timeout = min(ctx.phase_timeout, 3.5)

        async def resolve(symbol: str) -> List[Any]:
            return await self.sources.opentargets.search_targets(symbol, 4)

        rows = []
        for outcome in await settle_all(resolve, seeds[:ctx.request.max_targets], timeout):
            symbol = outcome.item
            hits = outcome.value if outcome.ok else []
            best = next((h for h in hits if h.name.upper() == symbol), None) or (hits[0] if hits else None)
            if best is None:
                rows.append(TargetAssociation(
                    target_id=f"QUERY_TARGET_{symbol}", target_symbol=symbol,
                    target_name=symbol, association_score=0.38,
                ))
            else:
                rows.append(TargetAssociation(
                    target_id=best.id, target_symbol=symbol,
                    target_name=best.name, association_score=0.52,
                ))
        return rows

    async def _targets(self, ctx: RunContext) -> None:
        request = ctx.request
        ctx.status('P1', "Fetching target evidence from OpenTargets", 18)

        targets: List[TargetAssociation] = []
        try:
            targets = await self._call(
                self.sources.opentargets.get_disease_targets_summary(
                    ctx.disease_id, min(40, max(5, request.max_targets))
                ),
                ctx.phase_timeout,
            )
        except SOURCE_ERRORS as e:
            ctx.degrade('opentargets', 'yellow', 'P1', type(e).__name__)

        seeds = self._seed_symbols(ctx)
        if not targets and seeds:
            ctx.status(
                'P1', "No disease-target rows returned; switching to query-seeded targets", 22,
                counts={'seed_targets': len(seeds)}, partial=True,
            )
            targets = await self._seeded_targets(ctx, seeds)

        targets = targets[:request.max_targets]
        disease_node = make_node_id('disease', ctx.disease_id)
        enriched = 0
        for start in range(0, len(targets), TARGET_BATCH):
            nodes, edges = [], []
            for target in targets[start:start + TARGET_BATCH]:
                node_id = make_node_id('target', target.target_id)
                score = normalize_score(target.association_score)
                ctx.add_target(node_id, target.target_symbol)
                nodes.append(GraphNode(
                    id=node_id,
                    type='target',
                    primary_id=target.target_id,
                    label=preferred_label([target.target_symbol, target.target_name], target.target_id, 24),
                    score=score,
                    size=24 + score * 30,
                    meta={
                        'targetSymbol': target.target_symbol,
                        'targetName': target.target_name,
                        'displayName': target.target_name or target.target_symbol,
                        'openTargetsEvidence': score,
                        'stage': 'P1',
                    },
                ))
                edges.append(GraphEdge(
                    id=make_edge_id(disease_node, node_id, 'disease_target'),
                    source=disease_node,
                    target=node_id,
                    type='disease_target',
                    weight=score,
                    meta={'source': 'OpenTargets'},
                ))
            ctx.merge(nodes, edges)
            enriched += len(nodes)
            ctx.status('P1', f"{enriched}/{len(targets)} targets enriched", 30)
            await self._pause()

        if not ctx.target_node_ids:
            ctx.status(
                'P1', "No target evidence rows were available from disease or query-seeded retrieval", 30,
                counts={'targets': 0, 'seed_targets': len(seeds)}, partial=True,
            )
        ctx.emit_sankey()

    # -------------------------------------------------------------------------
    # P2: pathways
    # -------------------------------------------------------------------------

    async def _pathways(self, ctx: RunContext) -> None:
        ctx.status('P2', "Fetching pathways from Reactome", 36)
        seeded = ctx.target_node_ids[:ctx.request.max_targets]
        deadline = time.monotonic() + max(18.0, ctx.phase_timeout * 2)

        async def fetch(node_id: str):
            pathways = await self.sources.reactome.find_pathways_by_gene(ctx.symbol_by_node[node_id])
            return pathways[:PATHWAYS_PER_TARGET]

        degraded = 0
        truncated = False
        async for batch in iter_batches(fetch, seeded, PATHWAY_BATCH, min(ctx.phase_timeout, 4.5), deadline):
            nodes, edges = [], []
            for outcome in batch:
                if outcome.skipped:
                    truncated = True
                if not outcome.ok:
                    degraded += 1
                    continue
                for pathway in outcome.value:
                    pathway_node = make_node_id('pathway', pathway.id)
                    ctx.pathways_by_target[outcome.item].add(pathway.id)
                    nodes.append(GraphNode(
                        id=pathway_node,
                        type='pathway',
                        primary_id=pathway.id,
                        label=preferred_label([pathway.name], pathway.id, 34),
                        score=0.6,
                        size=22,
                        meta={
                            'displayName': clean_text(pathway.name) or pathway.id,
                            'species': pathway.species,
                            'stage': 'P2',
                        },
                    ))
                    edges.append(GraphEdge(
                        id=make_edge_id(outcome.item, pathway_node, 'target_pathway'),
                        source=outcome.item,
                        target=pathway_node,
                        type='target_pathway',
                        weight=0.65,
                        meta={'source': 'Reactome'},
                    ))
            ctx.merge(nodes, edges)
            counts = {**ctx.counts(), 'degraded_targets': degraded}
            ctx.status('P2', f"{counts['pathways']} pathways linked", 52, counts=counts, partial=degraded > 0)
            if not truncated:
                await self._pause()

        if degraded:
            ctx.degrade('reactome', 'yellow', 'P2', f"{degraded} target-level fetches degraded")
            if truncated:
                message = (f"Reactome pathway expansion partial: phase budget reached; "
                           f"{degraded} target-level fetches truncated/degraded")
            else:
                message = f"Reactome pathway expansion partial: {degraded} target-level fetches degraded"
            ctx.error('P2', message)
        elif not seeded:
            ctx.status('P2', "No targets to expand into pathways", 52)
        ctx.emit_sankey()

    # -------------------------------------------------------------------------
    # P3: drugs
    # -------------------------------------------------------------------------

    def _known_drug_graph(self, node_id: str, drug: KnownDrug) -> Tuple[GraphNode, GraphEdge]:
        drug_node = make_node_id('drug', drug.drug_id)
        score = normalize_score((drug.phase or 0) / 4)
        return (
            GraphNode(
                id=drug_node,
                type='drug',
                primary_id=drug.drug_id,
                label=preferred_label([drug.name], drug.drug_id, 28),
                score=score,
                size=18 + (drug.phase or 0) * 2,
                meta={
                    'displayName': drug.name,
                    'phase': drug.phase,
                    'status': drug.status,
                    'modality': drug.drug_type,
                    'mechanism': drug.mechanism_of_action,
                    'stage': 'P3',
                },
            ),
            GraphEdge(
                id=make_edge_id(node_id, drug_node, 'target_drug'),
                source=node_id,
                target=drug_node,
                type='target_drug',
                weight=score,
                meta={'source': 'OpenTargets'},
            ),
        )

    def _activity_drug_graph(self, node_id: str, drug: ActivityDrug) -> Tuple[GraphNode, GraphEdge]:
        drug_node = make_node_id('drug', drug.molecule_id)
        score = normalize_score(1 / (1 + drug.potency / 1000)) if drug.potency else 0.4
        return (
            GraphNode(
                id=drug_node,
                type='drug',
                primary_id=drug.molecule_id,
                label=preferred_label([drug.name], drug.molecule_id, 28),
                score=score,
                size=18,
                meta={
                    'displayName': drug.name,
                    'activityType': drug.activity_type,
                    'potency': drug.potency,
                    'potencyUnits': drug.potency_units,
                    'stage': 'P3',
                },
            ),
            GraphEdge(
                id=make_edge_id(node_id, drug_node, 'target_drug'),
                source=node_id,
                target=drug_node,
                type='target_drug',
                weight=score,
                meta={'source': 'ChEMBL'},
            ),
        )

    async def _drugs(self, ctx: RunContext) -> None:
        ctx.status('P3', "Fetching drugs from OpenTargets and ChEMBL", 58)
        seeded = ctx.target_node_ids[:DRUG_TARGETS]
        deadline = time.monotonic() + max(20.0, ctx.phase_timeout * 2)
        call_timeout = min(ctx.phase_timeout, 4.5)
        failures = {'opentargets': 0, 'chembl': 0}

        async def fetch(node_id: str):
            node = ctx.store.get_node(node_id)
            symbol = ctx.symbol_by_node.get(node_id)
            if node is None or not symbol:
                raise ValueError(f"missing target metadata for {node_id}")
            return await parallel_query({
                'known': lambda: self.sources.opentargets.get_known_drugs_for_target(
                    node.primary_id, DRUGS_PER_SOURCE
                ),
                'activity': lambda: self.sources.chembl.get_target_activity_drugs(symbol, DRUGS_PER_SOURCE),
            }, timeout=call_timeout)

        degraded = 0
        truncated = False
        async for batch in iter_batches(fetch, seeded, DRUG_BATCH, deadline=deadline):
            nodes, edges = [], []
            for outcome in batch:
                if outcome.skipped:
                    truncated = True
                if not outcome.ok:
                    degraded += 1
                    continue
                node_id = outcome.item
                results = outcome.value
                pairs = []
                if results['known'].ok:
                    pairs += [(d.drug_id, self._known_drug_graph(node_id, d)) for d in results['known'].value]
                else:
                    failures['opentargets'] += 1
                if results['activity'].ok:
                    pairs += [(d.molecule_id, self._activity_drug_graph(node_id, d))
                              for d in results['activity'].value]
                else:
                    failures['chembl'] += 1
                if not results['known'].ok and not results['activity'].ok:
                    degraded += 1
                for drug_id, (node, edge) in pairs:
                    ctx.drugs_by_target[node_id].add(drug_id)
                    nodes.append(node)
                    edges.append(edge)
            ctx.merge(nodes, edges)
            counts = {**ctx.counts(), 'degraded_targets': degraded}
            ctx.status('P3', f"{counts['drugs']} compounds linked", 68, counts=counts, partial=degraded > 0)
            if not truncated:
                await self._pause(0.5)

        for source, failed in failures.items():
            if failed:
                ctx.degrade(source, 'yellow', 'P3', f"{failed} drug lookups failed")
        if degraded:
            ctx.degrade('chembl', 'yellow', 'P3', f"{degraded} target-level fetches degraded")
            if truncated:
                message = (f"Drug enrichment partial: phase budget reached; "
                           f"{degraded} target-level fetches truncated/degraded")
            else:
                message = f"Drug enrichment partial: {degraded} target-level fetches degraded"
            ctx.error('P3', message)
        ctx.emit_sankey()

    # -------------------------------------------------------------------------
    # P4: interactions
    # -------------------------------------------------------------------------

    async def _interactions(self, ctx: RunContext) -> None:
        ctx.status('P4', "Fetching STRING interaction neighborhood", 72)
        symbols = [
            ctx.symbol_by_node[node_id]
            for node_id in ctx.target_node_ids[:INTERACTION_SEEDS]
            if ctx.symbol_by_node.get(node_id)
        ]
        added = 0
        if len(symbols) > 1:
            try:
                network = await self._call(
                    self.sources.string.get_interaction_network(
                        symbols, self.config.string_confidence, self.config.string_max_neighbors_per_seed
                    ),
                    min(ctx.phase_timeout, 5.0),
                )
            except SOURCE_ERRORS as e:
                ctx.degrade('string', 'yellow', 'P4', type(e).__name__)
                ctx.partial_phases.add('P4')
                ctx.error('P4', f"STRING interactions degraded: {str(e) or type(e).__name__}")
                network = None

            if network is not None:
                nodes, edges = [], []
                for item in network.nodes[:self.config.string_max_added_nodes]:
                    if ctx.target_for_symbol(item.symbol):
                        continue
                    nodes.append(GraphNode(
                        id=make_node_id('interaction', item.symbol),
                        type='interaction',
                        primary_id=item.symbol,
                        label=preferred_label([item.symbol, item.annotation], item.id, 24),
                        score=0.35,
                        size=16,
                        meta={
                            'displayName': item.annotation or item.symbol,
                            'annotation': item.annotation,
                            'stage': 'P4',
                        },
                    ))
                for item in network.edges[:self.config.string_max_added_edges]:
                    source_target = ctx.target_for_symbol(item.source_symbol)
                    target_target = ctx.target_for_symbol(item.target_symbol)
                    source_id = source_target or make_node_id('interaction', item.source_symbol)
                    target_id = target_target or make_node_id('interaction', item.target_symbol)
                    if source_id == target_id:
                        continue
                    edges.append(GraphEdge(
                        id=make_edge_id(source_id, target_id, 'target_target'),
                        source=source_id,
                        target=target_id,
                        type='target_target',
                        weight=normalize_score(item.score),
                        meta={'source': 'STRING', 'evidence': item.evidence},
                    ))
                    for endpoint in (source_target, target_target):
                        if endpoint:
                            ctx.interactions_by_target[endpoint] = ctx.interactions_by_target.get(endpoint, 0) + 1
                ctx.merge(nodes, edges)
                added = len(edges)

        ctx.status('P4', f"{added} interaction edges added", 80,
                   counts={**ctx.counts(), 'interaction_edges': added}, partial='P4' in ctx.partial_phases)

    # -------------------------------------------------------------------------
    # P5: literature
    # -------------------------------------------------------------------------

    def _drug_hint(self, ctx: RunContext, node_id: str) -> Optional[str]:
        for drug_id in ctx.drugs_by_target.get(node_id, ()):
            node = ctx.store.get_node(make_node_id('drug', drug_id))
            if node is not None and node.label:
                return node.label
        return None

    async def _literature(self, ctx: RunContext) -> None:
        ctx.status('P5', "Fetching literature and trial snippets", 84)
        focus = ctx.target_node_ids[:self.config.max_literature_targets]
        deadline = time.monotonic() + self.config.p5_budget_ms / 1000
        per_target = min(ctx.phase_timeout, self.config.p5_per_target_timeout_ms / 1000)

        async def fetch(node_id: str):
            return await self.sources.biomcp.get_literature_and_trials(
                ctx.disease_name, ctx.symbol_by_node[node_id], self._drug_hint(ctx, node_id)
            )

        links: Dict[str, Dict[str, List[Dict[str, Any]]]] = {}
        failed = 0
        skipped = 0
        async for batch in iter_batches(fetch, focus, LITERATURE_BATCH, per_target, deadline):
            changed = []
            for outcome in batch:
                if outcome.skipped:
                    skipped += 1
                    continue
                if not outcome.ok:
                    failed += 1
                    continue
                bundle = outcome.value
                links[outcome.item] = {
                    'articles': [a.model_dump() for a in bundle.articles],
                    'trials': [t.model_dump() for t in bundle.trials],
                }
                ctx.literature_by_target[outcome.item] = LiteratureCounts(
                    article_count=len(bundle.articles), trial_count=len(bundle.trials)
                )
                node = ctx.store.get_node(outcome.item)
                if node is not None:
                    changed.append(node.model_copy(update={'meta': {
                        **node.meta,
                        'articleCount': len(bundle.articles),
                        'trialCount': len(bundle.trials),
                    }}))
            ctx.merge(changed)
            ctx.status(
                'P5',
                f"{len(links)}/{len(focus)} targets enriched with literature/trials",
                90,
                counts={'literature_targets': len(links), 'degraded_targets': failed, 'skipped_targets': skipped},
                partial=failed > 0 or skipped > 0,
            )
            if not skipped:
                await self._pause()

        if failed or skipped:
            ctx.degrade('biomcp', 'yellow', 'P5', f"{failed} failed, {skipped} skipped")
            if skipped:
                message = f"BioMCP enrichment partial: {failed} timed out, {skipped} skipped by phase budget"
            else:
                message = f"BioMCP enrichment partial: {failed} target enrichments timed out"
            ctx.error('P5', message)
        ctx.emit('enrichment_ready', {'links_by_node_id': links})

    # -------------------------------------------------------------------------
    # P6: ranking
    # -------------------------------------------------------------------------

    def ranking_rows(self, ctx: RunContext) -> List[RankingRow]:
        rows = []
        for node_id in ctx.target_node_ids:
            node = ctx.store.get_node(node_id)
            if node is None:
                continue
            literature = ctx.literature_by_target.get(node_id)
            rows.append(build_ranking_row(
                target_id=node.primary_id,
                symbol=ctx.symbol_by_node.get(node_id) or node.label,
                association_score=node.meta.get('openTargetsEvidence', node.score),
                pathway_ids=sorted(ctx.pathways_by_target.get(node_id, ())),
                drug_count=len(ctx.drugs_by_target.get(node_id, ())),
                interaction_count=ctx.interactions_by_target.get(node_id, 0),
                article_count=literature.article_count if literature else 0,
                trial_count=literature.trial_count if literature else 0,
            ))
        return rows

    async def _rank(self, ctx: RunContext) -> None:
        request = ctx.request
        ctx.status('P6', "Ranking targets and generating summary", 94)

        rows = self.ranking_rows(ctx)
        weights = normalize_weights(request.novelty_to_actionability, request.risk_tolerance)
        baseline = rank_targets_fallback(rows, weights)
        ctx.emit('ranking', baseline.model_dump())
        ctx.status('P6', "Baseline ranking ready; refining narrative", 96)

        if not self.ranking.enabled or not rows:
            ctx.status('P6', "Baseline ranking finalized", 98)
            return

        refined = await self.ranking.rank_targets(rows, baseline)
        if refined.refined:
            ctx.emit('ranking', refined.model_dump())
            ctx.status('P6', "AI narrative refinement complete", 98)
        else:
            ctx.status('P6', "Baseline ranking finalized (AI refinement deferred)", 98, partial=True)
