"""
Planning coordinator.

Runs one (PI, team) pass through the stage pipeline:

    load -> decompose -> map -> allocate -> validate -> optimize
         -> rebalance (bounded re-allocation loop) -> persist -> commit

The tracker is touched only in load (reads) and commit (writes). Everything
in between is pure computation over the snapshot taken by load.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from artplan.lib.config import PlanningConfig
from artplan.lib.constants import EXIT_OK
from artplan.lib.errors import CyclicDependency, OverAllocation, PlanningError, ValidationError, exit_code_for
from artplan.lib.progress import CancelToken, ProgressCallback, ProgressReporter
from artplan.notifications import Notifier
from artplan.planning import readiness
from artplan.planning import value as value_analysis
from artplan.planning.allocator import allocate
from artplan.planning.capacity import validate_team
from artplan.planning.decomposition import BatchDecomposition, StoryDecomposer
from artplan.planning.dependencies import critical_path, find_cycles, map_dependencies
from artplan.planning.models import ARTPlan, DependencyRelationship, Team, WorkItem
from artplan.store import PlanStore
from artplan.tracker.client import BacklogSource
from artplan.tracker.normalize import (
    normalize_backlog,
    normalize_program_increment,
    normalize_relationship,
    normalize_team,
)
from artplan.tracker.writers import IterationWriter, RelationshipWriter, SubItemWriter
from artplan.workflow.context import PlanningContext
from artplan.workflow.fsm import PlanFSM
from artplan.workflow.request import PlanRequest
from artplan.workflow.stages import STAGE_ORDER, StageError, StageResult, run_stage

logger = logging.getLogger(__name__)

ITERATION_LENGTH_KEYS = ("iteration_length_days", "iterationLengthDays", "iteration_length")
CHILD_SUFFIX = re.compile(r"^(.+)-\d+$")


class TrackerPublisher:
    """Pushes a committed plan to the tracker through the writers."""

    def __init__(self, backlog: BacklogSource):
        self.backlog = backlog

    def write_sub_items(self, decomposition: BatchDecomposition) -> int:
        return len(SubItemWriter(self.backlog).write(decomposition.results).written)

    def write_relationships(self, plan: ARTPlan) -> int:
        return len(RelationshipWriter(self.backlog).write(plan).written)

    def write_iterations(self, plan: ARTPlan) -> int:
        return len(IterationWriter(self.backlog).write(plan).written)


@dataclass
class PlanOutcome:
    """Structured result of a pass plus its human-readable summary."""
    request: PlanRequest
    plan: Optional[ARTPlan] = None
    summary: str = ""
    error: Optional[PlanningError] = None
    stages: dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def exit_code(self) -> int:
        if self.error is None:
            return EXIT_OK
        if isinstance(self.error, StageError):
            return self.error.exit_code
        return exit_code_for(self.error)

    def to_dict(self) -> dict:
        return {
            "pi_id": self.request.pi_id,
            "team_id": self.request.team_id,
            "ok": self.ok,
            "exit_code": self.exit_code,
            "state": self.plan.state if self.plan else None,
            "readiness_score": round(self.plan.readiness_score, 4) if self.plan else None,
            "error": str(self.error) if self.error else None,
            "stages": self.stages,
        }


def split_generated_children(items: list[WorkItem]) -> tuple[list[WorkItem], set[str]]:
    """Separate sub-items written by an earlier commit from the source backlog.

    A child is generated when it carries the `decomposed` label and its id
    chain (`PARENT-1-2` -> `PARENT-1` -> `PARENT`) reaches an item in the
    snapshot. Those children are rebuilt by the decompose stage, so keeping
    them would duplicate ids.
    """
    ids = {item.id for item in items}
    kept, dropped = [], set()
    for item in items:
        if "decomposed" in item.labels and _has_ancestor(item.parent_id, ids):
            dropped.add(item.id)
        else:
            kept.append(item)
    return kept, dropped


def _has_ancestor(parent_id: Optional[str], ids: set[str]) -> bool:
    while parent_id:
        if parent_id in ids:
            return True
        match = CHILD_SUFFIX.match(parent_id)
        parent_id = match.group(1) if match else None
    return False


def expand_declared(relationships: list[DependencyRelationship],
                    decomposition: BatchDecomposition) -> list[DependencyRelationship]:
    """Re-point declared links at the children of decomposed items."""
    children: dict[str, list[str]] = {}
    for result in decomposition.results:
        if not result.intermediate:
            children.setdefault(result.parent.id, []).extend(c.id for c in result.children)
    # Recursive splits: intermediate parents resolve through their parts
    for result in decomposition.results:
        if result.intermediate:
            leaves = []
            for part in result.children:
                leaves.extend(children.get(part.id, [part.id]))
            children[result.parent.id] = leaves

    expanded = []
    for rel in relationships:
        sources = children.get(rel.source_id, [rel.source_id])
        targets = children.get(rel.target_id, [rel.target_id])
        for source in sources:
            for target in targets:
                expanded.append(DependencyRelationship(
                    source_id=source,
                    target_id=target,
                    kind=rel.kind,
                    strength=rel.strength,
                    detection_method=rel.detection_method,
                    rationale=rel.rationale,
                    confidence=rel.confidence,
                    methods=rel.methods,
                ))
    return expanded


class PlanningCoordinator:
    """Runs planning passes against one tracker.

    Args:
        backlog: tracker reads/writes (BacklogClient or InMemoryBacklog)
        config: thresholds carried through the whole pass
        store: where plans are persisted; None skips persistence
        notifier: summary event sink; defaults to logging only
        teams: roster that overrides team lookups in the tracker
        publisher: commit-time writer, replaced by Prefect tasks in the flow
    """

    def __init__(self, backlog: BacklogSource, config: Optional[PlanningConfig] = None,
                 store: Optional[PlanStore] = None, notifier: Optional[Notifier] = None,
                 teams: Optional[list[Team]] = None, publisher=None,
                 progress_callback: Optional[ProgressCallback] = None):
        self.backlog = backlog
        self.config = config or PlanningConfig()
        self.store = store
        self.notifier = notifier or Notifier()
        self.teams = {t.id: t for t in teams or []}
        self.publisher = publisher or TrackerPublisher(backlog)
        self.progress_callback = progress_callback

    def run(self, request: PlanRequest, cancel: Optional[CancelToken] = None) -> PlanOutcome:
        """Execute every stage; errors end the pass and land on the outcome."""
        ctx = PlanningContext(
            request=request,
            config=self.config,
            fsm=PlanFSM(f"{request.pi_id}/{request.team_id}", max_passes=self.config.max_optimization_passes),
            progress=ProgressReporter(len(STAGE_ORDER), self.progress_callback),
            cancel=cancel or CancelToken(),
        )
        outcome = PlanOutcome(request=request, stages=ctx.stages)
        logger.info(f"[PLAN] Starting pass for {ctx.plan_key} (dry_run={request.dry_run})")

        stage_fns = {
            "load": self._stage_load,
            "decompose": self._stage_decompose,
            "map": self._stage_map,
            "allocate": self._stage_allocate,
            "validate": self._stage_validate,
            "optimize": self._stage_optimize,
            "rebalance": self._stage_rebalance,
            "persist": self._stage_persist,
            "commit": self._stage_commit,
        }
        try:
            for name in STAGE_ORDER:
                run_stage(ctx, name, stage_fns[name])
        except StageError as e:
            outcome.error = e
            logger.error(f"[PLAN] {ctx.plan_key} stopped: {e}")

        outcome.plan = ctx.plan
        outcome.summary = render_summary(ctx, outcome.error)
        return outcome

    # =========================================================================
    # STAGES
    # =========================================================================

    def _stage_load(self, ctx: PlanningContext):
        request = ctx.request
        pi_payload = self.backlog.get_program_increment(request.pi_id)
        ctx.pi = normalize_program_increment(pi_payload)
        if not any(key in pi_payload for key in ITERATION_LENGTH_KEYS):
            ctx.pi.iteration_length_days = ctx.config.iteration_length_days

        if request.team_id in self.teams:
            ctx.team = self.teams[request.team_id]
        else:
            ctx.team = normalize_team(self.backlog.get_team(request.team_id))
        for issue in validate_team(ctx.team):
            logger.warning(f"[PLAN] {issue}")
        if ctx.team.raw_capacity(ctx.pi.iteration_length_days) <= 0:
            raise ValidationError("team", f"Team {ctx.team.id} has no capacity", "average_velocity")

        snapshot = normalize_backlog(self.backlog.list_items(request.pi_id, request.team_id))
        ctx.backlog, generated = split_generated_children(snapshot)
        ids = [item.id for item in ctx.backlog]
        # Links touching generated children were written by an earlier commit; detection redoes them
        ctx.declared = [
            rel for rel in map(normalize_relationship, self.backlog.list_relationships(ids))
            if rel.source_id not in generated and rel.target_id not in generated
        ]
        if generated:
            logger.info(f"[PLAN] Ignoring {len(generated)} sub-item(s) from an earlier commit")
        logger.info(
            f"[PLAN] Loaded {len(ctx.backlog)} item(s), {len(ctx.declared)} declared link(s) "
            f"for {ctx.plan_key}"
        )

    def _stage_decompose(self, ctx: PlanningContext):
        decomposer = StoryDecomposer(ctx.config)
        ctx.decomposition = decomposer.decompose_backlog(ctx.backlog)

    def _stage_map(self, ctx: PlanningContext):
        declared = expand_declared(ctx.declared, ctx.decomposition)
        ctx.graph = map_dependencies(ctx.items, declared, ctx.config)
        chains = find_cycles(ctx.graph)
        if chains:
            raise CyclicDependency(chains)
        ctx.critical_path = critical_path(ctx.graph, ctx.items)

    def _stage_allocate(self, ctx: PlanningContext):
        ctx.fsm.fire("allocate")
        self._allocate(ctx)

    def _stage_validate(self, ctx: PlanningContext):
        ctx.fsm.fire("validate")
        self._validate(ctx)

    def _stage_optimize(self, ctx: PlanningContext):
        ctx.fsm.fire("optimize")
        self._optimize(ctx)

    def _stage_rebalance(self, ctx: PlanningContext):
        """Feed accepted actions back into the allocator while passes remain.

        The best plan by readiness is kept; a pass that makes things worse is
        discarded rather than committed.
        """
        best = ctx.plan
        ran = False
        while ctx.fsm.can("reallocate"):
            report = readiness.assess(ctx.plan, ctx.config)
            if report.is_ready or not ctx.plan.actions:
                break
            applied = readiness.apply_actions(ctx.plan, ctx.plan.actions)
            if not applied.applied:
                break
            new_pins = {k: v for k, v in applied.pinned.items() if ctx.pinned.get(k) != v}
            if not new_pins and applied.graph is ctx.graph:
                break
            ctx.pinned.update(applied.pinned)
            ctx.graph = applied.graph

            ctx.fsm.fire("reallocate")
            ran = True
            logger.info(f"[PLAN] Rebalance pass {ctx.fsm.passes}: applied {', '.join(applied.applied)}")
            self._allocate(ctx)
            ctx.fsm.fire("validate")
            self._validate(ctx)
            ctx.fsm.fire("optimize")
            self._optimize(ctx)
            if ctx.plan.readiness_score > best.readiness_score:
                best = ctx.plan

        ctx.plan = best.copy(state=ctx.fsm.state, optimization_passes=ctx.fsm.passes)
        if ctx.plan.readiness_score < ctx.config.readiness_threshold and not ctx.request.dry_run:
            self.notifier.readiness_below_threshold(ctx.plan, ctx.config.readiness_threshold)
        if ctx.plan.actions and not ctx.request.dry_run:
            self.notifier.optimization_suggestions(ctx.plan)
        return None if ran else StageResult.SKIPPED

    def _stage_persist(self, ctx: PlanningContext):
        if self.store is None or ctx.request.dry_run:
            return StageResult.SKIPPED
        self.store.save(ctx.plan)

    def _stage_commit(self, ctx: PlanningContext):
        request = ctx.request
        if request.dry_run or not request.commit:
            return StageResult.SKIPPED
        if ctx.plan.unplaced and not request.allow_partial:
            raise OverAllocation(ctx.plan)

        created = self.publisher.write_sub_items(ctx.decomposition)
        linked = self.publisher.write_relationships(ctx.plan)
        assigned = self.publisher.write_iterations(ctx.plan)
        ctx.fsm.fire("commit")
        ctx.plan = ctx.plan.copy(state=ctx.fsm.state)
        if self.store is not None:
            self.store.save(ctx.plan)
        logger.info(
            f"[PLAN] Committed {ctx.plan_key}: {created} sub-item(s), {linked} link(s), "
            f"{assigned} assignment(s)"
        )
        self.notifier.plan_committed(ctx.plan)

    # =========================================================================
    # PASS STEPS
    # =========================================================================

    def _allocate(self, ctx: PlanningContext) -> None:
        ctx.allocation = allocate(
            ctx.items, ctx.graph, [ctx.team], ctx.iteration_count, ctx.pi, ctx.config, ctx.pinned,
        )
        for issue in ctx.allocation.issues:
            logger.debug(f"[ALLOC] {issue.severity}: {issue.description}")
        ctx.plan = ARTPlan(
            pi=ctx.pi,
            team_id=ctx.team.id,
            iterations=ctx.allocation.iterations,
            graph=ctx.graph,
            items=list(ctx.items),
            unplaced=ctx.allocation.unplaced,
            state=ctx.fsm.state,
            optimization_passes=ctx.fsm.passes,
            decomposition_failures=[f.to_dict() for f in ctx.decomposition.failures],
            created_at=datetime.now().isoformat(),
        )

    def _validate(self, ctx: PlanningContext) -> None:
        plan = ctx.plan
        analyses = value_analysis.analyze_plan(plan.iterations, plan.items, plan.graph, ctx.config)
        ctx.plan = plan.copy(
            value_analyses=analyses,
            value_delivery_score=value_analysis.value_delivery_score(analyses, plan.iterations),
            state=ctx.fsm.state,
        )

    def _optimize(self, ctx: PlanningContext) -> None:
        ctx.plan = readiness.optimize(ctx.plan, ctx.config).copy(state=ctx.fsm.state)


def render_summary(ctx: PlanningContext, error: Optional[PlanningError] = None) -> str:
    """Human-readable summary of a pass."""
    lines = [f"Plan {ctx.plan_key}"]
    plan = ctx.plan
    if plan is not None:
        lines.append(
            f"  State: {plan.state}  Readiness: {plan.readiness_score:.0%}  "
            f"Value: {plan.value_delivery_score:.0%}  Utilization: {plan.capacity_utilization:.0%}"
        )
        if ctx.decomposition is not None and ctx.decomposition.decomposed_count:
            lines.append(f"  Decomposed {ctx.decomposition.decomposed_count} oversized story(ies)")
        lines.append("  Iterations:")
        for it in plan.iterations:
            lines.append(
                f"    {it.index}. {it.start_date} - {it.end_date}: {it.allocated_points:>3} / "
                f"{it.total_capacity:.1f} pts ({it.utilization:.0%}) {len(it.allocated_items)} item(s)"
            )
        if ctx.critical_path is not None and ctx.critical_path.item_ids:
            lines.append(
                f"  Critical path ({ctx.critical_path.total_points} pts): "
                f"{' -> '.join(ctx.critical_path.item_ids)}"
            )
        if plan.unplaced:
            lines.append("  Unplaced:")
            for u in plan.unplaced:
                blockers = f" (blocked by {', '.join(u.blockers)})" if u.blockers else ""
                lines.append(f"    - {u.item_id}: {u.reason}{blockers}")
        if plan.decomposition_failures:
            lines.append("  Decomposition failures:")
            for f in plan.decomposition_failures:
                lines.append(f"    - {f['item_id']}: {f['message']}")
        if plan.actions:
            lines.append("  Top actions:")
            for a in plan.actions[:5]:
                lines.append(f"    - [{a.priority}] {a.description}")
    if error is not None:
        lines.append(f"  Error: {error}")
        cause = error.__cause__
        chains = getattr(cause, "chains", None)
        if chains:
            for chain in chains:
                lines.append(f"    cycle: {' -> '.join(chain + chain[:1])}")
    return "\n".join(lines)
