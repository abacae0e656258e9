"""
Capacity- and dependency-aware iteration allocation.

Greedy bin-packing in topological order: each item goes to the earliest
iteration at or after its hard prerequisites where its team still has
allocatable room. Items that fit nowhere are returned as unplaced, together
with every item that depends on them.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from artplan.lib.config import PlanningConfig
from artplan.lib.errors import OverAllocation, ValidationError
from artplan.planning import capacity as cap
from artplan.planning.dependencies import ensure_acyclic, topological_layers
from artplan.planning.models import (
    AllocatedWorkItem,
    AllocationResult,
    CapacityIssue,
    DependencyGraph,
    IterationPlan,
    ProgramIncrement,
    Team,
    UnplacedItem,
    WorkItem,
)
from artplan.planning.priority import business_priority

logger = logging.getLogger(__name__)


@dataclass
class _Slot:
    """Mutable bookkeeping for one iteration during a pass."""
    plan: IterationPlan
    remaining: dict[str, float]


def assignment_confidence(item: WorkItem, prerequisite_count: int, pooled: bool) -> float:
    confidence = 0.8 - 0.05 * prerequisite_count
    if item.story_points > 5:
        confidence -= 0.1
    elif item.story_points <= 2:
        confidence += 0.1
    if pooled:
        confidence -= 0.1
    return max(0.1, min(1.0, confidence))


def allocation_order(items: list[WorkItem], graph: DependencyGraph) -> list[WorkItem]:
    """Topological rank, then higher business priority, then fewer points."""
    rank = topological_layers(graph)
    position = {item.id: idx for idx, item in enumerate(items)}
    return sorted(
        items,
        key=lambda i: (rank.get(i.id, 0), -business_priority(i), i.story_points, position[i.id]),
    )


def _new_slot(index: int, start, end, teams: list[Team], iteration_days: int, config: PlanningConfig) -> _Slot:
    raw = {t.id: t.raw_capacity(iteration_days) for t in teams}
    plan = IterationPlan(
        index=index,
        start_date=start,
        end_date=end,
        total_capacity=sum(raw.values()),
        team_capacity=raw,
    )
    remaining = {team_id: value * config.allocatable_fraction for team_id, value in raw.items()}
    return _Slot(plan=plan, remaining=remaining)


def _validate_inputs(items: list[WorkItem], teams: list[Team], iteration_count: int) -> None:
    if not teams:
        raise ValidationError("allocation", "At least one team is required", "teams")
    if iteration_count < 1:
        raise ValidationError("allocation", f"iteration_count must be >= 1, got {iteration_count}", "iteration_count")
    for team in teams:
        if team.member_count <= 0 or not 0 <= team.capacity_factor <= 1 or team.average_velocity < 0:
            raise ValidationError("team", "; ".join(cap.validate_team(team)), team.id)
        for issue in cap.validate_team(team):
            logger.warning(f"[ALLOC] {issue}")
    seen = set()
    for item in items:
        if item.id in seen:
            raise ValidationError("allocation", f"Duplicate work item id '{item.id}'", item.id)
        seen.add(item.id)


def allocate(items: list[WorkItem], graph: DependencyGraph, teams: list[Team], iteration_count: int,
             pi: ProgramIncrement, config: Optional[PlanningConfig] = None,
             pinned: Optional[dict[str, int]] = None) -> AllocationResult:
    """Assign items to iterations.

    Args:
        items: decomposed backlog snapshot
        graph: dependency graph over the same items
        teams: teams whose capacity is available
        iteration_count: number of iterations to fill
        pi: program increment providing the iteration windows
        config: thresholds for this pass
        pinned: earliest iteration per item id, from accepted optimizer actions

    Raises:
        ValidationError: bad teams or counts
        CyclicDependency: hard cycles in the graph
    """
    config = config or PlanningConfig()
    pinned = pinned or {}
    _validate_inputs(items, teams, iteration_count)
    ensure_acyclic(graph)

    team_ids = {t.id for t in teams}
    slots = [
        _new_slot(index, start, end, teams, pi.iteration_length_days, config)
        for index, start, end in pi.iteration_windows(iteration_count)
    ]
    placed: dict[str, int] = {}
    unplaced: list[UnplacedItem] = []
    unplaced_ids: set[str] = set()
    snapshot_ids = {item.id for item in items}

    for item in allocation_order(items, graph):
        prerequisites = [p for p in graph.predecessors(item.id) if p in snapshot_ids]
        blocked = [p for p in prerequisites if p in unplaced_ids]
        if blocked:
            unplaced.append(UnplacedItem(
                item_id=item.id,
                reason="Blocked by unplaced prerequisite(s)",
                blockers=blocked,
                suggestions=["Resolve the prerequisite placement first", "Defer to the next PI"],
            ))
            unplaced_ids.add(item.id)
            logger.info(f"[ALLOC] {item.id}: unplaced, blocked by {', '.join(blocked)}")
            continue

        earliest = max([placed[p] for p in prerequisites], default=1)
        if item.id in pinned and pinned[item.id] > earliest:
            earliest = pinned[item.id]

        owned = item.team_id in team_ids
        if item.team_id and not owned:
            logger.warning(f"[ALLOC] {item.id}: unknown team '{item.team_id}', pooling capacity")

        assignment = _place(item, earliest, slots, teams, owned, pi, config)
        if assignment is None:
            unplaced.append(_unplaced_for_capacity(item, slots, owned, config))
            unplaced_ids.add(item.id)
            logger.info(f"[ALLOC] {item.id}: unplaced ({item.story_points} pts), no capacity")
            continue

        index, team_id = assignment
        slot = slots[index - 1]
        slot.remaining[team_id] -= item.story_points
        slot.plan.allocated_items.append(AllocatedWorkItem(
            item_id=item.id,
            iteration=index,
            confidence=assignment_confidence(item, len(prerequisites), not owned),
            team_id=team_id,
            story_points=item.story_points,
        ))
        placed[item.id] = index
        logger.debug(f"[ALLOC] {item.id} -> iteration {index} ({team_id})")

    iterations = [s.plan for s in slots]
    issues, _ = cap.check_utilization(iterations, config)
    issues.extend(_dependency_violations(graph, placed))

    result = AllocationResult(iterations=iterations, unplaced=unplaced, issues=issues)
    logger.info(
        f"[ALLOC] Placed {result.placed_count}/{len(items)} items across {len(iterations)} iteration(s), "
        f"{len(unplaced)} unplaced"
    )
    return result


def _place(item: WorkItem, earliest: int, slots: list[_Slot], teams: list[Team], owned: bool,
           pi: ProgramIncrement, config: PlanningConfig) -> Optional[tuple[int, str]]:
    """Find (iteration index, team id), extending the plan when allowed."""
    index = earliest
    while True:
        while index > len(slots):
            if not config.allow_extension or len(slots) >= config.max_iterations:
                return None
            window = list(pi.iteration_windows(len(slots) + 1))[-1]
            slots.append(_new_slot(*window, teams, pi.iteration_length_days, config))
            logger.info(f"[ALLOC] Extended plan to {len(slots)} iterations")

        slot = slots[index - 1]
        if owned:
            candidates = [item.team_id]
        else:
            candidates = sorted(slot.remaining, key=lambda t: (-slot.remaining[t], t))
        for team_id in candidates:
            if slot.remaining[team_id] + 1e-9 >= item.story_points:
                return index, team_id

        if index >= len(slots) and not _can_ever_fit(item, slots[0], owned, config):
            return None
        index += 1


def _can_ever_fit(item: WorkItem, slot: _Slot, owned: bool, config: PlanningConfig) -> bool:
    """Whether an empty iteration could hold the item at all."""
    if owned:
        ceiling = slot.plan.team_capacity.get(item.team_id, 0.0) * config.allocatable_fraction
    else:
        ceiling = max(slot.plan.team_capacity.values(), default=0.0) * config.allocatable_fraction
    return ceiling + 1e-9 >= item.story_points


def _unplaced_for_capacity(item: WorkItem, slots: list[_Slot], owned: bool, config: PlanningConfig) -> UnplacedItem:
    if not _can_ever_fit(item, slots[0], owned, config):
        return UnplacedItem(
            item_id=item.id,
            reason="Larger than any iteration's allocatable capacity",
            blockers=["Capacity constraints"],
            suggestions=["Split the item further", "Add team capacity"],
        )
    return UnplacedItem(
        item_id=item.id,
        reason="No iteration has enough remaining capacity",
        blockers=["Capacity constraints"],
        suggestions=["Reduce scope", "Add team capacity", "Extend the plan by an iteration"],
    )


def _dependency_violations(graph: DependencyGraph, placed: dict[str, int]) -> list[CapacityIssue]:
    issues = []
    for edge in graph.hard_edges():
        pred, succ = edge.predecessor, edge.successor
        if pred in placed and succ in placed and placed[pred] > placed[succ]:
            issues.append(CapacityIssue(
                type="dependency_violation",
                severity="high",
                description=f"{succ} in iteration {placed[succ]} depends on {pred} in iteration {placed[pred]}",
                iteration=placed[succ],
                item_ids=[pred, succ],
            ))
    return issues


def require_complete(result: AllocationResult) -> AllocationResult:
    """Raise OverAllocation (carrying the partial result) if anything is unplaced."""
    if result.over_allocated:
        raise OverAllocation(result)
    return result


def allocation_statistics(result: AllocationResult) -> dict:
    return {
        "iterations": len(result.iterations),
        "placed": result.placed_count,
        "unplaced": len(result.unplaced),
        "success_rate": round(result.success_rate, 4),
        "utilization": {it.index: round(it.utilization, 4) for it in result.iterations},
        "average_utilization": round(cap.average_utilization(result.iterations), 4),
    }
