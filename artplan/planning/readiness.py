"""
ART readiness scoring and improvement actions.

``optimize`` never moves work itself. It recomputes scores and returns a copy
of the plan carrying ranked actions; accepted actions are turned into
placement hints with ``apply_actions`` and fed back into the allocator.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from artplan.lib.config import PlanningConfig
from artplan.planning import value as value_analysis
from artplan.planning import working_software
from artplan.planning.capacity import average_utilization
from artplan.planning.dependencies import break_weakest_edge, find_cycles, graph_statistics, weakest_edge
from artplan.planning.models import ARTPlan, DependencyGraph, ImprovementAction, IterationPlan, ValueDeliveryAnalysis

logger = logging.getLogger(__name__)

CATEGORIES = (
    "story_readiness",
    "dependency_resolution",
    "capacity_allocation",
    "value_delivery",
    "risk_mitigation",
    "team_alignment",
)

WEAK_CATEGORY_THRESHOLD = 0.7
LOW_VALUE_THRESHOLD = 0.6
COMPLEX_DEPENDENCY_AVERAGE = 2.0
UTILIZATION_BAND_WIDTH = 0.15

PRIORITY_RANK = {"high": 0, "medium": 1, "low": 2}


@dataclass
class ReadinessReport:
    score: float
    categories: dict[str, float]
    blocking_issues: list[str] = field(default_factory=list)
    actions: list[ImprovementAction] = field(default_factory=list)
    threshold: float = 0.8

    @property
    def weak_categories(self) -> list[str]:
        return [c for c in CATEGORIES if self.categories.get(c, 0.0) < WEAK_CATEGORY_THRESHOLD]

    @property
    def is_ready(self) -> bool:
        return not self.blocking_issues and self.score >= self.threshold

    @property
    def quick_wins(self) -> list[ImprovementAction]:
        return [a for a in self.actions if a.effort == "low"]

    @property
    def strategic_improvements(self) -> list[ImprovementAction]:
        return [a for a in self.actions if a.effort == "high" or a.impact >= 0.1]


@dataclass
class AppliedActions:
    """Allocator inputs derived from accepted actions."""
    pinned: dict[str, int] = field(default_factory=dict)
    graph: Optional[DependencyGraph] = None
    applied: list[str] = field(default_factory=list)


def utilization_band(config: PlanningConfig) -> tuple[float, float]:
    high = config.max_utilization
    low = max(config.min_healthy_utilization, high - UTILIZATION_BAND_WIDTH)
    return low, high


def utilization_band_score(utilization: float, config: PlanningConfig) -> float:
    """1.0 inside the target band, falling off linearly outside it."""
    low, high = utilization_band(config)
    if utilization < low:
        return utilization / low if low > 0 else 1.0
    if utilization <= high:
        return 1.0
    overshoot = (utilization - high) / max(1.0 - high, 0.05)
    return max(0.0, 1.0 - overshoot)


def _integration_blockers(analyses: list[ValueDeliveryAnalysis]) -> list[str]:
    return [
        b for a in analyses for g in a.gates
        if g.name == working_software.GATE_INTEGRATION for b in g.blockers
    ]


def dependency_risk_penalty(plan: ARTPlan, analyses: list[ValueDeliveryAnalysis]) -> float:
    cycles = find_cycles(plan.graph)
    total = len(plan.items) or 1
    penalty = 0.3 * len(cycles) + 0.1 * len(_integration_blockers(analyses)) + 0.5 * len(plan.unplaced) / total
    return min(1.0, penalty)


def category_scores(plan: ARTPlan, analyses: list[ValueDeliveryAnalysis], config: PlanningConfig) -> dict[str, float]:
    items = plan.items
    count = len(items) or 1
    ready_stories = sum(
        1 for i in items
        if (i.acceptance_criteria or i.type != "story") and i.story_points <= config.max_story_points
    )
    owned = sum(1 for i in items if i.team_id)

    severities = [r.severity for a in analyses for r in a.risks]
    risk_load = 0.2 * severities.count("high") + 0.1 * severities.count("medium") + 0.05 * severities.count("low")
    working = [a for a, it in zip(analyses, plan.iterations) if it.allocated_items]

    return {
        "story_readiness": ready_stories / count if items else 1.0,
        "dependency_resolution": 1.0 - dependency_risk_penalty(plan, analyses),
        "capacity_allocation": utilization_band_score(average_utilization(plan.iterations), config),
        "value_delivery": value_analysis.value_delivery_score(analyses, plan.iterations),
        "risk_mitigation": max(0.0, 1.0 - risk_load / max(len(working), 1)),
        "team_alignment": owned / count if items else 1.0,
    }


def readiness_score(plan: ARTPlan, analyses: list[ValueDeliveryAnalysis], config: PlanningConfig) -> float:
    """0.35 utilization band + 0.4 value + 0.25 dependency health."""
    band = utilization_band_score(average_utilization(plan.iterations), config)
    value = value_analysis.value_delivery_score(analyses, plan.iterations)
    dependency = 1.0 - dependency_risk_penalty(plan, analyses)
    return max(0.0, min(1.0, 0.35 * band + 0.4 * value + 0.25 * dependency))


def _movable_item(plan: ARTPlan, iteration: IterationPlan, target: IterationPlan,
                  config: PlanningConfig) -> Optional[str]:
    """Smallest item in ``iteration`` that can move to ``target`` without breaking order."""
    room = target.total_capacity * config.max_utilization - target.allocated_points
    for allocated in sorted(iteration.allocated_items, key=lambda a: (a.story_points, a.item_id)):
        if allocated.story_points > room:
            continue
        successors = plan.graph.successors(allocated.item_id)
        if all((plan.iteration_of(s) or target.index) >= target.index for s in successors):
            return allocated.item_id
    return None


def _capacity_actions(plan: ARTPlan, config: PlanningConfig) -> list[ImprovementAction]:
    actions = []
    iterations = plan.iterations
    for pos, it in enumerate(iterations):
        if it.utilization <= config.max_utilization + 1e-9:
            continue
        for target in iterations[pos + 1:]:
            item_id = _movable_item(plan, it, target, config)
            if item_id:
                actions.append(ImprovementAction(
                    id=f"move:{item_id}:{target.index}",
                    category="capacity_allocation",
                    priority="high",
                    effort="low",
                    impact=0.1,
                    description=(
                        f"Move {item_id} to iteration {target.index} to resolve the "
                        f"{it.utilization:.0%} overrun in iteration {it.index}"
                    ),
                    item_ids=(item_id,),
                    target_iteration=target.index,
                ))
                break
        else:
            actions.append(ImprovementAction(
                id=f"reduce-scope:{it.index}",
                category="capacity_allocation",
                priority="high",
                effort="medium",
                impact=0.1,
                description=f"Reduce scope in iteration {it.index}; no later iteration has room",
                item_ids=tuple(it.item_ids()),
            ))

    low, _ = utilization_band(config)
    for it in iterations:
        if it.allocated_items and it.utilization < config.min_healthy_utilization:
            actions.append(ImprovementAction(
                id=f"underused:{it.index}",
                category="capacity_allocation",
                priority="low",
                effort="medium",
                impact=0.03,
                description=(
                    f"Iteration {it.index} is at {it.utilization:.0%} (target {low:.0%}+); "
                    f"pull in backlog work or lend capacity"
                ),
            ))

    for unplaced in plan.unplaced:
        if unplaced.reason.startswith("Blocked"):
            continue
        actions.append(ImprovementAction(
            id=f"unplaced:{unplaced.item_id}",
            category="capacity_allocation",
            priority="high",
            effort="medium",
            impact=0.08,
            description=f"{unplaced.item_id} is unplaced: {unplaced.reason}. {'; '.join(unplaced.suggestions)}",
            item_ids=(unplaced.item_id,),
        ))

    if average_utilization(iterations) > config.max_utilization:
        actions.append(ImprovementAction(
            id="optimize-capacity",
            category="capacity_allocation",
            priority="medium",
            effort="high",
            impact=0.1,
            description="Overall utilization is above the ceiling; add capacity or move scope to the next PI",
        ))
    return actions


def _dependency_actions(plan: ARTPlan, analyses: list[ValueDeliveryAnalysis]) -> list[ImprovementAction]:
    actions = []
    for chain in find_cycles(plan.graph):
        edge = weakest_edge(plan.graph, chain)
        if edge is None:
            continue
        actions.append(ImprovementAction(
            id=f"break:{edge.predecessor}:{edge.successor}",
            category="dependency_resolution",
            priority="high",
            effort="low",
            impact=0.15,
            description=(
                f"Break cycle {' -> '.join(chain + chain[:1])} by downgrading "
                f"{edge.predecessor} -> {edge.successor}"
            ),
            item_ids=tuple(chain),
        ))

    for analysis in analyses:
        for gate in analysis.gates:
            if gate.name != working_software.GATE_INTEGRATION:
                continue
            for blocker in gate.blockers:
                item_id = blocker.split(":", 1)[0]
                for pred in plan.graph.predecessors(item_id):
                    target = plan.iteration_of(pred)
                    if target is not None and target > analysis.iteration:
                        actions.append(ImprovementAction(
                            id=f"move:{item_id}:{target}",
                            category="dependency_resolution",
                            priority="high",
                            effort="low",
                            impact=0.1,
                            description=f"Move {item_id} to iteration {target} so {pred} lands first",
                            item_ids=(item_id,),
                            target_iteration=target,
                        ))

    stats = graph_statistics(plan.graph)
    if stats.average_dependencies > COMPLEX_DEPENDENCY_AVERAGE:
        actions.append(ImprovementAction(
            id="simplify-dependencies",
            category="dependency_resolution",
            priority="low",
            effort="high",
            impact=0.08,
            description=(
                f"Average of {stats.average_dependencies:.1f} links per item; "
                f"decouple {', '.join(stats.high_dependency_items[:5]) or 'hub items'}"
            ),
            item_ids=tuple(stats.high_dependency_items),
        ))
    return actions


def _gate_actions(analyses: list[ValueDeliveryAnalysis]) -> list[ImprovementAction]:
    templates = {
        working_software.GATE_DEFINITION_OF_DONE: ("criteria", "story_readiness", "Add acceptance criteria to {}"),
        working_software.GATE_DEPLOYABILITY: ("deployable", "team_alignment", "Make {} deployable: {}"),
        working_software.GATE_ROLLBACK_SAFETY: ("rollback", "risk_mitigation", "Add a rollback or feature-flag note to {}"),
    }
    actions = []
    for analysis in analyses:
        for gate in analysis.gates:
            if gate.name not in templates:
                continue
            prefix, category, text = templates[gate.name]
            for blocker in gate.blockers:
                item_id, _, detail = blocker.partition(": ")
                actions.append(ImprovementAction(
                    id=f"{prefix}:{item_id}",
                    category=category,
                    priority="medium",
                    effort="low",
                    impact=0.05,
                    description=text.format(item_id, detail),
                    item_ids=(item_id,),
                ))
    return actions


def _value_actions(plan: ARTPlan, analyses: list[ValueDeliveryAnalysis]) -> list[ImprovementAction]:
    scored = [a for a, it in zip(analyses, plan.iterations) if it.allocated_items]
    if not scored:
        return []
    weakest = min(scored, key=lambda a: (a.score, a.iteration))
    if weakest.score >= LOW_VALUE_THRESHOLD:
        return []
    return [ImprovementAction(
        id="improve-value-distribution",
        category="value_delivery",
        priority="medium",
        effort="medium",
        impact=0.15,
        description=(
            f"Iteration {weakest.iteration} scores {weakest.score:.2f}; "
            f"{weakest.recommendations[0] if weakest.recommendations else 'rebalance value streams'}"
        ),
    )]


def rank_actions(actions: list[ImprovementAction]) -> list[ImprovementAction]:
    """Dedupe by id, then high priority first, larger impact first, id."""
    unique: dict[str, ImprovementAction] = {}
    for action in actions:
        unique.setdefault(action.id, action)
    return sorted(unique.values(), key=lambda a: (PRIORITY_RANK[a.priority], -a.impact, a.id))


def assess(plan: ARTPlan, config: Optional[PlanningConfig] = None) -> ReadinessReport:
    """Score the plan and list ranked actions without changing it."""
    config = config or PlanningConfig()
    analyses = value_analysis.analyze_plan(plan.iterations, plan.items, plan.graph, config)
    score = readiness_score(plan, analyses, config)
    categories = category_scores(plan, analyses, config)

    blocking = []
    for chain in find_cycles(plan.graph):
        blocking.append(f"hard dependency cycle: {' -> '.join(chain + chain[:1])}")
    for unplaced in plan.unplaced:
        blocking.append(f"{unplaced.item_id} unplaced: {unplaced.reason}")
    for it in plan.iterations:
        if it.utilization > config.max_utilization + 1e-9:
            blocking.append(f"iteration {it.index} over capacity ({it.utilization:.0%})")
    blocking.extend(_integration_blockers(analyses))

    actions = rank_actions(
        _capacity_actions(plan, config)
        + _dependency_actions(plan, analyses)
        + _gate_actions(analyses)
        + _value_actions(plan, analyses)
    )
    return ReadinessReport(
        score=score,
        categories=categories,
        blocking_issues=blocking,
        actions=actions,
        threshold=config.readiness_threshold,
    )


def optimize(plan: ARTPlan, config: Optional[PlanningConfig] = None) -> ARTPlan:
    """Return a scored copy of the plan with ranked actions.

    Idempotent: the output depends only on items, iterations, graph and
    unplaced items, none of which this function changes.
    """
    config = config or PlanningConfig()
    analyses = value_analysis.analyze_plan(plan.iterations, plan.items, plan.graph, config)
    report = assess(plan, config)
    optimized = plan.copy(
        value_analyses=analyses,
        readiness_score=report.score,
        value_delivery_score=value_analysis.value_delivery_score(analyses, plan.iterations),
        capacity_utilization=average_utilization(plan.iterations),
        actions=report.actions,
    )
    logger.info(
        f"[READY] {plan.pi.id}/{plan.team_id}: readiness={report.score:.2f} "
        f"actions={len(report.actions)} weak={','.join(report.weak_categories) or 'none'}"
    )
    return optimized


def apply_actions(plan: ARTPlan, actions: list[ImprovementAction]) -> AppliedActions:
    """Translate accepted actions into allocator inputs.

    Move actions become earliest-iteration pins; cycle-breaking actions soften
    the named edge. Other actions need a human and are skipped.
    """
    result = AppliedActions(graph=plan.graph)
    for action in actions:
        if action.target_iteration is not None and action.item_ids:
            for item_id in action.item_ids:
                current = result.pinned.get(item_id, 0)
                result.pinned[item_id] = max(current, action.target_iteration)
            result.applied.append(action.id)
        elif action.id.startswith("break:"):
            chain = list(action.item_ids)
            result.graph, broken = break_weakest_edge(result.graph, chain)
            if broken is not None:
                result.applied.append(action.id)
    return result
