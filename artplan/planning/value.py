"""
Value delivery analysis per iteration.

Each allocated item is classified into a value stream; the iteration score
blends stream value, working-software gate results and risk count.
"""

import logging
import re
from typing import Optional

from artplan.lib.config import PlanningConfig
from artplan.planning import working_software
from artplan.planning.capacity import capacity_confidence, find_team
from artplan.planning.models import (
    DependencyGraph,
    IterationPlan,
    RiskFinding,
    Team,
    ValueDeliveryAnalysis,
    ValueStream,
    WorkItem,
)

logger = logging.getLogger(__name__)

STREAM_WEIGHTS = {
    ValueStream.CUSTOMER_FACING: 1.0,
    ValueStream.COMPLIANCE: 0.8,
    ValueStream.RISK_REDUCTION: 0.7,
    ValueStream.TECHNICAL_ENABLER: 0.6,
    ValueStream.PLATFORM: 0.5,
}

# Checked in order; first match wins
STREAM_KEYWORDS = (
    (ValueStream.COMPLIANCE, ("compliance", "regulatory", "gdpr", "audit", "legal", "policy", "hipaa", "pci")),
    (ValueStream.RISK_REDUCTION, ("security", "vulnerability", "risk", "resilience", "backup",
                                  "disaster", "monitoring", "alerting", "tech debt", "refactor")),
    (ValueStream.PLATFORM, ("platform", "infrastructure", "pipeline", "kubernetes", "devops",
                            "tooling", "deployment", "observability")),
)

RISK_PENALTY = {"high": 0.25, "medium": 0.1, "low": 0.05}

MAX_PREREQUISITES = 3
IMBALANCE_THRESHOLD = 0.5


def classify_value_stream(item: WorkItem) -> ValueStream:
    for label in item.labels:
        for stream in ValueStream:
            if label == stream.value:
                return stream

    content = item.content.lower()
    for stream, keywords in STREAM_KEYWORDS:
        if any(re.search(r"\b" + re.escape(kw), content) for kw in keywords):
            return stream
    if item.type == "enabler":
        return ValueStream.TECHNICAL_ENABLER
    return ValueStream.CUSTOMER_FACING


def stream_score(items: list[WorkItem]) -> float:
    """Point-weighted average stream weight."""
    total = sum(i.weight for i in items)
    if not total:
        return 0.0
    return sum(STREAM_WEIGHTS[classify_value_stream(i)] * i.weight for i in items) / total


def rollback_complexity(items: list[WorkItem], graph: DependencyGraph) -> str:
    if not items:
        return "low"
    links = sum(len(graph.predecessors(i.id)) + len(graph.successors(i.id)) for i in items)
    average = links / len(items)
    if average < 1:
        return "low"
    if average < 3:
        return "medium"
    return "high"


def _risks(items: list[WorkItem], item_ok: dict[str, bool], breakdown: dict[str, int],
           graph: DependencyGraph, config: PlanningConfig) -> list[RiskFinding]:
    risks = []
    if items:
        ratio = sum(1 for i in items if item_ok.get(i.id)) / len(items)
        if ratio < config.working_software_threshold:
            risks.append(RiskFinding(
                type="working_software",
                severity="high",
                description=f"Only {ratio:.0%} of items are deployable working software",
                item_ids=[i.id for i in items if not item_ok.get(i.id)],
                mitigation="Resolve gate blockers before the iteration starts",
            ))

    heavy = [i.id for i in items if len(graph.predecessors(i.id)) > MAX_PREREQUISITES]
    if heavy:
        risks.append(RiskFinding(
            type="dependency_heavy",
            severity="medium",
            description=f"{len(heavy)} item(s) have more than {MAX_PREREQUISITES} hard prerequisites",
            item_ids=heavy,
            mitigation="Split items or stage prerequisites in an earlier iteration",
        ))

    total = sum(breakdown.values())
    if total and len(items) >= 3:
        shares = sorted((pts / total for pts in breakdown.values()), reverse=True)
        second = shares[1] if len(shares) > 1 else 0.0
        if shares[0] - second > IMBALANCE_THRESHOLD:
            dominant = max(breakdown, key=breakdown.get)
            risks.append(RiskFinding(
                type="stream_imbalance",
                severity="low" if dominant == ValueStream.CUSTOMER_FACING.value else "medium",
                description=f"{dominant} dominates the iteration ({shares[0]:.0%} of points)",
                mitigation="Mix in enabler or risk-reduction work",
            ))
    return risks


def _recommendations(analysis: ValueDeliveryAnalysis) -> list[str]:
    messages = {
        working_software.GATE_DEFINITION_OF_DONE: "Add acceptance criteria to every story before commitment",
        working_software.GATE_INTEGRATION: "Move prerequisites into this iteration or earlier",
        working_software.GATE_DEPLOYABILITY: "Assign owning teams and finish incomplete items",
        working_software.GATE_ROLLBACK_SAFETY: "Add rollback or feature-flag notes for shared infrastructure changes",
    }
    recommendations = [messages[g.name] for g in analysis.gates if not g.passed]
    if analysis.rollback_complexity == "high":
        recommendations.append("Reduce coupling: rollback spans many dependent items")
    for risk in analysis.risks:
        if risk.mitigation and risk.mitigation not in recommendations:
            recommendations.append(risk.mitigation)
    return recommendations


def analyze_iteration(iteration: IterationPlan, items: dict[str, WorkItem], graph: DependencyGraph,
                      iteration_of: dict[str, int], config: Optional[PlanningConfig] = None) -> ValueDeliveryAnalysis:
    """Score one iteration for value and working-software deliverability.

    Args:
        iteration: the iteration to analyze
        items: every item in the plan, by id
        graph: the plan's dependency graph
        iteration_of: scheduled iteration per allocated item id
    """
    config = config or PlanningConfig()
    allocated = [items[a.item_id] for a in iteration.allocated_items if a.item_id in items]

    breakdown: dict[str, int] = {}
    for item in allocated:
        stream = classify_value_stream(item).value
        breakdown[stream] = breakdown.get(stream, 0) + item.weight

    gates, item_ok = working_software.run_gates(iteration, items, graph, iteration_of)
    risks = _risks(allocated, item_ok, breakdown, graph, config)

    if allocated:
        gate_ratio = sum(1 for g in gates if g.passed) / len(gates)
        penalty = min(1.0, sum(RISK_PENALTY.get(r.severity, 0.0) for r in risks))
        score = 0.3 * stream_score(allocated) + 0.4 * gate_ratio + 0.3 * (1.0 - penalty)
    else:
        score = 0.0

    analysis = ValueDeliveryAnalysis(
        iteration=iteration.index,
        score=max(0.0, min(1.0, score)),
        stream_breakdown=breakdown,
        gates=gates,
        risks=risks,
        rollback_complexity=rollback_complexity(allocated, graph),
    )
    analysis.recommendations = _recommendations(analysis)
    if not allocated:
        analysis.recommendations.append("Iteration has no allocated work")

    failed = [g.name for g in gates if not g.passed]
    logger.info(
        f"[VALUE] Iteration {iteration.index}: score={analysis.score:.2f} "
        f"working_software={'yes' if analysis.delivers_working_software else 'no'}"
        + (f" failed={','.join(failed)}" if failed else "")
    )
    return analysis


def analyze_plan(iterations: list[IterationPlan], items: list[WorkItem], graph: DependencyGraph,
                 config: Optional[PlanningConfig] = None) -> list[ValueDeliveryAnalysis]:
    by_id = {i.id: i for i in items}
    iteration_of = {a.item_id: it.index for it in iterations for a in it.allocated_items}
    return [analyze_iteration(it, by_id, graph, iteration_of, config) for it in iterations]


def value_delivery_score(analyses: list[ValueDeliveryAnalysis], iterations: list[IterationPlan]) -> float:
    """Average score over iterations that have work."""
    scored = [a.score for a, it in zip(analyses, iterations) if it.allocated_items]
    return sum(scored) / len(scored) if scored else 0.0


def delivery_confidence(analysis: ValueDeliveryAnalysis, iteration: IterationPlan, teams: list[Team],
                        config: Optional[PlanningConfig] = None) -> tuple[float, str]:
    """Blend of team, technical, dependency and capacity confidence, with a level."""
    config = config or PlanningConfig()
    used = {a.team_id for a in iteration.allocated_items if a.team_id}
    team_scores = [capacity_confidence(t)[0] for t in (find_team(teams, tid) for tid in used) if t]
    team = sum(team_scores) / len(team_scores) if team_scores else 0.5

    technical = sum(1 for g in analysis.gates if g.passed) / len(analysis.gates) if analysis.gates else 0.0
    confidences = [a.confidence for a in iteration.allocated_items]
    dependency = sum(confidences) / len(confidences) if confidences else 1.0
    if iteration.utilization <= config.max_utilization:
        capacity = 1.0
    else:
        capacity = config.max_utilization / iteration.utilization

    score = 0.3 * team + 0.3 * technical + 0.2 * dependency + 0.2 * capacity
    if score >= 0.8:
        level = "high"
    elif score >= 0.6:
        level = "medium"
    else:
        level = "low"
    return score, level
