"""
Team capacity model.

Raw capacity is what a team delivers in an iteration window; the allocator
may only fill ``raw * min(max_utilization, 1 - buffer_fraction)``. The rest
is buffer for unplanned work.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from artplan.lib.config import PlanningConfig
from artplan.planning.models import CapacityIssue, IterationPlan, Team

logger = logging.getLogger(__name__)


@dataclass
class TeamCapacity:
    """Capacity of one team for one iteration window."""
    team_id: str
    raw: float
    allocatable: float
    confidence: float
    notes: list[str] = field(default_factory=list)
    risks: list[str] = field(default_factory=list)


@dataclass
class UtilizationReport:
    team_id: str
    iteration: int
    allocated: int
    capacity: float
    rate: float

    @property
    def is_over_allocated(self) -> bool:
        return self.rate > 1.0


def capacity_confidence(team: Team) -> tuple[float, list[str]]:
    """Confidence in a team's capacity estimate, with the risks behind it."""
    confidence = 0.9
    risks = []
    if team.average_velocity < 10:
        confidence -= 0.1
        risks.append(f"Team {team.name} has low historical velocity")
    if team.member_count < 3:
        confidence -= 0.15
        risks.append(f"Team {team.name} is very small ({team.member_count} members)")
    if team.member_count > 10:
        confidence -= 0.1
        risks.append(f"Team {team.name} is very large ({team.member_count} members)")
    return max(0.3, min(1.0, confidence)), risks


def team_capacity(team: Team, iteration_days: int, config: PlanningConfig) -> TeamCapacity:
    raw = team.raw_capacity(iteration_days)
    allocatable = raw * config.allocatable_fraction
    confidence, risks = capacity_confidence(team)
    notes = [f"Applied capacity factor {team.capacity_factor} for {team.name}"]
    if iteration_days != config.iteration_length_days:
        notes.append(f"Adjusted for iteration length of {iteration_days} days")
    notes.append(f"Reserved {config.buffer_fraction:.0%} buffer, ceiling {config.allocatable_fraction:.0%}")
    return TeamCapacity(
        team_id=team.id,
        raw=raw,
        allocatable=allocatable,
        confidence=confidence,
        notes=notes,
        risks=risks,
    )


def validate_team(team: Team) -> list[str]:
    """Problems with a team's capacity inputs; empty when usable."""
    issues = []
    if team.average_velocity <= 0:
        issues.append(f"Team {team.name} has invalid average velocity: {team.average_velocity}")
    if team.member_count <= 0:
        issues.append(f"Team {team.name} has invalid member count: {team.member_count}")
    if not 0 <= team.capacity_factor <= 1:
        issues.append(f"Team {team.name} has invalid capacity factor: {team.capacity_factor}")
    if team.average_velocity > team.member_count * 10:
        issues.append(
            f"Team {team.name} has unusually high velocity ({team.average_velocity}) "
            f"for team size ({team.member_count})"
        )
    return issues


def utilization_reports(iteration: IterationPlan) -> list[UtilizationReport]:
    reports = []
    for team_id, capacity in sorted(iteration.team_capacity.items()):
        allocated = iteration.team_points(team_id)
        rate = allocated / capacity if capacity > 0 else (1.0 if allocated else 0.0)
        reports.append(UtilizationReport(team_id, iteration.index, allocated, capacity, rate))
    return reports


def check_utilization(iterations: list[IterationPlan], config: PlanningConfig) -> tuple[list[CapacityIssue], list[str]]:
    """Capacity issues and recommendations for a set of iterations."""
    issues: list[CapacityIssue] = []
    recommendations: list[str] = []

    for it in iterations:
        if it.utilization > config.max_utilization + 1e-9:
            issues.append(CapacityIssue(
                type="capacity_overrun",
                severity="high",
                description=(
                    f"Iteration {it.index} at {it.utilization:.0%} exceeds "
                    f"the {config.max_utilization:.0%} ceiling"
                ),
                iteration=it.index,
                item_ids=it.item_ids(),
            ))
        for report in utilization_reports(it):
            if report.rate > config.max_utilization + 1e-9:
                issues.append(CapacityIssue(
                    type="capacity_overrun",
                    severity="medium",
                    description=f"Team {report.team_id} at {report.rate:.0%} in iteration {it.index}",
                    iteration=it.index,
                    item_ids=[a.item_id for a in it.allocated_items if a.team_id == report.team_id],
                ))
                recommendations.append(
                    f"Reduce allocation for team {report.team_id} in iteration {it.index} or increase capacity"
                )
            elif report.rate > 0.95:
                recommendations.append(
                    f"Team {report.team_id} has no capacity buffer in iteration {it.index}"
                )

    rates = [it.utilization for it in iterations if it.total_capacity > 0]
    if rates:
        average = sum(rates) / len(rates)
        low = [it.index for it in iterations if it.total_capacity > 0 and it.utilization < config.min_healthy_utilization]
        if low:
            recommendations.append(
                f"Iterations {', '.join(map(str, low))} are below {config.min_healthy_utilization:.0%} "
                f"utilization - consider pulling work forward"
            )
        deviation = max(abs(r - average) for r in rates)
        if deviation > 0.3:
            issues.append(CapacityIssue(
                type="team_imbalance",
                severity="medium",
                description=f"Utilization varies by up to {deviation:.0%} from the {average:.0%} average",
            ))
            recommendations.append("Large capacity imbalance detected - consider rebalancing work across iterations")

    return issues, recommendations


def average_utilization(iterations: list[IterationPlan]) -> float:
    total_capacity = sum(it.total_capacity for it in iterations)
    if total_capacity <= 0:
        return 0.0
    return sum(it.allocated_points for it in iterations) / total_capacity


def find_team(teams: list[Team], team_id: Optional[str]) -> Optional[Team]:
    for team in teams:
        if team.id == team_id:
            return team
    return None
