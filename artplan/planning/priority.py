"""Business-priority scoring (Weighted Shortest Job First)."""

import logging
from dataclasses import dataclass

from artplan.planning.models import WorkItem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WSJFWeights:
    business_value: float = 1.0
    time_criticality: float = 1.0
    risk_reduction: float = 1.0


DEFAULT_WEIGHTS = WSJFWeights()


def calculate_wsjf(business_value: float, time_criticality: float, risk_reduction: float,
                   job_size: float, weights: WSJFWeights = DEFAULT_WEIGHTS) -> float:
    """Cost of delay divided by job size. Non-positive job sizes score 0."""
    if job_size <= 0:
        logger.warning(f"Invalid job size for WSJF: {job_size}")
        return 0.0
    cost_of_delay = (
        business_value * weights.business_value
        + time_criticality * weights.time_criticality
        + risk_reduction * weights.risk_reduction
    )
    return cost_of_delay / job_size


def business_priority(item: WorkItem, weights: WSJFWeights = DEFAULT_WEIGHTS) -> float:
    """WSJF for an item; items with no WSJF inputs score 0."""
    if item.business_value is None and item.time_criticality is None and item.risk_reduction is None:
        return 0.0
    return calculate_wsjf(
        item.business_value or 0,
        item.time_criticality or 0,
        item.risk_reduction or 0,
        item.weight,
        weights,
    )


def prioritize(items: list[WorkItem], weights: WSJFWeights = DEFAULT_WEIGHTS) -> list[WorkItem]:
    """Highest WSJF first, then smaller items, then id."""
    return sorted(items, key=lambda i: (-business_priority(i, weights), i.story_points, i.id))
