"""
Error taxonomy for planning passes.

Every error raised by the planning core derives from PlanningError so that
callers at the command surface can catch one type and map it to an exit code.
"""

from typing import Any, Optional

from .constants import (
    EXIT_CANCELLED,
    EXIT_ERROR,
    EXIT_EXTERNAL_ERROR,
    EXIT_PLANNING_ERROR,
    EXIT_VALIDATION_ERROR,
)


class PlanningError(Exception):
    """Base class for all planning errors."""


class ValidationError(PlanningError):
    """Malformed input, rejected before any stage runs."""

    def __init__(self, schema_name: str, message: str, path: str = None):
        self.schema_name = schema_name
        self.message = message
        self.path = path
        super().__init__(f"[{schema_name}] {message}" + (f" at {path}" if path else ""))


class DecompositionInfeasible(PlanningError):
    """An item cannot be split into compliant sub-items with the allowed count."""

    def __init__(self, item_id: str, points: int, max_points: int, max_parts: int):
        self.item_id = item_id
        self.points = points
        self.max_points = max_points
        self.max_parts = max_parts
        super().__init__(
            f"{item_id}: {points} points cannot be split into at most "
            f"{max_parts} parts of <= {max_points} points"
        )


class CyclicDependency(PlanningError):
    """Hard dependency cycles block allocation."""

    def __init__(self, chains: list[list[str]]):
        self.chains = chains
        rendered = "; ".join(" -> ".join(chain + chain[:1]) for chain in chains)
        super().__init__(f"{len(chains)} hard dependency cycle(s): {rendered}")


class OverAllocation(PlanningError):
    """Allocation finished with items that could not be placed.

    Carries the partial allocation so nothing is silently dropped.
    """

    def __init__(self, result: Any):
        self.result = result
        self.unplaced = list(result.unplaced)
        ids = ", ".join(u.item_id for u in self.unplaced)
        super().__init__(f"{len(self.unplaced)} item(s) could not be placed: {ids}")


class ExternalServiceError(PlanningError):
    """A boundary call failed after exhausting its retry budget."""

    def __init__(self, operation: str, message: str, attempts: int = 1,
                 status_code: Optional[int] = None, last_error: Optional[BaseException] = None):
        self.operation = operation
        self.message = message
        self.attempts = attempts
        self.status_code = status_code
        self.last_error = last_error
        super().__init__(f"{operation} failed after {attempts} attempt(s): {message}")


class InvariantViolation(PlanningError):
    """A post-hoc consistency check failed. Aborts the pass."""


class InvalidTransition(PlanningError):
    """Raised when a plan lifecycle transition is not allowed."""

    def __init__(self, from_state: str, trigger: str, plan_key: str = ""):
        self.from_state = from_state
        self.trigger = trigger
        self.plan_key = plan_key
        prefix = f"{plan_key}: " if plan_key else ""
        super().__init__(f"{prefix}cannot '{trigger}' from state '{from_state}'")


class PlanningCancelled(PlanningError):
    """The pass observed a cancellation request between stages."""

    def __init__(self, stage: str):
        self.stage = stage
        super().__init__(f"Planning cancelled before stage '{stage}'")


def exit_code_for(error: BaseException) -> int:
    """Map an error to the CLI exit code for its category."""
    if isinstance(error, PlanningCancelled):
        return EXIT_CANCELLED
    if isinstance(error, ValidationError):
        return EXIT_VALIDATION_ERROR
    if isinstance(error, ExternalServiceError):
        return EXIT_EXTERNAL_ERROR
    if isinstance(error, PlanningError):
        return EXIT_PLANNING_ERROR
    return EXIT_ERROR
