"""
Stage execution framework for planning passes.

Defines the stage order and the error handling shared by every stage.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from artplan.lib.errors import PlanningCancelled, PlanningError, exit_code_for
from artplan.workflow.context import PlanningContext

logger = logging.getLogger(__name__)


class StageResult(Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class StageError(PlanningError):
    """A stage failed. The original error is chained as __cause__."""
    stage: str
    message: str
    exit_code: int
    details: Optional[dict] = None

    def __str__(self):
        return f"[{self.stage}] {self.message}"


# Stage function signature: (ctx: PlanningContext) -> Optional[StageResult]
# Returning StageResult.SKIPPED records the stage as skipped.

STAGE_ORDER = [
    "load",
    "decompose",
    "map",
    "allocate",
    "validate",
    "optimize",
    "rebalance",
    "persist",
    "commit",
]


def _details(error: BaseException) -> dict:
    details = {"type": type(error).__name__}
    for attr in ("chains", "item_id", "operation", "attempts", "status_code", "schema_name", "path"):
        value = getattr(error, attr, None)
        if value is not None:
            details[attr] = value
    unplaced = getattr(error, "unplaced", None)
    if unplaced:
        details["unplaced"] = [u.item_id for u in unplaced]
    return details


def run_stage(ctx: PlanningContext, stage_name: str,
              stage_fn: Callable[[PlanningContext], Optional[StageResult]]) -> StageResult:
    """
    Run a single stage with cancellation check, timing and error handling.

    Returns StageResult and updates ctx.stages.
    """
    if ctx.cancel.cancelled:
        ctx.record_stage(stage_name, "cancelled", 0.0)
        ctx.progress.finish(stage_name, "cancelled")
        error = PlanningCancelled(stage_name)
        raise StageError(stage_name, str(error), exit_code_for(error), _details(error)) from error

    ctx.progress.start(stage_name)
    start = time.time()

    try:
        outcome = stage_fn(ctx) or StageResult.PASSED
        duration = time.time() - start
        ctx.record_stage(stage_name, outcome.value, duration)
        ctx.progress.finish(stage_name, outcome.value)
        logger.debug(f"[PLAN] Stage {stage_name} {outcome.value} ({duration:.2f}s)")
        return outcome

    except StageError as e:
        duration = time.time() - start
        ctx.record_stage(stage_name, "failed", duration, e.message)
        ctx.progress.finish(stage_name, "failed", e.message)
        raise

    except PlanningError as e:
        duration = time.time() - start
        ctx.record_stage(stage_name, "failed", duration, str(e))
        ctx.progress.finish(stage_name, "failed", str(e))
        logger.error(f"[PLAN] Stage {stage_name} failed: {e}")
        raise StageError(stage_name, str(e), exit_code_for(e), _details(e)) from e

    except Exception as e:
        duration = time.time() - start
        ctx.record_stage(stage_name, "failed", duration, str(e))
        ctx.progress.finish(stage_name, "failed", str(e))
        logger.exception(f"[PLAN] Stage {stage_name} error: {e}")
        raise StageError(stage_name, str(e), exit_code_for(e), _details(e)) from e
