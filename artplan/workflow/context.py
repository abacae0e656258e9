"""
Planning context for a single (PI, team) pass.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from artplan.lib.config import PlanningConfig
from artplan.lib.progress import CancelToken, ProgressReporter
from artplan.planning.decomposition import BatchDecomposition
from artplan.planning.dependencies import CriticalPath
from artplan.planning.models import (
    AllocationResult,
    ARTPlan,
    DependencyGraph,
    DependencyRelationship,
    ProgramIncrement,
    Team,
    WorkItem,
)
from artplan.workflow.fsm import PlanFSM
from artplan.workflow.request import PlanRequest


@dataclass
class PlanningContext:
    """Everything one pass carries from stage to stage.

    Each stage reads what earlier stages produced and sets its own output;
    nothing is shared with other passes.
    """
    request: PlanRequest
    config: PlanningConfig
    fsm: PlanFSM
    progress: ProgressReporter
    cancel: CancelToken
    start_time: datetime = field(default_factory=datetime.now)
    stages: dict = field(default_factory=dict)

    # load
    pi: Optional[ProgramIncrement] = None
    team: Optional[Team] = None
    backlog: list[WorkItem] = field(default_factory=list)
    declared: list[DependencyRelationship] = field(default_factory=list)

    # decompose
    decomposition: Optional[BatchDecomposition] = None

    # map
    graph: Optional[DependencyGraph] = None
    critical_path: Optional[CriticalPath] = None

    # allocate / validate / optimize
    pinned: dict[str, int] = field(default_factory=dict)
    allocation: Optional[AllocationResult] = None
    plan: Optional[ARTPlan] = None

    @property
    def plan_key(self) -> str:
        return f"{self.request.pi_id}/{self.request.team_id}"

    @property
    def items(self) -> list[WorkItem]:
        """Decomposed items once available, else the raw backlog."""
        if self.decomposition is not None:
            return self.decomposition.items
        return self.backlog

    @property
    def iteration_count(self) -> int:
        if self.request.iteration_count is not None:
            return self.request.iteration_count
        return self.pi.natural_iteration_count

    def record_stage(self, stage: str, status: str, duration: float, notes: str = ""):
        """Record stage result."""
        self.stages[stage] = {
            "status": status,
            "duration_seconds": duration,
            "notes": notes,
        }
