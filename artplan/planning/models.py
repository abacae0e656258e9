"""
Data models for the planning core.

Stages never mutate their inputs: each one consumes a snapshot and returns
new structures. Dependency edges live on DependencyGraph only; WorkItem keeps
no references to edges or to other items beyond the weak parent_id.
"""

from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from enum import Enum
from typing import Iterator, Optional

from artplan.lib.constants import (
    BASELINE_ITERATION_DAYS,
    MAX_STORY_POINTS,
    STATE_DRAFT,
)


class DependencyKind(str, Enum):
    BLOCKS = "blocks"
    BLOCKED_BY = "blocked_by"
    RELATED = "related"


class DependencyStrength(str, Enum):
    HARD = "hard"
    SOFT = "soft"


class DetectionMethod(str, Enum):
    KEYWORD = "keyword"
    SEMANTIC = "semantic"
    MANUAL = "manual"


class ValueStream(str, Enum):
    CUSTOMER_FACING = "customer-facing"
    TECHNICAL_ENABLER = "technical-enabler"
    RISK_REDUCTION = "risk-reduction"
    COMPLIANCE = "compliance"
    PLATFORM = "platform"


@dataclass
class WorkItem:
    """A backlog item as seen by the planning core.

    Built only through tracker.normalize (or directly in tests); unknown
    payload fields never reach this type.
    """
    id: str
    title: str
    description: str = ""
    story_points: int = 0
    type: str = "story"                        # story, feature, epic, enabler
    acceptance_criteria: list[str] = field(default_factory=list)
    parent_id: Optional[str] = None            # Weak reference, never ownership
    team_id: Optional[str] = None
    labels: list[str] = field(default_factory=list)
    status: str = "backlog"
    business_value: Optional[int] = None       # WSJF inputs, 1-10
    time_criticality: Optional[int] = None
    risk_reduction: Optional[int] = None
    rollback_note: Optional[str] = None
    created_at: Optional[str] = None           # ISO timestamp

    def needs_decomposition(self, limit: int = MAX_STORY_POINTS) -> bool:
        return self.type == "story" and self.story_points > limit

    @property
    def is_incomplete(self) -> bool:
        return self.status == "incomplete" or "incomplete" in self.labels

    @property
    def weight(self) -> int:
        """Progress weight; zero-point items still count as one."""
        return max(self.story_points, 1)

    @property
    def content(self) -> str:
        """Title, description and criteria joined for text analysis."""
        parts = [self.title, self.description]
        parts.extend(self.acceptance_criteria)
        return " ".join(p for p in parts if p)

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "story_points": self.story_points,
            "type": self.type,
            "acceptance_criteria": list(self.acceptance_criteria),
            "labels": list(self.labels),
            "status": self.status,
        }
        for key in ("parent_id", "team_id", "business_value", "time_criticality",
                    "risk_reduction", "rollback_note", "created_at"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "WorkItem":
        return cls(
            id=data["id"],
            title=data["title"],
            description=data.get("description", ""),
            story_points=data.get("story_points", 0),
            type=data.get("type", "story"),
            acceptance_criteria=list(data.get("acceptance_criteria", [])),
            parent_id=data.get("parent_id"),
            team_id=data.get("team_id"),
            labels=list(data.get("labels", [])),
            status=data.get("status", "backlog"),
            business_value=data.get("business_value"),
            time_criticality=data.get("time_criticality"),
            risk_reduction=data.get("risk_reduction"),
            rollback_note=data.get("rollback_note"),
            created_at=data.get("created_at"),
        )


@dataclass
class Team:
    """A delivery team and its sustainable pace."""
    id: str
    name: str
    member_count: int
    average_velocity: float                    # points per baseline iteration
    capacity_factor: float = 1.0               # 0-1, holidays and leave

    def raw_capacity(self, iteration_days: int = BASELINE_ITERATION_DAYS) -> float:
        """Points this team can deliver in an iteration of the given length."""
        return self.average_velocity * self.capacity_factor * (iteration_days / BASELINE_ITERATION_DAYS)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "member_count": self.member_count,
            "average_velocity": self.average_velocity,
            "capacity_factor": self.capacity_factor,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Team":
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            member_count=data["member_count"],
            average_velocity=data["average_velocity"],
            capacity_factor=data.get("capacity_factor", 1.0),
        )


@dataclass
class ProgramIncrement:
    """A multi-iteration planning horizon."""
    id: str
    name: str
    start_date: date
    end_date: date
    iteration_length_days: int = BASELINE_ITERATION_DAYS

    @property
    def duration_days(self) -> int:
        return (self.end_date - self.start_date).days

    @property
    def natural_iteration_count(self) -> int:
        """Number of whole iterations that fit in the PI (at least one)."""
        return max(1, self.duration_days // self.iteration_length_days)

    def iteration_windows(self, count: int) -> Iterator[tuple[int, date, date]]:
        """Yield (index, start, end) for ``count`` consecutive iterations.

        Indexes start at 1. Windows past end_date are allowed when the
        allocator extends the plan.
        """
        for i in range(count):
            start = self.start_date + timedelta(days=i * self.iteration_length_days)
            end = start + timedelta(days=self.iteration_length_days)
            yield i + 1, start, end

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "iteration_length_days": self.iteration_length_days,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProgramIncrement":
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            start_date=date.fromisoformat(data["start_date"]),
            end_date=date.fromisoformat(data["end_date"]),
            iteration_length_days=data.get("iteration_length_days", BASELINE_ITERATION_DAYS),
        )


@dataclass
class AcceptanceCriteriaMapping:
    """Which child received each of the parent's criteria, in parent order."""
    assignments: list[tuple[str, int]] = field(default_factory=list)  # (criterion, child index)

    def criteria_for(self, child_index: int) -> list[str]:
        return [c for c, idx in self.assignments if idx == child_index]

    def to_dict(self) -> list:
        return [{"criterion": c, "child": idx} for c, idx in self.assignments]


@dataclass
class DecompositionResult:
    """A parent snapshot and its 2-4 compliant children."""
    parent: WorkItem
    children: list[WorkItem]
    criteria_mapping: AcceptanceCriteriaMapping
    intermediate: bool = False                 # recursive split; children are decomposed again

    @property
    def total_points(self) -> int:
        return sum(c.story_points for c in self.children)


@dataclass(frozen=True)
class DependencyRelationship:
    """A directed edge owned by a DependencyGraph.

    For ``blocks`` the source must finish first; for ``blocked_by`` the target
    must. ``related`` edges carry no ordering.
    """
    source_id: str
    target_id: str
    kind: DependencyKind
    strength: DependencyStrength
    detection_method: DetectionMethod
    rationale: str = ""
    confidence: float = 1.0
    methods: tuple = ()                       # every method that detected this edge

    @property
    def is_ordering(self) -> bool:
        return self.kind in (DependencyKind.BLOCKS, DependencyKind.BLOCKED_BY)

    @property
    def is_hard(self) -> bool:
        return self.strength == DependencyStrength.HARD and self.is_ordering

    @property
    def predecessor(self) -> str:
        return self.target_id if self.kind == DependencyKind.BLOCKED_BY else self.source_id

    @property
    def successor(self) -> str:
        return self.source_id if self.kind == DependencyKind.BLOCKED_BY else self.target_id

    @property
    def key(self) -> tuple[str, str]:
        return (self.source_id, self.target_id)

    def to_dict(self) -> dict:
        return {
            "source_id": self.source_id,
            "target_id": self.target_id,
            "kind": self.kind.value,
            "strength": self.strength.value,
            "detection_method": self.detection_method.value,
            "rationale": self.rationale,
            "confidence": round(self.confidence, 4),
            "methods": [m.value for m in self.methods],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DependencyRelationship":
        return cls(
            source_id=data["source_id"],
            target_id=data["target_id"],
            kind=DependencyKind(data["kind"]),
            strength=DependencyStrength(data["strength"]),
            detection_method=DetectionMethod(data["detection_method"]),
            rationale=data.get("rationale", ""),
            confidence=data.get("confidence", 1.0),
            methods=tuple(DetectionMethod(m) for m in data.get("methods", [])),
        )


@dataclass
class DependencyGraph:
    """Nodes (work item ids) and the edges between them.

    ``nodes`` keeps snapshot order, which is also the creation order used for
    deterministic tie-breaking.
    """
    nodes: list[str] = field(default_factory=list)
    edges: list[DependencyRelationship] = field(default_factory=list)

    def hard_edges(self) -> list[DependencyRelationship]:
        return [e for e in self.edges if e.is_hard]

    def soft_edges(self) -> list[DependencyRelationship]:
        return [e for e in self.edges if not e.is_hard]

    def predecessors(self, item_id: str, hard_only: bool = True) -> list[str]:
        edges = self.hard_edges() if hard_only else [e for e in self.edges if e.is_ordering]
        return sorted({e.predecessor for e in edges if e.successor == item_id})

    def successors(self, item_id: str, hard_only: bool = True) -> list[str]:
        edges = self.hard_edges() if hard_only else [e for e in self.edges if e.is_ordering]
        return sorted({e.successor for e in edges if e.predecessor == item_id})

    def edge_between(self, a: str, b: str) -> Optional[DependencyRelationship]:
        for e in self.edges:
            if {e.source_id, e.target_id} == {a, b}:
                return e
        return None

    def with_edges(self, edges: list[DependencyRelationship]) -> "DependencyGraph":
        return DependencyGraph(nodes=list(self.nodes), edges=list(edges))

    def to_dict(self) -> dict:
        return {"nodes": list(self.nodes), "edges": [e.to_dict() for e in self.edges]}

    @classmethod
    def from_dict(cls, data: dict) -> "DependencyGraph":
        return cls(
            nodes=list(data.get("nodes", [])),
            edges=[DependencyRelationship.from_dict(e) for e in data.get("edges", [])],
        )


@dataclass
class AllocatedWorkItem:
    item_id: str
    iteration: int                             # 1-based index
    confidence: float
    team_id: Optional[str] = None              # team whose capacity absorbed the item
    story_points: int = 0

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "iteration": self.iteration,
            "confidence": round(self.confidence, 4),
            "team_id": self.team_id,
            "story_points": self.story_points,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AllocatedWorkItem":
        return cls(
            item_id=data["item_id"],
            iteration=data["iteration"],
            confidence=data["confidence"],
            team_id=data.get("team_id"),
            story_points=data.get("story_points", 0),
        )


@dataclass
class IterationPlan:
    index: int
    start_date: date
    end_date: date
    total_capacity: float                      # sum of team capacities for the window
    allocated_items: list[AllocatedWorkItem] = field(default_factory=list)
    team_capacity: dict[str, float] = field(default_factory=dict)

    @property
    def allocated_points(self) -> int:
        return sum(a.story_points for a in self.allocated_items)

    @property
    def utilization(self) -> float:
        if self.total_capacity <= 0:
            return 0.0
        return self.allocated_points / self.total_capacity

    def team_points(self, team_id: str) -> int:
        return sum(a.story_points for a in self.allocated_items if a.team_id == team_id)

    def item_ids(self) -> list[str]:
        return [a.item_id for a in self.allocated_items]

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "total_capacity": round(self.total_capacity, 4),
            "team_capacity": {k: round(v, 4) for k, v in self.team_capacity.items()},
            "utilization": round(self.utilization, 4),
            "allocated_items": [a.to_dict() for a in self.allocated_items],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "IterationPlan":
        return cls(
            index=data["index"],
            start_date=date.fromisoformat(data["start_date"]),
            end_date=date.fromisoformat(data["end_date"]),
            total_capacity=data["total_capacity"],
            allocated_items=[AllocatedWorkItem.from_dict(a) for a in data.get("allocated_items", [])],
            team_capacity=dict(data.get("team_capacity", {})),
        )


@dataclass
class UnplacedItem:
    item_id: str
    reason: str
    blockers: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "reason": self.reason,
            "blockers": list(self.blockers),
            "suggestions": list(self.suggestions),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "UnplacedItem":
        return cls(
            item_id=data["item_id"],
            reason=data["reason"],
            blockers=list(data.get("blockers", [])),
            suggestions=list(data.get("suggestions", [])),
        )


@dataclass
class CapacityIssue:
    type: str                                  # capacity_overrun, dependency_violation, value_risk, team_imbalance
    severity: str                              # high, medium, low
    description: str
    iteration: Optional[int] = None
    item_ids: list[str] = field(default_factory=list)


@dataclass
class AllocationResult:
    iterations: list[IterationPlan]
    unplaced: list[UnplacedItem] = field(default_factory=list)
    issues: list[CapacityIssue] = field(default_factory=list)

    @property
    def over_allocated(self) -> bool:
        return bool(self.unplaced)

    @property
    def placed_count(self) -> int:
        return sum(len(it.allocated_items) for it in self.iterations)

    @property
    def success_rate(self) -> float:
        total = self.placed_count + len(self.unplaced)
        return self.placed_count / total if total else 1.0

    def iteration_of(self, item_id: str) -> Optional[int]:
        for it in self.iterations:
            for a in it.allocated_items:
                if a.item_id == item_id:
                    return it.index
        return None


@dataclass
class GateResult:
    name: str
    passed: bool
    blockers: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"name": self.name, "passed": self.passed, "blockers": list(self.blockers)}

    @classmethod
    def from_dict(cls, data: dict) -> "GateResult":
        return cls(name=data["name"], passed=data["passed"], blockers=list(data.get("blockers", [])))


@dataclass
class RiskFinding:
    type: str
    severity: str                              # high, medium, low
    description: str
    item_ids: list[str] = field(default_factory=list)
    mitigation: str = ""

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "severity": self.severity,
            "description": self.description,
            "item_ids": list(self.item_ids),
            "mitigation": self.mitigation,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RiskFinding":
        return cls(
            type=data["type"],
            severity=data["severity"],
            description=data["description"],
            item_ids=list(data.get("item_ids", [])),
            mitigation=data.get("mitigation", ""),
        )


@dataclass
class ValueDeliveryAnalysis:
    iteration: int
    score: float                               # [0, 1]
    stream_breakdown: dict[str, int] = field(default_factory=dict)   # stream -> points
    gates: list[GateResult] = field(default_factory=list)
    risks: list[RiskFinding] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    rollback_complexity: str = "low"

    @property
    def delivers_working_software(self) -> bool:
        return all(g.passed for g in self.gates)

    @property
    def blockers(self) -> list[str]:
        return [b for g in self.gates for b in g.blockers]

    def to_dict(self) -> dict:
        return {
            "iteration": self.iteration,
            "score": round(self.score, 4),
            "stream_breakdown": dict(self.stream_breakdown),
            "gates": [g.to_dict() for g in self.gates],
            "risks": [r.to_dict() for r in self.risks],
            "recommendations": list(self.recommendations),
            "rollback_complexity": self.rollback_complexity,
            "delivers_working_software": self.delivers_working_software,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ValueDeliveryAnalysis":
        return cls(
            iteration=data["iteration"],
            score=data["score"],
            stream_breakdown=dict(data.get("stream_breakdown", {})),
            gates=[GateResult.from_dict(g) for g in data.get("gates", [])],
            risks=[RiskFinding.from_dict(r) for r in data.get("risks", [])],
            recommendations=list(data.get("recommendations", [])),
            rollback_complexity=data.get("rollback_complexity", "low"),
        )


@dataclass(frozen=True)
class ImprovementAction:
    """A ranked recommendation. Never applied by the optimizer itself."""
    id: str
    category: str
    priority: str                              # high, medium, low
    effort: str                                # low, medium, high
    impact: float                              # expected readiness gain
    description: str
    item_ids: tuple = ()
    target_iteration: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "category": self.category,
            "priority": self.priority,
            "effort": self.effort,
            "impact": round(self.impact, 4),
            "description": self.description,
            "item_ids": list(self.item_ids),
            "target_iteration": self.target_iteration,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ImprovementAction":
        return cls(
            id=data["id"],
            category=data["category"],
            priority=data["priority"],
            effort=data["effort"],
            impact=data["impact"],
            description=data["description"],
            item_ids=tuple(data.get("item_ids", [])),
            target_iteration=data.get("target_iteration"),
        )


@dataclass
class ARTPlan:
    """Root aggregate for one (PI, team) planning pass. The only persisted entity."""
    pi: ProgramIncrement
    team_id: str
    iterations: list[IterationPlan] = field(default_factory=list)
    graph: DependencyGraph = field(default_factory=DependencyGraph)
    items: list[WorkItem] = field(default_factory=list)
    unplaced: list[UnplacedItem] = field(default_factory=list)
    value_analyses: list[ValueDeliveryAnalysis] = field(default_factory=list)
    actions: list[ImprovementAction] = field(default_factory=list)
    readiness_score: float = 0.0
    value_delivery_score: float = 0.0
    capacity_utilization: float = 0.0
    state: str = STATE_DRAFT
    optimization_passes: int = 0
    decomposition_failures: list[dict] = field(default_factory=list)
    created_at: Optional[str] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.pi.id, self.team_id)

    def item(self, item_id: str) -> Optional[WorkItem]:
        for it in self.items:
            if it.id == item_id:
                return it
        return None

    def iteration_of(self, item_id: str) -> Optional[int]:
        for it in self.iterations:
            if item_id in it.item_ids():
                return it.index
        return None

    def copy(self, **changes) -> "ARTPlan":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "pi": self.pi.to_dict(),
            "team_id": self.team_id,
            "state": self.state,
            "created_at": self.created_at,
            "optimization_passes": self.optimization_passes,
            "readiness_score": round(self.readiness_score, 4),
            "value_delivery_score": round(self.value_delivery_score, 4),
            "capacity_utilization": round(self.capacity_utilization, 4),
            "items": [i.to_dict() for i in self.items],
            "iterations": [i.to_dict() for i in self.iterations],
            "graph": self.graph.to_dict(),
            "unplaced": [u.to_dict() for u in self.unplaced],
            "value_analyses": [v.to_dict() for v in self.value_analyses],
            "actions": [a.to_dict() for a in self.actions],
            "decomposition_failures": list(self.decomposition_failures),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ARTPlan":
        return cls(
            pi=ProgramIncrement.from_dict(data["pi"]),
            team_id=data["team_id"],
            state=data.get("state", STATE_DRAFT),
            created_at=data.get("created_at"),
            optimization_passes=data.get("optimization_passes", 0),
            readiness_score=data.get("readiness_score", 0.0),
            value_delivery_score=data.get("value_delivery_score", 0.0),
            capacity_utilization=data.get("capacity_utilization", 0.0),
            items=[WorkItem.from_dict(i) for i in data.get("items", [])],
            iterations=[IterationPlan.from_dict(i) for i in data.get("iterations", [])],
            graph=DependencyGraph.from_dict(data.get("graph", {})),
            unplaced=[UnplacedItem.from_dict(u) for u in data.get("unplaced", [])],
            value_analyses=[ValueDeliveryAnalysis.from_dict(v) for v in data.get("value_analyses", [])],
            actions=[ImprovementAction.from_dict(a) for a in data.get("actions", [])],
            decomposition_failures=list(data.get("decomposition_failures", [])),
        )
