"""
Story decomposition.

Splits stories above the sizing limit into 2-4 sub-stories whose points sum
to the parent's, each within the limit, with every acceptance criterion
assigned to exactly one child.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from artplan.lib.config import PlanningConfig
from artplan.lib.errors import DecompositionInfeasible, InvariantViolation, ValidationError
from artplan.planning.models import (
    AcceptanceCriteriaMapping,
    DecompositionResult,
    WorkItem,
)

logger = logging.getLogger(__name__)

COMPLEXITY_KEYWORDS = ("integration", "api", "database", "security", "performance")

# Focus text per sub-story, keyed by how many parts the story was split into
FOCUS_BY_PART_COUNT = {
    2: (
        "core functionality and the initial implementation",
        "completion, validation and edge cases",
    ),
    3: (
        "foundational setup and basic functionality",
        "core business logic and main features",
        "completion, testing and edge cases",
    ),
    4: (
        "initial setup and basic structure",
        "core functionality implementation",
        "advanced features and integration",
        "finalization, testing and validation",
    ),
}


@dataclass
class StoryAnalysis:
    """Pre-decomposition assessment of a story."""
    item_id: str
    story_points: int
    needs_decomposition: bool
    recommended_parts: Optional[int]           # None when infeasible or not needed
    complexity_factors: list[str] = field(default_factory=list)
    risks: list[str] = field(default_factory=list)
    confidence: float = 0.9


@dataclass
class DecompositionCheck:
    """Outcome of the post-decomposition checks."""
    points_valid: bool
    criteria_valid: bool
    sizing_valid: bool
    value_preserved: bool
    issues: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return self.points_valid and self.criteria_valid and self.sizing_valid


@dataclass
class DecompositionFailure:
    item_id: str
    error_type: str
    message: str

    def to_dict(self) -> dict:
        return {"item_id": self.item_id, "error_type": self.error_type, "message": self.message}


@dataclass
class AuditEntry:
    timestamp: str
    item_id: str
    action: str                                # decomposed, failed
    detail: str


@dataclass
class BatchDecomposition:
    """Decomposed backlog: pass-through items plus children, in input order."""
    items: list[WorkItem]
    results: list[DecompositionResult] = field(default_factory=list)
    failures: list[DecompositionFailure] = field(default_factory=list)

    @property
    def decomposed_count(self) -> int:
        return len({r.parent.id for r in self.results if not r.intermediate})


def choose_part_count(points: int, config: PlanningConfig) -> Optional[int]:
    """Smallest k in [min, max] with ceil(points / k) within the sizing limit."""
    for k in range(config.min_sub_items, config.max_sub_items + 1):
        if math.ceil(points / k) <= config.max_story_points:
            return k
    return None


def distribute_points(points: int, parts: int) -> list[int]:
    """Near-even split; trailing parts absorb the remainder one point each."""
    base, remainder = divmod(points, parts)
    return [base + (1 if i >= parts - remainder else 0) for i in range(parts)]


def distribute_criteria(criteria: list[str], parts: int) -> AcceptanceCriteriaMapping:
    """Round-robin assignment preserving original order within each part."""
    return AcceptanceCriteriaMapping(
        assignments=[(criterion, i % parts) for i, criterion in enumerate(criteria)]
    )


def analyze_story(item: WorkItem, config: Optional[PlanningConfig] = None) -> StoryAnalysis:
    """Assess complexity and risk before splitting."""
    config = config or PlanningConfig()
    content = item.content.lower()

    factors = []
    if len(item.acceptance_criteria) > 5:
        factors.append(f"many acceptance criteria ({len(item.acceptance_criteria)})")
    if len(item.description) > 500:
        factors.append("long description")
    found = [kw for kw in COMPLEXITY_KEYWORDS if kw in content]
    if found:
        factors.append(f"technical scope: {', '.join(found)}")

    risks = []
    if item.story_points > 15:
        risks.append("very large story, consider splitting into a feature first")
    if len(item.acceptance_criteria) < 2:
        risks.append("fewer than two acceptance criteria to distribute")
    if len(item.description) < 100:
        risks.append("short description gives sub-stories little context")

    needs = item.needs_decomposition(config.max_story_points)
    parts = choose_part_count(item.story_points, config) if needs else None
    confidence = max(0.3, min(1.0, 0.9 - 0.1 * len(risks)))

    return StoryAnalysis(
        item_id=item.id,
        story_points=item.story_points,
        needs_decomposition=needs,
        recommended_parts=parts,
        complexity_factors=factors,
        risks=risks,
        confidence=confidence,
    )


def check_decomposition(result: DecompositionResult, config: Optional[PlanningConfig] = None) -> DecompositionCheck:
    """Run the point, criteria, sizing and value checks on a result."""
    config = config or PlanningConfig()
    parent, children = result.parent, result.children
    issues = []

    points_valid = sum(c.story_points for c in children) == parent.story_points
    if not points_valid:
        issues.append(
            f"points mismatch: children sum to {sum(c.story_points for c in children)}, "
            f"parent has {parent.story_points}"
        )

    sizing_valid = config.min_sub_items <= len(children) <= config.max_sub_items
    if not sizing_valid:
        issues.append(f"{len(children)} children outside [{config.min_sub_items}, {config.max_sub_items}]")
    if not result.intermediate:
        oversized = [c.id for c in children if c.story_points > config.max_story_points]
        if oversized:
            sizing_valid = False
            issues.append(f"children above {config.max_story_points} points: {', '.join(oversized)}")

    child_criteria = [c for child in children for c in child.acceptance_criteria]
    mapped = [c for c, _ in result.criteria_mapping.assignments]
    criteria_valid = (
        sorted(child_criteria) == sorted(parent.acceptance_criteria)
        and mapped == list(parent.acceptance_criteria)
    )
    if criteria_valid:
        for idx, child in enumerate(children):
            if child.acceptance_criteria != result.criteria_mapping.criteria_for(idx):
                criteria_valid = False
                break
    if not criteria_valid:
        issues.append("acceptance criteria are not an exact partition of the parent's criteria")

    value_preserved = True
    if len(parent.acceptance_criteria) >= len(children):
        empty = [c.id for c in children if not c.acceptance_criteria]
        if empty:
            value_preserved = False
            issues.append(f"children without criteria: {', '.join(empty)}")

    return DecompositionCheck(points_valid, criteria_valid, sizing_valid, value_preserved, issues)


def verify_decomposition(result: DecompositionResult, config: Optional[PlanningConfig] = None) -> None:
    """Raise InvariantViolation if the result breaks a hard invariant."""
    check = check_decomposition(result, config)
    if not check.valid:
        raise InvariantViolation(f"Decomposition of {result.parent.id} is invalid: {'; '.join(check.issues)}")


def _child_description(parent: WorkItem, index: int, parts: int, criteria: list[str]) -> str:
    focus_options = FOCUS_BY_PART_COUNT.get(parts)
    if focus_options:
        focus = f"This sub-story focuses on {focus_options[index]}."
    else:
        focus = f"This sub-story focuses on component {index + 1} of the overall implementation."

    lines = []
    if parent.description:
        lines.extend([parent.description, ""])
    lines.extend([
        f"**Parent Story**: {parent.id} - {parent.title}",
        "",
        "**Sub-Story Focus**:",
        focus,
    ])
    if criteria:
        lines.extend(["", "**Acceptance Criteria**:"])
        lines.extend(f"{n}. {c}" for n, c in enumerate(criteria, 1))
    return "\n".join(lines)


def _build_children(parent: WorkItem, points: list[int], mapping: AcceptanceCriteriaMapping) -> list[WorkItem]:
    parts = len(points)
    children = []
    for i, pts in enumerate(points):
        criteria = mapping.criteria_for(i)
        labels = [label for label in parent.labels if not label.startswith("sub-story-")]
        for label in ("decomposed", f"sub-story-{i + 1}"):
            if label not in labels:
                labels.append(label)
        children.append(WorkItem(
            id=f"{parent.id}-{i + 1}",
            title=f"{parent.title} - Part {i + 1} of {parts}",
            description=_child_description(parent, i, parts, criteria),
            story_points=pts,
            type="story",
            acceptance_criteria=criteria,
            parent_id=parent.id,
            team_id=parent.team_id,
            labels=labels,
            status=parent.status,
            business_value=parent.business_value,
            time_criticality=parent.time_criticality,
            risk_reduction=parent.risk_reduction,
            rollback_note=parent.rollback_note,
            created_at=parent.created_at,
        ))
    return children


class StoryDecomposer:
    """Decomposes stories and keeps an audit trail of what it did.

    Listeners are called with each successful DecompositionResult; a failing
    listener is logged and does not undo the decomposition.
    """

    def __init__(self, config: Optional[PlanningConfig] = None,
                 listeners: Optional[list[Callable[[DecompositionResult], None]]] = None):
        self.config = config or PlanningConfig()
        self.listeners = list(listeners or [])
        self.audit: list[AuditEntry] = []

    def decompose(self, item: WorkItem) -> DecompositionResult:
        """Split one oversized story.

        Raises:
            ValidationError: item is not above the sizing limit
            DecompositionInfeasible: no allowed part count brings every part within the limit
            InvariantViolation: the produced split fails its own checks
        """
        if item.story_points <= self.config.max_story_points:
            raise ValidationError(
                "decomposition",
                f"{item.id} has {item.story_points} points, nothing to split "
                f"(limit {self.config.max_story_points})",
                "story_points",
            )

        parts = choose_part_count(item.story_points, self.config)
        if parts is None:
            raise DecompositionInfeasible(
                item.id, item.story_points, self.config.max_story_points, self.config.max_sub_items
            )

        result = self._split(item, parts, intermediate=False)
        verify_decomposition(result, self.config)
        self._record(result)
        return result

    def decompose_recursive(self, item: WorkItem) -> list[DecompositionResult]:
        """Decompose, splitting infeasible stories into intermediate parts first.

        Returns results parent-first; only the non-intermediate results have
        children within the sizing limit.
        """
        try:
            return [self.decompose(item)]
        except DecompositionInfeasible:
            parts = self.config.max_sub_items
            logger.info(f"[DECOMP] {item.id}: {item.story_points} points, splitting into {parts} intermediate parts")

        top = self._split(item, parts, intermediate=True)
        verify_decomposition(top, self.config)
        self._record(top)

        results = [top]
        for child in top.children:
            if child.story_points > self.config.max_story_points:
                results.extend(self.decompose_recursive(child))
        return results

    def decompose_backlog(self, items: list[WorkItem], recursive: Optional[bool] = None) -> BatchDecomposition:
        """Decompose every oversized story in a backlog snapshot.

        Per-item failures are collected and the failed item is left out of the
        output. Invariant violations abort the batch.
        """
        recursive = self.config.recursive_decomposition if recursive is None else recursive
        output: list[WorkItem] = []
        results: list[DecompositionResult] = []
        failures: list[DecompositionFailure] = []

        for item in items:
            if not item.needs_decomposition(self.config.max_story_points):
                output.append(item)
                continue
            try:
                item_results = self.decompose_recursive(item) if recursive else [self.decompose(item)]
            except (DecompositionInfeasible, ValidationError) as e:
                logger.warning(f"[DECOMP] {item.id}: {e}")
                failures.append(DecompositionFailure(item.id, type(e).__name__, str(e)))
                self.audit.append(AuditEntry(datetime.now().isoformat(), item.id, "failed", str(e)))
                continue

            results.extend(item_results)
            output.extend(_leaf_children(item_results))

        logger.info(
            f"[DECOMP] Batch complete: {len(items)} in, {len(output)} out, "
            f"{len(failures)} failure(s)"
        )
        return BatchDecomposition(items=output, results=results, failures=failures)

    def _split(self, item: WorkItem, parts: int, intermediate: bool) -> DecompositionResult:
        points = distribute_points(item.story_points, parts)
        mapping = distribute_criteria(list(item.acceptance_criteria), parts)
        children = _build_children(item, points, mapping)
        return DecompositionResult(
            parent=item,
            children=children,
            criteria_mapping=mapping,
            intermediate=intermediate,
        )

    def _record(self, result: DecompositionResult) -> None:
        sizes = "/".join(str(c.story_points) for c in result.children)
        detail = f"{result.parent.story_points} -> {sizes}"
        logger.info(f"[DECOMP] {result.parent.id}: {detail}")
        self.audit.append(AuditEntry(datetime.now().isoformat(), result.parent.id, "decomposed", detail))

        for listener in self.listeners:
            try:
                listener(result)
            except Exception as e:
                logger.warning(f"[DECOMP] Listener failed for {result.parent.id}: {e}")


def _leaf_children(results: list[DecompositionResult]) -> list[WorkItem]:
    """Children that were not decomposed again, in split order."""
    split_ids = {r.parent.id for r in results}
    leaves = []

    def walk(result: DecompositionResult):
        for child in result.children:
            if child.id in split_ids:
                walk(next(r for r in results if r.parent.id == child.id))
            else:
                leaves.append(child)

    walk(results[0])
    return leaves


def decompose(item: WorkItem, config: Optional[PlanningConfig] = None) -> DecompositionResult:
    """Decompose a single story with a throwaway decomposer."""
    return StoryDecomposer(config).decompose(item)
