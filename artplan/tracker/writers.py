"""
Writers that push a committed plan back to the work-tracking system.

Each writer is idempotent by item id: re-running a commit after a partial
failure rewrites the same records rather than duplicating them.
"""

import logging
from dataclasses import dataclass, field

from artplan.lib.errors import ExternalServiceError
from artplan.planning.models import ARTPlan, DecompositionResult, DetectionMethod
from artplan.tracker.client import STATUS_CONFLICT, BacklogSource

logger = logging.getLogger(__name__)


@dataclass
class WriteReport:
    """What a writer did with each record."""
    written: list[str] = field(default_factory=list)
    existing: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.written) + len(self.existing) + len(self.skipped)


def _already_exists(error: ExternalServiceError) -> bool:
    return error.status_code == STATUS_CONFLICT or "already exists" in error.message.lower()


class SubItemWriter:
    """Creates decomposition children with their parent link."""

    def __init__(self, backlog: BacklogSource):
        self.backlog = backlog

    def write(self, results: list[DecompositionResult]) -> WriteReport:
        report = WriteReport()
        split_ids = {result.parent.id for result in results}
        for result in results:
            for child in result.children:
                # Intermediate parts that were split again exist only in the plan
                if child.id in split_ids:
                    continue
                self.backlog.create_item(child.to_dict())
                report.written.append(child.id)
        logger.info(f"[TRACKER] Created {len(report.written)} sub-item(s)")
        return report


class RelationshipWriter:
    """Creates blocks/blocked_by/related links for detected edges.

    Edges that came from the tracker (manual) are not written back. A link
    the tracker already has counts as success.
    """

    def __init__(self, backlog: BacklogSource):
        self.backlog = backlog

    def write(self, plan: ARTPlan) -> WriteReport:
        report = WriteReport()
        for edge in plan.graph.edges:
            label = f"{edge.source_id}->{edge.target_id}"
            if edge.detection_method == DetectionMethod.MANUAL:
                report.skipped.append(label)
                continue
            try:
                self.backlog.create_relationship(edge.source_id, edge.target_id, edge.kind.value)
                report.written.append(label)
            except ExternalServiceError as e:
                if not _already_exists(e):
                    raise
                logger.debug(f"[TRACKER] Relationship {label} already exists")
                report.existing.append(label)
        logger.info(
            f"[TRACKER] Relationships: {len(report.written)} created, "
            f"{len(report.existing)} existing, {len(report.skipped)} declared"
        )
        return report


class IterationWriter:
    """Assigns every placed item to its iteration window.

    The window dates travel with each assignment so the tracker can create
    the iteration cycle on first use.
    """

    def __init__(self, backlog: BacklogSource):
        self.backlog = backlog

    def write(self, plan: ARTPlan) -> WriteReport:
        report = WriteReport()
        for iteration in plan.iterations:
            for allocated in iteration.allocated_items:
                self.backlog.assign_iteration(
                    allocated.item_id,
                    plan.pi.id,
                    iteration.index,
                    iteration.start_date.isoformat(),
                    iteration.end_date.isoformat(),
                )
                report.written.append(allocated.item_id)
        report.skipped.extend(u.item_id for u in plan.unplaced)
        logger.info(
            f"[TRACKER] Assigned {len(report.written)} item(s) across {len(plan.iterations)} iteration(s)"
        )
        return report
