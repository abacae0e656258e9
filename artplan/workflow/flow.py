"""Prefect flow for planning passes.

Wraps the coordinator in a @flow and the commit-time tracker writes in
@task decorators to get:
- Automatic retry with configurable delay
- Structured logging
- Observability (when connected to Prefect server)

The coordinator and planning core remain unchanged; only the publisher is
swapped for one that routes writes through the tasks below.
"""

from pathlib import Path
from typing import TYPE_CHECKING, Optional

from prefect import flow, get_run_logger, task

from artplan.lib.config import (
    load_notification_config,
    load_planning_config,
    load_teams,
    load_tracker_config,
)
from artplan.notifications import Notifier
from artplan.store import PlanStore
from artplan.tracker.client import BacklogClient, InMemoryBacklog
from artplan.tracker.writers import IterationWriter, RelationshipWriter, SubItemWriter
from artplan.workflow.coordinator import PlanningCoordinator
from artplan.workflow.request import parse_request

if TYPE_CHECKING:
    from artplan.planning.decomposition import BatchDecomposition
    from artplan.planning.models import ARTPlan
    from artplan.tracker.client import BacklogSource


@task(
    retries=2,
    retry_delay_seconds=10,
    name="write_sub_items",
    description="Create decomposed sub-items in the tracker"
)
def task_write_sub_items(backlog: "BacklogSource", decomposition: "BatchDecomposition") -> int:
    """Sub-item writes are keyed by child id, so a retry rewrites the same items."""
    return len(SubItemWriter(backlog).write(decomposition.results).written)


@task(
    retries=2,
    retry_delay_seconds=10,
    name="write_relationships",
    description="Create dependency links in the tracker"
)
def task_write_relationships(backlog: "BacklogSource", plan: "ARTPlan") -> int:
    """Links that already exist count as written on retry."""
    return len(RelationshipWriter(backlog).write(plan).written)


@task(
    retries=2,
    retry_delay_seconds=10,
    name="write_iterations",
    description="Assign items to iterations in the tracker"
)
def task_write_iterations(backlog: "BacklogSource", plan: "ARTPlan") -> int:
    return len(IterationWriter(backlog).write(plan).written)


class PrefectPublisher:
    """Commit-time writer that runs each write as a Prefect task."""

    def __init__(self, backlog: "BacklogSource"):
        self.backlog = backlog

    def write_sub_items(self, decomposition: "BatchDecomposition") -> int:
        return task_write_sub_items(self.backlog, decomposition)

    def write_relationships(self, plan: "ARTPlan") -> int:
        return task_write_relationships(self.backlog, plan)

    def write_iterations(self, plan: "ARTPlan") -> int:
        return task_write_iterations(self.backlog, plan)


@flow(
    name="plan-program-increment",
    retries=0,
)
def plan_program_increment(
    pi_id: str,
    team_id: str,
    state_dir: str,
    backlog_file: Optional[str] = None,
    config_dir: Optional[str] = None,
    iteration_count: Optional[int] = None,
    dry_run: bool = False,
    commit: bool = True,
    allow_partial: bool = False,
) -> dict:
    """Plan one PI for one team.

    Args:
        pi_id: Program increment id
        team_id: Team id
        state_dir: Directory holding plans/
        backlog_file: JSON backlog file; when omitted the HTTP tracker from tracker.env is used
        config_dir: Directory with planning.env, tracker.env, notify.env and teams.yaml
        iteration_count: Explicit iteration count (defaults to what fits in the PI)
        dry_run: Compute and report only, no writes
        commit: Push assignments to the tracker when the pass succeeds
        allow_partial: Commit even when some items are unplaced

    Returns:
        Dict with ok, exit_code, state, readiness_score, error and stages
    """
    log = get_run_logger()
    log.info(f"Starting planning flow: {pi_id}/{team_id}")

    request = parse_request(
        pi_id=pi_id,
        team_id=team_id,
        iteration_count=iteration_count,
        dry_run=dry_run,
        commit=commit,
        allow_partial=allow_partial,
    )

    config_path = Path(config_dir) if config_dir else None
    planning_config = load_planning_config(config_path / "planning.env" if config_path else None)
    notifier = Notifier.from_config(
        load_notification_config(config_path / "notify.env" if config_path else None)
    )
    teams = []
    if config_path and (config_path / "teams.yaml").exists():
        teams = load_teams(config_path / "teams.yaml")

    if backlog_file:
        backlog = InMemoryBacklog.from_file(Path(backlog_file))
    else:
        backlog = BacklogClient(load_tracker_config(config_path / "tracker.env" if config_path else None))

    coordinator = PlanningCoordinator(
        backlog,
        config=planning_config,
        store=PlanStore(Path(state_dir)),
        notifier=notifier,
        teams=teams,
        publisher=PrefectPublisher(backlog),
    )
    outcome = coordinator.run(request)

    if backlog_file and outcome.ok and not dry_run and commit:
        backlog.save(Path(backlog_file))
    if isinstance(backlog, BacklogClient):
        backlog.close()

    for line in outcome.summary.splitlines():
        log.info(line)
    return outcome.to_dict()
