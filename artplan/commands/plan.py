"""
artplan plan - Run a full planning pass for one PI and team.
"""

import json
from pathlib import Path

from artplan.commands.common import planning_config
from artplan.lib.config import load_notification_config, load_teams
from artplan.notifications import Notifier
from artplan.store import PlanStore
from artplan.tracker.client import InMemoryBacklog
from artplan.workflow.coordinator import PlanningCoordinator
from artplan.workflow.request import parse_request


def _print_progress(event):
    print(f"  {event}")


def cmd_plan(args, state_dir: Path, config_dir: Path = None) -> int:
    """Plan a PI against a backlog file, writing assignments back to it on commit."""
    request = parse_request(
        pi_id=args.pi,
        team_id=args.team,
        iteration_count=args.iterations,
        dry_run=args.dry_run,
        commit=not args.no_commit,
        allow_partial=args.allow_partial,
    )

    if args.flow:
        from artplan.workflow.flow import plan_program_increment

        result = plan_program_increment(
            pi_id=request.pi_id,
            team_id=request.team_id,
            state_dir=str(state_dir),
            backlog_file=args.backlog,
            config_dir=str(config_dir) if config_dir else None,
            iteration_count=request.iteration_count,
            dry_run=request.dry_run,
            commit=request.commit,
            allow_partial=request.allow_partial,
        )
        print(json.dumps(result, indent=2))
        return result["exit_code"]

    backlog_path = Path(args.backlog)
    backlog = InMemoryBacklog.from_file(backlog_path)

    teams = []
    if config_dir and (config_dir / "teams.yaml").exists():
        teams = load_teams(config_dir / "teams.yaml")

    notifier = Notifier.from_config(
        load_notification_config(config_dir / "notify.env" if config_dir else None)
    )
    coordinator = PlanningCoordinator(
        backlog,
        config=planning_config(config_dir),
        store=PlanStore(state_dir),
        notifier=notifier,
        teams=teams,
        progress_callback=None if args.json else _print_progress,
    )
    outcome = coordinator.run(request)

    if outcome.ok and request.commit and not request.dry_run:
        backlog.save(backlog_path)

    if args.json:
        data = outcome.to_dict()
        data["plan"] = outcome.plan.to_dict() if outcome.plan else None
        print(json.dumps(data, indent=2))
    else:
        print()
        print(outcome.summary)

    return outcome.exit_code
