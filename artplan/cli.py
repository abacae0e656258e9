#!/usr/bin/env python3
"""artplan CLI entrypoint."""

import argparse
import logging
import os
import sys
from pathlib import Path

from artplan.commands import decompose as cmd_decompose_module
from artplan.commands import deps as cmd_deps_module
from artplan.commands import plan as cmd_plan_module
from artplan.commands import show as cmd_show_module
from artplan.lib.errors import PlanningError, exit_code_for

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(verbose: bool) -> None:
    """--verbose wins; otherwise ARTPLAN_LOG_LEVEL, defaulting to WARNING."""
    if verbose:
        level = logging.DEBUG
    else:
        name = os.environ.get("ARTPLAN_LOG_LEVEL", "WARNING").upper()
        level = getattr(logging, name, None)
        if not isinstance(level, int):
            level = logging.WARNING
    logging.basicConfig(level=level, format=LOG_FORMAT)


def get_config_dir(args) -> Path:
    if args.config_dir:
        return Path(args.config_dir)
    return Path(os.environ.get("ARTPLAN_CONFIG_DIR", "."))


def get_state_dir(args) -> Path:
    if args.state_dir:
        return Path(args.state_dir)
    return Path(os.environ.get("ARTPLAN_STATE_DIR", "."))


def cmd_decompose(args):
    return cmd_decompose_module.cmd_decompose(args, get_config_dir(args))


def cmd_deps(args):
    return cmd_deps_module.cmd_deps(args, get_config_dir(args))


def cmd_plan(args):
    return cmd_plan_module.cmd_plan(args, get_state_dir(args), get_config_dir(args))


def cmd_show(args):
    return cmd_show_module.cmd_show(args, get_state_dir(args))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='artplan', description='Agile Release Train planning')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    parser.add_argument('--config-dir', help='Directory with planning.env, notify.env, teams.yaml')
    parser.add_argument('--state-dir', help='Directory holding stored plans')
    subparsers = parser.add_subparsers(dest='command', required=True)

    # artplan decompose
    p_decompose = subparsers.add_parser('decompose', help='Split oversized stories')
    p_decompose.add_argument('backlog', help='JSON backlog file')
    p_decompose.add_argument('--pi', help='Only items of this PI')
    p_decompose.add_argument('--team', help='Only items of this team')
    p_decompose.add_argument('--recursive', action='store_true', help='Split stories too large for one pass')
    p_decompose.add_argument('--json', action='store_true', help='Machine-readable output')
    p_decompose.set_defaults(func=cmd_decompose)

    # artplan deps
    p_deps = subparsers.add_parser('deps', help='Map dependencies and find cycles')
    p_deps.add_argument('backlog', help='JSON backlog file')
    p_deps.add_argument('--pi', help='Only items of this PI')
    p_deps.add_argument('--team', help='Only items of this team')
    p_deps.add_argument('--no-decompose', action='store_true', help='Map the raw backlog')
    p_deps.add_argument('--json', action='store_true', help='Machine-readable output')
    p_deps.set_defaults(func=cmd_deps)

    # artplan plan
    p_plan = subparsers.add_parser('plan', help='Plan a PI for a team')
    p_plan.add_argument('pi', help='Program increment id')
    p_plan.add_argument('team', help='Team id')
    p_plan.add_argument('--backlog', required=True, help='JSON backlog file')
    p_plan.add_argument('--iterations', type=int, help='Iteration count (default: what fits in the PI)')
    p_plan.add_argument('--dry-run', action='store_true', help='Compute only, write nothing')
    p_plan.add_argument('--no-commit', action='store_true', help='Persist the plan but do not commit it')
    p_plan.add_argument('--allow-partial', action='store_true', help='Commit even with unplaced items')
    p_plan.add_argument('--flow', action='store_true', help='Run as a Prefect flow')
    p_plan.add_argument('--json', action='store_true', help='Machine-readable output')
    p_plan.set_defaults(func=cmd_plan)

    # artplan show
    p_show = subparsers.add_parser('show', help='Show stored plans')
    p_show.add_argument('pi', nargs='?', help='Program increment id')
    p_show.add_argument('team', nargs='?', help='Team id')
    p_show.add_argument('--json', action='store_true', help='Machine-readable output')
    p_show.set_defaults(func=cmd_show)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        return args.func(args)
    except PlanningError as e:
        print(f"ERROR: {e}")
        return exit_code_for(e)


if __name__ == '__main__':
    sys.exit(main())
