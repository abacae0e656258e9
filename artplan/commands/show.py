"""
artplan show - Show stored plans.
"""

import json
from pathlib import Path

from artplan.commands.common import truncate
from artplan.lib.constants import EXIT_ERROR, EXIT_OK
from artplan.store import PlanStore


def cmd_show(args, state_dir: Path) -> int:
    """List stored plans, or show one plan in detail."""
    store = PlanStore(state_dir)

    if not args.pi:
        keys = store.list_plans()
        if not keys:
            print("Plans: none")
            return EXIT_OK
        print("Plans")
        print("-" * 60)
        for pi_id, team_id in keys:
            plan = store.load(pi_id, team_id)
            print(f"  {pi_id:<16} {team_id:<16} {plan.state:<10} readiness {plan.readiness_score:.0%}")
        return EXIT_OK

    if not args.team:
        print("ERROR: show needs both a PI id and a team id")
        return EXIT_ERROR

    plan = store.load(args.pi, args.team)
    if plan is None:
        print(f"ERROR: No plan stored for {args.pi}/{args.team}")
        return EXIT_ERROR

    if args.json:
        print(json.dumps(plan.to_dict(), indent=2))
        return EXIT_OK

    print(f"Plan: {plan.pi.id}/{plan.team_id}")
    print("=" * 60)
    print(f"PI:          {plan.pi.name} ({plan.pi.start_date} - {plan.pi.end_date})")
    print(f"State:       {plan.state}")
    print(f"Passes:      {plan.optimization_passes}")
    print(f"Readiness:   {plan.readiness_score:.0%}")
    print(f"Value:       {plan.value_delivery_score:.0%}")
    print(f"Utilization: {plan.capacity_utilization:.0%}")
    print()

    analyses = {a.iteration: a for a in plan.value_analyses}
    for it in plan.iterations:
        analysis = analyses.get(it.index)
        working = ""
        if analysis is not None:
            working = "working software" if analysis.delivers_working_software else "not deployable"
        print(f"Iteration {it.index}  {it.start_date} - {it.end_date}  "
              f"{it.allocated_points}/{it.total_capacity:.1f} pts ({it.utilization:.0%})  {working}")
        print("-" * 40)
        for allocated in it.allocated_items:
            item = plan.item(allocated.item_id)
            title = truncate(item.title, 44) if item else ""
            print(f"  {allocated.item_id:<16} {allocated.story_points:>2} pts  "
                  f"conf {allocated.confidence:.2f}  {title}")
        if analysis is not None:
            for blocker in analysis.blockers:
                print(f"  [!] {blocker}")
        print()

    if plan.unplaced:
        print("Unplaced")
        print("-" * 40)
        for u in plan.unplaced:
            print(f"  {u.item_id}: {u.reason}")
            for suggestion in u.suggestions:
                print(f"    * {suggestion}")
        print()

    if plan.actions:
        print("Actions")
        print("-" * 40)
        for a in plan.actions:
            print(f"  [{a.priority:<6}] {a.id}: {a.description}")
    return EXIT_OK
