"""
artplan decompose - Split oversized stories in a backlog file.
"""

import json
from pathlib import Path

from artplan.commands.common import load_snapshot, planning_config, truncate
from artplan.lib.constants import EXIT_OK, EXIT_PLANNING_ERROR
from artplan.planning.decomposition import StoryDecomposer, analyze_story


def cmd_decompose(args, config_dir: Path = None) -> int:
    """Decompose every story above the sizing limit and print the split."""
    config = planning_config(config_dir)
    items, _ = load_snapshot(Path(args.backlog), args.pi, args.team)

    decomposer = StoryDecomposer(config)
    batch = decomposer.decompose_backlog(items, recursive=True if args.recursive else None)

    if args.json:
        print(json.dumps({
            "items": [i.to_dict() for i in batch.items],
            "decomposed": [
                {
                    "parent": r.parent.id,
                    "children": [c.id for c in r.children],
                    "intermediate": r.intermediate,
                    "criteria": r.criteria_mapping.to_dict(),
                }
                for r in batch.results
            ],
            "failures": [f.to_dict() for f in batch.failures],
        }, indent=2))
        return EXIT_PLANNING_ERROR if batch.failures else EXIT_OK

    print(f"Backlog: {len(items)} item(s) in, {len(batch.items)} out")
    print("=" * 60)

    for result in batch.results:
        if result.intermediate:
            continue
        parent = result.parent
        analysis = analyze_story(parent, config)
        print(f"{parent.id} ({parent.story_points} pts) -> {len(result.children)} parts")
        for factor in analysis.complexity_factors:
            print(f"  complexity: {factor}")
        for risk in analysis.risks:
            print(f"  risk: {risk}")
        for index, child in enumerate(result.children):
            criteria = result.criteria_mapping.criteria_for(index)
            print(f"  {child.id:<16} {child.story_points:>2} pts  {truncate(child.title, 50)}")
            for criterion in criteria:
                print(f"      - {truncate(criterion, 60)}")
        print()

    if batch.failures:
        print("Failures")
        print("-" * 40)
        for failure in batch.failures:
            print(f"  {failure.item_id}: {failure.message}")
        return EXIT_PLANNING_ERROR

    if not batch.results:
        print("Nothing to decompose")
    return EXIT_OK
