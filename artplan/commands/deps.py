"""
artplan deps - Map dependencies for a backlog file.
"""

import json
from pathlib import Path

from artplan.commands.common import load_snapshot, planning_config
from artplan.lib.constants import EXIT_OK, EXIT_PLANNING_ERROR
from artplan.planning.decomposition import StoryDecomposer
from artplan.planning.dependencies import (
    critical_path,
    find_cycles,
    graph_statistics,
    map_dependencies,
    suggest_resolutions,
)
from artplan.workflow.coordinator import expand_declared


def cmd_deps(args, config_dir: Path = None) -> int:
    """Print edges, cycles and the critical path. Exits non-zero on hard cycles."""
    config = planning_config(config_dir)
    items, declared = load_snapshot(Path(args.backlog), args.pi, args.team)

    if not args.no_decompose:
        batch = StoryDecomposer(config).decompose_backlog(items)
        declared = expand_declared(declared, batch)
        items = batch.items

    graph = map_dependencies(items, declared, config)
    cycles = find_cycles(graph)
    path = critical_path(graph, items)
    stats = graph_statistics(graph)

    if args.json:
        print(json.dumps({
            "graph": graph.to_dict(),
            "cycles": cycles,
            "critical_path": {"item_ids": path.item_ids, "total_points": path.total_points},
        }, indent=2))
        return EXIT_PLANNING_ERROR if cycles else EXIT_OK

    print(f"Dependencies: {stats.node_count} item(s), {stats.edge_count} edge(s) "
          f"({stats.hard_count} hard, {stats.soft_count} soft)")
    print("=" * 60)
    for edge in graph.edges:
        arrow = "~~" if edge.kind.value == "related" else "->"
        methods = "/".join(m.value for m in edge.methods)
        print(f"  {edge.source_id} {arrow} {edge.target_id}  [{edge.strength.value}, {methods}, "
              f"{edge.confidence:.2f}]")
    print()

    if path.item_ids:
        print(f"Critical path ({path.total_points} pts): {' -> '.join(path.item_ids)}")
    if stats.independent_items:
        print(f"Independent: {', '.join(stats.independent_items)}")
    if stats.high_dependency_items:
        print(f"Highly connected: {', '.join(stats.high_dependency_items)}")

    if cycles:
        print()
        print("Hard cycles")
        print("-" * 40)
        for chain in cycles:
            print(f"  {' -> '.join(chain + chain[:1])}")
            for suggestion in suggest_resolutions(graph, chain):
                print(f"    * {suggestion}")
        return EXIT_PLANNING_ERROR
    return EXIT_OK
