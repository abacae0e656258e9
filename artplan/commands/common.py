"""
Helpers shared by the file-based commands.
"""

from pathlib import Path
from typing import Optional

from artplan.lib.config import PlanningConfig, load_planning_config
from artplan.planning.models import DependencyRelationship, WorkItem
from artplan.tracker.client import InMemoryBacklog
from artplan.tracker.normalize import normalize_backlog, normalize_relationship
from artplan.workflow.coordinator import split_generated_children


def planning_config(config_dir: Optional[Path]) -> PlanningConfig:
    return load_planning_config(config_dir / "planning.env" if config_dir else None)


def load_snapshot(backlog_path: Path, pi_id: Optional[str] = None,
                  team_id: Optional[str] = None) -> tuple[list[WorkItem], list[DependencyRelationship]]:
    """Normalized items and declared links from a JSON backlog file.

    Without a PI or team every item in the file is included.
    """
    backlog = InMemoryBacklog.from_file(backlog_path)
    if pi_id and team_id:
        payloads = backlog.list_items(pi_id, team_id)
    else:
        payloads = []
        for item in backlog.items.values():
            if pi_id and item.get("pi_id", pi_id) != pi_id:
                continue
            if team_id and item.get("team_id") not in (None, team_id):
                continue
            payloads.append({k: v for k, v in item.items() if k != "pi_id"})
    items, generated = split_generated_children(normalize_backlog(payloads))
    declared = [
        rel for rel in map(normalize_relationship, backlog.list_relationships([i.id for i in items]))
        if rel.source_id not in generated and rel.target_id not in generated
    ]
    return items, declared


def truncate(text: str, width: int) -> str:
    return text[:width - 3] + "..." if len(text) > width else text
