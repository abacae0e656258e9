"""
Plan persistence.

Plans are stored one file per (PI, team):
  <root>/plans/<pi_id>/<team_id>.json

Saving supersedes the previous plan for the pair; no history is kept.
"""

import json
import logging
from pathlib import Path
from typing import Optional

from artplan.lib.constants import ID_PATTERN
from artplan.lib.errors import ValidationError
from artplan.lib.validate import validate, validate_before_write
from artplan.planning.models import ARTPlan

logger = logging.getLogger(__name__)


class PlanStore:
    """File-backed store keyed by (PI id, team id)."""

    def __init__(self, root: Path):
        self.root = Path(root)

    @property
    def plans_dir(self) -> Path:
        return self.root / "plans"

    def path_for(self, pi_id: str, team_id: str) -> Path:
        for value, field in ((pi_id, "pi_id"), (team_id, "team_id")):
            if not ID_PATTERN.match(value or ""):
                raise ValidationError("art_plan", f"Invalid identifier '{value}'", field)
        return self.plans_dir / pi_id / f"{team_id}.json"

    def save(self, plan: ARTPlan) -> Path:
        """Validate and write the plan, replacing any earlier one atomically."""
        path = self.path_for(plan.pi.id, plan.team_id)
        data = plan.to_dict()
        validate_before_write(data, "art_plan", path)

        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(data, indent=2) + "\n")
        tmp_path.replace(path)
        logger.info(f"[PLAN] Saved {plan.pi.id}/{plan.team_id} ({plan.state}) to {path}")
        return path

    def load(self, pi_id: str, team_id: str) -> Optional[ARTPlan]:
        """Load a plan. Returns None if none has been saved for the pair."""
        path = self.path_for(pi_id, team_id)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text())
        except json.JSONDecodeError as e:
            raise ValidationError("art_plan", f"Invalid JSON in {path}: {e}") from None
        validate(data, "art_plan")
        return ARTPlan.from_dict(data)

    def list_plans(self) -> list[tuple[str, str]]:
        """All stored (pi_id, team_id) pairs, sorted."""
        if not self.plans_dir.exists():
            return []
        keys = []
        for pi_dir in sorted(p for p in self.plans_dir.iterdir() if p.is_dir()):
            for plan_file in sorted(pi_dir.glob("*.json")):
                keys.append((pi_dir.name, plan_file.stem))
        return keys

    def delete(self, pi_id: str, team_id: str) -> bool:
        path = self.path_for(pi_id, team_id)
        if not path.exists():
            return False
        path.unlink()
        if not any(path.parent.iterdir()):
            path.parent.rmdir()
        return True
