"""
Configuration loaders for the planning engine.

Planning, tracker and notification settings come from KEY=value files
(planning.env, tracker.env) with ARTPLAN_* environment overrides. The team
roster comes from teams.yaml. A planning pass carries its PlanningConfig
end-to-end; nothing here is read from module-level state during a pass.
"""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Mapping, Optional

import yaml

from . import envparse
from . import validate
from .constants import BASELINE_ITERATION_DAYS, MAX_STORY_POINTS, MAX_SUB_ITEMS, MIN_SUB_ITEMS
from .errors import ValidationError
from artplan.planning.models import Team

logger = logging.getLogger(__name__)

ENV_PREFIX = "ARTPLAN_"


@dataclass(frozen=True)
class PlanningConfig:
    """Thresholds for one planning pass."""
    max_story_points: int = MAX_STORY_POINTS
    min_sub_items: int = MIN_SUB_ITEMS
    max_sub_items: int = MAX_SUB_ITEMS
    recursive_decomposition: bool = False
    confidence_threshold: float = 0.6
    buffer_fraction: float = 0.2
    max_utilization: float = 0.85
    min_healthy_utilization: float = 0.5
    iteration_length_days: int = BASELINE_ITERATION_DAYS
    default_iteration_count: int = 6
    allow_extension: bool = False
    max_iterations: int = 8
    max_optimization_passes: int = 3
    readiness_threshold: float = 0.8
    working_software_threshold: float = 0.8

    def __post_init__(self):
        if self.max_story_points < 1:
            raise ValidationError("config", "max_story_points must be >= 1", "MAX_STORY_POINTS")
        if not 2 <= self.min_sub_items <= self.max_sub_items:
            raise ValidationError("config", "sub-item bounds must satisfy 2 <= min <= max", "MIN_SUB_ITEMS")
        for name in ("confidence_threshold", "buffer_fraction", "max_utilization",
                     "min_healthy_utilization", "readiness_threshold", "working_software_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValidationError("config", f"{name} must be within [0, 1], got {value}", name.upper())
        if self.max_utilization <= 0:
            raise ValidationError("config", "max_utilization must be positive", "MAX_UTILIZATION")
        if self.buffer_fraction >= 1.0:
            raise ValidationError("config", "buffer_fraction must leave some capacity", "BUFFER_FRACTION")
        if self.iteration_length_days < 1:
            raise ValidationError("config", "iteration_length_days must be >= 1", "ITERATION_LENGTH_DAYS")
        if self.default_iteration_count < 1 or self.max_iterations < self.default_iteration_count:
            raise ValidationError("config", "iteration counts must satisfy 1 <= default <= max", "MAX_ITERATIONS")
        if self.max_optimization_passes < 0:
            raise ValidationError("config", "max_optimization_passes must be >= 0", "MAX_OPTIMIZATION_PASSES")

    @property
    def allocatable_fraction(self) -> float:
        """Share of raw capacity the allocator may fill."""
        return min(self.max_utilization, 1.0 - self.buffer_fraction)


@dataclass(frozen=True)
class TrackerConfig:
    """Work-tracking system connection settings from tracker.env."""
    base_url: str = ""
    api_token: str = ""
    timeout: float = 30.0
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 60.0
    backoff_factor: float = 2.0
    rate_limit_requests: int = 180
    rate_limit_window: float = 60.0


@dataclass(frozen=True)
class NotificationConfig:
    webhook_url: str = ""
    desktop: bool = False
    webhook_timeout: float = 5.0


def _merged_env(path: Optional[Path], environ: Optional[Mapping[str, str]]) -> dict[str, str]:
    """File values first, then ARTPLAN_* overrides from the environment."""
    env: dict[str, str] = {}
    if path is not None and path.exists():
        env.update(envparse.load_env(str(path)))
    elif path is not None:
        logger.debug(f"Config file {path} not found, using defaults")

    source = os.environ if environ is None else environ
    for key, value in source.items():
        if key.startswith(ENV_PREFIX):
            env[key[len(ENV_PREFIX):]] = value
    return env


def _typed_values(cls, env: dict) -> dict:
    """Read each dataclass field from env by its upper-cased name."""
    defaults = cls()
    values = {}
    for f in fields(cls):
        key = f.name.upper()
        default = getattr(defaults, f.name)
        if isinstance(default, bool):
            values[f.name] = envparse.get_bool(env, key, default)
        elif isinstance(default, int):
            values[f.name] = envparse.get_int(env, key, default)
        elif isinstance(default, float):
            values[f.name] = envparse.get_float(env, key, default)
        else:
            values[f.name] = env.get(key, default)
    return values


def load_planning_config(path: Optional[Path] = None,
                         environ: Optional[Mapping[str, str]] = None) -> PlanningConfig:
    """Load planning.env (optional) and return PlanningConfig."""
    env = _merged_env(path, environ)
    try:
        return PlanningConfig(**_typed_values(PlanningConfig, env))
    except ValueError as e:
        raise ValidationError("config", str(e)) from None


def load_tracker_config(path: Optional[Path] = None,
                        environ: Optional[Mapping[str, str]] = None) -> TrackerConfig:
    """Load tracker.env (optional) and return TrackerConfig."""
    env = _merged_env(path, environ)
    try:
        return TrackerConfig(**_typed_values(TrackerConfig, env))
    except ValueError as e:
        raise ValidationError("config", str(e)) from None


def load_notification_config(path: Optional[Path] = None,
                             environ: Optional[Mapping[str, str]] = None) -> NotificationConfig:
    env = _merged_env(path, environ)
    try:
        return NotificationConfig(**_typed_values(NotificationConfig, env))
    except ValueError as e:
        raise ValidationError("config", str(e)) from None


def load_teams(path: Path) -> list[Team]:
    """Load the team roster from teams.yaml.

    Expected layout::

        teams:
          - id: team-a
            name: Payments
            member_count: 6
            average_velocity: 30
            capacity_factor: 0.9
    """
    if not path.exists():
        raise ValidationError("team", f"Teams file not found: {path}")

    try:
        data = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as e:
        raise ValidationError("team", f"Invalid YAML in {path}: {e}") from None

    entries = data.get("teams", []) if isinstance(data, dict) else None
    if not isinstance(entries, list):
        raise ValidationError("team", "'teams' must be a list", str(path))

    teams = []
    seen = set()
    for entry in entries:
        validate.validate(entry, "team")
        team = Team.from_dict(entry)
        if team.id in seen:
            raise ValidationError("team", f"Duplicate team id '{team.id}'", str(path))
        seen.add(team.id)
        teams.append(team)

    logger.info(f"Loaded {len(teams)} team(s) from {path}")
    return teams
