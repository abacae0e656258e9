"""Tests for artplan.lib.config and envparse modules."""

import pytest

from artplan.lib import envparse
from artplan.lib.config import (
    PlanningConfig,
    load_notification_config,
    load_planning_config,
    load_teams,
    load_tracker_config,
)
from artplan.lib.errors import ValidationError


class TestParseEnv:
    """Tests for the KEY=value parser."""

    def test_basic(self):
        env = envparse.parse_env('A=1\nB="two words"\n# comment\n\nexport C=3\n')
        assert env == {"A": "1", "B": "two words", "C": "3"}

    def test_inline_comment(self):
        assert envparse.parse_env("MAX_STORY_POINTS=8 # team agreement") == {"MAX_STORY_POINTS": "8"}

    def test_missing_equals(self):
        with pytest.raises(ValueError, match="no '='"):
            envparse.parse_env("JUST_A_KEY")

    def test_invalid_key(self):
        with pytest.raises(ValueError, match="Invalid key"):
            envparse.parse_env("lower=1")

    @pytest.mark.parametrize("value", ["`id`", "$(whoami)", "${HOME}", "a;b", "a|b"])
    def test_forbidden_patterns(self, value):
        with pytest.raises(ValueError, match="Forbidden pattern"):
            envparse.parse_env(f"KEY={value}")

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            envparse.load_env(str(tmp_path / "nope.env"))


class TestTypedAccessors:
    """Tests for get_int / get_float / get_bool."""

    def test_defaults_for_missing_and_empty(self):
        assert envparse.get_int({}, "X", 4) == 4
        assert envparse.get_float({"X": ""}, "X", 0.5) == 0.5
        assert envparse.get_bool({}, "X", True) is True

    @pytest.mark.parametrize("raw,expected", [("yes", True), ("ON", True), ("0", False), ("false", False)])
    def test_bool_values(self, raw, expected):
        assert envparse.get_bool({"X": raw}, "X", not expected) is expected

    def test_bad_values(self):
        with pytest.raises(ValueError):
            envparse.get_int({"X": "many"}, "X", 1)
        with pytest.raises(ValueError):
            envparse.get_bool({"X": "maybe"}, "X", False)


class TestPlanningConfig:
    """Tests for PlanningConfig and its loader."""

    def test_defaults(self):
        config = PlanningConfig()
        assert config.max_story_points == 5
        assert config.allocatable_fraction == pytest.approx(0.8)
        assert config.max_optimization_passes == 3

    def test_allocatable_fraction_uses_tighter_bound(self):
        assert PlanningConfig(max_utilization=0.7).allocatable_fraction == pytest.approx(0.7)
        assert PlanningConfig(buffer_fraction=0.0, max_utilization=0.9).allocatable_fraction == pytest.approx(0.9)

    @pytest.mark.parametrize("kwargs", [
        {"max_story_points": 0},
        {"min_sub_items": 1},
        {"min_sub_items": 4, "max_sub_items": 3},
        {"buffer_fraction": 1.0},
        {"max_utilization": 0.0},
        {"confidence_threshold": 1.5},
        {"default_iteration_count": 9},
    ])
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValidationError):
            PlanningConfig(**kwargs)

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "planning.env"
        path.write_text("MAX_STORY_POINTS=8\nBUFFER_FRACTION=0.1\nALLOW_EXTENSION=true\n")

        config = load_planning_config(path, environ={})
        assert config.max_story_points == 8
        assert config.buffer_fraction == pytest.approx(0.1)
        assert config.allow_extension is True
        assert config.max_utilization == pytest.approx(0.85)

    def test_environment_overrides_file(self, tmp_path):
        path = tmp_path / "planning.env"
        path.write_text("MAX_STORY_POINTS=8\n")

        config = load_planning_config(path, environ={"ARTPLAN_MAX_STORY_POINTS": "3", "OTHER": "x"})
        assert config.max_story_points == 3

    def test_missing_file_uses_defaults(self, tmp_path):
        config = load_planning_config(tmp_path / "planning.env", environ={})
        assert config == PlanningConfig()

    def test_bad_number_becomes_validation_error(self, tmp_path):
        path = tmp_path / "planning.env"
        path.write_text("MAX_UTILIZATION=lots\n")
        with pytest.raises(ValidationError) as exc_info:
            load_planning_config(path, environ={})
        assert exc_info.value.schema_name == "config"


class TestOtherConfigs:
    """Tests for tracker and notification settings."""

    def test_tracker_config(self, tmp_path):
        path = tmp_path / "tracker.env"
        path.write_text('BASE_URL="https://tracker.example.com/api"\nAPI_TOKEN=secret\nMAX_RETRIES=5\n')

        config = load_tracker_config(path, environ={})
        assert config.base_url == "https://tracker.example.com/api"
        assert config.api_token == "secret"
        assert config.max_retries == 5
        assert config.timeout == pytest.approx(30.0)

    def test_notification_config(self, tmp_path):
        config = load_notification_config(None, environ={"ARTPLAN_DESKTOP": "1"})
        assert config.desktop is True
        assert config.webhook_url == ""


class TestLoadTeams:
    """Tests for the teams.yaml roster."""

    def test_load(self, tmp_path):
        path = tmp_path / "teams.yaml"
        path.write_text(
            "teams:\n"
            "  - id: team-a\n"
            "    name: Payments\n"
            "    member_count: 6\n"
            "    average_velocity: 30\n"
            "    capacity_factor: 0.9\n"
            "  - id: team-b\n"
            "    member_count: 4\n"
            "    average_velocity: 20\n"
        )
        teams = load_teams(path)

        assert [t.id for t in teams] == ["team-a", "team-b"]
        assert teams[0].name == "Payments"
        assert teams[0].capacity_factor == pytest.approx(0.9)
        assert teams[1].name == "team-b"
        assert teams[1].capacity_factor == 1.0

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValidationError, match="Teams file not found"):
            load_teams(tmp_path / "teams.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "teams.yaml"
        path.write_text("teams: [unclosed\n")
        with pytest.raises(ValidationError, match="Invalid YAML"):
            load_teams(path)

    def test_schema_violation(self, tmp_path):
        path = tmp_path / "teams.yaml"
        path.write_text("teams:\n  - id: team-a\n    member_count: 0\n    average_velocity: 30\n")
        with pytest.raises(ValidationError):
            load_teams(path)

    def test_duplicate_ids(self, tmp_path):
        path = tmp_path / "teams.yaml"
        path.write_text(
            "teams:\n"
            "  - {id: team-a, member_count: 5, average_velocity: 20}\n"
            "  - {id: team-a, member_count: 6, average_velocity: 25}\n"
        )
        with pytest.raises(ValidationError, match="Duplicate team id"):
            load_teams(path)

    def test_teams_must_be_list(self, tmp_path):
        path = tmp_path / "teams.yaml"
        path.write_text("teams: team-a\n")
        with pytest.raises(ValidationError, match="must be a list"):
            load_teams(path)
