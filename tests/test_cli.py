"""Tests for artplan.cli module."""

import json

import pytest

from artplan.cli import build_parser, main
from artplan.lib.constants import EXIT_ERROR, EXIT_OK, EXIT_PLANNING_ERROR, EXIT_VALIDATION_ERROR


def write_backlog(path, relationships=None):
    items = [
        {"id": "GS-1", "title": "Garden story one", "story_points": 8,
         "acceptance_criteria": ["First check holds", "Second check holds"], "team_id": "team-a"},
        {"id": "GS-2", "title": "Orchard story two", "story_points": 3,
         "acceptance_criteria": ["Third check holds"], "team_id": "team-a"},
        {"id": "GS-3", "title": "Meadow story three", "story_points": 2,
         "acceptance_criteria": ["Fourth check holds"], "team_id": "team-a"},
    ]
    path.write_text(json.dumps({
        "program_increments": [{"id": "PI-1", "start_date": "2026-01-05", "end_date": "2026-03-02"}],
        "teams": [{"id": "team-a", "member_count": 5, "average_velocity": 20}],
        "items": items,
        "relationships": relationships or [],
    }))
    return path


class TestParser:
    """Tests for argument parsing."""

    def test_global_options_before_subcommand(self):
        args = build_parser().parse_args(["--state-dir", "/tmp/s", "-v", "show"])
        assert args.state_dir == "/tmp/s"
        assert args.verbose is True
        assert args.command == "show"

    def test_plan_requires_backlog(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["plan", "PI-1", "team-a"])


class TestShow:
    """Tests for artplan show."""

    def test_no_plans(self, tmp_path, capsys):
        assert main(["--state-dir", str(tmp_path), "show"]) == EXIT_OK
        assert "Plans: none" in capsys.readouterr().out

    def test_missing_plan(self, tmp_path, capsys):
        assert main(["--state-dir", str(tmp_path), "show", "PI-1", "team-a"]) == EXIT_ERROR
        assert "No plan stored for PI-1/team-a" in capsys.readouterr().out

    def test_needs_team(self, tmp_path, capsys):
        assert main(["--state-dir", str(tmp_path), "show", "PI-1"]) == EXIT_ERROR


class TestPlan:
    """Tests for artplan plan."""

    def test_plan_commits_to_backlog_file(self, tmp_path, capsys):
        backlog = write_backlog(tmp_path / "backlog.json")
        state = tmp_path / "state"
        config = tmp_path / "config"
        config.mkdir()

        code = main(["--state-dir", str(state), "--config-dir", str(config),
                     "plan", "PI-1", "team-a", "--backlog", str(backlog)])

        assert code == EXIT_OK
        saved = json.loads(backlog.read_text())
        assert sorted(saved["assignments"]) == ["GS-1-1", "GS-1-2", "GS-2", "GS-3"]
        out = capsys.readouterr().out
        assert "Plan PI-1/team-a" in out
        assert "load passed" in out

        assert main(["--state-dir", str(state), "show", "PI-1", "team-a"]) == EXIT_OK
        assert "committed" in capsys.readouterr().out

    def test_plan_json_dry_run(self, tmp_path, capsys):
        backlog = write_backlog(tmp_path / "backlog.json")
        code = main(["--state-dir", str(tmp_path / "state"), "--config-dir", str(tmp_path),
                     "plan", "PI-1", "team-a", "--backlog", str(backlog), "--dry-run", "--json"])

        assert code == EXIT_OK
        data = json.loads(capsys.readouterr().out)
        assert data["ok"] is True
        assert data["state"] == "optimized"
        assert len(data["plan"]["items"]) == 4
        assert "assignments" not in json.loads(backlog.read_text())

    def test_invalid_identifier(self, tmp_path, capsys):
        backlog = write_backlog(tmp_path / "backlog.json")
        code = main(["--state-dir", str(tmp_path), "plan", "bad id", "team-a", "--backlog", str(backlog)])

        assert code == EXIT_VALIDATION_ERROR
        assert capsys.readouterr().out.startswith("ERROR: [plan_request]")

    def test_missing_backlog_file(self, tmp_path, capsys):
        code = main(["--state-dir", str(tmp_path), "plan", "PI-1", "team-a",
                     "--backlog", str(tmp_path / "nope.json")])
        assert code == EXIT_VALIDATION_ERROR


class TestDeps:
    """Tests for artplan deps."""

    def test_cycle_exits_non_zero(self, tmp_path, capsys):
        backlog = write_backlog(tmp_path / "backlog.json", relationships=[
            {"source_id": "GS-2", "target_id": "GS-3", "kind": "blocks"},
            {"source_id": "GS-3", "target_id": "GS-2", "kind": "blocks"},
        ])

        assert main(["deps", str(backlog)]) == EXIT_PLANNING_ERROR
        out = capsys.readouterr().out
        assert "Hard cycles" in out
        assert "GS-2 -> GS-3 -> GS-2" in out

    def test_acyclic_json(self, tmp_path, capsys):
        backlog = write_backlog(tmp_path / "backlog.json", relationships=[
            {"source_id": "GS-1", "target_id": "GS-3", "kind": "blocks"},
        ])

        assert main(["deps", str(backlog), "--json"]) == EXIT_OK
        data = json.loads(capsys.readouterr().out)
        assert data["cycles"] == []
        pairs = [(e["source_id"], e["target_id"]) for e in data["graph"]["edges"]]
        assert pairs == [("GS-1-1", "GS-3"), ("GS-1-2", "GS-3")]


class TestDecompose:
    """Tests for artplan decompose."""

    def test_json_output(self, tmp_path, capsys):
        backlog = write_backlog(tmp_path / "backlog.json")

        assert main(["decompose", str(backlog), "--json"]) == EXIT_OK
        data = json.loads(capsys.readouterr().out)
        assert [i["id"] for i in data["items"]] == ["GS-1-1", "GS-1-2", "GS-2", "GS-3"]
        assert data["decomposed"][0]["children"] == ["GS-1-1", "GS-1-2"]
        assert data["failures"] == []

    def test_text_output(self, tmp_path, capsys):
        backlog = write_backlog(tmp_path / "backlog.json")

        assert main(["decompose", str(backlog)]) == EXIT_OK
        out = capsys.readouterr().out
        assert "GS-1 (8 pts) -> 2 parts" in out
