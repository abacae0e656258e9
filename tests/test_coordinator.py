"""Tests for artplan.workflow.coordinator module."""

from unittest.mock import MagicMock

import pytest

from artplan.lib.config import PlanningConfig
from artplan.lib.constants import EXIT_CANCELLED, EXIT_EXTERNAL_ERROR, EXIT_OK, EXIT_PLANNING_ERROR
from artplan.lib.errors import CyclicDependency, ExternalServiceError, OverAllocation
from artplan.lib.progress import CancelToken
from artplan.planning.decomposition import StoryDecomposer
from artplan.planning.models import (
    DependencyKind,
    DependencyRelationship,
    DependencyStrength,
    DetectionMethod,
    Team,
    WorkItem,
)
from artplan.store import PlanStore
from artplan.tracker.client import InMemoryBacklog
from artplan.workflow.coordinator import PlanningCoordinator, expand_declared, split_generated_children
from artplan.workflow.request import parse_request

PI_PAYLOAD = {
    "id": "PI-2026.1",
    "name": "PI 2026.1",
    "start_date": "2026-01-05",
    "end_date": "2026-04-05",
    "iteration_length_days": 15,
}
TEAM_PAYLOAD = {"id": "team-a", "name": "Team A", "member_count": 6, "average_velocity": 50}


def story(n, points, criteria):
    return {
        "id": f"GS-{n}",
        "title": f"Garden story {n}",
        "description": f"Plain wording for garden story {n}",
        "story_points": points,
        "acceptance_criteria": [f"Criterion {k} holds" for k in range(1, criteria + 1)],
        "team_id": "team-a",
    }


def scenario_items():
    """25 stories, 169 points: 5x13, 6x8, 7x5, 7x3."""
    sizes = [(13, 3)] * 5 + [(8, 3)] * 6 + [(5, 2)] * 7 + [(3, 2)] * 7
    return [story(n, points, criteria) for n, (points, criteria) in enumerate(sizes, 1)]


def make_backlog(items=None, relationships=None, teams=None):
    return InMemoryBacklog(
        program_increments=[PI_PAYLOAD],
        teams=[TEAM_PAYLOAD] if teams is None else teams,
        items=scenario_items() if items is None else items,
        relationships=relationships or [],
    )


def request(**overrides):
    params = {"pi_id": "PI-2026.1", "team_id": "team-a"}
    params.update(overrides)
    return parse_request(**params)


class TestEndToEnd:
    """Full pass over a realistic backlog."""

    def test_commits_full_plan(self, tmp_path):
        backlog = make_backlog()
        store = PlanStore(tmp_path)
        notifier = MagicMock()
        coordinator = PlanningCoordinator(backlog, store=store, notifier=notifier)

        outcome = coordinator.run(request())

        assert outcome.ok, outcome.summary
        assert outcome.exit_code == EXIT_OK
        plan = outcome.plan
        assert plan.state == "committed"
        assert len(plan.items) == 41
        assert plan.unplaced == []
        assert len(plan.iterations) == 6
        assert [it.allocated_points for it in plan.iterations] == [41, 40, 38, 40, 10, 0]
        assert sum(it.allocated_points for it in plan.iterations) == 169
        assert all(it.utilization <= 0.8 + 1e-9 for it in plan.iterations)
        assert 0.0 <= plan.readiness_score <= 1.0

        assert len(backlog.assignments) == 41
        assert backlog.assignments["GS-1-1"]["pi_id"] == "PI-2026.1"
        assert "GS-1-3" in backlog.items
        assert store.load("PI-2026.1", "team-a").state == "committed"
        notifier.plan_committed.assert_called_once()

    def test_stage_statuses(self, tmp_path):
        outcome = PlanningCoordinator(make_backlog(), store=PlanStore(tmp_path), notifier=MagicMock()).run(request())
        statuses = {name: s["status"] for name, s in outcome.stages.items()}

        assert statuses["load"] == "passed"
        assert statuses["rebalance"] == "skipped"
        assert statuses["commit"] == "passed"
        assert "Decomposed 11 oversized story(ies)" in outcome.summary

    def test_progress_callback(self, tmp_path):
        events = []
        coordinator = PlanningCoordinator(make_backlog(), notifier=MagicMock(), progress_callback=events.append)
        coordinator.run(request(dry_run=True))

        finished = [e for e in events if e.status != "started"]
        assert [e.stage for e in finished][:3] == ["load", "decompose", "map"]
        assert finished[-1].step == finished[-1].total

    def test_dry_run_writes_nothing(self, tmp_path):
        backlog = make_backlog()
        store = PlanStore(tmp_path)
        notifier = MagicMock()
        publisher = MagicMock()

        outcome = PlanningCoordinator(backlog, store=store, notifier=notifier, publisher=publisher).run(
            request(dry_run=True)
        )

        assert outcome.ok
        assert outcome.plan.state == "optimized"
        assert outcome.stages["persist"]["status"] == "skipped"
        assert outcome.stages["commit"]["status"] == "skipped"
        assert store.list_plans() == []
        assert backlog.assignments == {}
        publisher.write_iterations.assert_not_called()
        notifier.plan_committed.assert_not_called()
        notifier.readiness_below_threshold.assert_not_called()

    def test_no_commit_persists_optimized_plan(self, tmp_path):
        store = PlanStore(tmp_path)
        outcome = PlanningCoordinator(make_backlog(), store=store, notifier=MagicMock()).run(request(commit=False))

        assert outcome.ok
        assert store.load("PI-2026.1", "team-a").state == "optimized"

    def test_rerun_after_commit_supersedes(self, tmp_path):
        backlog = make_backlog()
        store = PlanStore(tmp_path)
        first = PlanningCoordinator(backlog, store=store, notifier=MagicMock()).run(request())
        assert first.ok, first.summary
        assert len(backlog.list_items("PI-2026.1", "team-a")) == 25 + 41 - 14

        second = PlanningCoordinator(backlog, store=store, notifier=MagicMock()).run(request())

        assert second.ok, second.summary
        assert sorted(i.id for i in second.plan.items) == sorted(i.id for i in first.plan.items)
        assert len(backlog.assignments) == 41
        assert store.list_plans() == [("PI-2026.1", "team-a")]

    def test_linked_items_are_ordered(self, tmp_path):
        relationships = [
            {"source_id": "GS-1", "target_id": "GS-6", "kind": "blocks"},
            {"source_id": "GS-6", "target_id": "GS-12", "kind": "blocks"},
            {"source_id": "GS-12", "target_id": "GS-19", "kind": "blocks"},
            {"source_id": "GS-25", "target_id": "GS-2", "kind": "blocked_by"},
        ]
        outcome = PlanningCoordinator(make_backlog(relationships=relationships), store=PlanStore(tmp_path),
                                      notifier=MagicMock()).run(request())

        assert outcome.ok, outcome.summary
        plan = outcome.plan
        assert plan.unplaced == []
        assert len(plan.iterations) == 6
        assert all(it.utilization <= 0.8 + 1e-9 for it in plan.iterations)

        hard = plan.graph.hard_edges()
        assert len(hard) == 12
        for edge in hard:
            assert plan.iteration_of(edge.predecessor) <= plan.iteration_of(edge.successor)

        def span(prefix):
            return [plan.iteration_of(i.id) for i in plan.items if i.id == prefix or i.id.startswith(prefix + "-")]

        assert max(span("GS-1")) <= min(span("GS-6"))
        assert max(span("GS-6")) <= min(span("GS-12"))
        assert max(span("GS-12")) <= plan.iteration_of("GS-19")
        assert max(span("GS-2")) <= plan.iteration_of("GS-25")

    def test_iteration_count_override(self):
        outcome = PlanningCoordinator(make_backlog(), notifier=MagicMock()).run(request(iteration_count=3, dry_run=True))

        assert len(outcome.plan.iterations) == 3
        assert len(outcome.plan.unplaced) > 0


class TestFailures:
    """Passes that stop early."""

    def test_cycle_stops_before_allocation(self, tmp_path):
        relationships = [
            {"source_id": "GS-20", "target_id": "GS-21", "kind": "blocks"},
            {"source_id": "GS-21", "target_id": "GS-20", "kind": "blocks"},
        ]
        store = PlanStore(tmp_path)
        outcome = PlanningCoordinator(make_backlog(relationships=relationships), store=store,
                                      notifier=MagicMock()).run(request())

        assert not outcome.ok
        assert outcome.exit_code == EXIT_PLANNING_ERROR
        assert outcome.plan is None
        assert isinstance(outcome.error.__cause__, CyclicDependency)
        assert outcome.stages["map"]["status"] == "failed"
        assert "allocate" not in outcome.stages
        assert "cycle: GS-20 -> GS-21 -> GS-20" in outcome.summary
        assert store.list_plans() == []

    def test_cancelled(self):
        cancel = CancelToken()
        cancel.cancel()
        outcome = PlanningCoordinator(make_backlog(), notifier=MagicMock()).run(request(), cancel=cancel)

        assert outcome.exit_code == EXIT_CANCELLED
        assert outcome.stages["load"]["status"] == "cancelled"

    def test_missing_team(self):
        outcome = PlanningCoordinator(make_backlog(teams=[]), notifier=MagicMock()).run(request())

        assert outcome.exit_code == EXIT_EXTERNAL_ERROR
        assert isinstance(outcome.error.__cause__, ExternalServiceError)

    def test_team_roster_override(self):
        roster = [Team(id="team-a", name="Team A", member_count=6, average_velocity=50)]
        outcome = PlanningCoordinator(make_backlog(teams=[]), notifier=MagicMock(), teams=roster).run(
            request(dry_run=True)
        )
        assert outcome.ok

    def oversized_feature(self):
        items = scenario_items()[20:]
        items.append({
            "id": "FEAT-1",
            "title": "Orchard feature",
            "story_points": 60,
            "type": "feature",
            "acceptance_criteria": ["Criterion 1 holds"],
            "team_id": "team-a",
        })
        return items

    def test_unplaced_blocks_commit(self, tmp_path):
        backlog = make_backlog(items=self.oversized_feature())
        store = PlanStore(tmp_path)
        outcome = PlanningCoordinator(backlog, store=store, notifier=MagicMock()).run(request())

        assert outcome.exit_code == EXIT_PLANNING_ERROR
        assert isinstance(outcome.error.__cause__, OverAllocation)
        assert [u.item_id for u in outcome.plan.unplaced] == ["FEAT-1"]
        assert store.load("PI-2026.1", "team-a").state == "optimized"
        assert backlog.assignments == {}

    def test_allow_partial_commits(self, tmp_path):
        backlog = make_backlog(items=self.oversized_feature())
        outcome = PlanningCoordinator(backlog, store=PlanStore(tmp_path), notifier=MagicMock()).run(
            request(allow_partial=True)
        )

        assert outcome.ok
        assert outcome.plan.state == "committed"
        assert "FEAT-1" not in backlog.assignments
        assert len(backlog.assignments) == 5


class TestExpandDeclared:
    """Tests for re-pointing declared links at sub-items."""

    def test_links_follow_children(self):
        big = WorkItem(id="BIG", title="Big story", story_points=8, acceptance_criteria=["a", "b"])
        small = WorkItem(id="SMALL", title="Small story", story_points=2, acceptance_criteria=["a"])
        batch = StoryDecomposer(PlanningConfig()).decompose_backlog([big, small])
        link = DependencyRelationship("BIG", "SMALL", DependencyKind.BLOCKS, DependencyStrength.HARD,
                                      DetectionMethod.MANUAL, methods=(DetectionMethod.MANUAL,))

        expanded = expand_declared([link], batch)

        assert [(r.source_id, r.target_id) for r in expanded] == [("BIG-1", "SMALL"), ("BIG-2", "SMALL")]
        assert all(r.detection_method == DetectionMethod.MANUAL for r in expanded)

    def test_recursive_split_resolves_to_leaves(self):
        huge = WorkItem(id="HUGE", title="Huge story", story_points=21,
                        acceptance_criteria=["a", "b", "c", "d", "e", "f", "g", "h"])
        batch = StoryDecomposer(PlanningConfig(recursive_decomposition=True)).decompose_backlog([huge])
        link = DependencyRelationship("X", "HUGE", DependencyKind.BLOCKS, DependencyStrength.HARD,
                                      DetectionMethod.MANUAL)

        targets = [r.target_id for r in expand_declared([link], batch)]

        assert targets == [i.id for i in batch.items]
        assert "HUGE-4" not in targets

    def test_untouched_links_pass_through(self):
        batch = StoryDecomposer().decompose_backlog([])
        link = DependencyRelationship("A", "B", DependencyKind.RELATED, DependencyStrength.SOFT,
                                      DetectionMethod.MANUAL)
        assert expand_declared([link], batch) == [link]


@pytest.mark.parametrize("count", [1, 2])
def test_outcome_dict(count):
    outcome = PlanningCoordinator(make_backlog(), notifier=MagicMock()).run(
        request(iteration_count=count, dry_run=True)
    )
    data = outcome.to_dict()
    assert data["pi_id"] == "PI-2026.1"
    assert data["ok"] is True
    assert data["state"] == "optimized"


class TestGeneratedChildren:
    """Tests for separating previously written sub-items from the source backlog."""

    def child(self, item_id, parent_id):
        return WorkItem(id=item_id, title="Part", story_points=2, acceptance_criteria=["a"],
                        parent_id=parent_id, labels=["decomposed"])

    def test_children_of_snapshot_items_are_dropped(self):
        parent = WorkItem(id="BIG", title="Big story", story_points=8, acceptance_criteria=["a", "b"])
        kept, dropped = split_generated_children([parent, self.child("BIG-1", "BIG"), self.child("BIG-2", "BIG")])

        assert [i.id for i in kept] == ["BIG"]
        assert dropped == {"BIG-1", "BIG-2"}

    def test_recursive_leaves_resolve_through_unwritten_parts(self):
        parent = WorkItem(id="HUGE", title="Huge story", story_points=21, acceptance_criteria=["a"])
        kept, dropped = split_generated_children([parent, self.child("HUGE-4-1", "HUGE-4")])

        assert [i.id for i in kept] == ["HUGE"]
        assert dropped == {"HUGE-4-1"}

    def test_orphans_and_unlabelled_children_are_kept(self):
        items = [
            self.child("GONE-1", "GONE"),
            WorkItem(id="EPIC-1", title="Manual child", story_points=3, parent_id="EPIC"),
            WorkItem(id="EPIC", title="Epic", story_points=0, type="epic"),
        ]
        kept, dropped = split_generated_children(items)

        assert [i.id for i in kept] == ["GONE-1", "EPIC-1", "EPIC"]
        assert dropped == set()
