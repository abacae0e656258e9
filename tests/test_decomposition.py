"""Tests for artplan.planning.decomposition module."""

import logging

import pytest

from artplan.lib.config import PlanningConfig
from artplan.lib.errors import DecompositionInfeasible, InvariantViolation, ValidationError
from artplan.planning.decomposition import (
    StoryDecomposer,
    analyze_story,
    check_decomposition,
    choose_part_count,
    decompose,
    distribute_criteria,
    distribute_points,
    verify_decomposition,
)
from artplan.planning.models import WorkItem


def story(item_id="S-1", points=13, criteria=None, **kwargs):
    return WorkItem(
        id=item_id,
        title=kwargs.pop("title", "Checkout flow"),
        description=kwargs.pop("description", "Customers pay for the basket contents."),
        story_points=points,
        acceptance_criteria=list(criteria if criteria is not None else ["c1", "c2", "c3", "c4"]),
        team_id=kwargs.pop("team_id", "team-a"),
        **kwargs,
    )


class TestPartCount:
    """Tests for choose_part_count and distribute_points."""

    @pytest.mark.parametrize("points,expected", [
        (6, 2),
        (10, 2),
        (11, 3),
        (13, 3),
        (15, 3),
        (16, 4),
        (20, 4),
    ])
    def test_smallest_compliant_count(self, points, expected):
        assert choose_part_count(points, PlanningConfig()) == expected

    def test_infeasible_returns_none(self):
        """21 points cannot fit into four parts of five."""
        assert choose_part_count(21, PlanningConfig()) is None

    def test_trailing_parts_absorb_remainder(self):
        assert distribute_points(13, 3) == [4, 4, 5]
        assert distribute_points(8, 2) == [4, 4]
        assert distribute_points(11, 3) == [3, 4, 4]

    def test_points_always_sum_to_parent(self):
        for points in range(6, 21):
            parts = choose_part_count(points, PlanningConfig())
            assert sum(distribute_points(points, parts)) == points


class TestCriteriaDistribution:
    """Tests for round-robin criteria assignment."""

    def test_round_robin(self):
        mapping = distribute_criteria(["a", "b", "c", "d"], 3)
        assert mapping.criteria_for(0) == ["a", "d"]
        assert mapping.criteria_for(1) == ["b"]
        assert mapping.criteria_for(2) == ["c"]

    def test_fewer_criteria_than_parts(self):
        mapping = distribute_criteria(["only"], 2)
        assert mapping.criteria_for(0) == ["only"]
        assert mapping.criteria_for(1) == []


class TestDecompose:
    """Tests for StoryDecomposer.decompose."""

    def test_thirteen_points_into_three(self):
        result = decompose(story())

        assert [c.story_points for c in result.children] == [4, 4, 5]
        assert [c.id for c in result.children] == ["S-1-1", "S-1-2", "S-1-3"]
        assert result.total_points == 13
        assert all(c.story_points <= 5 for c in result.children)

    def test_children_carry_parent_link_and_labels(self):
        result = decompose(story(labels=["checkout"]))

        first = result.children[0]
        assert first.parent_id == "S-1"
        assert first.team_id == "team-a"
        assert first.title == "Checkout flow - Part 1 of 3"
        assert first.labels == ["checkout", "decomposed", "sub-story-1"]
        assert "**Parent Story**: S-1 - Checkout flow" in first.description

    def test_criteria_partition_parent(self):
        result = decompose(story())

        child_criteria = [c for child in result.children for c in child.acceptance_criteria]
        assert sorted(child_criteria) == ["c1", "c2", "c3", "c4"]
        assert result.children[0].acceptance_criteria == ["c1", "c4"]

    def test_parent_is_not_mutated(self):
        parent = story()
        decompose(parent)
        assert parent.story_points == 13
        assert parent.acceptance_criteria == ["c1", "c2", "c3", "c4"]

    def test_within_limit_is_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            decompose(story(points=5))
        assert exc_info.value.path == "story_points"

    def test_infeasible_raises(self):
        with pytest.raises(DecompositionInfeasible) as exc_info:
            decompose(story(points=25))
        assert exc_info.value.item_id == "S-1"
        assert exc_info.value.points == 25

    def test_custom_limit(self):
        config = PlanningConfig(max_story_points=8)
        result = StoryDecomposer(config).decompose(story(points=13))
        assert [c.story_points for c in result.children] == [6, 7]

    def test_audit_records_split(self):
        decomposer = StoryDecomposer()
        decomposer.decompose(story())
        assert decomposer.audit[0].item_id == "S-1"
        assert decomposer.audit[0].action == "decomposed"
        assert decomposer.audit[0].detail == "13 -> 4/4/5"


class TestListeners:
    """Tests for decomposition listeners."""

    def test_listener_receives_result(self):
        seen = []
        StoryDecomposer(listeners=[seen.append]).decompose(story())
        assert len(seen) == 1
        assert seen[0].parent.id == "S-1"

    def test_failing_listener_does_not_undo(self, caplog):
        def broken(result):
            raise RuntimeError("listener down")

        with caplog.at_level(logging.WARNING):
            result = StoryDecomposer(listeners=[broken]).decompose(story())

        assert len(result.children) == 3
        assert "Listener failed for S-1" in caplog.text


class TestRecursive:
    """Tests for recursive decomposition of very large stories."""

    def test_intermediate_split(self):
        results = StoryDecomposer().decompose_recursive(story(points=21))

        top = results[0]
        assert top.intermediate
        assert [c.story_points for c in top.children] == [5, 5, 5, 6]
        assert results[1].parent.id == "S-1-4"
        assert [c.story_points for c in results[1].children] == [3, 3]

    def test_backlog_recursive_leaves(self):
        batch = StoryDecomposer().decompose_backlog([story(points=21)], recursive=True)

        assert [i.id for i in batch.items] == ["S-1-1", "S-1-2", "S-1-3", "S-1-4-1", "S-1-4-2"]
        assert sum(i.story_points for i in batch.items) == 21
        assert batch.decomposed_count == 1
        assert not batch.failures


class TestDecomposeBacklog:
    """Tests for batch decomposition."""

    def test_preserves_order(self):
        items = [story("A", 3), story("B", 8), story("C", 2)]
        batch = StoryDecomposer().decompose_backlog(items)
        assert [i.id for i in batch.items] == ["A", "B-1", "B-2", "C"]

    def test_only_stories_are_split(self):
        epic = story("E", 20, type="epic")
        batch = StoryDecomposer().decompose_backlog([epic])
        assert [i.id for i in batch.items] == ["E"]
        assert batch.results == []

    def test_raised_limit_keeps_mid_sized_stories(self):
        items = [story("MID", 6), story("BIG", 13)]
        batch = StoryDecomposer(PlanningConfig(max_story_points=8)).decompose_backlog(items)

        assert batch.failures == []
        assert [i.id for i in batch.items] == ["MID", "BIG-1", "BIG-2"]
        assert all(i.story_points <= 8 for i in batch.items)

    def test_lowered_limit_splits_small_stories(self):
        batch = StoryDecomposer(PlanningConfig(max_story_points=3)).decompose_backlog([story("S", 5)])

        assert [i.id for i in batch.items] == ["S-1", "S-2"]
        assert sum(i.story_points for i in batch.items) == 5
        assert analyze_story(story("S", 5), PlanningConfig(max_story_points=3)).needs_decomposition

    def test_failures_are_collected(self, caplog):
        items = [story("BIG", 25), story("OK", 3)]
        with caplog.at_level(logging.WARNING):
            batch = StoryDecomposer().decompose_backlog(items)

        assert [i.id for i in batch.items] == ["OK"]
        assert len(batch.failures) == 1
        assert batch.failures[0].item_id == "BIG"
        assert batch.failures[0].error_type == "DecompositionInfeasible"
        assert "[DECOMP] BIG" in caplog.text


class TestChecks:
    """Tests for analyze_story and the post-decomposition checks."""

    def test_analysis_of_oversized_story(self):
        analysis = analyze_story(story(points=21, criteria=["one"], description="API integration"))

        assert analysis.needs_decomposition
        assert analysis.recommended_parts is None
        assert any("very large story" in r for r in analysis.risks)
        assert any("technical scope" in f for f in analysis.complexity_factors)

    def test_valid_result_passes(self):
        check = check_decomposition(decompose(story()))
        assert check.valid
        assert check.value_preserved
        assert check.issues == []

    def test_tampered_points_fail(self):
        result = decompose(story())
        result.children[0].story_points = 1

        check = check_decomposition(result)
        assert not check.points_valid
        with pytest.raises(InvariantViolation):
            verify_decomposition(result)

    def test_lost_criterion_fails(self):
        result = decompose(story())
        result.children[1].acceptance_criteria = []

        check = check_decomposition(result)
        assert not check.criteria_valid
