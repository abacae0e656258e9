"""Tests for artplan.planning.dependencies module."""

import logging

import pytest

from artplan.lib.errors import CyclicDependency, ValidationError
from artplan.planning.dependencies import (
    acyclic_view,
    critical_path,
    ensure_acyclic,
    extract_technical_terms,
    find_cycles,
    find_item_references,
    graph_statistics,
    map_dependencies,
    suggest_resolutions,
    technical_confidence,
    topological_layers,
    validate_graph,
)
from artplan.planning.models import (
    DependencyKind,
    DependencyRelationship,
    DependencyStrength,
    DetectionMethod,
    WorkItem,
)


def item(item_id, title, description="", points=3, **kwargs):
    return WorkItem(id=item_id, title=title, description=description, story_points=points,
                    acceptance_criteria=["done"], team_id="team-a", **kwargs)


def declared(source, target, kind=DependencyKind.BLOCKS):
    return DependencyRelationship(
        source_id=source,
        target_id=target,
        kind=kind,
        strength=DependencyStrength.HARD,
        detection_method=DetectionMethod.MANUAL,
        confidence=1.0,
        methods=(DetectionMethod.MANUAL,),
    )


@pytest.fixture
def neutral_items():
    return [
        item("A", "Alpha screen"),
        item("B", "Bravo report", points=5),
        item("C", "Charlie export", points=2),
        item("D", "Delta banner", points=5),
    ]


class TestTechnicalDetection:
    """Tests for shared-component detection."""

    def test_term_extraction(self):
        terms = extract_technical_terms("Call PaymentGateway via BillingAPI at /api/v1/charges")
        assert "paymentgateway" in terms
        assert "billingapi" in terms
        assert "/api/v1/charges" in terms

    def test_confidence(self):
        assert technical_confidence(["component"]) == pytest.approx(0.2)
        assert technical_confidence(["component", "library", "model"]) == pytest.approx(0.6)
        assert technical_confidence(["api", "library"]) == pytest.approx(0.6)
        assert technical_confidence(["a", "b", "c", "d", "e"]) == pytest.approx(0.8)

    def test_keyword_edge_is_soft(self):
        items = [
            item("PAY-1", "Payments ledger", "Create the API service and database tables"),
            item("CHK-1", "Checkout page", "Call the API service to read the database"),
        ]
        graph = map_dependencies(items)

        assert len(graph.edges) == 1
        edge = graph.edges[0]
        assert edge.predecessor == "PAY-1"
        assert edge.successor == "CHK-1"
        assert edge.strength == DependencyStrength.SOFT
        assert edge.methods == (DetectionMethod.KEYWORD,)
        assert graph.hard_edges() == []


class TestBusinessDetection:
    """Tests for sequencing-language detection."""

    def test_reference_by_id_and_title(self):
        target = item("PAY-1", "Payments ledger")
        refs = find_item_references("This requires PAY-1 and the payments ledger", target)
        assert refs[0] == "PAY-1"
        assert refs[1].startswith("title match")

    def test_id_reference_is_exact(self):
        target = item("S1", "Alpha screen")
        assert find_item_references("see S1-1 first", target) == []

    def test_two_methods_make_hard_edge(self):
        items = [
            item("PAY-1", "Payments ledger", "Create the API service and database tables"),
            item("CHK-1", "Checkout page",
                 "Call the API service to read the database. Requires PAY-1 payments ledger."),
        ]
        graph = map_dependencies(items)

        edge = graph.edge_between("PAY-1", "CHK-1")
        assert edge.is_hard
        assert edge.predecessor == "PAY-1"
        assert DetectionMethod.KEYWORD in edge.methods
        assert DetectionMethod.SEMANTIC in edge.methods

    def test_enables_reverses_direction(self):
        items = [
            item("RPT-1", "Quarterly report"),
            item("EXP-1", "Export button", "Enables RPT-1 quarterly report downloads"),
        ]
        graph = map_dependencies(items)

        edge = graph.edges[0]
        assert edge.predecessor == "EXP-1"
        assert edge.successor == "RPT-1"
        assert edge.strength == DependencyStrength.SOFT


class TestDeclaredRelationships:
    """Tests for manual relationships from the tracker."""

    def test_manual_edge_is_hard(self, neutral_items):
        graph = map_dependencies(neutral_items, [declared("A", "B")])
        edge = graph.edges[0]
        assert edge.is_hard
        assert edge.detection_method == DetectionMethod.MANUAL

    def test_blocked_by_points_backwards(self, neutral_items):
        graph = map_dependencies(neutral_items, [declared("A", "B", DependencyKind.BLOCKED_BY)])
        assert graph.predecessors("A") == ["B"]
        assert graph.successors("B") == ["A"]

    def test_related_is_soft(self, neutral_items):
        graph = map_dependencies(neutral_items, [declared("A", "B", DependencyKind.RELATED)])
        assert graph.edges[0].kind == DependencyKind.RELATED
        assert not graph.edges[0].is_hard

    def test_self_loop_rejected(self, neutral_items):
        with pytest.raises(ValidationError):
            map_dependencies(neutral_items, [declared("A", "A")])

    def test_outside_endpoint_ignored(self, neutral_items, caplog):
        with caplog.at_level(logging.WARNING):
            graph = map_dependencies(neutral_items, [declared("A", "ZZZ")])
        assert graph.edges == []
        assert "outside the snapshot" in caplog.text

    def test_duplicate_ids_rejected(self):
        with pytest.raises(ValidationError):
            map_dependencies([item("A", "Alpha screen"), item("A", "Alpha again")])

    def test_deterministic(self, neutral_items):
        links = [declared("A", "B"), declared("B", "C"), declared("D", "C", DependencyKind.RELATED)]
        first = map_dependencies(neutral_items, links).to_dict()
        second = map_dependencies(neutral_items, links).to_dict()
        assert first == second


class TestCycles:
    """Tests for hard cycle detection."""

    def test_two_node_cycle(self, neutral_items):
        graph = map_dependencies(neutral_items, [declared("A", "B"), declared("B", "A")])
        assert find_cycles(graph) == [["A", "B"]]

    def test_three_node_cycle(self, neutral_items):
        links = [declared("A", "B"), declared("B", "C"), declared("C", "A")]
        graph = map_dependencies(neutral_items, links)
        assert find_cycles(graph) == [["A", "B", "C"]]

    def test_chain_starts_at_earliest_item(self, neutral_items):
        links = [declared("C", "B"), declared("B", "C")]
        graph = map_dependencies(neutral_items, links)
        assert find_cycles(graph) == [["B", "C"]]

    def test_acyclic_graph(self, neutral_items):
        graph = map_dependencies(neutral_items, [declared("A", "B"), declared("B", "C")])
        assert find_cycles(graph) == []
        ensure_acyclic(graph)

    def test_ensure_acyclic_raises_with_chains(self, neutral_items):
        graph = map_dependencies(neutral_items, [declared("A", "B"), declared("B", "A")])
        with pytest.raises(CyclicDependency) as exc_info:
            ensure_acyclic(graph)
        assert exc_info.value.chains == [["A", "B"]]
        assert "A -> B -> A" in str(exc_info.value)

    def test_soft_cycle_is_not_a_cycle(self, neutral_items):
        links = [declared("A", "B", DependencyKind.RELATED), declared("B", "A", DependencyKind.RELATED)]
        graph = map_dependencies(neutral_items, links)
        assert find_cycles(graph) == []

    def test_acyclic_view_breaks_weakest(self, neutral_items):
        graph = map_dependencies(neutral_items, [declared("A", "B"), declared("B", "A")])
        view = acyclic_view(graph)
        assert find_cycles(view) == []
        assert len(view.hard_edges()) == 1
        # Original graph is untouched
        assert len(graph.hard_edges()) == 2

    def test_resolution_suggestions(self, neutral_items):
        graph = map_dependencies(neutral_items, [declared("A", "B"), declared("B", "A")])
        suggestions = suggest_resolutions(graph, ["A", "B"])
        assert suggestions[0].startswith("Break the weakest link")
        assert "Merge A and B into a single story" in suggestions

    def test_validate_graph_reports_cycle(self, neutral_items):
        graph = map_dependencies(neutral_items, [declared("A", "B"), declared("B", "A")])
        assert validate_graph(graph) == ["hard cycle: A -> B -> A"]


class TestOrdering:
    """Tests for layering, critical path and statistics."""

    def test_topological_layers(self, neutral_items):
        graph = map_dependencies(neutral_items, [declared("A", "B"), declared("B", "C")])
        assert topological_layers(graph) == {"A": 0, "B": 1, "C": 2, "D": 0}

    def test_layers_raise_on_cycle(self, neutral_items):
        graph = map_dependencies(neutral_items, [declared("A", "B"), declared("B", "A")])
        with pytest.raises(CyclicDependency):
            topological_layers(graph)

    def test_critical_path_weighted_by_points(self, neutral_items):
        graph = map_dependencies(neutral_items, [declared("A", "B"), declared("B", "C")])
        path = critical_path(graph, neutral_items)
        assert path.item_ids == ["A", "B", "C"]
        assert path.total_points == 10

    def test_critical_path_tie_goes_to_earliest(self, neutral_items):
        graph = map_dependencies(neutral_items)
        path = critical_path(graph, neutral_items)
        assert path.item_ids == ["B"]
        assert path.total_points == 5

    def test_statistics(self, neutral_items):
        graph = map_dependencies(neutral_items, [declared("A", "B")])
        stats = graph_statistics(graph)
        assert stats.node_count == 4
        assert stats.edge_count == 1
        assert stats.hard_count == 1
        assert stats.independent_items == ["C", "D"]
        assert stats.cycle_count == 0
