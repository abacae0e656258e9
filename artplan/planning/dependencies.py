"""
Dependency mapping over a decomposed backlog snapshot.

Three detection passes run independently and are unioned:

- keyword: shared technical components (keywords, CamelCase terms, APIs, paths)
- semantic: sequencing language plus a reference to the other item
- manual: relationships declared in the work-tracking system

An ordering edge found by two or more passes (or declared manually) is hard;
anything else is soft. Only hard edges constrain allocation, cycle detection
and the critical path.
"""

import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable, Optional

from artplan.lib.config import PlanningConfig
from artplan.lib.errors import CyclicDependency, ValidationError
from artplan.planning.models import (
    DependencyGraph,
    DependencyKind,
    DependencyRelationship,
    DependencyStrength,
    DetectionMethod,
    WorkItem,
)

logger = logging.getLogger(__name__)

TECHNICAL_KEYWORDS = (
    "api", "service", "component", "library", "framework", "database", "schema",
    "infrastructure", "deployment", "integration", "authentication", "authorization",
    "microservice", "endpoint", "data", "model", "migration", "configuration",
)

CRITICAL_TERMS = ("api", "database", "service", "authentication")

FOUNDATIONAL_TERMS = ("api", "service", "database", "authentication", "infrastructure", "framework")

TYPE_FOUNDATION_BONUS = {"epic": 3, "feature": 2, "enabler": 4}

TECHNICAL_TERM_PATTERNS = (
    re.compile(r"\b[A-Z][a-z]+(?:[A-Z][a-z]+)+\b"),   # CamelCase
    re.compile(r"\b\w+API\b"),
    re.compile(r"\b\w+Service\b"),
    re.compile(r"(?<!\w)/\w+(?:/\w+)*\b"),             # /api/paths
)

# (cues, direction) where direction says who is the predecessor:
#   "depends": the item using the cue depends on the referenced item
#   "enables": the item using the cue comes first
#   "related": no ordering
SEQUENCING_CUES = (
    (("requires", "needs", "depends on"), "depends"),
    (("after", "following", "subsequent to"), "depends"),
    (("enables", "allows", "permits"), "enables"),
    (("related to", "connected to"), "related"),
)

TITLE_WORD_MIN_LEN = 4


@dataclass
class Candidate:
    predecessor: str
    successor: str
    kind: DependencyKind
    method: DetectionMethod
    confidence: float
    rationale: str


@dataclass
class CriticalPath:
    item_ids: list[str]
    total_points: int


@dataclass
class GraphStatistics:
    node_count: int
    edge_count: int
    hard_count: int
    soft_count: int
    average_dependencies: float
    independent_items: list[str] = field(default_factory=list)
    high_dependency_items: list[str] = field(default_factory=list)
    cycle_count: int = 0


def _contains_term(content: str, term: str) -> bool:
    return re.search(r"\b" + re.escape(term), content) is not None


def extract_technical_terms(text: str) -> set[str]:
    """CamelCase names, *API, *Service and /path tokens, lower-cased."""
    terms = set()
    for pattern in TECHNICAL_TERM_PATTERNS:
        terms.update(m.lower() for m in pattern.findall(text))
    return terms


def shared_components(a: WorkItem, b: WorkItem) -> list[str]:
    content_a, content_b = a.content.lower(), b.content.lower()
    shared = [kw for kw in TECHNICAL_KEYWORDS if _contains_term(content_a, kw) and _contains_term(content_b, kw)]
    terms = sorted(extract_technical_terms(a.content) & extract_technical_terms(b.content))
    for term in terms:
        if term not in shared:
            shared.append(term)
    return shared


def technical_confidence(shared: list[str]) -> float:
    confidence = min(len(shared) * 0.2, 0.8)
    if any(term in CRITICAL_TERMS for term in shared):
        confidence = min(confidence + 0.2, 1.0)
    return confidence


def foundation_score(item: WorkItem) -> float:
    """How likely an item is to be depended upon."""
    content = item.content.lower()
    score = 2.0 * sum(1 for term in FOUNDATIONAL_TERMS if _contains_term(content, term))
    score += TYPE_FOUNDATION_BONUS.get(item.type, 0)
    score += min(item.story_points * 0.5, 5)
    return score


def find_item_references(content: str, item: WorkItem) -> list[str]:
    """References to ``item`` inside ``content``: its id and/or significant title words."""
    lowered = content.lower()
    refs = []
    if re.search(r"(?<![\w-])" + re.escape(item.id.lower()) + r"(?![\w-])", lowered):
        refs.append(item.id)

    words = [w for w in re.split(r"\W+", item.title.lower()) if len(w) >= TITLE_WORD_MIN_LEN]
    if words:
        found = [w for w in words if _contains_term(lowered, w)]
        if len(found) >= min(2, len(words)):
            refs.append(f"title match: {' '.join(found)}")
    return refs


def _business_candidate(user: WorkItem, other: WorkItem) -> Optional[Candidate]:
    """Best sequencing relation implied by ``user``'s text about ``other``."""
    refs = find_item_references(user.content, other)
    if not refs:
        return None

    content = user.content.lower()
    best = None
    for cues, direction in SEQUENCING_CUES:
        matches = [cue for cue in cues if _contains_term(content, cue)]
        if not matches:
            continue
        confidence = min(len(matches) * 0.3 + len(refs) * 0.2, 0.9)
        if best is not None and confidence <= best.confidence:
            continue
        if direction == "depends":
            pred, succ, kind = other.id, user.id, DependencyKind.BLOCKS
        elif direction == "enables":
            pred, succ, kind = user.id, other.id, DependencyKind.BLOCKS
        else:
            pred, succ, kind = other.id, user.id, DependencyKind.RELATED
        best = Candidate(
            predecessor=pred,
            successor=succ,
            kind=kind,
            method=DetectionMethod.SEMANTIC,
            confidence=confidence,
            rationale=f"Business sequencing cue ({', '.join(matches)}) referencing {other.id}",
        )
    return best


def detect_technical(items: list[WorkItem], threshold: float) -> list[Candidate]:
    candidates = []
    scores = {item.id: foundation_score(item) for item in items}
    for i, a in enumerate(items):
        for b in items[i + 1:]:
            shared = shared_components(a, b)
            if not shared:
                continue
            confidence = technical_confidence(shared)
            if confidence < threshold:
                continue
            # Higher foundation score goes first; ties keep snapshot order
            if scores[b.id] > scores[a.id]:
                pred, succ = b.id, a.id
            else:
                pred, succ = a.id, b.id
            candidates.append(Candidate(
                predecessor=pred,
                successor=succ,
                kind=DependencyKind.BLOCKS,
                method=DetectionMethod.KEYWORD,
                confidence=confidence,
                rationale=f"Depends on foundational component: {', '.join(shared)}",
            ))
    return candidates


def detect_business(items: list[WorkItem], threshold: float) -> list[Candidate]:
    candidates = []
    for i, a in enumerate(items):
        for b in items[i + 1:]:
            # Later item depending on earlier one wins ties
            best = _business_candidate(b, a)
            reverse = _business_candidate(a, b)
            if reverse is not None and (best is None or reverse.confidence > best.confidence):
                best = reverse
            if best is not None and best.confidence >= threshold:
                candidates.append(best)
    return candidates


def detect_declared(relationships: Iterable[DependencyRelationship], node_ids: set[str]) -> list[Candidate]:
    candidates = []
    for rel in relationships:
        if rel.source_id == rel.target_id:
            raise ValidationError("dependency", f"Relationship from {rel.source_id} to itself", rel.source_id)
        if rel.source_id not in node_ids or rel.target_id not in node_ids:
            logger.warning(
                f"[DEPS] Ignoring declared relationship {rel.source_id} -> {rel.target_id}: "
                f"endpoint outside the snapshot"
            )
            continue
        kind = DependencyKind.RELATED if rel.kind == DependencyKind.RELATED else DependencyKind.BLOCKS
        candidates.append(Candidate(
            predecessor=rel.predecessor,
            successor=rel.successor,
            kind=kind,
            method=DetectionMethod.MANUAL,
            confidence=1.0,
            rationale=rel.rationale or f"Declared {rel.kind.value} relationship",
        ))
    return candidates


def _merge(candidates: list[Candidate], order: dict[str, int]) -> list[DependencyRelationship]:
    ordering: dict[tuple[str, str], list[Candidate]] = defaultdict(list)
    related: dict[tuple[str, str], list[Candidate]] = defaultdict(list)
    for c in candidates:
        if c.kind == DependencyKind.RELATED:
            pair = tuple(sorted((c.predecessor, c.successor), key=lambda n: order[n]))
            related[pair].append(c)
        else:
            ordering[(c.predecessor, c.successor)].append(c)

    edges = []
    for (pred, succ), group in ordering.items():
        methods = sorted({c.method for c in group}, key=lambda m: list(DetectionMethod).index(m))
        hard = DetectionMethod.MANUAL in methods or len(methods) >= 2
        primary = DetectionMethod.MANUAL if DetectionMethod.MANUAL in methods else max(
            group, key=lambda c: (c.confidence, -list(DetectionMethod).index(c.method))
        ).method
        edges.append(DependencyRelationship(
            source_id=pred,
            target_id=succ,
            kind=DependencyKind.BLOCKS,
            strength=DependencyStrength.HARD if hard else DependencyStrength.SOFT,
            detection_method=primary,
            rationale="; ".join(dict.fromkeys(c.rationale for c in group)),
            confidence=max(c.confidence for c in group),
            methods=tuple(methods),
        ))

    linked = {frozenset(k) for k in ordering}
    for (a, b), group in related.items():
        if frozenset((a, b)) in linked:
            continue
        methods = sorted({c.method for c in group}, key=lambda m: list(DetectionMethod).index(m))
        edges.append(DependencyRelationship(
            source_id=a,
            target_id=b,
            kind=DependencyKind.RELATED,
            strength=DependencyStrength.SOFT,
            detection_method=methods[0],
            rationale="; ".join(dict.fromkeys(c.rationale for c in group)),
            confidence=max(c.confidence for c in group),
            methods=tuple(methods),
        ))

    edges.sort(key=lambda e: (order[e.source_id], order[e.target_id], e.kind.value))
    return edges


def map_dependencies(items: list[WorkItem],
                     declared: Optional[Iterable[DependencyRelationship]] = None,
                     config: Optional[PlanningConfig] = None) -> DependencyGraph:
    """Build the dependency graph for a snapshot of items.

    Pure and deterministic: the same items and declared relationships always
    give the same edge list in the same order.
    """
    config = config or PlanningConfig()
    order: dict[str, int] = {}
    for idx, item in enumerate(items):
        if item.id in order:
            raise ValidationError("dependency", f"Duplicate work item id '{item.id}'", item.id)
        order[item.id] = idx

    technical = detect_technical(items, config.confidence_threshold)
    business = detect_business(items, config.confidence_threshold)
    manual = detect_declared(declared or [], set(order))

    edges = _merge(technical + business + manual, order)
    graph = DependencyGraph(nodes=[item.id for item in items], edges=edges)

    hard = len(graph.hard_edges())
    logger.info(
        f"[DEPS] {len(items)} items: technical={len(technical)} business={len(business)} "
        f"manual={len(manual)} -> {len(edges)} edges ({hard} hard)"
    )
    return graph


def _hard_adjacency(graph: DependencyGraph) -> dict[str, list[str]]:
    adjacency: dict[str, list[str]] = {n: [] for n in graph.nodes}
    for e in graph.hard_edges():
        if e.predecessor in adjacency and e.successor in adjacency:
            if e.successor not in adjacency[e.predecessor]:
                adjacency[e.predecessor].append(e.successor)
    return adjacency


def _kahn(graph: DependencyGraph) -> tuple[list[str], set[str]]:
    """Topological order over hard edges plus the nodes left unsorted."""
    order = {n: i for i, n in enumerate(graph.nodes)}
    adjacency = _hard_adjacency(graph)
    indegree = {n: 0 for n in graph.nodes}
    for succs in adjacency.values():
        for s in succs:
            indegree[s] += 1

    ready = sorted((n for n, d in indegree.items() if d == 0), key=order.get)
    sorted_nodes = []
    while ready:
        node = ready.pop(0)
        sorted_nodes.append(node)
        for succ in adjacency[node]:
            indegree[succ] -= 1
            if indegree[succ] == 0:
                ready.append(succ)
                ready.sort(key=order.get)
    remaining = set(graph.nodes) - set(sorted_nodes)
    return sorted_nodes, remaining


def _strongly_connected(nodes: list[str], adjacency: dict[str, list[str]]) -> list[list[str]]:
    """Tarjan's algorithm, iterative; components in discovery order."""
    index_of: dict[str, int] = {}
    low: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    components = []
    counter = 0
    node_set = set(nodes)

    for root in nodes:
        if root in index_of:
            continue
        work = [(root, iter([s for s in adjacency[root] if s in node_set]))]
        index_of[root] = low[root] = counter
        counter += 1
        stack.append(root)
        on_stack.add(root)
        while work:
            node, children = work[-1]
            advanced = False
            for child in children:
                if child not in index_of:
                    index_of[child] = low[child] = counter
                    counter += 1
                    stack.append(child)
                    on_stack.add(child)
                    work.append((child, iter([s for s in adjacency[child] if s in node_set])))
                    advanced = True
                    break
                if child in on_stack:
                    low[node] = min(low[node], index_of[child])
            if advanced:
                continue
            work.pop()
            if work:
                parent = work[-1][0]
                low[parent] = min(low[parent], low[node])
            if low[node] == index_of[node]:
                component = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                components.append(component)
    return components


def _shortest_cycle(start: str, members: set[str], adjacency: dict[str, list[str]]) -> list[str]:
    """Shortest cycle through ``start`` inside one strongly connected component."""
    previous: dict[str, Optional[str]] = {start: None}
    queue = [start]
    while queue:
        node = queue.pop(0)
        for succ in adjacency[node]:
            if succ not in members:
                continue
            if succ == start:
                chain = [node]
                while previous[chain[-1]] is not None:
                    chain.append(previous[chain[-1]])
                return list(reversed(chain))
            if succ not in previous:
                previous[succ] = node
                queue.append(succ)
    return [start]


def find_cycles(graph: DependencyGraph) -> list[list[str]]:
    """Hard-edge cycles as ordered chains (each predecessor blocks the next).

    One chain per strongly connected component, starting at the component's
    earliest node in snapshot order.
    """
    _, remaining = _kahn(graph)
    if not remaining:
        return []

    order = {n: i for i, n in enumerate(graph.nodes)}
    adjacency = _hard_adjacency(graph)
    leftover = sorted(remaining, key=order.get)
    chains = []
    for component in _strongly_connected(leftover, adjacency):
        if len(component) < 2 and component[0] not in adjacency[component[0]]:
            continue
        members = set(component)
        start = min(component, key=order.get)
        chains.append(_shortest_cycle(start, members, adjacency))
    chains.sort(key=lambda chain: order[chain[0]])
    return chains


def ensure_acyclic(graph: DependencyGraph) -> None:
    """Raise CyclicDependency with every offending chain."""
    chains = find_cycles(graph)
    if chains:
        logger.error(f"[DEPS] {len(chains)} hard cycle(s) detected")
        raise CyclicDependency(chains)


def chain_edges(graph: DependencyGraph, chain: list[str]) -> list[DependencyRelationship]:
    """Hard edges connecting consecutive chain members, including the wrap-around."""
    result = []
    hard = graph.hard_edges()
    for i, node in enumerate(chain):
        succ = chain[(i + 1) % len(chain)]
        for e in hard:
            if e.predecessor == node and e.successor == succ:
                result.append(e)
                break
    return result


def weakest_edge(graph: DependencyGraph, chain: list[str]) -> Optional[DependencyRelationship]:
    """Lowest-confidence edge in the chain; declared links are broken last."""
    edges = chain_edges(graph, chain)
    if not edges:
        return None
    return min(edges, key=lambda e: (DetectionMethod.MANUAL in e.methods, len(e.methods), e.confidence))


def break_weakest_edge(graph: DependencyGraph, chain: list[str]) -> tuple[DependencyGraph, Optional[DependencyRelationship]]:
    """New graph with the chain's weakest hard edge downgraded to soft."""
    weakest = weakest_edge(graph, chain)
    if weakest is None:
        return graph, None
    downgraded = DependencyRelationship(
        source_id=weakest.source_id,
        target_id=weakest.target_id,
        kind=weakest.kind,
        strength=DependencyStrength.SOFT,
        detection_method=weakest.detection_method,
        rationale=f"{weakest.rationale} (downgraded to break cycle)",
        confidence=weakest.confidence,
        methods=weakest.methods,
    )
    edges = [downgraded if e == weakest else e for e in graph.edges]
    logger.info(f"[DEPS] Downgraded {weakest.predecessor} -> {weakest.successor} to soft")
    return graph.with_edges(edges), weakest


def acyclic_view(graph: DependencyGraph) -> DependencyGraph:
    """Copy of the graph with weakest edges softened until no hard cycle remains."""
    view = graph
    chains = find_cycles(view)
    while chains:
        view, broken = break_weakest_edge(view, chains[0])
        if broken is None:
            break
        chains = find_cycles(view)
    return view


def suggest_resolutions(graph: DependencyGraph, chain: list[str]) -> list[str]:
    """Human-readable ways to break a cycle."""
    suggestions = []
    weakest = weakest_edge(graph, chain)
    if weakest is not None:
        suggestions.append(
            f"Break the weakest link {weakest.predecessor} -> {weakest.successor} "
            f"(confidence {weakest.confidence:.2f}, {'/'.join(m.value for m in weakest.methods)})"
        )
    if len(chain) == 2:
        suggestions.append(f"Merge {chain[0]} and {chain[1]} into a single story")
    else:
        suggestions.append(f"Extract the shared work of {', '.join(chain)} into an enabler story")
    suggestions.append("Re-check declared blocks/blocked-by links in the work-tracking system")
    return suggestions


def topological_layers(graph: DependencyGraph) -> dict[str, int]:
    """Rank of each node: length of the longest hard chain leading to it.

    Raises:
        CyclicDependency: when hard edges form a cycle
    """
    sorted_nodes, remaining = _kahn(graph)
    if remaining:
        raise CyclicDependency(find_cycles(graph))
    adjacency = _hard_adjacency(graph)
    rank = {n: 0 for n in graph.nodes}
    for node in sorted_nodes:
        for succ in adjacency[node]:
            rank[succ] = max(rank[succ], rank[node] + 1)
    return rank


def creation_order(items: list[WorkItem]) -> dict[str, tuple[int, int]]:
    """(group rank, position) per item, where a group is a parent and its children.

    Group rank is the first snapshot position at which the group appears, so
    children of an earlier-created parent sort before later groups.
    """
    first_seen: dict[str, int] = {}
    for idx, item in enumerate(items):
        group = item.parent_id or item.id
        first_seen.setdefault(group, idx)
        first_seen.setdefault(item.id, idx)
    result = {}
    for idx, item in enumerate(items):
        group = item.parent_id or item.id
        result[item.id] = (min(first_seen[group], first_seen[item.id]), idx)
    return result


def critical_path(graph: DependencyGraph, items: list[WorkItem]) -> CriticalPath:
    """Longest hard-edge path weighted by story points.

    Cycles are softened first; ties go to the earliest-created group.
    """
    view = acyclic_view(graph)
    points = {item.id: item.story_points for item in items}
    created = creation_order(items)
    fallback = {n: (len(items) + i, len(items) + i) for i, n in enumerate(view.nodes)}

    def key(node):
        return created.get(node, fallback[node])

    sorted_nodes, _ = _kahn(view)
    adjacency = _hard_adjacency(view)
    preds: dict[str, list[str]] = defaultdict(list)
    for node, succs in adjacency.items():
        for s in succs:
            preds[s].append(node)

    distance: dict[str, int] = {}
    best_pred: dict[str, Optional[str]] = {}
    for node in sorted_nodes:
        choice = None
        for p in sorted(preds[node], key=key):
            if choice is None or distance[p] > distance[choice]:
                choice = p
        best_pred[node] = choice
        distance[node] = points.get(node, 0) + (distance[choice] if choice else 0)

    if not distance:
        return CriticalPath(item_ids=[], total_points=0)

    end = None
    for node in sorted(distance, key=key):
        if end is None or distance[node] > distance[end]:
            end = node

    path = [end]
    while best_pred[path[-1]] is not None:
        path.append(best_pred[path[-1]])
    path.reverse()
    return CriticalPath(item_ids=path, total_points=distance[end])


def graph_statistics(graph: DependencyGraph) -> GraphStatistics:
    degree = {n: 0 for n in graph.nodes}
    for e in graph.edges:
        if e.source_id in degree:
            degree[e.source_id] += 1
        if e.target_id in degree:
            degree[e.target_id] += 1
    node_count = len(graph.nodes)
    average = (2 * len(graph.edges) / node_count) if node_count else 0.0
    threshold = max(3, average * 1.5)
    return GraphStatistics(
        node_count=node_count,
        edge_count=len(graph.edges),
        hard_count=len(graph.hard_edges()),
        soft_count=len(graph.soft_edges()),
        average_dependencies=average,
        independent_items=[n for n in graph.nodes if degree[n] == 0],
        high_dependency_items=[n for n in graph.nodes if degree[n] >= threshold],
        cycle_count=len(find_cycles(graph)),
    )


def validate_graph(graph: DependencyGraph) -> list[str]:
    """Structural problems: dangling endpoints, self-loops, duplicates, hard cycles."""
    issues = []
    nodes = set(graph.nodes)
    if len(nodes) != len(graph.nodes):
        issues.append("duplicate node ids")
    seen = set()
    for e in graph.edges:
        if e.source_id not in nodes or e.target_id not in nodes:
            issues.append(f"edge {e.source_id} -> {e.target_id} references an unknown item")
        if e.source_id == e.target_id:
            issues.append(f"self-loop on {e.source_id}")
        if (e.key, e.kind) in seen:
            issues.append(f"duplicate edge {e.source_id} -> {e.target_id} ({e.kind.value})")
        seen.add((e.key, e.kind))
    for chain in find_cycles(graph):
        issues.append(f"hard cycle: {' -> '.join(chain + chain[:1])}")
    return issues
