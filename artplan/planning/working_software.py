"""
Working-software gates.

An iteration delivers working software only if all four gates pass:

1. definition_of_done - every allocated story has acceptance criteria
2. integration        - no hard prerequisite is scheduled later or not at all
3. deployability      - nothing is flagged incomplete or lacks an owning team
4. rollback_safety    - shared-infrastructure changes carry a rollback note

Failures are reported as named blockers per item.
"""

import re

from artplan.planning.models import DependencyGraph, GateResult, IterationPlan, WorkItem

GATE_DEFINITION_OF_DONE = "definition_of_done"
GATE_INTEGRATION = "integration"
GATE_DEPLOYABILITY = "deployability"
GATE_ROLLBACK_SAFETY = "rollback_safety"

GATES = (GATE_DEFINITION_OF_DONE, GATE_INTEGRATION, GATE_DEPLOYABILITY, GATE_ROLLBACK_SAFETY)

SHARED_INFRASTRUCTURE_TERMS = (
    "database", "migration", "schema", "infrastructure", "deployment", "shared", "platform",
)

ROLLBACK_LABELS = ("feature-flag", "flag-off", "rollback-ready")


def touches_shared_infrastructure(item: WorkItem) -> bool:
    content = item.content.lower()
    return any(re.search(r"\b" + term, content) for term in SHARED_INFRASTRUCTURE_TERMS)


def has_rollback_plan(item: WorkItem) -> bool:
    if item.rollback_note and item.rollback_note.strip():
        return True
    return any(label in ROLLBACK_LABELS for label in item.labels)


def item_blockers(item: WorkItem, iteration: int, graph: DependencyGraph,
                  iteration_of: dict[str, int], plan_ids: set[str]) -> dict[str, list[str]]:
    """Blockers per gate for one allocated item."""
    blockers: dict[str, list[str]] = {gate: [] for gate in GATES}

    if item.type == "story" and not item.acceptance_criteria:
        blockers[GATE_DEFINITION_OF_DONE].append(f"{item.id}: no acceptance criteria")

    for pred in graph.predecessors(item.id):
        if pred not in plan_ids:
            continue
        scheduled = iteration_of.get(pred)
        if scheduled is None:
            blockers[GATE_INTEGRATION].append(f"{item.id}: prerequisite {pred} is not scheduled")
        elif scheduled > iteration:
            blockers[GATE_INTEGRATION].append(
                f"{item.id}: prerequisite {pred} is scheduled later (iteration {scheduled})"
            )

    if item.is_incomplete:
        blockers[GATE_DEPLOYABILITY].append(f"{item.id}: flagged incomplete")
    if not item.team_id:
        blockers[GATE_DEPLOYABILITY].append(f"{item.id}: no owning team")

    if touches_shared_infrastructure(item) and not has_rollback_plan(item):
        blockers[GATE_ROLLBACK_SAFETY].append(f"{item.id}: touches shared infrastructure without a rollback note")

    return blockers


def run_gates(iteration: IterationPlan, items: dict[str, WorkItem], graph: DependencyGraph,
              iteration_of: dict[str, int]) -> tuple[list[GateResult], dict[str, bool]]:
    """Gate results for the iteration and a pass/fail flag per allocated item."""
    collected: dict[str, list[str]] = {gate: [] for gate in GATES}
    item_ok: dict[str, bool] = {}
    plan_ids = set(items)

    for allocated in iteration.allocated_items:
        item = items.get(allocated.item_id)
        if item is None:
            collected[GATE_DEPLOYABILITY].append(f"{allocated.item_id}: not found in the plan snapshot")
            item_ok[allocated.item_id] = False
            continue
        per_item = item_blockers(item, iteration.index, graph, iteration_of, plan_ids)
        for gate, found in per_item.items():
            collected[gate].extend(found)
        item_ok[item.id] = not any(per_item.values())

    gates = [GateResult(name=gate, passed=not collected[gate], blockers=collected[gate]) for gate in GATES]
    return gates, item_ok
