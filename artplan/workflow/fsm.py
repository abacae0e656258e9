"""Plan lifecycle state machine using the transitions library.

States run strictly forward, draft -> allocated -> validated -> optimized ->
committed, with one explicit loop back from optimized to allocated. That
loop is bounded by ``max_passes`` so rebalancing cannot oscillate.

Usage:
    from artplan.workflow.fsm import PlanFSM

    fsm = PlanFSM("PI-2026.1/team-a", max_passes=3)
    fsm.allocate()
    fsm.validate()
    fsm.optimize()
    fsm.commit()
"""

import logging
from typing import Callable, Optional

from transitions import Machine, MachineError

from artplan.lib.constants import (
    STATE_ALLOCATED,
    STATE_COMMITTED,
    STATE_DRAFT,
    STATE_OPTIMIZED,
    STATE_VALIDATED,
)
from artplan.lib.errors import InvalidTransition

logger = logging.getLogger(__name__)


STATES = [
    STATE_DRAFT,
    STATE_ALLOCATED,
    STATE_VALIDATED,
    STATE_OPTIMIZED,
    STATE_COMMITTED,
]

TRANSITIONS = [
    {"trigger": "allocate", "source": STATE_DRAFT, "dest": STATE_ALLOCATED},
    {"trigger": "validate", "source": STATE_ALLOCATED, "dest": STATE_VALIDATED},
    {"trigger": "optimize", "source": STATE_VALIDATED, "dest": STATE_OPTIMIZED},
    {"trigger": "commit", "source": STATE_OPTIMIZED, "dest": STATE_COMMITTED},

    # Re-run loop, only while passes remain
    {
        "trigger": "reallocate",
        "source": STATE_OPTIMIZED,
        "dest": STATE_ALLOCATED,
        "conditions": "has_passes_left",
        "after": "count_pass",
    },
]


class PlanFSM:
    """Lifecycle of one ARTPlan.

    Wraps the transitions library with plan-specific rules:
    - Illegal or exhausted triggers raise InvalidTransition
    - Every transition is logged and reported to ``on_transition``
    """

    def __init__(self, plan_key: str, max_passes: int = 3, initial: str = STATE_DRAFT,
                 passes: int = 0,
                 on_transition: Optional[Callable[[str, str, str], None]] = None):
        """Initialize FSM for a plan.

        Args:
            plan_key: "{pi_id}/{team_id}", used in log lines
            max_passes: how many times optimized -> allocated may be taken
            initial: starting state, e.g. when resuming a persisted plan
            passes: re-run passes already taken
            on_transition: optional callback(from_state, to_state, trigger)
        """
        self.plan_key = plan_key
        self.max_passes = max_passes
        self.passes = passes
        self.on_transition = on_transition

        if initial not in STATES:
            logger.warning(f"[FSM] {plan_key}: Unknown state '{initial}', defaulting to '{STATE_DRAFT}'")
            initial = STATE_DRAFT

        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial=initial,
            auto_transitions=False,
            send_event=True,
            after_state_change="on_state_change",
        )

    def has_passes_left(self, event) -> bool:
        return self.passes < self.max_passes

    def count_pass(self, event) -> None:
        self.passes += 1

    def on_state_change(self, event) -> None:
        from_state = event.transition.source
        to_state = event.transition.dest
        trigger = event.event.name

        logger.info(f"[FSM] {self.plan_key}: {from_state} -> {to_state} ({trigger})")

        if self.on_transition:
            self.on_transition(from_state, to_state, trigger)

    def fire(self, trigger: str) -> str:
        """Run a trigger by name, raising InvalidTransition when it cannot fire."""
        if trigger not in self.available_triggers():
            raise InvalidTransition(self.state, trigger, self.plan_key)
        try:
            moved = self.trigger(trigger)
        except MachineError as e:
            raise InvalidTransition(self.state, trigger, self.plan_key) from e
        if not moved:
            raise InvalidTransition(self.state, trigger, self.plan_key)
        return self.state

    def can(self, trigger: str) -> bool:
        """Check if a trigger can be executed in current state (conditions included)."""
        if trigger not in self.available_triggers():
            return False
        if trigger == "reallocate":
            return self.passes < self.max_passes
        return True

    def available_triggers(self) -> list[str]:
        """Triggers defined for the current state, before conditions are checked."""
        return self.machine.get_triggers(self.state)

    @property
    def is_terminal(self) -> bool:
        return self.state == STATE_COMMITTED
