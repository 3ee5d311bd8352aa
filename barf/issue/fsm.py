"""Issue state machine using transitions library.

The TRANSITIONS table is the single source of truth for which state changes
are legal. Stores call validate_transition() (or drive an IssueFSM) before
writing a new state; nothing writes `state` directly.

Usage:
    from barf.issue.fsm import IssueFSM, validate_transition

    validate_transition(IssueState.PLANNED, IssueState.IN_PROGRESS)

    fsm = IssueFSM("042", IssueState.PLANNED)
    fsm.start_build()
    fsm.complete()
"""

import logging
from typing import Callable

from transitions import Machine, MachineError

from barf.errors import InvalidTransition
from barf.issue.model import IssueState

logger = logging.getLogger(__name__)


STATES = [s.value for s in IssueState]

# Transitions defined as (trigger, source, dest)
# Each trigger becomes a method on the FSM
TRANSITIONS = [
    # Triage accepted the issue as well specified
    {"trigger": "groom", "source": "NEW", "dest": "GROOMED"},

    # Plan artifact written
    {"trigger": "plan", "source": "NEW", "dest": "PLANNED"},
    {"trigger": "plan", "source": "GROOMED", "dest": "PLANNED"},
    {"trigger": "plan", "source": "STUCK", "dest": "PLANNED"},

    # Build loop started
    {"trigger": "start_build", "source": "NEW", "dest": "IN_PROGRESS"},
    {"trigger": "start_build", "source": "GROOMED", "dest": "IN_PROGRESS"},
    {"trigger": "start_build", "source": "PLANNED", "dest": "IN_PROGRESS"},
    {"trigger": "start_build", "source": "STUCK", "dest": "IN_PROGRESS"},

    # Acceptance criteria met and test gate passed
    {"trigger": "complete", "source": "IN_PROGRESS", "dest": "COMPLETED"},

    # Verification checks passed
    {"trigger": "verify", "source": "COMPLETED", "dest": "VERIFIED"},

    # Agent reported a blocker
    {"trigger": "block", "source": "NEW", "dest": "STUCK"},
    {"trigger": "block", "source": "GROOMED", "dest": "STUCK"},
    {"trigger": "block", "source": "PLANNED", "dest": "STUCK"},
    {"trigger": "block", "source": "IN_PROGRESS", "dest": "STUCK"},

    # Work delegated to child issues
    {"trigger": "split", "source": "NEW", "dest": "SPLIT"},
    {"trigger": "split", "source": "GROOMED", "dest": "SPLIT"},
    {"trigger": "split", "source": "PLANNED", "dest": "SPLIT"},
    {"trigger": "split", "source": "IN_PROGRESS", "dest": "SPLIT"},
    {"trigger": "split", "source": "STUCK", "dest": "SPLIT"},
]


# Pre-computed lookup: (source, dest) -> trigger name
def _build_trigger_lookup() -> dict[tuple[str, str], str]:
    """Build lookup from (source, dest) -> trigger name."""
    lookup: dict[tuple[str, str], str] = {}
    for t in TRANSITIONS:
        key = (t["source"], t["dest"])
        if key not in lookup:
            lookup[key] = t["trigger"]
    return lookup


TRIGGER_FOR = _build_trigger_lookup()


def _value(state: IssueState | str) -> str:
    return state.value if isinstance(state, IssueState) else state


def validate_transition(from_state: IssueState | str, to_state: IssueState | str, issue_id: str = "") -> str:
    """Check a proposed transition against the table.

    Pure: no side effects, safe to call repeatedly.

    Returns:
        The trigger name that performs the transition.

    Raises:
        InvalidTransition: if the (from, to) pair is not in the table
    """
    src, dest = _value(from_state), _value(to_state)
    trigger = TRIGGER_FOR.get((src, dest))
    if trigger is None:
        raise InvalidTransition(src, dest, issue_id, [s.value for s in allowed_targets(src)])
    return trigger


def can_transition(from_state: IssueState | str, to_state: IssueState | str) -> bool:
    """Return True if the transition is listed in the table."""
    return (_value(from_state), _value(to_state)) in TRIGGER_FOR


def allowed_targets(from_state: IssueState | str) -> list[IssueState]:
    """States reachable in one step from from_state."""
    src = _value(from_state)
    return [IssueState(dest) for (s, dest) in TRIGGER_FOR if s == src]


class IssueFSM:
    """State machine for one issue.

    Wraps the transitions library with issue-specific logic:
    - Starts from the issue's current persisted state
    - Logs all transitions
    - Reports each change through on_transition so the caller can persist it
    """

    def __init__(
        self,
        issue_id: str,
        initial: IssueState | str,
        on_transition: Callable[[str, str, str], None] | None = None,
    ):
        """Initialize FSM for an issue.

        Args:
            issue_id: Issue identifier (for logging and errors)
            initial: Current state of the issue
            on_transition: Optional callback(from_state, to_state, trigger) called after transitions
        """
        self.issue_id = issue_id
        self.on_transition = on_transition

        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial=_value(initial),
            auto_transitions=False,  # Only explicit transitions
            send_event=True,
            after_state_change="on_state_change",
        )

    @property
    def issue_state(self) -> IssueState:
        return IssueState(self.state)

    def on_state_change(self, event) -> None:
        """Callback after any state transition."""
        from_state = event.transition.source
        to_state = event.transition.dest
        trigger = event.event.name

        logger.info(f"[FSM] {self.issue_id}: {from_state} -> {to_state} ({trigger})")

        if self.on_transition:
            self.on_transition(from_state, to_state, trigger)

    def move_to(self, to_state: IssueState | str) -> None:
        """Fire whichever trigger leads from the current state to to_state.

        Raises:
            InvalidTransition: if no listed transition reaches to_state
        """
        trigger = validate_transition(self.state, to_state, self.issue_id)
        try:
            getattr(self, trigger)()
        except MachineError as e:
            raise InvalidTransition(self.state, _value(to_state), self.issue_id) from e
