"""Tests for barf.issue.fsm module."""

import itertools

import pytest

from barf.errors import InvalidTransition
from barf.issue.fsm import (
    IssueFSM,
    STATES,
    TRANSITIONS,
    TRIGGER_FOR,
    allowed_targets,
    can_transition,
    validate_transition,
)
from barf.issue.model import IssueState

S = IssueState

EXPECTED_EDGES = {
    (S.NEW, S.GROOMED), (S.NEW, S.PLANNED), (S.NEW, S.IN_PROGRESS), (S.NEW, S.STUCK), (S.NEW, S.SPLIT),
    (S.GROOMED, S.PLANNED), (S.GROOMED, S.IN_PROGRESS), (S.GROOMED, S.STUCK), (S.GROOMED, S.SPLIT),
    (S.PLANNED, S.IN_PROGRESS), (S.PLANNED, S.STUCK), (S.PLANNED, S.SPLIT),
    (S.IN_PROGRESS, S.COMPLETED), (S.IN_PROGRESS, S.STUCK), (S.IN_PROGRESS, S.SPLIT),
    (S.STUCK, S.PLANNED), (S.STUCK, S.IN_PROGRESS), (S.STUCK, S.SPLIT),
    (S.COMPLETED, S.VERIFIED),
}


class TestFSMStates:
    """Tests for FSM state definitions."""

    def test_all_states_defined(self):
        assert set(STATES) == {s.value for s in IssueState}

    def test_trigger_lookup_covers_table(self):
        assert {(IssueState(a), IssueState(b)) for a, b in TRIGGER_FOR} == EXPECTED_EDGES
        assert len(TRANSITIONS) == len(EXPECTED_EDGES)


class TestValidateTransition:
    """validate_transition accepts exactly the listed edges."""

    @pytest.mark.parametrize("src,dest", sorted(EXPECTED_EDGES, key=lambda e: (e[0].value, e[1].value)))
    def test_listed_edges_pass(self, src, dest):
        assert validate_transition(src, dest) == TRIGGER_FOR[(src.value, dest.value)]
        # Pure: calling again gives the same answer
        assert validate_transition(src, dest) == TRIGGER_FOR[(src.value, dest.value)]

    def test_every_unlisted_pair_fails(self):
        for src, dest in itertools.product(IssueState, IssueState):
            if (src, dest) in EXPECTED_EDGES:
                continue
            with pytest.raises(InvalidTransition):
                validate_transition(src, dest)

    def test_self_transition_invalid(self):
        assert not can_transition(S.PLANNED, S.PLANNED)

    def test_terminal_states_have_no_targets(self):
        assert allowed_targets(S.SPLIT) == []
        assert allowed_targets(S.VERIFIED) == []

    def test_completed_only_to_verified(self):
        assert allowed_targets(S.COMPLETED) == [S.VERIFIED]

    def test_error_names_states_and_issue(self):
        with pytest.raises(InvalidTransition) as exc:
            validate_transition(S.NEW, S.COMPLETED, "042")
        assert exc.value.from_state == "NEW"
        assert exc.value.to_state == "COMPLETED"
        assert "042" in str(exc.value)

    def test_error_lists_allowed_targets(self):
        with pytest.raises(InvalidTransition) as exc:
            validate_transition(S.COMPLETED, S.PLANNED)
        assert exc.value.allowed == ["VERIFIED"]
        assert "allowed from COMPLETED: VERIFIED" in str(exc.value)

    def test_error_for_terminal_state(self):
        with pytest.raises(InvalidTransition, match="allowed from SPLIT: none"):
            validate_transition(S.SPLIT, S.NEW)

    def test_accepts_plain_strings(self):
        assert validate_transition("PLANNED", "IN_PROGRESS") == "start_build"


class TestIssueFSM:
    """Tests for the transitions-backed IssueFSM."""

    def test_happy_path(self):
        fsm = IssueFSM("001", S.NEW)
        fsm.groom()
        fsm.plan()
        fsm.start_build()
        fsm.complete()
        fsm.verify()
        assert fsm.issue_state == S.VERIFIED

    def test_move_to_fires_matching_trigger(self):
        calls = []
        fsm = IssueFSM("001", S.PLANNED, on_transition=lambda *args: calls.append(args))
        fsm.move_to(S.IN_PROGRESS)
        assert fsm.issue_state == S.IN_PROGRESS
        assert calls == [("PLANNED", "IN_PROGRESS", "start_build")]

    def test_move_to_invalid_raises_and_keeps_state(self):
        fsm = IssueFSM("001", S.NEW)
        with pytest.raises(InvalidTransition):
            fsm.move_to(S.VERIFIED)
        assert fsm.issue_state == S.NEW
