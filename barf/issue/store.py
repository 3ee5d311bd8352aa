"""Issue store contract.

Concrete stores: LocalIssueStore (files under ISSUES_DIR, PID lock records
under BARF_DIR) and GitHubIssueStore (GitHub issues through the gh CLI).

A store implements the eight I/O methods. write(), transition(),
auto_select() and check_acceptance_criteria() are shared by every store;
only transition() may change an issue's state.
"""

import logging
from abc import ABC, abstractmethod

from barf.errors import StoreError
from barf.issue.fsm import IssueFSM
from barf.issue.model import Issue, IssueState, parse_acceptance_criteria

logger = logging.getLogger(__name__)

# Highest priority first
AUTO_SELECT_PRIORITY: dict[str, list[IssueState]] = {
    "plan": [IssueState.GROOMED, IssueState.NEW],
    "build": [IssueState.IN_PROGRESS, IssueState.PLANNED, IssueState.GROOMED, IssueState.NEW],
}


class IssueStore(ABC):
    """Persistence for issues plus per-issue exclusive locks."""

    # ── I/O, implemented per store ───────────────────────────────────────

    @abstractmethod
    def fetch(self, issue_id: str) -> Issue:
        """Return one issue.

        Raises:
            IssueNotFound: if the issue does not exist
            StoreError: on I/O failure or an unparseable record
        """

    @abstractmethod
    def list_issues(self, state: IssueState | None = None) -> list[Issue]:
        """Return all issues, optionally only those in `state`."""

    @abstractmethod
    def create(self, title: str, body: str = "", parent: str = "") -> Issue:
        """Create a NEW issue and return it with its assigned id."""

    @abstractmethod
    def _update(self, issue_id: str, **fields) -> Issue:
        """Persist a subset of fields, state included, and return the updated issue."""

    @abstractmethod
    def delete(self, issue_id: str) -> None:
        """Permanently delete an issue."""

    @abstractmethod
    def lock(self, issue_id: str, mode: str = "build") -> None:
        """Acquire the exclusive lock for an issue.

        Raises:
            IssueLocked: if another live process holds it
        """

    @abstractmethod
    def unlock(self, issue_id: str) -> None:
        """Release the lock. Never raises; unlocking an unlocked issue is a no-op."""

    @abstractmethod
    def is_locked(self, issue_id: str) -> bool:
        """Return True if any live process holds the lock."""

    # ── Shared logic ─────────────────────────────────────────────────────

    def write(self, issue_id: str, **fields) -> Issue:
        """Overwrite a subset of fields and return the updated issue.

        `id` and `state` cannot be written here; state changes go through
        transition() so the table is always checked.

        Raises:
            StoreError: if `id` or `state` is among the fields
        """
        reject_protected_writes(fields)
        return self._update(issue_id, **fields)

    def transition(self, issue_id: str, to_state: IssueState, reason: str = "") -> Issue:
        """Validate and apply a state transition.

        Raises:
            InvalidTransition: if the move is not in the transition table
        """
        issue = self.fetch(issue_id)
        reason_str = f" ({reason})" if reason else ""

        fsm = IssueFSM(issue_id, issue.state)
        fsm.move_to(to_state)

        logger.info(f"[STATE] {issue_id}: {issue.state.value} -> {to_state.value}{reason_str}")
        return self._update(issue_id, state=fsm.issue_state)

    def auto_select(self, mode: str) -> Issue | None:
        """Pick the highest-priority unlocked issue for a mode.

        Issues waiting for an interview (needs_interview=True) are never picked.
        Returns None if nothing is eligible.
        """
        if mode not in AUTO_SELECT_PRIORITY:
            raise ValueError(f"Unknown auto-select mode: {mode}")

        available = [
            issue for issue in self.list_issues()
            if issue.needs_interview is not True and not self.is_locked(issue.id)
        ]
        for state in AUTO_SELECT_PRIORITY[mode]:
            for issue in available:
                if issue.state == state:
                    return issue
        return None

    def check_acceptance_criteria(self, issue_id: str) -> bool:
        """True if the issue has no unchecked acceptance criteria."""
        return parse_acceptance_criteria(self.fetch(issue_id).body)


def reject_protected_writes(fields: dict) -> None:
    """Guard for write(): ids are immutable and state moves only by transition."""
    if "id" in fields:
        raise StoreError("Issue id cannot be changed")
    if "state" in fields:
        raise StoreError("Issue state changes only through transition()")
