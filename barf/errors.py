"""
Exception types for barf.

Stores, the iteration engine and the config loader raise these. Verification
failures are not errors: they come back as VerifyResult data.
"""

from datetime import datetime


class BarfError(Exception):
    """Base class for all barf errors."""
    pass


class InvalidTransition(BarfError):
    """Raised when attempting an invalid issue state transition."""

    def __init__(self, from_state: str, to_state: str, issue_id: str = "", allowed: list[str] | None = None):
        self.from_state = from_state
        self.to_state = to_state
        self.issue_id = issue_id
        self.allowed = allowed
        message = f"Invalid transition: {from_state} -> {to_state}"
        if issue_id:
            message += f" (issue: {issue_id})"
        if allowed is not None:
            message += f"; allowed from {from_state}: {', '.join(allowed) or 'none'}"
        super().__init__(message)


class StoreError(BarfError):
    """An issue store operation failed (I/O, subprocess, remote API)."""
    pass


class IssueNotFound(StoreError):
    """The requested issue does not exist in the store."""

    def __init__(self, issue_id: str):
        self.issue_id = issue_id
        super().__init__(f"Issue not found: {issue_id}")


class IssueLocked(BarfError):
    """Another live process holds the lock for this issue."""

    def __init__(self, issue_id: str, holder_pid: int | None = None):
        self.issue_id = issue_id
        self.holder_pid = holder_pid
        holder = f" by pid {holder_pid}" if holder_pid else ""
        super().__init__(f"Issue {issue_id} is already locked{holder}")


class RateLimited(BarfError):
    """The agent service rejected the turn because of rate limiting.

    resets_at is a unix timestamp (seconds) when known.
    """

    def __init__(self, resets_at: int | None = None):
        self.resets_at = resets_at
        if resets_at:
            when = datetime.fromtimestamp(resets_at).strftime("%H:%M:%S")
        else:
            when = "soon"
        super().__init__(f"Rate limited until {when}")


class ContextOverflow(BarfError):
    """Main-context token usage reached the interrupt threshold."""

    def __init__(self, tokens: int):
        self.tokens = tokens
        super().__init__(f"Context threshold exceeded: {tokens} tokens")


class ConfigError(BarfError):
    """Configuration is missing or invalid."""
    pass
