"""
Issue module for barf.

Issue model and record format, the lifecycle state machine, and the
local-file and GitHub issue stores.
"""

from barf.issue.model import Issue, IssueState, parse_issue, serialize_issue
from barf.issue.fsm import IssueFSM, validate_transition, can_transition
from barf.issue.store import IssueStore
from barf.issue.local import LocalIssueStore
from barf.issue.github import GitHubIssueStore
from barf.issue.factory import create_issue_store

__all__ = [
    "Issue",
    "IssueState",
    "parse_issue",
    "serialize_issue",
    "IssueFSM",
    "validate_transition",
    "can_transition",
    "IssueStore",
    "LocalIssueStore",
    "GitHubIssueStore",
    "create_issue_store",
]
