"""
Issue data model and on-disk record format.

An issue file looks like:

    ---
    id=001
    title=Add login page
    state=NEW
    parent=
    children=
    split_count=0
    ---

    ## Description
    ...

Optional fields (needs_interview, is_verify_fix, verify_exhausted,
context_usage_percent) are written only when set, so "unset" and "false"
survive a round trip as different values.
"""

import re
from dataclasses import dataclass, field, fields, asdict
from enum import Enum

from barf.lib.validate import validate, ValidationError


class IssueState(Enum):
    """All valid issue states.

    Values match the FSM state strings and the persisted `state=` value.
    """

    NEW = "NEW"
    GROOMED = "GROOMED"
    PLANNED = "PLANNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    VERIFIED = "VERIFIED"

    # Side states
    STUCK = "STUCK"
    SPLIT = "SPLIT"


@dataclass
class Issue:
    """A unit of agent-driven work."""
    id: str
    title: str
    state: IssueState = IssueState.NEW
    parent: str = ""
    children: list[str] = field(default_factory=list)
    split_count: int = 0
    force_split: bool = False
    context_usage_percent: int | None = None
    needs_interview: bool | None = None  # None = not yet triaged
    verify_count: int = 0
    is_verify_fix: bool | None = None
    verify_exhausted: bool | None = None
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_duration_seconds: int = 0
    total_iterations: int = 0
    run_count: int = 0
    body: str = ""

    def to_record(self) -> dict:
        """Plain dict form (state as string, unset optionals dropped)."""
        data = asdict(self)
        data["state"] = self.state.value
        return {k: v for k, v in data.items() if v is not None}


# Persisted key order; body is not a header key
HEADER_KEYS = [f.name for f in fields(Issue) if f.name != "body"]

OPTIONAL_KEYS = {"context_usage_percent", "needs_interview", "is_verify_fix", "verify_exhausted"}
BOOL_KEYS = {"force_split", "needs_interview", "is_verify_fix", "verify_exhausted"}
INT_KEYS = {
    "split_count",
    "context_usage_percent",
    "verify_count",
    "total_input_tokens",
    "total_output_tokens",
    "total_duration_seconds",
    "total_iterations",
    "run_count",
}

_RECORD_PATTERN = re.compile(r'^---\n(.*?)\n---\n(.*)$', re.DOTALL)

_CRITERIA_PATTERN = re.compile(r'^## Acceptance Criteria[ \t]*\n(.*?)(?=^## |\Z)', re.DOTALL | re.MULTILINE)
UNCHECKED_ITEM = "- [ ]"


def _format_value(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return ",".join(value)
    if isinstance(value, IssueState):
        return value.value
    return str(value)


def _parse_value(key: str, raw: str):
    if key == "children":
        return [c for c in raw.split(",") if c]
    if key in BOOL_KEYS:
        if raw not in ("true", "false"):
            raise ValueError(f"Invalid boolean for {key}: '{raw}'")
        return raw == "true"
    if key in INT_KEYS:
        try:
            return int(raw)
        except ValueError:
            raise ValueError(f"Invalid integer for {key}: '{raw}'") from None
    return raw


def format_fields(issue: Issue, keys: list[str]) -> str:
    """key=value lines for the given keys; unset optionals are left out."""
    lines = []
    for key in keys:
        value = getattr(issue, key)
        if value is None and key in OPTIONAL_KEYS:
            continue
        # Keep the header one line per key
        text = _format_value(value).replace("\n", " ")
        lines.append(f"{key}={text}")
    return "\n".join(lines)


def parse_fields(text: str, keys: list[str]) -> dict:
    """Parse key=value lines, keeping only the given keys.

    Raises:
        ValueError: if a value is malformed
    """
    data: dict = {}
    for line in text.split("\n"):
        key, sep, raw = line.partition("=")
        if not sep or key not in keys:
            continue
        data[key] = _parse_value(key, raw)
    return data


def serialize_issue(issue: Issue) -> str:
    """Serialize an Issue to its record format. Round-trips with parse_issue."""
    header = format_fields(issue, HEADER_KEYS)
    return f"---\n{header}\n---\n\n{issue.body}\n"


def parse_issue(content: str) -> Issue:
    """Parse a record string into a validated Issue.

    Raises:
        ValueError: if the header block is missing or a value is malformed
        ValidationError: if the parsed record does not match the issue schema
    """
    match = _RECORD_PATTERN.match(content)
    if not match:
        raise ValueError("Invalid issue format: missing header delimiters")
    header, body = match.groups()

    data = parse_fields(header, HEADER_KEYS)

    if body.startswith("\n"):
        body = body[1:]
    if body.endswith("\n"):
        body = body[:-1]
    data["body"] = body

    # Hand-written records often leave these out
    data.setdefault("parent", "")
    data.setdefault("children", [])
    data.setdefault("split_count", 0)

    validate(data, "issue")
    data["state"] = IssueState(data["state"])
    return Issue(**data)


def parse_acceptance_criteria(body: str) -> bool:
    """Return True if every acceptance criteria checkbox is ticked.

    Scans the `## Acceptance Criteria` section for `- [ ]` items. A body
    without the section counts as satisfied.
    """
    section = _CRITERIA_PATTERN.search(body)
    if not section:
        return True
    return UNCHECKED_ITEM not in section.group(1)


__all__ = [
    "Issue",
    "IssueState",
    "ValidationError",
    "parse_issue",
    "serialize_issue",
    "format_fields",
    "parse_fields",
    "parse_acceptance_criteria",
]
