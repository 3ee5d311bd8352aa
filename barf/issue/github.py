"""
GitHub issue store.

Maps the barf lifecycle onto GitHub issues through the gh CLI:
- state is a `barf:*` label; a closed issue reads as COMPLETED
- the lock is the `barf:locked` label, checked before it is added
- issues cannot be deleted through the API

Fields GitHub has no place for (parent, children, counters, ...) live in a
hidden block at the end of the issue body:

    <!-- barf
    split_count=1
    verify_count=2
    -->

The block uses the same key=value encoding as local issue records.
"""

import json
import logging
import re
import subprocess
from dataclasses import replace
from typing import Callable
from urllib.parse import quote

from barf.errors import IssueLocked, IssueNotFound, StoreError
from barf.issue.model import HEADER_KEYS, Issue, IssueState, format_fields, parse_fields
from barf.issue.store import IssueStore

logger = logging.getLogger(__name__)

# Timeout for GitHub CLI operations (seconds)
GH_TIMEOUT_SECONDS = 30

LOCK_LABEL = "barf:locked"

STATE_TO_LABEL = {
    IssueState.NEW: "barf:new",
    IssueState.GROOMED: "barf:groomed",
    IssueState.PLANNED: "barf:planned",
    IssueState.IN_PROGRESS: "barf:in-progress",
    IssueState.STUCK: "barf:stuck",
    IssueState.SPLIT: "barf:split",
    IssueState.COMPLETED: "barf:completed",
    IssueState.VERIFIED: "barf:verified",
}
LABEL_TO_STATE = {label: state for state, label in STATE_TO_LABEL.items()}

# id, title and state have native GitHub homes
META_KEYS = [key for key in HEADER_KEYS if key not in ("id", "title", "state")]

_META_PATTERN = re.compile(r'\n*<!-- barf\n(.*?)\n?-->\s*\Z', re.DOTALL)

RunFn = Callable[..., subprocess.CompletedProcess]


def render_body(issue: Issue) -> str:
    """Issue body with the metadata block appended."""
    return f"{issue.body}\n\n<!-- barf\n{format_fields(issue, META_KEYS)}\n-->"


def split_body(raw: str) -> tuple[str, dict]:
    """Separate the visible body from its metadata block.

    A missing or malformed block yields the defaults.
    """
    match = _META_PATTERN.search(raw)
    if not match:
        return raw, {}
    try:
        meta = parse_fields(match.group(1), META_KEYS)
    except ValueError as e:
        logger.warning(f"[GITHUB] Ignoring malformed barf metadata: {e}")
        meta = {}
    return raw[:match.start()], meta


def gh_to_issue(gh: dict) -> Issue:
    """Convert a GitHub issue API payload into an Issue."""
    labels = [label["name"] for label in gh.get("labels", [])]
    state = IssueState.NEW
    if gh.get("state") == "closed":
        state = IssueState.COMPLETED
    else:
        for name in labels:
            if name in LABEL_TO_STATE:
                state = LABEL_TO_STATE[name]
                break
    # Closed issues that passed verification keep their label
    if gh.get("state") == "closed" and STATE_TO_LABEL[IssueState.VERIFIED] in labels:
        state = IssueState.VERIFIED

    body, meta = split_body(gh.get("body") or "")
    return Issue(
        id=str(gh["number"]),
        title=gh.get("title", ""),
        state=state,
        body=body,
        **meta,
    )


class GitHubIssueStore(IssueStore):
    def __init__(self, repo: str, run_fn: RunFn | None = None):
        """
        Args:
            repo: owner/name slug
            run_fn: subprocess.run-compatible callable (injected in tests)
        """
        self.repo = repo
        self._run = run_fn or subprocess.run
        self._authenticated = False

    def _gh(self, args: list[str]) -> subprocess.CompletedProcess:
        cmd = ["gh", *args]
        try:
            return self._run(
                cmd,
                capture_output=True,
                text=True,
                timeout=GH_TIMEOUT_SECONDS,
            )
        except subprocess.TimeoutExpired:
            raise StoreError(f"gh timed out after {GH_TIMEOUT_SECONDS}s: {' '.join(args[:3])}") from None
        except OSError as e:
            raise StoreError(f"Could not run gh: {e}") from e

    def _ensure_auth(self) -> None:
        if self._authenticated:
            return
        result = self._gh(["auth", "status"])
        if result.returncode != 0:
            raise StoreError(f"gh auth failed, run: gh auth login\n{result.stderr}")
        self._authenticated = True

    def _api(self, args: list[str], issue_id: str | None = None):
        self._ensure_auth()
        result = self._gh(["api", *args])
        if result.returncode != 0:
            if issue_id and "Not Found" in (result.stderr or ""):
                raise IssueNotFound(issue_id)
            raise StoreError(f"gh api error: {result.stderr.strip()}")
        if not result.stdout.strip():
            return None
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise StoreError(f"gh api returned invalid JSON: {e}") from e

    def _issue_url(self, issue_id: str) -> str:
        return f"/repos/{self.repo}/issues/{issue_id}"

    def _raw(self, issue_id: str) -> dict:
        return self._api([self._issue_url(issue_id)], issue_id)

    def fetch(self, issue_id: str) -> Issue:
        return gh_to_issue(self._raw(issue_id))

    def list_issues(self, state: IssueState | None = None) -> list[Issue]:
        query = f"/repos/{self.repo}/issues?state=open&per_page=100"
        if state is not None:
            query += f"&labels={quote(STATE_TO_LABEL[state])}"
        payload = self._api([query]) or []
        # The issues endpoint also returns pull requests
        issues = [gh_to_issue(gh) for gh in payload if "pull_request" not in gh]
        if state is not None:
            issues = [i for i in issues if i.state == state]
        return issues

    def create(self, title: str, body: str = "", parent: str = "") -> Issue:
        if parent:
            body = f"Parent: #{parent}\n\n{body}"
        draft = Issue(id="", title=title, parent=parent, body=body)
        gh = self._api([
            "--method", "POST", f"/repos/{self.repo}/issues",
            "-f", f"title={title}",
            "-f", f"body={render_body(draft)}",
            "-f", f"labels[]={STATE_TO_LABEL[IssueState.NEW]}",
        ])
        issue = gh_to_issue(gh)
        logger.info(f"Created GitHub issue #{issue.id}: {title}")
        return issue

    def _update(self, issue_id: str, **fields) -> Issue:
        current = self.fetch(issue_id)
        try:
            updated = replace(current, **fields)
        except TypeError as e:
            raise StoreError(f"Unknown issue field: {e}") from None

        if updated.state != current.state:
            self._api([
                "--method", "DELETE",
                f"{self._issue_url(issue_id)}/labels/{quote(STATE_TO_LABEL[current.state])}",
            ])
            self._api([
                "--method", "POST", f"{self._issue_url(issue_id)}/labels",
                "-f", f"labels[]={STATE_TO_LABEL[updated.state]}",
            ])

        patch_args = [
            "--method", "PATCH", self._issue_url(issue_id),
            "-f", f"title={updated.title}",
            "-f", f"body={render_body(updated)}",
        ]
        if updated.state in (IssueState.COMPLETED, IssueState.VERIFIED):
            patch_args += ["-f", "state=closed"]
        return gh_to_issue(self._api(patch_args, issue_id))

    def delete(self, issue_id: str) -> None:
        raise StoreError("GitHub issues cannot be deleted via the API. Transition to COMPLETED instead.")

    def lock(self, issue_id: str, mode: str = "build") -> None:
        # Two processes inside the same round trip can both pass this check
        if self.is_locked(issue_id):
            raise IssueLocked(issue_id)
        self._api([
            "--method", "POST", f"{self._issue_url(issue_id)}/labels",
            "-f", f"labels[]={LOCK_LABEL}",
        ], issue_id)
        logger.debug(f"[LOCK] #{issue_id} labelled {LOCK_LABEL} for {mode}")

    def unlock(self, issue_id: str) -> None:
        try:
            self._api([
                "--method", "DELETE",
                f"{self._issue_url(issue_id)}/labels/{quote(LOCK_LABEL)}",
            ])
        except StoreError as e:
            logger.warning(f"[LOCK] Failed to remove {LOCK_LABEL} from #{issue_id}: {e}")

    def is_locked(self, issue_id: str) -> bool:
        labels = [label["name"] for label in self._raw(issue_id).get("labels", [])]
        return LOCK_LABEL in labels
