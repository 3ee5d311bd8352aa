"""File-system issue store.

Issues live at `<issues_dir>/<id>.md`. Writes go to `<file>.tmp` and are
renamed into place so readers never see a partial record. Locks are PID
records under `<barf_dir>/` (see barf.runner.locking); stale ones are swept
when the store is constructed.
"""

import logging
from dataclasses import replace
from pathlib import Path

from barf.errors import IssueNotFound, StoreError
from barf.issue.model import Issue, IssueState, parse_issue, serialize_issue
from barf.issue.store import IssueStore
from barf.lib.validate import ValidationError
from barf.runner import locking

logger = logging.getLogger(__name__)


class LocalIssueStore(IssueStore):
    def __init__(self, issues_dir: Path, barf_dir: Path):
        self.issues_dir = Path(issues_dir)
        self.barf_dir = Path(barf_dir)
        self.issues_dir.mkdir(parents=True, exist_ok=True)
        self.barf_dir.mkdir(parents=True, exist_ok=True)
        locking.sweep_stale_locks(self.barf_dir)

    def issue_path(self, issue_id: str) -> Path:
        return self.issues_dir / f"{issue_id}.md"

    def fetch(self, issue_id: str) -> Issue:
        path = self.issue_path(issue_id)
        try:
            content = path.read_text()
        except FileNotFoundError:
            raise IssueNotFound(issue_id) from None
        except OSError as e:
            raise StoreError(f"Failed to read issue {issue_id}: {e}") from e

        try:
            return parse_issue(content)
        except (ValueError, ValidationError) as e:
            raise StoreError(f"Issue {issue_id} is malformed: {e}") from e

    def list_issues(self, state: IssueState | None = None) -> list[Issue]:
        try:
            paths = sorted(self.issues_dir.glob("*.md"))
        except OSError as e:
            raise StoreError(f"Failed to list {self.issues_dir}: {e}") from e

        issues = []
        for path in paths:
            if path.name.startswith("."):
                continue
            try:
                issue = parse_issue(path.read_text())
            except (OSError, ValueError, ValidationError) as e:
                logger.warning(f"Skipping unreadable issue file {path.name}: {e}")
                continue
            if state is None or issue.state == state:
                issues.append(issue)
        return issues

    def _next_id(self) -> str:
        max_id = 0
        for issue in self.list_issues():
            prefix = issue.id.split("-")[0]
            if prefix.isdigit():
                max_id = max(max_id, int(prefix))
        return f"{max_id + 1:03d}"

    def _save(self, issue: Issue) -> None:
        target = self.issue_path(issue.id)
        tmp = target.with_name(target.name + ".tmp")
        try:
            tmp.write_text(serialize_issue(issue))
            tmp.replace(target)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise StoreError(f"Failed to write issue {issue.id}: {e}") from e

    def create(self, title: str, body: str = "", parent: str = "") -> Issue:
        issue = Issue(id=self._next_id(), title=title, parent=parent, body=body)
        self._save(issue)
        logger.info(f"Created issue {issue.id}: {title}")
        return issue

    def _update(self, issue_id: str, **fields) -> Issue:
        current = self.fetch(issue_id)
        try:
            updated = replace(current, **fields)
        except TypeError as e:
            raise StoreError(f"Unknown issue field: {e}") from None
        self._save(updated)
        return updated

    def delete(self, issue_id: str) -> None:
        try:
            self.issue_path(issue_id).unlink(missing_ok=True)
        except OSError as e:
            raise StoreError(f"Failed to delete issue {issue_id}: {e}") from e

    def lock(self, issue_id: str, mode: str = "build") -> None:
        state = self.fetch(issue_id).state
        info = locking.new_lock_info(state.value, mode)
        try:
            locking.acquire_lock(self.barf_dir, issue_id, info)
        except OSError as e:
            raise StoreError(f"Failed to lock issue {issue_id}: {e}") from e

    def unlock(self, issue_id: str) -> None:
        locking.release_lock(self.barf_dir, issue_id)

    def is_locked(self, issue_id: str) -> bool:
        return locking.is_locked(self.barf_dir, issue_id)
