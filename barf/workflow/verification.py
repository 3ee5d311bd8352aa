"""
Post-completion verification.

After the engine marks an issue COMPLETED, verify_issue() runs the check
list (build, check, test) and moves the issue on:

- all checks pass              -> VERIFIED
- failures, retries remaining  -> one fix sub-issue, parent verify_count += 1
- failures, retries exhausted  -> verify_exhausted=true, stays COMPLETED

Check failures are data (VerifyResult), not exceptions. Every check runs,
in order, even after an earlier one fails.

The check list can be overridden with `<BARF_DIR>/checks.yaml`:

    checks:
      - name: test
        command: pytest -q
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from barf.issue.model import IssueState
from barf.issue.store import IssueStore
from barf.lib.config import Config
from barf.lib.validate import validate, ValidationError
from barf.workflow.pre_complete import RunFn, run_shell

logger = logging.getLogger(__name__)

CHECKS_FILENAME = "checks.yaml"

# Keep fix issue bodies readable
MAX_OUTPUT_CHARS = 4000


@dataclass
class VerifyCheck:
    name: str
    command: str


@dataclass
class VerifyFailure:
    check: str
    stdout: str
    stderr: str
    exit_code: int


@dataclass
class VerifyResult:
    passed: bool
    failures: list[VerifyFailure] = field(default_factory=list)


DEFAULT_VERIFY_CHECKS = [
    VerifyCheck(name="build", command="make build"),
    VerifyCheck(name="check", command="make check"),
    VerifyCheck(name="test", command="make test"),
]


def load_checks(barf_dir: Path | None) -> list[VerifyCheck]:
    """Load checks.yaml from barf_dir, falling back to the defaults."""
    if barf_dir is None:
        return list(DEFAULT_VERIFY_CHECKS)

    checks_path = barf_dir / CHECKS_FILENAME
    if not checks_path.exists():
        return list(DEFAULT_VERIFY_CHECKS)

    try:
        data = yaml.safe_load(checks_path.read_text())
        validate(data, "checks")
    except (yaml.YAMLError, ValidationError) as e:
        logger.warning(f"Failed to parse {checks_path}: {e}")
        return list(DEFAULT_VERIFY_CHECKS)

    return [VerifyCheck(name=c["name"], command=c["command"]) for c in data["checks"]]


def run_verification(
    checks: list[VerifyCheck] | None = None,
    run_fn: RunFn | None = None,
    cwd=None,
) -> VerifyResult:
    """Run every check in order and collect the failures."""
    failures = []
    for check in checks if checks is not None else DEFAULT_VERIFY_CHECKS:
        logger.debug(f"[VERIFY] Running {check.name}: {check.command}")
        result = run_shell(check.command, run_fn, cwd)
        if result.returncode != 0:
            logger.warning(f"[VERIFY] {check.name} failed (exit {result.returncode})")
            failures.append(VerifyFailure(
                check=check.name,
                stdout=result.stdout or "",
                stderr=result.stderr or "",
                exit_code=result.returncode,
            ))
        else:
            logger.debug(f"[VERIFY] {check.name} passed")
    return VerifyResult(passed=not failures, failures=failures)


def _truncate(output: str) -> str:
    if len(output) <= MAX_OUTPUT_CHARS:
        return output
    return f"...(truncated)\n{output[-MAX_OUTPUT_CHARS:]}"


def build_fix_body(issue_id: str, failures: list[VerifyFailure], checks: list[VerifyCheck] | None = None) -> str:
    """Body for the fix sub-issue: context, captured output, and one criterion per check."""
    sections = []
    for f in failures:
        output = "\n".join(part for part in (f.stdout, f.stderr) if part).strip()
        sections.append(f"### {f.check} (exit {f.exit_code})\n```\n{_truncate(output)}\n```")

    criteria = "\n".join(
        f"- [ ] `{c.command}` passes"
        for c in (checks if checks is not None else DEFAULT_VERIFY_CHECKS)
    )

    return (
        f"## Context\n"
        f"Issue {issue_id} was marked COMPLETED but failed automated verification.\n\n"
        f"## Failures\n\n"
        + "\n\n".join(sections)
        + f"\n\n## Acceptance Criteria\n{criteria}"
    )


def verify_issue(
    issue_id: str,
    config: Config,
    store: IssueStore,
    run_fn: RunFn | None = None,
    checks: list[VerifyCheck] | None = None,
) -> VerifyResult | None:
    """
    Verify a COMPLETED issue and apply the result.

    Returns:
        The VerifyResult, or None if the issue is a fix sub-issue (never verified).

    Raises:
        StoreError, InvalidTransition: if the store cannot apply the result
    """
    issue = store.fetch(issue_id)
    if issue.is_verify_fix is True:
        logger.debug(f"[VERIFY] Skipping {issue_id}: fix sub-issue")
        return None

    if checks is None:
        checks = load_checks(config.barf_dir)
    result = run_verification(checks, run_fn, cwd=config.project_root)

    if result.passed:
        logger.info(f"[VERIFY] {issue_id} passed verification")
        store.transition(issue_id, IssueState.VERIFIED, reason="verification passed")
        return result

    # Re-read for the current verify_count
    fresh = store.fetch(issue_id)
    if fresh.verify_count >= config.max_verify_retries:
        logger.warning(
            f"[VERIFY] {issue_id} retries exhausted "
            f"({fresh.verify_count}/{config.max_verify_retries}), leaving COMPLETED"
        )
        store.write(issue_id, verify_exhausted=True)
        return result

    fix = store.create(
        title=f"Fix verification failures: {issue_id}",
        body=build_fix_body(issue_id, result.failures, checks),
        parent=issue_id,
    )
    store.write(fix.id, is_verify_fix=True)
    store.write(issue_id, verify_count=fresh.verify_count + 1)
    logger.info(
        f"[VERIFY] {issue_id} failed {len(result.failures)} check(s), "
        f"created fix issue {fix.id} (attempt {fresh.verify_count + 1}/{config.max_verify_retries})"
    )
    return result
