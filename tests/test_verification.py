"""Tests for barf.workflow.verification module."""

import subprocess
from unittest.mock import MagicMock

import pytest

from barf.issue.local import LocalIssueStore
from barf.issue.model import IssueState
from barf.lib.config import Config
from barf.workflow.verification import (
    DEFAULT_VERIFY_CHECKS,
    MAX_OUTPUT_CHARS,
    VerifyCheck,
    VerifyFailure,
    build_fix_body,
    load_checks,
    run_verification,
    verify_issue,
)

CHECKS = [
    VerifyCheck(name="build", command="make build"),
    VerifyCheck(name="test", command="make test"),
]


def completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess([], returncode, stdout, stderr)


def failing(*commands):
    """run_fn that fails the given commands and passes everything else."""
    def run(cmd, **kwargs):
        if cmd[-1] in commands:
            return completed(2, stdout="out", stderr="error: broken")
        return completed(0)
    return MagicMock(side_effect=run)


@pytest.fixture
def config(tmp_path):
    return Config(
        project_root=tmp_path,
        issues_dir=tmp_path / "issues",
        barf_dir=tmp_path / ".barf",
        max_verify_retries=3,
    )


@pytest.fixture
def store(config):
    return LocalIssueStore(config.issues_dir, config.barf_dir)


def completed_issue(store, **fields):
    issue = store.create("Add login")
    store.transition(issue.id, IssueState.IN_PROGRESS)
    store.transition(issue.id, IssueState.COMPLETED)
    if fields:
        store.write(issue.id, **fields)
    return issue.id


class TestRunVerification:
    def test_all_pass(self):
        run_fn = MagicMock(return_value=completed(0))
        result = run_verification(CHECKS, run_fn)
        assert result.passed
        assert result.failures == []

    def test_every_check_runs_after_failure(self):
        run_fn = failing("make build")
        result = run_verification(CHECKS, run_fn)

        assert not result.passed
        assert run_fn.call_count == 2
        assert [f.check for f in result.failures] == ["build"]
        assert result.failures[0].exit_code == 2
        assert result.failures[0].stderr == "error: broken"

    def test_commands_run_through_shell(self):
        run_fn = MagicMock(return_value=completed(0))
        run_verification([VerifyCheck("lint", "ruff check . && mypy")], run_fn, cwd="/repo")
        args, kwargs = run_fn.call_args
        assert args[0] == ["sh", "-c", "ruff check . && mypy"]
        assert kwargs["cwd"] == "/repo"

    def test_defaults(self):
        run_fn = MagicMock(return_value=completed(0))
        run_verification(run_fn=run_fn)
        commands = [c.args[0][-1] for c in run_fn.call_args_list]
        assert commands == ["make build", "make check", "make test"]


class TestVerifyIssue:
    def test_pass_moves_to_verified(self, config, store):
        issue_id = completed_issue(store)
        result = verify_issue(issue_id, config, store, run_fn=failing(), checks=CHECKS)
        assert result.passed
        assert store.fetch(issue_id).state == IssueState.VERIFIED

    def test_failure_creates_one_fix_issue(self, config, store):
        issue_id = completed_issue(store)
        result = verify_issue(issue_id, config, store, run_fn=failing("make test"), checks=CHECKS)

        assert not result.passed
        parent = store.fetch(issue_id)
        assert parent.state == IssueState.COMPLETED
        assert parent.verify_count == 1
        assert parent.children == []

        fixes = [i for i in store.list_issues() if i.id != issue_id]
        assert len(fixes) == 1
        fix = fixes[0]
        assert fix.title == f"Fix verification failures: {issue_id}"
        assert fix.parent == issue_id
        assert fix.is_verify_fix is True
        assert fix.state == IssueState.NEW
        assert "### test (exit 2)" in fix.body
        assert "- [ ] `make build` passes" in fix.body

    def test_exhausted_retries(self, config, store):
        issue_id = completed_issue(store, verify_count=3)
        verify_issue(issue_id, config, store, run_fn=failing("make build"), checks=CHECKS)

        issue = store.fetch(issue_id)
        assert issue.verify_exhausted is True
        assert issue.verify_count == 3
        assert issue.state == IssueState.COMPLETED
        assert len(store.list_issues()) == 1

    def test_fix_issue_is_never_verified(self, config, store):
        issue_id = completed_issue(store, is_verify_fix=True)
        run_fn = MagicMock()
        assert verify_issue(issue_id, config, store, run_fn=run_fn, checks=CHECKS) is None
        run_fn.assert_not_called()
        assert store.fetch(issue_id).state == IssueState.COMPLETED

    def test_uses_checks_yaml(self, config, store):
        (config.barf_dir / "checks.yaml").write_text(
            "checks:\n  - name: unit\n    command: pytest -q\n"
        )
        issue_id = completed_issue(store)
        run_fn = MagicMock(return_value=completed(0))
        verify_issue(issue_id, config, store, run_fn=run_fn)
        assert run_fn.call_args.args[0] == ["sh", "-c", "pytest -q"]


class TestLoadChecks:
    def test_missing_file_uses_defaults(self, tmp_path):
        assert load_checks(tmp_path) == DEFAULT_VERIFY_CHECKS

    def test_none_dir(self):
        assert load_checks(None) == DEFAULT_VERIFY_CHECKS

    def test_custom_checks(self, tmp_path):
        (tmp_path / "checks.yaml").write_text(
            "checks:\n"
            "  - name: lint\n    command: ruff check .\n"
            "  - name: test\n    command: pytest\n"
        )
        assert load_checks(tmp_path) == [
            VerifyCheck("lint", "ruff check ."),
            VerifyCheck("test", "pytest"),
        ]

    def test_invalid_schema_falls_back(self, tmp_path, caplog):
        (tmp_path / "checks.yaml").write_text("checks:\n  - name: lint\n")
        assert load_checks(tmp_path) == DEFAULT_VERIFY_CHECKS
        assert "Failed to parse" in caplog.text

    def test_invalid_yaml_falls_back(self, tmp_path):
        (tmp_path / "checks.yaml").write_text("checks: [unclosed\n")
        assert load_checks(tmp_path) == DEFAULT_VERIFY_CHECKS


class TestBuildFixBody:
    def test_sections(self):
        body = build_fix_body("042", [VerifyFailure("build", "compiling", "E1", 1)], CHECKS)
        assert body.startswith("## Context\nIssue 042 was marked COMPLETED")
        assert "## Failures" in body
        assert "### build (exit 1)\n```\ncompiling\nE1\n```" in body
        assert body.endswith("## Acceptance Criteria\n- [ ] `make build` passes\n- [ ] `make test` passes")

    def test_long_output_truncated(self):
        body = build_fix_body("042", [VerifyFailure("test", "x" * (MAX_OUTPUT_CHARS * 2), "", 1)])
        assert "...(truncated)" in body
        # Headings such as "Context" and "exit 1" contain x too
        assert "x" * MAX_OUTPUT_CHARS in body
        assert "x" * (MAX_OUTPUT_CHARS + 1) not in body
