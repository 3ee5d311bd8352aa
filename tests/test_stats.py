"""Tests for barf.runner.stats module."""

import time

from barf.issue.local import LocalIssueStore
from barf.runner.stats import create_session_stats, persist_session_stats


class TestCreateSessionStats:
    def test_snapshot(self):
        started = time.time() - 5
        stats = create_session_stats(started, 1000, 200, 800, 3, "claude-sonnet-4-6")
        assert stats.input_tokens == 1000
        assert stats.output_tokens == 200
        assert stats.final_context_size == 800
        assert stats.iterations == 3
        assert stats.model == "claude-sonnet-4-6"
        assert stats.duration_seconds >= 5
        assert stats.started_at.endswith("+00:00")


class TestPersistSessionStats:
    def test_accumulates_across_runs(self, tmp_path):
        store = LocalIssueStore(tmp_path / "issues", tmp_path / ".barf")
        issue = store.create("Add login")

        persist_session_stats(issue.id, create_session_stats(time.time(), 1000, 100, 900, 2, "m"), store)
        persist_session_stats(issue.id, create_session_stats(time.time(), 500, 50, 400, 1, "m"), store)

        updated = store.fetch(issue.id)
        assert updated.total_input_tokens == 1500
        assert updated.total_output_tokens == 150
        assert updated.total_iterations == 3
        assert updated.run_count == 2

    def test_store_failure_is_logged(self, tmp_path, caplog):
        store = LocalIssueStore(tmp_path / "issues", tmp_path / ".barf")
        persist_session_stats("999", create_session_stats(time.time(), 1, 1, 1, 1, "m"), store)
        assert "[STATS] Failed to persist" in caplog.text
