"""
Session stats for run_loop.

Each run accumulates token and duration totals in memory and adds them to
the issue's cumulative counters when it ends. Persisting is best-effort:
a failure is logged and never masks the run's own result.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone

from barf.errors import BarfError
from barf.issue.store import IssueStore

logger = logging.getLogger(__name__)


@dataclass
class SessionStats:
    """Totals for one run_loop session."""
    started_at: str
    duration_seconds: int
    input_tokens: int
    output_tokens: int
    final_context_size: int
    iterations: int
    model: str


def create_session_stats(
    started: float,
    input_tokens: int,
    output_tokens: int,
    final_context_size: int,
    iterations: int,
    model: str,
) -> SessionStats:
    """Snapshot totals; `started` is a time.time() value."""
    return SessionStats(
        started_at=datetime.fromtimestamp(started, timezone.utc).isoformat(),
        duration_seconds=int(time.time() - started),
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        final_context_size=final_context_size,
        iterations=iterations,
        model=model,
    )


def persist_session_stats(issue_id: str, stats: SessionStats, store: IssueStore) -> None:
    """Add a session's totals to the issue counters and bump run_count."""
    try:
        issue = store.fetch(issue_id)
        store.write(
            issue_id,
            total_input_tokens=issue.total_input_tokens + stats.input_tokens,
            total_output_tokens=issue.total_output_tokens + stats.output_tokens,
            total_duration_seconds=issue.total_duration_seconds + stats.duration_seconds,
            total_iterations=issue.total_iterations + stats.iterations,
            run_count=issue.run_count + 1,
        )
    except BarfError as e:
        logger.warning(f"[STATS] Failed to persist session stats for {issue_id}: {e}")
        return
    logger.info(
        f"[STATS] {issue_id}: {stats.duration_seconds}s, "
        f"{stats.input_tokens} in / {stats.output_tokens} out, {stats.iterations} turn(s)"
    )
