"""Batch flows: run many issues through run_loop with bounded concurrency.

Wrapped with Prefect @flow for observability. One issue's lock contention,
rate limit or failure is recorded in the summary and never stops the batch.
"""

import asyncio
import logging
from typing import Literal

from prefect import flow
from pydantic import BaseModel, Field

from barf.errors import BarfError, IssueLocked, RateLimited
from barf.issue.model import IssueState
from barf.issue.store import AUTO_SELECT_PRIORITY, IssueStore
from barf.lib.config import Config
from barf.runner.limiter import create_limiter
from barf.workflow.engine import RunLoopDeps, run_loop
from barf.workflow.triage import triage_issue

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_LOCKED = "locked"
STATUS_RATE_LIMITED = "rate_limited"
STATUS_FAILED = "failed"


class BatchRequest(BaseModel):
    mode: Literal["plan", "build"]
    issue_ids: list[str] = Field(default_factory=list)  # empty = every candidate
    concurrency: int = Field(default=1, ge=1)
    limit: int | None = Field(default=None, ge=1)


class IssueOutcome(BaseModel):
    issue_id: str
    status: str
    detail: str = ""
    final_state: str | None = None


class BatchSummary(BaseModel):
    mode: str
    outcomes: list[IssueOutcome] = Field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def rate_limited(self) -> bool:
        return self.count(STATUS_RATE_LIMITED) > 0


def select_candidates(store: IssueStore, mode: str) -> list[str]:
    """Every unlocked issue the mode can work on, highest priority first.

    Issues waiting for an interview are left out.
    """
    issues = [
        issue for issue in store.list_issues()
        if issue.needs_interview is not True and not store.is_locked(issue.id)
    ]
    ordered = []
    for state in AUTO_SELECT_PRIORITY[mode]:
        ordered.extend(issue.id for issue in issues if issue.state == state)
    return ordered


async def _run_one(
    issue_id: str,
    mode: str,
    config: Config,
    store: IssueStore,
    deps: RunLoopDeps | None,
) -> IssueOutcome:
    try:
        await run_loop(issue_id, mode, config, store, deps)
    except IssueLocked as e:
        logger.warning(f"[BATCH] {e}")
        return IssueOutcome(issue_id=issue_id, status=STATUS_LOCKED, detail=str(e))
    except RateLimited as e:
        logger.warning(f"[BATCH] {issue_id}: {e}")
        return IssueOutcome(issue_id=issue_id, status=STATUS_RATE_LIMITED, detail=str(e))
    except BarfError as e:
        logger.error(f"[BATCH] {issue_id} failed: {e}")
        return IssueOutcome(issue_id=issue_id, status=STATUS_FAILED, detail=str(e))

    try:
        final_state = store.fetch(issue_id).state.value
    except BarfError:
        final_state = None
    return IssueOutcome(issue_id=issue_id, status=STATUS_OK, final_state=final_state)


@flow(name="barf_batch", validate_parameters=False)
async def run_batch(
    request: BatchRequest,
    config: Config,
    store: IssueStore,
    deps: RunLoopDeps | None = None,
) -> BatchSummary:
    """Run the requested (or every candidate) issue through run_loop.

    At most request.concurrency sessions run at once; the store locks keep
    two sessions off the same issue.
    """
    issue_ids = request.issue_ids or select_candidates(store, request.mode)
    if request.limit:
        issue_ids = issue_ids[:request.limit]

    summary = BatchSummary(mode=request.mode)
    if not issue_ids:
        logger.info(f"[BATCH] No {request.mode} candidates")
        return summary

    logger.info(
        f"[BATCH] {request.mode}: {len(issue_ids)} issue(s), concurrency {request.concurrency}"
    )
    limiter = create_limiter(request.concurrency)

    def job(issue_id: str):
        return lambda: _run_one(issue_id, request.mode, config, store, deps)

    summary.outcomes = list(await asyncio.gather(*(limiter(job(i)) for i in issue_ids)))
    logger.info(
        f"[BATCH] {request.mode} done: {summary.count(STATUS_OK)} ok, "
        f"{summary.count(STATUS_LOCKED)} locked, {summary.count(STATUS_RATE_LIMITED)} rate limited, "
        f"{summary.count(STATUS_FAILED)} failed"
    )
    return summary


@flow(name="barf_auto", validate_parameters=False)
async def run_auto(
    config: Config,
    store: IssueStore,
    concurrency: int = 1,
    deps: RunLoopDeps | None = None,
    triage_run_fn=None,
) -> list[BatchSummary]:
    """One pass of the whole pipeline: triage, then plan, then build.

    Stops before building if planning hit a rate limit.
    """
    for issue in store.list_issues(IssueState.NEW):
        if issue.needs_interview is not None:
            continue
        try:
            await asyncio.to_thread(triage_issue, issue.id, config, store, triage_run_fn)
        except BarfError as e:
            logger.warning(f"[AUTO] Triage of {issue.id} failed: {e}")

    summaries = []
    for mode in ("plan", "build"):
        request = BatchRequest(mode=mode, concurrency=concurrency)
        summary = await run_batch.fn(request, config, store, deps)
        summaries.append(summary)
        if summary.rate_limited:
            logger.warning(f"[AUTO] Rate limited during {mode}, stopping")
            break
    return summaries
