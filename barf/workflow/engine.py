"""Iteration engine: drives one issue through repeated agent turns.

run_loop(issue_id, mode, ...) holds the issue lock for the whole session and
repeats:

1. re-fetch the issue, stop if it is COMPLETED
2. run one agent turn (plan, build, or split after an overflow)
3. dispatch the classified outcome:
   - overflow      -> split or escalate (barf.workflow.outcomes)
   - rate_limited  -> raise RateLimited, the caller decides when to retry
   - error         -> stop, the issue keeps its state
   - success       -> plan/build completion rules

After a split the lock is released and each NEW child is planned in turn.
"""

import logging
from collections import deque
from dataclasses import dataclass
from functools import partial
from typing import Awaitable, Callable

from barf.errors import BarfError, RateLimited
from barf.issue.model import IssueState
from barf.issue.store import IssueStore
from barf.lib.config import Config
from barf.lib.prompts import render_prompt
from barf.runner.claude import ClaudeAgent
from barf.runner.context import ContextLimits
from barf.runner.stats import persist_session_stats
from barf.runner.stream import IterationResult, Outcome
from barf.workflow.outcomes import (
    LoopState,
    apply_overflow,
    handle_build_completion,
    handle_plan_completion,
    handle_split_completion,
    should_continue,
)
from barf.workflow.pre_complete import run_pre_complete
from barf.workflow.verification import verify_issue

logger = logging.getLogger(__name__)

LOOP_MODES = ("plan", "build")

# Build mode moves these to IN_PROGRESS before the first turn
BUILD_START_STATES = {IssueState.NEW, IssueState.GROOMED, IssueState.PLANNED, IssueState.STUCK}

# Nothing left for an agent to do
TERMINAL_STATES = {IssueState.SPLIT, IssueState.VERIFIED}

RunIterationFn = Callable[[str, str, str, "int | None"], Awaitable[IterationResult]]


@dataclass
class RunLoopDeps:
    """Injectable collaborators. None means the real implementation.

    run_iteration(prompt, model, issue_id, context_usage_percent) -> IterationResult
    run_pre_complete(fix_steps, test_command) -> PreCompleteResult
    verify_issue(issue_id, config, store) -> VerifyResult | None
    limits: model context sizes for the real agent (None = DEFAULT_LIMITS)
    """
    run_iteration: RunIterationFn | None = None
    run_pre_complete: Callable | None = None
    verify_issue: Callable | None = None
    limits: ContextLimits | None = None

    def resolved(self, config: Config) -> "RunLoopDeps":
        run_iteration = self.run_iteration
        if run_iteration is None:
            agent = ClaudeAgent(config, self.limits)

            async def run_iteration(prompt, model, issue_id, context_usage_percent):
                return await agent.run_iteration(prompt, model, issue_id, context_usage_percent)

        return RunLoopDeps(
            run_iteration=run_iteration,
            run_pre_complete=self.run_pre_complete or partial(run_pre_complete, cwd=config.project_root),
            verify_issue=self.verify_issue or verify_issue,
            limits=self.limits,
        )


def prompt_vars(issue_id: str, mode: str, iteration: int, config: Config) -> dict:
    issue_file = config.issues_dir / f"{issue_id}.md"
    return {
        "BARF_ISSUE_ID": issue_id,
        # Remote stores have no file; the agent gets the id only
        "BARF_ISSUE_FILE": str(issue_file) if issue_file.exists() else issue_id,
        "BARF_MODE": mode,
        "BARF_ITERATION": iteration,
        "ISSUES_DIR": str(config.issues_dir),
        "PLAN_DIR": str(config.plan_dir),
    }


def _start_build(issue_id: str, store: IssueStore) -> None:
    issue = store.fetch(issue_id)
    if issue.state in BUILD_START_STATES:
        store.transition(issue_id, IssueState.IN_PROGRESS, reason="build started")


def _apply_force_split(issue_id: str, config: Config, store: IssueStore, state: LoopState) -> None:
    if store.fetch(issue_id).force_split:
        logger.info(f"[LOOP] {issue_id}: force_split set, skipping build turn")
        apply_overflow(issue_id, config, store, state, force_split=False)


async def _run_session(issue_id: str, mode: str, config: Config, store: IssueStore, deps: RunLoopDeps) -> list[str]:
    """One locked session. Returns split children still to be planned."""
    store.lock(issue_id, mode=mode)
    state = LoopState(model=config.model_for(mode))
    children: list[str] = []

    try:
        current = store.fetch(issue_id).state
        if current in TERMINAL_STATES:
            logger.info(f"[LOOP] {issue_id}: nothing to do in state {current.value}")
            return []

        if mode == "build":
            _start_build(issue_id, store)
            _apply_force_split(issue_id, config, store, state)

        while should_continue(state.iteration, config):
            issue = store.fetch(issue_id)
            if issue.state == IssueState.COMPLETED:
                break

            turn_mode = "split" if state.split_pending else mode
            state.iterations_ran += 1
            logger.info(f"[LOOP] {issue_id}: {turn_mode} turn {state.iteration} on {state.model}")

            prompt = render_prompt(
                turn_mode,
                config.prompt_dir,
                **prompt_vars(issue_id, turn_mode, state.iteration, config),
            )
            result = await deps.run_iteration(prompt, state.model, issue_id, issue.context_usage_percent)
            state.record(result)
            logger.info(
                f"[LOOP] {issue_id}: {result.outcome.value} "
                f"(turn {result.tokens} in, session {state.total_input_tokens} in / {state.total_output_tokens} out)"
            )

            if result.outcome == Outcome.RATE_LIMITED:
                raise RateLimited(result.rate_limit_resets_at)

            if state.split_pending:
                children = handle_split_completion(issue_id, store, state)
                break

            if result.outcome == Outcome.OVERFLOW:
                apply_overflow(issue_id, config, store, state)
                continue

            if result.outcome == Outcome.ERROR:
                logger.warning(f"[LOOP] {issue_id}: agent turn failed, stopping loop")
                break

            if mode == "plan":
                handle_plan_completion(issue_id, config, store)
                break

            done = await handle_build_completion(
                issue_id, config, store,
                deps.run_pre_complete, deps.verify_issue,
                state.iteration,
            )
            if done:
                break

            state.iteration += 1
    finally:
        if state.iterations_ran > 0:
            persist_session_stats(issue_id, state.session_stats(), store)
        store.unlock(issue_id)

    return children


async def plan_split_children(
    child_ids: list[str],
    config: Config,
    store: IssueStore,
    deps: RunLoopDeps,
) -> None:
    """Plan each NEW child, one at a time.

    A child that fails is logged and skipped. Children produced by a child's
    own split join the back of the queue.
    """
    queue = deque(child_ids)
    while queue:
        child_id = queue.popleft()
        try:
            child = store.fetch(child_id)
        except BarfError as e:
            logger.warning(f"[LOOP] Could not fetch split child {child_id}: {e}")
            continue
        if child.state != IssueState.NEW:
            logger.debug(f"[LOOP] Skipping split child {child_id} in state {child.state.value}")
            continue

        logger.info(f"[LOOP] Auto-planning split child {child_id}")
        try:
            queue.extend(await _run_session(child_id, "plan", config, store, deps))
        except BarfError as e:
            logger.warning(f"[LOOP] Planning split child {child_id} failed: {e}")


async def run_loop(
    issue_id: str,
    mode: str,
    config: Config,
    store: IssueStore,
    deps: RunLoopDeps | None = None,
) -> None:
    """
    Drive one issue in plan or build mode.

    Raises:
        IssueLocked: another live process holds the issue
        RateLimited: the agent service rejected a turn
        InvalidTransition, StoreError: the store refused an update
    """
    if mode not in LOOP_MODES:
        raise ValueError(f"Unknown loop mode: {mode} (expected one of {LOOP_MODES})")

    deps = (deps or RunLoopDeps()).resolved(config)
    children = await _run_session(issue_id, mode, config, store, deps)
    if children:
        await plan_split_children(children, config, store, deps)
