"""
Outcome handlers for run_loop.

Each handler applies one classified turn outcome to the issue and the loop
state. They hold the split/escalate policy and the completion rules; the
loop in barf.workflow.engine only dispatches.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from barf.errors import BarfError
from barf.issue.model import IssueState
from barf.issue.store import IssueStore
from barf.lib.config import Config
from barf.runner.stats import create_session_stats, persist_session_stats
from barf.runner.stream import IterationResult
from barf.workflow.pre_complete import to_fix_steps

logger = logging.getLogger(__name__)

SPLIT = "split"
ESCALATE = "escalate"


@dataclass
class LoopState:
    """Mutable state of one run_loop session."""
    model: str
    split_pending: bool = False
    iteration: int = 0
    iterations_ran: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    last_context_size: int = 0
    started: float = field(default_factory=time.time)

    def record(self, result: IterationResult) -> None:
        self.total_input_tokens += result.tokens
        self.total_output_tokens += result.output_tokens
        self.last_context_size = result.tokens

    def session_stats(self):
        return create_session_stats(
            self.started,
            self.total_input_tokens,
            self.total_output_tokens,
            self.last_context_size,
            self.iterations_ran,
            self.model,
        )


@dataclass
class OverflowDecision:
    action: str  # SPLIT or ESCALATE
    next_model: str


def should_continue(iteration: int, config: Config) -> bool:
    """MAX_ITERATIONS=0 means no cap."""
    return config.max_iterations == 0 or iteration < config.max_iterations


def handle_overflow(split_count: int, config: Config) -> OverflowDecision:
    """Split while the split budget lasts, then escalate to the larger model."""
    if split_count < config.max_auto_splits:
        return OverflowDecision(SPLIT, config.split_model)
    return OverflowDecision(ESCALATE, config.extended_context_model)


def apply_overflow(issue_id: str, config: Config, store: IssueStore, state: LoopState, **extra_fields) -> OverflowDecision:
    """Decide split vs escalate for the issue and update loop state and split_count."""
    issue = store.fetch(issue_id)
    decision = handle_overflow(issue.split_count, config)
    state.model = decision.next_model

    if decision.action == SPLIT:
        state.split_pending = True
        store.write(issue_id, split_count=issue.split_count + 1, **extra_fields)
        logger.info(
            f"[LOOP] {issue_id}: splitting ({issue.split_count + 1}/{config.max_auto_splits}) on {state.model}"
        )
    else:
        if extra_fields:
            store.write(issue_id, **extra_fields)
        logger.info(f"[LOOP] {issue_id}: split budget spent, escalating to {state.model}")
    return decision


def handle_split_completion(issue_id: str, store: IssueStore, state: LoopState) -> list[str]:
    """
    Finish a split turn.

    If the agent produced children the issue moves to SPLIT and the session
    stats are persisted now, ahead of the lock release.

    Returns:
        Child ids to plan (empty if the split produced nothing)
    """
    state.split_pending = False
    issue = store.fetch(issue_id)
    if not issue.children:
        logger.warning(f"[LOOP] {issue_id}: split turn produced no children")
        return []

    if issue.state != IssueState.SPLIT:
        store.transition(issue_id, IssueState.SPLIT, reason=f"{len(issue.children)} children")

    persist_session_stats(issue_id, state.session_stats(), store)
    state.iterations_ran = 0
    return list(issue.children)


def handle_plan_completion(issue_id: str, config: Config, store: IssueStore) -> bool:
    """PLANNED once the plan file exists. Returns True if the issue is planned."""
    plan_file = config.plan_file(issue_id)
    if not plan_file.exists():
        logger.warning(f"[LOOP] {issue_id}: plan turn finished without {plan_file}")
        return False

    if store.fetch(issue_id).state != IssueState.PLANNED:
        store.transition(issue_id, IssueState.PLANNED, reason="plan written")
    return True


async def handle_build_completion(
    issue_id: str,
    config: Config,
    store: IssueStore,
    run_pre_complete: Callable,
    verify_issue: Callable,
    iteration: int,
) -> bool:
    """
    Complete the issue if its criteria are met and the pre-complete gate passes.

    Returns:
        True if the loop should stop (issue COMPLETED), False to keep building
    """
    if not store.check_acceptance_criteria(issue_id):
        return False

    gate = await asyncio.to_thread(
        run_pre_complete, to_fix_steps(config.fix_commands), config.test_command
    )
    if not gate.passed:
        logger.warning(f"[LOOP] {issue_id}: test gate failed on iteration {iteration}, continuing")
        return False

    if store.fetch(issue_id).state != IssueState.COMPLETED:
        store.transition(issue_id, IssueState.COMPLETED, reason="acceptance criteria met")

    try:
        await asyncio.to_thread(verify_issue, issue_id, config, store)
    except BarfError as e:
        logger.warning(f"[VERIFY] {issue_id}: verification did not run to completion: {e}")
    return True
