"""Tests for barf.workflow.engine module."""

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from barf.errors import IssueLocked, RateLimited, StoreError
from barf.issue.local import LocalIssueStore
from barf.issue.model import Issue, IssueState, serialize_issue
from barf.lib.config import Config
from barf.runner.context import ContextLimits
from barf.runner.locking import acquire_lock, new_lock_info
from barf.runner.stream import IterationResult, Outcome
from barf.workflow.engine import RunLoopDeps, run_loop
from barf.workflow.outcomes import ESCALATE, SPLIT, handle_overflow, should_continue
from barf.workflow.pre_complete import PreCompleteResult

DONE_CRITERIA = "## Acceptance Criteria\n- [x] works\n"
OPEN_CRITERIA = "## Acceptance Criteria\n- [ ] works\n"


def ok(tokens=1000, output_tokens=100):
    return IterationResult(Outcome.SUCCESS, tokens=tokens, output_tokens=output_tokens)


def overflow(tokens=160_000):
    return IterationResult(Outcome.OVERFLOW, tokens=tokens)


class ScriptedAgent:
    """Fake run_iteration. Each step is an IterationResult or a callable(issue_id) returning one."""

    def __init__(self, *steps):
        self.steps = list(steps)
        self.calls = []

    async def __call__(self, prompt, model, issue_id, context_usage_percent):
        self.calls.append({
            "issue_id": issue_id,
            "model": model,
            "prompt": prompt,
            "context_usage_percent": context_usage_percent,
        })
        step = self.steps.pop(0)
        return step(issue_id) if callable(step) else step

    def models(self):
        return [c["model"] for c in self.calls]


@pytest.fixture
def config(tmp_path):
    return Config(
        project_root=tmp_path,
        issues_dir=tmp_path / "issues",
        plan_dir=tmp_path / "plans",
        barf_dir=tmp_path / ".barf",
        max_auto_splits=3,
        plan_model="plan-model",
        build_model="build-model",
        split_model="split-model",
        extended_context_model="extended-model",
        log_file=None,
    )


@pytest.fixture
def store(config):
    return LocalIssueStore(config.issues_dir, config.barf_dir)


def put(store, **fields):
    issue = Issue(**fields)
    store.issue_path(issue.id).write_text(serialize_issue(issue))
    return issue


def make_deps(agent, gate_passed=True):
    return RunLoopDeps(
        run_iteration=agent,
        run_pre_complete=MagicMock(return_value=PreCompleteResult(passed=gate_passed)),
        verify_issue=MagicMock(return_value=None),
    )


def write_plan(config):
    def step(issue_id):
        config.plan_dir.mkdir(parents=True, exist_ok=True)
        config.plan_file(issue_id).write_text("# plan\n")
        return ok()
    return step


class TestDeps:
    def test_real_agent_gets_limits(self, config):
        limits = ContextLimits({"build-model": 50_000})
        with patch("barf.workflow.engine.ClaudeAgent") as agent_cls:
            resolved = RunLoopDeps(limits=limits).resolved(config)
        agent_cls.assert_called_once_with(config, limits)
        assert resolved.limits is limits

    def test_default_limits(self, config):
        with patch("barf.workflow.engine.ClaudeAgent") as agent_cls:
            RunLoopDeps().resolved(config)
        agent_cls.assert_called_once_with(config, None)

    def test_injected_agent_kept(self, config):
        agent = ScriptedAgent()
        with patch("barf.workflow.engine.ClaudeAgent") as agent_cls:
            resolved = make_deps(agent).resolved(config)
        agent_cls.assert_not_called()
        assert resolved.run_iteration is agent


class TestPolicy:
    def test_should_continue(self, config):
        assert should_continue(10_000, config)  # 0 = unlimited
        config.max_iterations = 2
        assert should_continue(1, config)
        assert not should_continue(2, config)

    def test_split_below_max(self, config):
        decision = handle_overflow(2, config)
        assert decision.action == SPLIT
        assert decision.next_model == "split-model"

    def test_escalate_at_max(self, config):
        decision = handle_overflow(3, config)
        assert decision.action == ESCALATE
        assert decision.next_model == "extended-model"


class TestSplitScenario:
    """Overflow on a PLANNED issue splits it and plans the children."""

    def test_overflow_split_and_child_planning(self, config, store):
        put(store, id="042", title="Big feature", state=IssueState.PLANNED, body=OPEN_CRITERIA)
        lock_held_during_child_planning = []

        def split_turn(issue_id):
            put(store, id="042-1", title="Part 1", parent="042")
            put(store, id="042-2", title="Part 2", parent="042")
            store.write("042", children=["042-1", "042-2"])
            return ok(tokens=50_000)

        def plan_child(issue_id):
            lock_held_during_child_planning.append(store.is_locked("042"))
            return write_plan(config)(issue_id)

        agent = ScriptedAgent(overflow(160_000), split_turn, plan_child, plan_child)
        asyncio.run(run_loop("042", "build", config, store, make_deps(agent)))

        parent = store.fetch("042")
        assert parent.state == IssueState.SPLIT
        assert parent.split_count == 1
        assert parent.children == ["042-1", "042-2"]
        assert not store.is_locked("042")

        # Two turns on the parent: the build turn, then one split turn
        assert [c["issue_id"] for c in agent.calls] == ["042", "042", "042-1", "042-2"]
        assert agent.models() == ["build-model", "split-model", "plan-model", "plan-model"]
        assert "too large" in agent.calls[1]["prompt"]

        assert lock_held_during_child_planning == [False, False]
        assert store.fetch("042-1").state == IssueState.PLANNED
        assert store.fetch("042-2").state == IssueState.PLANNED

        # Stats persisted once, before the lock was released
        assert parent.run_count == 1
        assert parent.total_iterations == 2
        assert parent.total_input_tokens == 210_000

    def test_split_without_children_leaves_state(self, config, store):
        put(store, id="042", title="t", state=IssueState.PLANNED)
        agent = ScriptedAgent(overflow(), ok())
        asyncio.run(run_loop("042", "build", config, store, make_deps(agent)))
        issue = store.fetch("042")
        assert issue.state == IssueState.IN_PROGRESS
        assert issue.split_count == 1
        assert len(agent.calls) == 2

    def test_failed_child_does_not_stop_siblings(self, config, store):
        put(store, id="042", title="t", state=IssueState.PLANNED)

        def split_turn(issue_id):
            put(store, id="042-1", title="a", parent="042")
            put(store, id="042-2", title="b", parent="042")
            store.write("042", children=["042-1", "042-2", "042-missing"])
            return ok()

        def broken(issue_id):
            raise StoreError("disk full")

        agent = ScriptedAgent(overflow(), split_turn, broken, write_plan(config))
        asyncio.run(run_loop("042", "build", config, store, make_deps(agent)))

        assert store.fetch("042-1").state == IssueState.NEW
        assert not store.is_locked("042-1")
        assert store.fetch("042-2").state == IssueState.PLANNED

    def test_non_new_children_skipped(self, config, store):
        put(store, id="042", title="t", state=IssueState.PLANNED)

        def split_turn(issue_id):
            put(store, id="042-1", title="a", parent="042", state=IssueState.PLANNED)
            store.write("042", children=["042-1"])
            return ok()

        agent = ScriptedAgent(overflow(), split_turn)
        asyncio.run(run_loop("042", "build", config, store, make_deps(agent)))
        assert len(agent.calls) == 2


class TestEscalation:
    def test_escalates_when_split_budget_spent(self, config, store):
        put(store, id="042", title="t", state=IssueState.IN_PROGRESS, split_count=3, body=DONE_CRITERIA)
        agent = ScriptedAgent(overflow(), ok())
        deps = make_deps(agent)
        asyncio.run(run_loop("042", "build", config, store, deps))

        assert agent.models() == ["build-model", "extended-model"]
        issue = store.fetch("042")
        assert issue.split_count == 3
        assert issue.state == IssueState.COMPLETED

    def test_force_split_skips_build_turn(self, config, store):
        put(store, id="042", title="t", state=IssueState.PLANNED, force_split=True)

        def split_turn(issue_id):
            put(store, id="042-1", title="a", parent="042")
            store.write("042", children=["042-1"])
            return ok()

        agent = ScriptedAgent(split_turn, write_plan(config))
        asyncio.run(run_loop("042", "build", config, store, make_deps(agent)))

        issue = store.fetch("042")
        assert agent.models()[0] == "split-model"
        assert issue.force_split is False
        assert issue.split_count == 1
        assert issue.state == IssueState.SPLIT


class TestPlanMode:
    def test_plan_written_moves_to_planned(self, config, store):
        put(store, id="001", title="t", state=IssueState.GROOMED)
        agent = ScriptedAgent(write_plan(config))
        asyncio.run(run_loop("001", "plan", config, store, make_deps(agent)))
        assert store.fetch("001").state == IssueState.PLANNED
        assert agent.models() == ["plan-model"]

    def test_no_plan_file_keeps_state_and_stops(self, config, store):
        put(store, id="001", title="t")
        agent = ScriptedAgent(ok(), ok())
        asyncio.run(run_loop("001", "plan", config, store, make_deps(agent)))
        assert store.fetch("001").state == IssueState.NEW
        assert len(agent.calls) == 1

    def test_prompt_variables(self, config, store):
        put(store, id="001", title="t")
        agent = ScriptedAgent(ok())
        asyncio.run(run_loop("001", "plan", config, store, make_deps(agent)))
        prompt = agent.calls[0]["prompt"]
        assert str(config.issues_dir / "001.md") in prompt
        assert str(config.plan_dir) in prompt
        assert "<!--" not in prompt


class TestBuildMode:
    def test_completes_and_verifies(self, config, store):
        put(store, id="001", title="t", state=IssueState.PLANNED, body=DONE_CRITERIA)
        agent = ScriptedAgent(ok())
        deps = make_deps(agent)
        asyncio.run(run_loop("001", "build", config, store, deps))

        assert store.fetch("001").state == IssueState.COMPLETED
        deps.verify_issue.assert_called_once_with("001", config, store)
        steps, test_command = deps.run_pre_complete.call_args.args
        assert steps == []
        assert test_command == ""

    def test_unchecked_criteria_keep_building(self, config, store):
        config.max_iterations = 3
        put(store, id="001", title="t", state=IssueState.NEW, body=OPEN_CRITERIA)
        agent = ScriptedAgent(ok(), ok(), ok())
        asyncio.run(run_loop("001", "build", config, store, make_deps(agent)))

        issue = store.fetch("001")
        assert issue.state == IssueState.IN_PROGRESS
        assert len(agent.calls) == 3
        assert issue.total_iterations == 3
        assert issue.run_count == 1

    def test_criteria_ticked_mid_run(self, config, store):
        put(store, id="001", title="t", state=IssueState.PLANNED, body=OPEN_CRITERIA)

        def finish(issue_id):
            store.write(issue_id, body=DONE_CRITERIA)
            return ok()

        agent = ScriptedAgent(ok(), finish)
        asyncio.run(run_loop("001", "build", config, store, make_deps(agent)))
        assert store.fetch("001").state == IssueState.COMPLETED
        assert len(agent.calls) == 2

    def test_failing_test_gate_continues(self, config, store):
        config.max_iterations = 2
        put(store, id="001", title="t", state=IssueState.PLANNED, body=DONE_CRITERIA)
        agent = ScriptedAgent(ok(), ok())
        deps = make_deps(agent, gate_passed=False)
        asyncio.run(run_loop("001", "build", config, store, deps))

        assert store.fetch("001").state == IssueState.IN_PROGRESS
        assert deps.run_pre_complete.call_count == 2
        deps.verify_issue.assert_not_called()

    def test_verification_error_is_logged(self, config, store, caplog):
        put(store, id="001", title="t", state=IssueState.PLANNED, body=DONE_CRITERIA)
        deps = make_deps(ScriptedAgent(ok()))
        deps.verify_issue.side_effect = StoreError("boom")
        asyncio.run(run_loop("001", "build", config, store, deps))
        assert store.fetch("001").state == IssueState.COMPLETED
        assert "boom" in caplog.text

    def test_already_completed_runs_no_turns(self, config, store):
        put(store, id="001", title="t", state=IssueState.COMPLETED)
        agent = ScriptedAgent()
        asyncio.run(run_loop("001", "build", config, store, make_deps(agent)))
        assert agent.calls == []
        assert store.fetch("001").run_count == 0

    def test_context_usage_override_passed(self, config, store):
        put(store, id="001", title="t", state=IssueState.PLANNED, body=DONE_CRITERIA, context_usage_percent=40)
        agent = ScriptedAgent(ok())
        asyncio.run(run_loop("001", "build", config, store, make_deps(agent)))
        assert agent.calls[0]["context_usage_percent"] == 40


class TestFailures:
    def test_rate_limit_raises_and_releases(self, config, store):
        put(store, id="001", title="t", state=IssueState.PLANNED)
        agent = ScriptedAgent(IterationResult(Outcome.RATE_LIMITED, tokens=500, rate_limit_resets_at=1767225600))

        with pytest.raises(RateLimited) as exc:
            asyncio.run(run_loop("001", "build", config, store, make_deps(agent)))

        assert exc.value.resets_at == 1767225600
        assert not store.is_locked("001")
        issue = store.fetch("001")
        assert issue.state == IssueState.IN_PROGRESS
        assert issue.run_count == 1

    def test_error_outcome_stops(self, config, store):
        put(store, id="001", title="t", state=IssueState.PLANNED, body=DONE_CRITERIA)
        agent = ScriptedAgent(IterationResult(Outcome.ERROR), ok())
        deps = make_deps(agent)
        asyncio.run(run_loop("001", "build", config, store, deps))

        assert len(agent.calls) == 1
        assert store.fetch("001").state == IssueState.IN_PROGRESS
        assert not store.is_locked("001")
        deps.run_pre_complete.assert_not_called()

    def test_agent_exception_releases_lock(self, config, store):
        put(store, id="001", title="t", state=IssueState.PLANNED)

        def crash(issue_id):
            raise StoreError("spawn failed")

        with pytest.raises(StoreError):
            asyncio.run(run_loop("001", "build", config, store, make_deps(ScriptedAgent(crash))))
        assert not store.is_locked("001")

    def test_locked_by_live_process(self, config, store):
        put(store, id="001", title="t", state=IssueState.PLANNED)
        with patch("barf.runner.locking.pid_alive", return_value=True):
            acquire_lock(config.barf_dir, "001", new_lock_info("PLANNED", "build", pid=4242))
            agent = ScriptedAgent()
            with pytest.raises(IssueLocked):
                asyncio.run(run_loop("001", "build", config, store, make_deps(agent)))
            # The other holder's lock is untouched
            assert store.is_locked("001")
        assert agent.calls == []

    def test_unknown_mode(self, config, store):
        with pytest.raises(ValueError):
            asyncio.run(run_loop("001", "split", config, store, make_deps(ScriptedAgent())))
