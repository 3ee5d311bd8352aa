"""
Issue triage.

A one-shot agent call decides whether a NEW issue can be planned as written:

- {"needs_interview": false}           -> needs_interview=false, NEW -> GROOMED
- {"needs_interview": true, questions} -> needs_interview=true, questions
                                          appended as `## Interview Questions`

Issues with needs_interview already set are skipped.
"""

import json
import logging
import re
import subprocess
from dataclasses import dataclass, field
from typing import Callable

from barf.errors import BarfError
from barf.issue.model import IssueState
from barf.issue.store import IssueStore
from barf.lib.config import Config
from barf.lib.prompts import render_prompt
from barf.lib.validate import validate, ValidationError
from barf.runner.claude import CLAUDE_BINARY, claude_env

logger = logging.getLogger(__name__)

TRIAGE_TIMEOUT_SECONDS = 300

_FENCE_PATTERN = re.compile(r'^```(?:json)?\s*\n?(.*?)\n?```$', re.DOTALL | re.MULTILINE)


class TriageError(BarfError):
    """The triage call failed or returned an unusable answer."""
    pass


@dataclass
class TriageQuestion:
    question: str
    options: list[str] = field(default_factory=list)


@dataclass
class TriageResult:
    needs_interview: bool
    questions: list[TriageQuestion] = field(default_factory=list)


def parse_triage_response(stdout: str) -> TriageResult:
    """Parse and validate the agent's JSON answer.

    Raises:
        TriageError: if the answer is not JSON or does not match the triage schema
    """
    raw = stdout.strip()
    # Claude sometimes adds fences despite instructions
    fenced = _FENCE_PATTERN.search(raw)
    if fenced:
        raw = fenced.group(1).strip()

    try:
        data = json.loads(raw)
        validate(data, "triage")
    except json.JSONDecodeError as e:
        raise TriageError(f"Failed to parse triage response: invalid JSON: {e}") from None
    except ValidationError as e:
        raise TriageError(f"Failed to parse triage response: {e}") from None

    return TriageResult(
        needs_interview=data["needs_interview"],
        questions=[
            TriageQuestion(question=q["question"], options=q.get("options", []))
            for q in data.get("questions", [])
        ],
    )


def format_questions_section(questions: list[TriageQuestion]) -> str:
    items = []
    for i, q in enumerate(questions, 1):
        lines = [f"{i}. {q.question}"]
        lines.extend(f"   - {option}" for option in q.options)
        items.append("\n".join(lines))
    return "\n\n## Interview Questions\n\n" + "\n".join(items)


def run_triage_agent(prompt: str, config: Config, run_fn: Callable | None = None) -> str:
    """Run `claude -p` once with the prompt on stdin and return its stdout."""
    run = run_fn or subprocess.run
    cmd = [CLAUDE_BINARY, "-p", "--model", config.triage_model, "--output-format", "text"]
    try:
        result = run(
            cmd,
            cwd=str(config.project_root),
            input=prompt,
            capture_output=True,
            text=True,
            timeout=TRIAGE_TIMEOUT_SECONDS,
            env=claude_env(),
        )
    except subprocess.TimeoutExpired:
        raise TriageError(f"Triage timed out after {TRIAGE_TIMEOUT_SECONDS}s") from None
    except OSError as e:
        raise TriageError(f"Could not start {CLAUDE_BINARY}: {e}") from e

    if result.returncode != 0:
        raise TriageError(f"Claude triage failed (exit {result.returncode}): {result.stderr.strip()}")
    return result.stdout


def triage_issue(
    issue_id: str,
    config: Config,
    store: IssueStore,
    run_fn: Callable | None = None,
) -> TriageResult | None:
    """
    Triage one issue and record the answer.

    Returns:
        The TriageResult, or None if the issue was already triaged

    Raises:
        TriageError: if the agent call fails or its answer is invalid
        IssueLocked: if another process is working on the issue
    """
    issue = store.fetch(issue_id)
    if issue.needs_interview is not None:
        logger.debug(f"[TRIAGE] Skipping {issue_id}: already triaged")
        return None

    prompt = render_prompt(
        "triage",
        config.prompt_dir,
        BARF_ISSUE_ID=issue_id,
        ISSUE_TITLE=issue.title,
        ISSUE_BODY=issue.body,
    )

    logger.info(f"[TRIAGE] Triaging {issue_id} with {config.triage_model}")
    store.lock(issue_id, mode="triage")
    try:
        result = parse_triage_response(run_triage_agent(prompt, config, run_fn))

        if not result.needs_interview:
            store.write(issue_id, needs_interview=False)
            if issue.state == IssueState.NEW:
                store.transition(issue_id, IssueState.GROOMED, reason="triage: ready")
            logger.info(f"[TRIAGE] {issue_id} is ready to plan")
        else:
            store.write(
                issue_id,
                needs_interview=True,
                body=issue.body + format_questions_section(result.questions),
            )
            logger.info(f"[TRIAGE] {issue_id} needs an interview ({len(result.questions)} question(s))")
    finally:
        store.unlock(issue_id)

    return result
