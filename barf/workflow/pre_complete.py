"""
Pre-complete gate.

Runs before an issue is marked COMPLETED:
1. FIX_COMMANDS (formatters, auto-fixers), best-effort, failures only logged
2. TEST_COMMAND, which must exit 0 for the issue to complete
"""

import logging
import subprocess
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

# Timeout for one fix or test command (seconds)
COMMAND_TIMEOUT_SECONDS = 600

RunFn = Callable[..., subprocess.CompletedProcess]


@dataclass
class FixStep:
    name: str
    command: str


@dataclass
class PreCompleteResult:
    passed: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0


def to_fix_steps(commands: list[str]) -> list[FixStep]:
    """Name each command after its first word."""
    return [FixStep(name=(cmd.split() or [cmd])[0], command=cmd) for cmd in commands]


def run_shell(command: str, run_fn: RunFn | None = None, cwd=None) -> subprocess.CompletedProcess:
    """Run a command through `sh -c`; timeouts and spawn failures become exit code -1."""
    run = run_fn or subprocess.run
    try:
        return run(
            ["sh", "-c", command],
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=COMMAND_TIMEOUT_SECONDS,
        )
    except subprocess.TimeoutExpired:
        return subprocess.CompletedProcess(command, -1, "", f"Timed out after {COMMAND_TIMEOUT_SECONDS}s")
    except OSError as e:
        return subprocess.CompletedProcess(command, -1, "", str(e))


def run_pre_complete(
    fix_steps: list[FixStep],
    test_command: str = "",
    run_fn: RunFn | None = None,
    cwd=None,
) -> PreCompleteResult:
    for step in fix_steps:
        result = run_shell(step.command, run_fn, cwd)
        if result.returncode != 0:
            logger.warning(f"[PRE-COMPLETE] Fix step '{step.name}' failed (exit {result.returncode}), continuing")
        else:
            logger.debug(f"[PRE-COMPLETE] Fix step '{step.name}' passed")

    if not test_command:
        return PreCompleteResult(passed=True)

    result = run_shell(test_command, run_fn, cwd)
    if result.returncode != 0:
        logger.warning(f"[PRE-COMPLETE] Test gate failed (exit {result.returncode})")
        return PreCompleteResult(
            passed=False,
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.returncode,
        )
    logger.debug("[PRE-COMPLETE] Test gate passed")
    return PreCompleteResult(passed=True)
