"""
Claude agent turns for barf.

One turn = one `claude -p` process in stream-json mode. The prompt goes in
on stdin, events come back one JSON object per stdout line and are
classified by barf.runner.stream.

Auto-compaction is disabled (CLAUDE_AUTOCOMPACT_PCT_OVERRIDE=100) so the
context budget is enforced by barf, not by the CLI.
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import AsyncIterator

from barf.errors import BarfError
from barf.lib.config import Config
from barf.runner.context import ContextLimits, get_threshold
from barf.runner.stream import IterationResult, Outcome, consume_stream

logger = logging.getLogger(__name__)

CLAUDE_BINARY = "claude"

# stdout lines can carry whole tool results
STREAM_LINE_LIMIT = 16 * 1024 * 1024

# Time a process gets to exit on its own after its stream ends
EXIT_GRACE_SECONDS = 5

STDERR_TAIL_CHARS = 2000


def claude_env() -> dict[str, str]:
    """Environment for agent processes."""
    # Remove ANTHROPIC_API_KEY so Claude uses OAuth credentials instead
    env = {k: v for k, v in os.environ.items() if k != "ANTHROPIC_API_KEY"}
    env["CLAUDE_AUTOCOMPACT_PCT_OVERRIDE"] = "100"
    return env


def claude_command(model: str) -> list[str]:
    return [
        CLAUDE_BINARY,
        "-p",
        "--output-format", "stream-json",
        "--verbose",
        "--model", model,
        "--dangerously-skip-permissions",
    ]


async def read_events(stdout: asyncio.StreamReader) -> AsyncIterator[dict]:
    """Yield parsed JSON events; non-JSON lines (stray stderr, banners) are skipped."""
    while True:
        line = await stdout.readline()
        if not line:
            return
        text = line.decode(errors="replace").strip()
        if not text:
            continue
        try:
            event = json.loads(text)
        except json.JSONDecodeError:
            logger.debug(f"[CLAUDE] Skipping non-JSON line: {text[:120]}")
            continue
        if isinstance(event, dict):
            yield event


class ClaudeAgent:
    def __init__(self, config: Config, limits: ContextLimits | None = None):
        self.config = config
        self.limits = limits

    def stream_log_path(self, issue_id: str | None) -> Path | None:
        if not (self.config.stream_log_dir and issue_id):
            return None
        return self.config.stream_log_dir / f"{issue_id}.jsonl"

    async def run_iteration(
        self,
        prompt: str,
        model: str,
        issue_id: str | None = None,
        context_usage_percent: int | None = None,
        cancel: asyncio.Event | None = None,
    ) -> IterationResult:
        """
        Run one agent turn and classify it.

        The turn is cancelled after CLAUDE_TIMEOUT seconds (0 disables the
        timer) and resolves as an error outcome. A process that exits non-zero
        without reporting a result is an error too.

        Raises:
            BarfError: if the claude binary cannot be started
        """
        percent = context_usage_percent or self.config.context_usage_percent
        threshold = get_threshold(model, percent, self.limits)
        cancel = cancel or asyncio.Event()

        logger.info(f"[CLAUDE] Turn for {issue_id or '-'} on {model} (threshold {threshold})")
        try:
            proc = await asyncio.create_subprocess_exec(
                *claude_command(model),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.config.project_root),
                env=claude_env(),
                limit=STREAM_LINE_LIMIT,
            )
        except OSError as e:
            raise BarfError(f"Could not start {CLAUDE_BINARY}: {e}") from e

        # Drained alongside stdout so a chatty process never blocks on a full pipe
        stderr_task = asyncio.create_task(proc.stderr.read())

        try:
            proc.stdin.write(prompt.encode())
            await proc.stdin.drain()
            proc.stdin.close()
        except (BrokenPipeError, ConnectionResetError) as e:
            # The process died before reading its prompt; the stream below ends empty
            logger.warning(f"[CLAUDE] Could not send prompt: {e}")

        interrupted = False

        def interrupt() -> None:
            nonlocal interrupted
            if proc.returncode is None:
                interrupted = True
                proc.terminate()

        loop = asyncio.get_running_loop()
        timer = None
        if self.config.claude_timeout > 0:
            timer = loop.call_later(self.config.claude_timeout, cancel.set)

        try:
            result = await consume_stream(
                read_events(proc.stdout),
                threshold,
                cancel=cancel,
                interrupt=interrupt,
                stream_log=self.stream_log_path(issue_id),
            )
        except BaseException:
            interrupt()
            raise
        finally:
            if timer:
                timer.cancel()
            try:
                await asyncio.wait_for(proc.wait(), EXIT_GRACE_SECONDS)
            except asyncio.TimeoutError:
                interrupt()
                await proc.wait()
            stderr = (await stderr_task).decode(errors="replace")

        if cancel.is_set():
            logger.warning(f"[CLAUDE] Turn for {issue_id or '-'} timed out or was cancelled")
        elif (
            result.outcome == Outcome.SUCCESS
            and not result.terminal
            and not interrupted
            and proc.returncode != 0
        ):
            # Stream ended without a result event because the CLI itself failed
            tail = stderr.strip()[-STDERR_TAIL_CHARS:] or "(no stderr)"
            logger.error(f"[CLAUDE] {CLAUDE_BINARY} exited with {proc.returncode}: {tail}")
            result = IterationResult(
                Outcome.ERROR,
                tokens=result.tokens,
                output_tokens=result.output_tokens,
            )
        logger.info(
            f"[CLAUDE] {issue_id or '-'}: {result.outcome.value} "
            f"({result.tokens} in / {result.output_tokens} out)"
        )
        return result
