"""
Agent stream classification.

Consumes the JSON events of one agent turn (`claude --output-format
stream-json`) and reduces them to an IterationResult:

- overflow:     main-context input tokens reached the threshold; the turn
                is interrupted as soon as that happens
- rate_limited: the service rejected the turn (carries resets_at if given)
- success:      a success result, or the stream ended on its own
- error:        an error result, or the turn was cancelled (timeout/stop)

Only events with `parent_tool_use_id` null count toward the threshold.
Sub-agent (tool) turns grow their own context and are ignored.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Callable

from barf.errors import ContextOverflow, RateLimited

logger = logging.getLogger(__name__)

_RATE_LIMIT_PATTERN = re.compile(r'rate.?limit', re.IGNORECASE)


class Outcome(Enum):
    SUCCESS = "success"
    OVERFLOW = "overflow"
    RATE_LIMITED = "rate_limited"
    ERROR = "error"


@dataclass
class IterationResult:
    """Classified result of one agent turn."""
    outcome: Outcome
    tokens: int = 0
    output_tokens: int = 0
    rate_limit_resets_at: int | None = None
    # Set when the agent reported a result event itself
    terminal: bool = False


def _main_context_tokens(usage: dict) -> int:
    return (
        (usage.get("input_tokens") or 0)
        + (usage.get("cache_creation_input_tokens") or 0)
        + (usage.get("cache_read_input_tokens") or 0)
    )


class StreamClassifier:
    """Stateful reducer over stream events.

    feed() raises ContextOverflow or RateLimited when the turn must stop and
    returns an IterationResult once a terminal result event arrives.
    """

    def __init__(self, threshold: int):
        self.threshold = threshold
        self.max_tokens = 0
        self.output_tokens = 0
        self.last_tool = ""

    def feed(self, event: dict) -> IterationResult | None:
        kind = event.get("type")

        if kind == "rate_limit_event":
            info = event.get("rate_limit_info") or {}
            if info.get("status") == "rejected":
                raise RateLimited(info.get("resetsAt"))
            return None

        if kind == "assistant":
            if event.get("error") == "rate_limit":
                raise RateLimited()

            message = event.get("message") or {}
            if event.get("parent_tool_use_id") is None:
                usage = message.get("usage") or {}
                self.output_tokens = max(self.output_tokens, usage.get("output_tokens") or 0)
                tokens = _main_context_tokens(usage)
                if tokens > self.max_tokens:
                    self.max_tokens = tokens
                    logger.debug(f"[STREAM] context {tokens}/{self.threshold}")
                    if tokens >= self.threshold:
                        raise ContextOverflow(tokens)

            for block in message.get("content") or []:
                if isinstance(block, dict) and block.get("type") == "tool_use" and block.get("name"):
                    self.last_tool = block["name"]
                    logger.debug(f"[STREAM] tool {self.last_tool}")
                    break
            return None

        if kind == "result":
            if event.get("subtype") == "success":
                return self.result(Outcome.SUCCESS, terminal=True)
            errors = event.get("errors") or []
            if any(_RATE_LIMIT_PATTERN.search(str(e)) for e in errors):
                raise RateLimited()
            return self.result(Outcome.ERROR, terminal=True)

        return None

    def result(self, outcome: Outcome, **kwargs) -> IterationResult:
        return IterationResult(
            outcome=outcome,
            tokens=kwargs.pop("tokens", self.max_tokens),
            output_tokens=self.output_tokens,
            **kwargs,
        )


async def _interrupt_on_cancel(cancel: asyncio.Event, interrupt: Callable[[], None] | None) -> None:
    await cancel.wait()
    logger.warning("[STREAM] Turn cancelled, interrupting agent")
    if interrupt:
        interrupt()


async def consume_stream(
    events: AsyncIterator[dict],
    threshold: int,
    cancel: asyncio.Event | None = None,
    interrupt: Callable[[], None] | None = None,
    stream_log: Path | None = None,
) -> IterationResult:
    """
    Classify one turn's event stream.

    Args:
        events: Parsed JSON events from the agent
        threshold: Main-context token count that triggers overflow
        cancel: Set by the caller (timeout timer, stop request) to abort the turn
        interrupt: Stops the underlying agent process; called on overflow and cancel
        stream_log: Optional JSONL file every event is appended to

    Returns:
        IterationResult. Never raises for overflow or rate limits.
    """
    cancel = cancel or asyncio.Event()
    classifier = StreamClassifier(threshold)
    watcher = asyncio.create_task(_interrupt_on_cancel(cancel, interrupt))
    log_file = None
    if stream_log:
        stream_log.parent.mkdir(parents=True, exist_ok=True)
        log_file = open(stream_log, "a")

    try:
        async for event in events:
            if log_file:
                log_file.write(json.dumps(event) + "\n")
            if cancel.is_set():
                break
            result = classifier.feed(event)
            if result is not None:
                return result

        if cancel.is_set():
            return classifier.result(Outcome.ERROR)
        return classifier.result(Outcome.SUCCESS)

    except ContextOverflow as e:
        logger.info(f"[STREAM] Context threshold reached: {e.tokens} >= {threshold}")
        if interrupt:
            interrupt()
        return classifier.result(Outcome.OVERFLOW, tokens=e.tokens)
    except RateLimited as e:
        if interrupt:
            interrupt()
        return classifier.result(Outcome.RATE_LIMITED, rate_limit_resets_at=e.resets_at)
    finally:
        watcher.cancel()
        if log_file:
            log_file.close()
