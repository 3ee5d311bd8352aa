"""
Context window budget.

Each model has a context-window token limit. A turn is interrupted once its
main-context input tokens reach `floor(percent / 100 * limit)`.

Limits live in a ContextLimits registry. DEFAULT_LIMITS is the process-wide
instance; tests and callers that need isolation pass their own.
"""

import math

DEFAULT_CONTEXT_LIMIT = 200_000

KNOWN_MODEL_LIMITS = {
    "claude-opus-4-6": DEFAULT_CONTEXT_LIMIT,
    "claude-sonnet-4-6": DEFAULT_CONTEXT_LIMIT,
    "claude-haiku-4-5-20251001": DEFAULT_CONTEXT_LIMIT,
}


class ContextLimits:
    """Registry of model -> context window size."""

    def __init__(self, limits: dict[str, int] | None = None, default: int = DEFAULT_CONTEXT_LIMIT):
        self.default = default
        self._limits = dict(KNOWN_MODEL_LIMITS if limits is None else limits)

    def get(self, model: str) -> int:
        return self._limits.get(model, self.default)

    def set(self, model: str, limit: int) -> None:
        if limit <= 0:
            raise ValueError(f"Context limit must be positive, got {limit}")
        self._limits[model] = limit

    def threshold(self, model: str, percent: int) -> int:
        return math.floor(percent / 100 * self.get(model))


DEFAULT_LIMITS = ContextLimits()


def get_context_limit(model: str, limits: ContextLimits | None = None) -> int:
    """Token limit for a model; unregistered models get the default."""
    return (limits or DEFAULT_LIMITS).get(model)


def set_context_limit(model: str, limit: int, limits: ContextLimits | None = None) -> None:
    """Register or override a model's token limit."""
    (limits or DEFAULT_LIMITS).set(model, limit)


def get_threshold(model: str, percent: int, limits: ContextLimits | None = None) -> int:
    """Token count at which a turn is interrupted.

    Example: 200000-token model at 75% -> 150000.
    """
    return (limits or DEFAULT_LIMITS).threshold(model, percent)
