"""Exception types raised by the agent engine."""

from __future__ import annotations


class InputError(ValueError):
    """Caller supplied empty or malformed input (text, messages, config)."""


class RunStateError(RuntimeError):
    """Illegal run state transition, e.g. terminating a run twice."""


class EmbeddingError(RuntimeError):
    """The embedding provider failed to return vectors."""
