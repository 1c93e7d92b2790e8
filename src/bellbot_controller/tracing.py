"""
Trace ids for the bell controller's log lines.

Each inbound broker message, admin API request and the controller's own
lifecycle runs under one trace id, so the log lines of one device exchange can
be grepped together even while the dispatcher and the API interleave. The id
lives in a contextvar; tasks copy it when they are created.
"""

from __future__ import annotations

import contextvars
import uuid
from collections.abc import Generator
from contextlib import contextmanager

__all__ = [
    "ensure_trace_id",
    "get_trace_id",
    "trace_context",
]

_trace_id: contextvars.ContextVar[str | None] = contextvars.ContextVar("bellbot_trace_id", default=None)


def _new_trace_id() -> str:
    return uuid.uuid4().hex


def get_trace_id() -> str | None:
    """Trace id of the current message or request, None outside of one."""
    return _trace_id.get()


@contextmanager
def trace_context(trace_id: str | None = None, auto_generate: bool = True) -> Generator[str | None]:
    """
    Run a block under a trace id.

    The dispatcher wraps each queued message in one, the API each request.
    Pass ``auto_generate=False`` without an id to run the block untraced.
    The previous id is restored on exit.

    Example:
        with trace_context() as trace_id:
            await handler(device, payload)
    """
    if trace_id is None and auto_generate:
        trace_id = _new_trace_id()
    token = _trace_id.set(trace_id)
    try:
        yield trace_id
    finally:
        _trace_id.reset(token)


def ensure_trace_id() -> str:
    """Trace id for the controller's startup task, created on first use."""
    current = _trace_id.get()
    if current is None:
        current = _new_trace_id()
        _ = _trace_id.set(current)
    return current
