"""
Timing for broker publishes, store writes and message handling.

Every timed operation feeds the ``bellbot_operation_seconds`` histogram; runs
slower than BELLBOT_PERF_THRESHOLD_MS are also logged as warnings. Set
BELLBOT_PERF_TRACKING=false to turn timing off entirely.
"""

from __future__ import annotations

import functools
import time
from collections.abc import Callable, Coroutine
from typing import Any, ParamSpec, TypeVar

from bellbot_controller import metrics
from bellbot_controller.const import BELLBOT_PERF_THRESHOLD_MS, BELLBOT_PERF_TRACKING
from bellbot_controller.logging_abstraction import get_logger

__all__ = ["elapsed_ms", "timed_async"]

P = ParamSpec("P")
T = TypeVar("T")

type AsyncFn[**Q, R] = Callable[Q, Coroutine[Any, Any, R]]

logger = get_logger(__name__)


def elapsed_ms(started: float) -> float:
    """Milliseconds since ``started`` (a time.perf_counter() reading)."""
    return (time.perf_counter() - started) * 1000


def _report(operation: str, took_ms: float) -> None:
    metrics.observe_operation(operation, took_ms / 1000)
    context = {"operation": operation, "duration_ms": round(took_ms, 2)}
    if took_ms > BELLBOT_PERF_THRESHOLD_MS:
        logger.warning(
            "[%s] slow: %.1fms (threshold %dms)",
            operation,
            took_ms,
            BELLBOT_PERF_THRESHOLD_MS,
            extra={**context, "threshold_ms": BELLBOT_PERF_THRESHOLD_MS},
        )
    else:
        logger.debug("[%s] took %.1fms", operation, took_ms, extra=context)


def timed_async(operation_name: str | None = None) -> Callable[[AsyncFn[P, T]], AsyncFn[P, T]]:
    """
    Time a coroutine function, exceptions included.

    Example:
        @timed_async("mqtt_publish")
        async def _send(self, command, topic, payload): ...
    """

    def decorator(func: AsyncFn[P, T]) -> AsyncFn[P, T]:
        if not BELLBOT_PERF_TRACKING:
            return func
        operation = operation_name or func.__name__

        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            started = time.perf_counter()
            try:
                return await func(*args, **kwargs)
            finally:
                _report(operation, elapsed_ms(started))

        return wrapper

    return decorator
