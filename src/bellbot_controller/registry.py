"""Correlation registry: request/response semantics over fire-and-forget MQTT.

A request to a device registers a pending entry keyed by (serial, request class)
and gets back a future. The entry completes exactly once, with one of:

- RESOLVED: the dispatcher matched a device reply to the key
- TIMEOUT: the class window elapsed without a reply
- SUPERSEDED: a newer request for the same key replaced it

Replies arriving after an entry completed are dropped.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from bellbot_controller import metrics
from bellbot_controller.const import BELLBOT_LEGACY_STATUS_TIMEOUT, BELLBOT_QUERY_TIMEOUT
from bellbot_controller.logging_abstraction import get_logger

__all__ = [
    "CorrelationKey",
    "CorrelationOutcome",
    "CorrelationRegistry",
    "CorrelationResult",
    "RequestClass",
]

logger = get_logger(__name__)


class RequestClass(StrEnum):
    LEGACY_STATUS = "legacy_status"
    TIME = "time"
    TIMETABLE = "timetable"
    STATUS = "status"


DEFAULT_TIMEOUTS: dict[RequestClass, float] = {
    RequestClass.LEGACY_STATUS: BELLBOT_LEGACY_STATUS_TIMEOUT,
    RequestClass.TIME: BELLBOT_QUERY_TIMEOUT,
    RequestClass.TIMETABLE: BELLBOT_QUERY_TIMEOUT,
    RequestClass.STATUS: BELLBOT_QUERY_TIMEOUT,
}

type CorrelationKey = tuple[str, RequestClass]


class CorrelationOutcome(StrEnum):
    RESOLVED = "resolved"
    TIMEOUT = "timeout"
    SUPERSEDED = "superseded"


@dataclass(frozen=True, slots=True)
class CorrelationResult:
    """How a pending request ended, with the device payload when it was resolved."""

    outcome: CorrelationOutcome
    payload: Any = None
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.outcome is CorrelationOutcome.RESOLVED


@dataclass(slots=True)
class _PendingEntry:
    future: asyncio.Future[CorrelationResult]
    started: float
    deadline: float
    timer: asyncio.TimerHandle | None = field(default=None)


class CorrelationRegistry:
    """Pending device requests, at most one per (serial, request class).

    Each entry owns its own loop timer; there is no lock shared between keys.
    ``on_expire`` is called with the key after a timeout result was delivered.
    """

    lp: str = "CorrelationRegistry:"

    def __init__(
        self,
        on_expire: Callable[[CorrelationKey], None] | None = None,
        timeouts: dict[RequestClass, float] | None = None,
    ) -> None:
        self._pending: dict[CorrelationKey, _PendingEntry] = {}
        self._on_expire = on_expire
        self.timeouts: dict[RequestClass, float] = {**DEFAULT_TIMEOUTS, **(timeouts or {})}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, key: CorrelationKey) -> bool:
        return key in self._pending

    def set_expire_hook(self, on_expire: Callable[[CorrelationKey], None] | None) -> None:
        self._on_expire = on_expire

    def register(self, key: CorrelationKey, timeout: float | None = None) -> asyncio.Future[CorrelationResult]:
        """Open a pending entry for ``key`` and return the future its caller awaits.

        An entry already pending for the key is completed as SUPERSEDED first.
        The timeout window starts now and is never extended.
        """
        lp = f"{self.lp}register:"
        loop = asyncio.get_running_loop()
        window = self.timeouts[key[1]] if timeout is None else timeout

        previous = self._pending.pop(key, None)
        if previous is not None:
            self._finish(key, previous, CorrelationOutcome.SUPERSEDED, loop.time())
            logger.info("%s %s/%s superseded by a newer request", lp, key[0], key[1])

        future: asyncio.Future[CorrelationResult] = loop.create_future()
        now = loop.time()
        entry = _PendingEntry(future=future, started=now, deadline=now + window)
        entry.timer = loop.call_later(window, self._expire, key, future)
        self._pending[key] = entry
        future.add_done_callback(lambda fut: self._on_future_done(key, fut))
        metrics.set_pending_correlations(len(self._pending))
        logger.debug("%s %s/%s pending (timeout=%.1fs)", lp, key[0], key[1], window)
        return future

    def resolve(self, key: CorrelationKey, payload: Any = None) -> bool:
        """Deliver a device reply. Returns False when nothing was waiting for it."""
        lp = f"{self.lp}resolve:"
        entry = self._pending.pop(key, None)
        if entry is None:
            logger.debug("%s No pending %s request for %s, reply dropped", lp, key[1], key[0])
            return False
        loop = asyncio.get_running_loop()
        delivered = self._finish(key, entry, CorrelationOutcome.RESOLVED, loop.time(), payload)
        if delivered:
            logger.debug("%s %s/%s resolved", lp, key[0], key[1])
        return delivered

    def discard(self, key: CorrelationKey) -> bool:
        """Withdraw a pending entry whose request never reached the broker."""
        entry = self._pending.pop(key, None)
        if entry is None:
            return False
        if entry.timer is not None:
            entry.timer.cancel()
        _ = entry.future.cancel()
        metrics.set_pending_correlations(len(self._pending))
        return True

    def cancel_all(self) -> int:
        """Drop every pending entry (shutdown). Waiting callers see CancelledError."""
        count = len(self._pending)
        for entry in self._pending.values():
            if entry.timer is not None:
                entry.timer.cancel()
            _ = entry.future.cancel()
        self._pending.clear()
        metrics.set_pending_correlations(0)
        if count:
            logger.info("%s Cancelled %d pending request(s)", self.lp, count)
        return count

    def _finish(
        self,
        key: CorrelationKey,
        entry: _PendingEntry,
        outcome: CorrelationOutcome,
        now: float,
        payload: Any = None,
    ) -> bool:
        if entry.timer is not None:
            entry.timer.cancel()
        metrics.set_pending_correlations(len(self._pending))
        if entry.future.done():
            return False
        elapsed = now - entry.started
        entry.future.set_result(CorrelationResult(outcome=outcome, payload=payload, elapsed=elapsed))
        metrics.record_correlation(
            key[1].value,
            outcome.value,
            elapsed if outcome is CorrelationOutcome.RESOLVED else None,
        )
        return True

    def _expire(self, key: CorrelationKey, future: asyncio.Future[CorrelationResult]) -> None:
        entry = self._pending.get(key)
        if entry is None or entry.future is not future:
            return
        del self._pending[key]
        entry.timer = None
        loop = asyncio.get_running_loop()
        if not self._finish(key, entry, CorrelationOutcome.TIMEOUT, loop.time()):
            return
        logger.warning(
            "%s %s request to %s timed out after %.1fs",
            f"{self.lp}expire:",
            key[1],
            key[0],
            loop.time() - entry.started,
            extra={"serial": key[0], "request_class": key[1].value},
        )
        if self._on_expire is not None:
            try:
                self._on_expire(key)
            except Exception:
                logger.exception("%s expiry hook failed for %s/%s", self.lp, key[0], key[1])

    def _on_future_done(self, key: CorrelationKey, future: asyncio.Future[CorrelationResult]) -> None:
        # A caller cancelling its own await must not leave the entry behind.
        if not future.cancelled():
            return
        entry = self._pending.get(key)
        if entry is not None and entry.future is future:
            del self._pending[key]
            if entry.timer is not None:
                entry.timer.cancel()
            metrics.set_pending_correlations(len(self._pending))
