"""Shared fixtures for unit tests.

This module provides a seeded in-memory store, a mocked broker and a fully
wired controller whose correlation timeouts are short enough for unit tests.
"""

from __future__ import annotations

import asyncio
import datetime
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any
from unittest.mock import AsyncMock

import pytest

from bellbot_controller.controller import BellController
from bellbot_controller.mqtt.dispatcher import MessageDispatcher
from bellbot_controller.store import MemoryStore
from bellbot_controller.structs import ControllerEnv

SCHEDULE_UPDATED_AT = datetime.datetime(2024, 6, 1, 9, 15, 0, tzinfo=datetime.UTC)


def seed_data() -> dict[str, Any]:
    """Seed document mirroring the YAML seed layout."""
    return {
        "schools": [{"id": "sch-001", "name": "Springfield High"}],
        "presets": [
            {
                "id": "pre-001",
                "school_id": "sch-001",
                "name": "Regular day",
                "times": [
                    {"time": "08:30", "duration": 5, "label": "Start"},
                    {"time": "12:00", "duration": 5, "label": "Lunch"},
                ],
            },
            {"id": "pre-002", "school_id": "sch-001", "name": "Unused", "times": []},
        ],
        "schedules": [
            {
                "id": "665f1c2a9e8b7dabc123",
                "school_id": "sch-001",
                "updated_at": SCHEDULE_UPDATED_AT.isoformat(),
                "days": {
                    "Monday": {
                        "preset_id": "pre-001",
                        "custom_times": [
                            {"time": "08:30", "duration": 5},
                            {"time": "15:30", "duration": 10, "label": "End"},
                        ],
                    },
                },
            },
        ],
        "devices": [
            {"serial": "BELL001", "school_id": "sch-001", "location": "Main hall", "is_online": True},
            {"serial": "BELL002", "school_id": "sch-001", "location": "Gym"},
        ],
    }


@pytest.fixture
def env() -> ControllerEnv:
    """Settings with a UTC offset and sub-second correlation windows."""
    return ControllerEnv(
        tz_offset="+00:00",
        legacy_status_timeout=0.2,
        query_timeout=0.2,
        max_drift_seconds=60,
    )


@pytest.fixture
def seed() -> dict[str, Any]:
    return seed_data()


@pytest.fixture
def store(seed: dict[str, Any]) -> MemoryStore:
    return MemoryStore.from_mapping(seed)


@pytest.fixture
def broker() -> AsyncMock:
    """Mock broker that accepts every publish."""
    mock: AsyncMock = AsyncMock()
    mock.publish = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def controller(env: ControllerEnv, store: MemoryStore, broker: AsyncMock) -> BellController:
    return BellController(env, store, broker=broker)


@asynccontextmanager
async def _running(dispatcher: MessageDispatcher) -> AsyncIterator[MessageDispatcher]:
    task = asyncio.create_task(dispatcher.run())
    try:
        yield dispatcher
    finally:
        _ = task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


@pytest.fixture
def running() -> Callable[[MessageDispatcher], AbstractAsyncContextManager[MessageDispatcher]]:
    """Context manager factory running a dispatcher consumer for the duration of a block."""
    return _running
