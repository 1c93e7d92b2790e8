"""Unit tests for main.py CLI parsing and controller construction."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from bellbot_controller.main import build_controller, load_env_file, parse_cli

SEED = """
schools:
  - {id: sch-001, name: Springfield High}
devices:
  - {serial: BELL001, school_id: sch-001}
"""


class TestParseCli:
    def test_defaults(self):
        args = parse_cli([])

        assert args.seed is None
        assert args.no_api is False
        assert args.debug is False
        assert args.env is None

    def test_all_flags(self):
        args = parse_cli(["--seed", "seed.yaml", "--no-api", "-D", "--env", "/tmp/x.env"])

        assert args.seed == Path("seed.yaml")
        assert args.no_api is True
        assert args.debug is True
        assert args.env == Path("/tmp/x.env")


class TestBuildController:
    @pytest.mark.asyncio
    async def test_seed_file_loaded(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        seed_file = tmp_path / "seed.yaml"
        _ = seed_file.write_text(SEED)
        monkeypatch.setenv("BELLBOT_TZ_OFFSET", "+00:00")

        controller = build_controller(parse_cli(["--seed", str(seed_file), "-D"]))

        assert controller.env.debug is True
        assert (await controller.get_device("BELL001")).school_id == "sch-001"

    @pytest.mark.asyncio
    async def test_env_file_applied(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        env_file = tmp_path / "bellbot.env"
        _ = env_file.write_text("BELLBOT_DEVICE_TOPIC=school-bells\nBELLBOT_TZ_OFFSET=+01:00\n")
        monkeypatch.setenv("BELLBOT_DEVICE_TOPIC", "bell")
        monkeypatch.setenv("BELLBOT_TZ_OFFSET", "+00:00")
        monkeypatch.delenv("BELLBOT_SEED_FILE", raising=False)

        controller = build_controller(parse_cli(["--env", str(env_file)]))

        assert controller.topics.device_ns == "school-bells"
        assert await controller.store.list_devices() == []

    def test_missing_env_file(self, tmp_path: Path):
        assert load_env_file(tmp_path / "absent.env") is False


class TestControllerLifecycle:
    @pytest.mark.asyncio
    async def test_stop_cancels_pending_requests(self, controller):
        future = await controller.publisher.request_status("BELL001")
        assert future is not None

        with patch.object(controller.mqtt_client, "stop", new=AsyncMock()) as mqtt_stop:
            await controller.stop()

        mqtt_stop.assert_awaited_once()
        assert future.cancelled()
        assert controller.registry.pending_count == 0
