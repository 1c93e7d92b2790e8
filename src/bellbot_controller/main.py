from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

import dotenv
import uvloop

from bellbot_controller.const import BELLBOT_DEBUG, BELLBOT_VERSION
from bellbot_controller.controller import BellController
from bellbot_controller.logging_abstraction import get_logger
from bellbot_controller.store import MemoryStore
from bellbot_controller.structs import ControllerEnv
from bellbot_controller.tracing import trace_context

logger = get_logger(__name__)

# Configure third-party loggers (uvicorn, mqtt) to reduce noise
uv_handler = logging.StreamHandler(sys.stdout)
uv_handler.setLevel(logging.INFO)
uv_handler.setFormatter(
    logging.Formatter(
        "%(asctime)s.%(msecs)d %(levelname)s (%(name)s) > %(message)s",
        "%m/%d/%y %H:%M:%S",
    ),
)
for _ul in (logging.getLogger("uvicorn"), logging.getLogger("uvicorn.error"), logging.getLogger("uvicorn.access")):
    _ul.setLevel(logging.INFO)
    _ul.propagate = False
    _ul.addHandler(uv_handler)

mqtt_logger = logging.getLogger("mqtt")
mqtt_logger.setLevel(logging.ERROR)
mqtt_logger.propagate = False


def parse_cli(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Bellbot bell controller server")
    _ = parser.add_argument("--seed", help="YAML file seeding schools, schedules and devices", default=None, type=Path)
    _ = parser.add_argument("--no-api", action="store_true", dest="no_api", help="Do not start the admin HTTP API")
    _ = parser.add_argument("-D", "--debug", action="store_true", help="Enable debug mode")
    _ = parser.add_argument("--env", help="Path to the environment file", default=None, type=Path)
    return parser.parse_args(argv)


def load_env_file(env_file: Path) -> bool:
    """Load a dotenv file into os.environ (overriding). Returns True when anything was loaded."""
    env_path = env_file.expanduser().resolve()
    if not env_path.exists():
        logger.error("Environment file not found", extra={"path": str(env_path)})
        return False
    loaded_any = dotenv.load_dotenv(env_path, override=True)
    if loaded_any:
        logger.info("Environment variables loaded", extra={"source": str(env_path)})
    else:
        logger.warning("No environment variables loaded from file", extra={"path": str(env_path)})
    return loaded_any


def build_controller(args: argparse.Namespace) -> BellController:
    if args.env:
        _ = load_env_file(args.env)
    env = ControllerEnv.from_env()
    if args.debug:
        env.debug = True

    seed_file = args.seed or (Path(env.seed_file) if env.seed_file else None)
    if seed_file is not None:
        logger.info("Loading seed data", extra={"seed_path": str(seed_file)})
        store = MemoryStore.from_yaml(seed_file)
    else:
        logger.warning("No seed file given, starting with an empty store")
        store = MemoryStore()
    return BellController(env, store)


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, controller: BellController) -> None:
    def _handler(signum: int) -> None:
        logger.info("Intercepted signal: %s (%s)", signal.Signals(signum).name, signum)
        _ = loop.create_task(controller.stop())

    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, _handler, signum)
    logger.debug("Signal handlers configured for SIGINT & SIGTERM")


async def _run(controller: BellController, with_api: bool) -> None:
    _install_signal_handlers(asyncio.get_running_loop(), controller)
    await controller.start(with_api=with_api)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the bell controller."""
    with trace_context():
        logger.info("Starting Bellbot controller", extra={"version": BELLBOT_VERSION})
        args = parse_cli(argv)

        if args.debug or BELLBOT_DEBUG:
            logger.set_level(logging.DEBUG)
            logger.info("Debug logging enabled")

        try:
            controller = build_controller(args)
        except Exception:
            logger.exception("Failed to initialize the controller")
            sys.exit(1)

        asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
        try:
            asyncio.run(_run(controller, with_api=not args.no_api))
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received, shutting down...")
        except Exception as e:
            logger.exception("Fatal error in main loop", extra={"error": str(e)})
        else:
            logger.info("Bellbot controller stopped gracefully")
        finally:
            logger.info("Bellbot controller shutdown complete")


if __name__ == "__main__":
    main()
