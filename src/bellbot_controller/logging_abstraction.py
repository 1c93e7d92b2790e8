"""Logging setup for the bell controller.

``get_logger(name)`` returns a ``BellLogger``: a LoggerAdapter over the stdlib
logger of that name that accepts ``extra={...}`` as structured context and
stamps every line with the current trace id. Output goes to JSON lines, human
readable lines, or both, depending on BELLBOT_LOG_FORMAT.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Mapping, MutableMapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, override

from bellbot_controller.tracing import get_trace_id

__all__ = [
    "BellLogger",
    "HumanReadableFormatter",
    "JSONFormatter",
    "get_logger",
]

_NO_TRACE = "[--------]"


def _context(record: logging.LogRecord) -> Mapping[str, object]:
    extra_data = getattr(record, "extra_data", None)
    return extra_data if isinstance(extra_data, Mapping) else {}


class JSONFormatter(logging.Formatter):
    """One JSON object per record, for log shippers."""

    @override
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
            "message": record.getMessage(),
            "trace_id": get_trace_id(),
        }
        context = _context(record)
        if context:
            entry["context"] = dict(context)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """``10/16/26 09:00:00.123 INFO [dispatcher:140] [1a2b3c4d] > message | key=value``"""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s.%(msecs)03d %(levelname)s [%(module)s:%(lineno)d] %(trace_id)s > %(message)s",
            datefmt="%m/%d/%y %H:%M:%S",
        )

    @override
    def format(self, record: logging.LogRecord) -> str:
        trace_id = get_trace_id()
        record.trace_id = f"[{trace_id[:8]}]" if trace_id else _NO_TRACE
        line = super().format(record)
        context = _context(record)
        if not context:
            return line
        return " | ".join([line, *(f"{key}={value}" for key, value in context.items())])


def _human_handler(output: str) -> logging.Handler:
    if output == "stdout":
        return logging.StreamHandler(sys.stdout)
    if output == "stderr":
        return logging.StreamHandler(sys.stderr)
    path = Path(output)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(path, mode="a")
    except OSError as e:
        print(f"Warning: cannot open log file {path}: {e}; logging to stdout", file=sys.stderr)
        return logging.StreamHandler(sys.stdout)


def _json_handler(json_file: str | Path) -> logging.Handler | None:
    path = Path(json_file)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(path, mode="a")
    except OSError as e:
        print(f"Warning: cannot open JSON log file {path}: {e}", file=sys.stderr)
        return None


class BellLogger(logging.LoggerAdapter[logging.Logger]):
    """Adapter turning ``extra={...}`` into structured context on the record.

    Records still propagate through the named stdlib logger, so pytest's caplog
    and any root handlers see them.
    """

    def __init__(
        self,
        name: str,
        log_format: str = "human",
        json_file: str | Path | None = None,
        human_output: str | None = "stdout",
    ) -> None:
        super().__init__(logging.getLogger(name), {})
        self.log_format: str = log_format

        from bellbot_controller.const import BELLBOT_DEBUG

        self.logger.setLevel(logging.DEBUG if BELLBOT_DEBUG else logging.INFO)
        if not self.logger.handlers:
            self._attach_handlers(json_file, human_output or "stdout")

    def _attach_handlers(self, json_file: str | Path | None, human_output: str) -> None:
        pairs: list[tuple[logging.Handler | None, logging.Formatter]] = []
        if self.log_format in ("json", "both") and json_file:
            pairs.append((_json_handler(json_file), JSONFormatter()))
        if self.log_format in ("human", "both"):
            pairs.append((_human_handler(human_output), HumanReadableFormatter()))
        for handler, formatter in pairs:
            if handler is None:
                continue
            handler.setFormatter(formatter)
            handler.setLevel(self.logger.level)
            self.logger.addHandler(handler)

    @override
    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        extra = kwargs.pop("extra", None)
        if extra:
            kwargs["extra"] = {"extra_data": dict(extra)}
        return msg, kwargs

    def set_level(self, level: int) -> None:
        self.logger.setLevel(level)
        for handler in self.logger.handlers:
            handler.setLevel(level)

    @property
    def handlers(self) -> list[logging.Handler]:
        return self.logger.handlers


def get_logger(
    name: str,
    log_format: str | None = None,
    json_file: str | Path | None = None,
    human_output: str | None = None,
) -> BellLogger:
    """Logger for ``name``; unset arguments come from the BELLBOT_LOG_* settings."""
    from bellbot_controller.const import (
        BELLBOT_LOG_FORMAT,
        BELLBOT_LOG_HUMAN_OUTPUT,
        BELLBOT_LOG_JSON_FILE,
    )

    return BellLogger(
        name,
        log_format=log_format or BELLBOT_LOG_FORMAT,
        json_file=json_file or BELLBOT_LOG_JSON_FILE,
        human_output=human_output or BELLBOT_LOG_HUMAN_OUTPUT,
    )
