from __future__ import annotations

import logging
import sys
import time
from datetime import datetime, timezone
from typing import Any

import orjson

DEFAULT_FORMAT = "%(asctime)sZ [%(levelname)s] %(name)s:%(lineno)d | %(message)s"
DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"

_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "aiohttp.access", "httpx", "solana")

_LOG_RECORD_RESERVED = set(logging.LogRecord(None, 0, "", 0, "", (), None).__dict__.keys())


class _UTCFormatter(logging.Formatter):
    """Formatter that renders timestamps in UTC."""

    converter = time.gmtime


class JsonFormatter(logging.Formatter):
    """Structured logging formatter producing JSON payloads."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "line": record.lineno,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack_info"] = record.stack_info

        for key, value in record.__dict__.items():
            if key in payload or key.startswith("_") or key in _LOG_RECORD_RESERVED:
                continue
            payload[key] = value

        return orjson.dumps(payload, default=str).decode()


_HANDLER_SENTINEL = "_usd1_radar_handler"


def setup_logging(level: int | str = logging.INFO, *, json_logs: bool = False) -> logging.Handler:
    """Install a single stdout handler on the root logger.

    Calling it again swaps the formatter and level in place.
    """

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger()
    root.setLevel(level)
    handler = getattr(root, _HANDLER_SENTINEL, None)
    if not isinstance(handler, logging.Handler) or handler not in root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        root.addHandler(handler)
        setattr(root, _HANDLER_SENTINEL, handler)

    if json_logs:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(_UTCFormatter(DEFAULT_FORMAT, DEFAULT_DATEFMT))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    return handler


__all__ = ["JsonFormatter", "setup_logging"]
