"""
Logging setup: stdlib logging, console or one-line JSON output.
"""
import json
import logging
from typing import Optional

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

CONSOLE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class JsonFormatter(logging.Formatter):
    """One JSON object per record: ts, level, logger, msg (+ error)."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["error"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def parse_level(level: str) -> int:
    try:
        return LEVELS[level.lower()]
    except KeyError:
        raise ValueError(
            f"unknown log level {level!r}, expected one of {sorted(LEVELS)}"
        ) from None


def configure_logging(level: str = "warn", encoding: str = "json",
                      stream: Optional[object] = None) -> None:
    handler = logging.StreamHandler(stream)
    if encoding == "json":
        handler.setFormatter(JsonFormatter())
    elif encoding == "console":
        handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    else:
        raise ValueError(f"unknown log encoding {encoding!r}, expected json or console")

    logging.basicConfig(level=parse_level(level), handlers=[handler], force=True)
