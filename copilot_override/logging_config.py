from __future__ import annotations

import json
import logging
from typing import Any

PLAIN_FORMAT = (
    "%(asctime)s.%(msecs)03d | %(levelname)s | %(name)s | "
    "%(filename)s:%(lineno)d | %(message)s"
)
PLAIN_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class JsonLineFormatter(logging.Formatter):
    """One compact JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "time": self.formatTime(record, PLAIN_DATE_FORMAT),
            "level": record.levelname,
            "logger": record.name,
            "caller": f"{record.filename}:{record.lineno}",
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["stacktrace"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str)


def build_log_config(*, release: bool, plain: bool, level: str = "INFO") -> dict[str, Any]:
    """dictConfig for uvicorn: JSON lines in release mode unless ``plain``."""
    formatter = "json" if release and not plain else "plain"
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "plain": {
                "format": PLAIN_FORMAT,
                "datefmt": PLAIN_DATE_FORMAT,
            },
            "json": {
                "()": "copilot_override.logging_config.JsonLineFormatter",
            },
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": formatter,
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            "uvicorn": {"handlers": ["default"], "level": level, "propagate": False},
            "uvicorn.error": {"level": level},
            "uvicorn.access": {
                "handlers": ["default"],
                "level": level,
                "propagate": False,
            },
        },
    }
