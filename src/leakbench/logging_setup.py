"""Root logging for the leakbench command line."""
from __future__ import annotations

import json
import logging
import sys
from typing import Any

# Reader, demo-ticker and durable-sink threads all log; the thread name tells them apart.
PLAIN_FORMAT = "%(asctime)s | %(levelname)s | %(threadName)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


def configure_logging(level: str = "INFO", json_format: bool = False) -> None:
    level_value = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    formatter: logging.Formatter = (
        _JsonFormatter() if json_format else logging.Formatter(fmt=PLAIN_FORMAT, datefmt=DATE_FORMAT)
    )
    handler.setFormatter(formatter)
    logging.basicConfig(level=level_value, handlers=[handler], force=True)
    logging.getLogger("serial").setLevel(max(level_value, logging.WARNING))


class _JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": self.formatTime(record, datefmt=DATE_FORMAT),
            "level": record.levelname,
            "thread": record.threadName,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, sort_keys=True)
