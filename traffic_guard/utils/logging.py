"""Logging setup for the CLI and embedding services."""

import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from rich.console import Console
from rich.logging import RichHandler

# LogRecord attributes that are not user-supplied ``extra=`` fields
_RESERVED_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message"}


class JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects.

    Any ``extra=`` kwargs are merged into the payload.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                payload[key] = value

        return json.dumps(payload, default=str)


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
    console: Optional[Console] = None,
) -> logging.Logger:
    """Attach a single handler to the ``traffic_guard`` logger.

    Args:
        level: Log level name
        json_output: Emit JSON lines instead of rich console output
        console: Rich console for the interactive handler (stderr by default)

    Returns:
        The configured package logger
    """
    logger = logging.getLogger("traffic_guard")
    logger.setLevel(level.upper())

    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    if json_output:
        handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter())
    else:
        handler = RichHandler(
            console=console or Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))

    logger.addHandler(handler)
    return logger
