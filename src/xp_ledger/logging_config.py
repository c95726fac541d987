"""Root logging setup driven by the ``[logging]`` config section.

Modules only ever call ``logging.getLogger(__name__)``; the CLI calls
:func:`configure_logging` once at startup to install a single stream handler
in one of three formats:

- ``simple``: ``LEVEL message``
- ``detailed``: timestamp, level, logger name, message
- ``json``: one compact JSON object per line
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any, TextIO

from xp_ledger.config import config

FORMATS = {
    "simple": "%(levelname)s %(message)s",
    "detailed": "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
}


class JSONFormatter(logging.Formatter):
    """Compact JSON lines with a stable set of envelope fields."""

    def format(self, record: logging.LogRecord) -> str:
        event: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "lvl": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            event["exc"] = self.formatException(record.exc_info)
        return json.dumps(event, ensure_ascii=False, separators=(",", ":"))


def _clear_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)


def configure_logging(
    level: str | None = None,
    fmt: str | None = None,
    *,
    stream: TextIO | None = None,
) -> logging.Logger:
    """Install the root handler; arguments override the config values."""
    level_name = (level or config.logging.level or "INFO").upper()
    lvl = getattr(logging, level_name, logging.INFO)
    style = fmt or config.logging.format

    handler = logging.StreamHandler(stream=stream or sys.stderr)
    if style == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(FORMATS.get(style, FORMATS["detailed"])))

    root = logging.getLogger()
    root.setLevel(lvl)
    _clear_handlers(root)
    root.addHandler(handler)

    # httpx logs every request at INFO; keep it out of batch output
    logging.getLogger("httpx").setLevel(max(lvl, logging.WARNING))
    return root
