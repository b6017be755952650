"""Logging setup shared by the API process and the maintenance CLI.

Two output shapes are supported: pipe-separated lines for a terminal and one
JSON object per record for log shippers. Structured values passed through
``extra=`` (for example ``data_source`` on a sync) end up as top-level JSON keys.
"""

import json
import logging
import sys
from datetime import datetime
from typing import Any, Dict, Optional

from .config import APP_ENV, LOG_FORMAT, LOG_LEVEL
from .timezone_utils import LOCAL_TZ

SERVICE_NAME = "pawn_backend"

# attributes every LogRecord carries; anything else came in through ``extra=``
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))) | {
    "message",
    "asctime",
}

_QUIET_LOGGERS = ("sqlalchemy.engine", "uvicorn.access")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=LOCAL_TZ).isoformat(),
            "level": record.levelname,
            "service": SERVICE_NAME,
            "env": APP_ENV,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in vars(record).items():
            if key not in _RECORD_ATTRS and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def _build_formatter(format_type: str) -> logging.Formatter:
    if format_type == "json":
        return JsonFormatter()
    return logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def setup_logging(level: Optional[str] = None, format_type: Optional[str] = None) -> logging.Handler:
    """Route all records to stdout at ``level`` and return the installed handler.

    Calling it again replaces the previous handler, so the lifespan hook and the
    CLI can both call it safely.
    """
    log_level = getattr(logging, (level or LOG_LEVEL).upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(_build_formatter(format_type or LOG_FORMAT))

    root_logger = logging.getLogger()
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))
    return handler


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
