"""
Logging setup for the vector service.

JSON lines in production (LOG_JSON=1), a plain console format otherwise.
Modules log through `logging.getLogger(__name__)`; this only configures the
root handler once at startup.
"""
import json
import logging
import sys
import traceback
from datetime import datetime, timezone

from ..config import LOG_JSON, LOG_LEVEL

_STANDARD_ATTRS = {
    "name", "msg", "args", "created", "filename", "funcName", "levelname", "levelno",
    "lineno", "module", "msecs", "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName", "message", "taskName",
}


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Anything passed through `extra=`
        for key, value in record.__dict__.items():
            if key in _STANDARD_ATTRS or key.startswith("_"):
                continue
            try:
                json.dumps(value)
            except (TypeError, ValueError):
                value = repr(value)
            log_entry[key] = value

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(log_entry, ensure_ascii=False)


CONSOLE_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def setup_logging(level: str = LOG_LEVEL, json_format: bool = LOG_JSON) -> logging.Logger:
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    # Re-running (tests, uvicorn reload) replaces our handler instead of stacking.
    for h in list(root.handlers):
        if getattr(h, "_vector_service", False):
            root.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    handler._vector_service = True
    handler.setFormatter(JSONFormatter() if json_format else logging.Formatter(CONSOLE_FORMAT))
    root.addHandler(handler)

    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return root
