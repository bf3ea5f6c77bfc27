"""JSON logging utilities for the settlement service.

Provides:
- `set_request_id` / `set_session_id` to store correlation ids in ContextVars
- `JSONFormatter` to render logs as single-line JSON (with any correlation ids)
- `configure_logging` to set up stdout logging, JSON or human-readable
"""

import logging, sys, json, time
from contextvars import ContextVar

_request_id: ContextVar[str | None] = ContextVar("request_id", default=None)
_session_id: ContextVar[str | None] = ContextVar("session_id", default=None)

_TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def set_request_id(rid: str | None) -> None:
    """Set/clear the correlation request id used in log records.

    Args:
        rid: The request id to store; pass None to clear it.
    """
    _request_id.set(rid)


def set_session_id(sid: str | None) -> None:
    """Set/clear the tutoring session id attached to log records."""
    _session_id.set(sid)


class JSONFormatter(logging.Formatter):
    """Format log records as compact JSON with timestamp and optional context."""

    def format(self, record: logging.LogRecord) -> str:
        """Serialize a `logging.LogRecord` to a JSON string.

        Includes: level, epoch timestamp (seconds, 3dp), logger name, message,
        optional `request_id` / `session_id`, and exception info when present.
        """
        base = {
            "level": record.levelname,
            "ts": round(time.time(), 3),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        rid = _request_id.get()
        if rid:
            base["request_id"] = rid
        sid = _session_id.get()
        if sid:
            base["session_id"] = sid
        if record.exc_info:
            base["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(base, ensure_ascii=False)


def configure_logging(level: int | str = "INFO", json_logs: bool = True) -> logging.Logger:
    """Configure root logging to stdout.

    Args:
        level: Logging level as int or string (e.g., logging.INFO or "INFO").
        json_logs: Use the JSON formatter; otherwise a human-readable line format.

    Returns:
        A logger instance named "tutorlink".
    """
    handler = logging.StreamHandler(sys.stdout)
    if json_logs:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    if isinstance(level, str):
        level = level.upper()
    logging.basicConfig(level=level, handlers=[handler], force=True)
    return logging.getLogger("tutorlink")
