"""Tutorlink time_utils.py

Clock helpers shared by the registry, the terminator and the liveness monitor.

- Epoch seconds reader (UTC wall clock)
- ISO8601 formatting for settlement summaries

No third-party dependencies; uses only Python stdlib.
"""
from __future__ import annotations

import datetime as _dt
import time

__all__ = ["now_s", "to_iso_utc"]


def now_s() -> float:
    """Return wall-clock seconds since Unix epoch."""
    return time.time()


def to_iso_utc(seconds: float) -> str:
    """Convert epoch seconds to ISO8601 UTC (e.g., '2025-08-23T12:34:56.789Z')."""
    dt = _dt.datetime.fromtimestamp(seconds, tz=_dt.timezone.utc)
    # Always include milliseconds
    return dt.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
