from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utc_now_iso(moment: Optional[datetime] = None) -> str:
    """ISO-8601 UTC timestamp with seconds precision, e.g. 2024-01-01T00:00:00+00:00."""
    return (moment or datetime.now(timezone.utc)).isoformat(timespec="seconds")


def utc_stamp(moment: Optional[datetime] = None) -> str:
    """Compact UTC timestamp used for run directory names (e.g. 20240101T000000Z)."""
    return (moment or datetime.now(timezone.utc)).strftime("%Y%m%dT%H%M%SZ")
