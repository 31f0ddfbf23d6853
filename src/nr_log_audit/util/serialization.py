from __future__ import annotations

import re
from dataclasses import asdict, is_dataclass
from datetime import date, datetime
from enum import Enum
from pathlib import PurePath
from typing import Any

REDACTED_VALUE = "<redacted>"

# Matches api_key, apiKey, API-Key, password, client_secret, token, ...
_SENSITIVE_KEY = re.compile(r"api[-_]?key|password|secret|token", re.IGNORECASE)


def is_sensitive_key(key: Any) -> bool:
    return isinstance(key, str) and _SENSITIVE_KEY.search(key) is not None


def sanitize_for_json(value: Any) -> Any:
    """
    Return a json.dumps-ready copy of value with credentials redacted.

    Dict entries whose key looks like a credential are replaced by
    REDACTED_VALUE unless unset (None). Sets come out sorted so artifacts
    are stable across runs.
    """
    if isinstance(value, dict):
        return {
            k: REDACTED_VALUE if is_sensitive_key(k) and v is not None else sanitize_for_json(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [sanitize_for_json(v) for v in value]
    if isinstance(value, (set, frozenset)):
        items = [sanitize_for_json(v) for v in value]
        try:
            return sorted(items)
        except TypeError:
            return items
    if is_dataclass(value) and not isinstance(value, type):
        return sanitize_for_json(asdict(value))
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return sanitize_for_json(value.value)
    if isinstance(value, PurePath):
        return str(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace")
    return value
