from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Optional

from ..models import RESULT_FIELDS, ReconciliationResult
from ..util.serialization import sanitize_for_json


def result_to_dict(result: ReconciliationResult, meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    JSON-ready view of a reconciliation result. Each category is a list of
    host dicts ordered by hostname, then account id.
    """
    out: Dict[str, Any] = {"summary": result.summary()}
    for name in RESULT_FIELDS:
        out[name] = [h.to_dict() for h in result.sorted_records(name)]
    if meta:
        out["meta"] = sanitize_for_json(meta)
    return out


def write_result_json(result: ReconciliationResult, path: Path, *, meta: Optional[Dict[str, Any]] = None) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = result_to_dict(result, meta)
    path.write_text(json.dumps(payload, sort_keys=True, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
