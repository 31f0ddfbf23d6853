from __future__ import annotations

import csv
from pathlib import Path
from typing import List

from ..models import RESULT_FIELDS, ReconciliationResult

CSV_REPORT_FIELDS = ("category", "hostname", "accountId", "hostId", "logCount", "reporting")


def write_result_csv(result: ReconciliationResult, path: Path) -> None:
    """
    Write one row per host per category. Rows are grouped by category in a fixed
    order and sorted by hostname within a category.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    with path.open("w", encoding="utf-8", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(CSV_REPORT_FIELDS)
        for category in RESULT_FIELDS:
            for host in result.sorted_records(category):
                data = host.to_dict()
                row: List[str] = [category]
                for field in CSV_REPORT_FIELDS[1:]:
                    val = data.get(field)
                    row.append("" if val is None else str(val).lower() if isinstance(val, bool) else str(val))
                writer.writerow(row)
