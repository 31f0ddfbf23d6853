from __future__ import annotations

import csv
import json

from nr_log_audit.export.csv import CSV_REPORT_FIELDS, write_result_csv
from nr_log_audit.export.json import write_result_json
from nr_log_audit.models import HostRecord
from nr_log_audit.reconcile.reconcile import reconcile


def _result():
    inventory = [
        HostRecord(account_id=1, hostname="c", host_id="g-c", reporting=True),
        HostRecord(account_id=1, hostname="a", host_id="g-a", reporting=False),
        HostRecord(account_id=1, hostname="b", host_id="g-b"),
    ]
    day1 = [HostRecord(account_id=1, hostname="b", log_count=4), HostRecord(account_id=1, hostname="d", log_count=9)]
    day2 = [HostRecord(account_id=1, hostname="b", log_count=2), HostRecord(account_id=1, hostname="c", log_count=1)]
    return reconcile(inventory, day1, day2)


def test_write_result_json_is_sorted_and_redacted(tmp_path) -> None:
    path = tmp_path / "out" / "audit_result.json"

    write_result_json(_result(), path, meta={"region": "us", "api_key": "NRAK-SECRET"})

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert [h["hostname"] for h in payload["inventory_only"]] == ["a", "c"]
    assert payload["inventory_only"][0] == {
        "accountId": 1,
        "hostname": "a",
        "hostId": "g-a",
        "logCount": None,
        "reporting": False,
    }
    assert [h["hostname"] for h in payload["logs_only"]] == ["d"]
    assert [h["hostname"] for h in payload["newly_missing"]] == ["c"]
    assert [h["hostname"] for h in payload["newly_appeared"]] == ["d"]
    assert payload["summary"]["inventory_total"] == 3
    assert payload["meta"]["region"] == "us"
    assert "NRAK-SECRET" not in path.read_text(encoding="utf-8")


def test_write_result_csv_rows_per_category(tmp_path) -> None:
    path = tmp_path / "audit_result.csv"

    write_result_csv(_result(), path)

    with path.open(encoding="utf-8", newline="") as f:
        rows = list(csv.reader(f))
    assert tuple(rows[0]) == CSV_REPORT_FIELDS
    body = [(r[0], r[1]) for r in rows[1:]]
    assert body == [
        ("inventory_only", "a"),
        ("inventory_only", "c"),
        ("logs_only", "d"),
        ("newly_missing", "c"),
        ("newly_appeared", "d"),
    ]
    assert rows[1] == ["inventory_only", "a", "1", "g-a", "", "false"]
    assert rows[3] == ["logs_only", "d", "1", "", "9", ""]
