from __future__ import annotations

import csv
import io
import json
import sys
from pathlib import Path

import pytest

from nr_log_audit import cli
from nr_log_audit.config import load_run_config
from nr_log_audit.nerdgraph.queries import ACCOUNTS_QUERY, INVENTORY_HOSTS_QUERY, LOG_HOSTS_QUERY
from nr_log_audit.util.errors import ExitCode, FatalTrustError, InvalidCredentialError


def _entities_page(entities, cursor=None):
    return {
        "actor": {
            "entitySearch": {
                "count": len(entities),
                "results": {"nextCursor": cursor, "entities": entities},
            }
        }
    }


def _nrql_page(hostnames):
    rows = [{"facet": h, "hostname": h, "count": 5} for h in hostnames]
    return {"actor": {"account": {"nrql": {"results": rows}}}}


class FakeExecutor:
    """Answers NerdGraph queries from fixed per-account fixtures."""

    def __init__(
        self, accounts, entities, day1, day2, *, fail_with=None, log_fail_with=None, inventory_pages=None
    ) -> None:
        self.accounts = accounts
        self.entities = entities
        self.day1 = day1
        self.day2 = day2
        self.fail_with = fail_with
        self.log_fail_with = log_fail_with
        self.inventory_pages = inventory_pages
        self.log_calls = 0
        self.queries = 0
        self.failed_queries = 0
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        self.closed = True

    def execute(self, query, variables=None, *, context=None):
        self.queries += 1
        if self.fail_with is not None:
            raise self.fail_with
        if query == ACCOUNTS_QUERY:
            return {"actor": {"accounts": self.accounts}}
        if query == INVENTORY_HOSTS_QUERY:
            if self.inventory_pages is not None:
                return self.inventory_pages[variables["cursor"]]
            return _entities_page(self.entities)
        assert query == LOG_HOSTS_QUERY
        self.log_calls += 1
        if self.log_fail_with is not None:
            raise self.log_fail_with
        account_id = variables["accountId"]
        source = self.day2 if "UNTIL 1 DAY AGO" in variables["nrql"] else self.day1
        return _nrql_page(source.get(account_id, []))


def _fixture_executor(**kwargs) -> FakeExecutor:
    return FakeExecutor(
        accounts=[{"id": 1, "name": "Prod"}, {"id": 2, "name": "Dev"}],
        entities=[
            {"guid": "g-a", "name": "a", "accountId": 1, "reporting": True},
            {"guid": "g-b", "name": "b", "accountId": 1, "reporting": True},
            {"guid": "g-c", "name": "c", "accountId": 2, "reporting": False},
        ],
        day1={1: ["b", "d"], 2: []},
        day2={1: ["b"], 2: ["c"]},
        **kwargs,
    )


def _install(monkeypatch, executor: FakeExecutor) -> None:
    monkeypatch.setattr(cli, "_make_executor", lambda cfg, api_key: executor)


def _single_run_dir(base: Path) -> Path:
    dirs = [p for p in base.iterdir() if p.is_dir()]
    assert len(dirs) == 1
    return dirs[0]


def test_cmd_run_writes_results_and_summary(monkeypatch, tmp_path) -> None:
    executor = _fixture_executor()
    _install(monkeypatch, executor)
    _, cfg = load_run_config(argv=["run", "--api-key", "NRAK-SECRET", "--outdir", str(tmp_path), "--workers", "2"])

    assert cli.cmd_run(cfg) == 0

    outdir = _single_run_dir(tmp_path)
    result = json.loads((outdir / cli.RESULT_JSON).read_text(encoding="utf-8"))
    assert [h["hostname"] for h in result["inventory_only"]] == ["a", "c"]
    assert [h["hostname"] for h in result["logs_only"]] == ["d"]
    assert [h["hostname"] for h in result["newly_missing"]] == ["c"]
    assert [h["hostname"] for h in result["newly_appeared"]] == ["d"]
    assert result["meta"]["status"] == "OK"
    assert result["meta"]["region"] == "us"

    with (outdir / cli.RESULT_CSV).open(encoding="utf-8", newline="") as f:
        rows = list(csv.DictReader(f))
    assert {(r["category"], r["hostname"]) for r in rows} == {
        ("inventory_only", "a"),
        ("inventory_only", "c"),
        ("logs_only", "d"),
        ("newly_missing", "c"),
        ("newly_appeared", "d"),
    }

    summary_text = (outdir / cli.RUN_SUMMARY_JSON).read_text(encoding="utf-8")
    summary = json.loads(summary_text)
    assert summary["status"] == "OK"
    assert summary["metrics"]["accounts"] == 2
    assert summary["metrics"]["accounts_with_hosts"] == 2
    assert summary["metrics"]["inventory_total"] == 3
    assert summary["config"]["api_key"] == "<redacted>"
    assert "NRAK-SECRET" not in summary_text
    assert (outdir / cli.RUN_LOG).exists()
    assert executor.closed is True


def test_cmd_run_respects_format_selection(monkeypatch, tmp_path) -> None:
    _install(monkeypatch, _fixture_executor())
    _, cfg = load_run_config(argv=["run", "--api-key", "NRAK-X", "--outdir", str(tmp_path), "--format", "csv"])

    cli.cmd_run(cfg)

    outdir = _single_run_dir(tmp_path)
    assert (outdir / cli.RESULT_CSV).exists()
    assert not (outdir / cli.RESULT_JSON).exists()


def test_cmd_run_marks_partial_when_queries_failed(monkeypatch, tmp_path) -> None:
    executor = _fixture_executor()
    executor.failed_queries = 1
    _install(monkeypatch, executor)
    _, cfg = load_run_config(argv=["run", "--api-key", "NRAK-X", "--outdir", str(tmp_path)])

    cli.cmd_run(cfg)

    summary = json.loads((_single_run_dir(tmp_path) / cli.RUN_SUMMARY_JSON).read_text(encoding="utf-8"))
    assert summary["status"] == "PARTIAL"


def test_cmd_run_invalid_credential_writes_failed_summary(monkeypatch, tmp_path) -> None:
    executor = _fixture_executor()
    executor.accounts = []
    _install(monkeypatch, executor)
    _, cfg = load_run_config(argv=["run", "--api-key", "NRAK-BAD", "--outdir", str(tmp_path)])

    with pytest.raises(InvalidCredentialError):
        cli.cmd_run(cfg)

    outdir = _single_run_dir(tmp_path)
    summary = json.loads((outdir / cli.RUN_SUMMARY_JSON).read_text(encoding="utf-8"))
    assert summary["status"] == "FAILED"
    assert summary["fatal_error"]
    assert not (outdir / cli.RESULT_JSON).exists()


def test_main_exit_code_for_invalid_credential(monkeypatch, tmp_path) -> None:
    executor = _fixture_executor()
    executor.accounts = []
    _install(monkeypatch, executor)
    monkeypatch.setattr(sys, "argv", ["nr-log-audit", "validate-key", "--api-key", "NRAK-BAD"])

    with pytest.raises(SystemExit) as excinfo:
        cli.main()

    assert excinfo.value.code == int(ExitCode.INVALID_CREDENTIAL)


def test_main_fatal_trust_prints_help(monkeypatch, tmp_path, capsys) -> None:
    _install(monkeypatch, _fixture_executor(fail_with=FatalTrustError("self-signed certificate in chain")))
    monkeypatch.setattr(
        sys,
        "argv",
        ["nr-log-audit", "run", "--api-key", "NRAK-X", "--outdir", str(tmp_path)],
    )

    with pytest.raises(SystemExit) as excinfo:
        cli.main()

    assert excinfo.value.code == int(ExitCode.FATAL_TRUST)
    assert "--ca-bundle" in capsys.readouterr().err
    summary = json.loads((_single_run_dir(tmp_path) / cli.RUN_SUMMARY_JSON).read_text(encoding="utf-8"))
    assert summary["status"] == "FAILED"


def test_main_missing_api_key_is_config_error(monkeypatch) -> None:
    monkeypatch.delenv("NR_AUDIT_API_KEY", raising=False)
    monkeypatch.setattr(sys, "stdin", io.StringIO(""))
    monkeypatch.setattr(sys, "argv", ["nr-log-audit", "list-accounts"])

    with pytest.raises(SystemExit) as excinfo:
        cli.main()

    assert excinfo.value.code == int(ExitCode.CONFIG_ERROR)


def test_list_accounts_prints_csv_lines(monkeypatch, capsys) -> None:
    _install(monkeypatch, _fixture_executor())
    _, cfg = load_run_config(argv=["list-accounts", "--api-key", "NRAK-X"])

    assert cli.cmd_list_accounts(cfg) == 0

    assert capsys.readouterr().out.splitlines() == ["1,Prod", "2,Dev"]


def test_list_regions_prints_endpoints(capsys) -> None:
    _, cfg = load_run_config(argv=["list-regions"])

    cli.cmd_list_regions(cfg)

    out = capsys.readouterr().out.splitlines()
    assert out == [
        "eu https://api.eu.newrelic.com/graphql",
        "us https://api.newrelic.com/graphql",
    ]


def test_cmd_run_stalled_inventory_reconciles_hosts_gathered(monkeypatch, tmp_path) -> None:
    looping = _entities_page(
        [
            {"guid": "g-a", "name": "a", "accountId": 1, "reporting": True},
            {"guid": "g-b", "name": "b", "accountId": 1, "reporting": True},
        ],
        cursor="same",
    )
    _install(monkeypatch, _fixture_executor(inventory_pages={None: looping, "same": looping}))
    _, cfg = load_run_config(argv=["run", "--api-key", "NRAK-X", "--outdir", str(tmp_path)])

    assert cli.cmd_run(cfg) == 0

    outdir = _single_run_dir(tmp_path)
    summary = json.loads((outdir / cli.RUN_SUMMARY_JSON).read_text(encoding="utf-8"))
    assert summary["status"] == "PARTIAL"
    assert summary["metrics"]["inventory_total"] == 2
    [failure] = summary["failures"]
    assert failure["step"] == "inventory"
    assert failure["page"] == 2
    assert failure["cursor"] == "same"
    assert "repeated" in failure["error"]

    result = json.loads((outdir / cli.RESULT_JSON).read_text(encoding="utf-8"))
    assert result["meta"]["status"] == "PARTIAL"
    assert [h["hostname"] for h in result["inventory_only"]] == ["a"]
    assert [h["hostname"] for h in result["logs_only"]] == ["d"]


def test_cmd_run_stalled_log_watermark_fails_only_its_task(monkeypatch, tmp_path) -> None:
    # account 1 day1 always answers a full page of two, so the watermark never moves
    _install(monkeypatch, _fixture_executor())
    _, cfg = load_run_config(argv=["run", "--api-key", "NRAK-X", "--outdir", str(tmp_path), "--page-size", "2"])

    assert cli.cmd_run(cfg) == 0

    outdir = _single_run_dir(tmp_path)
    summary = json.loads((outdir / cli.RUN_SUMMARY_JSON).read_text(encoding="utf-8"))
    assert summary["status"] == "PARTIAL"
    [failure] = summary["failures"]
    assert failure["step"] == "logs"
    assert failure["account_id"] == 1
    assert failure["window"] == "day1"
    assert "Watermark did not advance" in failure["error"]

    result = json.loads((outdir / cli.RESULT_JSON).read_text(encoding="utf-8"))
    assert [h["hostname"] for h in result["newly_missing"]] == ["b", "c"]
    assert result["logs_only"] == []


def test_main_fatal_trust_in_log_task_stops_queued_tasks(monkeypatch, tmp_path, capsys) -> None:
    executor = _fixture_executor(log_fail_with=FatalTrustError("self-signed certificate in chain"))
    _install(monkeypatch, executor)
    monkeypatch.setattr(
        sys,
        "argv",
        ["nr-log-audit", "run", "--api-key", "NRAK-X", "--outdir", str(tmp_path), "--workers", "1"],
    )

    with pytest.raises(SystemExit) as excinfo:
        cli.main()

    assert excinfo.value.code == int(ExitCode.FATAL_TRUST)
    assert executor.log_calls == 1
    assert "--ca-bundle" in capsys.readouterr().err
    summary = json.loads((_single_run_dir(tmp_path) / cli.RUN_SUMMARY_JSON).read_text(encoding="utf-8"))
    assert summary["status"] == "FAILED"
    assert "self-signed" in summary["fatal_error"]


def test_cmd_run_summary_write_failure_keeps_run_error(monkeypatch, tmp_path) -> None:
    executor = _fixture_executor()
    executor.accounts = []
    _install(monkeypatch, executor)

    def disk_full(outdir, summary):
        raise cli.ExportError("Failed to write run summary: No space left on device")

    monkeypatch.setattr(cli, "_write_run_summary", disk_full)
    _, cfg = load_run_config(argv=["run", "--api-key", "NRAK-BAD", "--outdir", str(tmp_path)])

    with pytest.raises(InvalidCredentialError):
        cli.cmd_run(cfg)


def test_cmd_run_summary_write_failure_surfaces_on_success(monkeypatch, tmp_path) -> None:
    _install(monkeypatch, _fixture_executor())

    def disk_full(outdir, summary):
        raise cli.ExportError("Failed to write run summary: No space left on device")

    monkeypatch.setattr(cli, "_write_run_summary", disk_full)
    _, cfg = load_run_config(argv=["run", "--api-key", "NRAK-X", "--outdir", str(tmp_path)])

    with pytest.raises(cli.ExportError):
        cli.cmd_run(cfg)
