from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from rich.prompt import Prompt

from .config import REGIONS, RunConfig, dump_config, load_run_config
from .export.csv import write_result_csv
from .export.json import write_result_json
from .inventory.accounts import list_accounts
from .inventory.entities import list_inventory_hosts
from .logging import (
    LogConfig,
    StepTimers,
    add_run_log_file,
    get_logger,
    log_event,
    remove_run_log_file,
    setup_logging,
)
from .logs.hosts import list_logging_hosts
from .models import Account, HostRecord, LogWindow, ReconciliationResult
from .nerdgraph.client import QueryExecutor
from .nerdgraph.queries import parse_tag
from .reconcile.reconcile import reconcile
from .util.concurrency import parallel_map_ordered
from .util.errors import (
    ConfigError,
    ExportError,
    FatalTrustError,
    InvalidCredentialError,
    PaginationStalledError,
    as_exit_code,
)
from .util.rich_progress import RunProgress, render_run_summary_table
from .util.serialization import sanitize_for_json
from .util.time import utc_now_iso

LOG = get_logger(__name__)

OUT_SCHEMA_VERSION = "1"
RESULT_JSON = "audit_result.json"
RESULT_CSV = "audit_result.csv"
RUN_SUMMARY_JSON = "run_summary.json"
RUN_LOG = "audit.log"

EventLogger = Callable[..., None]


@dataclass(frozen=True)
class LogTask:
    account_id: int
    window: LogWindow


@dataclass(frozen=True)
class LogTaskResult:
    task: LogTask
    hosts: Tuple[HostRecord, ...]
    error: Optional[str] = None


@dataclass(frozen=True)
class Collected:
    """Everything fetched from NerdGraph for one run."""

    accounts: Tuple[Account, ...]
    log_account_ids: Tuple[int, ...]
    inventory: Tuple[HostRecord, ...]
    day1: Tuple[HostRecord, ...]
    day2: Tuple[HostRecord, ...]
    failures: Tuple[Dict[str, Any], ...] = ()


@dataclass(frozen=True)
class RunOutcome:
    started_at: str
    status: str
    fatal_error: Optional[str] = None
    collected: Optional[Collected] = None
    result: Optional[ReconciliationResult] = None

    @property
    def failures(self) -> List[Dict[str, Any]]:
        return list(self.collected.failures) if self.collected is not None else []

    def metrics(self, executor: Optional[QueryExecutor]) -> Dict[str, Any]:
        out: Dict[str, Any] = dict(self.result.summary()) if self.result is not None else {}
        out.update(
            accounts=len(self.collected.accounts) if self.collected is not None else 0,
            accounts_with_hosts=len(self.collected.log_account_ids) if self.collected is not None else 0,
            failures=len(self.failures),
            queries=executor.queries if executor is not None else 0,
            failed_queries=executor.failed_queries if executor is not None else 0,
        )
        return out


def _resolve_api_key(cfg: RunConfig) -> str:
    if cfg.api_key:
        return cfg.api_key
    if sys.stdin.isatty():
        key = Prompt.ask("What is your New Relic User API key?", password=True).strip()
        if key:
            return key
    raise ConfigError("A New Relic User API key is required: pass --api-key or set NR_AUDIT_API_KEY")


def _make_executor(cfg: RunConfig, api_key: str) -> QueryExecutor:
    if cfg.insecure:
        LOG.warning(
            "TLS certificate verification is disabled; traffic to New Relic can be intercepted",
            extra={"endpoint": cfg.endpoint},
        )
    return QueryExecutor(
        cfg.endpoint,
        api_key,
        timeout=cfg.timeout,
        verify=cfg.tls_verify,
        pool_size=cfg.workers,
    )


def _require_accounts(executor: QueryExecutor) -> List[Account]:
    accounts = list_accounts(executor)
    if not accounts:
        raise InvalidCredentialError("API key is invalid or the New Relic API could not be reached")
    return accounts


def _list_log_hosts_task(executor: QueryExecutor, cfg: RunConfig, task: LogTask) -> LogTaskResult:
    """A stalled listing fails only its own task; FatalTrustError still propagates."""
    try:
        hosts = list_logging_hosts(
            executor,
            task.account_id,
            task.window,
            page_size=cfg.page_size,
            index_pattern=cfg.index_pattern,
        )
    except PaginationStalledError as e:
        LOG.error(
            "Log host listing stalled",
            extra={
                "step": "logs",
                "phase": "error",
                "account_id": task.account_id,
                "window": task.window.label,
                "error": str(e),
            },
        )
        return LogTaskResult(task=task, hosts=(), error=str(e))
    return LogTaskResult(task=task, hosts=tuple(hosts))


def _accounts_with_hosts(inventory: List[HostRecord], accounts: List[Account]) -> List[int]:
    accessible = {a.id for a in accounts}
    with_hosts = {h.account_id for h in inventory}
    skipped = sorted(with_hosts - accessible)
    if skipped:
        LOG.warning(
            "Inventory hosts belong to accounts the API key cannot query; their logs are not checked",
            extra={"step": "logs", "accounts": skipped},
        )
    return sorted(with_hosts & accessible)


def _collect(cfg: RunConfig, executor: QueryExecutor, progress: RunProgress, event: EventLogger) -> Collected:
    tag = parse_tag(cfg.tag)

    event(logging.INFO, "Checking API key", step="accounts", phase="start")
    accounts = _require_accounts(executor)
    event(logging.INFO, "API key OK", step="accounts", phase="complete", count=len(accounts))

    failures: List[Dict[str, Any]] = []
    event(logging.INFO, "Inventory listing started", step="inventory", phase="start", tag=cfg.tag)
    progress.start_inventory()
    try:
        inventory = list_inventory_hosts(executor, tag=tag, on_page=progress.update_inventory)
    except PaginationStalledError as e:
        inventory = list(e.partial)
        failures.append({"step": "inventory", "page": e.page, "cursor": e.cursor, "error": str(e)})
        event(
            logging.ERROR,
            "Inventory listing stalled; reconciling the hosts gathered before it",
            step="inventory",
            phase="error",
            page=e.page,
            count=len(inventory),
            error=str(e),
        )
    else:
        event(logging.INFO, "Inventory listing complete", step="inventory", phase="complete", count=len(inventory))

    log_accounts = _accounts_with_hosts(inventory, accounts)
    tasks = [LogTask(account_id=a, window=w) for a in log_accounts for w in LogWindow]
    event(logging.INFO, "Log host listing started", step="logs", phase="start", task_count=len(tasks))
    progress.start_logs(len(tasks))

    def run_task(task: LogTask) -> LogTaskResult:
        res = _list_log_hosts_task(executor, cfg, task)
        progress.advance_logs(detail=f"account {task.account_id} {task.window.label}")
        return res

    task_results = parallel_map_ordered(run_task, tasks, max_workers=cfg.workers)
    by_window: Dict[LogWindow, List[HostRecord]] = {w: [] for w in LogWindow}
    for res in task_results:
        by_window[res.task.window].extend(res.hosts)
    failures.extend(
        {"step": "logs", "account_id": res.task.account_id, "window": res.task.window.label, "error": res.error}
        for res in task_results
        if res.error
    )
    event(
        logging.INFO,
        "Log host listing complete",
        step="logs",
        phase="complete",
        day1=len(by_window[LogWindow.DAY1]),
        day2=len(by_window[LogWindow.DAY2]),
        failures=len(failures),
    )
    return Collected(
        accounts=tuple(accounts),
        log_account_ids=tuple(log_accounts),
        inventory=tuple(inventory),
        day1=tuple(by_window[LogWindow.DAY1]),
        day2=tuple(by_window[LogWindow.DAY2]),
        failures=tuple(failures),
    )


def _result_meta(cfg: RunConfig, status: str) -> Dict[str, Any]:
    return {
        "schema_version": OUT_SCHEMA_VERSION,
        "collected_at": cfg.collected_at,
        "region": cfg.region,
        "endpoint": cfg.endpoint,
        "tag": cfg.tag,
        "index_pattern": cfg.index_pattern,
        "windows": {w.label: w.nrql_range for w in LogWindow},
        "status": status,
    }


def _write_results(cfg: RunConfig, result: ReconciliationResult, meta: Dict[str, Any]) -> List[Path]:
    written: List[Path] = []
    try:
        if "json" in cfg.formats:
            write_result_json(result, cfg.outdir / RESULT_JSON, meta=meta)
            written.append(cfg.outdir / RESULT_JSON)
        if "csv" in cfg.formats:
            write_result_csv(result, cfg.outdir / RESULT_CSV)
            written.append(cfg.outdir / RESULT_CSV)
    except OSError as e:
        raise ExportError(f"Failed to write audit results to {cfg.outdir}: {e}") from e
    return written


def _write_run_summary(outdir: Path, summary: Dict[str, Any]) -> Path:
    path = outdir / RUN_SUMMARY_JSON
    try:
        outdir.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(sanitize_for_json(summary), sort_keys=True, indent=2) + "\n", encoding="utf-8")
    except OSError as e:
        raise ExportError(f"Failed to write run summary to {path}: {e}") from e
    return path


def _finish_run(cfg: RunConfig, outcome: RunOutcome, executor: Optional[QueryExecutor], event: EventLogger) -> None:
    metrics = outcome.metrics(executor)
    _write_run_summary(
        cfg.outdir,
        {
            "schema_version": OUT_SCHEMA_VERSION,
            "status": outcome.status,
            "started_at": outcome.started_at,
            "finished_at": utc_now_iso(),
            "fatal_error": outcome.fatal_error,
            "metrics": metrics,
            "failures": outcome.failures,
            "config": dump_config(cfg),
        },
    )
    failed = outcome.status == "FAILED"
    event(
        logging.ERROR if failed else logging.INFO,
        "Log audit run finished",
        step="run",
        phase="error" if failed else "complete",
        status=outcome.status,
    )
    render_run_summary_table(
        enabled=cfg.progress and sys.stdout.isatty(),
        status=outcome.status,
        metrics=metrics,
        region=cfg.region,
        outdir=str(cfg.outdir),
    )


def cmd_run(cfg: RunConfig) -> int:
    """
    Full audit. Results land in cfg.outdir; run_summary.json is written even
    when the run fails, with status FAILED and the error.
    """
    cfg.outdir.mkdir(parents=True, exist_ok=True)
    run_log = cfg.outdir / RUN_LOG
    add_run_log_file(run_log)
    started_at = utc_now_iso()
    event = partial(log_event, LOG, timers=StepTimers())
    executor: Optional[QueryExecutor] = None
    collected: Optional[Collected] = None
    result: Optional[ReconciliationResult] = None
    status = "OK"
    fatal_error: Optional[str] = None

    event(logging.INFO, "Starting log audit run", step="run", phase="start", outdir=str(cfg.outdir), region=cfg.region)
    try:
        executor = _make_executor(cfg, _resolve_api_key(cfg))
        with executor, RunProgress(enabled=cfg.progress) as progress:
            collected = _collect(cfg, executor, progress, event)

        result = reconcile(collected.inventory, collected.day1, collected.day2)
        if collected.failures or executor.failed_queries:
            status = "PARTIAL"
        written = _write_results(cfg, result, _result_meta(cfg, status))
        event(
            logging.INFO,
            "Audit results written",
            step="export",
            phase="complete",
            files=[str(p) for p in written],
            **result.summary(),
        )
    except Exception as e:
        status = "FAILED"
        fatal_error = str(e)
        raise
    finally:
        outcome = RunOutcome(
            started_at=started_at,
            status=status,
            fatal_error=fatal_error,
            collected=collected,
            result=result,
        )
        try:
            _finish_run(cfg, outcome, executor, event)
        except Exception as e:
            # the run's own error is already propagating and keeps its exit code
            if fatal_error is None:
                raise
            LOG.error("Run summary not written", extra={"step": "run", "phase": "error", "error": str(e)})
        finally:
            remove_run_log_file(run_log)
    return 0


def cmd_validate_key(cfg: RunConfig) -> int:
    with _make_executor(cfg, _resolve_api_key(cfg)) as executor:
        accounts = _require_accounts(executor)
    LOG.info("API key validated", extra={"region": cfg.region, "count": len(accounts)})
    print(f"OK: API key validated; found {len(accounts)} accounts.")
    return 0


def cmd_list_accounts(cfg: RunConfig) -> int:
    with _make_executor(cfg, _resolve_api_key(cfg)) as executor:
        accounts = _require_accounts(executor)
    for a in accounts:
        print(f"{a.id},{a.name or ''}")
    return 0


def cmd_list_regions(cfg: RunConfig) -> int:
    for region in sorted(REGIONS):
        print(f"{region} {REGIONS[region]}")
    return 0


COMMANDS: Dict[str, Callable[[RunConfig], int]] = {
    "run": cmd_run,
    "validate-key": cmd_validate_key,
    "list-accounts": cmd_list_accounts,
    "list-regions": cmd_list_regions,
}


def main() -> None:
    try:
        command, cfg = load_run_config()
        setup_logging(LogConfig(level=cfg.log_level, json_logs=cfg.json_logs))
        handler = COMMANDS.get(command)
        if handler is None:
            raise ConfigError(f"Unknown command: {command}")
        sys.exit(handler(cfg))
    except SystemExit:
        raise
    except BrokenPipeError:
        # stdout closed early, e.g. piped into head
        sys.exit(0)
    except Exception as e:
        setup_logging(LogConfig())
        LOG.error("Execution failed", extra={"error": str(e)})
        if isinstance(e, FatalTrustError):
            sys.stderr.write(e.help_text)
        sys.exit(as_exit_code(e))


if __name__ == "__main__":
    main()
