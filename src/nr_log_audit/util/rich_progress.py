from __future__ import annotations

from typing import Any, Dict, Optional

from rich.console import Console
from rich.progress import BarColumn, Progress, TaskID, TaskProgressColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

# (label, metrics key) in display order
SUMMARY_ROWS = (
    ("Accounts", "accounts"),
    ("Inventory hosts", "inventory_total"),
    ("Hosts logging (last 24h)", "day1_total"),
    ("Hosts logging (prior 24h)", "day2_total"),
    ("In inventory, no logs", "inventory_only"),
    ("Logging, not in inventory", "logs_only"),
    ("Stopped logging", "newly_missing"),
    ("Started logging", "newly_appeared"),
    ("Failed listings", "failures"),
)


class RunProgress:
    """
    Two progress bars on stderr: inventory pages and per-account log listings.

    Inert unless enabled and stderr is a terminal, so callers can report
    progress unconditionally. advance_logs is called from worker threads;
    rich.Progress serialises updates itself.
    """

    def __init__(self, *, enabled: bool, console: Optional[Console] = None) -> None:
        console = console or Console(stderr=True)
        self._progress: Optional[Progress] = None
        if enabled and console.is_terminal:
            self._progress = Progress(
                TextColumn("{task.description}"),
                BarColumn(),
                TaskProgressColumn(),
                TextColumn("{task.fields[detail]}"),
                TimeElapsedColumn(),
                console=console,
                transient=True,
            )
        self._tasks: Dict[str, TaskID] = {}

    @property
    def enabled(self) -> bool:
        return self._progress is not None

    def __enter__(self) -> RunProgress:
        if self._progress is not None:
            self._progress.start()
        return self

    def __exit__(self, exc_type: Any, exc: Any, exc_tb: Any) -> None:
        if self._progress is not None:
            self._progress.stop()

    def _add(self, name: str, description: str, total: Optional[int]) -> None:
        if self._progress is not None:
            self._tasks[name] = self._progress.add_task(description, total=total, detail="")

    def _update(self, name: str, **fields: Any) -> None:
        if self._progress is not None and name in self._tasks:
            self._progress.update(self._tasks[name], **fields)

    def start_inventory(self) -> None:
        self._add("inventory", "Inventory hosts", None)

    def update_inventory(self, declared: Optional[int], fetched: int) -> None:
        detail = f"{fetched} of {declared}" if declared is not None else str(fetched)
        self._update("inventory", total=declared, completed=fetched, detail=detail)

    def start_logs(self, total: int) -> None:
        self._add("logs", "Log hosts", total)

    def advance_logs(self, *, detail: str = "", count: int = 1) -> None:
        self._update("logs", advance=count, detail=detail)


def render_run_summary_table(
    *,
    enabled: bool,
    status: str,
    metrics: Dict[str, Any],
    region: str,
    outdir: str,
    console: Optional[Console] = None,
) -> None:
    if not enabled:
        return
    table = Table(title="Log Audit Summary", header_style="bold")
    table.add_column("Metric", style="cyan")
    table.add_column("Value")
    table.add_row("Status", status)
    table.add_row("Region", region)
    for label, key in SUMMARY_ROWS:
        table.add_row(label, str(metrics.get(key, 0)))
    table.add_row("Output dir", outdir)
    (console or Console()).print(table)
