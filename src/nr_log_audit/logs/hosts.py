from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..logging import get_logger
from ..models import HostRecord, LogWindow
from ..nerdgraph.client import QueryExecutor
from ..nerdgraph.queries import LOG_HOSTS_QUERY, log_hosts_variables
from ..util.pagination import paginate_watermark

LOG = get_logger(__name__)

DEFAULT_PAGE_SIZE = 2000


def _row_hostname(row: Dict[str, Any]) -> str:
    value = row.get("hostname")
    if value is None:
        value = row.get("facet")
    if isinstance(value, list):
        value = value[0] if value else None
    return str(value) if value else ""


def _row_count(row: Dict[str, Any]) -> Optional[int]:
    value = row.get("count")
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def list_logging_hosts(
    executor: QueryExecutor,
    account_id: int,
    window: LogWindow,
    *,
    page_size: int = DEFAULT_PAGE_SIZE,
    index_pattern: Optional[str] = None,
) -> List[HostRecord]:
    """
    Return hosts that emitted at least one log record in window for one account.

    The faceted NRQL has no continuation token, so a page holding exactly
    page_size rows is followed by a query for hostname > max(hostname) of that
    page. An account without matching logs yields an empty list.
    """
    context: Dict[str, Any] = {"step": "logs", "account_id": account_id, "window": window.label}
    page = {"number": 0}

    def fetch(watermark: Optional[str]) -> List[Dict[str, Any]]:
        page["number"] += 1
        page_context = {**context, "page": page["number"]}
        if watermark is not None:
            LOG.debug("Requerying log hosts above watermark", extra={**page_context, "watermark": watermark})
        data = executor.execute(
            LOG_HOSTS_QUERY,
            log_hosts_variables(
                account_id,
                window,
                page_size=page_size,
                index_pattern=index_pattern,
                after=watermark,
            ),
            context=page_context,
        )
        if not data:
            LOG.warning("Log host page contributed nothing; listing is incomplete", extra=page_context)
            return []
        try:
            results = data["actor"]["account"]["nrql"]["results"]
        except (KeyError, TypeError):
            LOG.warning("Unexpected NRQL payload shape", extra=page_context)
            return []
        return [r for r in results or [] if isinstance(r, dict)]

    hosts: List[HostRecord] = []
    for rows in paginate_watermark(
        fetch,
        key=_row_hostname,
        page_size=page_size,
        context=f"logs account={account_id} window={window.label}",
    ):
        for row in rows:
            hostname = _row_hostname(row)
            if not hostname:
                continue
            hosts.append(HostRecord(account_id=account_id, hostname=hostname, log_count=_row_count(row)))

    LOG.info(
        "Log hosts listed",
        extra={**context, "phase": "complete", "count": len(hosts), "pages": page["number"]},
    )
    return hosts
