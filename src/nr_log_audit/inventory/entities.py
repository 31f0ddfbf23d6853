from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..logging import get_logger
from ..models import HostRecord
from ..nerdgraph.client import QueryExecutor
from ..nerdgraph.queries import INVENTORY_HOSTS_QUERY, inventory_hosts_variables
from ..util.errors import PaginationStalledError
from ..util.pagination import paginate

LOG = get_logger(__name__)

ProgressCallback = Callable[[Optional[int], int], None]


def _host_from_entity(entity: Dict[str, Any]) -> Optional[HostRecord]:
    guid = entity.get("guid")
    name = entity.get("name")
    if not guid or not name:
        return None
    try:
        account_id = int(entity.get("accountId"))
    except (TypeError, ValueError):
        return None
    reporting = entity.get("reporting")
    return HostRecord(
        account_id=account_id,
        hostname=str(name),
        host_id=str(guid),
        reporting=reporting if isinstance(reporting, bool) else None,
    )


def list_inventory_hosts(
    executor: QueryExecutor,
    *,
    tag: Optional[Tuple[str, str]] = None,
    on_page: Optional[ProgressCallback] = None,
) -> List[HostRecord]:
    """
    Page through every infrastructure host entity visible to the API key.

    - Follows nextCursor until a page has none.
    - The server-declared count is only passed to on_page(count, fetched) for progress.
    - Entities without a GUID or name are dropped; nothing is deduplicated.
    - Raises PaginationStalledError if a cursor or a page repeats; the hosts
      gathered before the stall ride along on the error as partial.
    - If a page cannot be fetched after the retry, hosts gathered so far are
      returned and a warning names the page.
    """
    declared: Dict[str, Optional[int]] = {"count": None}
    state = {"page": 0, "fetched": 0, "dropped": 0}

    def fetch(cursor: Optional[str]) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        state["page"] += 1
        context = {"step": "inventory", "page": state["page"]}
        data = executor.execute(
            INVENTORY_HOSTS_QUERY,
            inventory_hosts_variables(tag, cursor),
            context=context,
        )
        if not data:
            LOG.warning("Inventory page contributed nothing; listing is incomplete", extra=context)
            return [], None
        try:
            search = data["actor"]["entitySearch"]
            results = search["results"] or {}
        except (KeyError, TypeError):
            LOG.warning("Unexpected entity search payload shape", extra=context)
            return [], None
        if declared["count"] is None and search.get("count") is not None:
            declared["count"] = int(search["count"])
        entities = [e for e in results.get("entities") or [] if isinstance(e, dict)]
        state["fetched"] += len(entities)
        if on_page is not None:
            on_page(declared["count"], state["fetched"])
        return entities, results.get("nextCursor")

    def page_key(entities: Sequence[Dict[str, Any]]) -> Tuple[Any, ...]:
        return tuple(e.get("guid") for e in entities)

    hosts: List[HostRecord] = []
    try:
        for entity in paginate(fetch, page_key=page_key, context="inventory"):
            host = _host_from_entity(entity)
            if host is None:
                state["dropped"] += 1
                continue
            hosts.append(host)
    except PaginationStalledError as e:
        e.partial = tuple(hosts)
        raise

    LOG.info(
        "Inventory hosts listed",
        extra={
            "step": "inventory",
            "phase": "complete",
            "declared_count": declared["count"],
            "count": len(hosts),
            "dropped": state["dropped"],
            "pages": state["page"],
        },
    )
    return hosts
