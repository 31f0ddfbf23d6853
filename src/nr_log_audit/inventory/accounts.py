from __future__ import annotations

from typing import Any, List

from ..logging import get_logger
from ..models import Account
from ..nerdgraph.client import QueryExecutor
from ..nerdgraph.queries import ACCOUNTS_QUERY

LOG = get_logger(__name__)


def list_accounts(executor: QueryExecutor) -> List[Account]:
    """
    Return accounts accessible to the executor's API key, sorted by id.

    An empty list means the key is invalid or the API is unreachable; the
    caller decides whether that ends the run.
    """
    data = executor.execute(ACCOUNTS_QUERY, context={"step": "accounts"})
    if not data:
        return []
    try:
        raw: Any = data["actor"]["accounts"]
    except (KeyError, TypeError):
        LOG.error("Unexpected accounts payload shape", extra={"step": "accounts"})
        return []
    accounts = {}
    for item in raw or []:
        if not isinstance(item, dict) or item.get("id") is None:
            continue
        try:
            account_id = int(item["id"])
        except (TypeError, ValueError):
            continue
        accounts[account_id] = Account(id=account_id, name=item.get("name"))
    return [accounts[k] for k in sorted(accounts)]
