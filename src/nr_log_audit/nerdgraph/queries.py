from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from ..models import LogWindow

ACCOUNTS_QUERY = """
query accessibleAccounts {
  actor {
    accounts {
      id
      name
    }
  }
}
"""

INVENTORY_HOSTS_QUERY = """
query inventoryHosts($queryBuilder: EntitySearchQueryBuilder, $cursor: String) {
  actor {
    entitySearch(queryBuilder: $queryBuilder) {
      count
      results(cursor: $cursor) {
        nextCursor
        entities {
          ... on InfrastructureHostEntityOutline {
            guid
            name
            accountId
            reporting
          }
        }
      }
    }
  }
}
"""

LOG_HOSTS_QUERY = """
query logHosts($accountId: Int!, $nrql: Nrql!) {
  actor {
    account(id: $accountId) {
      nrql(query: $nrql) {
        results
        metadata {
          timeWindow {
            begin
            end
          }
        }
      }
    }
  }
}
"""


def nrql_string(value: str) -> str:
    """Render value as a single-quoted NRQL string literal."""
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def parse_tag(raw: Optional[str]) -> Optional[Tuple[str, str]]:
    """Parse a 'key=value' tag filter. Empty input means no filter."""
    if raw is None or not raw.strip():
        return None
    key, sep, value = raw.partition("=")
    key = key.strip()
    value = value.strip()
    if not sep or not key or not value:
        raise ValueError(f"Tag filter must look like key=value, got: {raw!r}")
    return key, value


def inventory_hosts_variables(tag: Optional[Tuple[str, str]], cursor: Optional[str]) -> Dict[str, Any]:
    builder: Dict[str, Any] = {"domain": "INFRA", "type": "HOST"}
    if tag:
        builder["tags"] = [{"key": tag[0], "value": tag[1]}]
    return {"queryBuilder": builder, "cursor": cursor}


def build_log_hosts_nrql(
    window: LogWindow,
    *,
    page_size: int,
    index_pattern: Optional[str] = None,
    after: Optional[str] = None,
) -> str:
    """
    Build the faceted log-host NRQL for one page.

    ORDER BY hostname is required: watermark pagination relies on every page
    holding the lowest hostnames above the previous watermark.
    """
    conditions: List[str] = []
    if index_pattern:
        conditions.append(f"indexname LIKE {nrql_string(index_pattern)}")
    if after is not None:
        conditions.append(f"hostname > {nrql_string(after)}")
    parts = ["SELECT count(*) FROM Log"]
    if conditions:
        parts.append("WHERE " + " AND ".join(conditions))
    parts.append("FACET hostname ORDER BY hostname")
    parts.append(f"LIMIT {int(page_size)}")
    parts.append(window.nrql_range)
    return " ".join(parts)


def log_hosts_variables(
    account_id: int,
    window: LogWindow,
    *,
    page_size: int,
    index_pattern: Optional[str] = None,
    after: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "accountId": int(account_id),
        "nrql": build_log_hosts_nrql(window, page_size=page_size, index_pattern=index_pattern, after=after),
    }
