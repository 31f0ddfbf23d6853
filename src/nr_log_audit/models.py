from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


@dataclass(frozen=True)
class Account:
    id: int
    name: Optional[str] = None


@dataclass(frozen=True)
class HostRecord:
    """
    A host seen by one side of the audit.

    Inventory records carry the entity GUID in host_id; records derived from
    log data only ever know the hostname and carry log_count instead.
    Reconciliation keys on hostname (exact, case-sensitive).
    """

    account_id: int
    hostname: str
    host_id: Optional[str] = None
    log_count: Optional[int] = None
    reporting: Optional[bool] = None

    @property
    def from_inventory(self) -> bool:
        return bool(self.host_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accountId": self.account_id,
            "hostname": self.hostname,
            "hostId": self.host_id,
            "logCount": self.log_count,
            "reporting": self.reporting,
        }


class LogWindow(Enum):
    DAY1 = ("day1", "SINCE 1 DAY AGO")
    DAY2 = ("day2", "SINCE 2 DAYS AGO UNTIL 1 DAY AGO")

    def __init__(self, label: str, nrql_range: str) -> None:
        self.label = label
        self.nrql_range = nrql_range

    def __str__(self) -> str:
        return self.label


RESULT_FIELDS = ("inventory_only", "logs_only", "newly_missing", "newly_appeared")


@dataclass(frozen=True)
class ReconciliationResult:
    inventory_only: FrozenSet[HostRecord] = field(default_factory=frozenset)
    logs_only: FrozenSet[HostRecord] = field(default_factory=frozenset)
    newly_missing: FrozenSet[HostRecord] = field(default_factory=frozenset)
    newly_appeared: FrozenSet[HostRecord] = field(default_factory=frozenset)
    inventory_total: int = 0
    day1_total: int = 0
    day2_total: int = 0

    def hostnames(self, name: str) -> FrozenSet[str]:
        if name not in RESULT_FIELDS:
            raise KeyError(name)
        return frozenset(h.hostname for h in getattr(self, name))

    def sorted_records(self, name: str) -> List[HostRecord]:
        if name not in RESULT_FIELDS:
            raise KeyError(name)
        return sorted(getattr(self, name), key=lambda h: (h.hostname, h.account_id))

    def summary(self) -> Dict[str, int]:
        return {
            "inventory_only": len(self.inventory_only),
            "logs_only": len(self.logs_only),
            "newly_missing": len(self.newly_missing),
            "newly_appeared": len(self.newly_appeared),
            "inventory_total": self.inventory_total,
            "day1_total": self.day1_total,
            "day2_total": self.day2_total,
        }
