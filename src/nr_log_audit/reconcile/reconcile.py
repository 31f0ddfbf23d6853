from __future__ import annotations

from typing import FrozenSet, Iterable, Set

from ..models import HostRecord, ReconciliationResult


def _index_by_hostname(records: Iterable[HostRecord]) -> Set[str]:
    return {r.hostname for r in records if r.hostname}


def difference_by_hostname(left: Iterable[HostRecord], right: Iterable[HostRecord]) -> FrozenSet[HostRecord]:
    """
    Records of left whose hostname does not occur in right.
    right is indexed once, so this is linear in len(left) + len(right).
    """
    present = _index_by_hostname(right)
    return frozenset(r for r in left if r.hostname not in present)


def reconcile(
    inventory_hosts: Iterable[HostRecord],
    log_hosts_day1: Iterable[HostRecord],
    log_hosts_day2: Iterable[HostRecord],
) -> ReconciliationResult:
    """
    Compare inventory hosts with log-emitting hosts of the last two 24h windows.

    - inventory_only: in inventory, no logs in day1
    - logs_only: logs in day1, not in inventory
    - newly_missing: logs in day2 (the older window), none in day1
    - newly_appeared: logs in day1, none in day2
    """
    inventory = list(inventory_hosts)
    day1 = list(log_hosts_day1)
    day2 = list(log_hosts_day2)
    return ReconciliationResult(
        inventory_only=difference_by_hostname(inventory, day1),
        logs_only=difference_by_hostname(day1, inventory),
        newly_missing=difference_by_hostname(day2, day1),
        newly_appeared=difference_by_hostname(day1, day2),
        inventory_total=len(inventory),
        day1_total=len(day1),
        day2_total=len(day2),
    )
