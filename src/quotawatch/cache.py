import threading
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Mapping, Protocol

from quotawatch.models import Metric


@dataclass(frozen=True, slots=True)
class CachedGroup:
    """
    CachedGroup is the last successful contribution of one metric
    group: the metrics and reset times the source wrote, and when.
    """

    metrics: "Mapping[str, Metric]"
    resets: "Mapping[str, datetime]"
    observed_at: "datetime"


class SnapshotCache(Protocol):
    """
    SnapshotCache is the resilience cache contract consumed by the
    coordinator. Implementations must be safe to call from concurrent
    fetch cycles. No expiry is imposed here: how old is too old is
    decided per provider through ProviderSpec.stale_after.
    """

    def put(
        self,
        account_id: "str",
        group_key: "str",
        metrics: "Mapping[str, Metric]",
        resets: "Mapping[str, datetime]",
        observed_at: "datetime",
    ) -> "None": ...

    def get(self, account_id: "str", group_key: "str") -> "CachedGroup | None": ...


class MemoryCache:
    """
    MemoryCache: Is the in-memory, process-lifetime implementation of
    SnapshotCache.

    Each (account_id, group_key) pair has its own lock so that get/put
    on the same pair serialize while unrelated pairs proceed
    independently. The registry lock guards the structure of both
    dicts and is only held for single lookups and updates; it is always
    taken after a pair's lock, never before.
    """

    def __init__(self) -> "None":
        self._registry_lock: "threading.Lock" = threading.Lock()
        self._locks: "dict[tuple[str, str], threading.Lock]" = {}
        self._entries: "dict[tuple[str, str], CachedGroup]" = {}

    def _lock_for(self, key: "tuple[str, str]") -> "threading.Lock":
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def put(
        self,
        account_id: "str",
        group_key: "str",
        metrics: "Mapping[str, Metric]",
        resets: "Mapping[str, datetime]",
        observed_at: "datetime",
    ) -> "None":
        """
        stores a copy of the group's values, replacing any previous one.
        """
        key = (account_id, group_key)
        entry = CachedGroup(
            metrics=MappingProxyType(dict(metrics)),
            resets=MappingProxyType(dict(resets)),
            observed_at=observed_at,
        )
        with self._lock_for(key):
            with self._registry_lock:
                self._entries[key] = entry

    def get(self, account_id: "str", group_key: "str") -> "CachedGroup | None":
        key = (account_id, group_key)
        with self._lock_for(key):
            with self._registry_lock:
                return self._entries.get(key)

    def groups(self, account_id: "str") -> "list[str]":
        """
        returns the cached group keys for an account.
        """
        with self._registry_lock:
            keys = list(self._entries)
        return sorted(group for acct, group in keys if acct == account_id)

    def forget(self, account_id: "str") -> "int":
        """
        removes every cached group of an account, along with the
        per-group locks. Returns the number of removed groups.
        """
        removed = 0
        for group in self.groups(account_id):
            key = (account_id, group)
            with self._lock_for(key):
                with self._registry_lock:
                    if self._entries.pop(key, None) is not None:
                        removed += 1
                    self._locks.pop(key, None)
        return removed
