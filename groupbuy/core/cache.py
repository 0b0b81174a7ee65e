"""Keyed store with explicit time-to-live.

Entries are checked for expiry when read; nothing runs in the background,
so no timers outlive the process or leak between restarts.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Generic, TypeVar

from .clock import Clock, utc_now
from .models import GroupDiscount

logger = logging.getLogger(__name__)

K = TypeVar("K")
V = TypeVar("V")


@dataclass(frozen=True)
class _Entry(Generic[V]):
    value: V
    expires_at: datetime


class ExpiringCache(Generic[K, V]):
    """In-memory key/value store whose entries expire after ``ttl``."""

    def __init__(self, ttl: timedelta, clock: Clock | None = None):
        if ttl <= timedelta(0):
            raise ValueError(f"ttl must be positive, got {ttl}")
        self.ttl = ttl
        self._clock = clock or utc_now
        self._entries: dict[K, _Entry[V]] = {}

    def put(self, key: K, value: V) -> datetime:
        """Store ``value`` under ``key`` and return its expiry instant."""
        expires_at = self._clock() + self.ttl
        self._entries[key] = _Entry(value=value, expires_at=expires_at)
        return expires_at

    def get(self, key: K) -> V | None:
        """Return the live value for ``key``, evicting it if expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            logger.debug("Evicted expired cache entry", extra={"key": str(key)})
            return None
        return entry.value

    def pop(self, key: K) -> V | None:
        entry = self._entries.pop(key, None)
        return entry.value if entry else None

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class GroupDiscountCache(ExpiringCache[str, GroupDiscount]):
    """Host-applied voucher discounts keyed by group id."""

    def remember(self, discount: GroupDiscount) -> datetime:
        return self.put(discount.group_id, discount)

    def lookup(self, group_id: str) -> GroupDiscount | None:
        return self.get(group_id)
