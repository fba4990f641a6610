"""
Short-TTL in-memory cache for message lists and per-user summaries.

Keys:
    mail:messages:<account_id>:<folder>   ordered list of MailMessage (5 minutes)
    mail:summary:<user_id>                MailSummary (2 minutes)

An empty list is a valid cached value; get() returns None only on a miss.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from .providers.base import folder_type

logger = logging.getLogger(__name__)

MESSAGES_TTL = 300.0
SUMMARY_TTL = 120.0


def messages_key(account_id: str, folder: str = "inbox") -> str:
    # Logical folder names fold case; mailbox names and folder ids do not
    ftype = folder_type(folder)
    return f"mail:messages:{account_id}:{ftype.value if ftype is not None else folder}"


def messages_prefix(account_id: str) -> str:
    return f"mail:messages:{account_id}:"


def summary_key(user_id: str) -> str:
    return f"mail:summary:{user_id}"


class KeyedLocks:
    """
    A fixed pool of locks selected by key hash.

    Operations on the same key always take the same lock; operations on
    different keys usually do not contend.
    """

    def __init__(self, stripes: int = 64):
        self._locks = [threading.Lock() for _ in range(stripes)]

    def __call__(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]


@dataclass
class CacheEntry:
    value: Any
    created_at: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.created_at >= self.ttl


class MessageCache:
    """
    TTL cache with per-key locking.

    Args:
        messages_ttl: TTL for message-list entries, in seconds
        summary_ttl: TTL for summary entries, in seconds
        clock: Monotonic time source (injectable for tests)
    """

    def __init__(
        self,
        messages_ttl: float = MESSAGES_TTL,
        summary_ttl: float = SUMMARY_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.messages_ttl = messages_ttl
        self.summary_ttl = summary_ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock_for = KeyedLocks()
        self._hits = 0
        self._misses = 0

    def _default_ttl(self, key: str) -> float:
        if key.startswith("mail:summary:"):
            return self.summary_ttl
        return self.messages_ttl

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None if absent or expired."""
        with self._lock_for(key):
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if entry.expired(self._clock()):
                del self._entries[key]
                self._misses += 1
                return None
            self._hits += 1
            return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Store a value. TTL defaults by key type."""
        entry = CacheEntry(
            value=value,
            created_at=self._clock(),
            ttl=ttl if ttl is not None else self._default_ttl(key),
        )
        with self._lock_for(key):
            self._entries[key] = entry

    def invalidate(self, key: str) -> bool:
        """Remove a key immediately. Returns True if it was present."""
        with self._lock_for(key):
            return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        """Remove every key starting with prefix. Returns the number removed."""
        removed = 0
        for key in [k for k in list(self._entries) if k.startswith(prefix)]:
            if self.invalidate(key):
                removed += 1
        if removed:
            logger.debug(f"Invalidated {removed} cache entries with prefix {prefix}")
        return removed

    def clear(self) -> int:
        count = 0
        for key in list(self._entries):
            if self.invalidate(key):
                count += 1
        return count

    # ============ Typed helpers ============

    def get_messages(self, account_id: str, folder: str = "inbox") -> Optional[List[Any]]:
        return self.get(messages_key(account_id, folder))

    def set_messages(self, account_id: str, folder: str, messages: List[Any]) -> None:
        self.set(messages_key(account_id, folder), list(messages), self.messages_ttl)

    def invalidate_account(self, account_id: str) -> int:
        """Drop every cached folder for an account."""
        return self.invalidate_prefix(messages_prefix(account_id))

    def get_summary(self, user_id: str) -> Optional[Any]:
        return self.get(summary_key(user_id))

    def set_summary(self, user_id: str, summary: Any) -> None:
        self.set(summary_key(user_id), summary, self.summary_ttl)

    def invalidate_summary(self, user_id: str) -> bool:
        return self.invalidate(summary_key(user_id))

    def invalidate_user(self, user_id: str, account_ids: List[str]) -> None:
        """Drop the user's summary and all cached folders for the given accounts."""
        self.invalidate_summary(user_id)
        for account_id in account_ids:
            self.invalidate_account(account_id)

    @property
    def stats(self) -> Dict[str, Any]:
        total = self._hits + self._misses
        return {
            'size': len(self._entries),
            'hits': self._hits,
            'misses': self._misses,
            'hit_rate': self._hits / total if total else 0.0,
            'messages_ttl': self.messages_ttl,
            'summary_ttl': self.summary_ttl,
        }
