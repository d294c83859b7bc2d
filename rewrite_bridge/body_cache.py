"""Content-addressed cache of transform results.

Keys are the SHA-256 digest of the *raw* body, so two URLs serving
byte-identical bodies share one entry.  Entries are immutable: the
first value stored for a key is the one that stays.

The cache is shared by the CDP sessions (main loop) and the mitmproxy
addon (its own thread and loop), so every access goes through a
``threading.Lock``.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    inserts: int = 0
    evictions: int = 0


def body_key(raw: bytes) -> bytes:
    return hashlib.sha256(raw).digest()


class BodyCache:
    """Maps raw body → transformed body.

    Parameters
    ----------
    max_entries:
        ``None`` or ``0`` keeps every entry for the life of the process.
        A positive value enables least-recently-used eviction.
    """

    def __init__(self, max_entries: Optional[int] = None) -> None:
        self.max_entries: Optional[int] = max_entries or None
        self.stats: CacheStats = CacheStats()
        self._entries: OrderedDict[bytes, bytes] = OrderedDict()
        self._lock: threading.Lock = threading.Lock()

    def get(self, raw: bytes) -> Optional[bytes]:
        key = body_key(raw)
        with self._lock:
            value = self._entries.get(key)
            if value is None:
                self.stats.misses += 1
                return None
            self.stats.hits += 1
            if self.max_entries:
                self._entries.move_to_end(key)
            return value

    def put(self, raw: bytes, transformed: bytes) -> bytes:
        """Store *transformed* for *raw* unless an entry already exists.

        Returns the value that is in the cache after the call.
        """
        key = body_key(raw)
        with self._lock:
            existing = self._entries.get(key)
            if existing is not None:
                return existing
            self._entries[key] = transformed
            self.stats.inserts += 1
            if self.max_entries and len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
                self.stats.evictions += 1
            return transformed

    def __contains__(self, raw: object) -> bool:
        if not isinstance(raw, (bytes, bytearray)):
            return False
        key = body_key(bytes(raw))
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.debug("Cleared %d cache entries", count)
        return count
