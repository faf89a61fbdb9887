#!/usr/bin/env python3
"""
In-memory TTL cache shared by the request handlers

One ResultCache is constructed per process in app.main() and handed to the
components that need it. Entries are whole snapshots (a namespace list, a
cached API response), so concurrent writers to the same key simply race and
the last write wins.
"""

import json
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

# Default TTL for cached namespace listings and API responses (seconds)
DEFAULT_CACHE_TTL = 600


@dataclass
class CacheEntry:
    key: str
    data: object
    timestamp: float

    @property
    def timestamp_iso(self):
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc).isoformat()


class ResultCache:
    """Thread-safe in-memory cache with TTL

    Args:
        ttl_seconds: Default lifetime of an entry
        clock: Callable returning the current time in epoch seconds
            (time.time by default, replaceable in tests)
    """

    def __init__(self, ttl_seconds=DEFAULT_CACHE_TTL, clock=time.time):
        self.ttl = ttl_seconds
        self.clock = clock
        self._entries = {}
        self._lock = threading.Lock()

    def _is_valid(self, entry, ttl):
        return self.clock() - entry.timestamp < ttl

    def get_entry(self, key, ttl=None, force_refresh=False):
        """Return the CacheEntry for key if present and not expired

        force_refresh bypasses the lookup entirely (the caller is expected to
        write a fresh value afterwards).
        """
        if force_refresh:
            logger.debug(f"Cache bypass (force refresh): {key}")
            return None
        ttl = self.ttl if ttl is None else ttl
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._is_valid(entry, ttl):
                logger.debug(f"Cache hit: {key}")
                return entry
            logger.debug(f"Cache expired: {key}")
            del self._entries[key]
            return None

    def get(self, key, ttl=None, force_refresh=False):
        """Get value from cache if not expired"""
        entry = self.get_entry(key, ttl=ttl, force_refresh=force_refresh)
        return entry.data if entry else None

    def set(self, key, value):
        """Set value in cache and return the stored entry"""
        entry = CacheEntry(key=key, data=value, timestamp=self.clock())
        with self._lock:
            self._entries[key] = entry
        logger.debug(f"Cache set: {key}")
        return entry

    def delete(self, key):
        with self._lock:
            removed = self._entries.pop(key, None) is not None
        if removed:
            logger.info(f"Cleared cache for key: {key}")
        return removed

    def clear(self):
        """Clear all cache"""
        with self._lock:
            self._entries.clear()
        logger.info("Cache cleared")

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def stats(self):
        """Summarize cache contents

        Returns:
            dict: size, total_size_bytes (rough JSON-encoded estimate) and a
                keys list of {key, age_sec, size_bytes}
        """
        now = self.clock()
        with self._lock:
            entries = list(self._entries.values())
        keys = []
        total = 0
        for entry in entries:
            size = len(json.dumps(entry.data, default=str))
            total += size
            keys.append({
                'key': entry.key,
                'age_sec': round(now - entry.timestamp, 3),
                'size_bytes': size,
            })
        return {'size': len(entries), 'total_size_bytes': total, 'keys': keys}

    async def get_or_set(self, key, fetch, ttl=None, force_refresh=False):
        """Return cached data for key, or await fetch() and cache its result

        Args:
            key: Cache key
            fetch: Zero-argument coroutine function producing the value
            ttl: Optional TTL override for the validity check
            force_refresh: Skip the cache lookup

        Returns:
            dict: {'data', 'fromCache', 'cachedAt'}
        """
        entry = self.get_entry(key, ttl=ttl, force_refresh=force_refresh)
        if entry is not None:
            return {'data': entry.data, 'fromCache': True, 'cachedAt': entry.timestamp_iso}

        logger.debug(f"Cache miss or refresh forced for key: {key}")
        data = await fetch()
        entry = self.set(key, data)
        return {'data': data, 'fromCache': False, 'cachedAt': entry.timestamp_iso}
