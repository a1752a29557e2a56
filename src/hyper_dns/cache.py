"""In-memory LRU cache of resolved keys."""
import time
from collections import OrderedDict
from typing import Optional
from .config import logger, CACHE_MAX_SIZE


def now_ms() -> float:
    return time.time() * 1000


def _cache_key(protocol: str, name: str) -> str:
    return f"{protocol}:{name}"


class LRUCache:
    """
    Bounded in-memory cache of ``{'key': ..., 'expires': ...}`` entries.

    Entries are stored per ``"{protocol}:{name}"``; once ``max_size`` is
    exceeded the least recently used entry is evicted. Expired entries are
    kept until ``flush()`` so the resolver can fall back to them.
    """

    def __init__(self, max_size: int = CACHE_MAX_SIZE):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self._cache = OrderedDict()

    def __len__(self):
        return len(self._cache)

    async def get(self, protocol: str, name: str) -> Optional[dict]:
        """Retrieve the cached entry for a protocol and name."""
        key = _cache_key(protocol, name)
        entry = self._cache.get(key)
        if entry is not None:
            self._cache.move_to_end(key)
        return entry

    async def set(self, protocol: str, name: str, entry: dict):
        """Store an entry, replacing the previous one for the same protocol and name."""
        key = _cache_key(protocol, name)
        self._cache[key] = entry
        self._cache.move_to_end(key)
        while len(self._cache) > self.max_size:
            self._cache.popitem(last=False)

    async def clear(self):
        self._cache.clear()

    async def clear_name(self, name: str):
        """Remove the entries of every protocol for a name."""
        for key in list(self._cache):
            _, _, key_name = key.partition(':')
            if key_name == name:
                del self._cache[key]

    async def flush(self):
        """Cleanup expired entries."""
        now = now_ms()
        keys_to_remove = [
            k for k, v in self._cache.items()
            if v.get('expires') is not None and v['expires'] < now
        ]
        for k in keys_to_remove:
            del self._cache[k]
        if keys_to_remove:
            logger.debug(f"Flushed {len(keys_to_remove)} expired cache entries")

    async def close(self):
        pass
