"""Module level API backed by one lazily created default resolver."""
import threading
from typing import Dict, Optional
from .config import logger, CACHE_ENABLED
from .light_url import LightURL
from .resolve import Resolver
from .sqlite_cache import SQLiteCache

_default_resolver: Optional[Resolver] = None
_default_lock = threading.Lock()


def default_resolver() -> Resolver:
    """Return the process-wide resolver, creating it on first use."""
    global _default_resolver
    with _default_lock:
        if _default_resolver is None:
            cache = SQLiteCache() if CACHE_ENABLED else None
            logger.debug(f"Creating default resolver (cache={'sqlite' if cache else 'disabled'})")
            _default_resolver = Resolver(cache=cache)
        return _default_resolver


async def resolve_protocol(protocol, name: str, **opts) -> Optional[str]:
    return await default_resolver().resolve_protocol(protocol, name, **opts)


async def resolve(name: str, **opts) -> Dict[str, Optional[str]]:
    return await default_resolver().resolve(name, **opts)


async def resolve_url(input: str, **opts) -> LightURL:
    return await default_resolver().resolve_url(input, **opts)


async def resolve_name(name: str, protocol='hyper', **opts) -> str:
    return await default_resolver().resolve_name(name, protocol, **opts)


async def clear():
    await default_resolver().clear()


async def clear_name(name: str):
    await default_resolver().clear_name(name)


async def flush():
    await default_resolver().flush()


async def close():
    """Close the default resolver; the next call creates a new one."""
    global _default_resolver
    with _default_lock:
        resolver, _default_resolver = _default_resolver, None
    if resolver is not None:
        await resolver.close()
