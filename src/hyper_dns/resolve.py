"""Resolution engine: cache, live lookup, fallback and request coalescing.

``Resolver`` owns the in-flight process map, the shared HTTP client and
the DoH upstream health state. Every public coroutine takes option
overrides as keyword arguments (see ``ResolveOptions``).
"""
import asyncio
import math
import re
import time
from typing import Callable, Dict, List, Optional
import httpx
from .config import logger
from .errors import NotFQDNError, RecordNotFoundError
from .global_metrics import GlobalMetrics
from .light_url import LightURL, parse_url
from .options import DEFAULTS, ResolveOptions
from .cache import now_ms
from .resolve_context import KEY_ONLY_CONTEXT, ResolveContext
from .system_dns import resolve_txt
from .upstream_manager import UpstreamManager

VALID_PROTOCOL = re.compile(r'^[^:]+$')

# Errors that must never be turned into a miss or a cache fallback
PASSTHROUGH_ERRORS = (TypeError,)


def protocol_name(protocol: Callable) -> str:
    return protocol.__name__


def get_protocol(opts: ResolveOptions, input) -> Callable:
    """Find a protocol by name, or accept a protocol function as-is."""
    if callable(input):
        protocol = input
    else:
        protocol = next((p for p in opts.protocols if protocol_name(p) == input), None)
    if protocol is None:
        supported = ', '.join(protocol_name(p) for p in opts.protocols)
        raise TypeError(f"Unsupported protocol {input}, supported protocols are [{supported}]")
    if not VALID_PROTOCOL.match(protocol_name(protocol)):
        raise TypeError(f'Protocol name "{protocol_name(protocol)}" is invalid, it needs to match {VALID_PROTOCOL.pattern}')
    return protocol


def supports_protocol(opts: ResolveOptions, name: str) -> bool:
    return any(protocol_name(p) == name for p in opts.protocols)


def get_protocols(opts: ResolveOptions) -> List[Callable]:
    """All protocols, the ones named in ``protocol_preference`` first."""
    preferred = [get_protocol(opts, p) for p in (opts.protocol_preference or ())]
    return preferred + [p for p in opts.protocols if p not in preferred]


def sanitize_ttl(ttl, min_ttl: int, max_ttl: int) -> Optional[int]:
    """Clamp a ttl into ``[min_ttl, max_ttl]``. None stays None."""
    if ttl is None:
        return None
    if ttl < min_ttl:
        logger.debug(f"ttl={ttl} is less than min_ttl={min_ttl}, using min_ttl")
        return min_ttl
    if ttl > max_ttl:
        logger.debug(f"ttl={ttl} is more than max_ttl={max_ttl}, using max_ttl")
        return max_ttl
    return ttl


def _is_number(value) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return not math.isnan(value)


def is_entry_active(protocol: str, name: str, entry: Optional[dict], ignore_cached_miss: bool) -> bool:
    """True if a cache entry may be returned without a live lookup."""
    if entry is None:
        return False
    now = now_ms()
    if entry['expires'] < now:
        logger.debug(f"Cached entry for {protocol}:{name} has expired: {entry['expires']} < {now}")
        return False
    if entry['key'] is None and ignore_cached_miss:
        logger.debug(f"Ignoring cached miss for {protocol}:{name} because of user option.")
        return False
    return True


async def resolve_raw(opts: ResolveOptions, protocol: Callable, name: str) -> dict:
    """
    Run a protocol and turn its result into a cache entry.

    A result without ``ttl`` (or with an invalid one) uses ``opts.ttl``;
    an explicit ``ttl=None`` produces ``expires=None`` (not cacheable).
    """
    key = None
    ttl = opts.ttl
    result = await protocol(opts.context, name)
    if result is not None:
        key = result.get('key')
        ttl = result.get('ttl', opts.ttl)
        if ttl is not None and not (_is_number(ttl) and ttl >= 0):
            logger.debug(f"Invalid ttl={ttl!r} returned by {protocol_name(protocol)}, using ttl={opts.ttl}")
            ttl = opts.ttl
    ttl = sanitize_ttl(ttl, opts.min_ttl, opts.max_ttl)
    if key is None:
        logger.debug(f'Lookup of {protocol_name(protocol)}:{name}[ttl={ttl}] returned "None", marking it as a miss.')
    else:
        logger.debug(f"Successful lookup of {protocol_name(protocol)}:{name}[ttl={ttl}]: {key}")
    return {
        'key': key,
        'expires': None if ttl is None else now_ms() + ttl * 1000,
    }


async def get_cache_entry(opts: ResolveOptions, protocol: Callable, name: str) -> Optional[dict]:
    """Read and validate a cache entry. Broken entries are treated as absent."""
    pname = protocol_name(protocol)
    try:
        entry = await opts.cache.get(pname, name)
    except PASSTHROUGH_ERRORS:
        raise
    except Exception as e:
        logger.debug(f"Error while restoring {pname}:{name} from cache: {e}")
        return None
    if entry is None:
        return None
    if not isinstance(entry, dict):
        logger.debug(f"cache entry for {pname}:{name} was of unexpected type {type(entry).__name__}: {entry}")
        return None
    if not _is_number(entry.get('expires')):
        logger.debug(f"cache entry for {pname}:{name} contained unexpected expires, expected number was: {entry.get('expires')}")
        return None
    key = entry.get('key')
    if key is not None and await protocol(KEY_ONLY_CONTEXT, key) is None:
        # A valid key is one the protocol recognizes as a literal key
        logger.debug(f"cache entry for {pname}:{name} not identified as valid key: {key}")
        return None
    return {'key': key, 'expires': entry['expires']}


async def store_cache_entry(opts: ResolveOptions, protocol: Callable, name: str, entry: dict):
    """Persist an entry if it is cacheable. Failures are logged, never raised."""
    if opts.cache is None or entry['expires'] is None:
        return
    now = now_ms()
    if now >= entry['expires']:
        return
    if entry['expires'] > now + opts.max_ttl * 1000:
        return
    try:
        await opts.cache.set(protocol_name(protocol), name, entry)
    except PASSTHROUGH_ERRORS:
        raise
    except Exception as e:
        logger.warning(f"Error while storing protocol {protocol_name(protocol)} and name {name} in cache: {e}")


class Resolver:
    """
    Resolves names to keys for the configured protocols.

    Concurrent calls for the same protocol and name share one in-flight
    lookup unless ``ignore_cache`` is set.

    Example:
        resolver = Resolver(cache=LRUCache())
        key = await resolver.resolve_protocol('dat', 'datproject.org')
        keys = await resolver.resolve('datproject.org')
        await resolver.close()
    """

    def __init__(
        self,
        cache=None,
        client: Optional[httpx.AsyncClient] = None,
        dns_txt_fallback=resolve_txt,
        defaults: ResolveOptions = DEFAULTS,
        **overrides,
    ):
        """
        Initialize the resolver.

        Args:
            cache: Cache implementing get/set/clear/clear_name/flush/close, or None
            client: HTTP client; a private one is created on first use if omitted
            dns_txt_fallback: Coroutine ``(name) -> answers`` used when every DoH upstream failed
            defaults: Base options that per-call overrides are merged onto
            **overrides: Option fields replacing values of ``defaults``
        """
        self.defaults = defaults.merge(cache=cache, **overrides)
        self.dns_txt_fallback = dns_txt_fallback
        self.processes: Dict[tuple, asyncio.Future] = {}
        self.metrics = GlobalMetrics()
        self.upstream_manager = None
        if self.defaults.doh_lookups:
            self.upstream_manager = UpstreamManager(list(self.defaults.doh_lookups))
        self._client = client
        self._owns_client = client is None

    @property
    def cache(self):
        return self.defaults.cache

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=10.0)
        return self._client

    def create_context(self, opts: ResolveOptions) -> ResolveContext:
        """Create the context shared by all protocols of one call."""
        upstream_manager = None
        if self.upstream_manager is not None and list(opts.doh_lookups) == self.upstream_manager.urls:
            upstream_manager = self.upstream_manager
        return ResolveContext(
            opts,
            client=self._get_client(),
            dns_txt_fallback=self.dns_txt_fallback,
            upstream_manager=upstream_manager,
        )

    def _options(self, **overrides) -> ResolveOptions:
        opts = self.defaults.merge(**overrides)
        if opts.context is None:
            opts = opts.merge(context=self.create_context(opts))
        return opts

    async def _with_timeout(self, opts: ResolveOptions, coro):
        if opts.timeout:
            return await asyncio.wait_for(coro, opts.timeout)
        return await coro

    async def resolve_protocol(self, protocol, name: str, **opts) -> Optional[str]:
        """
        Resolve a name for one protocol.

        Returns:
            The key, or None if the protocol found nothing

        Raises:
            TypeError: If the protocol is not supported or misconfigured
        """
        opts = self._options(**opts)
        protocol = get_protocol(opts, protocol)
        return await self._with_timeout(opts, self._resolve_protocol(protocol, name, opts))

    async def resolve(self, name: str, **opts) -> Dict[str, Optional[str]]:
        """Resolve a name for every configured protocol in parallel."""
        opts = self._options(**opts)
        protocols = [get_protocol(opts, p) for p in opts.protocols]

        async def resolve_all():
            keys = await asyncio.gather(*(
                self._resolve_protocol(protocol, name, opts) for protocol in protocols
            ))
            return {protocol_name(p): key for p, key in zip(protocols, keys)}

        return await self._with_timeout(opts, resolve_all())

    async def resolve_url(self, input: str, **opts) -> LightURL:
        """
        Replace the hostname of a URL with its resolved key.

        A URL without protocol is tried against every protocol (preferred
        ones first) and falls back to ``fallback_protocol``. A URL with an
        unsupported protocol is returned unresolved.

        Raises:
            TypeError: If the URL has no hostname or a preference is unsupported
            RecordNotFoundError: If a supported protocol found no key
        """
        url = parse_url(input)
        if not url['hostname']:
            raise TypeError('URL needs to specify a hostname, just a path can not resolve to anything.')
        opts = self._options(**{'local_port': url['port'], **opts})

        async def resolve_hostname():
            p = url['protocol'][:-1] if url['protocol'] else None
            if p:
                if supports_protocol(opts, p):
                    key = await self._resolve_protocol(get_protocol(opts, p), url['hostname'], opts)
                    if key is None:
                        raise RecordNotFoundError(url['hostname'])
                    url['hostname'] = key
                return LightURL.from_parts(url)
            for protocol in get_protocols(opts):
                key = await self._resolve_protocol(protocol, url['hostname'], opts)
                if key is not None:
                    url.update(protocol=f'{protocol_name(protocol)}:', hostname=key, slashes='//')
                    break
            else:
                url['protocol'] = f'{opts.fallback_protocol}:'
            return LightURL.from_parts(url)

        return await self._with_timeout(opts, resolve_hostname())

    async def resolve_name(self, name: str, protocol='hyper', **opts) -> str:
        """
        Resolve a name or URL to the key of one protocol.

        Raises:
            NotFQDNError: If the name is neither a key nor a fully qualified domain
            RecordNotFoundError: If no key was found
        """
        parts = parse_url(name)
        hostname = parts['hostname'] or name
        resolved_protocol = get_protocol(self.defaults.merge(**opts), protocol)
        record = await resolved_protocol(KEY_ONLY_CONTEXT, hostname)
        if record is not None and record.get('key') is not None:
            return record['key']
        if '.' not in hostname and hostname != 'localhost':
            raise NotFQDNError(hostname)
        key = await self.resolve_protocol(resolved_protocol, hostname, **opts)
        if key is None:
            raise RecordNotFoundError(hostname)
        return key

    async def _resolve_protocol(self, protocol: Callable, name: str, opts: ResolveOptions) -> Optional[str]:
        process_key = (protocol_name(protocol), name)
        if not opts.ignore_cache:
            process = self.processes.get(process_key)
            if process is not None:
                logger.debug(f"reusing ongoing process to resolve {process_key[0]}:{name}")
                self.metrics.record_coalesced()
                # Cancelling one waiter must not abort the lookup the others wait for
                return await asyncio.shield(process)
        process = asyncio.ensure_future(self._lookup(protocol, name, opts))
        if not opts.ignore_cache:
            self.processes[process_key] = process
            process.add_done_callback(lambda done: self._settle(process_key, done))
        return await process

    def _settle(self, process_key: tuple, process: asyncio.Future):
        if self.processes.get(process_key) is process:
            del self.processes[process_key]

    async def _lookup(self, protocol: Callable, name: str, opts: ResolveOptions) -> Optional[str]:
        pname = protocol_name(protocol)
        cached_entry = None
        if not opts.ignore_cache and opts.cache is not None:
            cached_entry = await get_cache_entry(opts, protocol, name)
            if is_entry_active(pname, name, cached_entry, opts.ignore_cached_miss):
                logger.debug(f"cache resolved {pname}:{name} to {cached_entry['key']}")
                self.metrics.record_cache_hit()
                return cached_entry['key']
        start_time = time.time()
        try:
            entry = await resolve_raw(opts, protocol, name)
        except PASSTHROUGH_ERRORS:
            raise
        except Exception as e:
            return await self._fallback_to_cache(opts, protocol, name, cached_entry, e)
        self.metrics.record_live_lookup(time.time() - start_time)
        await store_cache_entry(opts, protocol, name, entry)
        return entry['key']

    async def _fallback_to_cache(self, opts, protocol, name, cached_entry, error) -> Optional[str]:
        pname = protocol_name(protocol)
        if opts.ignore_cache and opts.cache is not None:
            logger.debug(f"Falling back to cache, as error occurred while looking up {pname}:{name}: {error}")
            cached_entry = await get_cache_entry(opts, protocol, name)
        elif cached_entry is not None:
            logger.debug(f"Using cached entry(expires={cached_entry['expires']}) because looking up {pname}:{name} failed: {error}")
        if cached_entry is not None:
            self.metrics.record_stale_fallback()
            return cached_entry['key']
        logger.debug(f"Error while looking up {pname}:{name}: {error}")
        self.metrics.record_failed_lookup()
        return None

    async def clear(self):
        """Remove every cached entry."""
        if self.cache is not None:
            logger.debug("clearing cache")
            await self.cache.clear()

    async def clear_name(self, name: str):
        """Remove the cached entries of all protocols for a name."""
        if self.cache is not None:
            logger.debug(f"deleting cache entries of {name}")
            await self.cache.clear_name(name)

    async def flush(self):
        """Remove expired cache entries."""
        if self.cache is not None:
            logger.debug("flushing cache")
            await self.cache.flush()

    def log_stats(self):
        if self.upstream_manager is not None:
            self.upstream_manager.log_stats()
        self.metrics.log_stats()

    async def close(self):
        """Close the cache and the HTTP client owned by this resolver."""
        if self.cache is not None:
            await self.cache.close()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
