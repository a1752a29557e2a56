"""Lookup capabilities shared by all protocols of one resolve call.

A ``ResolveContext`` is created once per top-level call and handed to every
protocol. It remembers the TXT answers per name for the duration of the
call so that protocols looking at the same domain share one DNS query.
"""
import asyncio
import math
import re
import time
from typing import Optional
import httpx
from .config import logger
from .options import DEFAULTS, ResolveOptions
from .system_dns import resolve_txt
from .upstream_manager import DohUpstream, UpstreamManager

TTL_REGEX = re.compile(r'^ttl=(\d+)$', re.IGNORECASE)
REDIRECT_STATUS = (301, 302, 307, 308)
# Marker for "use the ttl option" where None is a meaningful ttl
OPTIONS_TTL = object()


def is_local(name: str) -> bool:
    """True for names that must not be looked up over DNS."""
    if name == 'localhost':
        return True
    if name.endswith('.local') or name.endswith('.localhost'):
        return True
    return '.' not in name


def _require_key_group(pattern, label: str):
    if 'key' not in pattern.groupindex:
        raise TypeError(
            f"The {label} is not properly specified, it needs a named <key> group "
            f"like (?P<key>[0-9a-f]{{64}}): {pattern.pattern}"
        )


def _match_key(pattern, text: str, label: str) -> Optional[str]:
    match = pattern.search(text)
    if match is None:
        return None
    key = match.group('key')
    if key is None:
        raise TypeError(f"The {label} matched without a <key> group: {pattern.pattern}")
    return key


def match_regex(name: str, pattern):
    """Return ``{'key': name-key, 'ttl': None}`` if the name already is a key."""
    _require_key_group(pattern, 'regex to match a key')
    key = _match_key(pattern, name, 'regex to match a key')
    if key is None:
        return None
    logger.debug(f'No resolving of "{name}" needed, it is a key.')
    return {'key': key, 'ttl': None}


def _valid_ttl(ttl) -> bool:
    if isinstance(ttl, bool) or not isinstance(ttl, (int, float)):
        return False
    return not math.isnan(ttl) and ttl >= 0


class ResolveContext:
    """Network capabilities exposed to protocols during one resolve call."""

    def __init__(
        self,
        opts: ResolveOptions = DEFAULTS,
        client: Optional[httpx.AsyncClient] = None,
        dns_txt_fallback=resolve_txt,
        upstream_manager: Optional[UpstreamManager] = None,
    ):
        """
        Initialize the resolve context.

        Args:
            opts: Options of the resolve call (doh_lookups, user_agent, ttl, cors_warning, local_port)
            client: HTTP client to use, a private one is created on demand if omitted
            dns_txt_fallback: Coroutine ``(name) -> answers`` used when every DoH upstream failed
            upstream_manager: Shared upstream health state; built from ``opts.doh_lookups`` if omitted
        """
        self.opts = opts
        self._client = client
        self._owns_client = client is None
        self._dns_txt_fallback = dns_txt_fallback
        if upstream_manager is None and opts.doh_lookups:
            upstream_manager = UpstreamManager(list(opts.doh_lookups))
        self.upstream_manager = upstream_manager
        self._dns_txt_lookups = {}

    is_local = staticmethod(is_local)
    match_regex = staticmethod(match_regex)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=10.0)
        return self._client

    def _headers(self, accept: str) -> dict:
        headers = {'Accept': accept}
        if self.opts.user_agent:
            headers['User-Agent'] = self.opts.user_agent
        return headers

    async def aclose(self):
        """Close the HTTP client if this context created it."""
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def get_dns_txt_record(self, name: str, txt_pattern, default_ttl=OPTIONS_TTL):
        """
        Find the key in the TXT records of a name.

        A record without a valid TTL gets ``default_ttl``, which defaults to
        the ttl option.

        Returns:
            ``{'key': ..., 'ttl': ...}`` of the logically largest matching key,
            or None if no TXT record matches
        """
        _require_key_group(txt_pattern, 'txt_pattern')
        if is_local(name):
            logger.debug(f'Domain "{name}" is identified as local (not fully qualified). Skipping dns lookup.')
            return None
        lookup = self._dns_txt_lookups.get(name)
        if lookup is None:
            lookup = asyncio.ensure_future(self._fetch_dns_txt_records(name))
            self._dns_txt_lookups[name] = lookup
        answers = await lookup

        keys = []
        for answer in answers:
            if not isinstance(answer, dict) or not isinstance(answer.get('data'), str):
                continue
            key = _match_key(txt_pattern, answer['data'], 'txt_pattern')
            if key is not None:
                keys.append({'key': key, 'ttl': answer.get('TTL')})
        if not keys:
            logger.debug(f'doh: No matching TXT record found for {name}')
            return None
        if len(keys) > 1:
            # DNS servers are not consistent in the ordering of TXT entries
            logger.debug(f'doh: multiple TXT records found for {name}, using the logically largest')
            keys.sort(key=lambda entry: entry['key'], reverse=True)
        result = keys[0]
        if not _valid_ttl(result['ttl']):
            if default_ttl is OPTIONS_TTL:
                default_ttl = self.opts.ttl
            logger.debug(
                f"doh: no valid ttl for key={result['key']} specified ({result['ttl']}), "
                f"falling back to ttl ({default_ttl})"
            )
            result['ttl'] = default_ttl
        return result

    async def _fetch_dns_txt_records(self, name: str) -> list:
        if self.upstream_manager is not None:
            answers = await self._fetch_dns_txt_over_https(name)
            if answers is not None:
                return answers
        logger.debug(f'doh: no upstream answered for {name}, falling back to system dns')
        return await self._dns_txt_fallback(name)

    async def _fetch_dns_txt_over_https(self, name: str) -> Optional[list]:
        if not name.endswith('.'):
            name = f'{name}.'
        # Cloudflare requires this exact header; everyone else ignores it
        headers = self._headers('application/dns-json')
        client = self._get_client()
        for upstream in self.upstream_manager.iter_servers():
            answers = await self._query_doh(client, upstream, name, headers)
            if answers is not None:
                return answers
        return None

    async def _query_doh(self, client: httpx.AsyncClient, upstream: DohUpstream, name: str, headers: dict) -> Optional[list]:
        """Ask one DoH upstream. Returns the answer list, or None to try the next upstream."""
        start_time = time.time()
        try:
            resp = await client.get(upstream.url, params={'name': name, 'type': 'TXT'}, headers=headers)
        except Exception as e:
            upstream.record_failure()
            logger.debug(f"doh: Error while looking up {name} at {upstream.url}: {e}")
            return None
        if resp.status_code != 200:
            upstream.record_failure()
            logger.debug(f"doh: Http status error[code={resp.status_code}] while looking up {name} at {upstream.url}: {resp.text}")
            return None
        try:
            record = resp.json()
        except ValueError as e:
            upstream.record_failure()
            logger.debug(f"doh: Invalid record from {upstream.url}, must provide valid json: {e}")
            return None
        if not isinstance(record, dict):
            upstream.record_failure()
            logger.debug(f"doh: Invalid record from {upstream.url}, root needs to be an object")
            return None
        answers = record.get('Answer')
        if answers is None:
            logger.debug(f"doh: No answers given for {name} by {upstream.url}")
            answers = []
        if not isinstance(answers, list):
            upstream.record_failure()
            logger.debug(f'doh: Invalid record from {upstream.url}, unexpected "Answer" given')
            return None
        upstream.record_answer(time.time() - start_time)
        return answers

    async def fetch_well_known(self, name: str, schema: str, key_pattern, max_redirects: int):
        """
        Look up the key at ``https://{name}/.well-known/{schema}``.

        The first line of the document must match ``key_pattern``, an optional
        second line ``ttl=<seconds>`` overrides the default ttl. Up to
        ``max_redirects`` https redirects are followed; 0 follows none.
        """
        _require_key_group(key_pattern, 'key_pattern')
        if isinstance(max_redirects, bool) or not isinstance(max_redirects, int) or max_redirects < 0:
            raise TypeError(f"max_redirects needs to be a non-negative integer, got {max_redirects!r}")
        port = f':{self.opts.local_port}' if is_local(name) and self.opts.local_port else ''
        href = f'https://{name}{port}/.well-known/{schema}'
        resp = await self._fetch_well_known_record(name, href, max_redirects)
        if resp is None:
            return None
        lines = resp.text.split('\n')
        key = _match_key(key_pattern, lines[0], 'key_pattern')
        if key is None:
            logger.debug(f"Invalid well-known record at {href}, must conform to {key_pattern.pattern}: {lines[0]}")
            return None
        ttl = self.opts.ttl
        second_line = lines[1].strip() if len(lines) > 1 else ''
        if second_line:
            ttl_match = TTL_REGEX.match(second_line)
            if ttl_match is not None:
                ttl = int(ttl_match.group(1))
            else:
                logger.debug(f"failed to parse well-known TTL for line: {second_line}, must conform to {TTL_REGEX.pattern}")
        return {'key': key, 'ttl': ttl}

    async def _fetch_well_known_record(self, name: str, href: str, max_redirects: int) -> Optional[httpx.Response]:
        headers = self._headers('text/plain')
        client = self._get_client()
        redirect_count = 0
        logger.debug(f"well-known lookup at {href}")
        while True:
            try:
                resp = await client.get(href, headers=headers, follow_redirects=False)
            except Exception as e:
                logger.debug(f"well-known lookup: error while fetching {href}: {e}")
                return None
            if self.opts.cors_warning is not None and resp.headers.get('access-control-allow-origin') != '*':
                self.opts.cors_warning(name, str(resp.url))
            if resp.status_code not in REDIRECT_STATUS:
                break
            location = resp.headers.get('location')
            if not location:
                logger.debug(f"well-known lookup for {name} redirected ({resp.status_code}) from {href} to nowhere")
                return None
            target = httpx.URL(href).join(location)
            if target.scheme != 'https':
                logger.debug(f"well-known lookup for {name} redirected ({resp.status_code}) from {href} to non-https location: {location}")
                return None
            redirect_count += 1
            if redirect_count > max_redirects:
                logger.debug(f"well-known lookup for {name} exceeded redirect limit: {max_redirects}")
                return None
            logger.debug(f"well-known lookup for {name} redirected from {href} to {target} ({resp.status_code}) [{redirect_count}/{max_redirects}]")
            href = str(target)
        if resp.status_code != 200:
            logger.debug(f"well-known lookup for {name} at {href} failed with status {resp.status_code}")
            return None
        return resp


class KeyOnlyContext:
    """Context without network access, used to check whether a string is a key."""

    is_local = staticmethod(is_local)
    match_regex = staticmethod(match_regex)

    async def get_dns_txt_record(self, name, txt_pattern, default_ttl=OPTIONS_TTL):
        return None

    async def fetch_well_known(self, name, schema, key_pattern, max_redirects):
        return None


KEY_ONLY_CONTEXT = KeyOnlyContext()
