"""Naming schemes of the supported peer-to-peer protocols.

Every protocol is an async function ``(context, name)`` that returns a
lookup entry ``{'key': ..., 'ttl': ...}`` or ``None`` if nothing could be
determined. The function name is the protocol name.
"""
import re

HEX_KEY = re.compile(r'^(?P<key>[0-9a-f]{64})$', re.IGNORECASE)

HYPER_TXT = re.compile(r'^\s*"?hyperkey=(?P<key>[0-9a-f]{64}|well-known)"?\s*$', re.IGNORECASE)
HYPER_WELL_KNOWN = re.compile(r'^\s*(?:hyper:)?(?://)?(?P<key>[0-9a-f]{64})\s*$', re.IGNORECASE)

DAT_TXT = re.compile(r'^\s*"?datkey=(?P<key>[0-9a-f]{64})"?\s*$', re.IGNORECASE)
DAT_WELL_KNOWN = re.compile(r'^\s*(?:dat:)?(?://)?(?P<key>[0-9a-f]{64})\s*$', re.IGNORECASE)

CABAL_TXT = re.compile(r'^\s*"?cabalkey=(?P<key>[0-9a-f]{64})"?\s*$', re.IGNORECASE)
CABAL_WELL_KNOWN = re.compile(r'^\s*(?:cabal:)?(?://)?(?P<key>[0-9a-f]{64})\s*$', re.IGNORECASE)

ARA_KEY = re.compile(r'^(?:did:ara:)?(?P<key>[0-9a-f]{64})$', re.IGNORECASE)
ARA_TXT = re.compile(r'^\s*"?did:ara:(?P<key>[0-9a-f]{64})"?\s*$', re.IGNORECASE)
ARA_WELL_KNOWN = re.compile(r'^\s*(?:did:ara:)?(?P<key>[0-9a-f]{64})\s*$', re.IGNORECASE)

MAX_REDIRECTS = 6
DELEGATE_WELL_KNOWN = 'well-known'


async def _lookup(context, name, schema, key_pattern, txt_pattern, well_known_pattern):
    record = context.match_regex(name, key_pattern)
    if record is not None:
        return record
    record = await context.get_dns_txt_record(name, txt_pattern)
    if record is not None:
        return record
    return await context.fetch_well_known(name, schema, well_known_pattern, MAX_REDIRECTS)


async def hyper(context, name):
    """
    Resolve a hyper key.

    A ``hyperkey=well-known`` TXT record delegates to the well-known
    lookup. The TTL of such a result is the smaller of both TTLs, or the
    well-known TTL if the TXT record carries none.
    """
    record = context.match_regex(name, HEX_KEY)
    if record is not None:
        return record
    record = await context.get_dns_txt_record(name, HYPER_TXT, default_ttl=None)
    if record is None or record['key'].lower() == DELEGATE_WELL_KNOWN:
        delegated = await context.fetch_well_known(name, 'hyper', HYPER_WELL_KNOWN, MAX_REDIRECTS)
        if record is None or delegated is None:
            return delegated
        ttl = delegated['ttl']
        if record.get('ttl') is not None:
            ttl = record['ttl'] if ttl is None else min(record['ttl'], ttl)
        return {'key': delegated['key'], 'ttl': ttl}
    if record.get('ttl') is None:
        # leave the ttl to the resolver options
        return {'key': record['key']}
    return record
    record = await context.get_dns_txt_record(name, HYPER_TXT)
    if record is None or record['key'].lower() == DELEGATE_WELL_KNOWN:
        delegated = await context.fetch_well_known(name, 'hyper', HYPER_WELL_KNOWN, MAX_REDIRECTS)
        if record is None or delegated is None:
            return delegated
        ttl = delegated['ttl']
        if record.get('ttl') is not None:
            ttl = record['ttl'] if ttl is None else min(record['ttl'], ttl)
        return {'key': delegated['key'], 'ttl': ttl}
    return record


async def dat(context, name):
    return await _lookup(context, name, 'dat', HEX_KEY, DAT_TXT, DAT_WELL_KNOWN)


async def cabal(context, name):
    return await _lookup(context, name, 'cabal', HEX_KEY, CABAL_TXT, CABAL_WELL_KNOWN)


async def ara(context, name):
    return await _lookup(context, name, 'ara', ARA_KEY, ARA_TXT, ARA_WELL_KNOWN)


PROTOCOLS = (hyper, dat, cabal, ara)
