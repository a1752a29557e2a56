"""Unit tests for the resolve context (DoH and well-known lookups)."""
import re
import httpx
import pytest
from unittest.mock import AsyncMock, Mock, patch
from hyper_dns.options import DEFAULTS
from hyper_dns.protocols import DAT_TXT, DAT_WELL_KNOWN
from hyper_dns.resolve_context import ResolveContext, is_local, match_regex

KEY = '100c77d788fdaf07b89b28e9d276e47f2e44011f4adb981921056e1b3b40e99e'
KEY2 = 'ffffffffffffffffffffffffffffffffffffffffffffffffffffffffffffffff'
DOH1 = 'https://doh1.test/dns-query'
DOH2 = 'https://doh2.test/resolve'
NO_GROUP = re.compile(r'^(?:[0-9a-f]{64})$')


def make_context(handler, fallback=None, **opts):
    options = DEFAULTS.merge(**{
        'doh_lookups': (DOH1, DOH2),
        'cors_warning': None,
        'user_agent': 'test-agent',
        'ttl': 3600,
        **opts,
    })
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    if fallback is None:
        fallback = AsyncMock(return_value=[])
    return ResolveContext(options, client=client, dns_txt_fallback=fallback)


def doh_answer(*answers):
    return httpx.Response(200, json={'Status': 0, 'Answer': list(answers)})


@pytest.fixture
def ordered_upstreams():
    """Make the DoH fail-over order deterministic (DOH1 first)."""
    with patch('hyper_dns.upstream_manager.random.shuffle', lambda servers: None):
        yield


class TestHelpers:
    """Tests for the pure helpers of the context."""

    @pytest.mark.parametrize('name', ['localhost', 'foo.local', 'foo.localhost', 'datproject'])
    def test_is_local(self, name):
        assert is_local(name) is True

    @pytest.mark.parametrize('name', ['datproject.org', 'sub.datproject.org', 'localhost.org'])
    def test_is_not_local(self, name):
        assert is_local(name) is False

    def test_match_regex(self):
        """Test that a matching name becomes a key with no ttl."""
        assert match_regex(KEY, re.compile(r'^(?P<key>[0-9a-f]{64})$')) == {'key': KEY, 'ttl': None}

    def test_match_regex_no_match(self):
        assert match_regex('datproject.org', re.compile(r'^(?P<key>[0-9a-f]{64})$')) is None

    def test_match_regex_requires_key_group(self):
        """Test that a pattern without key group is a configuration error."""
        with pytest.raises(TypeError):
            match_regex(KEY, NO_GROUP)


class TestDnsTxtRecord:
    """Tests for get_dns_txt_record."""

    @pytest.mark.asyncio
    async def test_lookup(self, ordered_upstreams):
        """Test a successful DoH lookup."""
        requests = []

        def handler(request):
            requests.append(request)
            return doh_answer({'data': f'datkey={KEY}', 'TTL': 120})

        async with make_context(handler) as context:
            assert await context.get_dns_txt_record('datproject.org', DAT_TXT) == {'key': KEY, 'ttl': 120}

        assert len(requests) == 1
        request = requests[0]
        assert str(request.url).startswith(DOH1)
        assert request.url.params['name'] == 'datproject.org.'
        assert request.url.params['type'] == 'TXT'
        assert request.headers['Accept'] == 'application/dns-json'
        assert request.headers['User-Agent'] == 'test-agent'

    @pytest.mark.asyncio
    async def test_local_names_are_skipped(self):
        """Test that local names never hit DNS."""
        handler = Mock()
        fallback = AsyncMock()
        context = make_context(handler, fallback=fallback)
        assert await context.get_dns_txt_record('datproject.local', DAT_TXT) is None
        handler.assert_not_called()
        fallback.assert_not_called()

    @pytest.mark.asyncio
    async def test_lookups_are_shared_per_name(self):
        """Test that multiple lookups of the same name use one request."""
        requests = []

        def handler(request):
            requests.append(request)
            return doh_answer({'data': f'datkey={KEY}', 'TTL': 120}, {'data': f'cabalkey={KEY2}', 'TTL': 60})

        context = make_context(handler)
        assert (await context.get_dns_txt_record('datproject.org', DAT_TXT))['key'] == KEY
        cabal = re.compile(r'^cabalkey=(?P<key>[0-9a-f]{64})$')
        assert (await context.get_dns_txt_record('datproject.org', cabal))['key'] == KEY2
        assert len(requests) == 1

    @pytest.mark.asyncio
    async def test_largest_key_wins(self):
        """Test that multiple matching records resolve to the logically largest key."""
        def handler(request):
            return doh_answer(*({'data': data, 'TTL': 10} for data in ['b2', 'a1', 'd4', 'c3']))

        context = make_context(handler)
        record = await context.get_dns_txt_record('datproject.org', re.compile(r'^(?P<key>[a-z]\d)$'))
        assert record == {'key': 'd4', 'ttl': 10}

    @pytest.mark.asyncio
    async def test_missing_key_group(self):
        """Test that a txt pattern without key group raises TypeError before any request."""
        handler = Mock()
        context = make_context(handler)
        with pytest.raises(TypeError):
            await context.get_dns_txt_record('datproject.org', NO_GROUP)
        handler.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize('broken', [
        httpx.Response(500, text='server error'),
        httpx.Response(200, text='not json'),
        httpx.Response(200, json='a string'),
        httpx.Response(200, json={'Answer': 'not a list'}),
    ])
    async def test_falls_back_to_next_upstream(self, ordered_upstreams, broken):
        """Test that a broken upstream response makes the next upstream answer."""
        def handler(request):
            if str(request.url).startswith(DOH1):
                return broken
            return doh_answer({'data': f'datkey={KEY}', 'TTL': 120})

        context = make_context(handler)
        assert await context.get_dns_txt_record('datproject.org', DAT_TXT) == {'key': KEY, 'ttl': 120}
        first, second = context.upstream_manager.upstreams
        assert first.failures == 1
        assert second.failures == 0

    @pytest.mark.asyncio
    async def test_fetch_error_falls_back(self, ordered_upstreams):
        """Test that a transport error makes the next upstream answer."""
        def handler(request):
            if str(request.url).startswith(DOH1):
                raise httpx.ConnectError('connection refused', request=request)
            return doh_answer({'data': f'datkey={KEY}', 'TTL': 120})

        context = make_context(handler)
        assert (await context.get_dns_txt_record('datproject.org', DAT_TXT))['key'] == KEY

    @pytest.mark.asyncio
    @pytest.mark.parametrize('body', [{}, {'Answer': None}])
    async def test_missing_answer_is_empty(self, body):
        """Test that a missing Answer means no records instead of an error."""
        requests = []
        fallback = AsyncMock()

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json=body)

        context = make_context(handler, fallback=fallback)
        assert await context.get_dns_txt_record('datproject.org', DAT_TXT) is None
        assert len(requests) == 1
        fallback.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_answers_are_ignored(self):
        """Test that answers without string data are skipped."""
        def handler(request):
            return doh_answer(None, 'text', {'data': 1}, {'TTL': 5}, {'data': 'other=1'})

        context = make_context(handler)
        assert await context.get_dns_txt_record('datproject.org', DAT_TXT) is None

    @pytest.mark.asyncio
    async def test_system_dns_fallback(self):
        """Test that the system DNS is used when every upstream fails."""
        fallback = AsyncMock(return_value=[{'data': f'datkey={KEY}', 'TTL': 50}])

        def handler(request):
            return httpx.Response(503)

        context = make_context(handler, fallback=fallback)
        assert await context.get_dns_txt_record('datproject.org', DAT_TXT) == {'key': KEY, 'ttl': 50}
        fallback.assert_awaited_once_with('datproject.org')

    @pytest.mark.asyncio
    async def test_system_dns_only_without_upstreams(self):
        """Test that an empty upstream list goes straight to the system DNS."""
        handler = Mock()
        fallback = AsyncMock(return_value=[{'data': f'datkey={KEY}', 'TTL': 50}])
        context = make_context(handler, fallback=fallback, doh_lookups=())
        assert context.upstream_manager is None
        assert (await context.get_dns_txt_record('datproject.org', DAT_TXT))['key'] == KEY
        handler.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize('ttl', [None, 'abc', -1, True])
    async def test_invalid_ttl_uses_default(self, ttl):
        """Test that invalid ttls fall back to the configured ttl."""
        def handler(request):
            return doh_answer({'data': f'datkey={KEY}', 'TTL': ttl})

        context = make_context(handler, ttl=1234)
        assert await context.get_dns_txt_record('datproject.org', DAT_TXT) == {'key': KEY, 'ttl': 1234}

    @pytest.mark.asyncio
    async def test_missing_ttl_uses_given_default(self):
        """Test that callers can ask for the raw ttl of a record without one."""
        def handler(request):
            return doh_answer({'data': f'datkey={KEY}'})

        context = make_context(handler, ttl=1234)
        record = await context.get_dns_txt_record('datproject.org', DAT_TXT, default_ttl=None)
        assert record == {'key': KEY, 'ttl': None}


class TestWellKnown:
    """Tests for fetch_well_known."""

    @pytest.mark.asyncio
    async def test_fetch(self):
        """Test a well-known lookup with ttl line."""
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, text=f'dat://{KEY}\nttl=10', headers={'Access-Control-Allow-Origin': '*'})

        context = make_context(handler)
        assert await context.fetch_well_known('datproject.org', 'dat', DAT_WELL_KNOWN, 6) == {'key': KEY, 'ttl': 10}
        assert str(requests[0].url) == 'https://datproject.org/.well-known/dat'
        assert requests[0].headers['Accept'] == 'text/plain'

    @pytest.mark.asyncio
    async def test_default_ttl(self):
        """Test that a missing ttl line uses the configured ttl."""
        context = make_context(lambda request: httpx.Response(200, text=KEY), ttl=99)
        assert await context.fetch_well_known('datproject.org', 'dat', DAT_WELL_KNOWN, 6) == {'key': KEY, 'ttl': 99}

    @pytest.mark.asyncio
    async def test_invalid_ttl_line(self):
        """Test that an unparsable ttl line is ignored."""
        context = make_context(lambda request: httpx.Response(200, text=f'{KEY}\nttl=abc'), ttl=99)
        assert (await context.fetch_well_known('datproject.org', 'dat', DAT_WELL_KNOWN, 6))['ttl'] == 99

    @pytest.mark.asyncio
    async def test_fetch_error(self):
        """Test that a transport error is no record."""
        def handler(request):
            raise httpx.ConnectError('boom', request=request)

        context = make_context(handler)
        assert await context.fetch_well_known('datproject.org', 'dat', DAT_WELL_KNOWN, 6) is None

    @pytest.mark.asyncio
    async def test_wrong_format(self):
        """Test that a first line not matching the key pattern is no record."""
        context = make_context(lambda request: httpx.Response(200, text='hello world'))
        assert await context.fetch_well_known('datproject.org', 'dat', DAT_WELL_KNOWN, 6) is None

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        """Test that a non-200 response is no record."""
        context = make_context(lambda request: httpx.Response(404, text=KEY))
        assert await context.fetch_well_known('datproject.org', 'dat', DAT_WELL_KNOWN, 6) is None

    @pytest.mark.asyncio
    async def test_missing_key_group(self):
        context = make_context(lambda request: httpx.Response(200, text=KEY))
        with pytest.raises(TypeError):
            await context.fetch_well_known('datproject.org', 'dat', NO_GROUP, 6)

    @pytest.mark.asyncio
    @pytest.mark.parametrize('max_redirects', [-1, 1.5, '6', None])
    async def test_invalid_redirect_limit(self, max_redirects):
        context = make_context(lambda request: httpx.Response(200, text=KEY))
        with pytest.raises(TypeError):
            await context.fetch_well_known('datproject.org', 'dat', DAT_WELL_KNOWN, max_redirects)

    @pytest.mark.asyncio
    @pytest.mark.parametrize('status', [301, 302, 307, 308])
    async def test_redirect(self, status):
        """Test that https redirects are followed."""
        def handler(request):
            if request.url.host == 'datproject.org':
                return httpx.Response(status, headers={'Location': 'https://other.org/dat-key'})
            return httpx.Response(200, text=KEY)

        context = make_context(handler)
        assert (await context.fetch_well_known('datproject.org', 'dat', DAT_WELL_KNOWN, 6))['key'] == KEY

    @pytest.mark.asyncio
    async def test_relative_redirect(self):
        """Test that a relative location resolves against the current URL."""
        def handler(request):
            if request.url.path == '/.well-known/dat':
                return httpx.Response(302, headers={'Location': '/key.txt'})
            assert str(request.url) == 'https://datproject.org/key.txt'
            return httpx.Response(200, text=KEY)

        context = make_context(handler)
        assert (await context.fetch_well_known('datproject.org', 'dat', DAT_WELL_KNOWN, 6))['key'] == KEY

    @pytest.mark.asyncio
    async def test_redirect_without_location(self):
        context = make_context(lambda request: httpx.Response(302))
        assert await context.fetch_well_known('datproject.org', 'dat', DAT_WELL_KNOWN, 6) is None

    @pytest.mark.asyncio
    async def test_redirect_to_http(self):
        """Test that redirects to non-https locations are not followed."""
        handler = Mock(side_effect=lambda request: httpx.Response(302, headers={'Location': 'http://datproject.org/key'}))
        context = make_context(handler)
        assert await context.fetch_well_known('datproject.org', 'dat', DAT_WELL_KNOWN, 6) is None
        assert handler.call_count == 1

    @pytest.mark.asyncio
    async def test_zero_redirects_allowed(self):
        """Test that max_redirects=0 follows no redirect at all."""
        handler = Mock(side_effect=lambda request: httpx.Response(302, headers={'Location': str(request.url)}))
        context = make_context(handler)
        assert await context.fetch_well_known('datproject.org', 'dat', DAT_WELL_KNOWN, 0) is None
        assert handler.call_count == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize('hops, max_redirects, found', [(3, 6, True), (6, 6, True), (7, 6, False)])
    async def test_redirect_limit(self, hops, max_redirects, found):
        """Test that redirect chains succeed only within the limit."""
        def handler(request):
            hop = int(request.url.params.get('hop', 0))
            if hop < hops:
                return httpx.Response(307, headers={'Location': f'/.well-known/dat?hop={hop + 1}'})
            return httpx.Response(200, text=KEY)

        context = make_context(handler)
        record = await context.fetch_well_known('datproject.org', 'dat', DAT_WELL_KNOWN, max_redirects)
        assert (record is not None) is found

    @pytest.mark.asyncio
    async def test_cors_warning(self):
        """Test that a missing CORS header triggers the warning callback."""
        cors_warning = Mock()
        context = make_context(lambda request: httpx.Response(200, text=KEY), cors_warning=cors_warning)
        await context.fetch_well_known('datproject.org', 'dat', DAT_WELL_KNOWN, 6)
        cors_warning.assert_called_once_with('datproject.org', 'https://datproject.org/.well-known/dat')

    @pytest.mark.asyncio
    async def test_no_cors_warning_with_header(self):
        cors_warning = Mock()
        context = make_context(
            lambda request: httpx.Response(200, text=KEY, headers={'Access-Control-Allow-Origin': '*'}),
            cors_warning=cors_warning,
        )
        await context.fetch_well_known('datproject.org', 'dat', DAT_WELL_KNOWN, 6)
        cors_warning.assert_not_called()

    @pytest.mark.asyncio
    async def test_local_port(self):
        """Test that the local port is only used for local names."""
        urls = []

        def handler(request):
            urls.append(str(request.url))
            return httpx.Response(200, text=KEY)

        context = make_context(handler, local_port='3141')
        await context.fetch_well_known('localhost', 'dat', DAT_WELL_KNOWN, 6)
        await context.fetch_well_known('datproject.org', 'dat', DAT_WELL_KNOWN, 6)
        assert urls == [
            'https://localhost:3141/.well-known/dat',
            'https://datproject.org/.well-known/dat',
        ]


class TestClientLifecycle:
    """Tests for the HTTP client owned by a context."""

    @pytest.mark.asyncio
    async def test_creates_and_closes_own_client(self):
        """Test that a context without client creates one on demand and closes it on exit."""
        real_client = httpx.AsyncClient
        created = []

        def make_client(**kwargs):
            client = real_client(transport=httpx.MockTransport(lambda request: httpx.Response(200, text=KEY)), **kwargs)
            created.append(client)
            return client

        options = DEFAULTS.merge(doh_lookups=(), cors_warning=None)
        with patch('hyper_dns.resolve_context.httpx.AsyncClient', make_client):
            async with ResolveContext(options, dns_txt_fallback=AsyncMock(return_value=[])) as context:
                record = await context.fetch_well_known('datproject.org', 'dat', DAT_WELL_KNOWN, 6)
                assert record['key'] == KEY

        assert len(created) == 1
        assert created[0].is_closed
        assert context._client is None

    @pytest.mark.asyncio
    async def test_passed_client_stays_open(self):
        """Test that a client handed in by the caller is not closed by the context."""
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(404)))
        async with ResolveContext(DEFAULTS.merge(doh_lookups=()), client=client) as context:
            assert context._get_client() is client
        assert not client.is_closed
        await client.aclose()

    @pytest.mark.asyncio
    async def test_close_without_client(self):
        context = ResolveContext(DEFAULTS.merge(doh_lookups=()))
        await context.aclose()
        assert context._client is None
