"""Minimal URL parsing that understands the ``host+version`` notation.

The standard library URL helpers reject or mangle ``dat://name+12/path``,
so peer-to-peer URLs are split with one regular expression instead.
"""
import dataclasses
import re
from dataclasses import dataclass
from typing import Optional

SLASHES_REQUIRED = ('file:', 'https:', 'http:', 'ftp:')
PATHNAME_REQUIRED = ('https:', 'http:', 'ftp:')

# Extended from https://tools.ietf.org/html/rfc3986#appendix-B
URL_REGEX = re.compile(
    r'^(?P<protocol>[^:/?#]+:)?'
    r'(?:(?P<slashes>//)?'
    r'(?:(?P<username>[^@:]*)(?::(?P<password>[^@]*))?@)?'
    r'(?:(?P<hostname>[^/?#:+]*)(?:\+(?P<version>[^/?#:]*))?(?::(?P<port>[0-9]+))?)?)?'
    r'(?P<pathname>[^?#]+)?(?P<search>[^#]+)?(?P<hash>.+)?$'
)

FIELDS = ('protocol', 'slashes', 'username', 'password', 'hostname', 'version', 'port', 'pathname', 'search', 'hash')


def parse_url(input: str) -> dict:
    """Split a URL into its raw parts. Missing parts are None."""
    match = URL_REGEX.match(input)
    parts = {field: (match.group(field) or None) for field in FIELDS}
    if parts['hostname'] in ('.', '..'):
        parts['pathname'] = f"{parts['hostname']}{parts['pathname'] or ''}"
        parts['hostname'] = None
    return parts


def _resolve_relative(url: dict, base: dict) -> dict:
    base_path = base.get('pathname') or ''
    return {
        **url,
        **base,
        'pathname': f"{base_path}{'' if base_path.endswith('/') else '/../'}{url.get('pathname') or ''}",
        'search': url.get('search'),
        'hash': url.get('hash'),
    }


def _sanitize_pathname(protocol: Optional[str], pathname: Optional[str]) -> Optional[str]:
    if pathname:
        # Processing ../ and ./ path entries
        ignore = 0
        kept = []
        for entry in reversed(pathname.split('/')):
            if entry == '.':
                continue
            if entry == '..':
                ignore += 1
                continue
            if ignore > 0:
                ignore -= 1
                continue
            kept.append(entry)
        pathname = '/'.join(reversed(kept))
        if pathname.startswith('/'):
            return pathname
        return f'/{pathname}'
    if protocol in PATHNAME_REQUIRED:
        return '/'
    return None


@dataclass(frozen=True)
class LightURL:
    """
    Simplified URL that behaves the same everywhere and keeps versions.

    ``href`` leaves the version out, ``versioned_href`` includes it.
    """
    protocol: Optional[str] = None
    slashes: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    hostname: Optional[str] = None
    version: Optional[str] = None
    port: Optional[str] = None
    pathname: Optional[str] = None
    search: Optional[str] = None
    hash: Optional[str] = None

    @classmethod
    def parse(cls, input, base=None) -> 'LightURL':
        """
        Parse a URL, resolving it against ``base`` if it has no protocol.

        Raises:
            TypeError: If the URL has no protocol and no base is given
        """
        if isinstance(input, LightURL):
            parts = input.to_parts()
        elif isinstance(input, str):
            parts = parse_url(input)
        else:
            parts = dict(input)
        if parts.get('protocol') is None:
            if isinstance(base, str):
                base = cls.parse(base)
            if base is None:
                raise TypeError(f"Invalid URL: {input}")
            parts = _resolve_relative(parts, base.to_parts())
        return cls.from_parts(parts)

    @classmethod
    def from_parts(cls, parts: dict) -> 'LightURL':
        values = {field: (parts.get(field) or None) for field in FIELDS}
        values['pathname'] = _sanitize_pathname(values['protocol'], values['pathname'])
        return cls(**values)

    def to_parts(self) -> dict:
        return dataclasses.asdict(self)

    @property
    def host(self) -> Optional[str]:
        if not self.hostname:
            return None
        return f'{self.hostname}:{self.port}' if self.port else self.hostname

    def _compile(self, with_version: bool) -> str:
        slashes = '//' if self.protocol in SLASHES_REQUIRED else (self.slashes or '')
        auth = ''
        if self.username:
            auth = f"{self.username}{f':{self.password}' if self.password else ''}@"
        version = f'+{self.version}' if with_version and self.version else ''
        port = f':{self.port}' if self.port else ''
        return (
            f"{self.protocol or ''}{slashes}{auth}{self.hostname or ''}{version}"
            f"{port}{self.pathname or ''}{self.search or ''}{self.hash or ''}"
        )

    @property
    def href(self) -> str:
        return self._compile(with_version=False)

    @property
    def versioned_href(self) -> str:
        return self._compile(with_version=True)

    def __str__(self):
        return self.href
