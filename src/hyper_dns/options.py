"""Per-call resolve options and their process-wide defaults."""
import dataclasses
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence
from . import config
from .config import logger
from .protocols import PROTOCOLS

CORS_WARNING = (
    'Warning, the well-known lookup for "{name}" at {url} does not serve with the http-header '
    'access-control-allow-origin=*. This means that while this domain works in the current '
    'environment it is not universally accessible and does not conform to the standard. '
    'Please contact the host and ask them to add the http-header, thanks!'
)


def log_cors_warning(name: str, url: str):
    logger.warning(
        CORS_WARNING.format(name=name, url=url)
        + ' If you wish to hide this warning, set cors_warning to None.'
    )


@dataclass(frozen=True)
class ResolveOptions:
    """Immutable option snapshot of one resolve call."""
    doh_lookups: Sequence[str] = tuple(config.DOH_LOOKUPS)
    user_agent: Optional[str] = config.USER_AGENT
    cache: Any = None
    protocols: Sequence[Callable] = PROTOCOLS
    ignore_cache: bool = False
    ignore_cached_miss: bool = False
    ttl: int = config.TTL
    min_ttl: int = config.MIN_TTL
    max_ttl: int = config.MAX_TTL
    cors_warning: Optional[Callable[[str, str], None]] = log_cors_warning
    timeout: Optional[float] = config.LOOKUP_TIMEOUT
    local_port: Optional[str] = None
    protocol_preference: Optional[Sequence[Any]] = None
    fallback_protocol: str = 'https'
    context: Any = None

    def merge(self, **overrides) -> 'ResolveOptions':
        """Return a copy with the given fields replaced. Unknown fields raise TypeError."""
        if not overrides:
            return self
        return dataclasses.replace(self, **overrides)


DEFAULTS = ResolveOptions()
