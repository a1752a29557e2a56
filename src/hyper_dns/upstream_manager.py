"""DoH upstreams in randomized fail-over order, skipping unhealthy ones."""
import random
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Iterator, List
from .config import logger

# Health is judged on the outcome of the last HEALTH_WINDOW queries
HEALTH_WINDOW = 10
MIN_OUTCOMES = 5


@dataclass
class DohUpstream:
    """A DNS-over-HTTPS JSON endpoint and the outcome of its recent queries."""
    url: str
    is_up: bool = True
    queries: int = 0
    failures: int = 0
    slowest_answer: float = 0.0
    recent: Deque[bool] = field(default_factory=lambda: deque(maxlen=HEALTH_WINDOW))

    @property
    def recent_failures(self) -> int:
        return self.recent.count(False)

    def record_answer(self, elapsed: float):
        """Record a usable answer; an upstream that answers is up again."""
        self.queries += 1
        self.recent.append(True)
        self.slowest_answer = max(self.slowest_answer, elapsed)
        if not self.is_up:
            logger.info(f"DoH upstream {self.url} answered again, marked as UP")
            self.is_up = True

    def record_failure(self):
        """Record a transport error, bad status or malformed answer."""
        self.queries += 1
        self.failures += 1
        self.recent.append(False)
        if self.is_up and len(self.recent) >= MIN_OUTCOMES and self.recent_failures * 2 > len(self.recent):
            logger.warning(
                f"DoH upstream {self.url} marked as DOWN "
                f"({self.recent_failures} of the last {len(self.recent)} queries failed)"
            )
            self.is_up = False


class UpstreamManager:
    """Shared health state of the configured DoH upstreams."""

    def __init__(self, upstream_urls: List[str]):
        if not upstream_urls:
            raise ValueError("At least one upstream URL must be provided")
        self.upstreams = [DohUpstream(url=url) for url in upstream_urls]
        logger.debug(f"Using {len(self.upstreams)} DoH upstreams: {list(upstream_urls)}")

    @property
    def urls(self) -> List[str]:
        return [upstream.url for upstream in self.upstreams]

    def iter_servers(self) -> Iterator[DohUpstream]:
        """
        Yield every upstream exactly once in random order.

        Upstreams that are up come first; the ones marked down are only
        asked after all healthy upstreams failed.
        """
        up = [u for u in self.upstreams if u.is_up]
        down = [u for u in self.upstreams if not u.is_up]
        random.shuffle(up)
        random.shuffle(down)
        yield from up
        yield from down

    def log_stats(self):
        logger.info("=== DoH Upstreams ===")
        for upstream in self.upstreams:
            logger.info(
                f"[{'UP' if upstream.is_up else 'DOWN'}] {upstream.url} - "
                f"{upstream.queries} queries, {upstream.failures} failed, "
                f"slowest answer {upstream.slowest_answer:.3f}s"
            )
