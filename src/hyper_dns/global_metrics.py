"""Resolution metrics of a resolver."""
import time
from dataclasses import dataclass, field
from typing import List
from .config import logger


@dataclass
class GlobalMetrics:
    """Tracks how resolutions were answered."""

    total_lookups: int = 0
    cache_hits: int = 0
    live_lookups: int = 0
    stale_fallbacks: int = 0
    failed_lookups: int = 0
    coalesced: int = 0
    response_times: List[float] = field(default_factory=list)
    last_log_time: float = field(default_factory=time.time)

    def record_cache_hit(self):
        """Record a lookup answered by a fresh cache entry."""
        self.total_lookups += 1
        self.cache_hits += 1

    def record_live_lookup(self, response_time: float):
        """Record a lookup answered by the network with its response time."""
        self.total_lookups += 1
        self.live_lookups += 1
        self.response_times.append(response_time)
        # Keep list bounded to last 1000 entries
        if len(self.response_times) > 1000:
            self.response_times = self.response_times[-1000:]

    def record_stale_fallback(self):
        """Record a failed lookup answered from a cached entry."""
        self.total_lookups += 1
        self.stale_fallbacks += 1

    def record_failed_lookup(self):
        """Record a failed lookup that had no cached entry to fall back to."""
        self.total_lookups += 1
        self.failed_lookups += 1

    def record_coalesced(self):
        """Record a call that joined an in-flight lookup."""
        self.coalesced += 1

    def get_cache_hit_rate(self) -> float:
        """Calculate cache hit rate as a percentage."""
        if self.total_lookups == 0:
            return 0.0
        return (self.cache_hits / self.total_lookups) * 100

    def get_mean_response_time(self) -> float:
        if not self.response_times:
            return 0.0
        return sum(self.response_times) / len(self.response_times)

    def log_stats(self):
        """Log the statistics collected since the last call and reset them."""
        elapsed_minutes = (time.time() - self.last_log_time) / 60.0
        lpm = self.total_lookups / elapsed_minutes if elapsed_minutes else 0.0

        logger.info("=== Resolver Metrics ===")
        stats = (
            f"Lookups/min: {lpm:.1f}, Cache: {self.cache_hits} hits / {self.live_lookups} live "
            f"({self.get_cache_hit_rate():.1f}% hit rate), "
            f"Stale fallbacks: {self.stale_fallbacks}, Failed: {self.failed_lookups}, Coalesced: {self.coalesced}"
        )
        if self.response_times:
            stats += (
                f", Response times: min={min(self.response_times):.3f}s, "
                f"mean={self.get_mean_response_time():.3f}s, max={max(self.response_times):.3f}s"
            )
        logger.info(stats)

        self.total_lookups = 0
        self.cache_hits = 0
        self.live_lookups = 0
        self.stale_fallbacks = 0
        self.failed_lookups = 0
        self.coalesced = 0
        self.response_times = []
        self.last_log_time = time.time()
