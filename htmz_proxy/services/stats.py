"""
Stats service - per-API call statistics for the /stats endpoint.
"""
from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Optional

# Bucket for allowed origins that matched no API profile
UNMATCHED_API = "__unmatched__"

# Distinct keys kept before the least recently used one is evicted
MAX_TRACKED_APIS = 1000


@dataclass
class ApiStats:
    """Statistics for calls routed to one API profile."""
    request_count: int = 0
    upstream_error_count: int = 0
    non_2xx_count: int = 0
    bytes_sent: int = 0
    bytes_received: int = 0
    total_upstream_ms: float = 0.0
    last_status: Optional[int] = None

    @property
    def error_rate(self) -> float:
        if self.request_count == 0:
            return 0.0
        return ((self.upstream_error_count + self.non_2xx_count) / self.request_count) * 100

    @property
    def avg_upstream_ms(self) -> float:
        completed = self.request_count - self.upstream_error_count
        if completed <= 0:
            return 0.0
        return self.total_upstream_ms / completed

    def to_dict(self) -> Dict:
        return {
            "request_count": self.request_count,
            "upstream_error_count": self.upstream_error_count,
            "non_2xx_count": self.non_2xx_count,
            "error_rate_percent": round(self.error_rate, 2),
            "bytes_sent": self.bytes_sent,
            "bytes_received": self.bytes_received,
            "avg_upstream_ms": round(self.avg_upstream_ms, 2),
            "last_status": self.last_status,
        }


class StatsCollector:
    """Async-safe statistics collector keyed by API profile name."""

    def __init__(self):
        self._stats: OrderedDict[str, ApiStats] = OrderedDict()
        self._lock = asyncio.Lock()

    def _entry(self, api: str) -> ApiStats:
        if api not in self._stats:
            if len(self._stats) >= MAX_TRACKED_APIS:
                self._stats.popitem(last=False)
            self._stats[api] = ApiStats()
        else:
            self._stats.move_to_end(api)
        return self._stats[api]

    async def record_response(
        self,
        api: Optional[str],
        status_code: int,
        bytes_sent: int,
        bytes_received: int,
        upstream_ms: float,
    ):
        """Record a call that got an answer from upstream."""
        async with self._lock:
            stats = self._entry(api or UNMATCHED_API)
            stats.request_count += 1
            stats.bytes_sent += bytes_sent
            stats.bytes_received += bytes_received
            stats.total_upstream_ms += upstream_ms
            stats.last_status = status_code
            if not 200 <= status_code < 300:
                stats.non_2xx_count += 1

    async def record_failure(self, api: Optional[str], bytes_sent: int = 0):
        """Record a call that never got an upstream answer."""
        async with self._lock:
            stats = self._entry(api or UNMATCHED_API)
            stats.request_count += 1
            stats.upstream_error_count += 1
            stats.bytes_sent += bytes_sent

    async def get_all_stats(self) -> Dict[str, Dict]:
        """Get statistics for all APIs."""
        async with self._lock:
            return {api: stats.to_dict() for api, stats in self._stats.items()}

    async def reset(self):
        async with self._lock:
            self._stats.clear()


# Singleton instance
stats_collector = StatsCollector()
