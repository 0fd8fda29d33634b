"""
Search Analytics

Records every search (query, mode, result count, duration, expansion) for
later tuning. Aggregates are kept in process; records are also persisted
to the search_analytics table on a background worker. Recording is
fire-and-forget: a failure to persist is logged and never reaches the
search caller.
"""

import time
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, Future
from dataclasses import dataclass, field
from collections import defaultdict
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class SearchAnalyticsRecord:
    """One completed search."""
    client_id: str
    query: str
    mode: str
    results_count: int
    duration_ms: float
    expanded_query: Optional[str] = None
    suggested_terms: list[str] = field(default_factory=list)
    partial: bool = False
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "client_id": self.client_id,
            "query": self.query,
            "mode": self.mode,
            "results_count": self.results_count,
            "duration_ms": self.duration_ms,
            "expanded_query": self.expanded_query,
            "suggested_terms": self.suggested_terms,
            "partial": self.partial,
        }


@dataclass
class SearchStats:
    """Aggregated search statistics."""
    total_searches: int = 0
    partial_searches: int = 0
    zero_result_searches: int = 0
    total_duration_ms: float = 0
    durations: list = field(default_factory=list)
    searches_by_mode: dict = field(default_factory=lambda: defaultdict(int))
    searches_by_tenant: dict = field(default_factory=lambda: defaultdict(int))
    persist_failures: int = 0

    @property
    def avg_duration_ms(self) -> float:
        if self.total_searches == 0:
            return 0
        return self.total_duration_ms / self.total_searches

    @property
    def p95_duration_ms(self) -> float:
        """Calculate 95th percentile search duration."""
        if not self.durations:
            return 0
        sorted_durations = sorted(self.durations)
        index = int(len(sorted_durations) * 0.95)
        return sorted_durations[min(index, len(sorted_durations) - 1)]

    def to_dict(self) -> dict:
        return {
            "searches": {
                "total": self.total_searches,
                "partial": self.partial_searches,
                "zero_results": self.zero_result_searches,
                "by_mode": dict(self.searches_by_mode),
            },
            "duration_ms": {
                "avg": round(self.avg_duration_ms, 2),
                "p95": round(self.p95_duration_ms, 2),
            },
            "persist_failures": self.persist_failures,
        }


class SearchAnalyticsRecorder:
    """
    Collects search analytics.

    Usage:
        recorder = SearchAnalyticsRecorder(store)
        recorder.record(SearchAnalyticsRecord(client_id, query, "hybrid", 12, 84.0))
        recorder.get_stats_dict()
    """

    def __init__(self, store=None, max_history: int = 1000):
        """
        Args:
            store: Object with log_search_analytics(dict); None keeps
                analytics in memory only
            max_history: Number of recent records kept in memory
        """
        self.store = store
        self.stats = SearchStats()
        self._history: list[SearchAnalyticsRecord] = []
        self._max_history = max_history
        self._lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None

    def record(self, record: SearchAnalyticsRecord) -> Optional[Future]:
        """
        Record a search. Never raises.

        Returns:
            Future for the background persist, or None when there is no store
        """
        try:
            self._aggregate(record)
        except Exception as e:
            logger.warning(f"Failed to aggregate search analytics: {e}")

        if self.store is None:
            return None

        try:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="analytics")
            return self._executor.submit(self._persist, record)
        except Exception as e:
            logger.warning(f"Failed to schedule search analytics: {e}")
            return None

    def _aggregate(self, record: SearchAnalyticsRecord) -> None:
        with self._lock:
            self.stats.total_searches += 1
            self.stats.total_duration_ms += record.duration_ms
            self.stats.durations.append(record.duration_ms)
            if len(self.stats.durations) > self._max_history:
                self.stats.durations = self.stats.durations[-self._max_history:]
            if record.partial:
                self.stats.partial_searches += 1
            if record.results_count == 0:
                self.stats.zero_result_searches += 1
            self.stats.searches_by_mode[record.mode] += 1
            self.stats.searches_by_tenant[record.client_id] += 1

            self._history.append(record)
            if len(self._history) > self._max_history:
                self._history = self._history[-self._max_history:]

    def _persist(self, record: SearchAnalyticsRecord) -> None:
        try:
            self.store.log_search_analytics(record.to_dict())
        except Exception as e:
            with self._lock:
                self.stats.persist_failures += 1
            logger.warning(f"Failed to log search analytics: {e}")

    def get_recent(self, limit: int = 10) -> list[SearchAnalyticsRecord]:
        """Most recent searches."""
        with self._lock:
            return self._history[-limit:]

    def get_stats_dict(self) -> dict:
        with self._lock:
            return self.stats.to_dict()

    def flush(self) -> None:
        """Wait for pending persists (used on shutdown and in tests)."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None


# Global analytics recorder instance
_recorder = None


def get_search_analytics(store=None) -> SearchAnalyticsRecorder:
    """Get the global search analytics recorder."""
    global _recorder
    if _recorder is None:
        _recorder = SearchAnalyticsRecorder(store)
    elif store is not None and _recorder.store is None:
        _recorder.store = store
    return _recorder
