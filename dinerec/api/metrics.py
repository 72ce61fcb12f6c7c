"""Metrics service for tracking API performance.

Singleton service tracking recommendation latency, which strategy answered
each request and how often the popularity fallback was needed.
"""

import threading
from collections import defaultdict
from typing import Dict


class MetricsService:
    """Singleton service for tracking API metrics.

    Thread-safe counters and latency tracking for recommendation calls.
    """

    _instance = None
    _lock = threading.Lock()

    def __new__(cls):
        """Create singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super(MetricsService, cls).__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._lock = threading.Lock()
        self._reset_counters()
        self._initialized = True

    def _reset_counters(self) -> None:
        self._request_count = 0
        self._fallback_count = 0
        self._strategy_counts: Dict[str, int] = defaultdict(int)
        self._total_latency_ms = 0.0
        self._min_latency_ms = float('inf')
        self._max_latency_ms = 0.0
        self._training_runs = 0

    def record_recommendation(self, latency_ms: float, strategy: str, fallback: bool = False) -> None:
        """Record a recommendation call.

        Args:
            latency_ms: Latency in milliseconds
            strategy: Strategy that produced the result
            fallback: Whether the popularity fallback answered
        """
        with self._lock:
            self._request_count += 1
            self._strategy_counts[strategy] += 1
            if fallback:
                self._fallback_count += 1
            self._total_latency_ms += latency_ms
            self._min_latency_ms = min(self._min_latency_ms, latency_ms)
            self._max_latency_ms = max(self._max_latency_ms, latency_ms)

    def record_training_started(self) -> None:
        with self._lock:
            self._training_runs += 1

    def get_metrics(self) -> Dict:
        """Get current metrics.

        Returns:
            Dictionary with request count, per-strategy counts, fallback
            count, training runs and latency statistics.
        """
        with self._lock:
            avg_latency = (
                self._total_latency_ms / self._request_count
                if self._request_count > 0
                else 0.0
            )

            return {
                "request_count": self._request_count,
                "strategy_counts": dict(self._strategy_counts),
                "fallback_count": self._fallback_count,
                "training_runs": self._training_runs,
                "average_latency_ms": round(avg_latency, 2),
                "min_latency_ms": round(self._min_latency_ms, 2) if self._min_latency_ms != float('inf') else 0.0,
                "max_latency_ms": round(self._max_latency_ms, 2),
            }

    def reset(self) -> None:
        """Reset all metrics (useful for testing)."""
        with self._lock:
            self._reset_counters()


# Global singleton instance
metrics_service = MetricsService()
