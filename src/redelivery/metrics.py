"""In-process metrics for message processing outcomes."""
import logging
import threading
from collections import Counter, defaultdict, deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Optional

logger = logging.getLogger(__name__)

# Outcome counters recorded per processor (or per topic for publishes)
OUTCOMES = ("acked", "nacked", "dead_lettered", "published")


class MessagingMetrics:
    """Track processing outcomes per processor.

    Counter names are dotted: ``messages.<outcome>.<processor>``,
    ``total_errors.<processor>``. Timers keep the most recent
    ``max_timer_samples`` durations in milliseconds.
    """

    def __init__(self, max_timer_samples: int = 1000):
        self._lock = threading.RLock()
        self._max_timer_samples = max_timer_samples
        self._counters: Counter = Counter()
        self._timers: Dict[str, Deque[float]] = {}
        self._errors: Dict[str, Counter] = defaultdict(Counter)

    def increment(self, metric_name: str, value: int = 1) -> None:
        with self._lock:
            self._counters[metric_name] += value

    def record_time(self, metric_name: str, duration_ms: float) -> None:
        """Add a duration sample, dropping the oldest beyond the sample cap.

        Args:
            metric_name: Timer name (e.g. ``handler.orders``)
            duration_ms: Duration in milliseconds
        """
        with self._lock:
            samples = self._timers.get(metric_name)
            if samples is None:
                samples = self._timers[metric_name] = deque(maxlen=self._max_timer_samples)
            samples.append(duration_ms)

    def record_error(self, processor: str, error_type: str) -> None:
        """Count a failed delivery by exception class name."""
        with self._lock:
            self._errors[processor][error_type] += 1
            self._counters[f"total_errors.{processor}"] += 1

    def _record_outcome(self, outcome: str, name: str) -> None:
        self.increment(f"messages.{outcome}.{name}")

    def record_message_acked(self, processor: str) -> None:
        self._record_outcome("acked", processor)

    def record_message_nacked(self, processor: str) -> None:
        self._record_outcome("nacked", processor)

    def record_message_dead_lettered(self, processor: str) -> None:
        self._record_outcome("dead_lettered", processor)

    def record_message_published(self, topic: str) -> None:
        self._record_outcome("published", topic)

    def get_counter(self, metric_name: str) -> int:
        with self._lock:
            return self._counters[metric_name]

    def get_timer_stats(self, metric_name: str) -> Dict[str, float]:
        """Summarize a timer.

        Returns:
            ``{"count": 0}`` for an unknown timer, otherwise count, min,
            max, avg and p95
        """
        with self._lock:
            ordered = sorted(self._timers.get(metric_name, ()))
        if not ordered:
            return {"count": 0}

        return {
            "count": len(ordered),
            "min": ordered[0],
            "max": ordered[-1],
            "avg": sum(ordered) / len(ordered),
            "p95": ordered[min(len(ordered) - 1, int(len(ordered) * 0.95))],
        }

    def get_error_summary(self, processor: Optional[str] = None) -> Dict[str, Any]:
        """Error counts by type, for one processor or keyed by processor."""
        with self._lock:
            if processor is not None:
                return dict(self._errors.get(processor, {}))
            return {name: dict(errors) for name, errors in self._errors.items()}

    def processor_summary(self, processor: str) -> Dict[str, Any]:
        """Outcome counts, errors and handler latency for one processor."""
        with self._lock:
            summary: Dict[str, Any] = {
                outcome: self._counters[f"messages.{outcome}.{processor}"]
                for outcome in OUTCOMES
                if outcome != "published"
            }
            summary["errors"] = self.get_error_summary(processor)
            summary["handler_ms"] = self.get_timer_stats(f"handler.{processor}")
        return summary

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "counters": {k: v for k, v in self._counters.items() if v},
                "timers": {name: self.get_timer_stats(name) for name in self._timers},
                "errors": self.get_error_summary(),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._timers.clear()
            self._errors.clear()

    def __repr__(self) -> str:
        with self._lock:
            return (
                f"MessagingMetrics(counters={len(self._counters)}, "
                f"timers={len(self._timers)}, "
                f"processors_with_errors={len(self._errors)})"
            )


_global_metrics: Optional[MessagingMetrics] = None
_global_lock = threading.Lock()


def get_metrics() -> MessagingMetrics:
    """Process-wide metrics instance, created on first use."""
    global _global_metrics
    with _global_lock:
        if _global_metrics is None:
            _global_metrics = MessagingMetrics()
            logger.debug("Global metrics instance created")
    return _global_metrics


def reset_metrics() -> None:
    get_metrics().reset()
    logger.debug("Metrics reset")
