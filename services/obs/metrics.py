"""
Observability Metrics
Refresh pass outcomes, phase timings, query latency P50/P95 and lock contention counters
"""
from typing import Dict, List, Any, Optional
import logging
import time
from datetime import datetime
from collections import defaultdict, deque
from dataclasses import dataclass
import statistics
import threading
from contextlib import asynccontextmanager

from schemas.recommendation_schemas import RefreshOutcome, REFRESH_LOCKED_OUT, REFRESH_UP_TO_DATE

logger = logging.getLogger(__name__)


@dataclass
class PhaseMetric:
    """Metrics for a single phase of a refresh pass or query"""
    phase_name: str
    start_time: float
    end_time: float
    duration_ms: float
    input_count: int
    output_count: int
    drop_count: int
    success: bool
    error_message: Optional[str] = None


@dataclass
class RefreshRecord:
    """One finished refresh pass"""
    status: str
    full: bool
    finished_at: float
    duration_ms: float
    orders_processed: int
    pairs_merged: int
    success: bool
    error_type: Optional[str] = None


class MetricsCollector:
    """Collects and aggregates co-purchase observability metrics"""

    def __init__(self):
        # Historical metrics (rolling window)
        self.refresh_history = deque(maxlen=1000)
        self.query_durations = deque(maxlen=1000)
        self.phase_timings = defaultdict(list)  # phase_name -> [duration_ms]
        self.drop_reasons = defaultdict(int)

        self.counters = {
            "refresh_attempts": 0,
            "refresh_completed": 0,
            "refresh_up_to_date": 0,
            "refresh_locked_out": 0,
            "refresh_failed": 0,
            "full_rebuilds": 0,
            "orders_processed": 0,
            "pairs_merged": 0,
            "queries": 0,
            "query_failures": 0,
            "empty_results": 0,
            "products_recommended": 0,
        }
        self.last_refresh: Optional[Dict[str, Any]] = None

        self._lock = threading.Lock()

        self.performance_thresholds = {
            "max_refresh_duration_ms": 30000,
            "max_query_duration_ms": 250,
            "max_phase_duration_ms": {
                "list_orders": 2000,
                "fold_batch": 2000,
                "rank": 200,
                "filter": 200,
                "enrich": 500,
            },
            "min_success_rate": 0.95,
            "max_lock_contention_rate": 0.5,
        }

    @asynccontextmanager
    async def phase_timer(self, phase_name: str, input_count: int = 0):
        """Context manager for timing a phase"""
        start_time = time.time()
        phase_metric = PhaseMetric(
            phase_name=phase_name,
            start_time=start_time,
            end_time=0,
            duration_ms=0,
            input_count=input_count,
            output_count=0,
            drop_count=0,
            success=False,
        )

        try:
            yield phase_metric
            phase_metric.success = True
        except Exception as e:
            phase_metric.error_message = str(e)
            logger.error(f"Phase {phase_name} failed: {e}")
            raise
        finally:
            end_time = time.time()
            phase_metric.end_time = end_time
            phase_metric.duration_ms = (end_time - start_time) * 1000

            if phase_metric.input_count > 0:
                phase_metric.drop_count = max(0, phase_metric.input_count - phase_metric.output_count)

            with self._lock:
                self.phase_timings[phase_name].append(phase_metric.duration_ms)
                if phase_metric.drop_count:
                    self.drop_reasons[f"{phase_name}:filtered"] += phase_metric.drop_count
                self._check_phase_performance(phase_name, phase_metric.duration_ms)

    def record_refresh(self, outcome: RefreshOutcome) -> None:
        """Track a refresh pass that ran or was locked out"""
        with self._lock:
            self.counters["refresh_attempts"] += 1
            self.counters[f"refresh_{outcome.status}"] += 1
            if outcome.full and outcome.status != REFRESH_LOCKED_OUT:
                self.counters["full_rebuilds"] += 1
            self.counters["orders_processed"] += outcome.orders_processed
            self.counters["pairs_merged"] += outcome.pairs_merged

            self.refresh_history.append(
                RefreshRecord(
                    status=outcome.status,
                    full=outcome.full,
                    finished_at=time.time(),
                    duration_ms=outcome.duration_ms,
                    orders_processed=outcome.orders_processed,
                    pairs_merged=outcome.pairs_merged,
                    success=True,
                )
            )
            self.last_refresh = outcome.to_dict()

        if outcome.duration_ms > self.performance_thresholds["max_refresh_duration_ms"]:
            logger.warning(
                f"Refresh pass exceeded threshold: {outcome.duration_ms:.2f}ms > "
                f"{self.performance_thresholds['max_refresh_duration_ms']}ms"
            )

    def record_refresh_failure(self, error: Exception, full: bool = False, duration_ms: float = 0.0) -> None:
        with self._lock:
            self.counters["refresh_attempts"] += 1
            self.counters["refresh_failed"] += 1
            self.refresh_history.append(
                RefreshRecord(
                    status="failed",
                    full=full,
                    finished_at=time.time(),
                    duration_ms=duration_ms,
                    orders_processed=0,
                    pairs_merged=0,
                    success=False,
                    error_type=type(error).__name__,
                )
            )

    def record_query(self, duration_ms: float, result_count: int, success: bool = True) -> None:
        with self._lock:
            self.counters["queries"] += 1
            if not success:
                self.counters["query_failures"] += 1
                return
            self.query_durations.append(duration_ms)
            self.counters["products_recommended"] += result_count
            if result_count == 0:
                self.counters["empty_results"] += 1

        if duration_ms > self.performance_thresholds["max_query_duration_ms"]:
            logger.warning(f"Recommendation query took {duration_ms:.2f}ms")

    def get_phase_diagnostics(self, phase_name: Optional[str] = None) -> Dict[str, Any]:
        """Get detailed phase performance diagnostics"""
        diagnostics = {}

        with self._lock:
            if phase_name:
                timings = self.phase_timings.get(phase_name, [])
                if timings:
                    diagnostics[phase_name] = self._calculate_phase_stats(timings)
            else:
                for phase, timings in self.phase_timings.items():
                    if timings:
                        diagnostics[phase] = self._calculate_phase_stats(timings)

        return diagnostics

    def get_performance_summary(self) -> Dict[str, Any]:
        """Get overall refresh and query performance summary"""
        with self._lock:
            recent = list(self.refresh_history)[-100:]
            ran = [r for r in recent if r.status != REFRESH_LOCKED_OUT]
            durations = [r.duration_ms for r in ran if r.success and r.status != REFRESH_UP_TO_DATE]
            queries = list(self.query_durations)

            summary: Dict[str, Any] = {
                "counters": dict(self.counters),
                "last_refresh": self.last_refresh,
                "refresh": {
                    "recent_passes_analyzed": len(recent),
                    "success_rate": round(sum(1 for r in ran if r.success) / len(ran), 3) if ran else None,
                    "lock_contention_rate": round(
                        sum(1 for r in recent if r.status == REFRESH_LOCKED_OUT) / len(recent), 3
                    ) if recent else 0,
                },
                "queries": {
                    "count": len(queries),
                },
                "alerts": self._check_performance_alerts(),
            }
            if durations:
                summary["refresh"].update(self._duration_stats(durations))
            if queries:
                summary["queries"].update(self._duration_stats(queries))
            return summary

    def get_real_time_metrics(self) -> Dict[str, Any]:
        """Get real-time metrics for monitoring dashboards"""
        with self._lock:
            cutoff_time = time.time() - 300
            recent = [r for r in self.refresh_history if r.finished_at >= cutoff_time]
            failures = [r for r in recent if not r.success]

            return {
                "timestamp": datetime.now().isoformat(),
                "recent_activity": {
                    "refreshes_last_5min": len(recent),
                    "failures_last_5min": len(failures),
                    "locked_out_last_5min": sum(1 for r in recent if r.status == REFRESH_LOCKED_OUT),
                    "orders_processed_last_5min": sum(r.orders_processed for r in recent),
                },
                "health_status": self._get_health_status(),
            }

    def reset(self) -> None:
        with self._lock:
            self.refresh_history.clear()
            self.query_durations.clear()
            self.phase_timings.clear()
            self.drop_reasons.clear()
            for key in self.counters:
                self.counters[key] = 0
            self.last_refresh = None

    # Private helper methods

    def _duration_stats(self, durations: List[float]) -> Dict[str, float]:
        return {
            "avg_duration_ms": round(statistics.mean(durations), 2),
            "p50_duration_ms": round(statistics.median(durations), 2),
            "p95_duration_ms": round(self._percentile(durations, 95), 2),
            "max_duration_ms": round(max(durations), 2),
        }

    def _calculate_phase_stats(self, timings: List[float]) -> Dict[str, Any]:
        """Calculate statistics for a phase"""
        return {
            "count": len(timings),
            "avg_ms": round(statistics.mean(timings), 2),
            "median_ms": round(statistics.median(timings), 2),
            "p95_ms": round(self._percentile(timings, 95), 2),
            "p99_ms": round(self._percentile(timings, 99), 2),
            "min_ms": round(min(timings), 2),
            "max_ms": round(max(timings), 2),
            "std_dev_ms": round(statistics.stdev(timings) if len(timings) > 1 else 0, 2),
        }

    def _percentile(self, data: List[float], percentile: float) -> float:
        """Calculate percentile of data"""
        if not data:
            return 0
        sorted_data = sorted(data)
        index = (percentile / 100) * (len(sorted_data) - 1)
        if index.is_integer():
            return sorted_data[int(index)]
        lower = sorted_data[int(index)]
        upper = sorted_data[int(index) + 1]
        return lower + (upper - lower) * (index - int(index))

    def _check_phase_performance(self, phase_name: str, duration_ms: float):
        threshold = self.performance_thresholds["max_phase_duration_ms"].get(phase_name, 5000)
        if duration_ms > threshold:
            logger.warning(f"Phase {phase_name} exceeded threshold: {duration_ms:.2f}ms > {threshold}ms")

    def _check_performance_alerts(self) -> List[Dict[str, Any]]:
        alerts = []
        recent = list(self.refresh_history)[-50:]
        ran = [r for r in recent if r.status != REFRESH_LOCKED_OUT]

        if ran:
            success_rate = sum(1 for r in ran if r.success) / len(ran)
            if success_rate < self.performance_thresholds["min_success_rate"]:
                alerts.append({
                    "type": "refresh_failures",
                    "severity": "critical",
                    "message": f"Refresh success rate {success_rate:.2%} below threshold "
                               f"{self.performance_thresholds['min_success_rate']:.2%}",
                    "value": success_rate,
                    "threshold": self.performance_thresholds["min_success_rate"],
                })

        if recent:
            contention = sum(1 for r in recent if r.status == REFRESH_LOCKED_OUT) / len(recent)
            if contention > self.performance_thresholds["max_lock_contention_rate"]:
                alerts.append({
                    "type": "lock_contention",
                    "severity": "warning",
                    "message": f"{contention:.0%} of recent refresh attempts were locked out",
                    "value": contention,
                    "threshold": self.performance_thresholds["max_lock_contention_rate"],
                })

        return alerts

    def _get_health_status(self) -> str:
        alerts = self._check_performance_alerts()
        if any(a["severity"] == "critical" for a in alerts):
            return "critical"
        if alerts:
            return "warning"
        return "healthy"


# Global metrics collector instance
metrics_collector = MetricsCollector()
