"""
Performance Monitoring for the Employee Compliance Engine

This module provides:
- Query timing context manager for slow query detection
- Prometheus metrics for queries, evidence syncs and score recalculation
- In-process query statistics

Usage:
    from employee_compliance.monitoring import query_timer, get_db_metrics

    with query_timer("calculate_employee_score"):
        breakdown = calculator.calculate_employee_score(employee_id)

    get_db_metrics()["operations"]["calculate_employee_score"]

The same statistics are reported by the API health endpoint.
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, Any, List, Callable
from functools import wraps
import threading

from prometheus_client import Histogram, Counter

logger = logging.getLogger(__name__)


# ============================================
# CONFIGURATION
# ============================================

@dataclass
class MonitoringConfig:
    """Configuration for query monitoring."""
    slow_query_threshold_ms: float = 1000.0  # Log queries slower than this
    warning_threshold_ms: float = 500.0       # Info-log queries slower than this
    enable_prometheus: bool = True
    enable_logging: bool = True


_config = MonitoringConfig()


def configure_monitoring(
    slow_query_threshold_ms: float = 1000.0,
    warning_threshold_ms: float = 500.0,
    enable_prometheus: bool = True,
    enable_logging: bool = True
) -> None:
    """
    Configure monitoring settings.

    Args:
        slow_query_threshold_ms: Log queries slower than this (ms)
        warning_threshold_ms: Info-log queries slower than this (ms)
        enable_prometheus: Enable Prometheus metrics
        enable_logging: Enable logging
    """
    global _config
    _config = MonitoringConfig(
        slow_query_threshold_ms=slow_query_threshold_ms,
        warning_threshold_ms=warning_threshold_ms,
        enable_prometheus=enable_prometheus,
        enable_logging=enable_logging
    )


# ============================================
# PROMETHEUS METRICS
# ============================================

db_query_duration = Histogram(
    'employee_compliance_db_query_duration_seconds',
    'Database query duration in seconds',
    ['operation', 'status'],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

db_slow_queries_total = Counter(
    'employee_compliance_db_slow_queries_total',
    'Total number of slow database queries',
    ['operation']
)

evidence_records_processed_total = Counter(
    'employee_compliance_evidence_records_processed_total',
    'Evidence records correlated successfully',
    ['evidence_type']
)

evidence_records_failed_total = Counter(
    'employee_compliance_evidence_records_failed_total',
    'Evidence records rejected or failed to persist',
    ['evidence_type']
)

score_recalculation_duration = Histogram(
    'employee_compliance_score_recalculation_seconds',
    'Duration of organization-wide score recalculation runs',
    buckets=(0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0)
)

employees_scored_total = Counter(
    'employee_compliance_employees_scored_total',
    'Employee scores persisted',
    ['status']
)


def record_sync_result(evidence_type: str, processed: int, errors: int) -> None:
    """Record the outcome of one evidence batch."""
    if not _config.enable_prometheus:
        return
    if processed:
        evidence_records_processed_total.labels(evidence_type=evidence_type).inc(processed)
    if errors:
        evidence_records_failed_total.labels(evidence_type=evidence_type).inc(errors)


def record_score_update(success: bool) -> None:
    if _config.enable_prometheus:
        employees_scored_total.labels(status="success" if success else "error").inc()


@contextmanager
def recalculation_timer():
    """Observe the wall time of a recalculation run."""
    start_time = time.perf_counter()
    try:
        yield
    finally:
        if _config.enable_prometheus:
            score_recalculation_duration.observe(time.perf_counter() - start_time)


# ============================================
# QUERY STATS TRACKING
# ============================================

@dataclass
class QueryStats:
    """Statistics for a single query type."""
    operation: str
    count: int = 0
    total_time_ms: float = 0.0
    min_time_ms: float = float('inf')
    max_time_ms: float = 0.0
    errors: int = 0
    slow_queries: int = 0
    last_executed: Optional[datetime] = None

    @property
    def avg_time_ms(self) -> float:
        """Average query time in milliseconds."""
        return self.total_time_ms / self.count if self.count > 0 else 0.0

    def record(self, duration_ms: float, error: bool = False, slow: bool = False) -> None:
        """Record a query execution."""
        self.count += 1
        self.total_time_ms += duration_ms
        self.min_time_ms = min(self.min_time_ms, duration_ms)
        self.max_time_ms = max(self.max_time_ms, duration_ms)
        self.last_executed = datetime.now()

        if error:
            self.errors += 1
        if slow:
            self.slow_queries += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            'operation': self.operation,
            'count': self.count,
            'total_time_ms': round(self.total_time_ms, 2),
            'avg_time_ms': round(self.avg_time_ms, 2),
            'min_time_ms': round(self.min_time_ms, 2) if self.min_time_ms != float('inf') else 0.0,
            'max_time_ms': round(self.max_time_ms, 2),
            'errors': self.errors,
            'slow_queries': self.slow_queries,
            'last_executed': self.last_executed.isoformat() if self.last_executed else None
        }


class QueryStatsCollector:
    """Thread-safe collector for query statistics."""

    def __init__(self):
        self._stats: Dict[str, QueryStats] = {}
        self._lock = threading.Lock()
        self._start_time = datetime.now()

    def record(self, operation: str, duration_ms: float, error: bool = False, slow: bool = False) -> None:
        with self._lock:
            if operation not in self._stats:
                self._stats[operation] = QueryStats(operation=operation)
            self._stats[operation].record(duration_ms, error, slow)

    def get_stats(self, operation: Optional[str] = None) -> Dict[str, Any]:
        with self._lock:
            if operation:
                stat = self._stats.get(operation)
                return stat.to_dict() if stat else {}

            return {
                'uptime_seconds': (datetime.now() - self._start_time).total_seconds(),
                'operations': {
                    op: stats.to_dict() for op, stats in self._stats.items()
                }
            }

    def get_slow_queries(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                stats.to_dict()
                for stats in self._stats.values()
                if stats.slow_queries > 0
            ]

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()
            self._start_time = datetime.now()


_stats_collector = QueryStatsCollector()


def get_db_metrics() -> Dict[str, Any]:
    """Get current query statistics."""
    return _stats_collector.get_stats()


def get_slow_query_report() -> List[Dict[str, Any]]:
    """Get operations that recorded at least one slow query."""
    return _stats_collector.get_slow_queries()


def reset_metrics() -> None:
    """Reset all collected in-process statistics."""
    _stats_collector.reset()


# ============================================
# QUERY TIMER
# ============================================

@contextmanager
def query_timer(operation: str):
    """
    Context manager to time and monitor database queries.

    Logs slow queries and records metrics for monitoring.

    Args:
        operation: Name of the operation (e.g., 'list_employees')
    """
    start_time = time.perf_counter()
    error_occurred = False

    try:
        yield
    except Exception:
        error_occurred = True
        raise
    finally:
        duration = time.perf_counter() - start_time
        duration_ms = duration * 1000

        is_slow = duration_ms > _config.slow_query_threshold_ms
        is_warning = duration_ms > _config.warning_threshold_ms

        _stats_collector.record(
            operation=operation,
            duration_ms=duration_ms,
            error=error_occurred,
            slow=is_slow
        )

        if _config.enable_prometheus:
            status = "error" if error_occurred else "success"
            db_query_duration.labels(operation=operation, status=status).observe(duration)
            if is_slow:
                db_slow_queries_total.labels(operation=operation).inc()

        if _config.enable_logging:
            if is_slow:
                logger.warning(
                    f"SLOW QUERY: {operation} took {duration_ms:.2f}ms "
                    f"(threshold: {_config.slow_query_threshold_ms}ms)"
                )
            elif is_warning and not error_occurred:
                logger.info(f"Query {operation} took {duration_ms:.2f}ms")


def timed_query(operation: str):
    """
    Decorator to time and monitor database query methods.

    Usage:
        @timed_query("list_employees")
        def list_employees(self, filters):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            with query_timer(operation):
                return func(*args, **kwargs)
        return wrapper
    return decorator
