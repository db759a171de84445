"""
Vault Store Call Monitoring

Every repository call is timed. Calls slower than ``database.slow_query_ms``
are logged, and row locks that were not granted within the PostgreSQL
``lock_timeout`` are counted on their own, since they mean two writers
contended for the same vault record.

Usage:
    @timed_query("vault_get")
    def get(self, vault_id: str):
        ...
"""

import logging
import threading
import time
from functools import wraps
from typing import Any, Callable, Dict

from prometheus_client import Counter, Histogram
from sqlalchemy.exc import OperationalError

logger = logging.getLogger(__name__)

# SQLSTATE lock_not_available, raised when lock_timeout expires
LOCK_NOT_AVAILABLE = "55P03"

_slow_query_ms = 1000.0


def configure_monitoring(slow_query_ms: float = 1000.0) -> None:
    """Set the threshold above which a store call is logged as slow"""
    global _slow_query_ms
    _slow_query_ms = slow_query_ms


# ============================================
# PROMETHEUS METRICS
# ============================================

store_call_seconds = Histogram(
    'vault_store_call_seconds',
    'Vault store repository call duration in seconds',
    ['operation', 'status'],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)
)

store_slow_calls_total = Counter(
    'vault_store_slow_calls_total',
    'Vault store calls slower than the configured threshold',
    ['operation']
)

store_lock_timeouts_total = Counter(
    'vault_store_lock_timeouts_total',
    'Vault row locks not granted within lock_timeout',
    ['operation']
)


def is_lock_timeout(exc: BaseException) -> bool:
    """True when the database gave up waiting for a row lock"""
    if not isinstance(exc, OperationalError):
        return False
    return getattr(exc.orig, 'pgcode', None) == LOCK_NOT_AVAILABLE


# ============================================
# IN-PROCESS FIGURES
# ============================================

_figures: Dict[str, Dict[str, float]] = {}
_figures_lock = threading.Lock()


def _record(operation: str, seconds: float, status: str) -> None:
    elapsed_ms = seconds * 1000
    slow = elapsed_ms > _slow_query_ms

    with _figures_lock:
        entry = _figures.setdefault(operation, {
            'count': 0, 'errors': 0, 'lock_timeouts': 0, 'slow': 0,
            'total_ms': 0.0, 'max_ms': 0.0,
        })
        entry['count'] += 1
        entry['total_ms'] += elapsed_ms
        entry['max_ms'] = max(entry['max_ms'], elapsed_ms)
        if status != "success":
            entry['errors'] += 1
        if status == "lock_timeout":
            entry['lock_timeouts'] += 1
        if slow:
            entry['slow'] += 1

    store_call_seconds.labels(operation=operation, status=status).observe(seconds)
    if status == "lock_timeout":
        store_lock_timeouts_total.labels(operation=operation).inc()
        logger.warning("Vault row lock not granted during %s", operation)
    if slow:
        store_slow_calls_total.labels(operation=operation).inc()
        logger.warning(
            "Slow vault store call: %s took %.2fms (threshold %.0fms)",
            operation, elapsed_ms, _slow_query_ms
        )


def get_db_metrics() -> Dict[str, Any]:
    """Per-operation call figures collected so far"""
    with _figures_lock:
        return {
            operation: {
                'count': int(entry['count']),
                'errors': int(entry['errors']),
                'lock_timeouts': int(entry['lock_timeouts']),
                'slow_calls': int(entry['slow']),
                'avg_time_ms': round(entry['total_ms'] / entry['count'], 2),
                'max_time_ms': round(entry['max_ms'], 2),
            }
            for operation, entry in _figures.items()
        }


def reset_metrics() -> None:
    with _figures_lock:
        _figures.clear()


def timed_query(operation: str):
    """Decorator timing one repository method under ``operation``"""
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            start = time.perf_counter()
            status = "success"
            try:
                return func(*args, **kwargs)
            except Exception as e:
                status = "lock_timeout" if is_lock_timeout(e) else "error"
                raise
            finally:
                _record(operation, time.perf_counter() - start, status)
        return wrapper
    return decorator
