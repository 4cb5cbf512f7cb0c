"""
Cost and performance collection for upstream services, plus the
YouTube processing monitor.
"""

import time
import uuid
import logging
import threading
from collections import deque
from dataclasses import dataclass, field, asdict
from functools import wraps
from typing import Optional, Dict, Any, List, Callable, Union

from storycraft.monitoring import record_service_call

logger = logging.getLogger(__name__)

DEFAULT_SERVICES = ('imagen', 'veo', 'gemini', 'tts', 'ffmpeg')

MAX_ENTRIES = 10000
MAX_SERIES_POINTS = 1000
RECENT_WINDOW_SECONDS = 300
RETENTION_SECONDS = 24 * 3600


@dataclass
class CostEntry:
    id: str
    timestamp: float
    service: str
    operation: str
    cost: float
    aspect_ratio: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'timestamp': self.timestamp,
            'service': self.service,
            'operation': self.operation,
            'cost': self.cost,
            'aspectRatio': self.aspect_ratio,
            'metadata': self.metadata,
        }


@dataclass
class PerformanceEntry:
    service: str
    operation: str
    duration: float
    success: bool
    timestamp: float
    aspect_ratio: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['aspectRatio'] = data.pop('aspect_ratio')
        return data


@dataclass
class _MetricPoint:
    timestamp: float
    value: float
    labels: Dict[str, str] = field(default_factory=dict)


class _ServiceSeries:
    def __init__(self):
        self.requests = deque(maxlen=MAX_SERIES_POINTS)
        self.errors = deque(maxlen=MAX_SERIES_POINTS)
        self.response_time = deque(maxlen=MAX_SERIES_POINTS)
        self.cost = deque(maxlen=MAX_SERIES_POINTS)


def _aspect_id(aspect_ratio: Any) -> Optional[str]:
    if aspect_ratio is None:
        return None
    return getattr(aspect_ratio, 'id', aspect_ratio)


# ==============================================================================
# METRICS COLLECTOR
# ==============================================================================

class MetricsCollector:
    """In-process time series for requests, errors, latency and cost per service.

    Every record is mirrored into the Prometheus service counters."""

    def __init__(self, services=DEFAULT_SERVICES, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._series: Dict[str, _ServiceSeries] = {name: _ServiceSeries() for name in services}
        self.cost_entries: List[CostEntry] = []
        self.performance_entries: List[PerformanceEntry] = []

    # --------------------------------------------------------------------------
    # Recording
    # --------------------------------------------------------------------------

    def record_request(self, service: str, success: bool, response_time: float,
                       aspect_ratio: Any = None, cost: float = 0):
        """response_time is in ms"""
        now = self._clock()
        ratio = _aspect_id(aspect_ratio)
        labels = {'success': str(success).lower()}
        if ratio:
            labels['aspect_ratio'] = ratio

        with self._lock:
            series = self._series.get(service)
            if series is not None:
                series.requests.append(_MetricPoint(now, 1, labels))
                if not success:
                    series.errors.append(_MetricPoint(now, 1, labels))
                series.response_time.append(_MetricPoint(now, response_time, labels))
                if cost and cost > 0:
                    series.cost.append(_MetricPoint(now, cost, labels))

            self.performance_entries.append(PerformanceEntry(
                service=service,
                operation='request',
                duration=response_time,
                success=success,
                timestamp=now,
                aspect_ratio=ratio,
            ))

        if cost and cost > 0:
            self.record_cost(service, 'request', cost, ratio)
        else:
            self.cleanup()

        record_service_call(service, success, response_time / 1000, cost or 0, ratio)

    def record_cost(self, service: str, operation: str, cost: float,
                    aspect_ratio: Any = None, metadata: Dict[str, Any] = None) -> CostEntry:
        now = self._clock()
        entry = CostEntry(
            id=f"{service}_{int(now * 1000)}_{uuid.uuid4().hex[:9]}",
            timestamp=now,
            service=service,
            operation=operation,
            cost=cost,
            aspect_ratio=_aspect_id(aspect_ratio),
            metadata=metadata,
        )
        with self._lock:
            self.cost_entries.append(entry)
        self.cleanup()
        return entry

    def record_performance(self, service: str, operation: str, duration: float,
                           success: bool, aspect_ratio: Any = None):
        with self._lock:
            self.performance_entries.append(PerformanceEntry(
                service=service,
                operation=operation,
                duration=duration,
                success=success,
                timestamp=self._clock(),
                aspect_ratio=_aspect_id(aspect_ratio),
            ))
        self.cleanup()

    def cleanup(self):
        """Drop entries older than 24h and cap the history length"""
        cutoff = self._clock() - RETENTION_SECONDS
        with self._lock:
            self.cost_entries = [e for e in self.cost_entries if e.timestamp > cutoff][-MAX_ENTRIES:]
            self.performance_entries = [e for e in self.performance_entries if e.timestamp > cutoff][-MAX_ENTRIES:]

    # --------------------------------------------------------------------------
    # Queries
    # --------------------------------------------------------------------------

    def _recent(self, points, seconds: float) -> List[_MetricPoint]:
        cutoff = self._clock() - seconds
        return [p for p in points if p.timestamp > cutoff]

    def _sum_recent(self, points, seconds: float = 3600) -> float:
        return sum(p.value for p in self._recent(points, seconds))

    def _avg_recent(self, points, seconds: float = 3600) -> float:
        recent = self._recent(points, seconds)
        if not recent:
            return 0
        return sum(p.value for p in recent) / len(recent)

    def _recent_cost(self, service: str, seconds: float) -> float:
        cutoff = self._clock() - seconds
        return sum(e.cost for e in self.cost_entries if e.service == service and e.timestamp > cutoff)

    def get_service_metrics(self, service: str) -> Optional[Dict[str, Any]]:
        series = self._series.get(service)
        if series is None:
            return None

        requests = self._sum_recent(series.requests, RECENT_WINDOW_SECONDS)
        errors = self._sum_recent(series.errors, RECENT_WINDOW_SECONDS)
        cutoff = self._clock() - RECENT_WINDOW_SECONDS
        breakdown: Dict[str, float] = {}
        for entry in self.cost_entries:
            if entry.service == service and entry.timestamp > cutoff and entry.aspect_ratio:
                breakdown[entry.aspect_ratio] = breakdown.get(entry.aspect_ratio, 0) + entry.cost

        return {
            'totalRequests': requests,
            'successfulRequests': requests - errors,
            'failedRequests': errors,
            'averageResponseTime': self._avg_recent(series.response_time, RECENT_WINDOW_SECONDS),
            'totalCost': self._recent_cost(service, RECENT_WINDOW_SECONDS),
            'aspectRatioBreakdown': breakdown,
        }

    def get_current_metrics(self) -> Dict[str, Any]:
        """Totals over the last 5 minutes across all services"""
        total_requests = 0
        total_errors = 0
        total_response_time = 0.0
        total_cost = 0.0
        services = {}

        for name, series in self._series.items():
            requests = self._sum_recent(series.requests, RECENT_WINDOW_SECONDS)
            errors = self._sum_recent(series.errors, RECENT_WINDOW_SECONDS)
            response_time = self._avg_recent(series.response_time, RECENT_WINDOW_SECONDS)
            cost = self._recent_cost(name, RECENT_WINDOW_SECONDS)

            total_requests += requests
            total_errors += errors
            total_response_time += response_time
            total_cost += cost
            services[name] = {
                'requests': requests,
                'errors': errors,
                'avgResponseTime': response_time,
                'cost': cost,
            }

        usage: Dict[str, float] = {}
        for entry in self.get_cost_history(hours=1):
            if entry.aspect_ratio:
                usage[entry.aspect_ratio] = usage.get(entry.aspect_ratio, 0) + entry.cost
        top = sorted(usage.items(), key=lambda item: item[1], reverse=True)[:5]

        return {
            'activeRequests': total_requests,
            'totalCost': total_cost,
            'errorRate': (total_errors / total_requests) * 100 if total_requests else 0,
            'avgResponseTime': total_response_time / len(self._series) if self._series else 0,
            'topAspectRatios': [{'ratio': ratio, 'usage': amount} for ratio, amount in top],
            'services': services,
        }

    def get_health_status(self) -> Dict[str, Any]:
        issues = []
        services = {}
        unhealthy = degraded = 0

        for name in self._series:
            metrics = self.get_service_metrics(name)
            if not metrics['totalRequests']:
                services[name] = {'status': 'unknown', 'errorRate': 0, 'avgResponseTime': 0}
                continue

            error_rate = metrics['failedRequests'] / metrics['totalRequests'] * 100
            avg_time = metrics['averageResponseTime']
            status = 'healthy'

            if error_rate > 10 or avg_time > 10000:
                status = 'unhealthy'
                unhealthy += 1
                issues.append(f"{name}: High error rate ({error_rate:.1f}%) or slow response time ({avg_time:.0f}ms)")
            elif error_rate > 5 or avg_time > 5000:
                status = 'degraded'
                degraded += 1
                issues.append(f"{name}: Elevated error rate ({error_rate:.1f}%) or response time ({avg_time:.0f}ms)")

            services[name] = {'status': status, 'errorRate': error_rate, 'avgResponseTime': avg_time}

        overall = 'unhealthy' if unhealthy else 'degraded' if degraded else 'healthy'
        return {'status': overall, 'services': services, 'issues': issues}

    def get_cost_history(self, service: str = None, aspect_ratio: str = None, hours: float = 24) -> List[CostEntry]:
        cutoff = self._clock() - hours * 3600
        return [
            e for e in self.cost_entries
            if e.timestamp > cutoff
            and (not service or e.service == service)
            and (not aspect_ratio or e.aspect_ratio == aspect_ratio)
        ]

    def get_performance_history(self, service: str = None, operation: str = None,
                                hours: float = 24) -> List[PerformanceEntry]:
        cutoff = self._clock() - hours * 3600
        return [
            e for e in self.performance_entries
            if e.timestamp > cutoff
            and (not service or e.service == service)
            and (not operation or e.operation == operation)
        ]

    def get_total_cost(self, service: str = None, aspect_ratio: str = None, hours: float = 24) -> float:
        return sum(e.cost for e in self.get_cost_history(service, aspect_ratio, hours))

    def export_metrics(self) -> Dict[str, Any]:
        return {
            'services': {name: self.get_service_metrics(name) for name in self._series},
            'costHistory': [e.to_dict() for e in self.cost_entries],
            'performanceHistory': [e.to_dict() for e in self.performance_entries],
            'exportTime': self._clock(),
        }


metrics_collector = MetricsCollector()


def with_metrics(service: str, collector: MetricsCollector = None, cost: Union[float, Callable[[Any], float]] = 0):
    """Decorator recording duration and outcome of a call against `service`

    `cost` is either a flat amount or a function of the call's result.
    """
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            target = collector or metrics_collector
            start = time.time()
            try:
                result = f(*args, **kwargs)
            except Exception:
                target.record_request(service, False, (time.time() - start) * 1000, kwargs.get('aspect_ratio'))
                raise
            spent = cost(result) if callable(cost) else cost
            target.record_request(service, True, (time.time() - start) * 1000, kwargs.get('aspect_ratio'), spent)
            return result
        return decorated
    return decorator


# ==============================================================================
# PROCESSING MONITOR
# ==============================================================================

MAX_EVENTS = 100
SLOW_PROCESSING_MS = 10000


@dataclass
class ProcessingEvent:
    id: str
    type: str
    url: str
    content_type: str
    timestamp: float
    strategy: Optional[str] = None
    duration: Optional[float] = None
    success: Optional[bool] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['contentType'] = data.pop('content_type')
        return data


class ProcessingMonitor:
    """Counters and a bounded event log for YouTube processing runs"""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self.events: deque = deque(maxlen=MAX_EVENTS)
        self._pending: Dict[str, ProcessingEvent] = {}
        self._reset_metrics()

    def _reset_metrics(self):
        self.metrics = {
            'totalRequests': 0,
            'successfulProcessing': 0,
            'failedProcessing': 0,
            'fallbackProcessing': 0,
            'shortsProcessed': 0,
            'averageProcessingTime': 0.0,
            'errorsByType': {},
            'processingStrategies': {},
            'lastUpdated': self._clock(),
        }

    def record_processing_start(self, url: str, content_type: str = 'video') -> str:
        event = ProcessingEvent(
            id=f"evt_{int(self._clock() * 1000)}_{uuid.uuid4().hex[:9]}",
            type='start',
            url=url,
            content_type=content_type,
            timestamp=self._clock(),
        )
        with self._lock:
            self.metrics['totalRequests'] += 1
            if content_type == 'shorts':
                self.metrics['shortsProcessed'] += 1
            self.metrics['lastUpdated'] = event.timestamp
            self._pending[event.id] = event
            self.events.append(event)
        return event.id

    def record_processing_complete(self, event_id: str, strategy: str, start_time: float,
                                   success: bool, error: Optional[BaseException] = None):
        """start_time is a clock value in seconds, as returned by time.time()"""
        now = self._clock()
        duration = (now - start_time) * 1000

        with self._lock:
            start = self._pending.pop(event_id, None)
            if success:
                self.metrics['successfulProcessing'] += 1
            else:
                self.metrics['failedProcessing'] += 1
            if strategy == 'fallback':
                self.metrics['fallbackProcessing'] += 1

            strategies = self.metrics['processingStrategies']
            strategies[strategy] = strategies.get(strategy, 0) + 1

            completed = self.metrics['successfulProcessing'] + self.metrics['failedProcessing']
            previous = self.metrics['averageProcessingTime']
            self.metrics['averageProcessingTime'] = previous + (duration - previous) / completed

            if error is not None:
                key = f"{type(error).__name__}:{str(error)[:50]}"
                self.metrics['errorsByType'][key] = self.metrics['errorsByType'].get(key, 0) + 1

            self.metrics['lastUpdated'] = now
            self.events.append(ProcessingEvent(
                id=event_id,
                type='complete' if success else 'error',
                url=start.url if start else '',
                content_type=start.content_type if start else 'video',
                timestamp=now,
                strategy=strategy,
                duration=duration,
                success=success,
                error=str(error) if error is not None else None,
            ))

        if not success:
            logger.warning(f"[WARN] Processing failed ({strategy}) after {duration:.0f}ms: {error}")
        elif duration > SLOW_PROCESSING_MS:
            logger.warning(f"[WARN] Slow processing ({strategy}): {duration:.0f}ms")

    def record_fallback(self, url: str, content_type: str, strategy: str):
        with self._lock:
            self.events.append(ProcessingEvent(
                id=f"evt_{int(self._clock() * 1000)}_{uuid.uuid4().hex[:9]}",
                type='fallback',
                url=url,
                content_type=content_type,
                timestamp=self._clock(),
                strategy=strategy,
            ))

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                **self.metrics,
                'errorsByType': dict(self.metrics['errorsByType']),
                'processingStrategies': dict(self.metrics['processingStrategies']),
            }

    def get_recent_events(self, limit: int = 10) -> List[ProcessingEvent]:
        with self._lock:
            return list(self.events)[-limit:]

    def get_success_rate(self) -> float:
        completed = self.metrics['successfulProcessing'] + self.metrics['failedProcessing']
        if not completed:
            return 0.0
        return self.metrics['successfulProcessing'] / completed * 100

    def get_fallback_rate(self) -> float:
        completed = self.metrics['successfulProcessing'] + self.metrics['failedProcessing']
        if not completed:
            return 0.0
        return self.metrics['fallbackProcessing'] / completed * 100

    def get_shorts_percentage(self) -> float:
        if not self.metrics['totalRequests']:
            return 0.0
        return self.metrics['shortsProcessed'] / self.metrics['totalRequests'] * 100

    def get_top_errors(self, limit: int = 5) -> List[Dict[str, Any]]:
        ranked = sorted(self.metrics['errorsByType'].items(), key=lambda item: item[1], reverse=True)
        return [{'error': error, 'count': count} for error, count in ranked[:limit]]

    def get_processing_strategy_breakdown(self) -> List[Dict[str, Any]]:
        strategies = self.metrics['processingStrategies']
        total = sum(strategies.values())
        return [
            {'strategy': name, 'count': count, 'percentage': count / total * 100 if total else 0}
            for name, count in sorted(strategies.items(), key=lambda item: item[1], reverse=True)
        ]

    def get_stats(self) -> Dict[str, Any]:
        return {
            'count': self.metrics['totalRequests'],
            'successRate': self.get_success_rate(),
            'averageDuration': self.metrics['averageProcessingTime'],
            'fallbackRate': self.get_fallback_rate(),
            'shortsPercentage': self.get_shorts_percentage(),
            'topErrors': self.get_top_errors(),
            'strategies': self.get_processing_strategy_breakdown(),
        }

    def generate_report(self) -> str:
        m = self.metrics
        lines = [
            'YouTube Processing Report',
            '=' * 25,
            f"Total requests:      {m['totalRequests']}",
            f"Successful:          {m['successfulProcessing']}",
            f"Failed:              {m['failedProcessing']}",
            f"Success rate:        {self.get_success_rate():.1f}%",
            f"Fallback rate:       {self.get_fallback_rate():.1f}%",
            f"Shorts:              {m['shortsProcessed']} ({self.get_shorts_percentage():.1f}%)",
            f"Avg processing time: {m['averageProcessingTime']:.0f}ms",
            '',
            'Strategies:',
        ]
        lines += [f"  {s['strategy']}: {s['count']} ({s['percentage']:.1f}%)"
                  for s in self.get_processing_strategy_breakdown()] or ['  none']
        lines += ['', 'Top errors:']
        lines += [f"  {e['error']}: {e['count']}" for e in self.get_top_errors()] or ['  none']
        return '\n'.join(lines)

    def reset(self):
        with self._lock:
            self.events.clear()
            self._pending.clear()
            self._reset_metrics()


processing_monitor = ProcessingMonitor()
