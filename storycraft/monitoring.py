"""
Monitoring Module for StoryCraft API
Prometheus metrics + Sentry error tracking
"""

import os
import sys
import time
import logging
from functools import wraps

import redis
import sentry_sdk
from flask import Flask, Blueprint, Response, current_app, request, g
from prometheus_client import Counter, Histogram, Gauge, Info, generate_latest, CONTENT_TYPE_LATEST
from sentry_sdk.integrations.flask import FlaskIntegration
from sentry_sdk.integrations.redis import RedisIntegration

logger = logging.getLogger(__name__)

# ==============================================================================
# PROMETHEUS METRICS
# ==============================================================================

# Request metrics
REQUEST_COUNT = Counter(
    'storycraft_http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status_code']
)

REQUEST_LATENCY = Histogram(
    'storycraft_http_request_duration_seconds',
    'HTTP request latency',
    ['method', 'endpoint'],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0]
)

ERROR_COUNT = Counter(
    'storycraft_errors_total',
    'Total errors',
    ['error_type', 'endpoint']
)

# Upstream AI/media services
SERVICE_REQUEST_COUNT = Counter(
    'storycraft_service_requests_total',
    'Upstream service calls',
    ['service', 'status']
)

SERVICE_REQUEST_DURATION = Histogram(
    'storycraft_service_request_duration_seconds',
    'Upstream service call duration',
    ['service'],
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30, 60, 120]
)

SERVICE_COST = Counter(
    'storycraft_service_cost_usd_total',
    'Accumulated upstream cost',
    ['service', 'aspect_ratio']
)

# Pitch generation
PITCH_GENERATION_COUNT = Counter(
    'storycraft_pitch_generations_total',
    'Pitch generation requests',
    ['source_type', 'strategy', 'status']
)

JSON_PARSE_COUNT = Counter(
    'storycraft_json_parse_total',
    'AI response parse outcomes',
    ['outcome']
)

# Cache
CACHE_REQUESTS = Counter(
    'storycraft_cache_requests_total',
    'Cache lookups',
    ['cache', 'result']
)

# Credits
CREDITS_USED = Counter(
    'storycraft_credits_used_total',
    'Credits deducted',
    ['operation']
)

# Resilience
CIRCUIT_STATE = Gauge(
    'storycraft_circuit_state',
    'Circuit breaker state (0=closed, 1=half-open, 2=open)',
    ['circuit']
)

# Service health
SERVICE_STATUS = Gauge(
    'storycraft_service_status',
    'Service availability status (1=up, 0=down)',
    ['service']
)

# System info
APP_INFO = Info('storycraft_app', 'Application information')

_CIRCUIT_STATE_VALUES = {'CLOSED': 0, 'HALF_OPEN': 1, 'OPEN': 2}


def record_cache_access(cache_name: str, hit: bool):
    CACHE_REQUESTS.labels(cache=cache_name, result='hit' if hit else 'miss').inc()


def record_circuit_state(name: str, state: str):
    CIRCUIT_STATE.labels(circuit=name).set(_CIRCUIT_STATE_VALUES.get(state, 0))


def record_credits_used(operation: str, amount: int):
    CREDITS_USED.labels(operation=operation).inc(amount)


def record_json_parse(success: bool, attempts: int):
    if not success:
        outcome = 'failed'
    elif attempts <= 1:
        outcome = 'strict'
    else:
        outcome = 'repaired'
    JSON_PARSE_COUNT.labels(outcome=outcome).inc()


def record_pitch_generation(source_type: str, strategy: str, success: bool):
    PITCH_GENERATION_COUNT.labels(
        source_type=source_type,
        strategy=strategy,
        status='success' if success else 'failed'
    ).inc()


def record_service_call(service: str, success: bool, duration_seconds: float,
                        cost: float = 0, aspect_ratio: str = None):
    SERVICE_REQUEST_COUNT.labels(service=service, status='success' if success else 'failed').inc()
    SERVICE_REQUEST_DURATION.labels(service=service).observe(duration_seconds)
    if cost > 0:
        SERVICE_COST.labels(service=service, aspect_ratio=aspect_ratio or 'none').inc(cost)

# ==============================================================================
# SENTRY ERROR TRACKING
# ==============================================================================

def init_sentry(app: Flask) -> bool:
    """Initialize Sentry error tracking"""
    sentry_dsn = app.config.get('SENTRY_DSN') or os.getenv('SENTRY_DSN', '')

    if not sentry_dsn or sentry_dsn.startswith('https://your'):
        logger.warning("[WARN] Sentry DSN not configured")
        return False

    sentry_sdk.init(
        dsn=sentry_dsn,
        integrations=[
            FlaskIntegration(),
            RedisIntegration(),
        ],
        traces_sample_rate=float(os.getenv('SENTRY_TRACES_SAMPLE_RATE', 0.1)),
        environment=os.getenv('FLASK_ENV', 'production'),
        release=os.getenv('APP_VERSION', '1.0.0'),
        server_name=os.getenv('SERVER_NAME', 'storycraft-api'),
        send_default_pii=False,
        before_send=_sentry_before_send,
    )

    logger.info("[OK] Sentry initialized")
    return True


def _sentry_before_send(event, hint):
    """Filter sensitive data before sending to Sentry"""
    if 'request' in event and 'headers' in event['request']:
        headers = event['request']['headers']
        for header in ['Authorization', 'X-API-Key', 'Cookie']:
            if header in headers:
                headers[header] = '[FILTERED]'

    if 'breadcrumbs' in event:
        for breadcrumb in event['breadcrumbs'].get('values', []):
            if 'data' in breadcrumb:
                for key in ['password', 'api_key', 'token', 'secret', 'key']:
                    if key in breadcrumb['data']:
                        breadcrumb['data'][key] = '[FILTERED]'

    return event


def capture_exception(exception: Exception, extra: dict = None):
    """Capture exception to Sentry"""
    with sentry_sdk.new_scope() as scope:
        for key, value in (extra or {}).items():
            scope.set_extra(key, value)
        sentry_sdk.capture_exception(exception)


def set_user_context(user_id: str, email: str = None):
    sentry_sdk.set_user({'id': user_id, 'email': email})


# ==============================================================================
# FLASK MIDDLEWARE
# ==============================================================================

def init_monitoring(app: Flask):
    """Initialize all monitoring for Flask app"""
    sentry_enabled = init_sentry(app)

    APP_INFO.info({
        'version': os.getenv('APP_VERSION', '1.0.0'),
        'environment': os.getenv('FLASK_ENV', 'production'),
        'sentry_enabled': str(sentry_enabled),
        'python_version': sys.version.split()[0],
    })

    @app.before_request
    def start_timer():
        g.start_time = time.time()

    @app.after_request
    def record_request(response):
        if hasattr(g, 'start_time'):
            duration = time.time() - g.start_time
            endpoint = request.endpoint or 'unknown'

            REQUEST_COUNT.labels(
                method=request.method,
                endpoint=endpoint,
                status_code=response.status_code
            ).inc()

            REQUEST_LATENCY.labels(
                method=request.method,
                endpoint=endpoint
            ).observe(duration)

        return response

    logger.info("[OK] Monitoring middleware initialized")


def record_error(error: Exception):
    """Count and report an unhandled exception raised inside a request"""
    endpoint = request.endpoint or 'unknown'
    ERROR_COUNT.labels(error_type=type(error).__name__, endpoint=endpoint).inc()
    capture_exception(error, extra={
        'endpoint': endpoint,
        'method': request.method,
        'url': request.url,
        'request_id': getattr(g, 'request_id', 'unknown'),
    })

# ==============================================================================
# METRIC DECORATORS
# ==============================================================================

def track_pitch_generation(source_type: str):
    """Decorator counting pitch generation outcomes for a source type"""
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            success = True
            try:
                return f(*args, **kwargs)
            except Exception:
                success = False
                raise
            finally:
                record_pitch_generation(source_type, 'request', success)
        return decorated
    return decorator

# ==============================================================================
# SERVICE HEALTH TRACKING
# ==============================================================================

def update_service_status(service: str, is_healthy: bool):
    SERVICE_STATUS.labels(service=service).set(1 if is_healthy else 0)


def check_all_services(config: dict) -> dict:
    """Check and update status of all services"""
    services = {
        'gemini': bool(config.get('GEMINI_API_KEY')),
        'youtube': bool(config.get('YOUTUBE_API_KEY')),
        'redis': _check_redis(config.get('REDIS_URL')),
    }

    for service, is_healthy in services.items():
        update_service_status(service, is_healthy)

    return services


def _check_redis(redis_url: str) -> bool:
    if not redis_url:
        return False
    try:
        redis.from_url(redis_url, socket_connect_timeout=2).ping()
        return True
    except redis.RedisError as e:
        logger.warning(f"[WARN] Redis health check failed: {e}")
        return False

# ==============================================================================
# METRICS ENDPOINT BLUEPRINT
# ==============================================================================

metrics_bp = Blueprint('metrics', __name__)


@metrics_bp.route('/metrics')
def metrics():
    """Prometheus metrics endpoint"""
    check_all_services(current_app.config)
    return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)


@metrics_bp.route('/readiness')
def readiness():
    """Readiness check for Kubernetes"""
    services = check_all_services(current_app.config)

    if services.get('gemini'):
        return {'status': 'ready', 'services': services}
    return {'status': 'not_ready', 'services': services}, 503


@metrics_bp.route('/liveness')
def liveness():
    """Liveness check for Kubernetes"""
    return {'status': 'alive', 'timestamp': time.time()}
