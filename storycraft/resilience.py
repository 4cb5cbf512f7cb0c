"""
Retry and circuit-breaker helpers for outbound calls (YouTube Data API, Gemini).
"""

import time
import random
import logging
import threading
from typing import Callable, Optional, Dict, Any, TypeVar

import requests

logger = logging.getLogger(__name__)

T = TypeVar('T')

RETRYABLE_ERROR_CODES = ('ECONNRESET', 'ETIMEDOUT', 'ENOTFOUND', 'ECONNREFUSED')
RETRYABLE_STATUS_CODES = (429, 502, 503, 504)
RETRYABLE_MESSAGES = ('rate limit', 'timeout', 'network', 'temporarily unavailable', 'service unavailable')


class RetryExhaustedError(Exception):
    """Raised once an operation fails for good; keeps the last underlying error"""

    def __init__(self, original_error: Exception, context: str, attempts: int):
        super().__init__(f"Operation failed after {attempts} attempt(s): {context}\n"
                         f"Original error: {original_error}")
        self.original_error = original_error
        self.context = context
        self.attempts = attempts


class CircuitOpenError(Exception):
    def __init__(self):
        super().__init__('Circuit breaker is OPEN - service temporarily unavailable')


def error_status(error: Exception) -> Optional[int]:
    status = getattr(error, 'status', None) or getattr(error, 'status_code', None)
    if status is None:
        response = getattr(error, 'response', None)
        status = getattr(response, 'status_code', None)
    return status if isinstance(status, int) else None


# ==============================================================================
# RETRY
# ==============================================================================

class RetryService:
    """Exponential backoff with jitter"""

    def __init__(self, max_attempts: int = 3, backoff_multiplier: float = 1.5,
                 base_delay: int = 1000, max_delay: int = 10000,
                 sleep: Callable[[float], None] = time.sleep):
        self.max_attempts = max_attempts
        self.backoff_multiplier = backoff_multiplier
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep

    def execute(self, operation: Callable[[], T], context: str, max_attempts: int = None) -> T:
        attempts = max_attempts or self.max_attempts

        for attempt in range(1, attempts + 1):
            try:
                logger.debug(f"Attempting operation: {context} (attempt {attempt}/{attempts})")
                result = operation()
                if attempt > 1:
                    logger.info(f"[OK] Operation succeeded after {attempt} attempts: {context}")
                return result
            except Exception as e:
                logger.warning(f"[WARN] Operation failed (attempt {attempt}/{attempts}): {context}: {e}")
                if attempt == attempts or not self.is_retryable(e):
                    raise RetryExhaustedError(e, context, attempt) from e

                delay = self.calculate_delay(attempt)
                logger.info(f"Retrying in {delay:.0f}ms...")
                self._sleep(delay / 1000)

        raise AssertionError('unreachable')

    @staticmethod
    def is_retryable(error: Exception) -> bool:
        flagged = getattr(error, 'is_retryable', None)
        if isinstance(flagged, bool):
            return flagged
        if isinstance(error, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
            return True
        if getattr(error, 'code', None) in RETRYABLE_ERROR_CODES:
            return True
        if error_status(error) in RETRYABLE_STATUS_CODES:
            return True
        message = str(error).lower()
        return any(fragment in message for fragment in RETRYABLE_MESSAGES)

    def calculate_delay(self, attempt: int) -> float:
        """Delay in ms for the given 1-based attempt"""
        exponential = self.base_delay * (self.backoff_multiplier ** (attempt - 1))
        return min(exponential, self.max_delay) * (0.5 + random.random() * 0.5)


# ==============================================================================
# CIRCUIT BREAKER
# ==============================================================================

class CircuitBreaker:
    """CLOSED -> OPEN after `failure_threshold` failures; OPEN -> HALF_OPEN after
    `reset_timeout` seconds; HALF_OPEN -> CLOSED after 3 consecutive successes."""

    CLOSED = 'CLOSED'
    OPEN = 'OPEN'
    HALF_OPEN = 'HALF_OPEN'

    HALF_OPEN_SUCCESSES = 3

    def __init__(self, name: str = 'default', failure_threshold: int = 5, reset_timeout: float = 60.0,
                 clock: Callable[[], float] = time.time,
                 on_state_change: Callable[[str, str], None] = None):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._on_state_change = on_state_change
        self._lock = threading.Lock()
        self.state = self.CLOSED
        self.failures = 0
        self.success_count = 0
        self.last_fail_time = 0.0

    def execute(self, operation: Callable[[], T], fallback: Callable[[], T] = None) -> T:
        self._check_reset()

        if self.state == self.OPEN:
            logger.warning(f"[WARN] Circuit '{self.name}' is OPEN")
            if fallback:
                return fallback()
            raise CircuitOpenError()

        try:
            result = operation()
        except Exception:
            self._on_failure()
            if self.state == self.OPEN and fallback:
                logger.warning(f"[WARN] Circuit '{self.name}' opened, using fallback")
                return fallback()
            raise

        self._on_success()
        return result

    def _check_reset(self):
        with self._lock:
            if self.state == self.OPEN and self._clock() - self.last_fail_time > self.reset_timeout:
                self.failures = 0
                self._set_state(self.HALF_OPEN)

    def _on_success(self):
        with self._lock:
            if self.state == self.HALF_OPEN:
                self.success_count += 1
                if self.success_count >= self.HALF_OPEN_SUCCESSES:
                    self.failures = 0
                    self.success_count = 0
                    self._set_state(self.CLOSED)
            elif self.state == self.CLOSED:
                self.failures = 0

    def _on_failure(self):
        with self._lock:
            self.failures += 1
            self.last_fail_time = self._clock()
            self.success_count = 0
            if self.failures >= self.failure_threshold and self.state != self.OPEN:
                logger.error(f"[ERROR] Circuit '{self.name}' failure threshold reached ({self.failures}), opening")
                self._set_state(self.OPEN)

    def _set_state(self, new_state: str):
        old_state, self.state = self.state, new_state
        if old_state != new_state:
            logger.info(f"Circuit '{self.name}': {old_state} -> {new_state}")
            if self._on_state_change:
                self._on_state_change(self.name, new_state)

    def get_state(self) -> str:
        self._check_reset()
        return self.state

    def get_stats(self) -> Dict[str, Any]:
        return {
            'state': self.state,
            'failures': self.failures,
            'lastFailTime': self.last_fail_time,
        }

    def reset(self):
        with self._lock:
            self.failures = 0
            self.success_count = 0
            self.last_fail_time = 0.0
            self._set_state(self.CLOSED)


default_retry_service = RetryService()
