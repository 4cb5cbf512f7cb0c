import pytest
import requests

from storycraft.errors import GeminiServiceError
from storycraft.resilience import CircuitBreaker, CircuitOpenError, RetryExhaustedError, RetryService


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class HttpError(Exception):
    def __init__(self, status):
        super().__init__(f'HTTP {status}')
        self.status = status


def flaky(failures, error):
    calls = {'count': 0}

    def operation():
        calls['count'] += 1
        if calls['count'] <= failures:
            raise error
        return 'ok'
    return operation, calls


# --------------------------------------------------------------------------
# RetryService
# --------------------------------------------------------------------------

def test_retry_succeeds_after_transient_failures():
    sleeps = []
    service = RetryService(max_attempts=3, sleep=sleeps.append)
    operation, calls = flaky(2, requests.exceptions.ConnectionError('reset'))

    assert service.execute(operation, 'fetch') == 'ok'
    assert calls['count'] == 3
    assert len(sleeps) == 2


def test_retry_stops_on_non_retryable_error():
    service = RetryService(sleep=lambda s: None)
    operation, calls = flaky(5, ValueError('bad input'))

    with pytest.raises(RetryExhaustedError) as exc_info:
        service.execute(operation, 'parse')

    assert calls['count'] == 1
    assert isinstance(exc_info.value.original_error, ValueError)
    assert exc_info.value.attempts == 1


def test_retry_exhausts_attempts():
    service = RetryService(max_attempts=2, sleep=lambda s: None)
    operation, calls = flaky(5, HttpError(503))

    with pytest.raises(RetryExhaustedError):
        service.execute(operation, 'fetch')

    assert calls['count'] == 2


@pytest.mark.parametrize('error, expected', [
    (HttpError(429), True),
    (HttpError(404), False),
    (requests.exceptions.Timeout(), True),
    (Exception('Rate limit exceeded'), True),
    (GeminiServiceError('auth', 'AUTH_ERROR', is_retryable=False), False),
    (GeminiServiceError('busy', 'SERVER_ERROR', is_retryable=True), True),
])
def test_is_retryable(error, expected):
    assert RetryService.is_retryable(error) is expected


def test_delay_is_capped_and_jittered():
    service = RetryService(base_delay=1000, backoff_multiplier=2, max_delay=3000)

    for _ in range(20):
        assert 500 <= service.calculate_delay(1) <= 1000
        assert 1500 <= service.calculate_delay(10) <= 3000


# --------------------------------------------------------------------------
# CircuitBreaker
# --------------------------------------------------------------------------

def failing():
    raise RuntimeError('down')


def test_circuit_opens_after_threshold():
    breaker = CircuitBreaker(failure_threshold=3, clock=FakeClock())

    for _ in range(3):
        with pytest.raises(RuntimeError):
            breaker.execute(failing)

    assert breaker.state == CircuitBreaker.OPEN
    with pytest.raises(CircuitOpenError):
        breaker.execute(lambda: 'never')


def test_open_circuit_uses_fallback():
    breaker = CircuitBreaker(failure_threshold=1, clock=FakeClock())

    assert breaker.execute(failing, fallback=lambda: 'cached') == 'cached'
    assert breaker.execute(lambda: 'live', fallback=lambda: 'cached') == 'cached'


def test_half_open_closes_after_three_successes():
    clock = FakeClock()
    changes = []
    breaker = CircuitBreaker(failure_threshold=1, reset_timeout=60, clock=clock,
                             on_state_change=lambda name, state: changes.append(state))
    with pytest.raises(RuntimeError):
        breaker.execute(failing)

    clock.now += 61
    assert breaker.get_state() == CircuitBreaker.HALF_OPEN

    for _ in range(3):
        breaker.execute(lambda: 'ok')

    assert breaker.state == CircuitBreaker.CLOSED
    assert changes == [CircuitBreaker.OPEN, CircuitBreaker.HALF_OPEN, CircuitBreaker.CLOSED]


def test_success_resets_failures_when_closed():
    breaker = CircuitBreaker(failure_threshold=3, clock=FakeClock())
    with pytest.raises(RuntimeError):
        breaker.execute(failing)

    breaker.execute(lambda: 'ok')

    assert breaker.get_stats()['failures'] == 0


def test_reset():
    breaker = CircuitBreaker(failure_threshold=1, clock=FakeClock())
    with pytest.raises(RuntimeError):
        breaker.execute(failing)

    breaker.reset()

    assert breaker.state == CircuitBreaker.CLOSED
    assert breaker.execute(lambda: 'ok') == 'ok'
