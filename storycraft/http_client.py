"""
Shared outbound HTTP session (connection pooling + urllib3 retries)
"""

import threading

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

DEFAULT_TIMEOUT = 30
TRANSPORT_RETRIES = 2

_thread_local = threading.local()


class _TimeoutSession(requests.Session):
    """Session applying a default timeout when the caller gives none"""

    def request(self, method, url, **kwargs):
        kwargs.setdefault('timeout', DEFAULT_TIMEOUT)
        return super().request(method, url, **kwargs)


def get_http_session() -> requests.Session:
    """Get thread-local HTTP session with connection pooling and retries"""
    if not hasattr(_thread_local, 'session'):
        session = _TimeoutSession()

        # Connection setup only; status and read failures belong to RetryService
        retry_strategy = Retry(
            total=TRANSPORT_RETRIES,
            connect=TRANSPORT_RETRIES,
            read=0,
            status=0,
            backoff_factor=0.5,
            allowed_methods=['GET'],
            raise_on_status=False,
        )

        adapter = HTTPAdapter(
            max_retries=retry_strategy,
            pool_connections=50,
            pool_maxsize=50,
            pool_block=False,
        )

        session.mount('https://', adapter)
        session.mount('http://', adapter)
        _thread_local.session = session

    return _thread_local.session
