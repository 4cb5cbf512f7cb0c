import threading

from storycraft import http_client


def fresh_session():
    holder = {}
    # sessions are thread-local, so build one on a clean thread
    thread = threading.Thread(target=lambda: holder.update(session=http_client.get_http_session()))
    thread.start()
    thread.join()
    return holder['session']


def test_transport_only_retries_connection_setup():
    retries = fresh_session().get_adapter('https://www.googleapis.com').max_retries

    assert retries.connect == http_client.TRANSPORT_RETRIES
    assert retries.read == 0
    assert retries.status == 0
    assert not retries.status_forcelist
    assert not retries.is_retry('GET', 503)


def test_session_is_reused_per_thread():
    assert http_client.get_http_session() is http_client.get_http_session()
    assert fresh_session() is not http_client.get_http_session()
