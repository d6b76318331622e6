import threading
import time
from unittest.mock import MagicMock

import pytest
import requests

from koware.transport import HttpTransport, OperationCancelled, TransportError
from tests.conftest import make_response


@pytest.fixture
def session():
    return MagicMock(spec=requests.Session)


def test_retries_transport_failures_then_succeeds(session):
    ok = make_response("fine")
    session.get.side_effect = [requests.exceptions.ConnectionError("reset"), ok]
    transport = HttpTransport(session, backoff=0)

    assert transport.get("https://example.com") is ok
    assert session.get.call_count == 2


def test_timeouts_are_retried(session):
    ok = make_response("fine")
    session.get.side_effect = [requests.exceptions.Timeout(), requests.exceptions.Timeout(), ok]
    transport = HttpTransport(session, backoff=0)

    assert transport.get("https://example.com") is ok
    assert session.get.call_count == 3


def test_error_status_is_returned_without_retry(session):
    session.get.return_value = make_response("missing", 404)
    transport = HttpTransport(session, backoff=0)

    response = transport.get("https://example.com")

    assert response.status_code == 404
    assert session.get.call_count == 1


def test_raises_after_exhausting_attempts(session):
    session.get.side_effect = requests.exceptions.ConnectionError("down")
    transport = HttpTransport(session, attempts=3, backoff=0)

    with pytest.raises(TransportError) as exc_info:
        transport.get("https://example.com")

    assert session.get.call_count == 3
    assert isinstance(exc_info.value, ConnectionError)
    assert exc_info.value.attempts == 3


def test_passes_headers_and_timeout(session):
    session.get.return_value = make_response("ok")
    transport = HttpTransport(session, timeout=7)

    transport.get("https://example.com", headers={"Referer": "https://ref.example/"})

    session.get.assert_called_once_with("https://example.com", headers={"Referer": "https://ref.example/"}, timeout=7)


def test_cancelled_before_first_attempt(session):
    cancel = threading.Event()
    cancel.set()
    transport = HttpTransport(session)

    with pytest.raises(OperationCancelled):
        transport.get("https://example.com", cancel=cancel)
    session.get.assert_not_called()


def test_cancel_interrupts_backoff(session):
    cancel = threading.Event()

    def fail_and_cancel(*args, **kwargs):
        cancel.set()
        raise requests.exceptions.ConnectionError("down")

    session.get.side_effect = fail_and_cancel
    transport = HttpTransport(session, backoff=5)

    start = time.monotonic()
    with pytest.raises(OperationCancelled):
        transport.get("https://example.com", cancel=cancel)

    assert time.monotonic() - start < 1
    assert session.get.call_count == 1


def test_deadline_caps_attempt_timeout(session):
    session.get.return_value = make_response("ok")
    transport = HttpTransport(session, timeout=10)

    transport.get("https://example.com", deadline=time.monotonic() + 2)

    assert session.get.call_args.kwargs["timeout"] <= 2


def test_expired_deadline_stops_retrying(session):
    transport = HttpTransport(session)

    with pytest.raises(TransportError):
        transport.get("https://example.com", deadline=time.monotonic() - 1)
    session.get.assert_not_called()
