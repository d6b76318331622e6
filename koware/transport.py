import logging
import threading
import time
from typing import Dict, Optional

import requests

logger = logging.getLogger(__name__)


class OperationCancelled(Exception):
    """The caller asked for the operation to stop."""


class TransportError(ConnectionError):
    """Every attempt of a request failed at the transport level."""

    def __init__(self, url: str, attempts: int, message: str):
        super().__init__(f"Failed to fetch {url} after {attempts} attempt(s): {message}")
        self.url = url
        self.attempts = attempts


def check_cancelled(cancel: Optional[threading.Event]):
    if cancel is not None and cancel.is_set():
        raise OperationCancelled()


class HttpTransport:
    """
    GET with bounded retries over a shared session.

    Only transport failures (connection errors, timeouts) are retried; any
    HTTP response, including 4xx/5xx, is handed back to the caller.
    """

    def __init__(self, session: Optional[requests.Session] = None, attempts: int = 3,
                 backoff: float = 0.2, timeout: float = 10.0):
        self.session = session or requests.Session()
        self.attempts = max(1, attempts)
        self.backoff = backoff
        self.timeout = timeout

    def get(self, url: str, headers: Optional[Dict[str, str]] = None, timeout: Optional[float] = None,
            cancel: Optional[threading.Event] = None, deadline: Optional[float] = None) -> requests.Response:
        timeout = timeout or self.timeout
        last_error: Optional[Exception] = None
        attempt = 0

        for attempt in range(1, self.attempts + 1):
            check_cancelled(cancel)

            attempt_timeout = timeout
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                attempt_timeout = min(timeout, remaining)

            try:
                return self.session.get(url, headers=headers, timeout=attempt_timeout)
            except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
                last_error = e
                logger.debug(f"Attempt {attempt}/{self.attempts} failed for {url}: {e}")

            if attempt < self.attempts:
                self._sleep(self.backoff * attempt, cancel)

        check_cancelled(cancel)
        message = str(last_error) if last_error else "deadline exceeded"
        raise TransportError(url, attempt, message) from last_error

    def _sleep(self, seconds: float, cancel: Optional[threading.Event]):
        if cancel is None:
            time.sleep(seconds)
        elif cancel.wait(seconds):
            raise OperationCancelled()
