"""
Test configuration and fixtures
"""
import json
from unittest.mock import MagicMock

import pytest

from koware.config import AllAnimeOptions, HiAnimeOptions
from koware.transport import TransportError


def make_response(body="", status=200):
    """Stand-in for requests.Response with the attributes the scrapers read"""
    response = MagicMock()
    response.status_code = status
    response.ok = 200 <= status < 300
    response.text = body if isinstance(body, str) else json.dumps(body)
    response.json.side_effect = lambda: json.loads(response.text)
    return response


class FakeTransport:
    """
    Routes GETs by URL fragment. A route is a body, a (body, status) pair,
    an exception instance to raise, or a callable taking the call kwargs.
    """

    def __init__(self):
        self.routes = []
        self.calls = []

    def add(self, fragment, route):
        self.routes.append((fragment, route))
        return self

    def get(self, url, headers=None, timeout=None, cancel=None, deadline=None):
        self.calls.append({"url": url, "headers": headers or {}, "cancel": cancel, "deadline": deadline})
        for fragment, route in self.routes:
            if fragment not in url:
                continue
            if callable(route):
                route = route(url=url, headers=headers, cancel=cancel, deadline=deadline)
            if isinstance(route, Exception):
                raise route
            if isinstance(route, tuple):
                return make_response(*route)
            return make_response(route)
        raise TransportError(url, 1, "no route")

    def urls(self):
        return [call["url"] for call in self.calls]


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def allanime_options():
    return AllAnimeOptions(
        enabled=True,
        base_host="allanime.example",
        api_base="https://api.allanime.example",
        referer="https://allanime.example/",
    )


@pytest.fixture
def hianime_options():
    return HiAnimeOptions(
        enabled=True,
        base_url="https://hianime.example",
        megacloud_host="https://megacloud.example",
        megacloud_key_url="https://keys.example/keys.json",
    )
