"""
Shared fixtures: an in-memory credential store, a fake ``requests`` session
that serves canned responses, and a JWT factory.
"""

import json
import logging
import time

import jwt
import pytest
import requests

from difychat.auth import MemoryStore, SessionManager


def make_response(status: int = 200, body=None) -> requests.Response:
    resp = requests.Response()
    resp.status_code = status
    resp._content = b"" if body is None else json.dumps(body).encode("utf-8")
    resp.headers["Content-Type"] = "application/json"
    return resp


class FakeHTTP:
    """Stands in for ``requests.Session``; routes on (method, URL suffix)."""

    def __init__(self):
        self.calls = []
        self._routes = {}

    def add(self, method: str, suffix: str, status: int = 200, body=None, exc: Exception = None):
        self._routes.setdefault((method.upper(), suffix), []).append(
            exc if exc is not None else (status, body)
        )

    def calls_to(self, method: str, suffix: str):
        return [c for c in self.calls if c[0] == method.upper() and c[1].endswith(suffix)]

    def request(self, method, url, **kwargs):
        method = method.upper()
        self.calls.append((method, url, kwargs))
        for (m, suffix), queue in self._routes.items():
            if m == method and url.endswith(suffix):
                item = queue.pop(0) if len(queue) > 1 else queue[0]
                if isinstance(item, Exception):
                    raise item
                return make_response(*item)
        return make_response(404, {"message": "not found"})

    def get(self, url, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self.request("POST", url, **kwargs)

    def delete(self, url, **kwargs):
        return self.request("DELETE", url, **kwargs)


@pytest.fixture(autouse=True)
def setup_test_logging(caplog):
    caplog.set_level(logging.DEBUG)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def fake_http():
    return FakeHTTP()


@pytest.fixture
def session(store, fake_http):
    return SessionManager(store, http=fake_http)


@pytest.fixture
def make_token():
    """``make_token(seconds)`` → HS256 JWT expiring *seconds* from now."""
    def _make(expires_in: int = 3600, **claims) -> str:
        payload = {"sub": "user-1", "exp": int(time.time()) + expires_in}
        payload.update(claims)
        return jwt.encode(payload, "test-secret", algorithm="HS256")
    return _make
