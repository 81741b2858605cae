"""Shared test fixtures and configuration for backend tests.

The membership oracle is never reached over the network: every test that
needs one gets an ``httpx.MockTransport`` answering from a dict of
``user_id -> [room ids]``.
"""
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from fastapi.testclient import TestClient

from chat_gateway.config import AppConfig
from chat_gateway.main import create_app
from chat_gateway.membership.oracle import MembershipOracle
from chat_gateway.users.directory import UserDirectory

ORACLE_BASE_URL = "http://oracle.test/api"

# user_id -> rooms the user belongs to
DEFAULT_MEMBERSHIPS = {
    "42": ["7", "8"],
    "43": ["7"],
    "44": ["9"],
}

# user_id -> profile served by the user directory
DEFAULT_USERS = {
    "42": {"id": 42, "name": "Ann Lee", "profilePhotoUrl": "https://cdn.test/42.png"},
    "43": {"id": 43, "name": "Bo Chen", "profilePhotoUrl": None},
}


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class ListSink:
    """Sink that records every delivered event."""

    def __init__(self, accept: bool = True):
        self.events = []
        self.accept = accept
        self.closed = False

    def deliver(self, event):
        if self.closed or not self.accept:
            return False
        self.events.append(event)
        return True

    def close(self):
        self.closed = True

    def of_type(self, event_type):
        return [e for e in self.events if e.get("type") == event_type]


def membership_transport(memberships=None, status_code=200, body=None, calls=None, users=None):
    """MockTransport for the main application's user API.

    Answers GET /users/{id}/rooms from ``memberships`` and GET /users/{id}
    from ``users``. ``status_code``, ``body`` and ``calls`` only apply to
    the rooms endpoint.
    """
    memberships = DEFAULT_MEMBERSHIPS if memberships is None else memberships
    users = DEFAULT_USERS if users is None else users

    def handler(request: httpx.Request) -> httpx.Response:
        if not request.url.path.endswith("/rooms"):
            profile = users.get(request.url.path.split("/")[-1])
            if profile is None:
                return httpx.Response(404, json={"error": "User not found"})
            return httpx.Response(200, json={"user": profile})

        user_id = request.url.path.split("/")[-2]
        if calls is not None:
            calls.append(user_id)
        if body is not None:
            return httpx.Response(status_code, json=body)
        rooms = memberships.get(user_id, [])
        return httpx.Response(
            status_code,
            json={"success": True, "chapters": [{"id": r, "name": f"Chapter {r}"} for r in rooms]},
        )

    return httpx.MockTransport(handler)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_oracle():
    """Factory for oracles backed by a mock transport."""
    def _make(memberships=None, timeout_seconds=5.0, **kwargs):
        return MembershipOracle(
            ORACLE_BASE_URL,
            timeout_seconds=timeout_seconds,
            transport=membership_transport(memberships, **kwargs),
        )
    return _make


@pytest.fixture
def make_directory():
    """Factory for user directories backed by a mock transport."""
    def _make(users=None, timeout_seconds=2.0):
        return UserDirectory(
            ORACLE_BASE_URL,
            timeout_seconds=timeout_seconds,
            transport=membership_transport(users=users),
        )
    return _make


@pytest.fixture
def app_config():
    config = AppConfig()
    config.membership.base_url = ORACLE_BASE_URL
    return config


@pytest.fixture
def app(app_config, clock):
    return create_app(
        app_config,
        oracle_transport=membership_transport(),
        directory_transport=membership_transport(),
        clock=clock,
    )


@pytest.fixture
def api_client(app):
    """Provide a TestClient for a freshly built gateway app.

    Each test gets its own app, so message history and rooms never leak
    between tests. The client is entered as a context manager so the
    lifespan runs and all WebSocket sessions share one event loop.
    """
    with TestClient(app) as client:
        yield client


@pytest.fixture
def make_sink():
    return ListSink


@pytest.fixture
def make_transport():
    return membership_transport
