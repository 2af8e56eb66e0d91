# Shared fixtures: fresh registries, a fake calendar adapter and an app client
# wired to them.

import base64
import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

import main
from exceptions import CalendarError
from google_auth import GoogleAuth
from mcp_server import McpDispatcher
from models import DateRange, PendingInvite, PendingInvitesResult, RespondResult
from oauth_server import AuthorizationServer, ClientRegistrar
from token_registry import TokenRegistry
from token_store import CalendarTokenStore
from tools import build_tool_registry
from widgets import WidgetCatalog

ISSUER = "http://testserver"
GOOGLE_REDIRECT = f"{ISSUER}/oauth/callback"


def make_pkce_pair():
    verifier = secrets.token_urlsafe(32)
    challenge = (
        base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest())
        .rstrip(b"=")
        .decode()
    )
    return verifier, challenge


class FakeClock:
    def __init__(self):
        self.now = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeCalendar:
    """In-memory stand-in for CalendarService that records every adapter call."""

    def __init__(self, authorized=True, email="me@example.com"):
        self.authorized = authorized
        self.email = email
        self.calls: List[tuple] = []
        self.statuses: Dict[str, str] = {"evt-1": "needsAction"}
        self.error: Optional[Exception] = None

    def is_authorized(self, user_id):
        return self.authorized

    def get_consent_url(self, user_id):
        return f"https://accounts.google.com/o/oauth2/v2/auth?state={user_id}"

    def get_user_email(self, user_id):
        return self.email if self.authorized else None

    async def list_pending_invites(self, user_id, start_date=None, end_date=None):
        self.calls.append(("list", user_id, start_date, end_date))
        if self.error:
            raise self.error
        invites = [
            PendingInvite(
                event_id=event_id,
                summary="Design review",
                start_time="2025-01-20T15:00:00Z",
                end_time="2025-01-20T16:00:00Z",
                organizer_email="boss@example.com",
            )
            for event_id, status in self.statuses.items()
            if status == "needsAction"
        ]
        return PendingInvitesResult(
            invites=invites,
            date_range=DateRange(start=start_date or "2025-01-15T00:00:00Z",
                                 end=end_date or "2025-01-29T00:00:00Z"),
            total_count=len(invites),
        )

    async def respond_to_event(self, user_id, event_id, response):
        self.calls.append(("respond", user_id, event_id, response))
        if self.error:
            raise self.error
        if event_id not in self.statuses:
            raise CalendarError("Event not found. It may have been cancelled or deleted.")
        self.statuses[event_id] = response
        return RespondResult(
            message=f'You have {response} the invitation "Design review"',
            event_id=event_id,
            new_status=response,
            event_summary="Design review",
        )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry():
    return TokenRegistry()


@pytest.fixture
def auth_server(registry):
    return AuthorizationServer(registry, issuer=ISSUER)


@pytest.fixture
def client_registrar(registry):
    return ClientRegistrar(registry)


@pytest.fixture
def token_store():
    return CalendarTokenStore()


@pytest.fixture
def google_auth(token_store):
    return GoogleAuth(
        token_store,
        client_id="google-client-id",
        client_secret="google-client-secret",
        redirect_uri=GOOGLE_REDIRECT,
        secret_key="test-secret-key",
    )


@pytest.fixture
def fake_calendar():
    return FakeCalendar()


@pytest.fixture
def tool_registry(fake_calendar):
    return build_tool_registry(fake_calendar, timeout=5)


@pytest.fixture
def dispatcher(tool_registry):
    return McpDispatcher(tool_registry, WidgetCatalog(ISSUER))


@pytest.fixture
def app_client(monkeypatch, registry, auth_server, client_registrar, token_store,
               google_auth, fake_calendar, dispatcher):
    monkeypatch.setattr(main, "BASE_URL", ISSUER)
    monkeypatch.setattr(main, "RESOURCE_URL", f"{ISSUER}/mcp")
    monkeypatch.setattr(main, "registry", registry)
    monkeypatch.setattr(main, "auth_server", auth_server)
    monkeypatch.setattr(main, "client_registrar", client_registrar)
    monkeypatch.setattr(main, "token_store", token_store)
    monkeypatch.setattr(main, "google_auth", google_auth)
    monkeypatch.setattr(main, "calendar_service", fake_calendar)
    monkeypatch.setattr(main, "dispatcher", dispatcher)
    return TestClient(main.app, follow_redirects=False)


@pytest.fixture
def bearer(registry):
    """Authorization header carrying a freshly issued access token."""
    registry.seed_client("test-client", client_secret="test-secret")
    token = registry.issue_access_token("test-client")
    return {"Authorization": f"Bearer {token.token}"}
