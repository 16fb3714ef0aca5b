"""
Landing Gatekeeper Tests
========================

Tests for app/pages/routes.py and sign-out in app/auth/routes.py

1. Anonymous caller: landing page renders, no redirect
2. Authenticated caller: redirect to home, page body never rendered
3. Home page challenges anonymous callers
4. Sign-out drops the ticket and the user's token cache
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from app.auth.session import create_session_token
from app.auth.token_cache import UserTokenCache
from app.models import AuthenticationTicket, ClaimsPrincipal
from app.tests.conftest import METADATA, TENANT_ID, UPN, USER_OID, build_settings


SECRET = build_settings().SESSION_SECRET_KEY


def _authenticate(app, client, expires_utc=None):
    """Put a ticket in the store and the matching cookie on the client."""
    ticket = AuthenticationTicket(
        principal=ClaimsPrincipal(
            claims={"tid": str(TENANT_ID), "unique_name": UPN, "oid": USER_OID, "name": "Alice Example"},
            authentication_type="Cookies",
        ),
        expires_utc=expires_utc,
    )
    session_id = asyncio.run(app.state.ticket_store.store(ticket))
    client.cookies.set("webapp.session", create_session_token(session_id, SECRET))
    return session_id


class TestWelcome:

    def test_anonymous_caller_sees_landing_page(self, client):
        response = client.get("/Account/Welcome", follow_redirects=False)

        assert response.status_code == 200
        assert "Welcome" in response.text
        assert "/Account/SignIn" in response.text

    def test_authenticated_caller_redirected_home(self, app, client):
        _authenticate(app, client)

        response = client.get("/Account/Welcome", follow_redirects=False)

        assert response.status_code == 302
        assert response.headers["location"] == "/Index"
        assert "Welcome" not in response.text

    def test_configured_home_route(self, metadata_client, token_acquirer):
        from fastapi.testclient import TestClient
        from app.main import create_app

        app = create_app(
            settings=build_settings(HOME_PATH="/Dashboard"),
            token_acquirer=token_acquirer,
            metadata_client=metadata_client,
        )
        client = TestClient(app)
        _authenticate(app, client)

        response = client.get("/Account/Welcome", follow_redirects=False)

        assert response.headers["location"] == "/Dashboard"

    def test_tampered_cookie_is_anonymous(self, app, client):
        _authenticate(app, client)
        client.cookies.set("webapp.session", create_session_token("whatever", "x" * 40))

        response = client.get("/Account/Welcome", follow_redirects=False)

        assert response.status_code == 200

    def test_removed_ticket_is_anonymous(self, app, client):
        session_id = _authenticate(app, client)
        asyncio.run(app.state.ticket_store.remove(session_id))

        response = client.get("/Account/Welcome", follow_redirects=False)

        assert response.status_code == 200

    def test_expired_ticket_is_anonymous(self, app, client):
        _authenticate(app, client, expires_utc=datetime.now(timezone.utc) - timedelta(minutes=1))

        response = client.get("/Account/Welcome", follow_redirects=False)

        assert response.status_code == 200

    def test_root_redirects_to_welcome(self, client):
        response = client.get("/", follow_redirects=False)

        assert response.status_code == 302
        assert response.headers["location"] == "/Account/Welcome"


class TestIndex:

    def test_anonymous_caller_is_challenged(self, client):
        response = client.get("/Index", follow_redirects=False)

        assert response.status_code == 302
        assert response.headers["location"].startswith(METADATA["authorization_endpoint"])

    def test_authenticated_caller_sees_home(self, app, client):
        _authenticate(app, client)

        response = client.get("/Index", follow_redirects=False)

        assert response.status_code == 200
        assert "Alice Example" in response.text
        assert UPN in response.text


class TestErrorPage:

    def test_error_page_renders(self, client):
        response = client.get("/Error")

        assert response.status_code == 200
        assert "Sign-in failed" in response.text


class TestSignOut:

    def test_sign_out_removes_ticket_and_tokens(self, app, client):
        session_id = _authenticate(app, client)
        token_cache = UserTokenCache(app.state.token_cache_store, USER_OID)
        app.state.token_cache_store.set(token_cache.key, "{}")

        response = client.get("/Account/SignOut", follow_redirects=False)

        assert response.status_code == 302
        assert response.headers["location"].startswith(METADATA["end_session_endpoint"])
        assert "post_logout_redirect_uri=http%3A%2F%2Ftestserver%2FIndex" in response.headers["location"]
        assert asyncio.run(app.state.ticket_store.retrieve(session_id)) is None
        assert not token_cache.has_entry()

    def test_sign_out_when_anonymous(self, client):
        response = client.get("/Account/SignOut", follow_redirects=False)

        assert response.status_code == 302


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestCurrentPrincipalDependency:

    @pytest.fixture
    def protected_client(self, app):
        from fastapi import Depends
        from fastapi.testclient import TestClient
        from app.auth.session import get_current_principal

        @app.get("/api/me")
        async def me(principal: ClaimsPrincipal = Depends(get_current_principal)):
            return {"upn": principal.claims.get("unique_name")}

        return TestClient(app)

    def test_anonymous_caller_gets_401(self, protected_client):
        response = protected_client.get("/api/me")

        assert response.status_code == 401

    def test_signed_in_caller_gets_claims(self, app, protected_client):
        _authenticate(app, protected_client)

        response = protected_client.get("/api/me")

        assert response.status_code == 200
        assert response.json() == {"upn": UPN}
