"""
Integration tests for the Starlette middleware and FastAPI dependencies.
"""

import time

import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient

from oauth_server.dependencies import get_principal, require_permission, require_scopes
from oauth_server.gate import SKIP_AUTH_OPTION, AuthenticationGate
from oauth_server.middleware import OAuthBearerMiddleware
from oauth_server.models import Account, Token


@pytest.fixture
def app_gate(codec, repository, registry):
    return AuthenticationGate(
        codec, repository, registry,
        route_options={"public": {SKIP_AUTH_OPTION: True}},
    )


@pytest.fixture
def client(app_gate):
    app = FastAPI()
    app.add_middleware(OAuthBearerMiddleware, gate=app_gate)

    @app.get("/me", name="me")
    async def me(request: Request, principal=Depends(get_principal)):
        return {
            "client_id": principal.client_id,
            "consumer_header": request.headers.get("x-consumer-id"),
        }

    @app.get("/edit", name="edit")
    async def edit(principal=Depends(require_permission("edit content"))):
        return {"ok": True}

    @app.get("/stats", name="stats")
    async def stats(principal=Depends(require_scopes("both_grants"))):
        return {"ok": True}

    @app.get("/public", name="public")
    async def public(request: Request):
        return {"authenticated": getattr(request.state, "oauth_principal", None) is not None}

    return TestClient(app)


def auth(jwt):
    return {"Authorization": f"Bearer {jwt}"}


class TestOAuthBearerMiddleware:
    """Middleware behaviour end to end."""

    def test_valid_token(self, client, authority):
        issued = authority.issue_client_credentials("cc-client", "s3cret")

        response = client.get("/me", headers=auth(issued.jwt))

        assert response.status_code == 200
        assert response.json() == {"client_id": "cc-client", "consumer_header": "cc-client"}

    def test_invalid_token_challenge(self, client):
        response = client.get("/me", headers=auth("garbage"))

        assert response.status_code == 401
        assert response.json()["error"] == "access_denied"
        assert response.headers["www-authenticate"].startswith('Bearer realm="OAuth", error="access_denied"')

    def test_revoked_token(self, client, authority):
        issued = authority.issue_client_credentials("cc-client", "s3cret")
        authority.revoke(issued.token)

        response = client.get("/me", headers=auth(issued.jwt))

        assert response.status_code == 401
        assert 'error_description="Access token has been revoked"' in response.headers["www-authenticate"]

    def test_blocked_account_with_non_latin1_name(self, client, codec, repository):
        repository.save(Account(user_id="user-9", name="张三", status=False))
        now = int(time.time())
        token = Token(value="z" * 80, client_id="ac-client", user_id="user-9",
                      scopes=["auth_code_only"], issued_at=now, expires_at=now + 300)
        repository.save(token)
        jwt = codec.encode(token)

        response = client.get("/me", headers=auth(jwt))

        assert response.status_code == 401
        assert response.json()["error_description"] == "张三 is blocked or has not been activated yet."
        assert response.headers["www-authenticate"] == (
            'Bearer realm="OAuth", error="access_denied", '
            'error_description="%E5%BC%A0%E4%B8%89 is blocked or has not been activated yet."'
        )
        assert repository.find_token_by_id(token.value).is_revoked()

    def test_no_token(self, client):
        response = client.get("/me")

        assert response.status_code == 401

    def test_route_opt_out(self, client):
        response = client.get("/public", headers=auth("garbage"))

        assert response.status_code == 200
        assert response.json() == {"authenticated": False}

    def test_permission_dependency(self, client, authority):
        cc = authority.issue_client_credentials("cc-client", "s3cret")
        both = authority.issue_client_credentials("cc-client", "s3cret", ["both_grants"])

        assert client.get("/edit", headers=auth(cc.jwt)).status_code == 200
        assert client.get("/edit", headers=auth(both.jwt)).status_code == 403

    def test_scope_dependency(self, client, authority):
        cc = authority.issue_client_credentials("cc-client", "s3cret")
        both = authority.issue_client_credentials("cc-client", "s3cret", ["both_grants"])

        assert client.get("/stats", headers=auth(cc.jwt)).status_code == 403
        assert client.get("/stats", headers=auth(both.jwt)).status_code == 200
