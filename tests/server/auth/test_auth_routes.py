from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from starlette.applications import Starlette

from oauthmcp.exceptions import StorageFatalError, StorageUnavailableError


@pytest.fixture
async def client(provider) -> AsyncGenerator[httpx.AsyncClient, None]:
    app = Starlette(routes=provider.get_routes())
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="https://auth.example.com"
    ) as client:
        yield client


def redirect_params(response: httpx.Response) -> dict[str, str]:
    location = urlsplit(response.headers["location"])
    return {k: v[0] for k, v in parse_qs(location.query).items()}


async def authorize(client: httpx.AsyncClient, challenge: str, **params) -> httpx.Response:
    query = {
        "response_type": "code",
        "client_id": "c1",
        "redirect_uri": "https://a/cb",
        "scope": "read write",
        "code_challenge": challenge,
        "code_challenge_method": "S256",
        "state": "xyz",
    }
    query.update(params)
    return await client.get("/authorize", params={k: v for k, v in query.items() if v})


@pytest.fixture
async def issued(client, pkce) -> dict:
    verifier, challenge = pkce
    code = redirect_params(await authorize(client, challenge))["code"]
    response = await client.post(
        "/token",
        data={
            "grant_type": "authorization_code",
            "client_id": "c1",
            "code": code,
            "redirect_uri": "https://a/cb",
            "code_verifier": verifier,
        },
    )
    assert response.status_code == 200
    return response.json()


class TestMetadata:
    async def test_well_known(self, client):
        response = await client.get("/.well-known/oauth-authorization-server")
        assert response.status_code == 200
        document = response.json()
        assert document["issuer"] == "https://auth.example.com"
        assert document["token_endpoint"] == "https://auth.example.com/token"
        assert document["code_challenge_methods_supported"] == ["S256"]
        assert "service_documentation" not in document


class TestAuthorize:
    async def test_redirects_with_code_and_state(self, client, pkce):
        response = await authorize(client, pkce[1])
        assert response.status_code == 302
        assert response.headers["location"].startswith("https://a/cb?")
        params = redirect_params(response)
        assert params["state"] == "xyz"
        assert params["code"]

    async def test_error_redirect(self, client, pkce):
        response = await authorize(client, pkce[1], scope="read admin")
        assert response.status_code == 302
        params = redirect_params(response)
        assert params["error"] == "invalid_scope"
        assert "admin" in params["error_description"]
        assert params["state"] == "xyz"
        assert "code" not in params

    async def test_missing_challenge_redirects(self, client):
        response = await authorize(client, "")
        assert redirect_params(response)["error"] == "invalid_request"

    async def test_unsupported_response_type(self, client, pkce):
        response = await authorize(client, pkce[1], response_type="token")
        assert redirect_params(response)["error"] == "unsupported_response_type"

    async def test_unregistered_redirect_uri_is_not_followed(self, client, pkce):
        response = await authorize(client, pkce[1], redirect_uri="https://evil/cb")
        assert response.status_code == 400
        assert "location" not in response.headers
        assert response.json()["error"] == "invalid_request"

    async def test_unknown_client_is_not_redirected(self, client, pkce):
        response = await authorize(client, pkce[1], client_id="nope")
        assert response.status_code == 401
        assert response.json()["error"] == "invalid_client"

    async def test_missing_redirect_uri(self, client, pkce):
        response = await authorize(client, pkce[1], redirect_uri="")
        assert response.status_code == 400
        assert "redirect_uri" in response.json()["error_description"]

    async def test_storage_outage_redirects(self, client, provider, pkce, monkeypatch):
        monkeypatch.setattr(
            provider.storage,
            "save_code",
            AsyncMock(side_effect=StorageUnavailableError("down")),
        )
        response = await authorize(client, pkce[1])
        assert redirect_params(response)["error"] == "temporarily_unavailable"


class TestToken:
    async def test_authorization_code(self, issued):
        assert issued["token_type"] == "Bearer"
        assert issued["expires_in"] == 3600
        assert issued["scope"] == "read write"
        assert issued["refresh_token"]

    async def test_no_store_headers(self, client):
        response = await client.post(
            "/token", data={"grant_type": "client_credentials"}, auth=("svc", "svc-secret")
        )
        assert response.headers["cache-control"] == "no-store"

    async def test_code_replay(self, client, pkce):
        verifier, challenge = pkce
        code = redirect_params(await authorize(client, challenge))["code"]
        form = {
            "grant_type": "authorization_code",
            "client_id": "c1",
            "code": code,
            "redirect_uri": "https://a/cb",
            "code_verifier": verifier,
        }
        assert (await client.post("/token", data=form)).status_code == 200

        replay = await client.post("/token", data=form)
        assert replay.status_code == 400
        assert replay.json()["error"] == "invalid_grant"

    async def test_json_body(self, client, issued):
        response = await client.post(
            "/token",
            json={
                "grant_type": "refresh_token",
                "client_id": "c1",
                "refresh_token": issued["refresh_token"],
                "scope": "read",
            },
        )
        assert response.status_code == 200
        assert response.json()["scope"] == "read"

    async def test_refresh_reuse(self, client, issued):
        form = {
            "grant_type": "refresh_token",
            "client_id": "c1",
            "refresh_token": issued["refresh_token"],
        }
        assert (await client.post("/token", data=form)).status_code == 200
        reuse = await client.post("/token", data=form)
        assert reuse.status_code == 400
        assert reuse.json()["error"] == "invalid_grant"

    async def test_client_credentials_basic_auth(self, client):
        response = await client.post(
            "/token",
            data={"grant_type": "client_credentials", "scope": "tools:execute"},
            auth=("svc", "svc-secret"),
        )
        assert response.status_code == 200
        body = response.json()
        assert body["scope"] == "tools:execute"
        assert "refresh_token" not in body

    async def test_client_credentials_post_auth(self, client):
        response = await client.post(
            "/token",
            data={
                "grant_type": "client_credentials",
                "client_id": "svc",
                "client_secret": "svc-secret",
            },
        )
        assert response.status_code == 200

    async def test_bad_client_secret(self, client):
        response = await client.post(
            "/token", data={"grant_type": "client_credentials"}, auth=("svc", "wrong")
        )
        assert response.status_code == 401
        assert response.json()["error"] == "invalid_client"

    async def test_conflicting_client_ids(self, client):
        response = await client.post(
            "/token",
            data={"grant_type": "client_credentials", "client_id": "c1"},
            auth=("svc", "svc-secret"),
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    async def test_malformed_basic_header(self, client):
        response = await client.post(
            "/token",
            data={"grant_type": "client_credentials"},
            headers={"Authorization": "Basic !!!"},
        )
        assert response.status_code == 401

    async def test_unsupported_grant_type(self, client):
        response = await client.post(
            "/token", data={"grant_type": "password", "client_id": "c1"}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "unsupported_grant_type"

    async def test_missing_grant_type(self, client):
        response = await client.post("/token", data={"client_id": "c1"})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    async def test_missing_client_id(self, client):
        response = await client.post("/token", data={"grant_type": "refresh_token"})
        assert response.status_code == 401
        assert response.json()["error"] == "invalid_client"

    async def test_invalid_json(self, client):
        response = await client.post(
            "/token", content=b"{", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    async def test_storage_unavailable(self, client, provider, issued, monkeypatch):
        monkeypatch.setattr(
            provider.storage,
            "get_refresh_token",
            AsyncMock(side_effect=StorageUnavailableError("down")),
        )
        response = await client.post(
            "/token",
            data={
                "grant_type": "refresh_token",
                "client_id": "c1",
                "refresh_token": issued["refresh_token"],
            },
        )
        assert response.status_code == 503
        assert response.json()["error"] == "temporarily_unavailable"

    async def test_storage_fatal(self, client, provider, issued, monkeypatch):
        monkeypatch.setattr(
            provider.storage,
            "get_refresh_token",
            AsyncMock(side_effect=StorageFatalError("corrupt")),
        )
        response = await client.post(
            "/token",
            data={
                "grant_type": "refresh_token",
                "client_id": "c1",
                "refresh_token": issued["refresh_token"],
            },
        )
        assert response.status_code == 500
        assert response.json()["error"] == "server_error"


class TestIntrospect:
    async def test_active(self, client, issued):
        response = await client.post(
            "/introspect",
            data={"token": issued["access_token"]},
            auth=("svc", "svc-secret"),
        )
        assert response.status_code == 200
        body = response.json()
        assert body["active"] is True
        assert body["client_id"] == "c1"
        assert body["scope"] == "read write"

    async def test_inactive(self, client):
        response = await client.post(
            "/introspect", data={"token": "nope"}, auth=("svc", "svc-secret")
        )
        assert response.json() == {"active": False}

    async def test_requires_confidential_client(self, client, issued):
        public = await client.post(
            "/introspect", data={"token": issued["access_token"], "client_id": "c1"}
        )
        assert public.status_code == 400
        assert public.json()["error"] == "unauthorized_client"

        anonymous = await client.post(
            "/introspect", data={"token": issued["access_token"]}
        )
        assert anonymous.status_code == 401


class TestRevoke:
    async def test_revoke(self, client, issued):
        response = await client.post(
            "/revoke", data={"token": issued["access_token"], "client_id": "c1"}
        )
        assert response.status_code == 200
        assert response.content == b""

        introspection = await client.post(
            "/introspect",
            data={"token": issued["refresh_token"]},
            auth=("svc", "svc-secret"),
        )
        assert introspection.json()["active"] is False

    async def test_unknown_token(self, client):
        response = await client.post("/revoke", data={"token": "nope"})
        assert response.status_code == 200

    async def test_missing_token(self, client):
        response = await client.post("/revoke", data={})
        assert response.status_code == 400

    async def test_other_client_cannot_revoke(self, client, issued):
        response = await client.post(
            "/revoke",
            data={"token": issued["access_token"]},
            auth=("svc", "svc-secret"),
        )
        assert response.status_code == 200

        introspection = await client.post(
            "/introspect",
            data={"token": issued["access_token"]},
            auth=("svc", "svc-secret"),
        )
        assert introspection.json()["active"] is True


class TestRegister:
    async def test_register(self, client):
        response = await client.post(
            "/register",
            json={
                "redirect_uris": ["http://localhost:3000/callback"],
                "client_name": "My App",
                "scope": "read",
            },
        )
        assert response.status_code == 201
        body = response.json()
        assert body["client_id"]
        assert body["client_secret"]

        token = await client.post(
            "/token",
            data={"grant_type": "client_credentials"},
            auth=(body["client_id"], body["client_secret"]),
        )
        assert token.status_code == 200
        assert token.json()["scope"] == "read"

    async def test_invalid_metadata(self, client):
        response = await client.post("/register", json={"redirect_uris": []})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_client_metadata"

    async def test_not_json(self, client):
        response = await client.post(
            "/register", content=b"nope", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400
