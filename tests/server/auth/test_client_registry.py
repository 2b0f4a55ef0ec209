import time

import pytest

from oauthmcp.exceptions import (
    DuplicateClientError,
    InvalidClientError,
    RedirectUriMismatchError,
    ScopeNotAllowedError,
    UnknownClientError,
)
from oauthmcp.server.auth.clients import ClientRegistry, parse_scope
from oauthmcp.server.auth.models import (
    AccessToken,
    ClientConfig,
    ClientRegistrationRequest,
    RefreshToken,
)


class TestRegistration:
    async def test_register_hashes_secret(self, registry, storage):
        client = await storage.get_client("svc")
        assert client is not None
        assert client.is_confidential
        assert client.client_secret_hash != "svc-secret"
        assert client.client_secret_hash.startswith("$argon2")

    async def test_register_public_client(self, registry):
        client = await registry.lookup("c1")
        assert not client.is_confidential
        assert client.allowed_scopes == ["read", "write"]

    async def test_duplicate_registration(self, registry):
        with pytest.raises(DuplicateClientError):
            await registry.register(
                ClientConfig(client_id="c1", redirect_uris=["https://other/cb"])
            )
        client = await registry.lookup("c1")
        assert client.redirect_uris == ["https://a/cb"]

    async def test_register_dynamic_confidential(self, registry):
        registered = await registry.register_dynamic(
            ClientRegistrationRequest(
                redirect_uris=["http://localhost:3000/callback"],
                client_name="My App",
                scope="read write",
            )
        )
        assert registered.client_id
        assert registered.client_secret
        assert registered.scope == "read write"
        assert "client_credentials" in registered.grant_types

        client = await registry.authenticate(
            registered.client_id, registered.client_secret
        )
        assert client.client_name == "My App"

    async def test_register_dynamic_public(self, registry):
        registered = await registry.register_dynamic(
            ClientRegistrationRequest(
                redirect_uris=["http://localhost:3000/callback"],
                token_endpoint_auth_method="none",
            ),
            default_scopes=["read"],
        )
        assert registered.client_secret is None
        assert registered.scope == "read"
        assert registered.grant_types == ["authorization_code", "refresh_token"]

    async def test_register_dynamic_rejects_invalid_scopes(self, registry):
        with pytest.raises(ScopeNotAllowedError) as exc_info:
            await registry.register_dynamic(
                ClientRegistrationRequest(
                    redirect_uris=["http://localhost:3000/callback"], scope="read admin"
                ),
                valid_scopes=["read", "write"],
            )
        assert exc_info.value.scopes == ["admin"]

    async def test_registration_is_audited(self, storage, secret_context, caplog):
        from oauthmcp.server.auth.audit import AuditLogger

        registry = ClientRegistry(storage, AuditLogger(), context=secret_context)
        await registry.register(ClientConfig(client_id="x", redirect_uris=["https://x"]))
        assert any("oauth.client.registered" in r.message for r in caplog.records)


class TestLookupAndValidation:
    async def test_lookup_unknown(self, registry):
        with pytest.raises(UnknownClientError):
            await registry.lookup("nope")

    async def test_redirect_uri_exact_match(self, registry):
        client = await registry.validate_redirect_uri("c1", "https://a/cb")
        assert client.client_id == "c1"

    @pytest.mark.parametrize(
        "redirect_uri",
        [
            "https://a/cb/",
            "https://A/cb",
            "https://a/CB",
            "https://a/cb/extra",
            "https://a/c",
            "https://a/cb?x=1",
            "http://a/cb",
        ],
    )
    async def test_redirect_uri_variants_rejected(self, registry, redirect_uri):
        with pytest.raises(RedirectUriMismatchError):
            await registry.validate_redirect_uri("c1", redirect_uri)

    async def test_redirect_uri_unknown_client(self, registry):
        with pytest.raises(UnknownClientError):
            await registry.validate_redirect_uri("nope", "https://a/cb")

    async def test_validate_scopes(self, registry):
        assert await registry.validate_scopes("c1", ["read", "read"]) == ["read"]
        assert await registry.validate_scopes("c1", []) == []

    async def test_validate_scopes_lists_offending(self, registry):
        with pytest.raises(ScopeNotAllowedError) as exc_info:
            await registry.validate_scopes("c1", ["read", "admin", "delete"])
        assert exc_info.value.scopes == ["admin", "delete"]
        assert "admin" in exc_info.value.description


class TestAuthentication:
    async def test_public_client(self, registry):
        client = await registry.authenticate("c1", None)
        assert client.client_id == "c1"

    async def test_confidential_client(self, registry):
        client = await registry.authenticate("svc", "svc-secret")
        assert client.client_id == "svc"

    async def test_failures_are_uniform(self, registry):
        with pytest.raises(InvalidClientError) as wrong_secret:
            await registry.authenticate("svc", "wrong")
        with pytest.raises(InvalidClientError) as missing_secret:
            await registry.authenticate("svc", None)
        with pytest.raises(InvalidClientError) as unknown:
            await registry.authenticate("nope", "svc-secret")

        assert (
            wrong_secret.value.to_dict()
            == missing_secret.value.to_dict()
            == unknown.value.to_dict()
        )


class TestDeleteAndList:
    async def test_delete(self, registry):
        assert sorted(await registry.list_clients()) == ["c1", "svc"]
        assert await registry.delete("c1") is True
        assert await registry.delete("c1") is False
        assert await registry.list_clients() == ["svc"]

    async def test_delete_revokes_client_tokens(self, registry, storage):
        now = time.time()
        await storage.save_token(
            AccessToken(token="mine", client_id="c1", scopes=[], expires_at=now + 60)
        )
        await storage.save_refresh_token(
            RefreshToken(
                token="mine-r", client_id="c1", scopes=[], expires_at=now + 60, family_id="f"
            )
        )
        await storage.save_token(
            AccessToken(token="theirs", client_id="svc", scopes=[], expires_at=now + 60)
        )

        assert await registry.delete("c1") is True
        assert await storage.get_token("mine") is None
        assert await storage.get_refresh_token("mine-r") is None
        assert await storage.get_token("theirs") is not None


def test_parse_scope():
    assert parse_scope(None) == []
    assert parse_scope("") == []
    assert parse_scope("read  write read") == ["read", "write"]
