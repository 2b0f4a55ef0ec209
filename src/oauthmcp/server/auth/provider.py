"""Local OAuth 2.1 authorization server.

`LocalOAuthProvider` is the explicit context object that owns the storage
backend and wires the client registry, the code issuer and the token service
together. Construct it at boot, enter it (or call `startup()`) before serving
requests and exit it (or call `shutdown()`) on graceful shutdown:

```python
from oauthmcp import LocalOAuthProvider

provider = LocalOAuthProvider(
    clients=[{"client_id": "c1", "redirect_uris": ["https://a/cb"], "scopes": ["read"]}],
)

async with provider:
    app = Starlette(routes=provider.get_routes())
```
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any

from mcp.server.auth.provider import AccessToken as MCPAccessToken
from mcp.server.auth.settings import ClientRegistrationOptions, RevocationOptions
from passlib.context import CryptContext
from pydantic import AnyHttpUrl
from starlette.routing import Route

import oauthmcp
from oauthmcp.exceptions import DuplicateClientError, InvalidTokenError, StorageError
from oauthmcp.server.auth.audit import AuditLogger
from oauthmcp.server.auth.auth import OAuthProvider
from oauthmcp.server.auth.clients import ClientRegistry
from oauthmcp.server.auth.codes import AuthorizationCodeIssuer
from oauthmcp.server.auth.models import (
    AccessToken,
    AuthFailure,
    AuthInfo,
    AuthorizationCode,
    ClientConfig,
    ClientRegistrationRequest,
    IntrospectionResponse,
    OAuthClient,
    RegisteredClient,
    TokenResponse,
    TokenTypeHint,
)
from oauthmcp.server.auth.routes import create_auth_routes
from oauthmcp.server.auth.scopes import map_scopes_to_permissions
from oauthmcp.server.auth.storage.base import (
    HealthCheckResult,
    OAuthStorage,
    StorageStats,
)
from oauthmcp.server.auth.storage.memory import InMemoryStorage
from oauthmcp.server.auth.storage.redis import RedisStorage
from oauthmcp.server.auth.tokens import TokenService
from oauthmcp.settings import Settings
from oauthmcp.utilities.logging import get_logger

logger = get_logger(__name__)


class LocalOAuthProvider(OAuthProvider):
    """Authorization server that issues and validates its own opaque tokens."""

    def __init__(
        self,
        *,
        storage: OAuthStorage | None = None,
        clients: Sequence[ClientConfig | dict[str, Any]] | None = None,
        issuer_url: AnyHttpUrl | str | None = None,
        service_documentation_url: AnyHttpUrl | str | None = None,
        client_registration_options: ClientRegistrationOptions | None = None,
        revocation_options: RevocationOptions | None = None,
        required_scopes: list[str] | None = None,
        audit: AuditLogger | None = None,
        access_token_expiry: int | None = None,
        refresh_token_expiry: int | None = None,
        auth_code_expiry: int | None = None,
        rotate_refresh_tokens: bool | None = None,
        revoke_family_on_reuse: bool | None = None,
        secret_context: CryptContext | None = None,
    ):
        """Initialize the provider.

        Arguments left as None fall back to `oauthmcp.settings`.

        Args:
            storage: Storage backend. Defaults to a new `InMemoryStorage`.
            clients: Clients registered on `startup()`.
            issuer_url: Public base URL of the authorization server.
            service_documentation_url: Optional documentation URL for metadata.
            client_registration_options: Dynamic client registration options.
            revocation_options: Token revocation options.
            required_scopes: Scopes the MCP bearer auth middleware requires.
            audit: Audit sink. Defaults to one built from settings.
            access_token_expiry: Access token lifetime in seconds.
            refresh_token_expiry: Refresh token lifetime in seconds.
            auth_code_expiry: Authorization code lifetime in seconds.
            rotate_refresh_tokens: Issue a new refresh token on every refresh.
            revoke_family_on_reuse: Revoke the whole token family when a
                rotated refresh token is presented again.
            secret_context: passlib context used to hash client secrets.
        """
        settings = oauthmcp.settings
        super().__init__(
            issuer_url=issuer_url or settings.issuer_url,
            service_documentation_url=service_documentation_url
            or settings.service_documentation_url,
            client_registration_options=client_registration_options
            or ClientRegistrationOptions(enabled=settings.client_registration_enabled),
            revocation_options=revocation_options,
            required_scopes=required_scopes,
        )

        self.storage: OAuthStorage = storage or InMemoryStorage()
        self.audit = audit or AuditLogger.from_settings()
        self.static_clients = [
            ClientConfig.model_validate(client) for client in clients or []
        ]

        self.clients = ClientRegistry(self.storage, self.audit, context=secret_context)
        self.codes = AuthorizationCodeIssuer(
            self.storage, self.clients, self.audit, code_expiry=auth_code_expiry
        )
        self.tokens = TokenService(
            self.storage,
            self.clients,
            self.audit,
            access_token_expiry=access_token_expiry,
            refresh_token_expiry=refresh_token_expiry,
            rotate_refresh_tokens=rotate_refresh_tokens,
            revoke_family_on_reuse=revoke_family_on_reuse,
        )
        self._started = False

        logger.debug(
            "Initialized local OAuth provider (issuer=%s, storage=%s, clients=%d)",
            self.issuer,
            type(self.storage).__name__,
            len(self.static_clients),
        )

    @classmethod
    def from_settings(
        cls, settings: Settings | None = None, **kwargs: Any
    ) -> LocalOAuthProvider:
        """Build a provider, including its storage backend, from settings."""
        settings = settings or oauthmcp.settings
        storage: OAuthStorage = (
            RedisStorage(settings.redis)
            if settings.storage_backend == "redis"
            else InMemoryStorage()
        )
        options: dict[str, Any] = {
            "storage": storage,
            "audit": AuditLogger.from_settings(settings),
            "issuer_url": settings.issuer_url,
            "service_documentation_url": settings.service_documentation_url,
            "client_registration_options": ClientRegistrationOptions(
                enabled=settings.client_registration_enabled
            ),
            "access_token_expiry": settings.access_token_expiry,
            "refresh_token_expiry": settings.refresh_token_expiry,
            "auth_code_expiry": settings.auth_code_expiry,
            "rotate_refresh_tokens": settings.rotate_refresh_tokens,
            "revoke_family_on_reuse": settings.revoke_token_family_on_reuse,
        }
        options.update(kwargs)
        return cls(**options)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def started(self) -> bool:
        return self._started

    async def startup(self) -> None:
        """Connect the storage backend and register the static clients."""
        if self._started:
            return
        await self.storage.connect()
        for config in self.static_clients:
            try:
                await self.clients.register(config)
            except DuplicateClientError:
                logger.debug("Client %s already registered", config.client_id)
        self._started = True
        logger.info("Local OAuth provider started")

    async def shutdown(self) -> None:
        if not self._started:
            return
        await self.storage.disconnect()
        self.audit.close()
        self._started = False
        logger.info("Local OAuth provider stopped")

    async def __aenter__(self) -> LocalOAuthProvider:
        await self.startup()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    # -------------------------------------------------------------------------
    # Clients
    # -------------------------------------------------------------------------

    @property
    def scopes_supported(self) -> list[str] | None:
        scopes = {scope for client in self.static_clients for scope in client.scopes}
        scopes.update(self.client_registration_options.valid_scopes or [])
        return sorted(scopes) or None

    async def register_client(self, config: ClientConfig | dict[str, Any]) -> OAuthClient:
        return await self.clients.register(ClientConfig.model_validate(config))

    async def register_dynamic_client(
        self, request: ClientRegistrationRequest
    ) -> RegisteredClient:
        options = self.client_registration_options
        return await self.clients.register_dynamic(
            request,
            valid_scopes=options.valid_scopes,
            default_scopes=options.default_scopes,
        )

    async def get_client(self, client_id: str) -> OAuthClient | None:
        return await self.storage.get_client(client_id)

    async def delete_client(self, client_id: str) -> bool:
        return await self.clients.delete(client_id)

    async def list_clients(self) -> list[str]:
        return await self.clients.list_clients()

    # -------------------------------------------------------------------------
    # Grants
    # -------------------------------------------------------------------------

    async def authorize(
        self,
        client_id: str,
        redirect_uri: str,
        scopes: Iterable[str],
        code_challenge: str | None,
        code_challenge_method: str | None = None,
    ) -> AuthorizationCode:
        return await self.codes.issue_code(
            client_id, redirect_uri, scopes, code_challenge, code_challenge_method
        )

    async def exchange_code(
        self,
        code: str,
        client_id: str,
        client_secret: str | None,
        redirect_uri: str,
        code_verifier: str | None,
    ) -> TokenResponse:
        return await self.tokens.exchange_code(
            code, client_id, client_secret, redirect_uri, code_verifier
        )

    async def refresh(
        self,
        refresh_token: str,
        client_id: str,
        client_secret: str | None = None,
        scopes: Iterable[str] | None = None,
    ) -> TokenResponse:
        return await self.tokens.refresh(refresh_token, client_id, client_secret, scopes)

    async def client_credentials(
        self,
        client_id: str,
        client_secret: str | None,
        scopes: Iterable[str] | None = None,
    ) -> TokenResponse:
        return await self.tokens.client_credentials(client_id, client_secret, scopes)

    # -------------------------------------------------------------------------
    # Tokens
    # -------------------------------------------------------------------------

    async def validate(self, token: str) -> AccessToken:
        return await self.tokens.validate(token)

    async def introspect(
        self, token: str, token_type_hint: TokenTypeHint | None = None
    ) -> IntrospectionResponse:
        return await self.tokens.introspect(token, token_type_hint)

    async def revoke(
        self,
        token: str,
        token_type_hint: TokenTypeHint | None = None,
        client_id: str | None = None,
    ) -> None:
        await self.tokens.revoke(token, token_type_hint, client_id)

    async def authenticate(self, bearer_token: str | None) -> AuthInfo | AuthFailure:
        """Authenticate a bearer token presented at the resource boundary.

        Accepts either the raw token or an `Authorization` header value.
        """
        token = (bearer_token or "").strip()
        scheme, _, credentials = token.partition(" ")
        if credentials and scheme.lower() == "bearer":
            token = credentials.strip()
        if not token:
            return AuthFailure(error_description="Missing bearer token")

        try:
            record = await self.tokens.validate(token)
        except InvalidTokenError as e:
            return AuthFailure(error=e.error_code, error_description=e.description)
        except StorageError as e:
            logger.warning("Token verification unavailable: %s", e)
            return AuthFailure(
                error="temporarily_unavailable",
                error_description="Token verification is temporarily unavailable",
            )

        return AuthInfo(
            client_id=record.client_id,
            scopes=record.scopes,
            expires_at=int(record.expires_at),
            permissions=map_scopes_to_permissions(record.scopes),
        )

    async def verify_token(self, token: str) -> MCPAccessToken | None:
        """Verify a bearer token for the MCP SDK's `BearerAuthBackend`."""
        result = await self.authenticate(token)
        if isinstance(result, AuthFailure):
            return None
        return MCPAccessToken(
            token=token,
            client_id=result.client_id,
            scopes=result.scopes,
            expires_at=result.expires_at,
        )

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def health_check(self) -> HealthCheckResult:
        return await self.storage.health_check()

    async def get_stats(self) -> StorageStats:
        return await self.storage.get_stats()

    def get_routes(self) -> list[Route]:
        return create_auth_routes(self)
