"""Client registry: registration, lookup and validation of OAuth clients."""

from __future__ import annotations

import asyncio
import functools
import secrets
from collections.abc import Iterable

from passlib.context import CryptContext

from oauthmcp.exceptions import (
    DuplicateClientError,
    InvalidClientError,
    RedirectUriMismatchError,
    ScopeNotAllowedError,
    UnknownClientError,
)
from oauthmcp.server.auth.audit import AuditEventType, AuditLogger
from oauthmcp.server.auth.models import (
    ClientConfig,
    ClientRegistrationRequest,
    OAuthClient,
    RegisteredClient,
)
from oauthmcp.server.auth.storage.base import OAuthStorage
from oauthmcp.utilities.logging import get_logger

logger = get_logger(__name__)

secret_context = CryptContext(schemes=["argon2"], deprecated="auto")


@functools.cache
def _dummy_hash(context: CryptContext) -> str:
    """Hash verified against when the client is unknown, to equalize timing."""
    return context.hash(secrets.token_urlsafe(32))


def parse_scope(scope: str | None) -> list[str]:
    """Split a space-delimited scope string, dropping duplicates."""
    if not scope:
        return []
    return list(dict.fromkeys(scope.split()))


class ClientRegistry:
    def __init__(
        self,
        storage: OAuthStorage,
        audit: AuditLogger | None = None,
        context: CryptContext | None = None,
    ):
        self.storage = storage
        self.audit = audit or AuditLogger(enabled=False)
        self.context = context or secret_context

    async def hash_secret(self, secret: str) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.context.hash, secret)

    async def verify_secret(self, secret: str, secret_hash: str) -> bool:
        loop = asyncio.get_running_loop()
        return bool(
            await loop.run_in_executor(None, self.context.verify, secret, secret_hash)
        )

    async def register(self, config: ClientConfig) -> OAuthClient:
        """Register a client.

        Raises:
            DuplicateClientError: if the client_id is already registered.
        """
        client = OAuthClient(
            client_id=config.client_id,
            client_secret_hash=await self.hash_secret(config.client_secret)
            if config.client_secret
            else None,
            client_name=config.client_name,
            redirect_uris=list(dict.fromkeys(config.redirect_uris)),
            allowed_scopes=list(dict.fromkeys(config.scopes)),
        )
        if not await self.storage.save_client(client):
            raise DuplicateClientError(
                f"Client {config.client_id!r} is already registered"
            )

        logger.info(
            "Registered %s client %s",
            "confidential" if client.is_confidential else "public",
            client.client_id,
        )
        self.audit.log(
            AuditEventType.CLIENT_REGISTERED,
            client_id=client.client_id,
            confidential=client.is_confidential,
            redirect_uris=client.redirect_uris,
            scopes=client.allowed_scopes,
        )
        return client

    async def register_dynamic(
        self,
        request: ClientRegistrationRequest,
        *,
        valid_scopes: Iterable[str] | None = None,
        default_scopes: Iterable[str] | None = None,
    ) -> RegisteredClient:
        """Register a client from a dynamic registration request.

        A client_id, and a secret unless the request asks for a public client,
        are generated. The plain secret is only returned here.
        """
        scopes = parse_scope(request.scope) or list(default_scopes or [])
        if valid_scopes is not None:
            invalid = set(scopes) - set(valid_scopes)
            if invalid:
                raise ScopeNotAllowedError(
                    invalid,
                    f"Requested scopes are not valid: {', '.join(sorted(invalid))}",
                )

        client_secret = (
            None
            if request.token_endpoint_auth_method == "none"
            else secrets.token_urlsafe(32)
        )
        client = await self.register(
            ClientConfig(
                client_id=secrets.token_urlsafe(16),
                client_secret=client_secret,
                client_name=request.client_name,
                redirect_uris=request.redirect_uris,
                scopes=scopes,
            )
        )
        grant_types = ["authorization_code", "refresh_token"]
        if client.is_confidential:
            grant_types.append("client_credentials")

        return RegisteredClient(
            client_id=client.client_id,
            client_secret=client_secret,
            client_name=client.client_name,
            redirect_uris=client.redirect_uris,
            scope=" ".join(client.allowed_scopes),
            token_endpoint_auth_method=request.token_endpoint_auth_method,
            grant_types=grant_types,
            client_id_issued_at=int(client.created_at),
        )

    async def lookup(self, client_id: str) -> OAuthClient:
        """
        Raises:
            UnknownClientError: if no client with this id is registered.
        """
        client = await self.storage.get_client(client_id)
        if client is None:
            raise UnknownClientError(f"Unknown client: {client_id}")
        return client

    async def validate_redirect_uri(self, client_id: str, redirect_uri: str) -> OAuthClient:
        """Require an exact string match against the registered redirect URIs."""
        client = await self.lookup(client_id)
        if redirect_uri not in client.redirect_uris:
            raise RedirectUriMismatchError(
                f"Redirect URI {redirect_uri!r} is not registered for client {client_id}"
            )
        return client

    async def validate_scopes(
        self, client_id: str, scopes: Iterable[str]
    ) -> list[str]:
        """Return the requested scopes, deduplicated, if all are allowed.

        Raises:
            ScopeNotAllowedError: listing every requested scope outside the
                client's allowed scopes.
        """
        client = await self.lookup(client_id)
        requested = list(dict.fromkeys(scopes))
        not_allowed = set(requested) - set(client.allowed_scopes)
        if not_allowed:
            raise ScopeNotAllowedError(not_allowed)
        return requested

    async def authenticate(
        self, client_id: str | None, client_secret: str | None
    ) -> OAuthClient:
        """Authenticate a client at the token endpoint.

        Public clients authenticate with their client_id alone. Confidential
        clients must present their secret. Every failure raises the same
        `InvalidClientError`, and unknown clients still pay for a hash
        verification.
        """
        client = await self.storage.get_client(client_id) if client_id else None

        if client is None:
            await self.verify_secret(client_secret or "", _dummy_hash(self.context))
            logger.debug("Client authentication failed: unknown client")
            raise InvalidClientError()

        secret_hash = client.client_secret_hash
        if secret_hash is None:
            return client

        if not client_secret or not await self.verify_secret(client_secret, secret_hash):
            logger.debug("Client authentication failed for %s", client.client_id)
            raise InvalidClientError()
        return client

    async def delete(self, client_id: str) -> bool:
        """Delete a client and revoke every token issued to it."""
        deleted = await self.storage.delete_client(client_id)
        revoked = await self.storage.revoke_tokens_by_client(client_id)
        if deleted:
            logger.info("Deleted client %s and revoked %d tokens", client_id, revoked)
        return deleted

    async def list_clients(self) -> list[str]:
        return await self.storage.list_clients()
