"""Token service: issuance, refresh, validation, introspection and revocation.

Per authorization grant the lifecycle is

    code issued -> exchanged (access + refresh) -> refreshed ... -> revoked | expired

Every token derived from one code exchange shares a `family_id`. When refresh
token rotation is on, presenting a refresh token that was already rotated is
treated as theft: the request fails and, if configured, the whole family is
revoked.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Iterable

import oauthmcp
from oauthmcp.exceptions import (
    ClientMismatchError,
    InvalidGrantError,
    InvalidScopeError,
    InvalidTokenError,
    PkceVerificationError,
    UnauthorizedClientError,
)
from oauthmcp.server.auth.audit import AuditEventType, AuditLogger
from oauthmcp.server.auth.clients import ClientRegistry
from oauthmcp.server.auth.models import (
    AccessToken,
    IntrospectionResponse,
    RefreshToken,
    TokenResponse,
    TokenTypeHint,
)
from oauthmcp.server.auth.pkce import verify_code_verifier
from oauthmcp.server.auth.storage.base import OAuthStorage
from oauthmcp.utilities.logging import get_logger, redact

logger = get_logger(__name__)


def _new_token() -> str:
    return secrets.token_urlsafe(32)


class TokenService:
    def __init__(
        self,
        storage: OAuthStorage,
        clients: ClientRegistry,
        audit: AuditLogger | None = None,
        *,
        access_token_expiry: int | None = None,
        refresh_token_expiry: int | None = None,
        rotate_refresh_tokens: bool | None = None,
        revoke_family_on_reuse: bool | None = None,
    ):
        settings = oauthmcp.settings
        self.storage = storage
        self.clients = clients
        self.audit = audit or AuditLogger(enabled=False)
        self.access_token_expiry = access_token_expiry or settings.access_token_expiry
        self.refresh_token_expiry = (
            refresh_token_expiry or settings.refresh_token_expiry
        )
        self.rotate_refresh_tokens = (
            settings.rotate_refresh_tokens
            if rotate_refresh_tokens is None
            else rotate_refresh_tokens
        )
        self.revoke_family_on_reuse = (
            settings.revoke_token_family_on_reuse
            if revoke_family_on_reuse is None
            else revoke_family_on_reuse
        )

    # -------------------------------------------------------------------------
    # Issuance helpers
    # -------------------------------------------------------------------------

    async def _issue_access_token(
        self,
        client_id: str,
        scopes: list[str],
        family_id: str | None,
        refresh_token: str | None = None,
    ) -> AccessToken:
        access = AccessToken(
            token=_new_token(),
            client_id=client_id,
            scopes=scopes,
            expires_at=time.time() + self.access_token_expiry,
            family_id=family_id,
            refresh_token=refresh_token,
        )
        await self.storage.save_token(access)
        return access

    async def _issue_pair(
        self,
        client_id: str,
        access_scopes: list[str],
        refresh_scopes: list[str],
        family_id: str,
    ) -> tuple[AccessToken, RefreshToken]:
        refresh_value = _new_token()
        access = await self._issue_access_token(
            client_id, access_scopes, family_id, refresh_token=refresh_value
        )
        refresh = RefreshToken(
            token=refresh_value,
            client_id=client_id,
            scopes=refresh_scopes,
            expires_at=time.time() + self.refresh_token_expiry,
            family_id=family_id,
            access_token=access.token,
        )
        await self.storage.save_refresh_token(refresh)
        return access, refresh

    def _response(
        self, access: AccessToken, refresh: RefreshToken | None
    ) -> TokenResponse:
        return TokenResponse(
            access_token=access.token,
            expires_in=self.access_token_expiry,
            refresh_token=refresh.token if refresh else None,
            scope=" ".join(access.scopes),
        )

    # -------------------------------------------------------------------------
    # Grants
    # -------------------------------------------------------------------------

    async def exchange_code(
        self,
        code: str,
        client_id: str,
        client_secret: str | None,
        redirect_uri: str,
        code_verifier: str | None,
    ) -> TokenResponse:
        """Redeem an authorization code for an access and refresh token pair.

        The client is authenticated before the code is looked at.

        Raises:
            InvalidClientError: if client authentication fails.
            InvalidGrantError: if the code is unknown, expired or already used,
                including when a concurrent request redeemed it first.
            ClientMismatchError: if client_id or redirect_uri differ from the
                values the code was issued for.
            PkceVerificationError: if the verifier does not match the challenge.
        """
        await self.clients.authenticate(client_id, client_secret)

        record = await self.storage.get_code(code)
        if record is None or record.used:
            logger.debug("Rejected authorization code %s", redact(code))
            raise InvalidGrantError("Authorization code is invalid, expired, or used")

        if record.client_id != client_id or record.redirect_uri != redirect_uri:
            raise ClientMismatchError(
                "Authorization code was not issued to this client and redirect URI"
            )

        if not verify_code_verifier(code_verifier, record.code_challenge):
            logger.debug("PKCE verification failed for client %s", client_id)
            raise PkceVerificationError()

        if await self.storage.consume_code(code) is None:
            logger.debug(
                "Authorization code %s was redeemed concurrently", redact(code)
            )
            raise InvalidGrantError("Authorization code is invalid, expired, or used")

        access, refresh = await self._issue_pair(
            client_id, record.scopes, record.scopes, family_id=_new_token()
        )
        logger.info("Issued tokens to client %s", client_id)
        self.audit.log(
            AuditEventType.TOKEN_ISSUED,
            client_id=client_id,
            grant_type="authorization_code",
            access_token=redact(access.token),
            scopes=access.scopes,
        )
        return self._response(access, refresh)

    async def refresh(
        self,
        refresh_token: str,
        client_id: str,
        client_secret: str | None,
        scopes: Iterable[str] | None = None,
    ) -> TokenResponse:
        """Exchange a refresh token for a new access token.

        `scopes` may narrow the original grant; omitted, the original scopes
        are kept. With rotation on, the presented refresh token is retired and
        a replacement is returned. The access token previously paired with the
        refresh token is revoked either way.

        Raises:
            InvalidClientError: if client authentication fails.
            InvalidGrantError: if the refresh token is unknown, expired,
                revoked, already rotated, or lost a concurrent rotation.
            ClientMismatchError: if the token belongs to another client.
            InvalidScopeError: if `scopes` exceeds the original grant.
        """
        await self.clients.authenticate(client_id, client_secret)

        record = await self.storage.get_refresh_token(refresh_token)
        if record is None:
            logger.debug("Rejected refresh token %s", redact(refresh_token))
            raise InvalidGrantError("Refresh token is invalid or expired")

        if record.client_id != client_id:
            raise ClientMismatchError("Refresh token was not issued to this client")

        if record.used:
            await self._handle_reuse(record)
            raise InvalidGrantError("Refresh token is invalid or expired")

        requested = list(dict.fromkeys(scopes)) if scopes is not None else record.scopes
        exceeding = set(requested) - set(record.scopes)
        if exceeding:
            raise InvalidScopeError(
                f"Requested scope exceeds the original grant: {', '.join(sorted(exceeding))}"
            )

        if self.rotate_refresh_tokens:
            if await self.storage.consume_refresh_token(refresh_token) is None:
                logger.debug(
                    "Refresh token %s was rotated concurrently", redact(refresh_token)
                )
                raise InvalidGrantError("Refresh token is invalid or expired")
            if record.access_token:
                await self.storage.revoke_token(record.access_token)
            access, new_refresh = await self._issue_pair(
                client_id, requested, record.scopes, family_id=record.family_id
            )
        else:
            if record.access_token:
                await self.storage.revoke_token(record.access_token)
            access = await self._issue_access_token(
                client_id, requested, record.family_id, refresh_token=refresh_token
            )
            record.access_token = access.token
            await self.storage.save_refresh_token(record)
            new_refresh = None

        logger.info("Refreshed tokens for client %s", client_id)
        self.audit.log(
            AuditEventType.TOKEN_REFRESHED,
            client_id=client_id,
            access_token=redact(access.token),
            rotated=new_refresh is not None,
            scopes=access.scopes,
        )
        return self._response(access, new_refresh)

    async def _handle_reuse(self, record: RefreshToken) -> None:
        logger.warning(
            "Rotated refresh token %s presented again by client %s",
            redact(record.token),
            record.client_id,
        )
        revoked = 0
        if self.revoke_family_on_reuse:
            revoked = await self.storage.revoke_family(record.family_id)
            logger.warning(
                "Revoked %d tokens of family %s after refresh token reuse",
                revoked,
                redact(record.family_id),
            )
        self.audit.log(
            AuditEventType.TOKEN_REUSE_DETECTED,
            result="warning",
            client_id=record.client_id,
            refresh_token=redact(record.token),
            family_revoked=self.revoke_family_on_reuse,
            tokens_revoked=revoked,
        )

    async def client_credentials(
        self,
        client_id: str,
        client_secret: str | None,
        scopes: Iterable[str] | None = None,
    ) -> TokenResponse:
        """Issue an access token to a confidential client acting on its own behalf.

        No refresh token is issued. Scopes default to the client's allowed
        scopes.

        Raises:
            InvalidClientError: if client authentication fails.
            UnauthorizedClientError: for public clients.
            ScopeNotAllowedError: if a requested scope is not allowed.
        """
        client = await self.clients.authenticate(client_id, client_secret)
        if not client.is_confidential:
            raise UnauthorizedClientError(
                "Public clients cannot use the client_credentials grant"
            )

        granted = (
            await self.clients.validate_scopes(client_id, scopes)
            if scopes is not None
            else list(client.allowed_scopes)
        )
        access = await self._issue_access_token(client_id, granted, family_id=None)
        logger.info("Issued client credentials token to client %s", client_id)
        self.audit.log(
            AuditEventType.TOKEN_ISSUED,
            client_id=client_id,
            grant_type="client_credentials",
            access_token=redact(access.token),
            scopes=granted,
        )
        return self._response(access, None)

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    async def validate(self, token: str) -> AccessToken:
        """Return the stored access token if it is active.

        Raises:
            InvalidTokenError: for unknown, expired and revoked tokens alike.
        """
        record = await self.storage.get_token(token)
        if record is None:
            self.audit.log(
                AuditEventType.TOKEN_VALIDATION_FAILED,
                result="failure",
                access_token=redact(token),
            )
            raise InvalidTokenError()

        self.audit.log(
            AuditEventType.TOKEN_VALIDATION_SUCCESS,
            client_id=record.client_id,
            access_token=redact(token),
        )
        return record

    async def introspect(
        self, token: str, token_type_hint: TokenTypeHint | None = None
    ) -> IntrospectionResponse:
        """Report whether a token is active (RFC 7662).

        Unknown, expired, revoked and rotated tokens are all simply inactive.
        """
        response = IntrospectionResponse(active=False)
        lookups = [self._introspect_access, self._introspect_refresh]
        if token_type_hint == "refresh_token":
            lookups.reverse()
        for lookup in lookups:
            result = await lookup(token)
            if result is not None:
                response = result
                break

        self.audit.log(
            AuditEventType.TOKEN_INTROSPECTED,
            client_id=response.client_id,
            token=redact(token),
            active=response.active,
        )
        return response

    async def _introspect_access(self, token: str) -> IntrospectionResponse | None:
        record = await self.storage.get_token(token)
        if record is None:
            return None
        return IntrospectionResponse(
            active=True,
            scope=" ".join(record.scopes),
            client_id=record.client_id,
            exp=int(record.expires_at),
            iat=int(record.created_at),
            token_type="access_token",
        )

    async def _introspect_refresh(self, token: str) -> IntrospectionResponse | None:
        record = await self.storage.get_refresh_token(token)
        if record is None or record.used:
            return None
        return IntrospectionResponse(
            active=True,
            scope=" ".join(record.scopes),
            client_id=record.client_id,
            exp=int(record.expires_at),
            iat=int(record.created_at),
            token_type="refresh_token",
        )

    # -------------------------------------------------------------------------
    # Revocation
    # -------------------------------------------------------------------------

    async def revoke(
        self,
        token: str,
        token_type_hint: TokenTypeHint | None = None,
        client_id: str | None = None,
    ) -> None:
        """Revoke a token and the token paired with it (RFC 7009).

        Always succeeds: unknown tokens, tokens that are already revoked and
        tokens owned by a different client than `client_id` are left alone
        without an error.
        """
        revokers = [self._revoke_access, self._revoke_refresh]
        if token_type_hint == "refresh_token":
            revokers.reverse()
        for revoker in revokers:
            if await revoker(token, client_id):
                return
        logger.debug("Revocation of unknown token %s ignored", redact(token))

    async def _revoke_access(self, token: str, client_id: str | None) -> bool:
        record = await self.storage.get_token(token)
        if record is None:
            return False
        if client_id is not None and record.client_id != client_id:
            logger.debug(
                "Client %s may not revoke token %s", client_id, redact(token)
            )
            return True

        await self.storage.revoke_token(token)
        if record.refresh_token:
            await self.storage.revoke_refresh_token(record.refresh_token)
        self._audit_revocation(record.client_id, token, "access_token")
        return True

    async def _revoke_refresh(self, token: str, client_id: str | None) -> bool:
        record = await self.storage.get_refresh_token(token)
        if record is None:
            return False
        if client_id is not None and record.client_id != client_id:
            logger.debug(
                "Client %s may not revoke token %s", client_id, redact(token)
            )
            return True

        await self.storage.revoke_refresh_token(token)
        if record.access_token:
            await self.storage.revoke_token(record.access_token)
        self._audit_revocation(record.client_id, token, "refresh_token")
        return True

    def _audit_revocation(self, client_id: str, token: str, token_type: str) -> None:
        logger.info("Revoked %s %s of client %s", token_type, redact(token), client_id)
        self.audit.log(
            AuditEventType.TOKEN_REVOKED,
            client_id=client_id,
            token=redact(token),
            token_type=token_type,
        )
