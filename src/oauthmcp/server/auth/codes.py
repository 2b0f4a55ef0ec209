"""Authorization code issuance."""

from __future__ import annotations

import secrets
import time
from collections.abc import Iterable

import oauthmcp
from oauthmcp.exceptions import OAuthError
from oauthmcp.server.auth.audit import AuditEventType, AuditLogger
from oauthmcp.server.auth.clients import ClientRegistry
from oauthmcp.server.auth.models import AuthorizationCode
from oauthmcp.server.auth.pkce import check_challenge
from oauthmcp.server.auth.storage.base import OAuthStorage
from oauthmcp.utilities.logging import get_logger, redact

logger = get_logger(__name__)


class AuthorizationCodeIssuer:
    def __init__(
        self,
        storage: OAuthStorage,
        clients: ClientRegistry,
        audit: AuditLogger | None = None,
        code_expiry: int | None = None,
    ):
        self.storage = storage
        self.clients = clients
        self.audit = audit or AuditLogger(enabled=False)
        self.code_expiry = code_expiry or oauthmcp.settings.auth_code_expiry

    async def issue_code(
        self,
        client_id: str,
        redirect_uri: str,
        scopes: Iterable[str],
        code_challenge: str | None,
        code_challenge_method: str | None = None,
    ) -> AuthorizationCode:
        """Issue a single-use authorization code bound to a PKCE challenge.

        The client, the exact redirect URI and the requested scopes are
        validated before anything is persisted.

        Raises:
            UnknownClientError, RedirectUriMismatchError, ScopeNotAllowedError:
                if the client rejects the request.
            PkceRequiredError: if no code_challenge is given.
            UnsupportedChallengeMethodError: for any method other than S256.
        """
        requested = list(scopes)
        self.audit.log(
            AuditEventType.AUTHORIZATION_REQUESTED,
            client_id=client_id,
            redirect_uri=redirect_uri,
            scopes=requested,
        )
        try:
            await self.clients.validate_redirect_uri(client_id, redirect_uri)
            granted = await self.clients.validate_scopes(client_id, requested)
            challenge, method = check_challenge(code_challenge, code_challenge_method)
        except OAuthError as e:
            self._deny(client_id, e.error_code, e.description)
            raise

        code = AuthorizationCode(
            code=secrets.token_urlsafe(32),
            client_id=client_id,
            redirect_uri=redirect_uri,
            scopes=granted,
            code_challenge=challenge,
            code_challenge_method=method,
            expires_at=time.time() + self.code_expiry,
        )
        await self.storage.save_code(code)

        logger.debug(
            "Issued authorization code %s for client %s", redact(code.code), client_id
        )
        self.audit.log(
            AuditEventType.AUTHORIZATION_GRANTED,
            client_id=client_id,
            code=redact(code.code),
            scopes=granted,
        )
        return code

    def _deny(self, client_id: str, error: str, description: str) -> None:
        logger.debug("Authorization denied for client %s: %s", client_id, description)
        self.audit.log(
            AuditEventType.AUTHORIZATION_DENIED,
            result="failure",
            client_id=client_id,
            error=error,
            error_description=description,
        )
