"""Custom exceptions for oauthmcp."""

from __future__ import annotations

from collections.abc import Iterable


class OAuthMCPError(Exception):
    """Base error for oauthmcp."""


# -------------------------------------------------------------------------
# Protocol errors
# -------------------------------------------------------------------------


class OAuthError(OAuthMCPError):
    """An error that is reported to OAuth clients as a protocol error response.

    Subclasses fix the OAuth `error` code and HTTP status code; the
    description is the human readable `error_description`.
    """

    error_code: str = "invalid_request"
    status_code: int = 400
    default_description: str = "Invalid request"

    def __init__(self, description: str | None = None):
        self.description = description or self.default_description
        super().__init__(self.description)

    def to_dict(self) -> dict[str, str]:
        return {"error": self.error_code, "error_description": self.description}


class ClientError(OAuthError):
    """Problems with the client itself. Never retried."""


class UnknownClientError(ClientError):
    error_code = "invalid_client"
    status_code = 401
    default_description = "Unknown client"


class DuplicateClientError(ClientError):
    error_code = "invalid_client_metadata"
    default_description = "Client already registered"


class RedirectUriMismatchError(ClientError):
    default_description = "Redirect URI not registered for client"


class ScopeNotAllowedError(ClientError):
    error_code = "invalid_scope"

    def __init__(self, scopes: Iterable[str], description: str | None = None):
        self.scopes = sorted(set(scopes))
        super().__init__(
            description
            or f"Scopes not allowed for client: {', '.join(self.scopes)}"
        )


class InvalidClientError(ClientError):
    """Client authentication failed.

    Unknown clients and wrong secrets share this error and message.
    """

    error_code = "invalid_client"
    status_code = 401
    default_description = "Client authentication failed"


class UnauthorizedClientError(ClientError):
    error_code = "unauthorized_client"
    default_description = "Client is not authorized to use this grant type"


class GrantError(OAuthError):
    """The presented grant (code, verifier, refresh token) is not acceptable."""

    error_code = "invalid_grant"
    default_description = "Invalid grant"


class InvalidGrantError(GrantError):
    pass


class ClientMismatchError(GrantError):
    default_description = "Grant was not issued to this client"


class PkceVerificationError(GrantError):
    default_description = "PKCE verification failed"


class InvalidScopeError(GrantError):
    error_code = "invalid_scope"
    default_description = "Requested scope exceeds the original grant"


class PkceRequiredError(OAuthError):
    default_description = "code_challenge is required (PKCE)"


class UnsupportedChallengeMethodError(OAuthError):
    default_description = "Unsupported code_challenge_method"


class UnsupportedGrantTypeError(OAuthError):
    error_code = "unsupported_grant_type"
    default_description = "Unsupported grant type"


class InvalidRequestError(OAuthError):
    pass


class InvalidTokenError(OAuthError):
    """Token is unknown, expired, or revoked. The message never says which."""

    error_code = "invalid_token"
    status_code = 401
    default_description = "Invalid or expired token"


class AccessDeniedError(OAuthError):
    error_code = "insufficient_scope"
    status_code = 403
    default_description = "Insufficient scope"


# -------------------------------------------------------------------------
# Storage errors
# -------------------------------------------------------------------------


class StorageError(OAuthMCPError):
    """Base error for storage backends."""


class NotConnectedError(StorageError):
    """The backend was used before connect() or after disconnect()."""


class StorageTransientError(StorageError):
    """A retryable failure such as a dropped connection or a timeout."""


class StorageUnavailableError(StorageError):
    """The backend could not be reached within its retry budget."""


class StorageFatalError(StorageError):
    """Stored data could not be read or written. Not retried."""
