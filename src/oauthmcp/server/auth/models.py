"""OAuth data models.

Entity records are what the storage backends persist; the remaining models
describe request and response bodies of the authorization server endpoints.
"""

from __future__ import annotations

import time
from typing import Final, Literal

from pydantic import BaseModel, Field

S256: Final[str] = "S256"

TokenTypeHint = Literal["access_token", "refresh_token"]


def _now() -> float:
    return time.time()


# -------------------------------------------------------------------------
# Entity records
# -------------------------------------------------------------------------


class OAuthClient(BaseModel):
    """A registered OAuth client.

    Only a hash of the client secret is kept. A client without a secret hash
    is a public client.
    """

    client_id: str
    client_secret_hash: str | None = None
    client_name: str | None = None
    redirect_uris: list[str] = Field(default_factory=list)
    allowed_scopes: list[str] = Field(default_factory=list)
    created_at: float = Field(default_factory=_now)

    @property
    def is_confidential(self) -> bool:
        return self.client_secret_hash is not None


class AuthorizationCode(BaseModel):
    """Single-use authorization code bound to a PKCE challenge."""

    code: str
    client_id: str
    redirect_uri: str
    scopes: list[str]
    code_challenge: str
    code_challenge_method: str = S256
    expires_at: float
    used: bool = False
    created_at: float = Field(default_factory=_now)


class AccessToken(BaseModel):
    """Opaque bearer access token."""

    token: str
    client_id: str
    scopes: list[str]
    expires_at: float
    family_id: str | None = None
    refresh_token: str | None = None
    created_at: float = Field(default_factory=_now)


class RefreshToken(BaseModel):
    """Refresh token, linked to the access token it was issued with.

    `used` flips to True when the token is rotated; the record is kept until
    it expires so later presentations can be recognised as reuse.
    """

    token: str
    client_id: str
    scopes: list[str]
    expires_at: float
    family_id: str
    access_token: str | None = None
    used: bool = False
    created_at: float = Field(default_factory=_now)


def is_expired(record: AuthorizationCode | AccessToken | RefreshToken) -> bool:
    return record.expires_at <= time.time()


# -------------------------------------------------------------------------
# Configuration and wire models
# -------------------------------------------------------------------------


class ClientConfig(BaseModel):
    """Static client definition supplied when the provider is constructed."""

    client_id: str
    client_secret: str | None = None
    client_name: str | None = None
    redirect_uris: list[str]
    scopes: list[str] = Field(default_factory=list)


class ClientRegistrationRequest(BaseModel):
    """Dynamic client registration request body (RFC 7591 subset)."""

    redirect_uris: list[str] = Field(min_length=1)
    client_name: str | None = None
    scope: str | None = None
    token_endpoint_auth_method: Literal[
        "none", "client_secret_post", "client_secret_basic"
    ] = "client_secret_basic"


class RegisteredClient(BaseModel):
    """Registration response. `client_secret` is only ever returned here."""

    client_id: str
    client_secret: str | None = None
    client_name: str | None = None
    redirect_uris: list[str]
    scope: str
    token_endpoint_auth_method: str
    grant_types: list[str]
    client_id_issued_at: int


class TokenResponse(BaseModel):
    access_token: str
    token_type: Literal["Bearer"] = "Bearer"
    expires_in: int
    refresh_token: str | None = None
    scope: str


class IntrospectionResponse(BaseModel):
    active: bool
    scope: str | None = None
    client_id: str | None = None
    exp: int | None = None
    iat: int | None = None
    token_type: TokenTypeHint | None = None


class AuthInfo(BaseModel):
    """Result of authenticating a bearer token at the resource boundary."""

    client_id: str
    scopes: list[str]
    expires_at: int | None = None
    permissions: set[str] = Field(default_factory=set)


class AuthFailure(BaseModel):
    error: str = "invalid_token"
    error_description: str = "Invalid or expired token"


class AuthorizationServerMetadata(BaseModel):
    """RFC 8414 authorization server metadata document."""

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: str | None = None
    introspection_endpoint: str | None = None
    revocation_endpoint: str | None = None
    scopes_supported: list[str] | None = None
    response_types_supported: list[str] = ["code"]
    grant_types_supported: list[str] = [
        "authorization_code",
        "refresh_token",
        "client_credentials",
    ]
    token_endpoint_auth_methods_supported: list[str] = [
        "none",
        "client_secret_post",
        "client_secret_basic",
    ]
    code_challenge_methods_supported: list[str] = [S256]
    service_documentation: str | None = None
