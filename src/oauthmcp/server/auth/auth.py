from __future__ import annotations

from typing import Final

from mcp.server.auth.provider import AccessToken
from mcp.server.auth.settings import (
    ClientRegistrationOptions,
    RevocationOptions,
)
from pydantic import AnyHttpUrl
from starlette.routing import Route

from oauthmcp.server.auth.models import AuthorizationServerMetadata

METADATA_PATH: Final = "/.well-known/oauth-authorization-server"
AUTHORIZE_PATH: Final = "/authorize"
TOKEN_PATH: Final = "/token"
REGISTER_PATH: Final = "/register"
INTROSPECT_PATH: Final = "/introspect"
REVOKE_PATH: Final = "/revoke"


class TokenVerifier:
    """Verifies bearer tokens for the MCP SDK's `BearerAuthBackend`."""

    def __init__(self, required_scopes: list[str] | None = None):
        self.required_scopes = required_scopes or []

    async def verify_token(self, token: str) -> AccessToken | None:
        """Return the token's access information, or None if it is not valid."""
        raise NotImplementedError


class OAuthProvider(TokenVerifier):
    """Base class for authorization servers mounted next to an MCP server."""

    def __init__(
        self,
        issuer_url: AnyHttpUrl | str,
        service_documentation_url: AnyHttpUrl | str | None = None,
        client_registration_options: ClientRegistrationOptions | None = None,
        revocation_options: RevocationOptions | None = None,
        required_scopes: list[str] | None = None,
    ):
        super().__init__(required_scopes=required_scopes)
        if isinstance(issuer_url, str):
            issuer_url = AnyHttpUrl(issuer_url)
        if isinstance(service_documentation_url, str):
            service_documentation_url = AnyHttpUrl(service_documentation_url)

        self.issuer_url = issuer_url
        self.service_documentation_url = service_documentation_url
        self.client_registration_options = (
            client_registration_options or ClientRegistrationOptions(enabled=False)
        )
        self.revocation_options = revocation_options or RevocationOptions(
            enabled=True
        )

    @property
    def issuer(self) -> str:
        return str(self.issuer_url).rstrip("/")

    def url_for(self, path: str) -> str:
        return f"{self.issuer}{path}"

    def get_metadata(
        self, scopes_supported: list[str] | None = None
    ) -> AuthorizationServerMetadata:
        return AuthorizationServerMetadata(
            issuer=self.issuer,
            authorization_endpoint=self.url_for(AUTHORIZE_PATH),
            token_endpoint=self.url_for(TOKEN_PATH),
            registration_endpoint=self.url_for(REGISTER_PATH)
            if self.client_registration_options.enabled
            else None,
            introspection_endpoint=self.url_for(INTROSPECT_PATH),
            revocation_endpoint=self.url_for(REVOKE_PATH)
            if self.revocation_options.enabled
            else None,
            scopes_supported=scopes_supported,
            service_documentation=str(self.service_documentation_url)
            if self.service_documentation_url
            else None,
        )

    def get_routes(self) -> list[Route]:
        """Starlette routes serving the authorization server endpoints."""
        raise NotImplementedError
