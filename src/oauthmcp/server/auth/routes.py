"""Starlette endpoints of the local authorization server.

Errors are rendered as `{"error", "error_description"}` JSON bodies with the
status code of the raised `OAuthError` and `Cache-Control: no-store`. Only the
authorization endpoint redirects, and only once the client and its redirect
URI have been verified.
"""

from __future__ import annotations

import base64
import binascii
import functools
import json
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any
from urllib.parse import unquote_plus, urlencode

from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response
from starlette.routing import Route

from oauthmcp.exceptions import (
    ClientError,
    InvalidClientError,
    InvalidRequestError,
    OAuthError,
    StorageError,
    StorageUnavailableError,
    UnauthorizedClientError,
    UnsupportedGrantTypeError,
)
from oauthmcp.server.auth.auth import (
    AUTHORIZE_PATH,
    INTROSPECT_PATH,
    METADATA_PATH,
    REGISTER_PATH,
    REVOKE_PATH,
    TOKEN_PATH,
)
from oauthmcp.server.auth.clients import parse_scope
from oauthmcp.server.auth.models import (
    ClientRegistrationRequest,
    TokenResponse,
    TokenTypeHint,
)
from oauthmcp.utilities.logging import get_logger, redact

if TYPE_CHECKING:
    from oauthmcp.server.auth.provider import LocalOAuthProvider

logger = get_logger(__name__)

NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}

Endpoint = Callable[[Request], Awaitable[Response]]


def error_response(error: OAuthError) -> JSONResponse:
    return JSONResponse(
        content=error.to_dict(), status_code=error.status_code, headers=NO_STORE
    )


def storage_error_response(error: StorageError) -> JSONResponse:
    if isinstance(error, StorageUnavailableError):
        logger.warning("OAuth storage unavailable: %s", error)
        content = {
            "error": "temporarily_unavailable",
            "error_description": "The authorization server is temporarily unavailable",
        }
        return JSONResponse(content=content, status_code=503, headers=NO_STORE)

    logger.error("OAuth storage error: %s", error, exc_info=True)
    content = {"error": "server_error", "error_description": "Internal server error"}
    return JSONResponse(content=content, status_code=500, headers=NO_STORE)


def oauth_endpoint(handler: Endpoint) -> Endpoint:
    """Render `OAuthError` and `StorageError` raised by a handler."""

    @functools.wraps(handler)
    async def wrapper(request: Request) -> Response:
        try:
            return await handler(request)
        except OAuthError as e:
            logger.debug("%s %s failed: %s", request.method, request.url.path, e)
            return error_response(e)
        except StorageError as e:
            return storage_error_response(e)

    return wrapper


async def read_params(request: Request) -> dict[str, str]:
    """Read a form-encoded or JSON request body into a flat dict."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except json.JSONDecodeError as e:
            raise InvalidRequestError("Request body is not valid JSON") from e
        if not isinstance(body, dict):
            raise InvalidRequestError("Request body must be a JSON object")
        return {k: str(v) for k, v in body.items() if v is not None}

    form = await request.form()
    return {k: str(v) for k, v in form.items()}


def basic_credentials(header: str | None) -> tuple[str, str] | None:
    """Decode `client_secret_basic` credentials from an Authorization header."""
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "basic":
        return None
    try:
        decoded = base64.b64decode(value.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise InvalidClientError() from e
    client_id, sep, client_secret = decoded.partition(":")
    if not sep:
        raise InvalidClientError()
    return unquote_plus(client_id), unquote_plus(client_secret)


def client_credentials(
    request: Request, params: dict[str, str]
) -> tuple[str | None, str | None]:
    """Return `(client_id, client_secret)` from the Basic header or the body."""
    basic = basic_credentials(request.headers.get("authorization"))
    if basic is None:
        return params.get("client_id"), params.get("client_secret")

    client_id, client_secret = basic
    if params.get("client_id", client_id) != client_id:
        raise InvalidRequestError("client_id does not match the Authorization header")
    return client_id, client_secret


def token_type_hint(params: dict[str, str]) -> TokenTypeHint | None:
    # Unknown hints are ignored (RFC 7009 section 2.1)
    hint = params.get("token_type_hint")
    if hint == "access_token" or hint == "refresh_token":
        return hint
    return None


def require(params: dict[str, str], *names: str) -> list[str]:
    missing = [name for name in names if not params.get(name)]
    if missing:
        raise InvalidRequestError(f"Missing required parameter: {', '.join(missing)}")
    return [params[name] for name in names]


def redirect(redirect_uri: str, **params: str | None) -> RedirectResponse:
    query = urlencode({k: v for k, v in params.items() if v is not None})
    separator = "&" if "?" in redirect_uri else "?"
    return RedirectResponse(
        url=f"{redirect_uri}{separator}{query}", status_code=302, headers=NO_STORE
    )


def create_auth_routes(provider: LocalOAuthProvider) -> list[Route]:
    """Create the authorization server routes for a provider."""

    async def metadata(request: Request) -> Response:
        document = provider.get_metadata(provider.scopes_supported)
        return JSONResponse(document.model_dump(exclude_none=True))

    @oauth_endpoint
    async def authorize(request: Request) -> Response:
        params = dict(request.query_params)
        client_id, redirect_uri = require(params, "client_id", "redirect_uri")
        state = params.get("state")

        # Never redirect to a URI that is not registered for the client
        try:
            await provider.clients.validate_redirect_uri(client_id, redirect_uri)
        except ClientError as e:
            logger.debug("Authorization request rejected: %s", e)
            return error_response(e)

        if params.get("response_type") != "code":
            return redirect(
                redirect_uri,
                error="unsupported_response_type",
                error_description="Only response_type=code is supported",
                state=state,
            )

        try:
            code = await provider.authorize(
                client_id,
                redirect_uri,
                parse_scope(params.get("scope")),
                params.get("code_challenge"),
                params.get("code_challenge_method"),
            )
        except OAuthError as e:
            return redirect(
                redirect_uri,
                error=e.error_code,
                error_description=e.description,
                state=state,
            )
        except StorageError as e:
            logger.warning("Authorization failed on storage error: %s", e)
            error = (
                "temporarily_unavailable"
                if isinstance(e, StorageUnavailableError)
                else "server_error"
            )
            return redirect(redirect_uri, error=error, state=state)

        return redirect(redirect_uri, code=code.code, state=state)

    @oauth_endpoint
    async def token(request: Request) -> Response:
        params = await read_params(request)
        client_id, client_secret = client_credentials(request, params)
        grant_type = params.get("grant_type")
        logger.debug(
            "Token request: grant_type=%s client_id=%s", grant_type, client_id
        )

        if not grant_type:
            raise InvalidRequestError("Missing required parameter: grant_type")
        if not client_id:
            raise InvalidClientError()

        response: TokenResponse
        if grant_type == "authorization_code":
            code, redirect_uri = require(params, "code", "redirect_uri")
            response = await provider.exchange_code(
                code,
                client_id,
                client_secret,
                redirect_uri,
                params.get("code_verifier"),
            )
        elif grant_type == "refresh_token":
            (refresh_token,) = require(params, "refresh_token")
            scope = params.get("scope")
            response = await provider.refresh(
                refresh_token,
                client_id,
                client_secret,
                parse_scope(scope) if scope is not None else None,
            )
        elif grant_type == "client_credentials":
            scope = params.get("scope")
            response = await provider.client_credentials(
                client_id,
                client_secret,
                parse_scope(scope) if scope is not None else None,
            )
        else:
            raise UnsupportedGrantTypeError(f"Unsupported grant type: {grant_type}")

        return JSONResponse(response.model_dump(exclude_none=True), headers=NO_STORE)

    @oauth_endpoint
    async def introspect(request: Request) -> Response:
        params = await read_params(request)
        client_id, client_secret = client_credentials(request, params)
        if not client_id:
            raise InvalidClientError()
        caller = await provider.clients.authenticate(client_id, client_secret)
        if not caller.is_confidential:
            raise UnauthorizedClientError(
                "Token introspection requires a confidential client"
            )

        (value,) = require(params, "token")
        result = await provider.introspect(value, token_type_hint(params))
        return JSONResponse(result.model_dump(exclude_none=True), headers=NO_STORE)

    @oauth_endpoint
    async def revoke(request: Request) -> Response:
        params = await read_params(request)
        client_id, client_secret = client_credentials(request, params)
        if client_id:
            await provider.clients.authenticate(client_id, client_secret)

        (value,) = require(params, "token")
        logger.debug("Revocation request for token %s", redact(value))
        await provider.revoke(value, token_type_hint(params), client_id=client_id)
        return Response(status_code=200, headers=NO_STORE)

    @oauth_endpoint
    async def register(request: Request) -> Response:
        try:
            body: Any = await request.json()
            registration = ClientRegistrationRequest.model_validate(body)
        except (json.JSONDecodeError, ValidationError) as e:
            return JSONResponse(
                content={
                    "error": "invalid_client_metadata",
                    "error_description": str(e),
                },
                status_code=400,
                headers=NO_STORE,
            )

        client = await provider.register_dynamic_client(registration)
        return JSONResponse(
            client.model_dump(exclude_none=True), status_code=201, headers=NO_STORE
        )

    routes = [
        Route(METADATA_PATH, endpoint=metadata, methods=["GET"]),
        Route(AUTHORIZE_PATH, endpoint=authorize, methods=["GET"]),
        Route(TOKEN_PATH, endpoint=token, methods=["POST"]),
        Route(INTROSPECT_PATH, endpoint=introspect, methods=["POST"]),
    ]
    if provider.revocation_options.enabled:
        routes.append(Route(REVOKE_PATH, endpoint=revoke, methods=["POST"]))
    if provider.client_registration_options.enabled:
        routes.append(Route(REGISTER_PATH, endpoint=register, methods=["POST"]))
    return routes
