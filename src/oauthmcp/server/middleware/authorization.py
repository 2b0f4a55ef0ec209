"""Scope based access control for MCP tool, resource and prompt calls."""

from __future__ import annotations

from typing import Any

import mcp.types as mt
from mcp.server.auth.middleware.auth_context import get_access_token

from oauthmcp.exceptions import AccessDeniedError, InvalidTokenError
from oauthmcp.server.auth.audit import AuditEventType, AuditLogger
from oauthmcp.server.auth.models import AuthInfo
from oauthmcp.server.auth.scopes import has_permission, map_scopes_to_permissions
from oauthmcp.server.middleware.middleware import (
    CallNext,
    MCPMiddleware,
    MiddlewareContext,
)
from oauthmcp.utilities.logging import get_logger

logger = get_logger(__name__)


class ScopeAuthorizationMiddleware(MCPMiddleware):
    """Require a matching permission for every tool call, resource read and
    prompt get.

    The caller's identity comes from `MiddlewareContext.auth` or, if that is
    not set, from the access token the MCP SDK's bearer auth middleware
    stored for the current request. Required permissions are
    `tools:<name>`, `resources:<uri>` and `prompts:<name>`.
    """

    def __init__(self, audit: AuditLogger | None = None):
        self.audit = audit or AuditLogger(enabled=False)

    def _auth_info(self, context: MiddlewareContext[Any]) -> AuthInfo:
        if context.auth is not None:
            return context.auth

        access_token = get_access_token()
        if access_token is None:
            raise InvalidTokenError("Authentication required")
        return AuthInfo(
            client_id=access_token.client_id,
            scopes=access_token.scopes,
            expires_at=access_token.expires_at,
            permissions=map_scopes_to_permissions(access_token.scopes),
        )

    def _check(self, context: MiddlewareContext[Any], required: str) -> None:
        auth = self._auth_info(context)
        permissions = auth.permissions or map_scopes_to_permissions(auth.scopes)
        if has_permission(permissions, required):
            self.audit.log(
                AuditEventType.ACCESS_GRANTED,
                client_id=auth.client_id,
                permission=required,
            )
            return

        logger.debug("Client %s lacks permission %s", auth.client_id, required)
        self.audit.log(
            AuditEventType.ACCESS_DENIED,
            result="failure",
            client_id=auth.client_id,
            permission=required,
        )
        raise AccessDeniedError(f"Missing permission: {required}")

    async def on_call_tool(
        self,
        context: MiddlewareContext[mt.CallToolRequest],
        call_next: CallNext[mt.CallToolRequest, mt.CallToolResult],
    ) -> mt.CallToolResult:
        self._check(context, f"tools:{context.message.params.name}")
        return await call_next(context)

    async def on_read_resource(
        self,
        context: MiddlewareContext[mt.ReadResourceRequest],
        call_next: CallNext[mt.ReadResourceRequest, mt.ReadResourceResult],
    ) -> mt.ReadResourceResult:
        self._check(context, f"resources:{context.message.params.uri}")
        return await call_next(context)

    async def on_get_prompt(
        self,
        context: MiddlewareContext[mt.GetPromptRequest],
        call_next: CallNext[mt.GetPromptRequest, mt.GetPromptResult],
    ) -> mt.GetPromptResult:
        self._check(context, f"prompts:{context.message.params.name}")
        return await call_next(context)
