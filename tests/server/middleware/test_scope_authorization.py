import mcp.types as mt
import pytest
from mcp.server.auth.middleware.auth_context import auth_context_var
from mcp.server.auth.middleware.bearer_auth import AuthenticatedUser
from mcp.server.auth.provider import AccessToken as MCPAccessToken

from oauthmcp.exceptions import AccessDeniedError, InvalidTokenError
from oauthmcp.server.auth.audit import AuditLogger
from oauthmcp.server.auth.models import AuthInfo
from oauthmcp.server.auth.scopes import map_scopes_to_permissions
from oauthmcp.server.middleware import MiddlewareContext, ScopeAuthorizationMiddleware


def auth_for(*scopes: str) -> AuthInfo:
    return AuthInfo(
        client_id="c1",
        scopes=list(scopes),
        permissions=map_scopes_to_permissions(scopes),
    )


def call_tool(name: str) -> mt.CallToolRequest:
    return mt.CallToolRequest(
        method="tools/call", params=mt.CallToolRequestParams(name=name, arguments={})
    )


def read_resource(uri: str) -> mt.ReadResourceRequest:
    return mt.ReadResourceRequest(
        method="resources/read", params=mt.ReadResourceRequestParams(uri=uri)
    )


def get_prompt(name: str) -> mt.GetPromptRequest:
    return mt.GetPromptRequest(
        method="prompts/get", params=mt.GetPromptRequestParams(name=name)
    )


async def handler(context: MiddlewareContext) -> str:
    return "ok"


@pytest.fixture
def middleware() -> ScopeAuthorizationMiddleware:
    return ScopeAuthorizationMiddleware()


class TestScopeAuthorization:
    async def test_tool_allowed_by_namespace(self, middleware):
        context = MiddlewareContext(
            message=call_tool("search"), auth=auth_for("tools:execute")
        )
        assert await middleware(context, handler) == "ok"

    async def test_tool_allowed_by_exact_scope(self, middleware):
        context = MiddlewareContext(
            message=call_tool("search"), auth=auth_for("tools:search")
        )
        assert await middleware(context, handler) == "ok"

    async def test_tool_denied(self, middleware):
        context = MiddlewareContext(
            message=call_tool("delete"), auth=auth_for("tools:search", "read")
        )
        with pytest.raises(AccessDeniedError) as exc_info:
            await middleware(context, handler)
        assert exc_info.value.status_code == 403
        assert "tools:delete" in exc_info.value.description

    async def test_resource(self, middleware):
        allowed = MiddlewareContext(
            message=read_resource("file://docs/readme"),
            auth=auth_for("resources:read"),
        )
        assert await middleware(allowed, handler) == "ok"

        denied = MiddlewareContext(
            message=read_resource("file://docs/readme"), auth=auth_for("read")
        )
        with pytest.raises(AccessDeniedError):
            await middleware(denied, handler)

    async def test_prompt(self, middleware):
        allowed = MiddlewareContext(
            message=get_prompt("summary"), auth=auth_for("prompts:read")
        )
        assert await middleware(allowed, handler) == "ok"

        denied = MiddlewareContext(
            message=get_prompt("summary"), auth=auth_for("tools:execute")
        )
        with pytest.raises(AccessDeniedError):
            await middleware(denied, handler)

    async def test_admin(self, middleware):
        context = MiddlewareContext(message=call_tool("anything"), auth=auth_for("admin"))
        assert await middleware(context, handler) == "ok"

    async def test_other_requests_pass_through(self, middleware):
        context = MiddlewareContext(message=mt.ListToolsRequest(method="tools/list"))
        assert await middleware(context, handler) == "ok"

    async def test_unauthenticated(self, middleware):
        context = MiddlewareContext(message=call_tool("search"))
        with pytest.raises(InvalidTokenError):
            await middleware(context, handler)

    async def test_falls_back_to_request_access_token(self, middleware):
        user = AuthenticatedUser(
            MCPAccessToken(token="t", client_id="c1", scopes=["tools:execute"])
        )
        reset = auth_context_var.set(user)
        try:
            context = MiddlewareContext(message=call_tool("search"))
            assert await middleware(context, handler) == "ok"
        finally:
            auth_context_var.reset(reset)

    async def test_decisions_are_audited(self, caplog):
        middleware = ScopeAuthorizationMiddleware(AuditLogger())
        await middleware(
            MiddlewareContext(message=call_tool("search"), auth=auth_for("tools:execute")),
            handler,
        )
        with pytest.raises(AccessDeniedError):
            await middleware(
                MiddlewareContext(message=call_tool("search"), auth=auth_for("read")),
                handler,
            )
        messages = [r.message for r in caplog.records if r.name == "oauthmcp.audit"]
        assert any('"authorization.granted"' in m for m in messages)
        assert any('"authorization.denied"' in m for m in messages)
