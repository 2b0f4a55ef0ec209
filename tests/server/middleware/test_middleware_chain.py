from dataclasses import dataclass
from typing import Any

import mcp.types as mt

from oauthmcp.server.auth.models import AuthInfo
from oauthmcp.server.middleware import MCPMiddleware, MiddlewareContext
from oauthmcp.server.middleware.middleware import apply_middleware


@dataclass
class Recording:
    name: str
    hook: str


class RecordingMiddleware(MCPMiddleware):
    def __init__(self, name: str, calls: list[Recording]):
        self.name = name
        self.calls = calls

    async def on_message(self, context, call_next) -> Any:
        self.calls.append(Recording(self.name, "on_message"))
        return await call_next(context)

    async def on_request(self, context, call_next) -> Any:
        self.calls.append(Recording(self.name, "on_request"))
        return await call_next(context)

    async def on_call_tool(self, context, call_next) -> Any:
        self.calls.append(Recording(self.name, "on_call_tool"))
        return await call_next(context)


def call_tool(name: str) -> mt.CallToolRequest:
    return mt.CallToolRequest(
        method="tools/call", params=mt.CallToolRequestParams(name=name, arguments={})
    )


async def test_hooks_run_from_general_to_specific():
    calls: list[Recording] = []
    chain = apply_middleware([RecordingMiddleware("a", calls)], _ok)

    assert await chain(MiddlewareContext(message=call_tool("x"))) == "x"
    assert [c.hook for c in calls] == ["on_message", "on_request", "on_call_tool"]


async def test_first_middleware_runs_first():
    calls: list[Recording] = []
    chain = apply_middleware(
        [RecordingMiddleware("outer", calls), RecordingMiddleware("inner", calls)],
        _ok,
    )
    await chain(MiddlewareContext(message=call_tool("x")))
    assert [c.name for c in calls if c.hook == "on_message"] == ["outer", "inner"]


async def test_specific_hook_skipped_for_other_messages():
    calls: list[Recording] = []
    chain = apply_middleware([RecordingMiddleware("a", calls)], _any)
    await chain(MiddlewareContext(message=mt.ListToolsRequest(method="tools/list")))
    assert [c.hook for c in calls] == ["on_message", "on_request"]


async def test_context_copy():
    context = MiddlewareContext(message=call_tool("x"), method="tools/call")
    copied = context.copy(method="other")
    assert copied.method == "other"
    assert copied.message is context.message
    assert context.method == "tools/call"


def test_context_defaults():
    context = MiddlewareContext(message=call_tool("x"))
    assert context.method == "tools/call"
    assert context.client_id is None

    authenticated = context.copy(auth=AuthInfo(client_id="c1", scopes=[]))
    assert authenticated.client_id == "c1"


async def _ok(context: MiddlewareContext[mt.CallToolRequest]) -> str:
    return context.message.params.name


async def _any(context: MiddlewareContext) -> str:
    return "done"
