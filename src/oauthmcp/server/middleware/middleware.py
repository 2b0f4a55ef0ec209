"""Middleware chain for MCP requests that reach an OAuth protected server.

A middleware sees every message through `on_message`, requests through
`on_request` and then tool calls, resource reads and prompt gets through
their specific hook, in that order. Each hook decides whether to continue by
awaiting `call_next(context)`.
"""

from __future__ import annotations

from collections.abc import Awaitable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from functools import partial
from typing import Any, Generic, Protocol, TypeVar, runtime_checkable

import mcp.types as mt

from oauthmcp.server.auth.models import AuthInfo

T = TypeVar("T")
R = TypeVar("R", covariant=True)


@runtime_checkable
class CallNext(Protocol[T, R]):
    def __call__(self, context: MiddlewareContext[T]) -> Awaitable[R]: ...


@dataclass(kw_only=True, frozen=True)
class MiddlewareContext(Generic[T]):
    """A message on its way through the chain, with the caller's identity."""

    message: T

    # Set by the transport once the bearer token has been authenticated
    auth: AuthInfo | None = None

    method: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if self.method is None:
            object.__setattr__(self, "method", getattr(self.message, "method", None))

    @property
    def client_id(self) -> str | None:
        return self.auth.client_id if self.auth else None

    def copy(self, **kwargs: Any) -> MiddlewareContext[T]:
        return replace(self, **kwargs)


def apply_middleware(
    middleware: Sequence[MCPMiddleware], call_next: CallNext[T, R]
) -> CallNext[T, R]:
    """Wrap a handler in a middleware chain. The first middleware runs first."""
    chain = call_next
    for mw in reversed(middleware):
        chain = partial(mw, call_next=chain)
    return chain


class MCPMiddleware:
    """Base class for MCP middleware. Override the hooks you need."""

    # Request type -> name of the hook that handles it
    request_hooks: dict[type[mt.Request[Any, Any]], str] = {
        mt.CallToolRequest: "on_call_tool",
        mt.ReadResourceRequest: "on_read_resource",
        mt.GetPromptRequest: "on_get_prompt",
    }

    async def __call__(
        self,
        context: MiddlewareContext[T],
        call_next: CallNext[T, Any],
    ) -> Any:
        handler: CallNext[Any, Any] = call_next
        message = context.message

        if isinstance(message, mt.Request):
            hook = self.request_hooks.get(type(message))
            if hook is not None:
                handler = partial(getattr(self, hook), call_next=handler)
            handler = partial(self.on_request, call_next=handler)

        handler = partial(self.on_message, call_next=handler)
        return await handler(context)

    async def on_message(
        self,
        context: MiddlewareContext[Any],
        call_next: CallNext[Any, Any],
    ) -> Any:
        return await call_next(context)

    async def on_request(
        self,
        context: MiddlewareContext[mt.Request[Any, Any]],
        call_next: CallNext[mt.Request[Any, Any], Any],
    ) -> Any:
        return await call_next(context)

    async def on_call_tool(
        self,
        context: MiddlewareContext[mt.CallToolRequest],
        call_next: CallNext[mt.CallToolRequest, mt.CallToolResult],
    ) -> mt.CallToolResult:
        return await call_next(context)

    async def on_read_resource(
        self,
        context: MiddlewareContext[mt.ReadResourceRequest],
        call_next: CallNext[mt.ReadResourceRequest, mt.ReadResourceResult],
    ) -> mt.ReadResourceResult:
        return await call_next(context)

    async def on_get_prompt(
        self,
        context: MiddlewareContext[mt.GetPromptRequest],
        call_next: CallNext[mt.GetPromptRequest, mt.GetPromptResult],
    ) -> mt.GetPromptResult:
        return await call_next(context)
