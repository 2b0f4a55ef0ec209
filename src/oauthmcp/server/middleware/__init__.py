from .middleware import (
    MCPMiddleware,
    CallNext,
    MiddlewareContext,
    apply_middleware,
)
from .authorization import ScopeAuthorizationMiddleware

__all__ = [
    "MCPMiddleware",
    "CallNext",
    "MiddlewareContext",
    "apply_middleware",
    "ScopeAuthorizationMiddleware",
]
