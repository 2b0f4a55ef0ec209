"""Storage abstraction for OAuth state.

A storage backend exclusively owns the persisted representation of clients,
authorization codes, access tokens and refresh tokens. Backends are selected
at construction time and only need to satisfy the `OAuthStorage` protocol.

Every backend must make expired entities indistinguishable from missing ones:
`get_*` returns None once `expires_at` has passed, whether expiry is enforced
by a native TTL or by a timestamp comparison at read time.
"""

from __future__ import annotations

import time
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field

from oauthmcp.server.auth.models import (
    AccessToken,
    AuthorizationCode,
    OAuthClient,
    RefreshToken,
)


class ComponentHealth(BaseModel):
    healthy: bool
    message: str | None = None


class HealthCheckResult(BaseModel):
    """Structured health report. Producing one never raises."""

    healthy: bool
    message: str
    response_time_ms: float
    timestamp: float = Field(default_factory=time.time)
    components: dict[str, ComponentHealth] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)


class StorageStats(BaseModel):
    client_count: int
    code_count: int
    token_count: int
    refresh_token_count: int


@runtime_checkable
class OAuthStorage(Protocol):
    """Capability set every OAuth storage backend provides."""

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def health_check(self) -> HealthCheckResult: ...

    # Clients
    async def get_client(self, client_id: str) -> OAuthClient | None: ...

    async def save_client(self, client: OAuthClient) -> bool:
        """Store a new client. Returns False if the client_id is taken."""
        ...

    async def delete_client(self, client_id: str) -> bool: ...

    async def list_clients(self) -> list[str]: ...

    # Authorization codes
    async def get_code(self, code: str) -> AuthorizationCode | None: ...

    async def save_code(self, code: AuthorizationCode) -> None: ...

    async def consume_code(self, code: str) -> AuthorizationCode | None:
        """Atomically flip `used` from False to True.

        Returns the consumed code, or None if the code is missing, expired or
        was already consumed. Of any number of concurrent callers at most one
        receives the code.
        """
        ...

    # Access tokens
    async def get_token(self, token: str) -> AccessToken | None: ...

    async def save_token(self, token: AccessToken) -> None: ...

    async def revoke_token(self, token: str) -> bool: ...

    # Refresh tokens
    async def get_refresh_token(self, token: str) -> RefreshToken | None: ...

    async def save_refresh_token(self, token: RefreshToken) -> None: ...

    async def consume_refresh_token(self, token: str) -> RefreshToken | None:
        """Atomically mark a refresh token as rotated; same contract as consume_code."""
        ...

    async def revoke_refresh_token(self, token: str) -> bool: ...

    async def revoke_family(self, family_id: str) -> int:
        """Remove every access and refresh token of a grant family.

        Returns the number of tokens removed.
        """
        ...

    async def revoke_tokens_by_client(self, client_id: str) -> int:
        """Remove every access and refresh token issued to a client.

        Returns the number of tokens removed.
        """
        ...

    async def get_stats(self) -> StorageStats: ...
