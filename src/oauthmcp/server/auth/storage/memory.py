"""In-memory OAuth storage for single-process deployments.

State lives in process-local dicts and is lost on restart. Expiry is enforced
by comparing `expires_at` on every read; expired entries are evicted lazily
on access, and in bulk by `purge_expired()`, which a background task runs
every `cleanup_interval` seconds between `connect()` and `disconnect()`.
"""

from __future__ import annotations

import asyncio
import contextlib
import threading
import time
from typing import TypeVar

import oauthmcp
from oauthmcp.server.auth.models import (
    AccessToken,
    AuthorizationCode,
    OAuthClient,
    RefreshToken,
    is_expired,
)
from oauthmcp.server.auth.storage.base import (
    ComponentHealth,
    HealthCheckResult,
    StorageStats,
)
from oauthmcp.utilities.logging import get_logger

logger = get_logger(__name__)

ExpiringT = TypeVar("ExpiringT", AuthorizationCode, AccessToken, RefreshToken)


class InMemoryStorage:
    """Dict-backed implementation of the `OAuthStorage` protocol.

    Records are copied on the way in and out, so callers never share mutable
    state with the store.
    """

    def __init__(self, cleanup_interval: float | None = None) -> None:
        self.cleanup_interval = (
            cleanup_interval or oauthmcp.settings.memory_cleanup_interval
        )
        self._clients: dict[str, OAuthClient] = {}
        self._codes: dict[str, AuthorizationCode] = {}
        self._tokens: dict[str, AccessToken] = {}
        self._refresh_tokens: dict[str, RefreshToken] = {}
        self._families: dict[str, set[str]] = {}
        # Guards the read-modify-write sequences (consume, family revocation)
        self._lock = threading.Lock()
        self._cleanup_task: asyncio.Task[None] | None = None

    async def connect(self) -> None:
        """Start the expiry sweep. Idempotent."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.debug(
            "In-memory OAuth storage ready (cleanup every %ss)", self.cleanup_interval
        )

    async def disconnect(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            await self.purge_expired()

    async def health_check(self) -> HealthCheckResult:
        start = time.perf_counter()
        stats = await self.get_stats()
        return HealthCheckResult(
            healthy=True,
            message="In-memory storage is healthy",
            response_time_ms=(time.perf_counter() - start) * 1000,
            components={
                "storage": ComponentHealth(
                    healthy=True,
                    message=f"{stats.token_count} tokens, {stats.code_count} codes",
                )
            },
        )

    def _get_live(self, store: dict[str, ExpiringT], key: str) -> ExpiringT | None:
        record = store.get(key)
        if record is None:
            return None
        if is_expired(record):
            store.pop(key, None)
            return None
        return record

    # -------------------------------------------------------------------------
    # Clients
    # -------------------------------------------------------------------------

    async def get_client(self, client_id: str) -> OAuthClient | None:
        client = self._clients.get(client_id)
        return client.model_copy(deep=True) if client else None

    async def save_client(self, client: OAuthClient) -> bool:
        with self._lock:
            if client.client_id in self._clients:
                return False
            self._clients[client.client_id] = client.model_copy(deep=True)
        return True

    async def delete_client(self, client_id: str) -> bool:
        return self._clients.pop(client_id, None) is not None

    async def list_clients(self) -> list[str]:
        return list(self._clients)

    # -------------------------------------------------------------------------
    # Authorization codes
    # -------------------------------------------------------------------------

    async def get_code(self, code: str) -> AuthorizationCode | None:
        record = self._get_live(self._codes, code)
        return record.model_copy(deep=True) if record else None

    async def save_code(self, code: AuthorizationCode) -> None:
        self._codes[code.code] = code.model_copy(deep=True)

    async def consume_code(self, code: str) -> AuthorizationCode | None:
        with self._lock:
            record = self._get_live(self._codes, code)
            if record is None or record.used:
                return None
            record.used = True
            return record.model_copy(deep=True)

    # -------------------------------------------------------------------------
    # Access tokens
    # -------------------------------------------------------------------------

    async def get_token(self, token: str) -> AccessToken | None:
        record = self._get_live(self._tokens, token)
        return record.model_copy(deep=True) if record else None

    async def save_token(self, token: AccessToken) -> None:
        with self._lock:
            self._tokens[token.token] = token.model_copy(deep=True)
            if token.family_id:
                self._families.setdefault(token.family_id, set()).add(
                    f"token:{token.token}"
                )

    async def revoke_token(self, token: str) -> bool:
        return self._tokens.pop(token, None) is not None

    # -------------------------------------------------------------------------
    # Refresh tokens
    # -------------------------------------------------------------------------

    async def get_refresh_token(self, token: str) -> RefreshToken | None:
        record = self._get_live(self._refresh_tokens, token)
        return record.model_copy(deep=True) if record else None

    async def save_refresh_token(self, token: RefreshToken) -> None:
        with self._lock:
            self._refresh_tokens[token.token] = token.model_copy(deep=True)
            self._families.setdefault(token.family_id, set()).add(
                f"refresh_token:{token.token}"
            )

    async def consume_refresh_token(self, token: str) -> RefreshToken | None:
        with self._lock:
            record = self._get_live(self._refresh_tokens, token)
            if record is None or record.used:
                return None
            record.used = True
            return record.model_copy(deep=True)

    async def revoke_refresh_token(self, token: str) -> bool:
        return self._refresh_tokens.pop(token, None) is not None

    async def revoke_family(self, family_id: str) -> int:
        removed = 0
        with self._lock:
            for member in self._families.pop(family_id, set()):
                kind, _, value = member.partition(":")
                store = self._tokens if kind == "token" else self._refresh_tokens
                if store.pop(value, None) is not None:
                    removed += 1
        return removed

    async def revoke_tokens_by_client(self, client_id: str) -> int:
        removed = 0
        with self._lock:
            for store in (self._tokens, self._refresh_tokens):
                owned = [
                    key for key, record in store.items() if record.client_id == client_id
                ]
                for key in owned:
                    del store[key]
                removed += len(owned)
        return removed

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    async def purge_expired(self) -> int:
        """Evict every expired code and token. Returns the number evicted."""
        removed = 0
        with self._lock:
            for store in (self._codes, self._tokens, self._refresh_tokens):
                expired = [key for key, record in store.items() if is_expired(record)]
                for key in expired:
                    del store[key]
                removed += len(expired)
            live = {f"token:{t}" for t in self._tokens} | {
                f"refresh_token:{t}" for t in self._refresh_tokens
            }
            for family_id in list(self._families):
                self._families[family_id] &= live
                if not self._families[family_id]:
                    del self._families[family_id]
        if removed:
            logger.debug("Purged %d expired OAuth records", removed)
        return removed

    async def get_stats(self) -> StorageStats:
        await self.purge_expired()
        return StorageStats(
            client_count=len(self._clients),
            code_count=len(self._codes),
            token_count=len(self._tokens),
            refresh_token_count=len(self._refresh_tokens),
        )
