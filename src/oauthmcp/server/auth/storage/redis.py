"""Redis-backed OAuth storage.

Every call is a network round trip that can fail transiently. The backend
owns the connection lifecycle:

- `connect()` must be awaited before use, otherwise calls raise
  `NotConnectedError`.
- A dropped connection marks the backend unavailable and starts a single
  reconnection loop with exponential backoff. Concurrent callers share that
  loop instead of reconnecting on their own.
- With `enable_offline_queue` the failing call (and any call arriving during
  the outage) waits for the reconnection and is retried; once the retry
  budget is exhausted it fails with `StorageUnavailableError`. Without it,
  calls fail fast while a background watchdog reconnects.

Token families and each client's tokens are indexed in Redis sets, so both
can be revoked without scanning. Expiry uses native key TTLs; reads also compare `expires_at`, so an expired
record is reported as missing even inside the final TTL second.
"""

from __future__ import annotations

import asyncio
import contextlib
import math
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import BaseModel, ValidationError
from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import NoBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import DataError, RedisError, ResponseError, WatchError
from redis.exceptions import TimeoutError as RedisTimeoutError

import oauthmcp
from oauthmcp.exceptions import (
    NotConnectedError,
    StorageFatalError,
    StorageTransientError,
    StorageUnavailableError,
)
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
from oauthmcp.settings import RedisSettings
from oauthmcp.utilities.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
UsedRecordT = TypeVar("UsedRecordT", AuthorizationCode, RefreshToken)
ExpiringT = TypeVar("ExpiringT", AuthorizationCode, AccessToken, RefreshToken)

_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    RedisConnectionError,
    RedisTimeoutError,
    TimeoutError,
)


def _ttl_seconds(expires_at: float) -> int:
    return max(1, math.ceil(expires_at - time.time()))


class RedisStorage:
    """Implementation of the `OAuthStorage` protocol on top of redis.asyncio."""

    def __init__(
        self,
        settings: RedisSettings | None = None,
        *,
        connection_factory: Callable[[], Redis] | None = None,
    ):
        """Initialize the storage. No connection is made until `connect()`.

        Args:
            settings: Connection and retry settings. Defaults to
                `oauthmcp.settings.redis`, which reads `OAUTHMCP_REDIS__*`
                environment variables.
            connection_factory: Callable returning a new, unconnected client.
                Used for every (re)connection; defaults to a client built from
                `settings`.
        """
        self.settings = settings or oauthmcp.settings.redis
        self._connection_factory = connection_factory or self._create_client
        self._client: Redis | None = None
        self._available = False
        self._connect_lock = asyncio.Lock()
        self._reconnect_task: asyncio.Task[Redis] | None = None

    @property
    def address(self) -> str:
        return f"{self.settings.host}:{self.settings.port}"

    @property
    def is_available(self) -> bool:
        return self._client is not None and self._available

    def key(self, kind: str, identifier: str) -> str:
        return f"{self.settings.key_prefix}{kind}:{identifier}"

    # -------------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------------

    def _create_client(self) -> Redis:
        password = (
            self.settings.password.get_secret_value()
            if self.settings.password
            else None
        )
        return Redis(
            host=self.settings.host,
            port=self.settings.port,
            db=self.settings.db,
            username=self.settings.username,
            password=password,
            socket_connect_timeout=self.settings.connection_timeout,
            socket_timeout=self.settings.connection_timeout,
            decode_responses=True,
            # Retries are handled by this backend, not by the client
            retry=Retry(NoBackoff(), 0),
        )

    async def _open(self) -> Redis:
        client = self._connection_factory()
        try:
            await asyncio.wait_for(
                client.ping(), timeout=self.settings.connection_timeout
            )
        except BaseException:
            with contextlib.suppress(RedisError, OSError):
                await client.aclose()
            raise
        return client

    async def connect(self) -> None:
        """Establish the connection. Idempotent."""
        async with self._connect_lock:
            if self.is_available:
                return
            logger.info("Connecting to Redis at %s", self.address)
            try:
                client = await self._open()
            except _TRANSIENT_ERRORS as e:
                raise StorageUnavailableError(
                    f"Failed to connect to Redis at {self.address}: {e}"
                ) from e
            self._client = client
            self._available = True
            logger.info("Connected to Redis at %s", self.address)

    async def disconnect(self) -> None:
        """Close the connection and stop any reconnection. Idempotent."""
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, StorageUnavailableError):
                await task

        client, self._client = self._client, None
        self._available = False
        if client is None:
            return
        try:
            await client.aclose()
        except (RedisError, OSError) as e:
            logger.warning("Graceful Redis disconnect failed: %s", e)
        logger.info("Disconnected from Redis at %s", self.address)

    def _calculate_delay(self, attempt: int) -> float:
        """Backoff before reconnect attempt `attempt` (0-based)."""
        delay = self.settings.retry_delay * (2**attempt)
        return min(delay, self.settings.max_retry_delay)

    def _mark_unavailable(self, operation: str, error: BaseException) -> None:
        if self._available:
            logger.warning(
                "Lost Redis connection during %s: %s", operation, error or type(error)
            )
        self._available = False

    async def _reconnect_loop(self) -> Redis:
        attempts = self.settings.retry_attempts
        last_error: BaseException | None = None
        for attempt in range(attempts):
            delay = self._calculate_delay(attempt)
            logger.warning(
                "Redis at %s unavailable. Reconnect attempt %d/%d. Retrying in %.2fs",
                self.address,
                attempt + 1,
                attempts,
                delay,
            )
            await asyncio.sleep(delay)
            try:
                client = await self._open()
            except _TRANSIENT_ERRORS as e:
                last_error = e
                continue

            previous, self._client = self._client, client
            self._available = True
            if previous is not None:
                with contextlib.suppress(RedisError, OSError):
                    await previous.aclose()
            logger.info("Reconnected to Redis at %s", self.address)
            return client

        logger.error(
            "Giving up on Redis at %s after %d reconnect attempts: %s",
            self.address,
            attempts,
            last_error,
        )
        raise StorageUnavailableError(
            f"Redis at {self.address} unavailable after {attempts} reconnect attempts"
        ) from last_error

    def _ensure_reconnecting(self) -> asyncio.Task[Redis]:
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())
            self._reconnect_task.add_done_callback(self._on_reconnect_done)
        return self._reconnect_task

    @staticmethod
    def _on_reconnect_done(task: asyncio.Task[Redis]) -> None:
        # Retrieve the outcome so watchdog failures are not reported as unhandled
        if not task.cancelled():
            task.exception()

    async def _reconnect(self) -> Redis:
        """Join the in-flight reconnection, starting one if needed."""
        return await asyncio.shield(self._ensure_reconnecting())

    async def _acquire(self) -> Redis:
        if self._client is not None and self._available:
            return self._client
        if not self.settings.enable_offline_queue:
            self._ensure_reconnecting()
            raise StorageUnavailableError(
                f"Redis at {self.address} is reconnecting and the offline queue is disabled"
            )
        return await self._reconnect()

    async def _execute(
        self, operation: str, fn: Callable[[Redis], Awaitable[T]]
    ) -> T:
        if self._client is None:
            raise NotConnectedError(
                "Redis storage is not connected. Call connect() first."
            )

        failures = 0
        while True:
            client = await self._acquire()
            try:
                return await self._attempt(operation, client, fn)
            except StorageTransientError as e:
                failures += 1
                self._mark_unavailable(operation, e)
                if not self.settings.enable_offline_queue:
                    self._ensure_reconnecting()
                    raise StorageUnavailableError(
                        f"Redis unavailable during {operation}"
                    ) from e
                if failures > self.settings.retry_attempts:
                    raise StorageUnavailableError(
                        f"Redis unavailable during {operation} after {failures} attempts"
                    ) from e

    async def _attempt(
        self, operation: str, client: Redis, fn: Callable[[Redis], Awaitable[T]]
    ) -> T:
        try:
            return await fn(client)
        except _TRANSIENT_ERRORS as e:
            raise StorageTransientError(f"{type(e).__name__}: {e}") from e
        except ValidationError as e:
            raise StorageFatalError(
                f"Malformed record read during {operation}: {e}"
            ) from e
        except (ResponseError, DataError) as e:
            raise StorageFatalError(f"Redis rejected {operation}: {e}") from e

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    async def health_check(self) -> HealthCheckResult:
        start = time.perf_counter()

        def elapsed_ms() -> float:
            return (time.perf_counter() - start) * 1000

        client = self._client
        if client is None:
            return HealthCheckResult(
                healthy=False,
                message="Redis client not connected",
                response_time_ms=elapsed_ms(),
                components={
                    "connection": ComponentHealth(healthy=False, message="Not connected")
                },
                errors=["Redis client not connected"],
            )

        try:
            ping_start = time.perf_counter()
            await asyncio.wait_for(
                client.ping(), timeout=self.settings.connection_timeout
            )
            ping_ms = (time.perf_counter() - ping_start) * 1000

            test_key = self.key("health", "check")
            test_value = repr(time.time())
            await client.set(test_key, test_value, ex=10)
            read_write_ok = await client.get(test_key) == test_value
            stats = await self._collect_stats(client)
        except (*_TRANSIENT_ERRORS, RedisError, OSError) as e:
            self._mark_unavailable("health_check", e)
            logger.warning("Redis health check failed: %s", e)
            return HealthCheckResult(
                healthy=False,
                message="Health check failed",
                response_time_ms=elapsed_ms(),
                components={
                    "connection": ComponentHealth(healthy=False, message=str(e))
                },
                errors=[str(e) or type(e).__name__],
            )

        if not self._available:
            logger.info("Redis connection at %s recovered", self.address)
            self._available = True

        total_ms = elapsed_ms()
        degraded = total_ms >= self.settings.latency_threshold_ms
        if not read_write_ok:
            message = "Redis storage read/write check failed"
        elif degraded:
            message = "Redis storage is degraded (high latency)"
        else:
            message = "Redis storage is healthy"

        return HealthCheckResult(
            healthy=read_write_ok,
            message=message,
            response_time_ms=total_ms,
            components={
                "connection": ComponentHealth(
                    healthy=True, message=f"Connected to {self.address}"
                ),
                "ping": ComponentHealth(
                    healthy=ping_ms < self.settings.latency_threshold_ms,
                    message=f"{ping_ms:.1f}ms",
                ),
                "read_write": ComponentHealth(
                    healthy=read_write_ok,
                    message="Read/write successful"
                    if read_write_ok
                    else "Read/write failed",
                ),
                "storage": ComponentHealth(
                    healthy=True,
                    message=f"{stats.token_count} tokens, {stats.code_count} codes",
                ),
            },
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _get_live(
        self, client: Redis, key: str, model: type[ExpiringT]
    ) -> ExpiringT | None:
        raw = await client.get(key)
        if raw is None:
            return None
        record = model.model_validate_json(raw)
        return None if is_expired(record) else record

    async def _mark_used(
        self, client: Redis, key: str, model: type[UsedRecordT]
    ) -> UsedRecordT | None:
        """Optimistic compare-and-set of the `used` flag."""
        async with client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        return None
                    record = model.model_validate_json(raw)
                    if record.used or is_expired(record):
                        return None
                    record.used = True
                    pipe.multi()
                    pipe.set(key, record.model_dump_json(), keepttl=True)
                    await pipe.execute()
                    return record
                except WatchError:
                    continue

    async def _add_to_index(
        self, client: Redis, index_key: str, member_key: str, expires_at: float
    ) -> None:
        """Add a token key to a set that lives as long as its longest member."""
        ttl = _ttl_seconds(expires_at)
        await client.sadd(index_key, member_key)
        if await client.ttl(index_key) < ttl:
            await client.expire(index_key, ttl)

    async def _index_token(
        self,
        client: Redis,
        key: str,
        token: AccessToken | RefreshToken,
    ) -> None:
        if token.family_id:
            await self._add_to_index(
                client, self.key("family", token.family_id), key, token.expires_at
            )
        await self._add_to_index(
            client, self.key("client_tokens", token.client_id), key, token.expires_at
        )

    async def _delete_indexed(self, client: Redis, index_key: str) -> int:
        """Delete every member of an index set, and the set. Returns the count."""
        members = await client.smembers(index_key)
        async with client.pipeline(transaction=True) as pipe:
            if members:
                pipe.delete(*members)
            pipe.delete(index_key)
            results = await pipe.execute()
        return int(results[0]) if members else 0

    async def _save_expiring(self, operation: str, key: str, record: BaseModel, expires_at: float) -> None:
        async def save(client: Redis) -> None:
            await client.set(key, record.model_dump_json(), ex=_ttl_seconds(expires_at))

        await self._execute(operation, save)

    async def _delete(self, operation: str, key: str) -> bool:
        async def delete(client: Redis) -> bool:
            return await client.delete(key) > 0

        return await self._execute(operation, delete)

    async def _count(self, client: Redis, kind: str) -> int:
        count = 0
        async for _ in client.scan_iter(match=self.key(kind, "*")):
            count += 1
        return count

    async def _collect_stats(self, client: Redis) -> StorageStats:
        return StorageStats(
            client_count=await self._count(client, "client"),
            code_count=await self._count(client, "code"),
            token_count=await self._count(client, "token"),
            refresh_token_count=await self._count(client, "refresh_token"),
        )

    # -------------------------------------------------------------------------
    # Clients
    # -------------------------------------------------------------------------

    async def get_client(self, client_id: str) -> OAuthClient | None:
        async def get(client: Redis) -> OAuthClient | None:
            raw = await client.get(self.key("client", client_id))
            return OAuthClient.model_validate_json(raw) if raw else None

        return await self._execute("get_client", get)

    async def save_client(self, oauth_client: OAuthClient) -> bool:
        async def save(client: Redis) -> bool:
            created = await client.set(
                self.key("client", oauth_client.client_id),
                oauth_client.model_dump_json(),
                nx=True,
            )
            return bool(created)

        return await self._execute("save_client", save)

    async def delete_client(self, client_id: str) -> bool:
        return await self._delete("delete_client", self.key("client", client_id))

    async def list_clients(self) -> list[str]:
        prefix = self.key("client", "")

        async def list_ids(client: Redis) -> list[str]:
            return [
                key[len(prefix) :]
                async for key in client.scan_iter(match=self.key("client", "*"))
            ]

        return await self._execute("list_clients", list_ids)

    # -------------------------------------------------------------------------
    # Authorization codes
    # -------------------------------------------------------------------------

    async def get_code(self, code: str) -> AuthorizationCode | None:
        key = self.key("code", code)
        return await self._execute(
            "get_code", lambda client: self._get_live(client, key, AuthorizationCode)
        )

    async def save_code(self, code: AuthorizationCode) -> None:
        await self._save_expiring(
            "save_code", self.key("code", code.code), code, code.expires_at
        )

    async def consume_code(self, code: str) -> AuthorizationCode | None:
        key = self.key("code", code)
        return await self._execute(
            "consume_code", lambda client: self._mark_used(client, key, AuthorizationCode)
        )

    # -------------------------------------------------------------------------
    # Access tokens
    # -------------------------------------------------------------------------

    async def get_token(self, token: str) -> AccessToken | None:
        key = self.key("token", token)
        return await self._execute(
            "get_token", lambda client: self._get_live(client, key, AccessToken)
        )

    async def save_token(self, token: AccessToken) -> None:
        key = self.key("token", token.token)

        async def save(client: Redis) -> None:
            await client.set(
                key, token.model_dump_json(), ex=_ttl_seconds(token.expires_at)
            )
            await self._index_token(client, key, token)

        await self._execute("save_token", save)

    async def revoke_token(self, token: str) -> bool:
        return await self._delete("revoke_token", self.key("token", token))

    # -------------------------------------------------------------------------
    # Refresh tokens
    # -------------------------------------------------------------------------

    async def get_refresh_token(self, token: str) -> RefreshToken | None:
        key = self.key("refresh_token", token)
        return await self._execute(
            "get_refresh_token",
            lambda client: self._get_live(client, key, RefreshToken),
        )

    async def save_refresh_token(self, token: RefreshToken) -> None:
        key = self.key("refresh_token", token.token)

        async def save(client: Redis) -> None:
            await client.set(
                key, token.model_dump_json(), ex=_ttl_seconds(token.expires_at)
            )
            await self._index_token(client, key, token)

        await self._execute("save_refresh_token", save)

    async def consume_refresh_token(self, token: str) -> RefreshToken | None:
        key = self.key("refresh_token", token)
        return await self._execute(
            "consume_refresh_token",
            lambda client: self._mark_used(client, key, RefreshToken),
        )

    async def revoke_refresh_token(self, token: str) -> bool:
        return await self._delete(
            "revoke_refresh_token", self.key("refresh_token", token)
        )

    async def revoke_family(self, family_id: str) -> int:
        family_key = self.key("family", family_id)
        return await self._execute(
            "revoke_family", lambda client: self._delete_indexed(client, family_key)
        )

    async def revoke_tokens_by_client(self, client_id: str) -> int:
        index_key = self.key("client_tokens", client_id)
        return await self._execute(
            "revoke_tokens_by_client",
            lambda client: self._delete_indexed(client, index_key),
        )

    async def get_stats(self) -> StorageStats:
        return await self._execute("get_stats", self._collect_stats)
