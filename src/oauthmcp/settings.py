from __future__ import annotations as _annotations

import inspect
from pathlib import Path
from typing import Annotated, Literal

from pydantic import BaseModel, Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing_extensions import Self

LOG_LEVEL = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

StorageBackend = Literal["memory", "redis"]


class RedisSettings(BaseModel):
    """Connection and resilience settings for the Redis storage backend."""

    host: str = "localhost"
    port: int = 6379
    username: str | None = None
    password: SecretStr | None = None
    db: int = 0
    key_prefix: Annotated[
        str,
        Field(
            description=inspect.cleandoc(
                """
                Prefix applied to every key written by the backend, so several
                OAuth deployments can share one Redis database.
                """
            ),
        ),
    ] = "oauth:"
    connection_timeout: float = 5.0
    retry_attempts: Annotated[
        int,
        Field(
            ge=0,
            description="Reconnect attempts made after a connection loss before giving up.",
        ),
    ] = 5
    retry_delay: float = 1.0
    max_retry_delay: float = 10.0
    enable_offline_queue: Annotated[
        bool,
        Field(
            description=inspect.cleandoc(
                """
                If True, calls made while the connection is down wait for the
                in-flight reconnection instead of failing. If False (default),
                they fail fast with StorageUnavailableError while a background
                watchdog reconnects.
                """
            ),
        ),
    ] = False
    latency_threshold_ms: float = 100.0


class Settings(BaseSettings):
    """oauthmcp settings."""

    model_config = SettingsConfigDict(
        env_prefix="OAUTHMCP_",
        env_file=".env",
        extra="ignore",
        env_nested_delimiter="__",
        nested_model_default_partial_update=True,
    )

    log_level: LOG_LEVEL = "INFO"
    enable_rich_tracebacks: Annotated[
        bool,
        Field(
            description=inspect.cleandoc(
                """
                If True, will use rich tracebacks for logging.
                """
            )
        ),
    ] = True

    @model_validator(mode="after")
    def setup_logging(self) -> Self:
        """Finalize the settings."""
        from oauthmcp.utilities.logging import configure_logging

        configure_logging(
            self.log_level, enable_rich_tracebacks=self.enable_rich_tracebacks
        )

        return self

    # Authorization server
    issuer_url: str = "http://localhost:8000"
    service_documentation_url: str | None = None

    access_token_expiry: Annotated[
        int,
        Field(gt=0, description="Lifetime of access tokens, in seconds."),
    ] = 60 * 60
    refresh_token_expiry: Annotated[
        int,
        Field(gt=0, description="Lifetime of refresh tokens, in seconds."),
    ] = 60 * 60 * 24
    auth_code_expiry: Annotated[
        int,
        Field(gt=0, description="Lifetime of authorization codes, in seconds."),
    ] = 10 * 60

    rotate_refresh_tokens: Annotated[
        bool,
        Field(
            description=inspect.cleandoc(
                """
                If True (default), every refresh invalidates the presented
                refresh token and issues a replacement.
                """
            ),
        ),
    ] = True
    revoke_token_family_on_reuse: Annotated[
        bool,
        Field(
            description=inspect.cleandoc(
                """
                If True (default), presenting a refresh token that was already
                rotated revokes every token descended from the same
                authorization grant. If False, only the request is rejected.
                """
            ),
        ),
    ] = True

    client_registration_enabled: bool = True

    # Storage
    storage_backend: StorageBackend = "memory"
    memory_cleanup_interval: Annotated[
        float,
        Field(
            gt=0,
            description=inspect.cleandoc(
                """
                Seconds between sweeps that evict expired codes and tokens
                from the in-memory backend.
                """
            ),
        ),
    ] = 60
    redis: RedisSettings = RedisSettings()

    # Audit
    audit_enabled: bool = True
    audit_log_path: Annotated[
        Path | None,
        Field(
            description=inspect.cleandoc(
                """
                File that receives one JSON line per authorization lifecycle
                event. If None, events are emitted through the
                `oauthmcp.audit` logger.
                """
            ),
        ),
    ] = None
    audit_events: Annotated[
        set[str] | None,
        Field(
            default=None,
            description=inspect.cleandoc(
                """
                If provided, only audit events whose type is in this set are
                written.
                """
            ),
        ),
    ] = None
