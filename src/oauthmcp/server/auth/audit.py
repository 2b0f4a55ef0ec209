"""Audit trail for authorization and token lifecycle events.

Every event is written as one JSON object per line, either to a dedicated file
or through the `oauthmcp.audit` logger. Callers are responsible for passing
only redacted token values in the event details.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Final, Literal

from pydantic import BaseModel, Field

import oauthmcp
from oauthmcp.settings import Settings
from oauthmcp.utilities.logging import get_logger

AuditResult = Literal["success", "failure", "warning"]


class AuditEventType:
    CLIENT_REGISTERED: Final = "oauth.client.registered"
    AUTHORIZATION_REQUESTED: Final = "oauth.authorization.requested"
    AUTHORIZATION_GRANTED: Final = "oauth.authorization.granted"
    AUTHORIZATION_DENIED: Final = "oauth.authorization.denied"
    TOKEN_ISSUED: Final = "oauth.token.issued"
    TOKEN_REFRESHED: Final = "oauth.token.refreshed"
    TOKEN_REVOKED: Final = "oauth.token.revoked"
    TOKEN_REUSE_DETECTED: Final = "oauth.token.reuse_detected"
    TOKEN_VALIDATION_SUCCESS: Final = "oauth.token.validation.success"
    TOKEN_VALIDATION_FAILED: Final = "oauth.token.validation.failed"
    TOKEN_INTROSPECTED: Final = "oauth.token.introspected"
    ACCESS_GRANTED: Final = "authorization.granted"
    ACCESS_DENIED: Final = "authorization.denied"


class AuditEvent(BaseModel):
    timestamp: float = Field(default_factory=time.time)
    event_type: str
    result: AuditResult = "success"
    client_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class AuditLogger:
    """Append-only sink for `AuditEvent`s."""

    def __init__(
        self,
        *,
        enabled: bool = True,
        log_path: Path | str | None = None,
        events: Iterable[str] | None = None,
    ):
        """
        Args:
            enabled: If False, nothing is written.
            log_path: File to append JSON lines to. If None, events go to the
                `oauthmcp.audit` logger.
            events: If provided, only these event types are written.
        """
        self.enabled = enabled
        self.events = set(events) if events is not None else None
        self._handler: logging.Handler | None = None

        if log_path is None:
            self._logger = get_logger("audit")
        else:
            self._handler = logging.FileHandler(Path(log_path), encoding="utf-8")
            self._handler.setFormatter(logging.Formatter("%(message)s"))
            # Unregistered logger, so each file sink keeps its own handler
            self._logger = logging.Logger(f"oauthmcp.audit.{Path(log_path).name}")
            self._logger.setLevel(logging.INFO)
            self._logger.addHandler(self._handler)
            self._logger.propagate = False

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> AuditLogger:
        settings = settings or oauthmcp.settings
        return cls(
            enabled=settings.audit_enabled,
            log_path=settings.audit_log_path,
            events=settings.audit_events,
        )

    def is_enabled_for(self, event_type: str) -> bool:
        if not self.enabled:
            return False
        return self.events is None or event_type in self.events

    def log(
        self,
        event_type: str,
        *,
        result: AuditResult = "success",
        client_id: str | None = None,
        **details: Any,
    ) -> AuditEvent | None:
        """Record an event. Returns the event, or None if it was filtered out."""
        if not self.is_enabled_for(event_type):
            return None

        event = AuditEvent(
            event_type=event_type,
            result=result,
            client_id=client_id,
            details={k: v for k, v in details.items() if v is not None},
        )
        self._logger.info(event.model_dump_json())
        return event

    def close(self) -> None:
        if self._handler is not None:
            self._logger.removeHandler(self._handler)
            self._handler.close()
            self._handler = None
