"""
Audit log for authorization decisions.
Created: 2026-10-03

Append-only JSONL: one event per guard decision, token issuance, revocation
and security event (refresh-token reuse, passthrough attempt). Bearer values
never reach this log.
"""

import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

logger = logging.getLogger("audit")


class AuditSeverity(str, Enum):
    INFO = "info"  # Normal decision (token issued, request allowed)
    WARNING = "warning"  # Rejected request
    ALERT = "alert"  # Security event (token theft signal, passthrough)


@dataclass
class AuditEvent:
    """A single audit log entry."""

    id: str
    timestamp: str
    severity: AuditSeverity
    user_id: str | None
    client_id: str | None
    action: str  # e.g. "tool_call", "token_issued", "refresh_reuse"
    target: str  # e.g. resource id or tool name
    outcome: str  # "allow", "reject", "success", "revoked"
    context: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        severity: AuditSeverity,
        action: str,
        target: str,
        outcome: str,
        user_id: str | None = None,
        client_id: str | None = None,
        **context: Any,
    ) -> "AuditEvent":
        return cls(
            id=str(uuid.uuid4()),
            timestamp=datetime.now(tz=UTC).isoformat(),
            severity=severity,
            user_id=user_id,
            client_id=client_id,
            action=action,
            target=target,
            outcome=outcome,
            context=context,
        )


class AuditLogger:
    """
    Append-only audit logger.
    Writes to ~/.mcpgate/audit.jsonl unless a path is given.
    """

    def __init__(self, log_path: Path | None = None):
        if log_path is None:
            from mcpgate.config import get_config_dir

            log_path = get_config_dir() / "audit.jsonl"
        self.log_path = log_path
        self._callbacks: list[Callable[[dict], None]] = []

    def on_log(self, callback: Callable[[dict], None]) -> None:
        """Register a callback invoked with each event dict after it is written."""
        self._callbacks.append(callback)

    def log(self, event: AuditEvent) -> None:
        event_dict = asdict(event)
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(event_dict) + "\n")
        except OSError as e:
            # The request still proceeds; the decision is visible in the system log.
            logger.critical("FAILED TO WRITE AUDIT LOG: %s | Event: %s", e, event_dict)
        for cb in self._callbacks:
            try:
                cb(event_dict)
            except Exception:
                logger.exception("Audit callback failed")

    def log_decision(
        self,
        action: str,
        target: str,
        outcome: str,
        user_id: str | None = None,
        client_id: str | None = None,
        severity: AuditSeverity | None = None,
        **context: Any,
    ) -> str:
        """Record one allow/reject decision. Returns the event id."""
        if severity is None:
            severity = AuditSeverity.INFO if outcome in ("allow", "success") else AuditSeverity.WARNING
        event = AuditEvent.create(
            severity=severity,
            action=action,
            target=target,
            outcome=outcome,
            user_id=user_id,
            client_id=client_id,
            **context,
        )
        self.log(event)
        return event.id


# Singleton
_audit_logger: AuditLogger | None = None


def get_audit_logger() -> AuditLogger:
    global _audit_logger
    if _audit_logger is None:
        from mcpgate.config import get_settings

        _audit_logger = AuditLogger(get_settings().audit_log_path)
    return _audit_logger


def reset_audit_logger() -> None:
    """Reset singleton (for testing)."""
    global _audit_logger
    _audit_logger = None
