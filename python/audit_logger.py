"""
Vault Audit Event Logging Module

Provides structured logging for every change made to the payment vault:
- Backups taken before a card update
- Card data written by the application engine
- Billing suspensions and temporary pauses
- Delta changes and conflict resolutions
- Rollbacks

Card data is masked and all context values are sanitized before logging.
"""

import logging
import json
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any
from dataclasses import dataclass, field as dataclass_field

from log_utils import sanitize_for_logging

# Copied into every asyncio task, so concurrent batches keep their own id
_request_id: ContextVar[str] = ContextVar("vault_audit_request_id", default="")


@dataclass
class AuditEvent:
    """Structured vault audit event for logging"""
    event_type: str  # e.g., CARD_UPDATE_APPLIED, DELTA_CONFLICT, ROLLBACK
    severity: str  # INFO, WARNING, ERROR
    vault_id: str = ""
    update_id: str = ""
    source: str = ""  # Component that performed the change
    request_id: str = ""
    outcome: str = ""  # SUCCESS, FAILED, SKIPPED
    additional_context: Dict[str, Any] = dataclass_field(default_factory=dict)
    timestamp: str = dataclass_field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return {
            'timestamp': self.timestamp,
            'event_type': self.event_type,
            'severity': self.severity,
            'vault_id': self.vault_id,
            'update_id': self.update_id,
            'source': self.source,
            'request_id': self.request_id,
            'outcome': self.outcome,
            'context': self.additional_context
        }

    def to_json(self) -> str:
        """Convert to JSON string"""
        return json.dumps(self.to_dict(), ensure_ascii=False)


class AuditLogger:
    """Handles vault audit logging with structured output

    Features:
    - Separate vault_audit.log file
    - JSON-formatted events for easy parsing
    - Automatic sanitization of context values
    - Request ID correlation
    """

    def __init__(
        self,
        log_dir: str = "logs",
        log_level: int = logging.INFO,
        enable_console: bool = False,
        enable_file: bool = True
    ):
        """Initialize audit logger

        Args:
            log_dir: Directory for log files
            log_level: Minimum log level to record
            enable_console: Also output to console
            enable_file: Write to vault_audit.log file
        """
        self.log_dir = Path(log_dir)

        self.logger = logging.getLogger('vault_audit')
        self.logger.setLevel(log_level)
        self.logger.handlers.clear()

        formatter = logging.Formatter(
            '%(asctime)s - AUDIT - %(levelname)s - %(message)s'
        )

        if enable_file:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            audit_log_path = self.log_dir / "vault_audit.log"
            file_handler = logging.FileHandler(audit_log_path, encoding='utf-8')
            file_handler.setLevel(log_level)
            file_handler.setFormatter(formatter)
            self.logger.addHandler(file_handler)

        if enable_console:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(log_level)
            console_handler.setFormatter(formatter)
            self.logger.addHandler(console_handler)

    def set_request_context(self, request_id: Optional[str] = None) -> str:
        """Set correlation id for the current batch or request

        Returns:
            The request ID being used
        """
        request_id = request_id or f"REQ-{uuid.uuid4().hex[:8]}"
        _request_id.set(request_id)
        return request_id

    def clear_request_context(self) -> None:
        """Clear the current request context"""
        _request_id.set("")

    def _sanitize_context(self, context: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Sanitize all values in a context dictionary for safe logging"""
        if not context:
            return {}

        sanitized = {}
        for key, value in context.items():
            safe_key = sanitize_for_logging(str(key))[:100] if key else "unknown"

            if value is None or isinstance(value, (bool, int, float)):
                sanitized[safe_key] = value
            elif isinstance(value, dict):
                sanitized[safe_key] = self._sanitize_context(value)
            elif isinstance(value, (list, tuple)):
                sanitized[safe_key] = [
                    item if isinstance(item, (bool, int, float, type(None)))
                    else sanitize_for_logging(str(item))[:200]
                    for item in value
                ]
            else:
                sanitized[safe_key] = sanitize_for_logging(str(value))[:200]

        return sanitized

    def log_vault_event(
        self,
        event_type: str,
        vault_id: str,
        update_id: str = "",
        source: str = "",
        outcome: str = "SUCCESS",
        severity: str = "INFO",
        additional_context: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log a single vault mutation event

        Args:
            event_type: Type of change (CARD_UPDATE_APPLIED, BILLING_SUSPENDED, ...)
            vault_id: Vault record affected
            update_id: Card update or delta record responsible for the change
            source: Component that performed the change
            outcome: SUCCESS, FAILED or SKIPPED
            severity: INFO, WARNING or ERROR
            additional_context: Additional context (will be sanitized)
        """
        event = AuditEvent(
            event_type=event_type,
            severity=severity,
            vault_id=sanitize_for_logging(vault_id),
            update_id=sanitize_for_logging(update_id),
            source=source,
            request_id=_request_id.get(),
            outcome=outcome,
            additional_context=self._sanitize_context(additional_context)
        )

        if severity == "ERROR":
            self.logger.error(event.to_json())
        elif severity == "WARNING":
            self.logger.warning(event.to_json())
        else:
            self.logger.info(event.to_json())

    def log_conflict(
        self,
        record_id: str,
        incoming_timestamp: str,
        current_timestamp: Optional[str],
        winner: str
    ) -> None:
        """Log a delta conflict and which side won"""
        self.log_vault_event(
            event_type="DELTA_CONFLICT",
            vault_id=record_id,
            source="DeltaReconciler",
            outcome="RESOLVED",
            severity="WARNING",
            additional_context={
                "incoming_timestamp": incoming_timestamp,
                "current_timestamp": current_timestamp,
                "winner": winner,
            }
        )


# Global audit logger instance
_audit_logger: Optional[AuditLogger] = None


def get_audit_logger(
    log_dir: str = "logs",
    enable_console: bool = False,
    enable_file: bool = True
) -> AuditLogger:
    """Get or create the global audit logger instance"""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger(
            log_dir=log_dir,
            enable_console=enable_console,
            enable_file=enable_file
        )
    return _audit_logger


def reset_audit_logger() -> None:
    """Reset the global audit logger (for testing)"""
    global _audit_logger
    _audit_logger = None
    _request_id.set("")
