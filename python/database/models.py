"""
SQLAlchemy ORM Models for the Vault Reconciliation Engine

Tables:
1. vault_records - Current state of each stored payment credential
2. vault_backups - Snapshot of a vault record taken before a card update
3. applied_updates - Idempotency ledger of applied card update ids
4. batch_runs - Status snapshots and submitted payloads of batches/exports
5. audit_logs - Audit trail of vault mutations

Record sections (payment method, ACU data, delta info, ...) are stored as
JSON documents; JSONB is used on PostgreSQL. Status and risk score are kept
in their own columns so they can be indexed.
"""

import uuid
from datetime import datetime
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import (
    String, Integer, Boolean, DateTime, Text, Index, CheckConstraint,
    Enum, JSON, Uuid
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, Mapped, mapped_column
from sqlalchemy.sql import func

# Base class for all models
Base = declarative_base()

# JSON on SQLite (tests), JSONB on PostgreSQL
JSONDocument = JSON().with_variant(JSONB(), "postgresql")


# ============================================
# ENUMS
# ============================================

class AuditAction(str, PyEnum):
    """Type of audited vault change"""
    VAULT_UPSERT = "VAULT_UPSERT"
    BACKUP = "BACKUP"
    BILLING_CHANGE = "BILLING_CHANGE"
    UPDATE_APPLIED = "UPDATE_APPLIED"
    UPDATE_CLEARED = "UPDATE_CLEARED"
    BATCH_SAVED = "BATCH_SAVED"


# ============================================
# MIXIN CLASSES
# ============================================

class TimestampMixin:
    """Mixin for created_at and updated_at timestamps"""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False
    )


# ============================================
# VAULT TABLES
# ============================================

class VaultRecordRow(Base, TimestampMixin):
    """
    Current state of a stored payment credential.

    Never hard-deleted: a delete delta sets status to 'disabled'.
    """
    __tablename__ = "vault_records"

    vault_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    customer_id: Mapped[str] = mapped_column(String(100), nullable=False, default="", index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active", index=True)
    billing_status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    risk_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    customer_info: Mapped[dict] = mapped_column(JSONDocument, nullable=False, default=dict)
    payment_method: Mapped[Optional[dict]] = mapped_column(JSONDocument, nullable=True)
    acu_data: Mapped[dict] = mapped_column(JSONDocument, nullable=False, default=dict)
    delta_info: Mapped[dict] = mapped_column(JSONDocument, nullable=False, default=dict)
    risk_assessment: Mapped[dict] = mapped_column(JSONDocument, nullable=False, default=dict)
    transaction_summary: Mapped[dict] = mapped_column(JSONDocument, nullable=False, default=dict)

    # Dates as reported by the vault export
    created_date: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    updated_date: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'disabled', 'expired', 'pending_update')",
            name='ck_vault_status'
        ),
        CheckConstraint(
            'risk_score >= 0 AND risk_score <= 100',
            name='ck_vault_risk_score_range'
        ),
        Index('ix_vault_status_risk', 'status', 'risk_score'),
    )

    def __repr__(self) -> str:
        return f"<VaultRecordRow(vault_id='{self.vault_id}', status='{self.status}')>"


class VaultBackup(Base):
    """Vault record snapshot taken before a card update was applied"""
    __tablename__ = "vault_backups"

    update_id: Mapped[str] = mapped_column(String(200), primary_key=True)
    vault_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    snapshot: Mapped[dict] = mapped_column(JSONDocument, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<VaultBackup(update_id='{self.update_id}', vault_id='{self.vault_id}')>"


class AppliedUpdate(Base):
    """Idempotency ledger: one row per card update applied to the vault"""
    __tablename__ = "applied_updates"

    update_id: Mapped[str] = mapped_column(String(200), primary_key=True)
    vault_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    applied_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False
    )


class BatchRun(Base, TimestampMixin):
    """Status snapshot of a card update batch or vault export"""
    __tablename__ = "batch_runs"

    batch_id: Mapped[str] = mapped_column(String(200), primary_key=True)
    kind: Mapped[str] = mapped_column(String(50), primary_key=True)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="RUNNING", index=True)
    snapshot: Mapped[dict] = mapped_column(JSONDocument, nullable=False, default=dict)
    # Submitted request, kept for retries
    payload: Mapped[Optional[dict]] = mapped_column(JSONDocument, nullable=True)

    def __repr__(self) -> str:
        return f"<BatchRun(batch_id='{self.batch_id}', kind='{self.kind}', status='{self.status}')>"


class AuditLog(Base):
    """
    Audit trail of vault mutations.

    Immutable - no updates or deletes allowed.
    """
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )

    # Timestamp (no updated_at - audit logs are immutable)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True
    )

    action: Mapped[AuditAction] = mapped_column(
        Enum(AuditAction, name="audit_action"),
        nullable=False,
        index=True
    )

    resource_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    resource_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    details: Mapped[Optional[dict]] = mapped_column(JSONDocument, nullable=True)

    # Before/after state for updates
    old_value: Mapped[Optional[dict]] = mapped_column(JSONDocument, nullable=True)
    new_value: Mapped[Optional[dict]] = mapped_column(JSONDocument, nullable=True)

    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index('ix_audit_timestamp_action', 'timestamp', 'action'),
        Index('ix_audit_resource', 'resource_type', 'resource_id'),
    )

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, action={self.action}, resource='{self.resource_type}')>"
