"""
Repository Pattern for Vault Reconciliation Database Operations

Provides the data access layer used by the SQL vault store. Repositories
work on a caller-provided session; transaction boundaries belong to the
caller (see DatabaseSessionProvider.session_scope).
"""

import logging
from typing import List, Optional, Dict, Any, Tuple

from sqlalchemy import select, func, delete
from sqlalchemy.orm import Session

from database.models import (
    VaultRecordRow,
    VaultBackup,
    AppliedUpdate,
    BatchRun,
    AuditLog,
    AuditAction,
)
from database.monitoring import timed_query
from reconciliation.records import VaultRecord

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class EntityNotFoundError(RepositoryError):
    """Raised when a row is not found."""
    pass


def row_to_record(row: VaultRecordRow) -> VaultRecord:
    """Build a VaultRecord from its table row"""
    return VaultRecord.from_dict({
        'customer_vault_id': row.vault_id,
        'customer_id': row.customer_id,
        'status': row.status,
        'billing_status': row.billing_status,
        'customer_info': row.customer_info,
        'payment_method': row.payment_method,
        'acu_data': row.acu_data,
        'delta_info': row.delta_info,
        'risk_assessment': row.risk_assessment,
        'transaction_summary': row.transaction_summary,
        'created_date': row.created_date,
        'updated_date': row.updated_date,
    })


def _apply_record(row: VaultRecordRow, record: VaultRecord) -> None:
    data = record.to_dict()
    row.customer_id = record.customer_id
    row.status = record.status
    row.billing_status = record.billing_status
    row.risk_score = max(0, min(100, record.risk_assessment.risk_score))
    row.customer_info = data['customer_info']
    row.payment_method = data['payment_method']
    row.acu_data = data['acu_data']
    row.delta_info = data['delta_info']
    row.risk_assessment = data['risk_assessment']
    row.transaction_summary = data['transaction_summary']
    row.created_date = record.created_date
    row.updated_date = record.updated_date


# ============================================
# VAULT RECORD REPOSITORY
# ============================================

class VaultRecordRepository:
    """Repository for vault record operations."""

    def __init__(self, session: Session):
        self.session = session

    @timed_query("vault_get")
    def get(self, vault_id: str, for_update: bool = False) -> Optional[VaultRecordRow]:
        """
        Get a vault row by id.

        Args:
            vault_id: Customer vault id
            for_update: Lock the row until the transaction ends

        Returns:
            VaultRecordRow or None
        """
        query = select(VaultRecordRow).where(VaultRecordRow.vault_id == vault_id)
        if for_update:
            query = query.with_for_update()
        return self.session.execute(query).scalar_one_or_none()

    @timed_query("vault_upsert")
    def upsert(self, record: VaultRecord) -> Tuple[VaultRecordRow, Optional[Dict[str, Any]]]:
        """
        Insert or replace a vault record.

        Returns:
            Tuple of (row, previous state as a dict or None when inserted)
        """
        row = self.get(record.vault_id, for_update=True)
        previous = None
        if row is None:
            row = VaultRecordRow(vault_id=record.vault_id)
            self.session.add(row)
        else:
            previous = row_to_record(row).to_dict()
        _apply_record(row, record)
        self.session.flush()
        return row, previous

    @timed_query("vault_set_billing")
    def set_billing_status(self, vault_id: str, billing_status: str) -> str:
        """
        Change the billing status of a vault.

        Returns:
            Previous billing status

        Raises:
            EntityNotFoundError: If the vault does not exist
        """
        row = self.get(vault_id, for_update=True)
        if row is None:
            raise EntityNotFoundError(f"Vault record not found: {vault_id}")
        previous = row.billing_status
        row.billing_status = billing_status
        self.session.flush()
        return previous

    @timed_query("vault_list")
    def list_all(self, status: Optional[str] = None) -> List[VaultRecordRow]:
        query = select(VaultRecordRow)
        if status:
            query = query.where(VaultRecordRow.status == status)
        query = query.order_by(VaultRecordRow.vault_id)
        return list(self.session.execute(query).scalars().all())

    def count_by_status(self) -> Dict[str, int]:
        query = select(VaultRecordRow.status, func.count()).group_by(VaultRecordRow.status)
        return {status: count for status, count in self.session.execute(query).all()}


# ============================================
# BACKUP AND IDEMPOTENCY REPOSITORIES
# ============================================

class BackupRepository:
    """Repository for pre-update vault snapshots."""

    def __init__(self, session: Session):
        self.session = session

    @timed_query("backup_create")
    def create(self, update_id: str, vault_id: str, snapshot: Dict[str, Any]) -> VaultBackup:
        """Store (or replace) the snapshot for an update id."""
        backup = self.session.get(VaultBackup, update_id)
        if backup is None:
            backup = VaultBackup(update_id=update_id, vault_id=vault_id, snapshot=snapshot)
            self.session.add(backup)
        else:
            backup.vault_id = vault_id
            backup.snapshot = snapshot
        self.session.flush()
        return backup

    @timed_query("backup_get")
    def get(self, update_id: str) -> Optional[VaultBackup]:
        return self.session.get(VaultBackup, update_id)


class AppliedUpdateRepository:
    """Repository for the applied update ledger."""

    def __init__(self, session: Session):
        self.session = session

    @timed_query("applied_exists")
    def exists(self, update_id: str) -> bool:
        return self.session.get(AppliedUpdate, update_id) is not None

    @timed_query("applied_add")
    def add(self, update_id: str, vault_id: str) -> None:
        if self.session.get(AppliedUpdate, update_id) is None:
            self.session.add(AppliedUpdate(update_id=update_id, vault_id=vault_id))
            self.session.flush()

    @timed_query("applied_remove")
    def remove(self, update_id: str) -> bool:
        result = self.session.execute(
            delete(AppliedUpdate).where(AppliedUpdate.update_id == update_id)
        )
        return result.rowcount > 0


# ============================================
# BATCH RUN REPOSITORY
# ============================================

class BatchRunRepository:
    """Repository for batch and export status snapshots."""

    def __init__(self, session: Session):
        self.session = session

    @timed_query("batch_save")
    def save(
        self,
        batch_id: str,
        kind: str,
        snapshot: Dict[str, Any],
        payload: Optional[Dict[str, Any]] = None
    ) -> BatchRun:
        """
        Create or update a batch snapshot.

        The payload is only written when given, so later snapshot updates
        keep the originally submitted request.
        """
        run = self.session.get(BatchRun, (batch_id, kind))
        if run is None:
            run = BatchRun(batch_id=batch_id, kind=kind)
            self.session.add(run)
        run.status = snapshot.get('status', run.status or 'RUNNING')
        run.snapshot = snapshot
        if payload is not None:
            run.payload = payload
        self.session.flush()
        return run

    @timed_query("batch_get")
    def get(self, batch_id: str, kind: str) -> Optional[BatchRun]:
        return self.session.get(BatchRun, (batch_id, kind))


# ============================================
# AUDIT REPOSITORY
# ============================================

class AuditRepository:
    """Repository for audit log operations."""

    def __init__(self, session: Session):
        self.session = session

    def log(
        self,
        action: AuditAction,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
        success: bool = True,
        error_message: Optional[str] = None
    ) -> AuditLog:
        """
        Create an audit log entry.

        Args:
            action: Type of action
            resource_type: Type of resource affected
            resource_id: ID of resource
            details: Additional details
            old_value: Value before change
            new_value: Value after change
            success: Whether action succeeded
            error_message: Error if failed

        Returns:
            Created AuditLog
        """
        log = AuditLog(
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            details=details,
            old_value=old_value,
            new_value=new_value,
            success=success,
            error_message=error_message
        )
        self.session.add(log)
        self.session.flush()
        return log

