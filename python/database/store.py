"""
SQLAlchemy-backed vault store

Implements the reconciliation engine's VaultStore on top of the repositories.
Repository calls are blocking, so each store operation runs one
session_scope transaction in a thread pool executor.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database.connection import DatabaseSessionProvider, db_retry
from database.models import AuditAction
from database.repositories import (
    AppliedUpdateRepository,
    AuditRepository,
    BackupRepository,
    BatchRunRepository,
    EntityNotFoundError,
    VaultRecordRepository,
    row_to_record,
)
from reconciliation.errors import VaultRecordNotFound, VaultStoreError
from reconciliation.records import VaultRecord, utc_now
from reconciliation.store import VaultStore

logger = logging.getLogger(__name__)

T = TypeVar('T')


class SqlVaultStore(VaultStore):
    """Vault store persisted through SQLAlchemy"""

    def __init__(self, provider: DatabaseSessionProvider, max_workers: int = 4):
        super().__init__()
        self.provider = provider
        self._executor = ThreadPoolExecutor(max_workers=max_workers)

    async def _run(self, operation: Callable[[Session], T]) -> T:
        """Run ``operation`` in its own transaction on the executor"""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, self._in_transaction, operation)
        except EntityNotFoundError as e:
            raise VaultStoreError(str(e)) from e
        except SQLAlchemyError as e:
            logger.error(f"Vault store operation failed: {e}")
            raise VaultStoreError(f"Database error: {e}") from e

    @db_retry
    def _in_transaction(self, operation: Callable[[Session], T]) -> T:
        with self.provider.session_scope() as session:
            return operation(session)

    async def get_vault(self, vault_id: str) -> Optional[VaultRecord]:
        def op(session: Session) -> Optional[VaultRecord]:
            row = VaultRecordRepository(session).get(vault_id)
            return row_to_record(row) if row else None
        return await self._run(op)

    async def put_vault(self, record: VaultRecord) -> None:
        stored = record.copy()
        stored.updated_date = utc_now().isoformat()

        def op(session: Session) -> None:
            repo = VaultRecordRepository(session)
            if stored.created_date is None:
                existing = repo.get(stored.vault_id)
                stored.created_date = existing.created_date if existing else stored.updated_date
            _, previous = repo.upsert(stored)
            AuditRepository(session).log(
                action=AuditAction.VAULT_UPSERT,
                resource_type="vault_record",
                resource_id=stored.vault_id,
                old_value={'status': previous['status']} if previous else None,
                new_value={'status': stored.status, 'billing_status': stored.billing_status},
            )
        await self._run(op)

    async def list_vaults(self) -> List[VaultRecord]:
        def op(session: Session) -> List[VaultRecord]:
            return [row_to_record(row) for row in VaultRecordRepository(session).list_all()]
        return await self._run(op)

    async def backup(self, update_id: str, vault_id: str) -> VaultRecord:
        def op(session: Session) -> Optional[VaultRecord]:
            row = VaultRecordRepository(session).get(vault_id, for_update=True)
            if row is None:
                return None
            record = row_to_record(row)
            BackupRepository(session).create(update_id, vault_id, record.to_dict())
            AuditRepository(session).log(
                action=AuditAction.BACKUP,
                resource_type="vault_record",
                resource_id=vault_id,
                details={'update_id': update_id},
            )
            return record

        record = await self._run(op)
        if record is None:
            raise VaultRecordNotFound(vault_id)
        return record

    async def get_backup(self, update_id: str) -> Optional[VaultRecord]:
        def op(session: Session) -> Optional[VaultRecord]:
            backup = BackupRepository(session).get(update_id)
            return VaultRecord.from_dict(backup.snapshot) if backup else None
        return await self._run(op)

    async def set_billing_status(self, vault_id: str, billing_status: str) -> None:
        def op(session: Session) -> None:
            previous = VaultRecordRepository(session).set_billing_status(vault_id, billing_status)
            AuditRepository(session).log(
                action=AuditAction.BILLING_CHANGE,
                resource_type="vault_record",
                resource_id=vault_id,
                old_value={'billing_status': previous},
                new_value={'billing_status': billing_status},
            )
        await self._run(op)

    async def is_applied(self, update_id: str) -> bool:
        return await self._run(lambda session: AppliedUpdateRepository(session).exists(update_id))

    async def mark_applied(self, update_id: str, vault_id: str) -> None:
        def op(session: Session) -> None:
            AppliedUpdateRepository(session).add(update_id, vault_id)
            AuditRepository(session).log(
                action=AuditAction.UPDATE_APPLIED,
                resource_type="card_update",
                resource_id=update_id,
                details={'vault_id': vault_id},
            )
        await self._run(op)

    async def clear_applied(self, update_id: str) -> None:
        def op(session: Session) -> None:
            if AppliedUpdateRepository(session).remove(update_id):
                AuditRepository(session).log(
                    action=AuditAction.UPDATE_CLEARED,
                    resource_type="card_update",
                    resource_id=update_id,
                )
        await self._run(op)

    async def save_batch(
        self,
        batch_id: str,
        kind: str,
        snapshot: Dict[str, Any],
        payload: Optional[Dict[str, Any]] = None
    ) -> None:
        await self._run(lambda session: BatchRunRepository(session).save(batch_id, kind, snapshot, payload))

    async def get_batch(self, batch_id: str, kind: str) -> Optional[Dict[str, Any]]:
        def op(session: Session) -> Optional[Dict[str, Any]]:
            run = BatchRunRepository(session).get(batch_id, kind)
            if run is None:
                return None
            return {'snapshot': dict(run.snapshot or {}), 'payload': run.payload}
        return await self._run(op)

    async def health_check(self) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self.provider.health_check)

    def close(self) -> None:
        self._executor.shutdown(wait=True)
