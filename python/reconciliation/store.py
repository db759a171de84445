"""
Vault store interface and in-memory implementation

The engine talks to vault state only through a VaultStore. Every method is a
coroutine because real backends suspend on I/O. Records go in and come out as
copies so callers can never mutate stored state by accident.
"""

import asyncio
import copy
import logging
from typing import Any, Dict, List, Optional

from .errors import VaultRecordNotFound
from .records import VaultRecord, utc_now

logger = logging.getLogger(__name__)


class VaultStore:
    """Operations the reconciliation engine needs from vault storage

    Also hands out one asyncio lock per vault id. Whoever mutates a vault
    record holds its lock for the whole read-check-write sequence.
    """

    def __init__(self):
        self._record_locks: Dict[str, asyncio.Lock] = {}

    def record_lock(self, vault_id: str) -> asyncio.Lock:
        lock = self._record_locks.get(vault_id)
        if lock is None:
            lock = asyncio.Lock()
            self._record_locks[vault_id] = lock
        return lock

    async def get_vault(self, vault_id: str) -> Optional[VaultRecord]:
        raise NotImplementedError

    async def put_vault(self, record: VaultRecord) -> None:
        """Insert or replace a vault record"""
        raise NotImplementedError

    async def list_vaults(self) -> List[VaultRecord]:
        raise NotImplementedError

    async def backup(self, update_id: str, vault_id: str) -> VaultRecord:
        """Snapshot a vault record under an update id

        Raises:
            VaultRecordNotFound: If the vault does not exist
        """
        raise NotImplementedError

    async def get_backup(self, update_id: str) -> Optional[VaultRecord]:
        raise NotImplementedError

    async def set_billing_status(self, vault_id: str, billing_status: str) -> None:
        raise NotImplementedError

    async def is_applied(self, update_id: str) -> bool:
        raise NotImplementedError

    async def mark_applied(self, update_id: str, vault_id: str) -> None:
        raise NotImplementedError

    async def clear_applied(self, update_id: str) -> None:
        raise NotImplementedError

    async def save_batch(
        self,
        batch_id: str,
        kind: str,
        snapshot: Dict[str, Any],
        payload: Optional[Dict[str, Any]] = None
    ) -> None:
        """Store a processing snapshot, and optionally the submitted payload"""
        raise NotImplementedError

    async def get_batch(self, batch_id: str, kind: str) -> Optional[Dict[str, Any]]:
        """Return ``{"snapshot": ..., "payload": ...}`` or None"""
        raise NotImplementedError

    async def health_check(self) -> bool:
        return True


class InMemoryVaultStore(VaultStore):
    """Dictionary backed store for development and tests"""

    def __init__(self, records: Optional[List[VaultRecord]] = None):
        super().__init__()
        self._vaults: Dict[str, VaultRecord] = {}
        self._backups: Dict[str, VaultRecord] = {}
        self._applied: Dict[str, str] = {}
        self._batches: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()
        for record in records or []:
            self._vaults[record.vault_id] = record.copy()

    async def get_vault(self, vault_id: str) -> Optional[VaultRecord]:
        record = self._vaults.get(vault_id)
        return record.copy() if record else None

    async def put_vault(self, record: VaultRecord) -> None:
        async with self._lock:
            stored = record.copy()
            stored.updated_date = utc_now().isoformat()
            if stored.created_date is None:
                existing = self._vaults.get(record.vault_id)
                stored.created_date = existing.created_date if existing else stored.updated_date
            self._vaults[record.vault_id] = stored

    async def list_vaults(self) -> List[VaultRecord]:
        return [record.copy() for record in self._vaults.values()]

    async def backup(self, update_id: str, vault_id: str) -> VaultRecord:
        async with self._lock:
            record = self._vaults.get(vault_id)
            if record is None:
                raise VaultRecordNotFound(vault_id)
            self._backups[update_id] = record.copy()
            return record.copy()

    async def get_backup(self, update_id: str) -> Optional[VaultRecord]:
        record = self._backups.get(update_id)
        return record.copy() if record else None

    async def set_billing_status(self, vault_id: str, billing_status: str) -> None:
        async with self._lock:
            record = self._vaults.get(vault_id)
            if record is None:
                raise VaultRecordNotFound(vault_id)
            record.billing_status = billing_status

    async def is_applied(self, update_id: str) -> bool:
        return update_id in self._applied

    async def mark_applied(self, update_id: str, vault_id: str) -> None:
        self._applied[update_id] = vault_id

    async def clear_applied(self, update_id: str) -> None:
        self._applied.pop(update_id, None)

    async def save_batch(
        self,
        batch_id: str,
        kind: str,
        snapshot: Dict[str, Any],
        payload: Optional[Dict[str, Any]] = None
    ) -> None:
        key = f"{kind}:{batch_id}"
        entry = self._batches.setdefault(key, {'snapshot': {}, 'payload': None})
        entry['snapshot'] = copy.deepcopy(snapshot)
        if payload is not None:
            entry['payload'] = copy.deepcopy(payload)

    async def get_batch(self, batch_id: str, kind: str) -> Optional[Dict[str, Any]]:
        entry = self._batches.get(f"{kind}:{batch_id}")
        return copy.deepcopy(entry) if entry else None
