"""
Delta Reconciler

Consumes INSERT/UPDATE/DELETE changes from a vault export and folds them
into the vault store. Conflicts are resolved last-writer-wins on the change
timestamp; records that cannot be reconciled are counted for manual review.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from audit_logger import AuditLogger, get_audit_logger
from config_manager import RiskConfig
from log_utils import sanitize_for_logging
from .errors import VaultStoreError
from .records import (
    DeltaChange,
    DeltaChangeType,
    DeltaSummary,
    VaultRecord,
    VaultStatus,
    utc_now,
)
from .store import VaultStore
from .validator import validate_delta_change, validate_vault_record

logger = logging.getLogger(__name__)

PROTECTED_FIELDS = ('customer_vault_id',)


def apply_changed_fields(data: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
    """Merge changed fields into a vault record dictionary

    Keys may be dotted paths (``payment_method.cc_exp``). Nested dictionaries
    are merged into existing sections instead of replacing them.

    Returns:
        Mapping of each changed key to its previous value
    """
    previous = {}
    for key, value in changes.items():
        if key in PROTECTED_FIELDS:
            continue
        parts = key.split('.')
        target = data
        for part in parts[:-1]:
            if not isinstance(target.get(part), dict):
                target[part] = {}
            target = target[part]
        leaf = parts[-1]
        old = target.get(leaf)
        previous[key] = old
        if isinstance(value, dict) and isinstance(old, dict):
            merged = dict(old)
            merged.update(value)
            target[leaf] = merged
        else:
            target[leaf] = value
    return previous


class DeltaReconciler:
    """Reconciles delta changes against current vault state"""

    def __init__(
        self,
        store: VaultStore,
        audit: Optional[AuditLogger] = None,
        risk_config: Optional[RiskConfig] = None
    ):
        self.store = store
        self.audit = audit or get_audit_logger()
        self.risk_config = risk_config or RiskConfig()

    async def reconcile(self, changes: List[DeltaChange]) -> DeltaSummary:
        """Apply a list of changes in order and tally the outcome"""
        summary = DeltaSummary(total_changes=len(changes))
        # Records written earlier in this pass, with the timestamp that won
        written: Dict[str, datetime] = {}

        for change in changes:
            errors = validate_delta_change(change)
            if errors:
                self._flag_for_review(summary, change, "; ".join(errors))
                continue

            if change.change_type == DeltaChangeType.INSERT.value:
                summary.inserts += 1
            elif change.change_type == DeltaChangeType.UPDATE.value:
                summary.updates += 1
            else:
                summary.deletes += 1

            try:
                async with self.store.record_lock(change.record_id):
                    await self._reconcile_one(change, summary, written)
            except VaultStoreError as e:
                self._flag_for_review(summary, change, f"Vault store error: {e}")

        logger.info(
            "Reconciled %d delta changes: %d inserts, %d updates, %d deletes, "
            "%d conflicts resolved, %d for manual review",
            summary.total_changes, summary.inserts, summary.updates, summary.deletes,
            summary.conflicts_resolved, summary.manual_review_required
        )
        return summary

    async def _reconcile_one(
        self,
        change: DeltaChange,
        summary: DeltaSummary,
        written: Dict[str, datetime]
    ) -> None:
        current = await self.store.get_vault(change.record_id)
        incoming_ts = change.parsed_timestamp

        if current is None and change.change_type != DeltaChangeType.INSERT.value:
            self._flag_for_review(summary, change, "Target vault record does not exist")
            return

        if current is not None:
            current_ts = written.get(change.record_id) or current.last_modified
            conflict = change.record_id in written or (
                current_ts is not None and current_ts > incoming_ts
            )
            if conflict:
                summary.conflicts_resolved += 1
                incoming_wins = current_ts is None or incoming_ts >= current_ts
                self.audit.log_conflict(
                    record_id=change.record_id,
                    incoming_timestamp=change.timestamp,
                    current_timestamp=current_ts.isoformat() if current_ts else None,
                    winner="incoming" if incoming_wins else "current",
                )
                if not incoming_wins:
                    logger.info(
                        "Delta for %s superseded by newer state, discarded",
                        sanitize_for_logging(change.record_id)
                    )
                    return

        if change.change_type == DeltaChangeType.DELETE.value:
            updated = self._deleted(current, change)
        else:
            updated = self._merged(current, change)
            if updated is None:
                self._flag_for_review(summary, change, "Resulting vault record is invalid")
                return

        await self.store.put_vault(updated)
        written[change.record_id] = incoming_ts
        self.audit.log_vault_event(
            event_type="DELTA_APPLIED",
            vault_id=change.record_id,
            source=change.change_source or "DeltaReconciler",
            additional_context={
                "change_type": change.change_type,
                "fields": sorted(change.changed_fields.keys()),
            }
        )

    def _merged(self, current: Optional[VaultRecord], change: DeltaChange) -> Optional[VaultRecord]:
        data = current.to_dict() if current else {'customer_vault_id': change.record_id}
        previous = apply_changed_fields(data, change.changed_fields)
        updated = VaultRecord.from_dict(data)

        if current is None:
            kind = "new"
            result = validate_vault_record(updated, risk_config=self.risk_config)
            if not result.is_valid:
                logger.warning(
                    "Inserted vault %s failed validation: %s",
                    sanitize_for_logging(change.record_id), "; ".join(result.errors)
                )
                return None
            updated.risk_assessment.risk_score = result.risk_score
        elif (current.status != VaultStatus.ACTIVE.value
              and updated.status == VaultStatus.ACTIVE.value):
            kind = "reactivated"
        else:
            kind = "updated"

        self._stamp(updated, change, kind, list(change.changed_fields.keys()), previous)
        return updated

    def _deleted(self, current: VaultRecord, change: DeltaChange) -> VaultRecord:
        updated = current.copy()
        previous = {'status': current.status}
        updated.status = VaultStatus.DISABLED.value
        self._stamp(updated, change, "deleted", ['status'], previous)
        return updated

    def _stamp(
        self,
        record: VaultRecord,
        change: DeltaChange,
        kind: str,
        fields: List[str],
        previous: Dict[str, Any]
    ) -> None:
        record.delta_info.change_type = kind
        record.delta_info.changed_fields = fields
        record.delta_info.change_timestamp = change.timestamp
        record.delta_info.change_source = change.change_source or None
        record.delta_info.previous_values = previous
        record.updated_date = utc_now().isoformat()

    def _flag_for_review(self, summary: DeltaSummary, change: DeltaChange, reason: str) -> None:
        summary.manual_review_required += 1
        summary.review_items.append(f"{change.record_id or '<missing>'}: {reason}")
        logger.warning(
            "Delta change for %s needs manual review: %s",
            sanitize_for_logging(change.record_id or '<missing>'), reason
        )
