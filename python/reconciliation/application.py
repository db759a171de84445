"""
Application Engine

The only component that mutates vault state for card updates. Every
application for a vault runs under that vault's lock: idempotency check,
backup, write and billing adjustment happen as one critical section.
"""

import logging
from typing import Optional

from audit_logger import AuditLogger, get_audit_logger
from log_utils import mask_card, sanitize_for_logging
from .errors import ApplicationFault, VaultStoreError
from .records import (
    ApplicationOutcome,
    BillingStatus,
    CardProcessingOptions,
    CardUpdateRecord,
    PaymentMethod,
    SubscriptionImpact,
    UpdateType,
    VaultRecord,
    VaultStatus,
    utc_now,
)
from .store import VaultStore
from .validator import acu_confidence_bucket

logger = logging.getLogger(__name__)

UPDATE_SOURCE = "card_updater"


class ApplicationEngine:
    """Applies approved card updates to the vault with backup and rollback"""

    def __init__(self, store: VaultStore, audit: Optional[AuditLogger] = None):
        self.store = store
        self.audit = audit or get_audit_logger()

    async def apply(
        self,
        record: CardUpdateRecord,
        options: Optional[CardProcessingOptions] = None
    ) -> ApplicationOutcome:
        """Apply one approved card update

        Store faults are reported on the returned outcome rather than raised.
        An update id that was already applied is a no-op.
        """
        options = options or CardProcessingOptions()
        async with self.store.record_lock(record.vault_id):
            if await self.store.is_applied(record.update_id):
                logger.info("Update %s already applied, skipping", sanitize_for_logging(record.update_id))
                return ApplicationOutcome(already_applied=True, rollback_available=True)

            outcome = ApplicationOutcome()
            try:
                current = await self._backup(record)
            except VaultStoreError as e:
                outcome.error = f"Backup failed: {e}"
                self._audit_failure(record, "backup", str(e))
                return outcome

            outcome.backed_up = True
            outcome.rollback_available = True

            try:
                await self._write(record, current, options, outcome)
                await self.store.mark_applied(record.update_id, record.vault_id)
            except (VaultStoreError, ApplicationFault) as e:
                outcome.error = str(e)
                self._audit_failure(record, getattr(e, "step", "write"), str(e))
                return outcome

        logger.info(
            "Applied update %s to vault %s (card %s, impact=%s)",
            sanitize_for_logging(record.update_id),
            sanitize_for_logging(record.vault_id),
            mask_card(record.updated_card.last_four),
            outcome.subscription_impact,
        )
        return outcome

    async def _backup(self, record: CardUpdateRecord) -> VaultRecord:
        """Take the backup, reusing one left by an earlier failed attempt"""
        existing = await self.store.get_backup(record.update_id)
        if existing is not None:
            current = await self.store.get_vault(record.vault_id)
            if current is None:
                raise VaultStoreError(f"Vault record not found: {record.vault_id}")
            return current

        current = await self.store.backup(record.update_id, record.vault_id)
        self.audit.log_vault_event(
            event_type="VAULT_BACKUP_CREATED",
            vault_id=record.vault_id,
            update_id=record.update_id,
            source="ApplicationEngine",
        )
        return current

    async def _write(
        self,
        record: CardUpdateRecord,
        current: VaultRecord,
        options: CardProcessingOptions,
        outcome: ApplicationOutcome
    ) -> None:
        closure = record.update_type == UpdateType.ACCOUNT_CLOSURE.value
        pause = options.pause_billing_during_update and not closure
        original_billing = current.billing_status

        if pause:
            await self.store.set_billing_status(record.vault_id, BillingStatus.PAUSED.value)
            self.audit.log_vault_event(
                event_type="BILLING_PAUSED",
                vault_id=record.vault_id,
                update_id=record.update_id,
                source="ApplicationEngine",
            )

        updated = build_updated_vault(current, record)
        updated.billing_status = BillingStatus.PAUSED.value if pause else original_billing
        try:
            await self.store.put_vault(updated)
        except VaultStoreError:
            if pause:
                await self.store.set_billing_status(record.vault_id, original_billing)
            raise
        outcome.vault_updated = True
        self.audit.log_vault_event(
            event_type="CARD_UPDATE_APPLIED",
            vault_id=record.vault_id,
            update_id=record.update_id,
            source="ApplicationEngine",
            additional_context={
                "update_type": record.update_type,
                "card": mask_card(record.updated_card.last_four),
                "status": updated.status,
            }
        )

        if closure:
            try:
                await self.store.set_billing_status(record.vault_id, BillingStatus.SUSPENDED.value)
            except VaultStoreError as e:
                raise ApplicationFault("billing", str(e))
            outcome.billing_status_changed = original_billing != BillingStatus.SUSPENDED.value
            outcome.subscription_impact = SubscriptionImpact.BILLING_SUSPENDED.value
            self.audit.log_vault_event(
                event_type="BILLING_SUSPENDED",
                vault_id=record.vault_id,
                update_id=record.update_id,
                source="ApplicationEngine",
            )
        elif pause:
            # Billing resumes once the new card data is in place
            await self.store.set_billing_status(record.vault_id, original_billing)
            outcome.billing_status_changed = True
            outcome.subscription_impact = SubscriptionImpact.BILLING_PAUSED_TEMPORARILY.value

    async def rollback(self, update_id: str) -> VaultRecord:
        """Restore the vault record saved before ``update_id`` was applied

        Raises:
            VaultStoreError: If no backup exists for the update
        """
        backup = await self.store.get_backup(update_id)
        if backup is None:
            raise VaultStoreError(f"No backup found for update {update_id}")

        async with self.store.record_lock(backup.vault_id):
            await self.store.put_vault(backup)
            await self.store.clear_applied(update_id)

        self.audit.log_vault_event(
            event_type="ROLLBACK",
            vault_id=backup.vault_id,
            update_id=update_id,
            source="ApplicationEngine",
            severity="WARNING",
        )
        logger.warning("Rolled back update %s on vault %s", update_id, backup.vault_id)
        return backup

    def _audit_failure(self, record: CardUpdateRecord, step: str, message: str) -> None:
        logger.error(
            "Failed to apply update %s at %s step: %s",
            sanitize_for_logging(record.update_id), step, sanitize_for_logging(message)
        )
        self.audit.log_vault_event(
            event_type="CARD_UPDATE_FAILED",
            vault_id=record.vault_id,
            update_id=record.update_id,
            source="ApplicationEngine",
            outcome="FAILED",
            severity="ERROR",
            additional_context={"step": step, "error": message},
        )


def build_updated_vault(current: VaultRecord, record: CardUpdateRecord) -> VaultRecord:
    """New vault state after applying a card update to ``current``"""
    updated = current.copy()
    card = record.updated_card
    payment = updated.payment_method or PaymentMethod()
    previous_exp = payment.cc_exp

    payment.type = "credit_card"
    payment.cc_number_masked = mask_card(card.last_four)
    payment.cc_exp = card.exp_mmyy
    if card.card_type:
        payment.cc_type = card.card_type
    updated.payment_method = payment

    updated.acu_data.last_update_date = utc_now().isoformat()
    updated.acu_data.update_source = UPDATE_SOURCE
    updated.acu_data.previous_exp_date = previous_exp
    updated.acu_data.update_reason = record.update_details.update_reason or record.update_type
    updated.acu_data.update_confidence = acu_confidence_bucket(card.update_confidence).value

    if record.update_type == UpdateType.ACCOUNT_CLOSURE.value:
        updated.status = VaultStatus.DISABLED.value
    else:
        updated.status = VaultStatus.ACTIVE.value
    return updated
