"""
Batch Orchestrator

Entry point of the reconciliation engine. Splits card update batches into
fixed-size chunks, runs the records of a chunk concurrently and the chunks
one after another, and folds per-record results into batch summaries and
stored status snapshots. Vault exports (vault records, ACU updates and
delta changes) are processed here as well.
"""

import asyncio
import logging
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from audit_logger import AuditLogger, get_audit_logger
from config_manager import ConfigManager, get_config
from log_utils import sanitize_for_logging
from .application import ApplicationEngine
from .delta import DeltaReconciler
from .errors import (
    BatchNotFoundError,
    BatchValidationError,
    RecordCountMismatchError,
    VaultStoreError,
)
from .notifications import (
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    build_customer_notification,
    build_high_risk_alert,
    build_ops_notification,
)
from .policy import (
    NotificationType,
    assess_card_update,
    determine_notification_type,
    next_action_for,
    status_for_action,
)
from .records import (
    BatchSummary,
    CardDetails,
    CardProcessingOptions,
    CardUpdateRecord,
    Confidence,
    CustomerInfo,
    DeltaChange,
    DeltaSummary,
    ProcessingResult,
    ProcessingStatus,
    UpdateDetails,
    UpdateType,
    VaultRecord,
    VaultStatus,
    utc_now,
)
from .store import VaultStore
from .validator import (
    acu_confidence_bucket,
    is_future_expiry,
    parse_mmyy,
    validate_acu_update,
    validate_vault_record,
)

logger = logging.getLogger(__name__)

CARD_BATCH = "card_updates"
VAULT_EXPORT = "vault_export"

ACU_TYPE_COUNTERS = {
    'expiry_update': 'expiry_updates',
    'number_update': 'number_updates',
    'account_closure': 'account_closures',
    'reissue': 'reissues',
}


def _chunks(items: List[Any], size: int) -> List[List[Any]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def summarize_result_dicts(results: List[Dict[str, Any]], total_records: int) -> Dict[str, int]:
    """Status counts for results in their serialized form"""
    statuses = Counter(r['processing_status'] for r in results)
    return {
        'total_processed': len(results),
        'successful_updates': statuses[ProcessingStatus.SUCCESS.value],
        'failed_updates': statuses[ProcessingStatus.FAILED.value],
        'pending_review': statuses[ProcessingStatus.PENDING_REVIEW.value],
        'requires_validation': statuses[ProcessingStatus.REQUIRES_VALIDATION.value],
        'notifications_sent': sum(1 for r in results if r.get('notification_sent')),
        'skipped': total_records - len(results),
    }


class BatchOrchestrator:
    """Runs card update batches and vault exports against a vault store"""

    def __init__(
        self,
        store: VaultStore,
        dispatcher: Optional[NotificationDispatcher] = None,
        config: Optional[ConfigManager] = None,
        audit: Optional[AuditLogger] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store
        self.config = config or get_config()
        self.audit = audit or get_audit_logger()
        self.dispatcher = dispatcher or LoggingNotificationDispatcher()
        self.engine = ApplicationEngine(store, self.audit)
        self.reconciler = DeltaReconciler(store, self.audit, self.config.risk)
        self.clock = clock or utc_now
        self._shutdown = asyncio.Event()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def request_shutdown(self) -> None:
        """Stop starting new chunks; chunks already running finish"""
        logger.info("Shutdown requested, no further chunks will be started")
        self._shutdown.set()

    @property
    def is_shutting_down(self) -> bool:
        return self._shutdown.is_set()

    async def health_check(self) -> bool:
        return await self.store.health_check()

    # ------------------------------------------------------------------
    # Card update batches
    # ------------------------------------------------------------------

    def check_batch(self, records: List[CardUpdateRecord], declared_total: int) -> None:
        """Batch-level checks run before any record is touched

        Raises:
            RecordCountMismatchError: Declared total differs from records sent
            BatchValidationError: Batch too large or update ids repeated
        """
        if len(records) != declared_total:
            raise RecordCountMismatchError(declared_total, len(records), label="Card update")

        max_size = self.config.batch.max_batch_size
        if len(records) > max_size:
            raise BatchValidationError(
                f"Batch of {len(records)} records exceeds the maximum of {max_size}",
                code="BATCH_TOO_LARGE",
                suggestion=f"Split the batch into batches of at most {max_size} records",
            )

        seen = Counter(r.update_id for r in records if r.update_id)
        duplicates = sorted(uid for uid, count in seen.items() if count > 1)
        if duplicates:
            raise BatchValidationError(
                "Duplicate update ids in batch",
                code="DUPLICATE_UPDATE_ID",
                details=duplicates,
                suggestion="Each update_id may appear only once per batch",
            )

    async def process_batch(
        self,
        batch_info: Dict[str, Any],
        card_updates: List[Dict[str, Any]],
        options: Optional[Dict[str, Any]] = None,
        chunk_size: Optional[int] = None
    ) -> BatchSummary:
        """Process a card update batch end to end

        Args:
            batch_info: Batch metadata; ``batch_id`` and ``total_cards`` are used
            card_updates: Card updates in wire format
            options: Processing options in wire format
            chunk_size: Records run concurrently per chunk, overrides ``batch.chunk_size``

        Returns:
            BatchSummary with results in submission order
        """
        batch_id = str(batch_info.get('batch_id', ''))
        declared_total = int(batch_info.get('total_cards', len(card_updates)))
        records = [CardUpdateRecord.from_dict(u) for u in card_updates]
        processing_options = CardProcessingOptions.from_dict(options)

        self.check_batch(records, declared_total)

        self.audit.set_request_context(batch_id)
        started_at = self.clock().isoformat()
        logger.info(
            "Processing card update batch %s with %d records",
            sanitize_for_logging(batch_id), len(records)
        )
        await self.store.save_batch(
            batch_id,
            CARD_BATCH,
            self._batch_snapshot(batch_id, "RUNNING", records, [], started_at, processing_options),
            payload={
                'batch_info': dict(batch_info),
                'card_updates': list(card_updates),
                'processing_options': processing_options.to_dict(),
            },
        )

        try:
            results = await self._run_chunks(records, processing_options, chunk_size)
        finally:
            self.audit.clear_request_context()

        summary = BatchSummary(
            batch_id=batch_id,
            total_records=len(records),
            results=results,
            stopped=len(results) < len(records),
        )
        if summary.stopped:
            status = "STOPPED"
        elif summary.count(ProcessingStatus.FAILED):
            status = "COMPLETED_WITH_ERRORS"
        else:
            status = "COMPLETED"

        snapshot = self._batch_snapshot(
            batch_id, status, records, results, started_at, processing_options
        )
        await self.store.save_batch(batch_id, CARD_BATCH, snapshot)
        logger.info(
            "Batch %s finished with status %s: %s",
            sanitize_for_logging(batch_id), status, summary.counts()
        )
        return summary

    async def _run_chunks(
        self,
        records: List[CardUpdateRecord],
        options: CardProcessingOptions,
        chunk_size: Optional[int] = None
    ) -> List[ProcessingResult]:
        results: List[ProcessingResult] = []
        chunks = _chunks(records, max(1, chunk_size or self.config.batch.chunk_size))
        for index, chunk in enumerate(chunks):
            if self.is_shutting_down:
                logger.warning(
                    "Shutdown in progress, %d records left unprocessed",
                    len(records) - len(results)
                )
                break
            # gather keeps submission order
            results.extend(await asyncio.gather(
                *(self._run_record(record, options) for record in chunk)
            ))
            if index < len(chunks) - 1 and self.config.batch.chunk_delay_seconds > 0:
                await asyncio.sleep(self.config.batch.chunk_delay_seconds)
        return results

    async def _run_record(
        self,
        record: CardUpdateRecord,
        options: CardProcessingOptions
    ) -> ProcessingResult:
        try:
            return await self.process_record(record, options)
        except Exception as e:
            logger.exception(
                "Unexpected error processing update %s", sanitize_for_logging(record.update_id)
            )
            validation = assess_card_update(
                record,
                now=self.clock(),
                validation_config=self.config.validation,
                risk_config=self.config.risk,
                policy_config=self.config.policy,
            )
            return ProcessingResult(
                update_id=record.update_id,
                vault_id=record.vault_id,
                status=ProcessingStatus.FAILED,
                validation=validation,
                next_action=f"Unexpected processing error: {sanitize_for_logging(e)}",
            )

    async def process_record(
        self,
        record: CardUpdateRecord,
        options: Optional[CardProcessingOptions] = None
    ) -> ProcessingResult:
        """Validate, score, decide and conditionally apply one card update"""
        options = options or CardProcessingOptions()
        validation = assess_card_update(
            record,
            now=self.clock(),
            validation_config=self.config.validation,
            risk_config=self.config.risk,
            policy_config=self.config.policy,
        )

        if record.update_id and await self.store.is_applied(record.update_id):
            return ProcessingResult(
                update_id=record.update_id,
                vault_id=record.vault_id,
                status=ProcessingStatus.SUCCESS,
                validation=validation,
                next_action="Duplicate submission; update already applied, no changes made",
            )

        action = validation.recommended_action
        status = status_for_action(action, options)
        next_action = next_action_for(status, action)
        outcome = None

        if status == ProcessingStatus.SUCCESS:
            outcome = await self.engine.apply(record, options)
            if outcome.already_applied:
                next_action = "Duplicate submission; update already applied, no changes made"
            elif not outcome.succeeded:
                status = ProcessingStatus.FAILED
                next_action = f"Application failed: {outcome.error}"
                if outcome.rollback_available and not outcome.vault_updated:
                    next_action += "; vault unchanged"

        notification_sent = False
        if options.send_update_notifications and not (outcome and outcome.already_applied):
            notification_sent = await self._notify(record, status, outcome)

        return ProcessingResult(
            update_id=record.update_id,
            vault_id=record.vault_id,
            status=status,
            validation=validation,
            application_outcome=outcome,
            notification_sent=notification_sent,
            processed_at=self.clock().isoformat(),
            next_action=next_action,
        )

    async def _notify(self, record, status, outcome) -> bool:
        """Hand the notification to the dispatcher; failures never change the status"""
        if status == ProcessingStatus.FAILED and outcome is not None:
            notification = build_ops_notification(record, NotificationType.UPDATE_FAILED, outcome.error)
        else:
            kind = determine_notification_type(record, status)
            if kind is None:
                return False
            notification = build_customer_notification(record, kind)

        try:
            await self.dispatcher.send(notification)
        except Exception as e:
            logger.warning(
                "Notification %s for update %s could not be sent: %s",
                notification.notification_type,
                sanitize_for_logging(record.update_id),
                sanitize_for_logging(e),
            )
            return False
        return True

    def _batch_snapshot(
        self,
        batch_id: str,
        status: str,
        records: List[CardUpdateRecord],
        results: List[ProcessingResult],
        started_at: str,
        options: CardProcessingOptions
    ) -> Dict[str, Any]:
        result_dicts = [r.to_dict() for r in results]
        confidence = Counter(r.validation.confidence_assessment.value for r in results)
        finished = status != "RUNNING"
        return {
            'batch_id': batch_id,
            'status': status,
            'started_at': started_at,
            'completed_at': self.clock().isoformat() if finished else None,
            'total_records': len(records),
            'processed_records': len(results),
            'summary': summarize_result_dicts(result_dicts, len(records)),
            'confidence_distribution': {
                level.value: confidence[level.value] for level in Confidence
            },
            'update_types': dict(Counter(r.update_type or 'unknown' for r in records)),
            'processing_options': options.to_dict(),
            'results': result_dicts,
        }

    async def get_batch_status(self, batch_id: str) -> Dict[str, Any]:
        """Stored snapshot of a card update batch

        Raises:
            BatchNotFoundError: If the batch id is unknown
        """
        entry = await self.store.get_batch(batch_id, CARD_BATCH)
        if entry is None:
            raise BatchNotFoundError(f"Card update batch not found: {batch_id}")
        snapshot = entry['snapshot']
        results = snapshot.pop('results', [])
        snapshot['total_results'] = len(results)
        snapshot['results'] = results[:self.config.batch.result_preview_size]
        return snapshot

    async def retry(self, batch_id: str, update_ids: List[str]) -> Dict[str, Any]:
        """Re-run the pipeline for selected updates of a stored batch

        Ids that were not part of the batch are reported as NOT_FOUND.
        Already applied ids come back as duplicate no-ops.
        """
        entry = await self.store.get_batch(batch_id, CARD_BATCH)
        if entry is None or not entry.get('payload'):
            raise BatchNotFoundError(f"Card update batch not found: {batch_id}")

        payload = entry['payload']
        by_id = {}
        for raw in payload.get('card_updates', []):
            by_id.setdefault(str(raw.get('update_id', '')), raw)
        options = CardProcessingOptions.from_dict(payload.get('processing_options'))

        wanted = list(dict.fromkeys(update_ids))
        records = [CardUpdateRecord.from_dict(by_id[uid]) for uid in wanted if uid in by_id]
        not_found = [uid for uid in wanted if uid not in by_id]

        logger.info(
            "Retrying %d updates of batch %s (%d unknown ids)",
            len(records), sanitize_for_logging(batch_id), len(not_found)
        )
        self.audit.set_request_context(f"{batch_id}-retry")
        try:
            results = await self._run_chunks(records, options)
        finally:
            self.audit.clear_request_context()

        # Fold the new results into the stored snapshot
        snapshot = entry['snapshot']
        stored = {r['update_id']: r for r in snapshot.get('results', [])}
        for result in results:
            stored[result.update_id] = result.to_dict()
        order = [str(raw.get('update_id', '')) for raw in payload.get('card_updates', [])]
        merged = [stored[uid] for uid in dict.fromkeys(order) if uid in stored]
        snapshot['results'] = merged
        snapshot['processed_records'] = len(merged)
        snapshot['summary'] = summarize_result_dicts(merged, snapshot.get('total_records', len(order)))
        snapshot['last_retry_at'] = self.clock().isoformat()
        await self.store.save_batch(batch_id, CARD_BATCH, snapshot)

        retry_results = [r.to_dict() for r in results]
        retry_results.extend(
            {'update_id': uid, 'processing_status': 'NOT_FOUND'} for uid in not_found
        )
        return {
            'batch_id': batch_id,
            'retried': len(results),
            'not_found': not_found,
            'summary': summarize_result_dicts([r.to_dict() for r in results], len(results)),
            'results': retry_results,
        }

    def validate_only(self, card_updates: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Validate, score and decide without touching the vault"""
        now = self.clock()
        validation_results = []
        for raw in card_updates:
            record = CardUpdateRecord.from_dict(raw)
            validation = assess_card_update(
                record,
                now=now,
                validation_config=self.config.validation,
                risk_config=self.config.risk,
                policy_config=self.config.policy,
            )
            validation_results.append({
                'update_id': record.update_id,
                'customer_vault_id': record.vault_id,
                'validation_result': validation.to_dict(),
            })

        def count(predicate):
            return sum(1 for r in validation_results if predicate(r['validation_result']))

        return {
            'summary': {
                'total_validated': len(validation_results),
                'valid_updates': count(lambda v: v['is_valid']),
                'invalid_updates': count(lambda v: not v['is_valid']),
                'high_confidence': count(lambda v: v['confidence_assessment'] == 'high'),
                'medium_confidence': count(lambda v: v['confidence_assessment'] == 'medium'),
                'low_confidence': count(lambda v: v['confidence_assessment'] == 'low'),
            },
            'validation_results': validation_results,
        }

    # ------------------------------------------------------------------
    # Vault exports
    # ------------------------------------------------------------------

    async def process_vault_export(
        self,
        export_data: Dict[str, Any],
        options: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Validate and store vault records, then apply ACU updates and deltas

        Raises:
            RecordCountMismatchError: ``total_records`` differs from the records sent
        """
        options = options or {}
        export_id = str(export_data.get('export_id', ''))
        vault_records = list(export_data.get('vault_records') or [])
        declared = int(export_data.get('total_records', len(vault_records)))

        if len(vault_records) != declared:
            raise RecordCountMismatchError(declared, len(vault_records))
        if len(vault_records) > self.config.batch.max_batch_size:
            raise BatchValidationError(
                f"Export of {len(vault_records)} records exceeds the maximum of "
                f"{self.config.batch.max_batch_size}",
                code="BATCH_TOO_LARGE",
            )

        started_at = self.clock().isoformat()
        self.audit.set_request_context(export_id)
        try:
            await self.store.save_batch(export_id, VAULT_EXPORT, {
                'export_id': export_id,
                'status': "RUNNING",
                'started_at': started_at,
                'total_records': declared,
            })
            return await self._run_export(
                export_id, export_data, vault_records, options, started_at
            )
        except Exception as e:
            logger.error(
                "Vault export %s aborted: %s",
                sanitize_for_logging(export_id), sanitize_for_logging(e)
            )
            await self._save_failed_export(export_id, started_at, declared, e)
            raise
        finally:
            self.audit.clear_request_context()

    async def _run_export(
        self,
        export_id: str,
        export_data: Dict[str, Any],
        vault_records: List[Dict[str, Any]],
        options: Dict[str, Any],
        started_at: str
    ) -> Dict[str, Any]:
        notification_settings = options.get('notification_settings') or {}
        validate_only = bool(options.get('validate_only', False))
        declared = len(vault_records)

        records_result = await self._process_vault_records(
            export_id,
            vault_records,
            validate_only,
            notify_high_risk=bool(notification_settings.get('notify_on_high_risk', True)),
        )

        acu_updates = list(export_data.get('acu_updates') or [])
        acu_result = await self._process_acu_updates(
            export_id,
            acu_updates,
            apply=bool(options.get('apply_acu_updates', True)) and not validate_only,
            notify=bool(notification_settings.get('notify_on_acu_updates', True)),
        )
        acu_errors = acu_result.pop('errors')

        delta_changes = list(export_data.get('delta_changes') or [])
        if delta_changes and options.get('process_deltas', True) and not validate_only:
            delta_summary = await self.reconciler.reconcile(
                [DeltaChange.from_dict(c) for c in delta_changes]
            )
        else:
            delta_summary = DeltaSummary()

        validation_errors = (
            records_result['validation_errors'] + acu_errors + delta_summary.review_items
        )

        successful = records_result['successful']
        failed = records_result['failed']
        if failed == 0:
            processing_status = "SUCCESS"
        elif successful > 0:
            processing_status = "PARTIAL"
        else:
            processing_status = "FAILED"

        batch_cfg = self.config.batch
        result = {
            'export_id': export_id,
            'processing_status': processing_status,
            'total_processed': successful + failed,
            'successful_records': successful,
            'failed_records': failed,
            'acu_updates_applied': acu_result['successful_updates'],
            'delta_changes_processed': delta_summary.total_changes,
            'validation_errors': validation_errors[:batch_cfg.max_validation_errors],
            'risk_flags': records_result['risk_flags'][:batch_cfg.max_risk_flags],
            'processing_summary': records_result['summary'],
            'acu_summary': acu_result,
            'delta_summary': delta_summary.to_dict(),
            'processed_at': self.clock().isoformat(),
        }

        snapshot = dict(result)
        snapshot.update({
            'status': "COMPLETED" if processing_status == "SUCCESS" else "COMPLETED_WITH_ERRORS",
            'started_at': started_at,
            'completed_at': result['processed_at'],
            'total_records': declared,
            'processed_records': successful + failed,
            'validate_only': validate_only,
        })
        await self.store.save_batch(export_id, VAULT_EXPORT, snapshot)
        logger.info(
            "Vault export %s processed: %s (%d ok, %d failed, %d ACU applied, %d deltas)",
            sanitize_for_logging(export_id), processing_status, successful, failed,
            acu_result['successful_updates'], delta_summary.total_changes
        )
        return result

    async def _process_vault_records(
        self,
        export_id: str,
        vault_records: List[Dict[str, Any]],
        validate_only: bool,
        notify_high_risk: bool
    ) -> Dict[str, Any]:
        now = self.clock()
        successful = 0
        failed = 0
        validation_errors: List[str] = []
        risk_flags: List[str] = []
        summary = {'new_vaults': 0, 'updated_vaults': 0, 'disabled_vaults': 0, 'high_risk_vaults': 0}

        for raw in vault_records:
            record = VaultRecord.from_dict(raw)
            validation = validate_vault_record(record, now=now, risk_config=self.config.risk)
            if not validation.is_valid:
                failed += 1
                label = record.vault_id or '<missing id>'
                validation_errors.extend(f"{label}: {err}" for err in validation.errors)
                continue

            if validation.risk_score > self.config.risk.high_risk_threshold:
                summary['high_risk_vaults'] += 1
                risk_flags.append(f"High risk vault: {record.vault_id}")
                if notify_high_risk:
                    await self._send_quietly(
                        build_high_risk_alert(export_id, record.vault_id, validation.risk_score)
                    )

            if not validate_only:
                record.risk_assessment.risk_score = validation.risk_score
                record.risk_assessment.last_assessed = now.isoformat()
                try:
                    async with self.store.record_lock(record.vault_id):
                        await self.store.put_vault(record)
                except VaultStoreError as e:
                    failed += 1
                    validation_errors.append(f"{record.vault_id}: Vault store error: {e}")
                    logger.error(
                        "Could not store vault %s from export %s: %s",
                        sanitize_for_logging(record.vault_id),
                        sanitize_for_logging(export_id),
                        sanitize_for_logging(e),
                    )
                    continue

            change_type = record.delta_info.change_type
            if change_type == "new":
                summary['new_vaults'] += 1
            elif change_type == "updated":
                summary['updated_vaults'] += 1
            elif record.status == VaultStatus.DISABLED.value:
                summary['disabled_vaults'] += 1
            successful += 1

        return {
            'successful': successful,
            'failed': failed,
            'validation_errors': validation_errors,
            'risk_flags': risk_flags,
            'summary': summary,
        }

    async def _process_acu_updates(
        self,
        export_id: str,
        acu_updates: List[Dict[str, Any]],
        apply: bool,
        notify: bool
    ) -> Dict[str, Any]:
        result = {
            'total_acu_updates': len(acu_updates),
            'successful_updates': 0,
            'failed_updates': 0,
            'held_updates': 0,
            'confidence_distribution': {level.value: 0 for level in Confidence},
            'update_types': {name: 0 for name in ACU_TYPE_COUNTERS.values()},
            'errors': [],
        }

        accepted = []
        for index, update in enumerate(acu_updates):
            errors = validate_acu_update(update, self.config.validation)
            if errors:
                result['failed_updates'] += 1
                vault_id = sanitize_for_logging(update.get('customer_vault_id')) or '<missing id>'
                result['errors'].append(f"ACU update for {vault_id}: {'; '.join(errors)}")
                logger.warning("ACU update for vault %s rejected: %s", vault_id, "; ".join(errors))
                continue
            result['update_types'][ACU_TYPE_COUNTERS[update['update_type']]] += 1
            bucket = acu_confidence_bucket(int(update.get('confidence_level', 0)))
            result['confidence_distribution'][bucket.value] += 1
            accepted.append((index, update))

        if not apply:
            return result

        records = []
        for index, update in accepted:
            vault_id = str(update['customer_vault_id'])
            try:
                current = await self.store.get_vault(vault_id)
            except VaultStoreError as e:
                result['failed_updates'] += 1
                result['errors'].append(f"ACU update for {vault_id}: Vault store error: {e}")
                logger.error(
                    "Vault %s unavailable for ACU update: %s",
                    sanitize_for_logging(vault_id), sanitize_for_logging(e)
                )
                continue
            records.append(acu_to_card_update(export_id, index, update, current))

        options = CardProcessingOptions(send_update_notifications=notify)
        for processed in await self._run_chunks(records, options):
            if processed.status == ProcessingStatus.SUCCESS:
                result['successful_updates'] += 1
            elif processed.status == ProcessingStatus.FAILED:
                result['failed_updates'] += 1
            else:
                result['held_updates'] += 1
        return result

    async def _save_failed_export(
        self,
        export_id: str,
        started_at: str,
        declared: int,
        error: Exception
    ) -> None:
        """Leave a FAILED snapshot behind instead of a RUNNING one"""
        try:
            await self.store.save_batch(export_id, VAULT_EXPORT, {
                'export_id': export_id,
                'status': "FAILED",
                'processing_status': "FAILED",
                'started_at': started_at,
                'completed_at': self.clock().isoformat(),
                'total_records': declared,
                'error': sanitize_for_logging(error),
            })
        except VaultStoreError as e:
            logger.error(
                "Could not record failure of export %s: %s",
                sanitize_for_logging(export_id), sanitize_for_logging(e)
            )

    async def _send_quietly(self, notification) -> None:
        try:
            await self.dispatcher.send(notification)
        except Exception as e:
            logger.warning(
                "Notification %s could not be sent: %s",
                notification.notification_type, sanitize_for_logging(e)
            )

    async def get_export_status(self, export_id: str) -> Dict[str, Any]:
        entry = await self.store.get_batch(export_id, VAULT_EXPORT)
        if entry is None:
            raise BatchNotFoundError(f"Vault export not found: {export_id}")
        return entry['snapshot']

    async def check_vault_integrity(self, vault_ids: List[str]) -> Dict[str, Any]:
        """Inspect stored vault records for problems that block billing"""
        now = self.clock()
        results = []
        for vault_id in vault_ids:
            record = await self.store.get_vault(vault_id)
            if record is None:
                results.append({
                    'vault_id': vault_id,
                    'integrity_score': 0,
                    'status': "NOT_FOUND",
                    'issues': ["Vault record not found"],
                })
                continue

            issues = []
            payment = record.payment_method
            if payment is None:
                issues.append("Missing payment method")
            else:
                if payment.type == "credit_card" and not is_future_expiry(parse_mmyy(payment.cc_exp), now):
                    issues.append("Expired payment method")
                if not payment.billing_address:
                    issues.append("Missing billing address")
            if record.risk_assessment.risk_score > self.config.risk.high_risk_threshold:
                issues.append("Risk score elevated")

            results.append({
                'vault_id': vault_id,
                'integrity_score': max(0, 100 - 25 * len(issues)),
                'status': "NEEDS_ATTENTION" if issues else "VALID",
                'issues': issues,
            })

        scores = [r['integrity_score'] for r in results]
        return {
            'summary': {
                'total_validated': len(results),
                'valid_vaults': sum(1 for r in results if r['status'] == "VALID"),
                'needs_attention': sum(1 for r in results if r['status'] != "VALID"),
                'avg_integrity_score': round(sum(scores) / len(scores)) if scores else 0,
            },
            'validation_results': results,
            'validated_at': now.isoformat(),
        }


def acu_to_card_update(
    export_id: str,
    index: int,
    update: Dict[str, Any],
    current: Optional[VaultRecord]
) -> CardUpdateRecord:
    """Express an ACU update from a vault export as a card update record

    The update id is derived from the export id and position so that
    resubmitting the same export is idempotent.
    """
    vault_id = str(update.get('customer_vault_id', ''))
    old_data = update.get('old_data') or {}
    new_data = update.get('new_data') or {}
    payment = current.payment_method if current else None

    current_last_four = ""
    if payment and payment.cc_number_masked:
        current_last_four = payment.cc_number_masked[-4:]
    old_exp = old_data.get('cc_exp') or (payment.cc_exp if payment else None) or ""
    old_last_four = old_data.get('cc_number_last_four') or current_last_four
    new_exp = new_data.get('cc_exp') or old_exp
    new_last_four = new_data.get('cc_number_last_four') or old_last_four

    def split(mmyy: str):
        if len(mmyy) != 4:
            return "", ""
        return mmyy[:2], f"20{mmyy[2:]}"

    old_month, old_year = split(old_exp)
    new_month, new_year = split(new_exp)
    card_type = (payment.cc_type if payment else None) or ""
    confidence = int(update.get('confidence_level', 0))

    return CardUpdateRecord(
        update_id=f"{export_id}:{vault_id}:{index}",
        vault_id=vault_id,
        customer_id=current.customer_id if current else "",
        previous_card=CardDetails(
            last_four=old_last_four, exp_month=old_month, exp_year=old_year, card_type=card_type
        ),
        updated_card=CardDetails(
            last_four=new_last_four,
            exp_month=new_month,
            exp_year=new_year,
            card_type=card_type,
            update_confidence=confidence,
        ),
        update_details=UpdateDetails(
            update_type=UpdateType.normalize(update.get('update_type')),
            update_reason=update.get('update_source'),
            confidence_level=acu_confidence_bucket(confidence).value,
        ),
        customer_info=CustomerInfo.from_dict(current.customer_info if current else None),
    )
