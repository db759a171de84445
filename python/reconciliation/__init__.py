"""
Vault Reconciliation Engine

Validates, scores and applies automated card updater notifications and
vault-export deltas against a stored payment credential vault.
"""

from .application import ApplicationEngine
from .delta import DeltaReconciler
from .errors import (
    ApplicationFault,
    BatchNotFoundError,
    BatchValidationError,
    ReconciliationError,
    RecordCountMismatchError,
    VaultRecordNotFound,
    VaultStoreError,
)
from .notifications import LoggingNotificationDispatcher, Notification, NotificationDispatcher
from .orchestrator import BatchOrchestrator
from .policy import assess_card_update, decide
from .records import (
    BatchSummary,
    CardProcessingOptions,
    CardUpdateRecord,
    Confidence,
    DeltaChange,
    DeltaSummary,
    ProcessingResult,
    ProcessingStatus,
    RecommendedAction,
    ValidationResult,
    VaultRecord,
)
from .risk import score_card_update
from .store import InMemoryVaultStore, VaultStore
from .validator import validate_card_update, validate_vault_record

__all__ = [
    'ApplicationEngine',
    'ApplicationFault',
    'BatchNotFoundError',
    'BatchOrchestrator',
    'BatchSummary',
    'BatchValidationError',
    'CardProcessingOptions',
    'CardUpdateRecord',
    'Confidence',
    'DeltaChange',
    'DeltaReconciler',
    'DeltaSummary',
    'InMemoryVaultStore',
    'LoggingNotificationDispatcher',
    'Notification',
    'NotificationDispatcher',
    'ProcessingResult',
    'ProcessingStatus',
    'RecommendedAction',
    'ReconciliationError',
    'RecordCountMismatchError',
    'ValidationResult',
    'VaultRecord',
    'VaultRecordNotFound',
    'VaultStore',
    'VaultStoreError',
    'assess_card_update',
    'decide',
    'score_card_update',
    'validate_card_update',
    'validate_vault_record',
]
