"""
Exceptions raised by the reconciliation engine.

Record-level problems never raise: they are reported inside a
ProcessingResult. Only batch-level faults and store faults surface as
exceptions.
"""

from typing import Any, List, Optional


class ReconciliationError(Exception):
    """Base exception for engine errors."""
    pass


class BatchValidationError(ReconciliationError, ValueError):
    """Raised when a batch as a whole cannot be processed

    Attributes:
        code: Error code for programmatic handling
        details: Individual violations (e.g. duplicated update ids)
        suggestion: Optional suggestion for fixing the batch
    """
    def __init__(
        self,
        message: str,
        code: str = "BATCH_VALIDATION_ERROR",
        details: Optional[List[Any]] = None,
        suggestion: str = ""
    ):
        self.code = code
        self.details = details or []
        self.suggestion = suggestion
        super().__init__(message)


class RecordCountMismatchError(BatchValidationError):
    """Declared batch size does not match the number of records received."""

    def __init__(self, expected: int, received: int, label: str = "Record"):
        self.expected = expected
        self.received = received
        super().__init__(
            f"{label} count mismatch. Expected {expected}, got {received}",
            code="RECORD_COUNT_MISMATCH",
            suggestion="Resubmit the batch with a total matching the records sent",
        )


class BatchNotFoundError(ReconciliationError, LookupError):
    """Raised when a batch or export id has no stored snapshot."""
    pass


class VaultStoreError(ReconciliationError):
    """Raised when the vault store cannot complete an operation."""
    pass


class VaultRecordNotFound(VaultStoreError, LookupError):
    """Raised when a vault record does not exist in the store."""

    def __init__(self, vault_id: str):
        self.vault_id = vault_id
        super().__init__(f"Vault record not found: {vault_id}")


class ApplicationFault(ReconciliationError):
    """Raised when a step of applying a card update fails

    Attributes:
        step: Sub-step that failed (backup, write, billing)
    """
    def __init__(self, step: str, message: str):
        self.step = step
        super().__init__(f"{step} failed: {message}")
