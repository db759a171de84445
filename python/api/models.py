"""
Pydantic request/response schemas for the Vault Reconciliation API

Request bodies are checked for shape here. Record-level problems (missing
expiry, unknown update type, ...) are not rejected by the schema; they are
reported per record in the processing results.
"""

from enum import Enum
from typing import List, Optional, Dict, Any

from pydantic import BaseModel, ConfigDict, Field


class _WireModel(BaseModel):
    """Base for wire records: unknown keys are kept, numbers accepted for strings"""
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)


# ============================================
# CARD UPDATES
# ============================================

class CardInfo(_WireModel):
    last_four: Optional[str] = None
    exp_month: Optional[str] = None
    exp_year: Optional[str] = None
    card_type: Optional[str] = None
    issuer: Optional[str] = None
    update_confidence: Optional[int] = Field(default=None, ge=0, le=100)


class UpdateDetailsIn(_WireModel):
    update_type: Optional[str] = None
    requires_validation: bool = False
    update_reason: Optional[str] = None
    confidence_level: Optional[str] = None


class CustomerInfoIn(_WireModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    billing_address: Optional[Dict[str, Any]] = None


class TransactionContextIn(_WireModel):
    recent_failed_attempts: int = Field(default=0, ge=0)
    last_transaction_amount: Optional[float] = None
    subscription_status: Optional[str] = None
    last_successful_transaction: Optional[str] = None


class RiskIndicatorsIn(_WireModel):
    fraud_score: int = Field(default=0, ge=0, le=100)
    risk_flags: List[str] = Field(default_factory=list)
    requires_manual_review: bool = False
    compliance_notes: Optional[str] = None


class CardUpdate(_WireModel):
    """One card updater notification"""
    update_id: Optional[str] = None
    customer_vault_id: Optional[str] = None
    customer_id: Optional[str] = None
    previous_card: Optional[CardInfo] = None
    updated_card: Optional[CardInfo] = None
    update_details: Optional[UpdateDetailsIn] = None
    customer_info: Optional[CustomerInfoIn] = None
    transaction_context: Optional[TransactionContextIn] = None
    risk_indicators: Optional[RiskIndicatorsIn] = None


class BatchInfo(_WireModel):
    batch_id: str = Field(..., min_length=1, max_length=200)
    source: Optional[str] = None
    processing_date: Optional[str] = None
    total_cards: int = Field(..., ge=0)
    batch_type: Optional[str] = None


class CardProcessingOptionsIn(BaseModel):
    auto_update_high_confidence: bool = True
    require_customer_verification: bool = False
    pause_billing_during_update: bool = True
    send_update_notifications: bool = True
    backup_previous_data: bool = True


class CardUpdatesRequest(BaseModel):
    """Request schema for card update batch processing"""
    batch_info: BatchInfo
    card_updates: List[CardUpdate]
    processing_options: CardProcessingOptionsIn = Field(default_factory=CardProcessingOptionsIn)


class RetryRequest(BaseModel):
    batch_id: str = Field(..., min_length=1)
    update_ids: List[str] = Field(..., min_length=1)


class ValidateRequest(BaseModel):
    card_updates: List[CardUpdate]


# ============================================
# VAULT EXPORTS
# ============================================

class ExportType(str, Enum):
    FULL = "full"
    DELTA = "delta"
    ACU_UPDATE = "acu_update"
    MANUAL = "manual"


class AcuUpdateIn(_WireModel):
    customer_vault_id: Optional[str] = None
    update_type: Optional[str] = None
    old_data: Dict[str, Any] = Field(default_factory=dict)
    new_data: Dict[str, Any] = Field(default_factory=dict)
    update_source: Optional[str] = None
    confidence_level: Optional[int] = None


class DeltaChangeIn(_WireModel):
    record_id: Optional[str] = None
    change_type: Optional[str] = None
    timestamp: Optional[str] = None
    changed_fields: Dict[str, Any] = Field(default_factory=dict)
    change_source: Optional[str] = None
    table_name: Optional[str] = None


class ExportData(_WireModel):
    export_id: str = Field(..., min_length=1, max_length=200)
    export_date: Optional[str] = None
    export_type: ExportType = ExportType.FULL
    source_vault: Optional[str] = None
    total_records: int = Field(..., ge=0)
    vault_records: List[Dict[str, Any]] = Field(default_factory=list)
    acu_updates: List[AcuUpdateIn] = Field(default_factory=list)
    delta_changes: List[DeltaChangeIn] = Field(default_factory=list)


class NotificationSettings(BaseModel):
    notify_on_high_risk: bool = True
    notify_on_acu_updates: bool = True


class ExportProcessingOptions(BaseModel):
    validate_only: bool = False
    apply_acu_updates: bool = True
    process_deltas: bool = True
    auto_approve_low_risk: bool = False
    notification_settings: NotificationSettings = Field(default_factory=NotificationSettings)


class VaultExportRequest(BaseModel):
    """Request schema for vault export processing"""
    export_data: ExportData
    processing_options: ExportProcessingOptions = Field(default_factory=ExportProcessingOptions)


class IntegrityRequest(BaseModel):
    vault_ids: List[str] = Field(..., min_length=1, max_length=1000)


# ============================================
# RESPONSES
# ============================================

class HealthResponse(BaseModel):
    """Response schema for health check."""
    status: str = Field(..., description="Service status (healthy, degraded, error)")
    store_backend: str = Field(..., description="Configured vault store backend")
    store_available: bool = Field(..., description="Whether the vault store answered")
    version: str = Field(..., description="Engine version")
    accepting_batches: bool = Field(default=True, description="False while shutting down")
    memory_usage_mb: Optional[float] = Field(default=None, description="Process memory in MB")
    uptime_seconds: Optional[int] = Field(default=None, description="Seconds since startup")
    error_message: Optional[str] = Field(default=None, description="Error details when status is error")


class ErrorDetail(BaseModel):
    """Error detail for API responses."""
    code: str = Field(..., description="Error code for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    field: Optional[str] = Field(default=None, description="Field that caused the error")
    suggestion: Optional[str] = Field(default=None, description="How to fix the error")
    details: Optional[Any] = Field(default=None, description="Structured error details")
    timestamp: str = Field(..., description="ISO 8601 timestamp of the error")


class ErrorResponse(BaseModel):
    """Standardized error response."""
    error: ErrorDetail
