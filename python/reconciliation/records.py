"""
Record types for the Vault Reconciliation Engine

Plain dataclasses shared by every component. Each type can be built from the
wire dictionaries used by the batch endpoints (``from_dict``) and rendered
back (``to_dict``). Parsing is lenient on purpose: missing values become empty
strings or zeros so that the validator can report them as record errors
instead of the batch failing to parse.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


# ============================================
# ENUMS
# ============================================

class Confidence(str, Enum):
    """Qualitative trust level in an incoming update"""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _CONFIDENCE_RANK[self]

    def downgrade_to(self, ceiling: 'Confidence') -> 'Confidence':
        """Return the lower of this level and ``ceiling``."""
        return self if self.rank <= ceiling.rank else ceiling

    def step_down(self) -> 'Confidence':
        """Lower by one level, flooring at LOW."""
        if self is Confidence.HIGH:
            return Confidence.MEDIUM
        return Confidence.LOW


_CONFIDENCE_RANK = {Confidence.LOW: 0, Confidence.MEDIUM: 1, Confidence.HIGH: 2}


class RecommendedAction(str, Enum):
    """Decision produced by the action policy"""
    APPLY = "apply"
    REVIEW = "review"
    REJECT = "reject"
    VERIFY_WITH_CUSTOMER = "verify_with_customer"


class ProcessingStatus(str, Enum):
    """Final status of one card update"""
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PENDING_REVIEW = "PENDING_REVIEW"
    REQUIRES_VALIDATION = "REQUIRES_VALIDATION"


class UpdateType(str, Enum):
    """Kind of change reported by the card updater"""
    EXPIRY_DATE_CHANGE = "expiry_date_change"
    CARD_REISSUE = "card_reissue"
    ACCOUNT_CLOSURE = "account_closure"
    ISSUER_UPDATE = "issuer_update"
    CUSTOMER_UPDATE = "customer_update"

    @classmethod
    def normalize(cls, value: Optional[str]) -> str:
        """Map aliases onto canonical values; unknown values pass through."""
        if not value:
            return ""
        text = str(value).strip().lower()
        return _UPDATE_TYPE_ALIASES.get(text, text)


_UPDATE_TYPE_ALIASES = {
    "expiry_change": UpdateType.EXPIRY_DATE_CHANGE.value,
    "expiry_update": UpdateType.EXPIRY_DATE_CHANGE.value,
    "reissue": UpdateType.CARD_REISSUE.value,
    "number_update": UpdateType.CARD_REISSUE.value,
}


class VaultStatus(str, Enum):
    """Lifecycle status of a stored credential"""
    ACTIVE = "active"
    DISABLED = "disabled"
    EXPIRED = "expired"
    PENDING_UPDATE = "pending_update"


class BillingStatus(str, Enum):
    """Billing state attached to a vault record"""
    ACTIVE = "active"
    PAUSED = "paused"
    SUSPENDED = "suspended"


class DeltaChangeType(str, Enum):
    """Raw change kinds found in vault-export deltas"""
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class SubscriptionImpact(str, Enum):
    NO_IMPACT = "no_impact"
    BILLING_SUSPENDED = "billing_suspended"
    BILLING_PAUSED_TEMPORARILY = "billing_paused_temporarily"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _str(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


# ============================================
# CARD UPDATES
# ============================================

@dataclass
class CardDetails:
    """Card as known before or after an update"""
    last_four: str = ""
    exp_month: str = ""
    exp_year: str = ""
    card_type: str = ""
    issuer: Optional[str] = None
    update_confidence: int = 0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'CardDetails':
        data = data or {}
        return cls(
            last_four=_str(data.get('last_four')),
            exp_month=_str(data.get('exp_month')),
            exp_year=_str(data.get('exp_year')),
            card_type=_str(data.get('card_type')),
            issuer=data.get('issuer'),
            update_confidence=_int(data.get('update_confidence'), 0),
        )

    @property
    def exp_mmyy(self) -> str:
        """Expiry in the vault's MMYY format"""
        if not self.exp_month or not self.exp_year:
            return ""
        return f"{self.exp_month.zfill(2)}{self.exp_year[-2:]}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'last_four': self.last_four,
            'exp_month': self.exp_month,
            'exp_year': self.exp_year,
            'card_type': self.card_type,
            'issuer': self.issuer,
            'update_confidence': self.update_confidence,
        }


@dataclass
class UpdateDetails:
    update_type: str = ""
    requires_validation: bool = False
    update_reason: Optional[str] = None
    confidence_level: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'UpdateDetails':
        data = data or {}
        return cls(
            update_type=UpdateType.normalize(data.get('update_type')),
            requires_validation=bool(data.get('requires_validation', False)),
            update_reason=data.get('update_reason'),
            confidence_level=data.get('confidence_level'),
        )


@dataclass
class CustomerInfo:
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: Optional[str] = None
    billing_address: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'CustomerInfo':
        data = data or {}
        return cls(
            first_name=_str(data.get('first_name')),
            last_name=_str(data.get('last_name')),
            email=_str(data.get('email')),
            phone=data.get('phone'),
            billing_address=dict(data.get('billing_address') or {}),
        )

    @property
    def name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class TransactionContext:
    recent_failed_attempts: int = 0
    last_transaction_amount: Optional[float] = None
    subscription_status: Optional[str] = None
    last_successful_transaction: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'TransactionContext':
        data = data or {}
        return cls(
            recent_failed_attempts=_int(data.get('recent_failed_attempts'), 0),
            last_transaction_amount=data.get('last_transaction_amount'),
            subscription_status=data.get('subscription_status'),
            last_successful_transaction=data.get('last_successful_transaction'),
        )


@dataclass
class RiskIndicators:
    fraud_score: int = 0
    risk_flags: List[str] = field(default_factory=list)
    requires_manual_review: bool = False
    compliance_notes: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'RiskIndicators':
        data = data or {}
        return cls(
            fraud_score=_int(data.get('fraud_score'), 0),
            risk_flags=list(data.get('risk_flags') or []),
            requires_manual_review=bool(data.get('requires_manual_review', False)),
            compliance_notes=data.get('compliance_notes'),
        )


@dataclass
class CardUpdateRecord:
    """One card updater notification for a stored credential"""
    update_id: str
    vault_id: str
    customer_id: str = ""
    previous_card: CardDetails = field(default_factory=CardDetails)
    updated_card: CardDetails = field(default_factory=CardDetails)
    update_details: UpdateDetails = field(default_factory=UpdateDetails)
    customer_info: CustomerInfo = field(default_factory=CustomerInfo)
    transaction_context: TransactionContext = field(default_factory=TransactionContext)
    risk_indicators: RiskIndicators = field(default_factory=RiskIndicators)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CardUpdateRecord':
        return cls(
            update_id=_str(data.get('update_id')),
            vault_id=_str(data.get('customer_vault_id')),
            customer_id=_str(data.get('customer_id')),
            previous_card=CardDetails.from_dict(data.get('previous_card')),
            updated_card=CardDetails.from_dict(data.get('updated_card')),
            update_details=UpdateDetails.from_dict(data.get('update_details')),
            customer_info=CustomerInfo.from_dict(data.get('customer_info')),
            transaction_context=TransactionContext.from_dict(data.get('transaction_context')),
            risk_indicators=RiskIndicators.from_dict(data.get('risk_indicators')),
        )

    @property
    def update_type(self) -> str:
        return self.update_details.update_type

    @property
    def last_four_changed(self) -> bool:
        return self.previous_card.last_four != self.updated_card.last_four

    @property
    def expiry_changed(self) -> bool:
        return (
            self.previous_card.exp_month != self.updated_card.exp_month
            or self.previous_card.exp_year != self.updated_card.exp_year
        )


@dataclass
class CardProcessingOptions:
    """Caller options for a card update batch"""
    auto_update_high_confidence: bool = True
    require_customer_verification: bool = False
    pause_billing_during_update: bool = True
    send_update_notifications: bool = True
    backup_previous_data: bool = True

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'CardProcessingOptions':
        data = data or {}
        defaults = cls()
        return cls(**{
            name: bool(data.get(name, getattr(defaults, name)))
            for name in defaults.__dataclass_fields__
        })

    def to_dict(self) -> Dict[str, bool]:
        return {name: getattr(self, name) for name in self.__dataclass_fields__}


# ============================================
# VAULT RECORDS
# ============================================

@dataclass
class PaymentMethod:
    type: str = "credit_card"
    cc_number_masked: Optional[str] = None
    cc_exp: Optional[str] = None  # MMYY
    cc_type: Optional[str] = None
    account_number_masked: Optional[str] = None
    routing_number: Optional[str] = None
    account_type: Optional[str] = None
    billing_address: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['PaymentMethod']:
        if not data:
            return None
        return cls(
            type=_str(data.get('type')) or "credit_card",
            cc_number_masked=data.get('cc_number_masked'),
            cc_exp=data.get('cc_exp'),
            cc_type=data.get('cc_type'),
            account_number_masked=data.get('account_number_masked'),
            routing_number=data.get('routing_number'),
            account_type=data.get('account_type'),
            billing_address=dict(data.get('billing_address') or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type,
            'cc_number_masked': self.cc_number_masked,
            'cc_exp': self.cc_exp,
            'cc_type': self.cc_type,
            'account_number_masked': self.account_number_masked,
            'routing_number': self.routing_number,
            'account_type': self.account_type,
            'billing_address': dict(self.billing_address),
        }


@dataclass
class AcuData:
    last_update_date: Optional[str] = None
    update_source: Optional[str] = None
    previous_exp_date: Optional[str] = None
    update_reason: Optional[str] = None
    update_confidence: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'AcuData':
        data = data or {}
        return cls(**{name: data.get(name) for name in cls.__dataclass_fields__})

    def to_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.__dataclass_fields__}


@dataclass
class DeltaInfo:
    change_type: Optional[str] = None  # new, updated, deleted, reactivated
    changed_fields: List[str] = field(default_factory=list)
    change_timestamp: Optional[str] = None
    change_source: Optional[str] = None
    previous_values: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'DeltaInfo':
        data = data or {}
        return cls(
            change_type=data.get('change_type'),
            changed_fields=list(data.get('changed_fields') or []),
            change_timestamp=data.get('change_timestamp'),
            change_source=data.get('change_source'),
            previous_values=dict(data.get('previous_values') or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'change_type': self.change_type,
            'changed_fields': list(self.changed_fields),
            'change_timestamp': self.change_timestamp,
            'change_source': self.change_source,
            'previous_values': dict(self.previous_values),
        }


@dataclass
class RiskAssessment:
    risk_score: int = 0
    risk_factors: List[str] = field(default_factory=list)
    compliance_flags: List[str] = field(default_factory=list)
    last_assessed: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'RiskAssessment':
        data = data or {}
        return cls(
            risk_score=_int(data.get('risk_score'), 0),
            risk_factors=list(data.get('risk_factors') or []),
            compliance_flags=list(data.get('compliance_flags') or []),
            last_assessed=data.get('last_assessed'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'risk_score': self.risk_score,
            'risk_factors': list(self.risk_factors),
            'compliance_flags': list(self.compliance_flags),
            'last_assessed': self.last_assessed,
        }


@dataclass
class TransactionSummary:
    total_transactions: int = 0
    successful_transactions: int = 0
    failed_transactions: int = 0
    last_transaction_date: Optional[str] = None
    total_amount: float = 0.0
    avg_transaction_amount: float = 0.0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'TransactionSummary':
        data = data or {}
        return cls(
            total_transactions=_int(data.get('total_transactions'), 0),
            successful_transactions=_int(data.get('successful_transactions'), 0),
            failed_transactions=_int(data.get('failed_transactions'), 0),
            last_transaction_date=data.get('last_transaction_date'),
            total_amount=float(data.get('total_amount') or 0),
            avg_transaction_amount=float(data.get('avg_transaction_amount') or 0),
        )

    @property
    def failure_rate(self) -> float:
        if self.total_transactions <= 0:
            return 0.0
        return self.failed_transactions / self.total_transactions

    def to_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.__dataclass_fields__}


@dataclass
class VaultRecord:
    """A stored, tokenized payment credential"""
    vault_id: str
    customer_id: str = ""
    status: str = VaultStatus.ACTIVE.value
    billing_status: str = BillingStatus.ACTIVE.value
    customer_info: Dict[str, Any] = field(default_factory=dict)
    payment_method: Optional[PaymentMethod] = None
    acu_data: AcuData = field(default_factory=AcuData)
    delta_info: DeltaInfo = field(default_factory=DeltaInfo)
    risk_assessment: RiskAssessment = field(default_factory=RiskAssessment)
    transaction_summary: TransactionSummary = field(default_factory=TransactionSummary)
    created_date: Optional[str] = None
    updated_date: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'VaultRecord':
        return cls(
            vault_id=_str(data.get('customer_vault_id')),
            customer_id=_str(data.get('customer_id')),
            status=_str(data.get('status')) or VaultStatus.ACTIVE.value,
            billing_status=_str(data.get('billing_status')) or BillingStatus.ACTIVE.value,
            customer_info=dict(data.get('customer_info') or {}),
            payment_method=PaymentMethod.from_dict(data.get('payment_method')),
            acu_data=AcuData.from_dict(data.get('acu_data')),
            delta_info=DeltaInfo.from_dict(data.get('delta_info')),
            risk_assessment=RiskAssessment.from_dict(data.get('risk_assessment')),
            transaction_summary=TransactionSummary.from_dict(data.get('transaction_summary')),
            created_date=data.get('created_date'),
            updated_date=data.get('updated_date'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'customer_vault_id': self.vault_id,
            'customer_id': self.customer_id,
            'status': self.status,
            'billing_status': self.billing_status,
            'customer_info': dict(self.customer_info),
            'payment_method': self.payment_method.to_dict() if self.payment_method else None,
            'acu_data': self.acu_data.to_dict(),
            'delta_info': self.delta_info.to_dict(),
            'risk_assessment': self.risk_assessment.to_dict(),
            'transaction_summary': self.transaction_summary.to_dict(),
            'created_date': self.created_date,
            'updated_date': self.updated_date,
        }

    def copy(self) -> 'VaultRecord':
        return VaultRecord.from_dict(self.to_dict())

    @property
    def last_modified(self) -> Optional[datetime]:
        """Most recent change timestamp known for this record"""
        candidates = [
            parse_timestamp(self.delta_info.change_timestamp),
            parse_timestamp(self.acu_data.last_update_date),
        ]
        known = [c for c in candidates if c is not None]
        return max(known) if known else None


# ============================================
# DELTAS
# ============================================

@dataclass
class DeltaChange:
    """A raw change notification from a vault export"""
    record_id: str
    change_type: str
    timestamp: str
    changed_fields: Dict[str, Any] = field(default_factory=dict)
    change_source: str = ""
    table_name: str = "customer_vault"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DeltaChange':
        return cls(
            record_id=_str(data.get('record_id')),
            change_type=_str(data.get('change_type')).upper(),
            timestamp=_str(data.get('timestamp')),
            changed_fields=dict(data.get('changed_fields') or {}),
            change_source=_str(data.get('change_source')),
            table_name=_str(data.get('table_name')) or "customer_vault",
        )

    @property
    def parsed_timestamp(self) -> Optional[datetime]:
        return parse_timestamp(self.timestamp)


@dataclass
class DeltaSummary:
    total_changes: int = 0
    inserts: int = 0
    updates: int = 0
    deletes: int = 0
    conflicts_resolved: int = 0
    manual_review_required: int = 0
    review_items: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_changes': self.total_changes,
            'inserts': self.inserts,
            'updates': self.updates,
            'deletes': self.deletes,
            'conflicts_resolved': self.conflicts_resolved,
            'manual_review_required': self.manual_review_required,
        }


# ============================================
# RESULTS
# ============================================

@dataclass
class ValidationResult:
    """Outcome of validation, scoring and policy for one record"""
    is_valid: bool
    confidence_assessment: Confidence = Confidence.HIGH
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    risk_score: int = 0
    recommended_action: RecommendedAction = RecommendedAction.APPLY

    def to_dict(self) -> Dict[str, Any]:
        return {
            'is_valid': self.is_valid,
            'confidence_assessment': self.confidence_assessment.value,
            'validation_errors': list(self.errors),
            'risk_warnings': list(self.warnings),
            'risk_score': self.risk_score,
            'recommended_action': self.recommended_action.value,
        }


@dataclass
class ApplicationOutcome:
    """Which application sub-steps completed for one card update"""
    vault_updated: bool = False
    backed_up: bool = False
    billing_status_changed: bool = False
    subscription_impact: str = SubscriptionImpact.NO_IMPACT.value
    rollback_available: bool = False
    already_applied: bool = False
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and (self.vault_updated or self.already_applied)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'vault_updated': self.vault_updated,
            'previous_data_backed_up': self.backed_up,
            'billing_status_updated': self.billing_status_changed,
            'subscription_impact': self.subscription_impact,
            'rollback_available': self.rollback_available,
            'already_applied': self.already_applied,
            'error': self.error,
        }


@dataclass(frozen=True)
class ProcessingResult:
    """Final, immutable outcome for one card update"""
    update_id: str
    vault_id: str
    status: ProcessingStatus
    validation: ValidationResult
    application_outcome: Optional[ApplicationOutcome] = None
    notification_sent: bool = False
    processed_at: str = field(default_factory=lambda: utc_now().isoformat())
    next_action: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'update_id': self.update_id,
            'customer_vault_id': self.vault_id,
            'processing_status': self.status.value,
            'validation_result': self.validation.to_dict(),
            'application_result': (
                self.application_outcome.to_dict() if self.application_outcome else None
            ),
            'notification_sent': self.notification_sent,
            'processed_at': self.processed_at,
            'next_action': self.next_action,
        }


@dataclass
class BatchSummary:
    """Aggregate of a processed card update batch"""
    batch_id: str
    total_records: int
    results: List[ProcessingResult] = field(default_factory=list)
    stopped: bool = False

    @property
    def total_processed(self) -> int:
        return len(self.results)

    @property
    def skipped(self) -> int:
        return self.total_records - len(self.results)

    def count(self, status: ProcessingStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def notifications_sent(self) -> int:
        return sum(1 for r in self.results if r.notification_sent)

    def counts(self) -> Dict[str, int]:
        return {
            'total_processed': self.total_processed,
            'successful_updates': self.count(ProcessingStatus.SUCCESS),
            'failed_updates': self.count(ProcessingStatus.FAILED),
            'pending_review': self.count(ProcessingStatus.PENDING_REVIEW),
            'requires_validation': self.count(ProcessingStatus.REQUIRES_VALIDATION),
            'notifications_sent': self.notifications_sent,
            'skipped': self.skipped,
        }

    def to_dict(self, preview: Optional[int] = None) -> Dict[str, Any]:
        results = self.results if preview is None else self.results[:preview]
        return {
            'batch_id': self.batch_id,
            'summary': self.counts(),
            'results': [r.to_dict() for r in results],
            'total_results': len(self.results),
            'stopped': self.stopped,
        }
