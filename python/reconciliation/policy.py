"""
Action policy: maps a scored validation result onto a decision, and the
decision onto a processing status and notification kind.
"""

from datetime import datetime
from typing import Optional

from config_manager import PolicyConfig, RiskConfig, ValidationConfig
from .records import (
    CardProcessingOptions,
    CardUpdateRecord,
    Confidence,
    ProcessingStatus,
    RecommendedAction,
    UpdateType,
    ValidationResult,
)
from .risk import score_card_update
from .validator import validate_card_update


class NotificationType:
    CARD_UPDATED = "card_updated_successfully"
    ACCOUNT_CLOSED = "card_account_closed"
    VERIFICATION_NEEDED = "card_update_verification_needed"
    UPDATE_FAILED = "card_update_failed"


def decide(
    validation: ValidationResult,
    requires_validation: bool = False,
    config: Optional[PolicyConfig] = None
) -> RecommendedAction:
    """Pick an action; the first matching rule wins

    1. any error -> reject
    2. record asks for validation, or confidence is low -> verify_with_customer
    3. too many warnings, or risk above the review threshold -> review
    4. otherwise -> apply
    """
    cfg = config or PolicyConfig()
    if validation.errors:
        return RecommendedAction.REJECT
    if requires_validation or validation.confidence_assessment == Confidence.LOW:
        return RecommendedAction.VERIFY_WITH_CUSTOMER
    if len(validation.warnings) > cfg.max_warnings or validation.risk_score > cfg.review_risk_threshold:
        return RecommendedAction.REVIEW
    return RecommendedAction.APPLY


def assess_card_update(
    record: CardUpdateRecord,
    now: Optional[datetime] = None,
    validation_config: Optional[ValidationConfig] = None,
    risk_config: Optional[RiskConfig] = None,
    policy_config: Optional[PolicyConfig] = None
) -> ValidationResult:
    """Validate, score and decide for one card update. No side effects."""
    validation = validate_card_update(record, now=now, config=validation_config)
    score_card_update(record, validation, config=risk_config)
    validation.recommended_action = decide(
        validation,
        requires_validation=record.update_details.requires_validation,
        config=policy_config,
    )
    return validation


def status_for_action(
    action: RecommendedAction,
    options: Optional[CardProcessingOptions] = None
) -> ProcessingStatus:
    """Map a decision onto the status the record will end with

    APPLY maps to SUCCESS only provisionally; the application outcome
    decides between SUCCESS and FAILED.
    """
    options = options or CardProcessingOptions()
    if action == RecommendedAction.REJECT:
        return ProcessingStatus.FAILED
    if action == RecommendedAction.REVIEW:
        return ProcessingStatus.PENDING_REVIEW
    if action == RecommendedAction.VERIFY_WITH_CUSTOMER:
        return ProcessingStatus.REQUIRES_VALIDATION
    if options.require_customer_verification:
        return ProcessingStatus.REQUIRES_VALIDATION
    if not options.auto_update_high_confidence:
        return ProcessingStatus.PENDING_REVIEW
    return ProcessingStatus.SUCCESS


def next_action_for(status: ProcessingStatus, action: RecommendedAction) -> Optional[str]:
    if status == ProcessingStatus.FAILED and action == RecommendedAction.REJECT:
        return "Fix validation errors and retry"
    if status == ProcessingStatus.PENDING_REVIEW:
        return "Manual review required"
    if status == ProcessingStatus.REQUIRES_VALIDATION:
        return "Customer verification required"
    return None


def determine_notification_type(
    record: CardUpdateRecord,
    status: ProcessingStatus
) -> Optional[str]:
    """Which customer notification, if any, a final status warrants"""
    if status == ProcessingStatus.SUCCESS:
        if record.update_type == UpdateType.ACCOUNT_CLOSURE.value:
            return NotificationType.ACCOUNT_CLOSED
        return NotificationType.CARD_UPDATED
    if status == ProcessingStatus.REQUIRES_VALIDATION:
        return NotificationType.VERIFICATION_NEEDED
    return None
