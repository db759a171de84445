"""
Record validation for card updates, vault records, ACU updates and deltas

All functions here are pure: they never touch the vault store and take the
processing time as an argument so that results are reproducible.
"""

import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from config_manager import RiskConfig, ValidationConfig
from .risk import clamp_score
from .records import (
    CardUpdateRecord,
    Confidence,
    DeltaChange,
    DeltaChangeType,
    UpdateType,
    ValidationResult,
    VaultRecord,
    utc_now,
)


MMYY_PATTERN = re.compile(r'^(\d{2})(\d{2})$')

ACU_UPDATE_TYPES = ('expiry_update', 'number_update', 'account_closure', 'reissue')


def parse_expiry(month: Any, year: Any) -> Optional[Tuple[int, int]]:
    """Parse an expiry month/year pair into ``(year, month)``

    Two-digit years are taken as 20YY. Returns None when either part is not
    an integer or the month is outside 1-12.
    """
    try:
        month_num = int(str(month).strip())
        year_num = int(str(year).strip())
    except (TypeError, ValueError):
        return None
    if not 1 <= month_num <= 12:
        return None
    if year_num < 100:
        year_num += 2000
    return year_num, month_num


def parse_mmyy(value: Optional[str]) -> Optional[Tuple[int, int]]:
    """Parse a vault MMYY expiry string into ``(year, month)``"""
    if not value:
        return None
    match = MMYY_PATTERN.match(str(value).strip())
    if not match:
        return None
    return parse_expiry(match.group(1), match.group(2))


def is_future_expiry(expiry: Optional[Tuple[int, int]], now: datetime) -> bool:
    """A card expiring in the current month is treated as already expired."""
    if expiry is None:
        return False
    return expiry > (now.year, now.month)


def validate_card_update(
    record: CardUpdateRecord,
    now: Optional[datetime] = None,
    config: Optional[ValidationConfig] = None
) -> ValidationResult:
    """Run structural and semantic checks on one card update

    Errors are fatal for the record, warnings are advisory. Confidence starts
    at HIGH and every rule can only lower it.

    Args:
        record: Card update to check
        now: Processing time, defaults to the current UTC time
        config: Validation thresholds

    Returns:
        ValidationResult with confidence, errors and warnings filled in.
        Risk score and recommended action are left to the scorer and policy.
    """
    now = now or utc_now()
    cfg = config or ValidationConfig()
    errors: List[str] = []
    warnings: List[str] = []
    confidence = Confidence.HIGH
    updated = record.updated_card

    if not record.update_id:
        errors.append("Missing update ID")
    if not record.vault_id:
        errors.append("Missing customer vault ID")
    if not updated.last_four:
        errors.append("Missing updated card last four digits")

    if not updated.exp_month or not updated.exp_year:
        errors.append("Missing updated expiry date")
    elif not is_future_expiry(parse_expiry(updated.exp_month, updated.exp_year), now):
        errors.append("New expiry date is invalid or in the past")

    valid_types = {t.value for t in UpdateType}
    if record.update_type and record.update_type not in valid_types:
        errors.append(f"Unknown update type: {record.update_type}")

    if record.last_four_changed and record.update_type != UpdateType.CARD_REISSUE.value:
        warnings.append("Card number changed but update type is not 'card_reissue'")
        confidence = confidence.step_down()

    # A closure carries no new card data
    closure = record.update_type == UpdateType.ACCOUNT_CLOSURE.value
    if not closure and not record.last_four_changed and not record.expiry_changed:
        warnings.append("No detectable changes in card information")
        confidence = Confidence.LOW

    if updated.update_confidence < cfg.low_confidence_threshold:
        warnings.append("Low confidence update from ACU service")
        confidence = Confidence.LOW
    elif updated.update_confidence < cfg.medium_confidence_threshold:
        confidence = confidence.downgrade_to(Confidence.MEDIUM)

    if record.risk_indicators.fraud_score > cfg.fraud_score_threshold:
        warnings.append("High fraud risk score detected")
        confidence = Confidence.LOW

    if record.transaction_context.recent_failed_attempts > cfg.max_recent_failures:
        warnings.append("Multiple recent failed transaction attempts")

    if closure:
        warnings.append("Account closure notification - billing should be suspended")

    return ValidationResult(
        is_valid=not errors,
        confidence_assessment=confidence,
        errors=errors,
        warnings=warnings,
    )


def validate_vault_record(
    record: VaultRecord,
    now: Optional[datetime] = None,
    risk_config: Optional[RiskConfig] = None
) -> ValidationResult:
    """Validate a vault record from an export and assess its risk

    The risk score starts from the record's own stored score and is raised
    for an expired card, compliance flags and a high transaction failure rate.
    """
    now = now or utc_now()
    risk = risk_config or RiskConfig()
    errors: List[str] = []
    warnings: List[str] = []
    score = record.risk_assessment.risk_score

    if not record.vault_id:
        errors.append("Missing customer vault ID")
    if not record.customer_id:
        errors.append("Missing customer ID")
    if not record.customer_info.get('email'):
        errors.append("Missing customer email")

    payment = record.payment_method
    if payment is None:
        errors.append("Missing payment method")
    elif payment.type == "credit_card":
        if not payment.cc_number_masked:
            errors.append("Missing masked credit card number")
        if not payment.cc_exp:
            errors.append("Missing credit card expiry")
        else:
            expiry = parse_mmyy(payment.cc_exp)
            if expiry is None:
                errors.append("Invalid credit card expiry format (expected MMYY)")
            elif not is_future_expiry(expiry, now):
                warnings.append("Credit card appears to be expired")
                score += risk.expired_card_penalty
        if not payment.cc_type:
            errors.append("Missing credit card type")
    elif payment.type == "paypal":
        pass
    elif payment.type == "ach":
        if not payment.account_number_masked:
            errors.append("Missing masked account number")
        if not payment.routing_number:
            errors.append("Missing routing number")
        if not payment.account_type:
            errors.append("Missing account type")
    else:
        errors.append(f"Unsupported payment method type: {payment.type}")

    flags = record.risk_assessment.compliance_flags
    if flags:
        warnings.append("Compliance flags detected")
        score += risk.flag_weight * len(flags)

    if record.transaction_summary.failure_rate > risk.failure_rate_threshold:
        warnings.append("High transaction failure rate")
        score += risk.failure_rate_penalty

    return ValidationResult(
        is_valid=not errors,
        confidence_assessment=Confidence.HIGH,
        errors=errors,
        warnings=warnings,
        risk_score=clamp_score(score),
    )


def acu_confidence_bucket(confidence: int) -> Confidence:
    if confidence >= 90:
        return Confidence.HIGH
    if confidence >= 70:
        return Confidence.MEDIUM
    return Confidence.LOW


def validate_acu_update(
    update: Dict[str, Any],
    config: Optional[ValidationConfig] = None
) -> List[str]:
    """Pre-check a raw ACU update from a vault export

    Returns:
        List of error strings, empty when the update may be processed
    """
    cfg = config or ValidationConfig()
    errors = []
    if not update.get('customer_vault_id'):
        errors.append("Missing customer vault ID")
    if update.get('update_type') not in ACU_UPDATE_TYPES:
        errors.append(f"Invalid update type: {update.get('update_type')}")
    if not update.get('new_data') and update.get('update_type') != 'account_closure':
        errors.append("Missing new data")
    try:
        confidence = int(update.get('confidence_level', 0))
    except (TypeError, ValueError):
        confidence = 0
    if confidence < cfg.acu_minimum_confidence:
        errors.append(f"Update confidence too low: {confidence}")
    return errors


def validate_delta_change(change: DeltaChange) -> List[str]:
    """Check that a delta carries what reconciliation needs"""
    errors = []
    if not change.record_id:
        errors.append("Missing record ID")
    if change.change_type not in {t.value for t in DeltaChangeType}:
        errors.append(f"Invalid change type: {change.change_type or 'missing'}")
    if not change.timestamp:
        errors.append("Missing timestamp")
    elif change.parsed_timestamp is None:
        errors.append(f"Unparseable timestamp: {change.timestamp}")
    return errors
