"""
Tests for risk scoring and the action policy.
"""

import pytest

from conftest import FIXED_NOW, make_card_update
from reconciliation.policy import (
    NotificationType,
    assess_card_update,
    decide,
    determine_notification_type,
    next_action_for,
    status_for_action,
)
from reconciliation.records import (
    CardProcessingOptions,
    CardUpdateRecord,
    Confidence,
    ProcessingStatus,
    RecommendedAction,
    ValidationResult,
)
from reconciliation.risk import clamp_score, is_high_risk, score_card_update


def _record(**overrides) -> CardUpdateRecord:
    return CardUpdateRecord.from_dict(make_card_update(**overrides))


class TestRiskScoring:
    """Tests for card update risk scores."""

    def test_fraud_score_only(self):
        assert score_card_update(_record()) == 5

    def test_distinct_flags_add_weight(self):
        """Repeated flags count once."""
        record = _record(risk_indicators={'fraud_score': 20, 'risk_flags': ['velocity', 'velocity', 'geo']})
        assert score_card_update(record) == 50

    def test_score_clamped_high(self):
        record = _record(risk_indicators={'fraud_score': 95, 'risk_flags': ['a', 'b', 'c']})
        assert score_card_update(record) == 100

    def test_score_clamped_low(self):
        record = _record(risk_indicators={'fraud_score': -10})
        assert score_card_update(record) == 0

    def test_score_stored_on_validation(self):
        validation = ValidationResult(is_valid=True)
        score_card_update(_record(risk_indicators={'fraud_score': 42}), validation)
        assert validation.risk_score == 42

    @pytest.mark.parametrize("score", [-50, 0, 37, 100, 250])
    def test_clamp_bounds(self, score):
        assert 0 <= clamp_score(score) <= 100

    def test_high_risk_threshold_is_exclusive(self):
        assert not is_high_risk(70)
        assert is_high_risk(71)


class TestDecide:
    """Tests for decision precedence."""

    def test_errors_win_over_everything(self):
        """Errors reject even when risk is high and confidence low."""
        validation = ValidationResult(
            is_valid=False,
            confidence_assessment=Confidence.LOW,
            errors=["Missing updated expiry date"],
            risk_score=90,
        )
        assert decide(validation, requires_validation=True) == RecommendedAction.REJECT

    def test_requires_validation_flag(self):
        validation = ValidationResult(is_valid=True)
        assert decide(validation, requires_validation=True) == RecommendedAction.VERIFY_WITH_CUSTOMER

    def test_low_confidence_verifies(self):
        validation = ValidationResult(is_valid=True, confidence_assessment=Confidence.LOW, risk_score=90)
        assert decide(validation) == RecommendedAction.VERIFY_WITH_CUSTOMER

    def test_too_many_warnings_review(self):
        validation = ValidationResult(is_valid=True, warnings=["a", "b", "c"])
        assert decide(validation) == RecommendedAction.REVIEW

    def test_two_warnings_still_apply(self):
        validation = ValidationResult(is_valid=True, warnings=["a", "b"])
        assert decide(validation) == RecommendedAction.APPLY

    def test_risk_above_review_threshold(self):
        assert decide(ValidationResult(is_valid=True, risk_score=51)) == RecommendedAction.REVIEW
        assert decide(ValidationResult(is_valid=True, risk_score=50)) == RecommendedAction.APPLY


class TestAssessCardUpdate:
    """End-to-end validate, score and decide without side effects."""

    def test_clean_expiry_update_applies(self):
        result = assess_card_update(_record(), now=FIXED_NOW)
        assert result.is_valid
        assert result.confidence_assessment == Confidence.HIGH
        assert result.risk_score == 5
        assert result.recommended_action == RecommendedAction.APPLY

    def test_low_confidence_number_change_verifies(self):
        card = dict(make_card_update()['updated_card'], last_four='1111', update_confidence=60)
        result = assess_card_update(_record(updated_card=card), now=FIXED_NOW)
        assert len(result.warnings) == 2
        assert result.confidence_assessment == Confidence.LOW
        assert result.recommended_action == RecommendedAction.VERIFY_WITH_CUSTOMER

    def test_missing_expiry_rejects(self):
        card = dict(make_card_update()['updated_card'], exp_month='', exp_year='')
        result = assess_card_update(
            _record(updated_card=card, risk_indicators={'fraud_score': 90}), now=FIXED_NOW
        )
        assert result.recommended_action == RecommendedAction.REJECT


class TestStatusMapping:
    """Tests for decision to status mapping and processing options."""

    def test_default_mapping(self):
        assert status_for_action(RecommendedAction.APPLY) == ProcessingStatus.SUCCESS
        assert status_for_action(RecommendedAction.REVIEW) == ProcessingStatus.PENDING_REVIEW
        assert status_for_action(RecommendedAction.REJECT) == ProcessingStatus.FAILED
        assert status_for_action(RecommendedAction.VERIFY_WITH_CUSTOMER) == ProcessingStatus.REQUIRES_VALIDATION

    def test_require_customer_verification_holds_apply(self):
        options = CardProcessingOptions(require_customer_verification=True)
        assert status_for_action(RecommendedAction.APPLY, options) == ProcessingStatus.REQUIRES_VALIDATION

    def test_auto_update_disabled_holds_apply(self):
        options = CardProcessingOptions(auto_update_high_confidence=False)
        assert status_for_action(RecommendedAction.APPLY, options) == ProcessingStatus.PENDING_REVIEW

    def test_options_do_not_override_reject(self):
        options = CardProcessingOptions(require_customer_verification=True)
        assert status_for_action(RecommendedAction.REJECT, options) == ProcessingStatus.FAILED

    def test_next_action_messages(self):
        assert next_action_for(ProcessingStatus.FAILED, RecommendedAction.REJECT) == "Fix validation errors and retry"
        assert next_action_for(ProcessingStatus.PENDING_REVIEW, RecommendedAction.REVIEW) == "Manual review required"
        assert next_action_for(
            ProcessingStatus.REQUIRES_VALIDATION, RecommendedAction.VERIFY_WITH_CUSTOMER
        ) == "Customer verification required"
        assert next_action_for(ProcessingStatus.SUCCESS, RecommendedAction.APPLY) is None


class TestNotificationType:
    """Tests for which notification a status warrants."""

    def test_success_notifies_update(self):
        assert determine_notification_type(_record(), ProcessingStatus.SUCCESS) == NotificationType.CARD_UPDATED

    def test_closure_success_notifies_closure(self):
        record = _record(update_details={'update_type': 'account_closure'})
        assert determine_notification_type(record, ProcessingStatus.SUCCESS) == NotificationType.ACCOUNT_CLOSED

    def test_verification_needed(self):
        assert (
            determine_notification_type(_record(), ProcessingStatus.REQUIRES_VALIDATION)
            == NotificationType.VERIFICATION_NEEDED
        )

    def test_no_notification_for_review_or_failure(self):
        assert determine_notification_type(_record(), ProcessingStatus.PENDING_REVIEW) is None
        assert determine_notification_type(_record(), ProcessingStatus.FAILED) is None
