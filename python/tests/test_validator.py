"""
Tests for record validation: card updates, vault records, ACU updates, deltas.
"""

import pytest

from conftest import FIXED_NOW, make_card_update, make_vault
from reconciliation.records import CardUpdateRecord, Confidence, DeltaChange
from reconciliation.validator import (
    acu_confidence_bucket,
    is_future_expiry,
    parse_expiry,
    parse_mmyy,
    validate_acu_update,
    validate_card_update,
    validate_delta_change,
    validate_vault_record,
)


def _validate(**overrides):
    record = CardUpdateRecord.from_dict(make_card_update(**overrides))
    return validate_card_update(record, now=FIXED_NOW)


def _updated_card(**fields):
    card = make_card_update()['updated_card']
    card.update(fields)
    return card


class TestExpiryParsing:
    """Tests for expiry helpers."""

    def test_parse_expiry_four_digit_year(self):
        assert parse_expiry("12", "2029") == (2029, 12)

    def test_parse_expiry_two_digit_year(self):
        """Two-digit years are read as 20YY."""
        assert parse_expiry("3", "29") == (2029, 3)

    def test_parse_expiry_rejects_bad_month(self):
        assert parse_expiry("13", "2029") is None
        assert parse_expiry("00", "2029") is None

    def test_parse_expiry_rejects_non_numeric(self):
        assert parse_expiry("ab", "2029") is None
        assert parse_expiry(None, "2029") is None

    def test_parse_mmyy(self):
        assert parse_mmyy("1228") == (2028, 12)
        assert parse_mmyy("12/28") is None
        assert parse_mmyy("") is None

    def test_current_month_is_not_future(self):
        """A card expiring this month counts as expired."""
        assert not is_future_expiry((2026, 10), FIXED_NOW)
        assert is_future_expiry((2026, 11), FIXED_NOW)


class TestCardUpdateErrors:
    """Tests for errors that make a card update invalid."""

    def test_clean_update_is_valid(self):
        result = _validate()
        assert result.is_valid
        assert result.errors == []
        assert result.warnings == []
        assert result.confidence_assessment == Confidence.HIGH

    def test_missing_identifiers(self):
        result = _validate(update_id="", vault_id="")
        assert "Missing update ID" in result.errors
        assert "Missing customer vault ID" in result.errors
        assert not result.is_valid

    def test_missing_last_four(self):
        result = _validate(updated_card=_updated_card(last_four=""))
        assert "Missing updated card last four digits" in result.errors

    def test_missing_expiry_reports_single_error(self):
        """Missing expiry is reported once and the plausibility check is skipped."""
        result = _validate(updated_card=_updated_card(exp_month="", exp_year=""))
        assert result.errors == ["Missing updated expiry date"]

    def test_expiry_in_current_month_rejected(self):
        result = _validate(updated_card=_updated_card(exp_month="10", exp_year="2026"))
        assert "New expiry date is invalid or in the past" in result.errors

    def test_expiry_next_month_accepted(self):
        result = _validate(updated_card=_updated_card(exp_month="11", exp_year="2026"))
        assert result.is_valid

    def test_two_digit_year_accepted(self):
        result = _validate(updated_card=_updated_card(exp_month="12", exp_year="29"))
        assert result.is_valid

    def test_unknown_update_type(self):
        result = _validate(update_details={'update_type': 'teleport'})
        assert "Unknown update type: teleport" in result.errors

    def test_update_type_alias_accepted(self):
        result = _validate(update_details={'update_type': 'expiry_change'})
        assert result.is_valid


class TestCardUpdateWarnings:
    """Tests for warnings and the confidence they leave behind."""

    def test_low_source_confidence_and_last_four_change(self):
        """Confidence 60 with a changed number on an expiry update."""
        result = _validate(updated_card=_updated_card(last_four="1111", update_confidence=60))
        assert "Card number changed but update type is not 'card_reissue'" in result.warnings
        assert "Low confidence update from ACU service" in result.warnings
        assert result.confidence_assessment == Confidence.LOW
        assert result.is_valid

    def test_medium_source_confidence_caps_without_warning(self):
        result = _validate(updated_card=_updated_card(update_confidence=80))
        assert result.warnings == []
        assert result.confidence_assessment == Confidence.MEDIUM

    def test_reissue_with_new_number_keeps_high(self):
        result = _validate(
            updated_card=_updated_card(last_four="1111"),
            update_details={'update_type': 'card_reissue'},
        )
        assert result.warnings == []
        assert result.confidence_assessment == Confidence.HIGH

    def test_last_four_change_lowers_one_level(self):
        result = _validate(updated_card=_updated_card(last_four="1111"))
        assert result.confidence_assessment == Confidence.MEDIUM

    def test_no_detectable_change(self):
        unchanged = dict(make_card_update()['previous_card'], update_confidence=95)
        result = _validate(updated_card=unchanged)
        assert "No detectable changes in card information" in result.warnings
        assert result.confidence_assessment == Confidence.LOW

    def test_high_fraud_score(self):
        result = _validate(risk_indicators={'fraud_score': 75})
        assert "High fraud risk score detected" in result.warnings
        assert result.confidence_assessment == Confidence.LOW

    def test_recent_failures_do_not_change_confidence(self):
        result = _validate(transaction_context={'recent_failed_attempts': 4})
        assert "Multiple recent failed transaction attempts" in result.warnings
        assert result.confidence_assessment == Confidence.HIGH

    def test_account_closure_warning(self):
        result = _validate(update_details={'update_type': 'account_closure'})
        assert "Account closure notification - billing should be suspended" in result.warnings

    def test_account_closure_without_card_change_keeps_confidence(self):
        unchanged = dict(make_card_update()['previous_card'], update_confidence=95)
        result = _validate(updated_card=unchanged, update_details={'update_type': 'account_closure'})
        assert "No detectable changes in card information" not in result.warnings
        assert result.confidence_assessment == Confidence.HIGH

    @pytest.mark.parametrize("update_confidence", [95, 80, 60])
    def test_confidence_never_raised_by_later_rules(self, update_confidence):
        """A number change plus any source confidence never ends above MEDIUM."""
        result = _validate(
            updated_card=_updated_card(last_four="1111", update_confidence=update_confidence)
        )
        assert result.confidence_assessment.rank <= Confidence.MEDIUM.rank


class TestVaultRecordValidation:
    """Tests for vault export record validation and risk assessment."""

    def test_valid_record_keeps_base_score(self):
        result = validate_vault_record(make_vault(), now=FIXED_NOW)
        assert result.is_valid
        assert result.warnings == []
        assert result.risk_score == 10

    def test_expired_card_warning_and_penalty(self):
        payment = make_vault().payment_method.to_dict()
        payment['cc_exp'] = '0925'
        result = validate_vault_record(make_vault(payment_method=payment), now=FIXED_NOW)
        assert result.is_valid
        assert "Credit card appears to be expired" in result.warnings
        assert result.risk_score == 30

    def test_compliance_flags_single_warning(self):
        risk = {'risk_score': 10, 'compliance_flags': ['pep', 'watchlist']}
        result = validate_vault_record(make_vault(risk_assessment=risk), now=FIXED_NOW)
        assert result.warnings.count("Compliance flags detected") == 1
        assert result.risk_score == 40

    def test_high_failure_rate(self):
        summary = {'total_transactions': 10, 'failed_transactions': 4}
        result = validate_vault_record(make_vault(transaction_summary=summary), now=FIXED_NOW)
        assert "High transaction failure rate" in result.warnings
        assert result.risk_score == 35

    def test_score_clamped_to_100(self):
        payment = make_vault().payment_method.to_dict()
        payment['cc_exp'] = '0925'
        risk = {'risk_score': 90, 'compliance_flags': ['pep']}
        result = validate_vault_record(
            make_vault(payment_method=payment, risk_assessment=risk), now=FIXED_NOW
        )
        assert result.risk_score == 100

    def test_missing_email_and_customer(self):
        result = validate_vault_record(
            make_vault(customer_id='', customer_info={}), now=FIXED_NOW
        )
        assert "Missing customer ID" in result.errors
        assert "Missing customer email" in result.errors

    def test_missing_payment_method(self):
        result = validate_vault_record(make_vault(payment_method=None), now=FIXED_NOW)
        assert "Missing payment method" in result.errors

    def test_invalid_expiry_format(self):
        payment = make_vault().payment_method.to_dict()
        payment['cc_exp'] = '12/26'
        result = validate_vault_record(make_vault(payment_method=payment), now=FIXED_NOW)
        assert "Invalid credit card expiry format (expected MMYY)" in result.errors

    def test_ach_requires_bank_fields(self):
        payment = {'type': 'ach', 'account_number_masked': '****6789'}
        result = validate_vault_record(make_vault(payment_method=payment), now=FIXED_NOW)
        assert "Missing routing number" in result.errors
        assert "Missing account type" in result.errors

    def test_paypal_needs_no_card_fields(self):
        result = validate_vault_record(
            make_vault(payment_method={'type': 'paypal'}), now=FIXED_NOW
        )
        assert result.is_valid

    def test_unsupported_payment_type(self):
        result = validate_vault_record(
            make_vault(payment_method={'type': 'crypto'}), now=FIXED_NOW
        )
        assert "Unsupported payment method type: crypto" in result.errors


class TestAcuUpdateValidation:
    """Tests for the ACU update pre-check."""

    def _update(self, **overrides):
        update = {
            'customer_vault_id': 'VAULT-001',
            'update_type': 'expiry_update',
            'old_data': {'cc_exp': '1226'},
            'new_data': {'cc_exp': '1229'},
            'update_source': 'visa_acu',
            'confidence_level': 92,
        }
        update.update(overrides)
        return update

    def test_valid_update(self):
        assert validate_acu_update(self._update()) == []

    def test_confidence_below_minimum(self):
        errors = validate_acu_update(self._update(confidence_level=40))
        assert errors == ["Update confidence too low: 40"]

    def test_invalid_type_and_missing_data(self):
        errors = validate_acu_update(self._update(update_type='bogus', new_data={}))
        assert "Invalid update type: bogus" in errors
        assert "Missing new data" in errors

    def test_closure_needs_no_new_data(self):
        assert validate_acu_update(self._update(update_type='account_closure', new_data={})) == []

    @pytest.mark.parametrize("confidence,expected", [
        (95, Confidence.HIGH),
        (90, Confidence.HIGH),
        (89, Confidence.MEDIUM),
        (70, Confidence.MEDIUM),
        (69, Confidence.LOW),
    ])
    def test_confidence_buckets(self, confidence, expected):
        assert acu_confidence_bucket(confidence) == expected


class TestDeltaChangeValidation:
    """Tests for delta change checks."""

    def test_valid_change(self):
        change = DeltaChange.from_dict({
            'record_id': 'VAULT-001',
            'change_type': 'update',
            'timestamp': '2026-10-17T10:00:00Z',
        })
        assert validate_delta_change(change) == []

    def test_invalid_type_and_timestamp(self):
        change = DeltaChange.from_dict({
            'record_id': 'VAULT-001',
            'change_type': 'MERGE',
            'timestamp': 'yesterday',
        })
        errors = validate_delta_change(change)
        assert "Invalid change type: MERGE" in errors
        assert "Unparseable timestamp: yesterday" in errors

    def test_missing_fields(self):
        errors = validate_delta_change(DeltaChange.from_dict({}))
        assert "Missing record ID" in errors
        assert "Invalid change type: missing" in errors
        assert "Missing timestamp" in errors
