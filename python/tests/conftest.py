"""
Shared fixtures for the reconciliation engine tests.
"""

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from audit_logger import get_audit_logger, reset_audit_logger
from config_manager import ConfigManager
from reconciliation import BatchOrchestrator, InMemoryVaultStore, LoggingNotificationDispatcher
from reconciliation.records import VaultRecord

# Fixed processing time used by every engine test
FIXED_NOW = datetime(2026, 10, 17, 12, 0, 0, tzinfo=timezone.utc)


def make_card_update(update_id="UPD-001", vault_id="VAULT-001", **overrides):
    """Build a clean expiry-change card update in wire format

    Keyword overrides replace whole top-level sections.
    """
    update = {
        'update_id': update_id,
        'customer_vault_id': vault_id,
        'customer_id': 'CUST-001',
        'previous_card': {
            'last_four': '4242',
            'exp_month': '12',
            'exp_year': '2026',
            'card_type': 'visa',
        },
        'updated_card': {
            'last_four': '4242',
            'exp_month': '12',
            'exp_year': '2029',
            'card_type': 'visa',
            'issuer': 'Test Bank',
            'update_confidence': 95,
        },
        'update_details': {
            'update_type': 'expiry_date_change',
            'requires_validation': False,
            'update_reason': 'Card expiry extended',
        },
        'customer_info': {
            'first_name': 'Ana',
            'last_name': 'Lopez',
            'email': 'ana.lopez@example.com',
        },
        'transaction_context': {'recent_failed_attempts': 0},
        'risk_indicators': {'fraud_score': 5, 'risk_flags': []},
    }
    update.update(overrides)
    return update


def make_vault_dict(vault_id="VAULT-001", **overrides):
    """Build a valid vault record in wire format"""
    record = {
        'customer_vault_id': vault_id,
        'customer_id': 'CUST-001',
        'status': 'active',
        'customer_info': {
            'first_name': 'Ana',
            'last_name': 'Lopez',
            'email': 'ana.lopez@example.com',
        },
        'payment_method': {
            'type': 'credit_card',
            'cc_number_masked': '****4242',
            'cc_exp': '1226',
            'cc_type': 'visa',
            'billing_address': {'address1': '1 Main St', 'city': 'Austin', 'zip': '73301'},
        },
        'acu_data': {},
        'delta_info': {},
        'risk_assessment': {'risk_score': 10, 'risk_factors': [], 'compliance_flags': []},
        'transaction_summary': {'total_transactions': 10, 'failed_transactions': 1},
    }
    record.update(overrides)
    return record


def make_vault(vault_id="VAULT-001", **overrides) -> VaultRecord:
    return VaultRecord.from_dict(make_vault_dict(vault_id, **overrides))


@pytest.fixture(autouse=True)
def reset_singletons():
    """Fresh configuration and a file-less audit logger for every test"""
    ConfigManager.reset_instance()
    reset_audit_logger()
    get_audit_logger(enable_console=False, enable_file=False)
    yield
    ConfigManager.reset_instance()
    reset_audit_logger()


@pytest.fixture
def config():
    """Default configuration without the pause between chunks"""
    cfg = ConfigManager()
    cfg.batch.chunk_delay_seconds = 0
    return cfg


@pytest.fixture
def store():
    return InMemoryVaultStore([make_vault("VAULT-001"), make_vault("VAULT-002")])


@pytest.fixture
def dispatcher():
    return LoggingNotificationDispatcher()


@pytest.fixture
def orchestrator(store, dispatcher, config):
    return BatchOrchestrator(store, dispatcher=dispatcher, config=config, clock=lambda: FIXED_NOW)
