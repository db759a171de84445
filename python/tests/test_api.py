"""
API endpoint tests for the Vault Reconciliation API

Uses FastAPI's TestClient against a real orchestrator backed by the
in-memory vault store.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from conftest import make_card_update, make_vault_dict
from reconciliation.errors import VaultStoreError


@pytest.fixture
def client(orchestrator, config):
    """Create test client with the engine globals patched in."""
    from api import server

    with patch.object(server, '_orchestrator', orchestrator):
        with patch.object(server, '_config', config):
            with patch.object(server, '_startup_time', datetime.now(timezone.utc)):
                with patch.object(server, 'API_KEY', ''):
                    yield TestClient(server.app)


def _batch_request(updates=None, total=None, batch_id="BATCH-001", **options):
    updates = updates if updates is not None else [make_card_update()]
    return {
        'batch_info': {
            'batch_id': batch_id,
            'total_cards': len(updates) if total is None else total,
        },
        'card_updates': updates,
        'processing_options': options,
    }


# ============================================
# CARD UPDATES
# ============================================

class TestCardUpdates:
    """Tests for POST /card-updates."""

    def test_clean_batch(self, client):
        """A clean batch is applied and summarized."""
        response = client.post("/card-updates", json=_batch_request())
        assert response.status_code == 200
        data = response.json()

        assert data['success'] is True
        assert data['batch_id'] == "BATCH-001"
        assert data['summary']['successful_updates'] == 1
        assert data['summary']['notifications_sent'] == 1
        result = data['results'][0]
        assert result['processing_status'] == "SUCCESS"
        assert result['application_result']['vault_updated'] is True

    def test_count_mismatch_rejected(self, client):
        """Declaring 5 cards but sending 4 rejects the batch."""
        updates = [make_card_update(f"UPD-{i}", f"VAULT-00{i % 2 + 1}") for i in range(4)]
        response = client.post("/card-updates", json=_batch_request(updates, total=5))

        assert response.status_code == 400
        error = response.json()['error']
        assert error['code'] == "RECORD_COUNT_MISMATCH"
        assert error['message'] == "Card update count mismatch. Expected 5, got 4"
        assert 'timestamp' in error

    def test_duplicate_ids_rejected(self, client):
        response = client.post(
            "/card-updates", json=_batch_request([make_card_update(), make_card_update()])
        )

        assert response.status_code == 400
        error = response.json()['error']
        assert error['code'] == "DUPLICATE_UPDATE_ID"
        assert error['details'] == ["UPD-001"]

    def test_schema_violation_lists_fields(self, client):
        """Missing batch_id and a negative total are both reported."""
        body = {'batch_info': {'total_cards': -1}, 'card_updates': []}
        response = client.post("/card-updates", json=body)

        assert response.status_code == 400
        error = response.json()['error']
        assert error['code'] == "VALIDATION_ERROR"
        fields = {d['field'] for d in error['details']}
        assert "batch_info.batch_id" in fields
        assert "batch_info.total_cards" in fields

    def test_record_level_errors_do_not_reject_batch(self, client):
        bad = make_card_update(
            "UPD-002", "VAULT-002",
            updated_card={'last_four': '4242', 'card_type': 'visa', 'update_confidence': 95},
        )
        response = client.post("/card-updates", json=_batch_request([make_card_update(), bad]))

        assert response.status_code == 200
        statuses = [r['processing_status'] for r in response.json()['results']]
        assert statuses == ["SUCCESS", "FAILED"]

    def test_processing_options_applied(self, client):
        response = client.post(
            "/card-updates", json=_batch_request(require_customer_verification=True)
        )

        assert response.status_code == 200
        assert response.json()['results'][0]['processing_status'] == "REQUIRES_VALIDATION"

    def test_response_headers(self, client):
        response = client.post("/card-updates", json=_batch_request())
        assert "X-Request-ID" in response.headers
        assert "X-Processing-Time-MS" in response.headers


class TestBatchStatusAndRetry:
    """Tests for status lookup and retry."""

    def test_status_after_processing(self, client):
        client.post("/card-updates", json=_batch_request())

        response = client.get("/card-updates/BATCH-001/status")

        assert response.status_code == 200
        data = response.json()
        assert data['status'] == "COMPLETED"
        assert data['summary']['successful_updates'] == 1

    def test_unknown_batch_404(self, client):
        response = client.get("/card-updates/UNKNOWN/status")

        assert response.status_code == 404
        assert response.json()['error']['code'] == "NOT_FOUND"

    def test_retry_reports_unknown_ids(self, client):
        client.post("/card-updates", json=_batch_request())

        response = client.post(
            "/card-updates/retry",
            json={'batch_id': 'BATCH-001', 'update_ids': ['UPD-001', 'UPD-999']},
        )

        assert response.status_code == 200
        data = response.json()
        assert data['success'] is True
        assert data['not_found'] == ['UPD-999']
        assert data['results'][-1]['processing_status'] == "NOT_FOUND"

    def test_retry_unknown_batch_404(self, client):
        response = client.post(
            "/card-updates/retry", json={'batch_id': 'NOPE', 'update_ids': ['UPD-001']}
        )
        assert response.status_code == 404

    def test_retry_requires_ids(self, client):
        response = client.post("/card-updates/retry", json={'batch_id': 'BATCH-001', 'update_ids': []})
        assert response.status_code == 400

    def test_store_failure_503(self, client, orchestrator):
        failing = AsyncMock(side_effect=VaultStoreError("connection refused"))

        with patch.object(orchestrator.store, 'get_batch', failing):
            response = client.get("/card-updates/BATCH-001/status")

        assert response.status_code == 503
        assert response.json()['error']['code'] == "VAULT_STORE_UNAVAILABLE"


class TestValidateEndpoint:
    """Tests for POST /card-updates/validate."""

    def test_validate_only(self, client, store):
        response = client.post("/card-updates/validate", json={'card_updates': [make_card_update()]})

        assert response.status_code == 200
        data = response.json()
        assert data['success'] is True
        assert data['summary']['valid_updates'] == 1
        assert data['validation_results'][0]['validation_result']['recommended_action'] == "apply"


# ============================================
# VAULT EXPORTS
# ============================================

class TestVaultExport:
    """Tests for vault export endpoints."""

    def _request(self, records, total=None, **export_fields):
        export = {
            'export_id': 'EXP-001',
            'total_records': len(records) if total is None else total,
            'vault_records': records,
        }
        export.update(export_fields)
        return {'export_data': export}

    def test_export_processed(self, client):
        response = client.post("/vault-export", json=self._request([make_vault_dict("VAULT-010")]))

        assert response.status_code == 200
        data = response.json()
        assert data['success'] is True
        assert data['export_id'] == "EXP-001"
        assert data['processing_result']['processing_status'] == "SUCCESS"

    def test_export_count_mismatch(self, client):
        response = client.post("/vault-export", json=self._request([make_vault_dict()], total=2))

        assert response.status_code == 400
        assert response.json()['error']['code'] == "RECORD_COUNT_MISMATCH"

    def test_export_with_acu_update(self, client):
        acu = {
            'customer_vault_id': 'VAULT-001',
            'update_type': 'expiry_update',
            'old_data': {'cc_exp': '1226'},
            'new_data': {'cc_exp': '1229'},
            'update_source': 'visa_acu',
            'confidence_level': 95,
        }
        response = client.post("/vault-export", json=self._request([], acu_updates=[acu]))

        assert response.status_code == 200
        assert response.json()['processing_result']['acu_updates_applied'] == 1

    def test_export_status(self, client):
        client.post("/vault-export", json=self._request([make_vault_dict("VAULT-010")]))

        response = client.get("/vault-export/EXP-001/status")

        assert response.status_code == 200
        assert response.json()['status'] == "COMPLETED"

    def test_unknown_export_404(self, client):
        response = client.get("/vault-export/NOPE/status")
        assert response.status_code == 404

    def test_integrity_check(self, client):
        response = client.post("/vault/integrity", json={'vault_ids': ['VAULT-001', 'VAULT-404']})

        assert response.status_code == 200
        statuses = [r['status'] for r in response.json()['validation_results']]
        assert statuses == ["VALID", "NOT_FOUND"]


# ============================================
# HEALTH
# ============================================

class TestHealth:
    """Tests for health check endpoint."""

    def test_healthy(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()

        assert data['status'] == "healthy"
        assert data['store_available'] is True
        assert data['accepting_batches'] is True
        assert data['store_backend'] == "memory"

    def test_degraded_store(self, client, orchestrator):
        with patch.object(orchestrator, 'health_check', AsyncMock(return_value=False)):
            response = client.get("/health")

        assert response.status_code == 200
        assert response.json()['status'] == "degraded"

    def test_starting(self, client):
        from api import server

        with patch.object(server, '_orchestrator', None):
            response = client.get("/health")

        assert response.status_code == 200
        assert response.json()['status'] == "starting"

    def test_error_still_200(self, client, orchestrator):
        with patch.object(orchestrator, 'health_check', AsyncMock(side_effect=RuntimeError("boom"))):
            response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data['status'] == "error"
        assert data['error_message'] == "boom"

    def test_engine_not_ready_503(self, client):
        from api import server

        with patch.object(server, '_orchestrator', None):
            response = client.post("/card-updates", json=_batch_request())

        assert response.status_code == 503


# ============================================
# SECURITY
# ============================================

class TestSecurity:
    """Tests for API key enforcement."""

    def test_missing_key_401(self, client):
        from api import server

        with patch.object(server, 'API_KEY', 'secret'):
            response = client.post("/card-updates", json=_batch_request())

        assert response.status_code == 401
        assert response.json()['error']['code'] == "HTTP_401"

    def test_wrong_key_403(self, client):
        from api import server

        with patch.object(server, 'API_KEY', 'secret'):
            response = client.post(
                "/card-updates", json=_batch_request(), headers={'X-API-Key': 'wrong'}
            )

        assert response.status_code == 403

    def test_valid_key_accepted(self, client):
        from api import server

        with patch.object(server, 'API_KEY', 'secret'):
            response = client.post(
                "/card-updates", json=_batch_request(), headers={'X-API-Key': 'secret'}
            )

        assert response.status_code == 200

    def test_health_needs_no_key(self, client):
        from api import server

        with patch.object(server, 'API_KEY', 'secret'):
            response = client.get("/health")

        assert response.status_code == 200
