"""
Tests for delta reconciliation: inserts, updates, deletes and
last-writer-wins conflict resolution.
"""

import pytest

from conftest import make_vault, make_vault_dict
from reconciliation.delta import DeltaReconciler, apply_changed_fields
from reconciliation.records import DeltaChange
from reconciliation.store import InMemoryVaultStore


def _change(record_id="VAULT-001", change_type="UPDATE", timestamp="2026-10-17T10:00:00Z", **fields):
    return DeltaChange.from_dict({
        'record_id': record_id,
        'change_type': change_type,
        'timestamp': timestamp,
        'changed_fields': fields,
        'change_source': 'vault_sync',
    })


class TestApplyChangedFields:
    """Tests for merging changed fields into a record dictionary."""

    def test_dotted_path(self):
        data = make_vault_dict()
        previous = apply_changed_fields(data, {'payment_method.cc_exp': '0130'})
        assert data['payment_method']['cc_exp'] == '0130'
        assert data['payment_method']['cc_type'] == 'visa'
        assert previous == {'payment_method.cc_exp': '1226'}

    def test_nested_dict_merged(self):
        data = make_vault_dict()
        apply_changed_fields(data, {'customer_info': {'phone': '555-0100'}})
        assert data['customer_info']['phone'] == '555-0100'
        assert data['customer_info']['email'] == 'ana.lopez@example.com'

    def test_vault_id_protected(self):
        data = make_vault_dict()
        previous = apply_changed_fields(data, {'customer_vault_id': 'OTHER', 'status': 'expired'})
        assert data['customer_vault_id'] == 'VAULT-001'
        assert data['status'] == 'expired'
        assert 'customer_vault_id' not in previous


class TestConflicts:
    """Tests for conflict detection and resolution."""

    @pytest.mark.asyncio
    async def test_two_updates_later_wins(self, store):
        reconciler = DeltaReconciler(store)
        summary = await reconciler.reconcile([
            _change(timestamp="2026-10-17T10:00:00Z", **{'customer_info.phone': '555-0001'}),
            _change(timestamp="2026-10-17T11:00:00Z", **{'customer_info.phone': '555-0002'}),
        ])

        assert summary.updates == 2
        assert summary.conflicts_resolved == 1
        vault = await store.get_vault("VAULT-001")
        assert vault.customer_info['phone'] == '555-0002'

    @pytest.mark.asyncio
    async def test_older_change_discarded(self, store):
        reconciler = DeltaReconciler(store)
        summary = await reconciler.reconcile([
            _change(timestamp="2026-10-17T11:00:00Z", **{'customer_info.phone': '555-0002'}),
            _change(timestamp="2026-10-17T10:00:00Z", **{'customer_info.phone': '555-0001'}),
        ])

        assert summary.conflicts_resolved == 1
        vault = await store.get_vault("VAULT-001")
        assert vault.customer_info['phone'] == '555-0002'
        assert vault.delta_info.change_timestamp == "2026-10-17T11:00:00Z"

    @pytest.mark.asyncio
    async def test_stored_state_newer_than_change(self):
        stored = make_vault(delta_info={'change_timestamp': '2026-10-17T12:00:00Z'})
        store = InMemoryVaultStore([stored])
        reconciler = DeltaReconciler(store)

        summary = await reconciler.reconcile([
            _change(timestamp="2026-10-17T11:00:00Z", status='expired'),
        ])

        assert summary.conflicts_resolved == 1
        assert (await store.get_vault("VAULT-001")).status == 'active'

    @pytest.mark.asyncio
    async def test_newer_change_no_conflict(self):
        stored = make_vault(delta_info={'change_timestamp': '2026-10-17T09:00:00Z'})
        store = InMemoryVaultStore([stored])
        reconciler = DeltaReconciler(store)

        summary = await reconciler.reconcile([
            _change(timestamp="2026-10-17T11:00:00Z", status='expired'),
        ])

        assert summary.conflicts_resolved == 0
        assert (await store.get_vault("VAULT-001")).status == 'expired'


class TestChangeTypes:
    """Tests for INSERT, UPDATE and DELETE handling."""

    @pytest.mark.asyncio
    async def test_insert_new_record(self, store):
        fields = make_vault_dict("VAULT-NEW")
        fields.pop('customer_vault_id')
        reconciler = DeltaReconciler(store)

        summary = await reconciler.reconcile([_change("VAULT-NEW", "INSERT", **fields)])

        assert summary.inserts == 1
        assert summary.manual_review_required == 0
        vault = await store.get_vault("VAULT-NEW")
        assert vault.delta_info.change_type == "new"
        assert vault.customer_id == "CUST-001"

    @pytest.mark.asyncio
    async def test_invalid_insert_flagged(self, store):
        reconciler = DeltaReconciler(store)
        summary = await reconciler.reconcile([_change("VAULT-BAD", "INSERT", customer_id="CUST-9")])

        assert summary.inserts == 1
        assert summary.manual_review_required == 1
        assert await store.get_vault("VAULT-BAD") is None

    @pytest.mark.asyncio
    async def test_update_missing_record_flagged(self, store):
        reconciler = DeltaReconciler(store)
        summary = await reconciler.reconcile([_change("VAULT-404", status='expired')])

        assert summary.updates == 1
        assert summary.manual_review_required == 1
        assert summary.review_items == ["VAULT-404: Target vault record does not exist"]

    @pytest.mark.asyncio
    async def test_delete_disables_record(self, store):
        reconciler = DeltaReconciler(store)
        summary = await reconciler.reconcile([_change(change_type="DELETE")])

        assert summary.deletes == 1
        vault = await store.get_vault("VAULT-001")
        assert vault.status == "disabled"
        assert vault.delta_info.change_type == "deleted"
        assert vault.delta_info.previous_values == {'status': 'active'}

    @pytest.mark.asyncio
    async def test_reactivation(self):
        store = InMemoryVaultStore([make_vault(status='disabled')])
        reconciler = DeltaReconciler(store)

        await reconciler.reconcile([_change(status='active')])

        vault = await store.get_vault("VAULT-001")
        assert vault.status == "active"
        assert vault.delta_info.change_type == "reactivated"

    @pytest.mark.asyncio
    async def test_update_recorded_in_delta_info(self, store):
        reconciler = DeltaReconciler(store)
        await reconciler.reconcile([_change(**{'payment_method.cc_exp': '0130'})])

        vault = await store.get_vault("VAULT-001")
        assert vault.payment_method.cc_exp == '0130'
        assert vault.delta_info.change_type == "updated"
        assert vault.delta_info.changed_fields == ['payment_method.cc_exp']
        assert vault.delta_info.change_source == 'vault_sync'

    @pytest.mark.asyncio
    async def test_invalid_change_flagged_not_counted(self, store):
        reconciler = DeltaReconciler(store)
        summary = await reconciler.reconcile([_change(change_type="MERGE")])

        assert summary.total_changes == 1
        assert summary.updates == 0
        assert summary.manual_review_required == 1
