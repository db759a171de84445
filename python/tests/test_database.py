"""
Unit tests for the SQL vault store.

Runs the repositories and SqlVaultStore against an in-memory SQLite
database shared across threads.
"""

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool

from conftest import FIXED_NOW, make_card_update, make_vault
from config_manager import DatabaseConfig
from database import (
    AuditAction,
    AuditLog,
    DatabaseSettings,
    SqlVaultStore,
    configure_monitoring,
    create_test_provider,
    get_db_metrics,
    reset_metrics,
    timed_query,
)
from database.repositories import BatchRunRepository, VaultRecordRepository
from reconciliation import BatchOrchestrator
from reconciliation.application import ApplicationEngine
from reconciliation.errors import VaultRecordNotFound, VaultStoreError
from reconciliation.records import CardUpdateRecord, ProcessingStatus


@pytest.fixture
def provider():
    """Session provider over a fresh in-memory SQLite database."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    provider = create_test_provider(engine)
    provider.create_tables()
    yield provider
    provider.drop_tables()
    provider.close()


@pytest.fixture
def sql_store(provider):
    store = SqlVaultStore(provider, max_workers=1)
    yield store
    store.close()


def _audit_count(provider, action):
    with provider.session_scope() as session:
        return session.execute(
            select(func.count()).select_from(AuditLog).where(AuditLog.action == action)
        ).scalar_one()


class TestDatabaseSettings:
    """Tests for settings derived from configuration."""

    def test_from_config(self, monkeypatch):
        for var in ("DATABASE_URL", "DB_HOST", "DB_PORT", "DB_NAME", "DB_USER", "DB_PASSWORD"):
            monkeypatch.delenv(var, raising=False)
        settings = DatabaseSettings.from_config(
            DatabaseConfig(host="db", port=5433, user="u", password="p", name="vaults")
        )
        assert settings.get_url() == "postgresql+psycopg2://u:p@db:5433/vaults"

    def test_environment_overrides_file(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.setenv("DB_HOST", "replica")
        settings = DatabaseSettings.from_config(DatabaseConfig(host="db"))
        assert settings.host == "replica"

    def test_lock_timeout_from_config(self, monkeypatch):
        monkeypatch.delenv("DB_LOCK_TIMEOUT_MS", raising=False)
        settings = DatabaseSettings.from_config(DatabaseConfig(lock_timeout_ms=2500))
        assert settings.lock_timeout_ms == 2500


class TestVaultRecords:
    """Tests for storing and loading vault records."""

    @pytest.mark.asyncio
    async def test_put_and_get(self, sql_store):
        await sql_store.put_vault(make_vault())

        loaded = await sql_store.get_vault("VAULT-001")

        assert loaded.customer_id == "CUST-001"
        assert loaded.payment_method.cc_exp == "1226"
        assert loaded.customer_info['email'] == "ana.lopez@example.com"
        assert loaded.created_date is not None

    @pytest.mark.asyncio
    async def test_missing_vault(self, sql_store):
        assert await sql_store.get_vault("VAULT-404") is None

    @pytest.mark.asyncio
    async def test_upsert_replaces(self, sql_store):
        await sql_store.put_vault(make_vault())
        first = await sql_store.get_vault("VAULT-001")
        await sql_store.put_vault(make_vault(status="expired"))

        loaded = await sql_store.get_vault("VAULT-001")

        assert loaded.status == "expired"
        assert loaded.created_date == first.created_date
        assert len(await sql_store.list_vaults()) == 1
        assert _audit_count(sql_store.provider, AuditAction.VAULT_UPSERT) == 2

    @pytest.mark.asyncio
    async def test_count_by_status(self, sql_store, provider):
        await sql_store.put_vault(make_vault("VAULT-001"))
        await sql_store.put_vault(make_vault("VAULT-002", status="disabled"))

        with provider.session_scope() as session:
            counts = VaultRecordRepository(session).count_by_status()

        assert counts == {'active': 1, 'disabled': 1}

    @pytest.mark.asyncio
    async def test_billing_status(self, sql_store):
        await sql_store.put_vault(make_vault())

        await sql_store.set_billing_status("VAULT-001", "paused")

        assert (await sql_store.get_vault("VAULT-001")).billing_status == "paused"
        assert _audit_count(sql_store.provider, AuditAction.BILLING_CHANGE) == 1

    @pytest.mark.asyncio
    async def test_billing_status_unknown_vault(self, sql_store):
        with pytest.raises(VaultStoreError):
            await sql_store.set_billing_status("VAULT-404", "paused")

    @pytest.mark.asyncio
    async def test_health_check(self, sql_store):
        assert await sql_store.health_check() is True


class TestBackupsAndLedger:
    """Tests for backups and the applied-update ledger."""

    @pytest.mark.asyncio
    async def test_backup_roundtrip(self, sql_store):
        await sql_store.put_vault(make_vault())

        await sql_store.backup("UPD-001", "VAULT-001")
        backup = await sql_store.get_backup("UPD-001")

        assert backup.vault_id == "VAULT-001"
        assert backup.payment_method.cc_exp == "1226"
        assert _audit_count(sql_store.provider, AuditAction.BACKUP) == 1

    @pytest.mark.asyncio
    async def test_backup_unknown_vault(self, sql_store):
        with pytest.raises(VaultRecordNotFound):
            await sql_store.backup("UPD-001", "VAULT-404")

    @pytest.mark.asyncio
    async def test_applied_ledger(self, sql_store):
        assert not await sql_store.is_applied("UPD-001")

        await sql_store.mark_applied("UPD-001", "VAULT-001")
        assert await sql_store.is_applied("UPD-001")

        await sql_store.clear_applied("UPD-001")
        assert not await sql_store.is_applied("UPD-001")
        assert _audit_count(sql_store.provider, AuditAction.UPDATE_CLEARED) == 1


class TestBatchRuns:
    """Tests for stored batch snapshots."""

    @pytest.mark.asyncio
    async def test_payload_kept_across_snapshots(self, sql_store):
        await sql_store.save_batch("B1", "card_updates", {'status': 'RUNNING'}, payload={'card_updates': [1]})
        await sql_store.save_batch("B1", "card_updates", {'status': 'COMPLETED'})

        entry = await sql_store.get_batch("B1", "card_updates")

        assert entry['snapshot'] == {'status': 'COMPLETED'}
        assert entry['payload'] == {'card_updates': [1]}

    @pytest.mark.asyncio
    async def test_kinds_are_separate(self, sql_store, provider):
        await sql_store.save_batch("B1", "card_updates", {'status': 'COMPLETED'})

        assert await sql_store.get_batch("B1", "vault_export") is None
        with provider.session_scope() as session:
            assert BatchRunRepository(session).get("B1", "card_updates").status == "COMPLETED"


class TestEngineOnSql:
    """The application engine and orchestrator against the SQL store."""

    @pytest.mark.asyncio
    async def test_apply_update(self, sql_store):
        await sql_store.put_vault(make_vault())
        engine = ApplicationEngine(sql_store)

        outcome = await engine.apply(CardUpdateRecord.from_dict(make_card_update()))

        assert outcome.succeeded
        vault = await sql_store.get_vault("VAULT-001")
        assert vault.payment_method.cc_exp == "1229"
        assert vault.billing_status == "active"
        assert await sql_store.is_applied("UPD-001")
        assert _audit_count(sql_store.provider, AuditAction.UPDATE_APPLIED) == 1

    @pytest.mark.asyncio
    async def test_batch_and_retry(self, sql_store, config):
        await sql_store.put_vault(make_vault())
        orchestrator = BatchOrchestrator(sql_store, config=config, clock=lambda: FIXED_NOW)
        updates = [make_card_update(), make_card_update("UPD-002", "VAULT-002")]

        summary = await orchestrator.process_batch({'batch_id': 'B1', 'total_cards': 2}, updates)
        assert [r.status for r in summary.results] == [ProcessingStatus.SUCCESS, ProcessingStatus.FAILED]

        await sql_store.put_vault(make_vault("VAULT-002"))
        result = await orchestrator.retry("B1", ["UPD-002"])

        assert result['results'][0]['processing_status'] == "SUCCESS"
        status = await orchestrator.get_batch_status("B1")
        assert status['summary']['successful_updates'] == 2


class TestQueryMetrics:
    """Tests for repository query timing."""

    @pytest.mark.asyncio
    async def test_timed_queries_recorded(self, sql_store):
        reset_metrics()
        await sql_store.put_vault(make_vault())
        await sql_store.get_vault("VAULT-001")

        stats = get_db_metrics()

        assert stats['vault_get']['count'] >= 1

    def test_lock_timeout_counted(self):
        reset_metrics()

        class LockNotAvailable(Exception):
            pgcode = "55P03"

        @timed_query("vault_lock")
        def locked_update():
            raise OperationalError("SELECT ... FOR UPDATE", {}, LockNotAvailable())

        with pytest.raises(OperationalError):
            locked_update()

        stats = get_db_metrics()['vault_lock']
        assert stats['errors'] == 1
        assert stats['lock_timeouts'] == 1

    def test_other_errors_not_lock_timeouts(self):
        reset_metrics()

        @timed_query("vault_broken")
        def broken():
            raise OperationalError("SELECT 1", {}, Exception("connection reset"))

        with pytest.raises(OperationalError):
            broken()

        stats = get_db_metrics()['vault_broken']
        assert stats['errors'] == 1
        assert stats['lock_timeouts'] == 0

    def test_slow_calls_counted(self):
        reset_metrics()
        configure_monitoring(slow_query_ms=-1)
        try:
            @timed_query("vault_slow")
            def quick():
                return 1

            assert quick() == 1
        finally:
            configure_monitoring()

        assert get_db_metrics()['vault_slow']['slow_calls'] == 1
