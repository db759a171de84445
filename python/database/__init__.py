"""
Database Package for the Vault Reconciliation Engine

This package provides:
- SQLAlchemy ORM models for vault records, backups, batches and audit logs
- Session provider with retrying engine creation and row lock timeouts
- Repository pattern for data access
- SqlVaultStore, the persistent implementation of the engine's VaultStore
- Store call timing, slow call logging and lock timeout counts
"""

from database.models import (
    Base,
    VaultRecordRow,
    VaultBackup,
    AppliedUpdate,
    BatchRun,
    AuditLog,
    AuditAction,
)
from database.connection import (
    DatabaseSessionProvider,
    DatabaseSettings,
    get_db_provider,
    init_db,
    close_db,
    create_test_provider,
)
from database.monitoring import (
    is_lock_timeout,
    timed_query,
    get_db_metrics,
    reset_metrics,
    configure_monitoring,
)
from database.store import SqlVaultStore

__all__ = [
    # Base
    'Base',
    # Models
    'VaultRecordRow',
    'VaultBackup',
    'AppliedUpdate',
    'BatchRun',
    'AuditLog',
    'AuditAction',
    # Connection
    'DatabaseSessionProvider',
    'DatabaseSettings',
    'get_db_provider',
    'init_db',
    'close_db',
    'create_test_provider',
    # Monitoring
    'is_lock_timeout',
    'timed_query',
    'get_db_metrics',
    'reset_metrics',
    'configure_monitoring',
    # Store
    'SqlVaultStore',
]
