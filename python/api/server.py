"""
FastAPI Vault Reconciliation API Server

Provides REST API endpoints for vault export processing and card updater
batches. Wraps the reconciliation engine (BatchOrchestrator) and the
configured vault store.

Usage:
    uvicorn api.server:app --reload --port 8000
"""

import os
import time
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, HTTPException, Depends, Security
from fastapi.security import APIKeyHeader
import psutil

from api.models import (
    CardUpdatesRequest,
    RetryRequest,
    ValidateRequest,
    VaultExportRequest,
    IntegrityRequest,
    HealthResponse,
    ErrorResponse,
)
from api.middleware import (
    setup_cors,
    setup_exception_handlers,
    RequestLoggingMiddleware,
)
from audit_logger import get_audit_logger
from config_manager import get_config, ConfigManager, ConfigurationError
from database import SqlVaultStore, DatabaseSettings, configure_monitoring, init_db, close_db
from reconciliation import BatchOrchestrator, InMemoryVaultStore, VaultStore

# Setup logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Environment variables with defaults
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8000"))
CONFIG_PATH = os.getenv("CONFIG_PATH")  # None searches the default locations
API_KEY = os.getenv("API_KEY", "")  # Required for authenticated endpoints

# Global state
_orchestrator: Optional[BatchOrchestrator] = None
_store: Optional[VaultStore] = None
_config: Optional[ConfigManager] = None
_startup_time: Optional[datetime] = None

# API Key security scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid request or batch"},
    401: {"model": ErrorResponse, "description": "Missing API key"},
    403: {"model": ErrorResponse, "description": "Invalid API key"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
}


async def verify_api_key(api_key: Optional[str] = Security(api_key_header)) -> str:
    """Verify API key for protected endpoints.

    If API_KEY environment variable is not set, authentication is disabled.
    """
    if not API_KEY:
        return "dev-mode"

    if not api_key:
        raise HTTPException(
            status_code=401, detail="Missing API key. Provide X-API-Key header."
        )

    if api_key != API_KEY:
        raise HTTPException(status_code=403, detail="Invalid API key")

    return api_key


def get_orchestrator() -> BatchOrchestrator:
    """Dependency to get the orchestrator instance."""
    if _orchestrator is None:
        raise HTTPException(
            status_code=503, detail="Reconciliation engine not initialized. Service is starting up."
        )
    return _orchestrator


def get_config_instance() -> ConfigManager:
    """Dependency to get the config instance."""
    global _config
    if _config is None:
        _config = get_config(CONFIG_PATH)
    return _config


def build_store(config: ConfigManager) -> VaultStore:
    """Create the vault store selected by ``storage.backend``"""
    if config.storage.backend == "database":
        configure_monitoring(slow_query_ms=config.database.slow_query_ms)
        provider = init_db(DatabaseSettings.from_config(config.database))
        provider.create_tables()
        return SqlVaultStore(provider)
    return InMemoryVaultStore()


# Create FastAPI application
app = FastAPI(
    title="Vault Reconciliation API",
    description="API for reconciling card updater notifications and vault exports",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

# Setup middleware
setup_cors(app)
app.add_middleware(RequestLoggingMiddleware)
setup_exception_handlers(app)


@app.on_event("startup")
async def startup():
    """Load configuration and build the vault store and orchestrator."""
    global _orchestrator, _store, _config, _startup_time

    logger.info("Starting Vault Reconciliation API...")
    start_time = time.time()

    try:
        _config = get_config(CONFIG_PATH)
        logging.getLogger().setLevel(_config.logging.level.upper())
        logger.info(f"Configuration loaded from {_config.config_path}")

        audit = get_audit_logger(
            log_dir=_config.logging.audit_directory,
            enable_console=False,
            enable_file=True,
        )
        _store = build_store(_config)
        _orchestrator = BatchOrchestrator(_store, config=_config, audit=audit)
        _startup_time = datetime.now(timezone.utc)

        logger.info(
            "API ready: storage=%s startup_time=%.2fs",
            _config.storage.backend,
            time.time() - start_time,
        )

    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        raise
    except Exception as e:
        logger.error(f"Startup error: {e}")
        raise


@app.on_event("shutdown")
async def shutdown():
    """Stop starting new chunks and release the store."""
    logger.info("Shutting down Vault Reconciliation API...")
    if _orchestrator is not None:
        _orchestrator.request_shutdown()
    if isinstance(_store, SqlVaultStore):
        _store.close()
        close_db()


# ============================================
# VAULT EXPORTS
# ============================================

@app.post(
    "/vault-export",
    responses=ERROR_RESPONSES,
    summary="Process a vault export",
    description="Validate and store vault records, then apply ACU updates and delta changes",
)
async def process_vault_export(
    request: VaultExportRequest,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
    api_key: str = Depends(verify_api_key),
):
    """Process a vault export.

    Returns 400 when ``total_records`` does not match the records sent.
    """
    export_data = request.export_data.model_dump(mode="json", exclude_none=True)
    options = request.processing_options.model_dump(mode="json")

    result = await orchestrator.process_vault_export(export_data, options)
    return {
        "success": True,
        "export_id": result["export_id"],
        "processing_result": result,
    }


@app.get(
    "/vault-export/{export_id}/status",
    responses={404: {"model": ErrorResponse, "description": "Unknown export id"}},
    summary="Vault export status",
)
async def vault_export_status(
    export_id: str,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
    api_key: str = Depends(verify_api_key),
):
    return await orchestrator.get_export_status(export_id)


@app.post(
    "/vault/integrity",
    responses=ERROR_RESPONSES,
    summary="Check stored vault integrity",
    description="Report billing-blocking issues for the given vault ids",
)
async def vault_integrity(
    request: IntegrityRequest,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
    api_key: str = Depends(verify_api_key),
):
    return await orchestrator.check_vault_integrity(request.vault_ids)


# ============================================
# CARD UPDATES
# ============================================

@app.post(
    "/card-updates",
    responses=ERROR_RESPONSES,
    summary="Process a card update batch",
    description="Validate, score and apply card updater notifications",
)
async def process_card_updates(
    request: CardUpdatesRequest,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
    config: ConfigManager = Depends(get_config_instance),
    api_key: str = Depends(verify_api_key),
):
    """Process a card update batch.

    Record-level failures are reported in the results; only schema errors,
    count mismatches and duplicate update ids reject the whole batch.
    """
    batch_info = request.batch_info.model_dump(mode="json", exclude_none=True)
    card_updates = [u.model_dump(mode="json", exclude_none=True) for u in request.card_updates]
    options = request.processing_options.model_dump()

    summary = await orchestrator.process_batch(batch_info, card_updates, options)
    body = summary.to_dict(preview=config.batch.result_preview_size)
    body["success"] = True
    return body


@app.get(
    "/card-updates/{batch_id}/status",
    responses={404: {"model": ErrorResponse, "description": "Unknown batch id"}},
    summary="Card update batch status",
)
async def card_updates_status(
    batch_id: str,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
    api_key: str = Depends(verify_api_key),
):
    return await orchestrator.get_batch_status(batch_id)


@app.post(
    "/card-updates/retry",
    responses={**ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Unknown batch id"}},
    summary="Retry selected updates of a batch",
)
async def retry_card_updates(
    request: RetryRequest,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
    api_key: str = Depends(verify_api_key),
):
    result = await orchestrator.retry(request.batch_id, request.update_ids)
    result["success"] = True
    return result


@app.post(
    "/card-updates/validate",
    responses=ERROR_RESPONSES,
    summary="Validate card updates without applying them",
)
async def validate_card_updates(
    request: ValidateRequest,
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
    api_key: str = Depends(verify_api_key),
):
    """Dry run: validation, risk scoring and decision only."""
    card_updates = [u.model_dump(mode="json", exclude_none=True) for u in request.card_updates]
    result = orchestrator.validate_only(card_updates)
    result["success"] = True
    return result


# ============================================
# HEALTH
# ============================================

@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check service and vault store health",
)
async def health_check(config: ConfigManager = Depends(get_config_instance)):
    """Return health status. Always returns HTTP 200."""
    try:
        if _orchestrator is None:
            return HealthResponse(
                status="starting",
                store_backend=config.storage.backend,
                store_available=False,
                version=config.engine.version,
                accepting_batches=False,
            )

        store_available = await _orchestrator.health_check()

        memory_usage_mb = None
        try:
            process = psutil.Process()
            memory_usage_mb = round(process.memory_info().rss / (1024 * 1024), 2)
        except psutil.Error:
            logger.debug("Memory usage unavailable", exc_info=True)

        uptime_seconds = None
        if _startup_time:
            uptime_seconds = int((datetime.now(timezone.utc) - _startup_time).total_seconds())

        return HealthResponse(
            status="healthy" if store_available else "degraded",
            store_backend=config.storage.backend,
            store_available=store_available,
            version=config.engine.version,
            accepting_batches=not _orchestrator.is_shutting_down,
            memory_usage_mb=memory_usage_mb,
            uptime_seconds=uptime_seconds,
        )
    except Exception as e:
        # Always return HTTP 200, but report error in JSON
        return HealthResponse(
            status="error",
            store_backend="unknown",
            store_available=False,
            version="unknown",
            accepting_batches=False,
            error_message=str(e),
        )


# Root redirect to docs
@app.get("/", include_in_schema=False)
async def root():
    """Redirect root to API documentation."""
    from fastapi.responses import RedirectResponse

    return RedirectResponse(url="/api/docs")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT)
