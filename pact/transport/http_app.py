# pact/transport/http_app.py
"""
HTTP surface for the dispatch workflow.

Route handlers only translate: request body -> service call -> JSON.
Every ``OpResult`` error code maps to its HTTP status (contention and
precondition 409, validation 400, dependent systems 503, lookup 404)
with the code in the body so the UI can show code-specific messaging.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import asdict

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pact.config import settings
from pact.core.dispatch.results import ErrorCode, OpResult
from pact.core.dispatch.services import DispatchServices, build_services
from pact.infra.event_sinks import LoggingEventSink
from pact.infra.logging_config import setup_logging, get_logger
from pact.infra.metrics import get_metrics_collector
from pact.transport.middleware import (
    RequestIDMiddleware,
    RequestLoggingMiddleware,
    ErrorHandlingMiddleware,
)
from pact.transport.schemas import (
    CollectorIn,
    CompleteVisitIn,
    DispatchIn,
    FeesIn,
    SendBackIn,
    SettleSweepIn,
    StartVisitIn,
    WithdrawIn,
    dispatch_out,
    entry_out,
    ledger_out,
)
from pact.transport.security import require_admin_auth, sanitize_error_message

# Initialize logging first
setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)


# ============================================================================
# DEPENDENCIES / HELPERS
# ============================================================================

def get_services(request: Request) -> DispatchServices:
    """Get the dispatch services bundle from app state"""
    return request.app.state.services


def _error_response(error: ErrorCode, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=error.http_status,
        content={"error": error.value, "category": error.category.value, "message": message},
    )


def _entry_response(result: OpResult):
    if not result.ok:
        return _error_response(result.error, result.message)
    body = entry_out(result.value)
    if result.warnings:
        body["warnings"] = list(result.warnings)
    return body


# ============================================================================
# BACKEND WIRING
# ============================================================================

async def _build_postgres_backend() -> DispatchServices:
    from pact.core.dispatch.jobs import JobQueueSettlementRetry
    from pact.infra.db_async import init_pool
    from pact.infra.pg_collector_directory_async import PostgresCollectorDirectory
    from pact.infra.pg_job_repo_async import get_job_repo
    from pact.infra.pg_site_entry_store_async import PostgresSiteEntryStore
    from pact.infra.pg_wallet_ledger_async import PostgresWalletLedger
    from pact.infra.schema_validator import validate_schema_version

    await init_pool()
    logger.info("Database pool initialized")

    # Validate schema version (does NOT run migrations)
    # Migrations run separately: python -m pact.infra.migrate
    try:
        await validate_schema_version()
    except Exception:
        logger.critical(
            "Schema validation failed. Run migrations first: python -m pact.infra.migrate",
            exc_info=True
        )
        raise

    retry_queue = None
    if settings.settlement_retry_enabled:
        retry_queue = JobQueueSettlementRetry(
            get_job_repo(),
            max_attempts=settings.settlement_max_attempts,
            first_delay=settings.settlement_base_retry_delay,
        )

    return build_services(
        PostgresSiteEntryStore(),
        PostgresCollectorDirectory(),
        PostgresWalletLedger(),
        events=LoggingEventSink(),
        retry_queue=retry_queue,
    )


def _build_memory_backend() -> DispatchServices:
    from pact.infra.memory_store import (
        InMemoryCollectorDirectory,
        InMemorySettlementRetryQueue,
        InMemorySiteEntryStore,
        InMemoryWalletLedger,
        load_seed,
    )

    logger.warning("Using in-memory store: state is process-local and lost on restart")
    entries, collectors = load_seed(settings.memory_seed_path) if settings.memory_seed_path else ([], [])
    return build_services(
        InMemorySiteEntryStore(entries),
        InMemoryCollectorDirectory(collectors),
        InMemoryWalletLedger(currency=settings.ledger_currency),
        events=LoggingEventSink(),
        retry_queue=InMemorySettlementRetryQueue(),
    )


async def _start_job_worker(services: DispatchServices):
    from pact.core.dispatch.jobs import SETTLE_JOB_TYPE, make_settle_handler
    from pact.infra.job_worker import JobWorker
    from pact.infra.pg_job_repo_async import get_job_repo

    job_worker = JobWorker(
        repo=get_job_repo(),
        poll_interval=settings.job_worker_poll_interval,
        batch_size=settings.job_worker_batch_size,
        base_retry_delay=settings.job_worker_base_retry_delay,
        stale_timeout=settings.job_worker_stale_timeout,
    )
    job_worker.register(
        SETTLE_JOB_TYPE,
        make_settle_handler(services.lifecycle),
        base_retry_delay=settings.settlement_base_retry_delay,
    )
    await job_worker.start()
    return job_worker


# ============================================================================
# ROUTES
# ============================================================================

router = APIRouter()


@router.get("/health")
def health():
    """Basic health check, used by load balancers."""
    return {"status": "healthy"}


@router.get("/ready")
async def readiness():
    """Readiness check: the database answers (postgres backend only)."""
    if settings.store_backend != "postgres":
        return {"status": "healthy"}

    from pact.infra.db_resilience_async import safe_db_conn
    try:
        async with safe_db_conn() as conn:
            await conn.fetchval("SELECT 1")
    except Exception as exc:
        logger.warning(f"Readiness check failed: {exc}")
        return JSONResponse(status_code=503, content={"status": "unhealthy"})
    return {"status": "healthy"}


@router.get("/metrics")
def metrics():
    """In-process counters and histograms."""
    if not settings.enable_metrics:
        raise HTTPException(status_code=404, detail="Not found")
    return get_metrics_collector().get_metrics()


# --- Dispatch ----------------------------------------------------------------

@router.post("/dispatch")
async def dispatch_sites(payload: DispatchIn, services: DispatchServices = Depends(get_services)):
    result = await services.dispatcher.dispatch(
        payload.entry_ids,
        payload.mode,
        payload.target(),
        dispatched_by=payload.dispatched_by,
    )
    if not result.ok:
        return _error_response(result.error, result.message)
    return dispatch_out(result)


@router.post("/dispatch/withdraw")
async def withdraw_sites(payload: WithdrawIn, services: DispatchServices = Depends(get_services)):
    result = await services.dispatcher.withdraw(payload.entry_ids, actor_id=payload.actor_id)
    if not result.ok:
        return _error_response(result.error, result.message)
    return dispatch_out(result)


@router.put("/site-entries/{entry_id}/fees")
async def update_fees(entry_id: str, payload: FeesIn, services: DispatchServices = Depends(get_services)):
    result = await services.dispatcher.update_fees(
        entry_id,
        payload.enumerator_fee,
        payload.transport_fee,
        cost=payload.cost,
        actor_id=payload.actor_id,
    )
    return _entry_response(result)


# --- Claim / acceptance --------------------------------------------------------

@router.post("/site-entries/{entry_id}/claim")
async def claim_site(entry_id: str, payload: CollectorIn, services: DispatchServices = Depends(get_services)):
    return _entry_response(await services.claims.claim(entry_id, payload.collector_id))


@router.post("/site-entries/{entry_id}/acknowledge-cost")
async def acknowledge_cost(entry_id: str, payload: CollectorIn, services: DispatchServices = Depends(get_services)):
    return _entry_response(await services.claims.acknowledge_cost(entry_id, payload.collector_id))


@router.post("/site-entries/{entry_id}/send-back")
async def send_back(entry_id: str, payload: SendBackIn, services: DispatchServices = Depends(get_services)):
    return _entry_response(await services.claims.send_back(entry_id, payload.actor_id, payload.comments))


# --- Visit lifecycle -----------------------------------------------------------

@router.post("/site-entries/{entry_id}/start")
async def start_visit(entry_id: str, payload: StartVisitIn, services: DispatchServices = Depends(get_services)):
    location = payload.location.to_domain() if payload.location else None
    return _entry_response(await services.lifecycle.start_visit(entry_id, payload.collector_id, location))


@router.post("/site-entries/{entry_id}/complete")
async def complete_visit(entry_id: str, payload: CompleteVisitIn, services: DispatchServices = Depends(get_services)):
    final_location = payload.final_location.to_domain() if payload.final_location else None
    result = await services.lifecycle.complete_visit(
        entry_id, payload.collector_id, payload.report_id, final_location
    )
    return _entry_response(result)


@router.post("/site-entries/{entry_id}/settle")
async def settle(entry_id: str, services: DispatchServices = Depends(get_services)):
    result = await services.lifecycle.settle(entry_id)
    if not result.ok:
        return _error_response(result.error, result.message)
    return ledger_out(result.value)


@router.post("/admin/settlements/retry", dependencies=[Depends(require_admin_auth)])
async def admin_settle_pending(
    payload: SettleSweepIn | None = None,
    services: DispatchServices = Depends(get_services),
):
    """Settle every Completed entry whose wallet credit has not landed - ADMIN only."""
    sweep = await services.lifecycle.settle_pending(limit=payload.limit if payload else None)
    return asdict(sweep)


# --- Queries -------------------------------------------------------------------

@router.get("/collectors/{collector_id}/available")
async def available_sites(collector_id: str, services: DispatchServices = Depends(get_services)):
    return [entry_out(e) for e in await services.queries.available_for(collector_id)]


@router.get("/collectors/{collector_id}/sites")
async def my_sites(collector_id: str, services: DispatchServices = Depends(get_services)):
    return [entry_out(e) for e in await services.queries.my_sites(collector_id)]


@router.get("/collectors/{collector_id}/pending-acknowledgement")
async def pending_acknowledgement(collector_id: str, services: DispatchServices = Depends(get_services)):
    return [entry_out(e) for e in await services.queries.pending_acknowledgement(collector_id)]


@router.get("/site-entries/completed")
async def completed_sites(collector_id: str | None = None, services: DispatchServices = Depends(get_services)):
    return [entry_out(e) for e in await services.queries.completed_sites(collector_id)]


@router.get("/site-entries/counts")
async def counts_by_status(services: DispatchServices = Depends(get_services)):
    return await services.queries.counts_by_status()


# ============================================================================
# CREATE APP
# ============================================================================

def create_app(services: DispatchServices | None = None) -> FastAPI:
    """
    Build the FastAPI app.

    ``services`` injects a ready bundle (tests, embedding); otherwise the
    lifespan wires the backend selected by ``STORE_BACKEND``.
    """

    @asynccontextmanager
    async def lifespan(fastapi_app: FastAPI):
        logger.info(
            f"Starting application: env={settings.app_env}, run_mode={settings.run_mode}, "
            f"store={settings.store_backend}"
        )

        job_worker = None
        uses_pool = False
        if services is not None:
            fastapi_app.state.services = services
        elif settings.store_backend == "postgres":
            fastapi_app.state.services = await _build_postgres_backend()
            uses_pool = True
            if settings.run_mode in ("all", "worker") and settings.job_worker_enabled:
                job_worker = await _start_job_worker(fastapi_app.state.services)
            else:
                logger.info(
                    f"Job worker skipped (run_mode={settings.run_mode}, "
                    f"enabled={settings.job_worker_enabled})"
                )
        else:
            fastapi_app.state.services = _build_memory_backend()

        logger.info("Application startup complete")

        yield

        logger.info("Shutting down application")
        if job_worker is not None:
            await job_worker.stop()
        if uses_pool:
            from pact.infra.db_async import close_pool
            await close_pool()
        logger.info("Application shutdown complete")

    fastapi_app = FastAPI(
        title="PACT Field Dispatch",
        description="First-claim dispatch, acceptance and settlement of monitoring site visits",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        openapi_url=None if settings.is_production else "/openapi.json",
    )
    if services is not None:
        fastapi_app.state.services = services

    if settings.is_production or settings.is_staging:
        fastapi_app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.allowed_origins if settings.allowed_origins != ["*"] else [],
            allow_credentials=False,
            allow_methods=["GET", "POST", "PUT"],
            allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        )
    else:
        fastapi_app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    fastapi_app.add_middleware(ErrorHandlingMiddleware)
    fastapi_app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
    fastapi_app.add_middleware(RequestIDMiddleware)

    @fastapi_app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle HTTP exceptions with appropriate logging"""
        if exc.status_code >= 500:
            logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )

    @fastapi_app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions"""
        logger.error(f"Unhandled exception: {exc.__class__.__name__}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": sanitize_error_message(exc, settings.is_production)},
        )

    fastapi_app.include_router(router)
    return fastapi_app


app = create_app()
