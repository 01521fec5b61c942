"""
FastAPI application entry point.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# register ORM models on Base.metadata
import callbilling.agents.models  # noqa: F401
import callbilling.calls.models  # noqa: F401
import callbilling.ledger.models  # noqa: F401
from callbilling.agents.repository import AgentAssignmentRepository
from callbilling.api.router import router as billing_router
from callbilling.billing.cost import CostCalculator
from callbilling.billing.recording import HttpRecordingDurationProbe
from callbilling.calls.repository import CallEventRepository
from callbilling.config import Settings, get_settings
from callbilling.ledger.account import AccountService
from callbilling.ledger.service import BalanceLedger
from callbilling.notifications.notifier import LowBalanceNotifier
from callbilling.processing.poller import BillingSessionRegistry
from callbilling.processing.processor import CallEventProcessor
from callbilling.shared.database import DatabaseManager
from callbilling.shared.exceptions import (
    AgentResolutionError,
    CallNotBillableError,
    LedgerInconsistencyError,
    LedgerWriteError,
    NotFoundError,
    TransientBillingError,
    ValidationError,
)
from callbilling.shared.logging import get_logger, setup_logging

logger = get_logger(__name__)


def init_app_state(app: FastAPI, db: DatabaseManager, settings: Settings) -> None:
    """Wire the billing services onto ``app.state``."""
    session_factory = db.session_factory
    ledger = BalanceLedger(session_factory, settings=settings)
    events = CallEventRepository(session_factory)
    assignments = AgentAssignmentRepository(session_factory)
    cost_calculator = CostCalculator(
        probe=HttpRecordingDurationProbe(timeout_seconds=settings.recording_probe_timeout_seconds),
        probe_timeout_seconds=settings.recording_probe_timeout_seconds,
    )

    # shared so debounce state is per user, not per processor
    notifier = LowBalanceNotifier(debounce_minutes=settings.notification_debounce_minutes)

    def processor_factory(_user_id: str) -> CallEventProcessor:
        return CallEventProcessor(
            events,
            assignments,
            ledger,
            cost_calculator=cost_calculator,
            notifier=notifier,
            settings=settings,
        )

    app.state.db = db
    app.state.settings = settings
    app.state.ledger = ledger
    app.state.notifier = notifier
    app.state.account_service = AccountService(ledger, session_factory, assignments=assignments)
    app.state.processor = processor_factory("")
    app.state.session_registry = BillingSessionRegistry(ledger, processor_factory, settings=settings)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    setup_logging()
    settings = get_settings()

    logger.info("Application starting", extra={"env": settings.app_env})

    db = DatabaseManager(settings.database_url)
    if settings.auto_create_tables:
        await db.create_all()
    init_app_state(app, db, settings)

    yield

    logger.info("Shutting down application")
    await app.state.session_registry.stop_all()
    await db.close()
    logger.info("Application shutdown complete")


def _error_response(status_code: int, exc: Exception, code: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "code": code})


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain exceptions to HTTP responses."""

    @app.exception_handler(NotFoundError)
    async def _not_found(_: Request, exc: NotFoundError) -> JSONResponse:
        return _error_response(404, exc, exc.code)

    @app.exception_handler(ValidationError)
    async def _validation(_: Request, exc: ValidationError) -> JSONResponse:
        return _error_response(400, exc, exc.code)

    @app.exception_handler(AgentResolutionError)
    async def _held(_: Request, exc: AgentResolutionError) -> JSONResponse:
        return _error_response(409, exc, exc.code)

    @app.exception_handler(CallNotBillableError)
    async def _not_billable(_: Request, exc: CallNotBillableError) -> JSONResponse:
        return _error_response(409, exc, exc.code)

    @app.exception_handler(TransientBillingError)
    async def _transient(_: Request, exc: TransientBillingError) -> JSONResponse:
        return _error_response(503, exc, exc.code)

    @app.exception_handler(LedgerWriteError)
    async def _write_failed(_: Request, exc: LedgerWriteError) -> JSONResponse:
        return _error_response(503, exc, exc.code)

    @app.exception_handler(LedgerInconsistencyError)
    async def _inconsistent(_: Request, exc: LedgerInconsistencyError) -> JSONResponse:
        return _error_response(500, exc, exc.code)

    # Request validation (FastAPI/Pydantic) -> consistent 422 payload
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        errors = []
        for error in exc.errors():
            field = ".".join(str(loc) for loc in error["loc"])
            errors.append(
                {
                    "field": field,
                    "message": error["msg"],
                    "type": error["type"],
                }
            )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "detail": {
                    "code": "VALIDATION_ERROR",
                    "message": "Request validation failed",
                    "errors": errors,
                }
            },
        )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Call Billing API",
        description="Prepaid balance ledger and automatic billing of finished calls",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    register_exception_handlers(app)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(billing_router)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "healthy"}

    return app


app = create_app()
