from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from giftflow_api.core.settings import settings
from giftflow_api.db.session import async_session
from .api.dependencies.services import get_sms_backend
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .services.conditions.evaluator import ConditionEvaluator
from .services.delivery import DeliveryDispatcher
from .workers import ConditionSweepWorker


APP_VERSION = "0.1.0"


def _session_factory():
    return async_session()


def _evaluator_factory(session: AsyncSession) -> ConditionEvaluator:
    return ConditionEvaluator(session, dispatcher=DeliveryDispatcher(session, sms_backend=get_sms_backend()))


@asynccontextmanager
async def lifespan(app: FastAPI):
    sweep_worker = ConditionSweepWorker(
        session_factory=_session_factory,
        evaluator_factory=_evaluator_factory,
        interval_seconds=settings.condition_sweep_interval_seconds,
        limit=settings.condition_sweep_limit,
        trigger_label=settings.condition_sweep_trigger_label,
    )
    app.state.condition_sweep_worker = sweep_worker

    sweep_enabled = settings.condition_sweep_worker_enabled
    if sweep_enabled:
        sweep_worker.start()
        logger.info(
            "Condition sweep worker enabled",
            interval_seconds=sweep_worker.interval_seconds,
            limit=settings.condition_sweep_limit,
        )
    else:
        logger.info(
            "Condition sweep worker disabled",
            reason="condition_sweep_worker_enabled is false",
        )

    try:
        yield
    finally:
        if sweep_enabled and sweep_worker.is_running:
            await sweep_worker.stop()


def create_app() -> FastAPI:
    """Application factory for the giftflow reward pipeline API."""
    configure_logging(
        service_name="giftflow-api",
        environment=settings.environment,
        version=APP_VERSION,
    )

    app = FastAPI(
        title="Giftflow API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name="giftflow-api",
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
