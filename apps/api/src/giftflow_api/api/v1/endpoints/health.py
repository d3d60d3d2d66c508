from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from giftflow_api.core.settings import settings
from giftflow_api.db.session import get_session


router = APIRouter()


class ComponentStatus(BaseModel):
    status: Literal["ready", "starting", "disabled", "error", "degraded"]
    detail: str | None = Field(default=None, description="Human readable status detail")
    last_error_at: str | None = Field(default=None, description="ISO timestamp of most recent error")
    last_success_at: str | None = Field(default=None, description="ISO timestamp of most recent success")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/health/healthz", include_in_schema=False)
async def service_health_alias() -> dict[str, str]:
    """Alias under /health."""

    return await service_health()


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components: Dict[str, ComponentStatus] = {}
    status: Literal["ready", "degraded", "error"] = "ready"

    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.exception("Readiness database check failed", error=str(exc))
        components["database"] = ComponentStatus(status="error", detail="Database unreachable")
        status = "error"
    else:
        components["database"] = ComponentStatus(status="ready")

    sweep_worker = getattr(request.app.state, "condition_sweep_worker", None)
    if settings.condition_sweep_worker_enabled and sweep_worker is not None:
        running = bool(getattr(sweep_worker, "is_running", False))
        sweep_status: Literal["ready", "starting", "disabled", "error"] = "ready" if running else "starting"
        detail = None if running else "Condition sweep worker not running"
        last_run_at = sweep_worker.last_run_at.isoformat() if sweep_worker.last_run_at else None
        if sweep_worker.last_error:
            sweep_status = "error"
            detail = sweep_worker.last_error
            status = "error"
        elif not running:
            status = "degraded" if status != "error" else status
        components["condition_sweep"] = ComponentStatus(
            status=sweep_status,
            detail=detail,
            last_success_at=last_run_at,
        )
    else:
        components["condition_sweep"] = ComponentStatus(
            status="disabled",
            detail="Condition sweep worker disabled via settings",
        )

    sms_configured = bool(settings.sms_account_sid and settings.sms_auth_token and settings.sms_from_number)
    components["sms_gateway"] = ComponentStatus(
        status="ready" if sms_configured else "disabled",
        detail=None if sms_configured else "SMS gateway credentials missing; messages kept in memory",
    )

    issuing_configured = bool(settings.card_issuing_api_url)
    components["card_issuing_api"] = ComponentStatus(
        status="ready" if issuing_configured else "disabled",
        detail=None if issuing_configured else "No default card issuing endpoint; per-pool config only",
    )

    return ReadinessPayload(status=status, components=components)


@router.get("/health/readyz", include_in_schema=False)
async def service_readiness_alias(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    """Alias for readiness checks under /health."""

    return await service_readiness(request, session)
