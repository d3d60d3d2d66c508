"""Persistence helper for operator-facing system alerts."""

from __future__ import annotations

from typing import Any, Mapping

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from giftflow_api.models.system_alert import AlertSeverity, AlertType, SystemAlert


async def record_system_alert(
    session: AsyncSession,
    *,
    severity: AlertSeverity,
    alert_type: AlertType,
    message: str,
    metadata: Mapping[str, Any] | None = None,
) -> SystemAlert | None:
    """Insert and commit an alert; failures are logged and swallowed."""

    alert = SystemAlert(
        severity=severity,
        alert_type=alert_type,
        message=message,
        metadata_json={key: jsonable(value) for key, value in (metadata or {}).items()},
    )
    session.add(alert)
    try:
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.exception(
            "Failed to persist system alert",
            alert_type=alert_type.value,
            severity=severity.value,
            error=str(exc),
        )
        return None

    log = logger.error if severity == AlertSeverity.CRITICAL else logger.warning
    log(
        "System alert raised",
        alert_id=str(alert.id),
        alert_type=alert_type.value,
        severity=severity.value,
        alert_message=message,
    )
    return alert


def jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (list, tuple)):
        return [jsonable(item) for item in value]
    if isinstance(value, Mapping):
        return {str(key): jsonable(item) for key, item in value.items()}
    return str(value)


__all__ = ["jsonable", "record_system_alert"]
