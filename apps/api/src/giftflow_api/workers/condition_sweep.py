"""Worker wiring for the time-delayed condition sweep."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from giftflow_api.core.settings import settings
from giftflow_api.services.conditions.evaluator import ConditionEvaluator
from giftflow_api.services.conditions.sweep import SweepSummary, sweep_time_delayed_conditions

SessionFactory = Callable[[], Awaitable[AsyncSession]] | Callable[[], AsyncSession]
EvaluatorFactory = Callable[[AsyncSession], ConditionEvaluator]


class ConditionSweepWorker:
    """Periodically fires time-delayed conditions whose delay has elapsed."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        evaluator_factory: EvaluatorFactory | None = None,
        interval_seconds: int | None = None,
        limit: int | None = None,
        trigger_label: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._evaluator_factory = evaluator_factory
        self.interval_seconds = interval_seconds or settings.condition_sweep_interval_seconds
        self._limit = limit or settings.condition_sweep_limit
        self._trigger_label = trigger_label or settings.condition_sweep_trigger_label
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False
        self.last_run_at: datetime | None = None
        self.last_summary: SweepSummary | None = None
        self.last_error: str | None = None

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info(
            "Condition sweep worker started",
            interval_seconds=self.interval_seconds,
            limit=self._limit,
        )

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Condition sweep worker stopped")

    async def run_once(self, *, triggered_by: str | None = None) -> SweepSummary:
        trigger = triggered_by or self._trigger_label
        session = await self._ensure_session()
        async with session as managed_session:
            try:
                summary = await sweep_time_delayed_conditions(
                    managed_session,
                    limit=self._limit,
                    triggered_by=trigger,
                    evaluator_factory=self._evaluator_factory,
                )
            except Exception as exc:
                await managed_session.rollback()
                self.last_error = str(exc)
                logger.exception("Condition sweep failed", trigger=trigger, error=str(exc))
                raise

        self.last_run_at = datetime.now(timezone.utc)
        self.last_summary = summary
        self.last_error = None
        return summary

    def health(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "intervalSeconds": self.interval_seconds,
            "lastRunAt": self.last_run_at.isoformat() if self.last_run_at else None,
            "lastSummary": self.last_summary.as_dict() if self.last_summary else None,
            "lastError": self.last_error,
        }

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # pragma: no cover
                logger.exception("Condition sweep iteration failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def _ensure_session(self) -> AsyncSession:
        maybe_session = self._session_factory()
        if isinstance(maybe_session, AsyncSession):
            return maybe_session
        return await maybe_session


__all__ = ["ConditionSweepWorker"]
