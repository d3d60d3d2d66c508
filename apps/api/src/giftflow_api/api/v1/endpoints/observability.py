"""Observability endpoints for the reward pipeline."""

from __future__ import annotations

from fastapi import APIRouter, Request

from giftflow_api.observability.rewards import get_reward_store


router = APIRouter(prefix="/observability", tags=["Observability"])


@router.get("/rewards", summary="Reward pipeline counters")
async def get_reward_snapshot(request: Request) -> dict[str, object]:
    """Aggregated per-process pipeline counters plus sweep worker health."""
    snapshot: dict[str, object] = dict(get_reward_store().snapshot().as_dict())
    worker = getattr(request.app.state, "condition_sweep_worker", None)
    snapshot["conditionSweep"] = worker.health() if worker is not None else None
    return snapshot
