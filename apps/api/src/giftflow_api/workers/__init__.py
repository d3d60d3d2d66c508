"""Background workers supporting async processing."""

from .condition_sweep import ConditionSweepWorker

__all__ = ["ConditionSweepWorker"]
