from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class RewardPipelineSnapshot:
    events: Dict[str, int]
    evaluations: Dict[str, int]
    provisioning: Dict[str, int]
    credits: Dict[str, int]
    deliveries: Dict[str, int]

    def as_dict(self) -> Dict[str, Dict[str, int]]:
        return {
            "events": dict(self.events),
            "evaluations": dict(self.evaluations),
            "provisioning": dict(self.provisioning),
            "credits": dict(self.credits),
            "deliveries": dict(self.deliveries),
        }


class RewardPipelineObservabilityStore:
    """Collect reward pipeline counters for dashboards and alerting.

    Counters are per-process; they complement, never replace, the persisted
    event and alert tables.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._events: Dict[str, int] = defaultdict(int)
        self._evaluations: Dict[str, int] = defaultdict(int)
        self._provisioning: Dict[str, int] = defaultdict(int)
        self._credits: Dict[str, int] = defaultdict(int)
        self._deliveries: Dict[str, int] = defaultdict(int)

    def record_event(self, source: str, *, matched: bool, processed: bool) -> None:
        with self._lock:
            self._events[f"source:{source}"] += 1
            self._events["matched" if matched else "unmatched"] += 1
            if not processed:
                self._events["unprocessed"] += 1

    def record_evaluation(self, outcome: str) -> None:
        with self._lock:
            self._evaluations[outcome] += 1

    def record_provisioning(self, *, source: str | None, success: bool, error_code: str | None = None) -> None:
        with self._lock:
            if success:
                self._provisioning[f"source:{source or 'unknown'}"] += 1
            else:
                self._provisioning["failures"] += 1
                if error_code:
                    self._provisioning[f"error:{error_code}"] += 1

    def record_credit(self, outcome: str) -> None:
        with self._lock:
            self._credits[outcome] += 1

    def record_delivery(self, status: str) -> None:
        with self._lock:
            self._deliveries[status] += 1

    def snapshot(self) -> RewardPipelineSnapshot:
        with self._lock:
            return RewardPipelineSnapshot(
                events=dict(self._events),
                evaluations=dict(self._evaluations),
                provisioning=dict(self._provisioning),
                credits=dict(self._credits),
                deliveries=dict(self._deliveries),
            )

    def reset(self) -> None:
        with self._lock:
            self._events.clear()
            self._evaluations.clear()
            self._provisioning.clear()
            self._credits.clear()
            self._deliveries.clear()


_STORE = RewardPipelineObservabilityStore()


def get_reward_store() -> RewardPipelineObservabilityStore:
    return _STORE


__all__ = ["get_reward_store", "RewardPipelineObservabilityStore", "RewardPipelineSnapshot"]
