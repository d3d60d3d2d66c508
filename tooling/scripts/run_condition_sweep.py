"""Fire due time-delayed reward conditions once.

Intended usage: schedule via cron when the in-process sweep worker is
disabled, or run by hand after an outage.

Example:
    python tooling/scripts/run_condition_sweep.py --trigger cron
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Execute the time-delayed condition sweep once")
    parser.add_argument(
        "--trigger",
        default="manual",
        help="Label recorded in event metadata to describe the invocation source.",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Override the number of candidate statuses scanned in this sweep.",
    )
    return parser.parse_args()


async def _run(trigger: str, limit: int | None) -> dict[str, object]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from giftflow_api.core.settings import settings  # type: ignore import-position
    from giftflow_api.db.session import async_session, engine  # type: ignore import-position
    from giftflow_api.workers import ConditionSweepWorker  # type: ignore import-position

    worker = ConditionSweepWorker(
        async_session,  # type: ignore[arg-type]
        interval_seconds=settings.condition_sweep_interval_seconds,
        limit=limit or settings.condition_sweep_limit,
        trigger_label=settings.condition_sweep_trigger_label,
    )
    try:
        summary = await worker.run_once(triggered_by=trigger)
    finally:
        await engine.dispose()
    return summary.as_dict()


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.trigger, args.limit))
    logger.success(
        "Condition sweep run completed",
        scanned=summary.get("scanned", 0),
        triggered=summary.get("triggered", 0),
        failed=summary.get("failed", 0),
        trigger=args.trigger,
    )
    return 0 if not summary.get("errors") else 1


if __name__ == "__main__":
    sys.exit(main())
