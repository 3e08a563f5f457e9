"""
Order Service — Expiry sweep

On a cron schedule (`0 2 * * *`, 02:00 local, by default) every soft-deleted
order past its restoration deadline is purged through the workflow engine,
one order at a time. A failure on one order is logged and the sweep moves on.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable

import croniter

from .commands import WorkflowEngine
from .errors import WorkflowError
from .identity import SYSTEM_PRINCIPAL

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_CRON = "0 2 * * *"


def check_cron_expression(cron_expression: str) -> str:
    if not croniter.croniter.is_valid(cron_expression):
        raise ValueError(f"Invalid sweep schedule: {cron_expression!r}")
    return cron_expression


def seconds_until_next_run(cron_expression: str, now: datetime) -> float:
    """Seconds from `now` to the next scheduled run, strictly in the future.

    `now` may be naive local time or timezone-aware. The difference is taken
    on POSIX timestamps, so a DST change in between is counted in real seconds.
    """
    cron = croniter.croniter(cron_expression, now)
    next_run = cron.get_next(datetime)
    return max(0.0, next_run.timestamp() - now.timestamp())


async def sweep_expired_orders(engine: WorkflowEngine) -> dict[str, int]:
    candidates = await engine.find_purge_candidates()
    purged = skipped = failed = 0
    for order_id in candidates:
        try:
            await engine.purge_order(order_id, SYSTEM_PRINCIPAL)
            purged += 1
        except WorkflowError as e:
            # restored or purged by someone else since the scan
            logger.info("Skipping order %s during sweep: %s", order_id, e)
            skipped += 1
        except Exception:
            logger.exception("Failed to purge order %s", order_id)
            failed += 1

    logger.info(
        "Expiry sweep done: %s candidates, %s purged, %s skipped, %s failed",
        len(candidates),
        purged,
        skipped,
        failed,
    )
    return {"candidates": len(candidates), "purged": purged, "skipped": skipped, "failed": failed}


async def run_expiry_sweeper(
    engine: WorkflowEngine,
    shutdown_event: asyncio.Event,
    cron_expression: str = DEFAULT_SWEEP_CRON,
    local_now: Callable[[], datetime] = datetime.now,
) -> None:
    """
    Sleeps until the next run time, sweeps, repeats.
    Returns as soon as shutdown_event is set.
    """
    logger.info("Expiry sweeper scheduled on %r", cron_expression)
    while not shutdown_event.is_set():
        delay = seconds_until_next_run(cron_expression, local_now())
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=delay)
            break
        except asyncio.TimeoutError:
            pass

        try:
            await sweep_expired_orders(engine)
        except Exception:
            logger.exception("Expiry sweep failed")
    logger.info("Expiry sweeper stopped")
