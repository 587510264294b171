"""Background workers for the settlement core.

* the escrow expiry sweep marks holds past ``expires_at`` as Expired and
  releases or refunds their funds;
* the recurring worker materializes due occurrences of active series.

Both ``start_*`` helpers return an async callable that stops the worker
gracefully.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from bookings.app.core.constants import EXPIRE_CHECK_SECONDS, RECURRING_CHECK_SECONDS
from bookings.app.services.escrow_services import EscrowSettlementService
from bookings.app.services.recurrence_services import RecurrenceExpander
from bookings.app.services.shared_services import get_env_int as _get_env_int, utc_now

logger = logging.getLogger(__name__)


async def _expire_once(settlements: EscrowSettlementService) -> int:
    expired = await settlements.expire_overdue(utc_now())
    return len(expired)


async def _materialize_once(expander: RecurrenceExpander) -> int:
    result = await expander.materialize_due()
    created = sum(len(drafts) for drafts in result.values())
    if created:
        logger.info("Materialized %d occurrence(s) across %d series", created, len(result))
    return created


async def _run_loop(
    stop_event: asyncio.Event,
    step: Callable[[], Awaitable[int]],
    interval_env: str,
    default_interval: int,
    initial_delay: float = 2,
) -> None:
    # initial small delay to avoid hammering immediately at startup
    try:
        await asyncio.sleep(initial_delay)
    except asyncio.CancelledError:
        return
    while not stop_event.is_set():
        try:
            await step()
        except Exception as e:
            logger.exception("Worker iteration error: %s", e)
        # Re-read the interval each iteration so ENV changes apply without restart.
        cur_interval = _get_env_int(interval_env, default_interval)
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=max(1, cur_interval))
        except asyncio.TimeoutError:
            continue


def _start(name: str, step: Callable[[], Awaitable[int]], interval_env: str, default_interval: int, initial_delay: float) -> Callable[[], Awaitable[None]]:
    stop_event: asyncio.Event = asyncio.Event()
    task = asyncio.create_task(
        _run_loop(stop_event, step, interval_env, default_interval, initial_delay),
        name=name,
    )

    async def _stop() -> None:
        stop_event.set()
        try:
            await asyncio.wait_for(task, timeout=5)
        except asyncio.TimeoutError:
            logger.warning("%s: did not stop in time, cancelling", name)
            task.cancel()

    logger.info("%s started (interval=%ss)", name, _get_env_int(interval_env, default_interval))
    return _stop


async def start_expiration_worker(
    settlements: EscrowSettlementService,
    *,
    initial_delay: float = 2,
) -> Callable[[], Awaitable[None]]:
    """Start the escrow expiry worker and return an async stop() function."""
    return _start(
        "escrow-expire-worker",
        lambda: _expire_once(settlements),
        "ESCROW_EXPIRE_CHECK_SECONDS",
        EXPIRE_CHECK_SECONDS,
        initial_delay,
    )


async def start_recurring_worker(
    expander: RecurrenceExpander,
    *,
    initial_delay: float = 2,
) -> Callable[[], Awaitable[None]]:
    """Start the recurring-series worker and return an async stop() function."""
    return _start(
        "recurring-worker",
        lambda: _materialize_once(expander),
        "RECURRING_CHECK_SECONDS",
        RECURRING_CHECK_SECONDS,
        initial_delay,
    )


async def stop_worker(stop_callable: Optional[Callable[[], Awaitable[None]]] = None) -> None:
    """Call the provided stop callable if any."""
    if stop_callable:
        await stop_callable()


__all__ = ["start_expiration_worker", "start_recurring_worker", "stop_worker"]
