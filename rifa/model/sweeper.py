# model/sweeper.py
from __future__ import annotations
import asyncio
from typing import Any, Dict, Optional

from loguru import logger

from ..helpers import now_ts
from ..infra.sql import GatedAsyncSession, store_errors
from ..realtime import ChangeEvent, UPDATE, fanout
from ..realtime.events import ticket_updates
from .db import (
    RESERVATION_TTL_SECONDS, T_PENDING, T_AVAILABLE, O_PENDING, O_CANCELLED,
    expanding,
)
from .tickets import _release_unowned, _release_orphans


async def sweep_expired(
    gdb: GatedAsyncSession,
    *,
    now: Optional[float] = None,
    ttl_seconds: int = RESERVATION_TTL_SECONDS,
    feed=None,
) -> Dict[str, Any]:
    """
    Cancel pending orders older than the reservation TTL and release their
    tickets. Idempotent: a second run over the same data reports zero.

    Age comes from orders.created_at. Orders a buyer already confirmed
    (awaiting_verification) are left for the admin.
    """
    now = now_ts() if now is None else now
    cutoff = now - ttl_seconds

    db = gdb.session
    async with store_errors("clean up expired orders"):
        async with gdb.gated():
            async with db.begin():
                # conditional: an order confirmed since we looked is skipped
                cancelled = (await db.execute(
                    expanding("""
                        UPDATE orders SET status = :cancelled
                         WHERE status IN :pending AND created_at < :cutoff
                        RETURNING id, order_number
                    """, "pending"),
                    {
                        "cancelled": O_CANCELLED, "pending": [O_PENDING],
                        "cutoff": cutoff,
                    },
                )).mappings().all()

                released = []
                if cancelled:
                    numbers = (await db.execute(
                        expanding("""
                            SELECT ticket_number FROM order_items
                            WHERE order_id IN :ids
                        """, "ids"),
                        {"ids": [o["id"] for o in cancelled]},
                    )).scalars().all()
                    released = await _release_unowned(
                        db, sorted(set(numbers))
                    )

                orphans = await _release_orphans(db, cutoff)

    if not cancelled and not orphans:
        return {"message": "No expired orders found", "cleaned": 0,
                "orders": 0}

    if orphans:
        logger.warning(
            f"released {len(orphans)} pending tickets with no live order: "
            f"{orphans}"
        )
    cleaned = len(released) + len(orphans)
    logger.info(
        f"Cleaned up {cleaned} tickets from {len(cancelled)} expired orders"
    )

    commit_ts = now_ts()
    await fanout(feed, [
        *(
            ChangeEvent(
                table="orders", type=UPDATE,
                old={"id": o["id"], "status": O_PENDING},
                new={"id": o["id"], "order_number": o["order_number"],
                     "status": O_CANCELLED},
                commit_ts=commit_ts,
            )
            for o in cancelled
        ),
        *ticket_updates(released + orphans, T_PENDING, T_AVAILABLE, None,
                        commit_ts),
    ])
    return {
        "message": "Successfully cleaned up expired tickets",
        "cleaned": cleaned,
        "orders": len(cancelled),
    }


async def run_periodic_sweep(sessions, gated, interval: float,
                             feed=None) -> None:
    """
    In-process stand-in for the external cron. Runs until cancelled.
    """
    logger.info(f"periodic sweep every {interval:.0f}s")
    while True:
        await asyncio.sleep(interval)
        try:
            async with sessions() as session:
                await sweep_expired(
                    GatedAsyncSession(session=session, gated=gated),
                    feed=feed,
                )
        except Exception:
            # the next tick retries; the cron endpoint still works
            logger.exception("periodic sweep failed")
