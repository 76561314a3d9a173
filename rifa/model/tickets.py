# model/tickets.py
"""
Ticket store. Every status write is conditional on the current status, so a
status read earlier in the same request is never trusted at write time.
"""

from __future__ import annotations
from typing import Dict, List, Sequence

from loguru import logger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..infra.sql import GatedAsyncSession, store_errors
from .db import (
    TICKET_COUNT, T_AVAILABLE, T_PENDING, T_SOLD, O_LIVE,
    SQL_HELD_BY_OTHER_ORDER, expanding,
)


# UN-GATED internal function
async def _claim(
    db: AsyncSession, numbers: Sequence[int], now_ts: float
) -> List[int]:
    """
    available -> pending for every number that is still available.
    Returns the numbers actually claimed; the caller compares against the
    request and rolls back if short.
    """
    rows = (await db.execute(
        expanding("""
            UPDATE tickets
               SET status = :pending, pending_at = :now
             WHERE ticket_number IN :nums
               AND status = :available
            RETURNING ticket_number
        """, "nums"),
        {
            "nums": list(numbers), "now": now_ts,
            "pending": T_PENDING, "available": T_AVAILABLE,
        },
    )).scalars().all()
    return sorted(rows)


# UN-GATED internal function
async def _finalize(
    db: AsyncSession, order_id: str, numbers: Sequence[int], to_status: str
) -> List[int]:
    """
    pending -> sold|available for the tickets of `order_id`, clearing
    pending_at. Tickets another live order references are left untouched.
    """
    if not numbers:
        return []
    rows = (await db.execute(
        expanding(f"""
            UPDATE tickets
               SET status = :to_status, pending_at = NULL
             WHERE ticket_number IN :nums
               AND status = :pending
               AND NOT {SQL_HELD_BY_OTHER_ORDER}
            RETURNING ticket_number
        """, "nums", "live"),
        {
            "nums": list(numbers), "to_status": to_status,
            "pending": T_PENDING, "order_id": order_id, "live": list(O_LIVE),
        },
    )).scalars().all()
    return sorted(rows)


async def _sell(
    db: AsyncSession, order_id: str, numbers: Sequence[int]
) -> List[int]:
    return await _finalize(db, order_id, numbers, T_SOLD)


async def _release(
    db: AsyncSession, order_id: str, numbers: Sequence[int]
) -> List[int]:
    return await _finalize(db, order_id, numbers, T_AVAILABLE)


async def _release_unowned(
    db: AsyncSession, numbers: Sequence[int]
) -> List[int]:
    # bulk release for orders that were already moved out of the live set
    return await _finalize(db, "", numbers, T_AVAILABLE)


# UN-GATED internal function
async def _release_orphans(db: AsyncSession, cutoff: float) -> List[int]:
    """
    Housekeeping: stale pending holds that no live order references.
    """
    rows = (await db.execute(
        expanding("""
            UPDATE tickets
               SET status = :available, pending_at = NULL
             WHERE status = :pending
               AND (pending_at IS NULL OR pending_at < :cutoff)
               AND NOT EXISTS (
                    SELECT 1 FROM order_items oi
                    JOIN orders o ON o.id = oi.order_id
                    WHERE oi.ticket_number = tickets.ticket_number
                      AND o.status IN :live
               )
            RETURNING ticket_number
        """, "live"),
        {
            "available": T_AVAILABLE, "pending": T_PENDING,
            "cutoff": cutoff, "live": list(O_LIVE),
        },
    )).scalars().all()
    return sorted(rows)


# ------------------------------------------------------------------------------
# Read models
# ------------------------------------------------------------------------------
async def list_tickets(gdb: GatedAsyncSession) -> List[Dict[str, object]]:
    db = gdb.session
    async with store_errors("fetch tickets"):
        async with gdb.gated():
            async with db.begin():
                rows = (await db.execute(text("""
                    SELECT ticket_number, status FROM tickets
                    ORDER BY ticket_number
                """))).mappings().all()
    return [dict(r) for r in rows]


async def ticket_stats(gdb: GatedAsyncSession) -> Dict[str, int]:
    db = gdb.session
    async with store_errors("fetch ticket stats"):
        async with gdb.gated():
            async with db.begin():
                rows = (await db.execute(text("""
                    SELECT status, COUNT(*) AS n FROM tickets GROUP BY status
                """))).all()
    stats = {T_AVAILABLE: 0, T_PENDING: 0, T_SOLD: 0}
    for status, n in rows:
        stats[status] = int(n)
    # real row count; anything but TICKET_COUNT means the grid is damaged
    stats["total"] = sum(stats.values())
    if stats["total"] != TICKET_COUNT:
        logger.error(
            f"ticket grid has {stats['total']} rows, expected {TICKET_COUNT}"
        )
    return stats
