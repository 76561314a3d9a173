# model/reconciliation.py
"""
Order transitions after reservation:

- buyer_confirm:  pending -> awaiting_verification (token gated, no tickets)
- confirm_order:  pending|awaiting_verification -> completed, tickets -> sold
- reject_order:   pending|awaiting_verification -> cancelled, tickets freed

Order and ticket writes of one transition share a transaction, so a failed
ticket update leaves the order exactly as it was.
"""

from __future__ import annotations
from typing import Any, Dict, List, Tuple

from loguru import logger

from ..errors import ConflictError, ForbiddenError, NotFoundError
from ..helpers import now_ts, ct_equal
from ..infra.sql import GatedAsyncSession, store_errors
from ..realtime import ChangeEvent, UPDATE, fanout
from ..realtime.events import ticket_updates
from .db import (
    T_PENDING, T_SOLD, T_AVAILABLE,
    O_PENDING, O_AWAITING, O_COMPLETED, O_CANCELLED, O_OPEN,
)
from .orders import _get_order, _ticket_numbers, _transition
from .tickets import _sell, _release

CONFIRM_CONFLICT = "Order is already {status}"
CANCEL_CONFLICT = "Cannot cancel order with status: {status}"


def _order_event(order: Dict[str, Any], new_status: str,
                 commit_ts: float, **extra: Any) -> ChangeEvent:
    return ChangeEvent(
        table="orders",
        type=UPDATE,
        old={"id": order["id"], "status": order["status"]},
        new={"id": order["id"], "order_number": order["order_number"],
             "status": new_status, **extra},
        commit_ts=commit_ts,
    )


async def buyer_confirm(
    gdb: GatedAsyncSession, order_id: str, token: str, *, feed=None
) -> Dict[str, Any]:
    db = gdb.session
    confirmed_at = now_ts()
    async with store_errors("update order status"):
        async with gdb.gated():
            async with db.begin():
                order = await _get_order(db, order_id)
                # Don't reveal whether order exists or token is wrong
                if order is None or not ct_equal(
                        token, order["confirmation_token"]):
                    raise ForbiddenError()
                if order["status"] != O_PENDING:
                    raise ConflictError(
                        CONFIRM_CONFLICT.format(status=order["status"]),
                        actual_status=order["status"],
                    )
                ok = await _transition(
                    db, order_id, [O_PENDING], O_AWAITING,
                    user_confirmed_at=confirmed_at,
                )
                if not ok:
                    raise await _lost_race(db, order_id, CONFIRM_CONFLICT)

    logger.info(f"buyer confirmed payment for order {order['order_number']}")
    await fanout(feed, [
        _order_event(order, O_AWAITING, now_ts(),
                     user_confirmed_at=confirmed_at),
    ])
    return {
        "success": True,
        "message": "Payment confirmation received. Admin will verify "
                   "shortly.",
        "orderNumber": order["order_number"],
    }


async def _open_order(
    db, order_id: str, conflict: str
) -> Tuple[Dict[str, Any], List[int]]:
    order = await _get_order(db, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    if order["status"] not in O_OPEN:
        raise ConflictError(conflict.format(status=order["status"]),
                            actual_status=order["status"])
    return order, await _ticket_numbers(db, order_id)


async def _lost_race(db, order_id: str, conflict: str) -> ConflictError:
    current = await _get_order(db, order_id)
    return ConflictError(conflict.format(status=current["status"]),
                         actual_status=current["status"])


async def confirm_order(
    gdb: GatedAsyncSession, order_id: str, *, feed=None
) -> Dict[str, Any]:
    db = gdb.session
    async with store_errors("confirm payment"):
        async with gdb.gated():
            async with db.begin():
                order, numbers = await _open_order(
                    db, order_id, CONFIRM_CONFLICT
                )
                if not await _transition(db, order_id, O_OPEN, O_COMPLETED):
                    raise await _lost_race(db, order_id, CONFIRM_CONFLICT)
                sold = await _sell(db, order_id, numbers)
                if len(sold) != len(numbers):
                    # released by a sweep and possibly re-reserved by someone
                    # else; selling them now would double-sell
                    lost = sorted(set(numbers) - set(sold))
                    logger.error(
                        f"order {order['order_number']}: tickets {lost} are "
                        f"no longer held, refusing to complete"
                    )
                    raise ConflictError(
                        "Order tickets are no longer held: "
                        + ", ".join(str(n) for n in lost),
                        actual_status=order["status"],
                    )

    logger.info(
        f"payment confirmed for order {order['order_number']}, "
        f"{len(sold)} tickets sold"
    )
    commit_ts = now_ts()
    await fanout(feed, [
        _order_event(order, O_COMPLETED, commit_ts),
        *ticket_updates(sold, T_PENDING, T_SOLD, None, commit_ts),
    ])
    return {
        "success": True,
        "message": "Payment confirmed successfully",
        "orderNumber": order["order_number"],
        "ticketsConfirmed": len(sold),
    }


async def reject_order(
    gdb: GatedAsyncSession, order_id: str, *, feed=None
) -> Dict[str, Any]:
    db = gdb.session
    async with store_errors("cancel order"):
        async with gdb.gated():
            async with db.begin():
                order, numbers = await _open_order(
                    db, order_id, CANCEL_CONFLICT
                )
                if not await _transition(db, order_id, O_OPEN, O_CANCELLED):
                    raise await _lost_race(db, order_id, CANCEL_CONFLICT)
                released = await _release(db, order_id, numbers)

    if len(released) != len(numbers):
        logger.warning(
            f"order {order['order_number']}: "
            f"{len(numbers) - len(released)} tickets were not held by it"
        )
    logger.info(
        f"order {order['order_number']} cancelled, "
        f"{len(released)} tickets released"
    )
    commit_ts = now_ts()
    await fanout(feed, [
        _order_event(order, O_CANCELLED, commit_ts),
        *ticket_updates(released, T_PENDING, T_AVAILABLE, None, commit_ts),
    ])
    return {
        "success": True,
        "message": "Order cancelled successfully",
        "orderNumber": order["order_number"],
        "ticketsReleased": len(released),
    }
