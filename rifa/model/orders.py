# model/orders.py
from __future__ import annotations
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ForbiddenError, ValidationError
from ..helpers import ct_equal, to_iso
from ..infra.sql import GatedAsyncSession, store_errors
from .db import (
    RESERVATION_TTL_SECONDS, O_AWAITING, O_OPEN, expanding,
)

ORDER_COLUMNS = """
    id, order_number, customer_name, customer_email, customer_phone,
    total_amount, status, confirmation_token, user_confirmed_at, created_at
"""


# UN-GATED internal function
async def _insert_order(db: AsyncSession, order: Dict[str, Any],
                        numbers: Sequence[int], unit_price: int) -> None:
    await db.execute(text(f"""
        INSERT INTO orders ({ORDER_COLUMNS})
        VALUES (
            :id, :order_number, :customer_name, :customer_email,
            :customer_phone, :total_amount, :status, :confirmation_token,
            :user_confirmed_at, :created_at
        )
    """), order)
    await db.execute(text("""
        INSERT INTO order_items (order_id, ticket_number, price)
        VALUES (:order_id, :ticket_number, :price)
    """), [
        {"order_id": order["id"], "ticket_number": n, "price": unit_price}
        for n in numbers
    ])


# UN-GATED internal function
async def _get_order(db: AsyncSession,
                     order_id: str) -> Optional[Dict[str, Any]]:
    row = (await db.execute(
        text(f"SELECT {ORDER_COLUMNS} FROM orders WHERE id = :id"),
        {"id": order_id},
    )).mappings().first()
    return dict(row) if row else None


# UN-GATED internal function
async def _ticket_numbers(db: AsyncSession, order_id: str) -> List[int]:
    rows = (await db.execute(text("""
        SELECT ticket_number FROM order_items
        WHERE order_id = :id ORDER BY ticket_number
    """), {"id": order_id})).scalars().all()
    return list(rows)


# UN-GATED internal function
async def _transition(
    db: AsyncSession, order_id: str, from_statuses: Sequence[str],
    to_status: str, **extra: Any,
) -> bool:
    """
    Conditional status write. False means the order was not in
    `from_statuses` at write time and nothing changed.
    """
    sets = ", ".join(f"{col} = :{col}" for col in extra)
    sets = f"status = :to_status{', ' + sets if sets else ''}"
    row = (await db.execute(
        expanding(f"""
            UPDATE orders SET {sets}
             WHERE id = :id AND status IN :from_statuses
            RETURNING id
        """, "from_statuses"),
        {
            "id": order_id, "to_status": to_status,
            "from_statuses": list(from_statuses), **extra,
        },
    )).first()
    return row is not None


# ------------------------------------------------------------------------------
# Views
# ------------------------------------------------------------------------------
def public_view(order: Dict[str, Any],
                tickets: Sequence[int]) -> Dict[str, Any]:
    return {
        "orderId": order["id"],
        "orderNumber": order["order_number"],
        "status": order["status"],
        "totalAmount": order["total_amount"],
        "tickets": list(tickets),
        "createdAt": to_iso(order["created_at"]),
        "expiresAt": to_iso(order["created_at"] + RESERVATION_TTL_SECONDS),
        "userConfirmedAt": to_iso(order["user_confirmed_at"]),
    }


def admin_view(order: Dict[str, Any],
               tickets: Sequence[int]) -> Dict[str, Any]:
    out = public_view(order, tickets)
    out.update({
        "customerName": order["customer_name"],
        "customerEmail": order["customer_email"],
        "customerPhone": order["customer_phone"],
    })
    return out


# ------------------------------------------------------------------------------
# Read models
# ------------------------------------------------------------------------------
async def get_order_for_buyer(
    gdb: GatedAsyncSession, order_id: str, token: str
) -> Dict[str, Any]:
    db = gdb.session
    async with store_errors("fetch order"):
        async with gdb.gated():
            async with db.begin():
                order = await _get_order(db, order_id)
                # unknown order and wrong token must look the same
                if order is None or not ct_equal(
                        token, order["confirmation_token"]):
                    raise ForbiddenError()
                tickets = await _ticket_numbers(db, order_id)
    return public_view(order, tickets)


QUEUE = "queue"
MAX_LIST_LIMIT = 500


def clamp_limit(limit: int) -> int:
    return max(1, min(limit, MAX_LIST_LIMIT))


async def list_orders(
    gdb: GatedAsyncSession, status: Optional[str] = None, limit: int = 200
) -> List[Dict[str, Any]]:
    """
    Newest first. status='queue' is the reconciliation queue: open orders,
    the ones a buyer already confirmed first.
    """
    if status == QUEUE:
        statuses = list(O_OPEN)
    elif status:
        statuses = [status]
    else:
        statuses = None

    where = "WHERE status IN :statuses" if statuses else ""
    stmt = f"""
        SELECT {ORDER_COLUMNS} FROM orders {where}
        ORDER BY created_at DESC LIMIT :limit
    """
    params: Dict[str, Any] = {"limit": clamp_limit(limit)}
    if statuses:
        stmt_ = expanding(stmt, "statuses")
        params["statuses"] = statuses
    else:
        stmt_ = text(stmt)

    db = gdb.session
    async with store_errors("fetch orders"):
        async with gdb.gated():
            async with db.begin():
                orders = [
                    dict(r) for r in
                    (await db.execute(stmt_, params)).mappings().all()
                ]
                items: Dict[str, List[int]] = {o["id"]: [] for o in orders}
                if orders:
                    rows = (await db.execute(
                        expanding("""
                            SELECT order_id, ticket_number FROM order_items
                            WHERE order_id IN :ids
                            ORDER BY ticket_number
                        """, "ids"),
                        {"ids": list(items)},
                    )).all()
                    for order_id, n in rows:
                        items[order_id].append(n)

    if status == QUEUE:
        # stable sort keeps newest-first inside each group
        orders.sort(key=lambda o: o["status"] != O_AWAITING)
    return [admin_view(o, items[o["id"]]) for o in orders]


def parse_order_id(payload: Dict[str, Any]) -> str:
    order_id = payload.get("orderId")
    if not order_id or not isinstance(order_id, str):
        raise ValidationError("Order ID is required")
    return order_id

