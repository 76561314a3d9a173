# model/reservation.py
"""
Reservation: one order in `pending`, one item per ticket at the current unit
price, and every selected ticket moved available -> pending.

Everything happens in a single transaction. Ticket acquisition is a single
conditional bulk update whose returned row count must equal the request; if
any ticket was taken in the meantime the whole reservation rolls back, so a
lost race leaves no order, no items and no held tickets behind.
"""

from __future__ import annotations
import os
import uuid
from typing import Any, Dict, List, Optional

from loguru import logger

from ..errors import TicketsUnavailableError, ValidationError
from ..helpers import (
    now_ts, is_valid_email, is_valid_phone, new_order_number,
    new_confirmation_token,
)
from ..infra.sql import GatedAsyncSession, store_errors
from ..realtime import ChangeEvent, INSERT, fanout
from ..realtime.events import ticket_updates
from .db import TICKET_COUNT, T_AVAILABLE, T_PENDING, O_PENDING
from .orders import _insert_order, public_view
from .tickets import _claim

MAX_TICKETS_PER_ORDER = int(os.environ.get("MAX_TICKETS_PER_ORDER", "50"))


def validate_selection(tickets: Any) -> List[int]:
    if not isinstance(tickets, list) or not tickets:
        raise ValidationError("Select at least one ticket")
    numbers: List[int] = []
    for t in tickets:
        # bool is an int subclass; "true" is not a ticket number
        if isinstance(t, bool) or not isinstance(t, int):
            raise ValidationError("Ticket numbers must be integers")
        if not 1 <= t <= TICKET_COUNT:
            raise ValidationError(
                f"Ticket numbers must be between 1 and {TICKET_COUNT}"
            )
        numbers.append(t)
    if len(set(numbers)) != len(numbers):
        raise ValidationError("Ticket numbers must be distinct")
    if len(numbers) > MAX_TICKETS_PER_ORDER:
        raise ValidationError(
            f"At most {MAX_TICKETS_PER_ORDER} tickets per order"
        )
    return sorted(numbers)


def validate_customer(name: Optional[str], email: Optional[str],
                      phone: Optional[str]) -> Dict[str, str]:
    for field, value in (("customer_name", name), ("customer_email", email),
                         ("customer_phone", phone)):
        if value is not None and not isinstance(value, str):
            raise ValidationError(f"{field} must be a string")
    name = (name or "").strip()
    email = (email or "").strip()
    phone = (phone or "").strip()
    if not name:
        raise ValidationError("customer_name is required")
    if not is_valid_email(email):
        raise ValidationError(
            "customer_email is required and must be a valid email address"
        )
    if not is_valid_phone(phone):
        raise ValidationError(
            "customer_phone is required and must be a valid phone number"
        )
    return {
        "customer_name": name,
        "customer_email": email,
        "customer_phone": phone,
    }


async def reserve_tickets(
    gdb: GatedAsyncSession,
    *,
    customer_name: Optional[str],
    customer_email: Optional[str],
    customer_phone: Optional[str],
    tickets: Any,
    unit_price: int,
    feed=None,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    customer = validate_customer(customer_name, customer_email,
                                 customer_phone)
    numbers = validate_selection(tickets)
    if unit_price < 0:
        raise ValidationError("unit price must not be negative")

    created_at = now_ts() if now is None else now
    order = {
        "id": uuid.uuid4().hex,
        "order_number": new_order_number(created_at),
        **customer,
        "total_amount": unit_price * len(numbers),
        "status": O_PENDING,
        "confirmation_token": new_confirmation_token(),
        "user_confirmed_at": None,
        "created_at": created_at,
    }

    db = gdb.session
    async with store_errors("create order"):
        async with gdb.gated():
            async with db.begin():
                claimed = await _claim(db, numbers, created_at)
                if len(claimed) != len(numbers):
                    # raising inside begin() rolls the claim back
                    raise TicketsUnavailableError(
                        set(numbers) - set(claimed)
                    )
                await _insert_order(db, order, numbers, unit_price)

    logger.info(
        f"order {order['order_number']} reserved {len(numbers)} tickets "
        f"for {customer['customer_email']}"
    )

    commit_ts = now_ts()
    await fanout(feed, [
        *ticket_updates(numbers, T_AVAILABLE, T_PENDING, created_at,
                        commit_ts),
        ChangeEvent(
            table="orders", type=INSERT,
            new={k: v for k, v in order.items()
                 if k != "confirmation_token"},
            commit_ts=commit_ts,
        ),
    ])

    out = public_view(order, numbers)
    out["confirmationToken"] = order["confirmation_token"]
    return out
