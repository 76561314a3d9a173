import asyncio

import pytest

from rifa.errors import TicketsUnavailableError, ValidationError
from rifa.model.db import TICKET_COUNT

from conftest import UNIT_PRICE


async def test_reserve_marks_tickets_pending(store):
    order = await store.reserve([5, 12])

    assert await store.statuses(5, 12) == {5: "pending", 12: "pending"}
    row = await store.order(order["orderId"])
    assert row["status"] == "pending"
    assert row["total_amount"] == 2 * UNIT_PRICE
    assert row["customer_email"] == "buyer@example.com"
    assert row["confirmation_token"] == order["confirmationToken"]
    assert order["orderNumber"].startswith("ORD-")
    assert order["tickets"] == [5, 12]
    assert await store.items(order["orderId"]) == [
        (5, UNIT_PRICE), (12, UNIT_PRICE)
    ]
    assert (await store.ticket(5))["pending_at"] == row["created_at"]


async def test_total_amount_is_sum_of_item_prices(store):
    order = await store.reserve([1, 2, 3], unit_price=35)
    row = await store.order(order["orderId"])
    assert row["total_amount"] == sum(
        p for _, p in await store.items(order["orderId"])
    ) == 105


async def test_reserve_taken_ticket_conflicts_without_mutation(store):
    await store.reserve([5, 12])
    before = await store.snapshot()

    with pytest.raises(TicketsUnavailableError) as exc:
        await store.reserve([5, 7], customer_email="other@example.com")

    assert exc.value.ticket_numbers == [5]
    assert exc.value.status_code == 409
    assert await store.snapshot() == before
    assert (await store.ticket(7))["status"] == "available"


async def test_reserve_sold_ticket_conflicts(store):
    from rifa.model.reconciliation import confirm_order
    order = await store.reserve([9])
    await store.call(confirm_order, order["orderId"])

    with pytest.raises(TicketsUnavailableError):
        await store.reserve([9])


@pytest.mark.parametrize("tickets", [
    [],
    [0],
    [TICKET_COUNT + 1],
    [3, 3],
    ["4"],
    [True],
    5,
    "12",
    None,
])
async def test_reserve_rejects_bad_selection(store, tickets):
    with pytest.raises(ValidationError):
        await store.reserve(tickets)
    assert await store.totals() == {"available": TICKET_COUNT}


@pytest.mark.parametrize("field,value", [
    ("customer_name", "  "),
    ("customer_email", "not-an-email"),
    ("customer_email", None),
    ("customer_phone", "12"),
    ("customer_phone", "call me maybe"),
    ("customer_name", 123),
    ("customer_email", ["buyer@example.com"]),
    ("customer_phone", 88881234),
])
async def test_reserve_rejects_bad_customer(store, field, value):
    with pytest.raises(ValidationError):
        await store.reserve([1], **{field: value})
    assert await store.count("SELECT COUNT(*) FROM orders") == 0


async def test_too_many_tickets_per_order(store, monkeypatch):
    from rifa.model import reservation
    monkeypatch.setattr(reservation, "MAX_TICKETS_PER_ORDER", 3)
    with pytest.raises(ValidationError):
        await store.reserve([1, 2, 3, 4])


async def test_item_price_survives_price_change(store):
    first = await store.reserve([1, 2], unit_price=20)
    await store.reserve([3], unit_price=50)

    assert await store.items(first["orderId"]) == [(1, 20), (2, 20)]
    assert (await store.order(first["orderId"]))["total_amount"] == 40


async def test_concurrent_reservations_never_double_book(store):
    results = await asyncio.gather(
        store.reserve([10, 11, 12], customer_email="a@example.com"),
        store.reserve([12, 13], customer_email="b@example.com"),
        return_exceptions=True,
    )
    wins = [r for r in results if isinstance(r, dict)]
    losses = [r for r in results if isinstance(r, TicketsUnavailableError)]
    assert len(wins) == 1 and len(losses) == 1

    # ticket 12 is owned by exactly one live order
    owners = await store.count("""
        SELECT COUNT(*) FROM order_items oi JOIN orders o ON o.id = oi.order_id
        WHERE oi.ticket_number = 12 AND o.status <> 'cancelled'
    """)
    assert owners == 1
    assert await store.count("SELECT COUNT(*) FROM orders") == 1

    totals = await store.totals()
    assert sum(totals.values()) == TICKET_COUNT
    assert totals["pending"] == len(wins[0]["tickets"])
