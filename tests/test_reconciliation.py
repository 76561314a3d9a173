import secrets

import pytest
from sqlalchemy import text

from rifa.errors import ConflictError, ForbiddenError, NotFoundError
from rifa.model.db import TICKET_COUNT
from rifa.model.reconciliation import (
    buyer_confirm, confirm_order, reject_order,
)
from rifa.model.sweeper import sweep_expired


async def test_admin_confirm_sells_tickets(store):
    order = await store.reserve([5, 12])

    res = await store.call(confirm_order, order["orderId"])

    assert res["success"] is True
    assert res["ticketsConfirmed"] == 2
    assert res["orderNumber"] == order["orderNumber"]
    assert (await store.order(order["orderId"]))["status"] == "completed"
    for n in (5, 12):
        t = await store.ticket(n)
        assert t["status"] == "sold"
        assert t["pending_at"] is None


async def test_admin_confirm_twice_conflicts(store):
    order = await store.reserve([5, 12])
    await store.call(confirm_order, order["orderId"])
    before = await store.snapshot()

    with pytest.raises(ConflictError) as exc:
        await store.call(confirm_order, order["orderId"])

    assert exc.value.actual_status == "completed"
    assert "completed" in exc.value.message
    assert await store.snapshot() == before


async def test_admin_confirm_after_buyer_confirm(store):
    order = await store.reserve([8])
    await store.call(buyer_confirm, order["orderId"],
                     order["confirmationToken"])

    res = await store.call(confirm_order, order["orderId"])
    assert res["ticketsConfirmed"] == 1
    assert await store.statuses(8) == {8: "sold"}


async def test_admin_reject_releases_tickets(store):
    order = await store.reserve([20, 21, 22])

    res = await store.call(reject_order, order["orderId"])

    assert res["ticketsReleased"] == 3
    assert (await store.order(order["orderId"]))["status"] == "cancelled"
    for n in (20, 21, 22):
        t = await store.ticket(n)
        assert t["status"] == "available"
        assert t["pending_at"] is None


@pytest.mark.parametrize("first,second", [
    (confirm_order, reject_order),
    (reject_order, confirm_order),
    (reject_order, reject_order),
])
async def test_terminal_orders_never_change(store, first, second):
    order = await store.reserve([30, 31])
    await store.call(first, order["orderId"])
    before = await store.snapshot()

    with pytest.raises(ConflictError):
        await store.call(second, order["orderId"])
    with pytest.raises(ConflictError):
        await store.call(buyer_confirm, order["orderId"],
                         order["confirmationToken"])

    assert await store.snapshot() == before


async def test_admin_actions_on_unknown_order(store):
    with pytest.raises(NotFoundError):
        await store.call(confirm_order, "does-not-exist")
    with pytest.raises(NotFoundError):
        await store.call(reject_order, "does-not-exist")


async def test_confirm_of_swept_order_leaves_new_holder_alone(store):
    stale = await store.reserve([40], now=1_000.0)
    await store.call(sweep_expired, now=1_000.0 + 11 * 60)
    fresh = await store.reserve([40], customer_email="next@example.com")

    with pytest.raises(ConflictError):
        await store.call(confirm_order, stale["orderId"])

    assert (await store.order(fresh["orderId"]))["status"] == "pending"
    assert await store.statuses(40) == {40: "pending"}


async def test_buyer_confirm_moves_to_awaiting(store):
    order = await store.reserve([50, 51])

    res = await store.call(buyer_confirm, order["orderId"],
                           order["confirmationToken"])

    assert res["success"] is True
    assert res["orderNumber"] == order["orderNumber"]
    row = await store.order(order["orderId"])
    assert row["status"] == "awaiting_verification"
    assert row["user_confirmed_at"] is not None
    # purely a flag for the admin queue
    assert await store.statuses(50, 51) == {50: "pending", 51: "pending"}


async def test_buyer_confirm_twice_names_status(store):
    order = await store.reserve([52])
    await store.call(buyer_confirm, order["orderId"],
                     order["confirmationToken"])

    with pytest.raises(ConflictError) as exc:
        await store.call(buyer_confirm, order["orderId"],
                         order["confirmationToken"])
    assert exc.value.actual_status == "awaiting_verification"


async def test_wrong_token_looks_like_missing_order(store):
    order = await store.reserve([60])

    with pytest.raises(ForbiddenError) as wrong_token:
        await store.call(buyer_confirm, order["orderId"],
                         secrets.token_urlsafe(32))
    with pytest.raises(ForbiddenError) as no_order:
        await store.call(buyer_confirm, "no-such-order",
                         order["confirmationToken"])

    assert wrong_token.value.message == no_order.value.message
    assert wrong_token.value.status_code == no_order.value.status_code == 403
    assert (await store.order(order["orderId"]))["status"] == "pending"


async def test_status_totals_hold_through_lifecycle(store):
    a = await store.reserve([1, 2, 3])
    b = await store.reserve([4, 5])
    c = await store.reserve([6])
    await store.call(confirm_order, a["orderId"])
    await store.call(reject_order, b["orderId"])
    await store.call(buyer_confirm, c["orderId"], c["confirmationToken"])

    totals = await store.totals()
    assert totals == {"available": TICKET_COUNT - 4, "pending": 1, "sold": 3}
    assert sum(totals.values()) == TICKET_COUNT


async def test_confirm_never_sells_a_ticket_another_order_holds(store):
    owner = await store.reserve([70])
    # a second open order pointing at the same ticket
    async with store.engine.begin() as conn:
        await conn.execute(text("""
            INSERT INTO orders (id, order_number, customer_name,
                customer_email, customer_phone, total_amount, status,
                confirmation_token, created_at)
            VALUES ('intruder', 'ORD-1', 'X', 'x@example.com', '88881234',
                    20, 'pending', 'tok', 1.0)
        """))
        await conn.execute(text("""
            INSERT INTO order_items (order_id, ticket_number, price)
            VALUES ('intruder', 70, 20)
        """))
    before = await store.snapshot()

    with pytest.raises(ConflictError):
        await store.call(confirm_order, "intruder")

    assert await store.snapshot() == before

    # rejecting the intruder must not free the owner's ticket either
    res = await store.call(reject_order, "intruder")
    assert res["ticketsReleased"] == 0
    assert await store.statuses(70) == {70: "pending"}
    res = await store.call(confirm_order, owner["orderId"])
    assert res["ticketsConfirmed"] == 1
