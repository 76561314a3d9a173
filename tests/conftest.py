"""Fixtures: a fresh SQLite file per test, seeded with the ticket grid."""

from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text

from rifa.infra.sql import GatedAsyncSession, make_async_engine
from rifa.model.db import ensure_schema_and_fixtures
from rifa.model.reservation import reserve_tickets
from rifa.tilopay import MockTiloPay

UNIT_PRICE = 20

BUYER = {
    "customer_name": "Ana Mora",
    "customer_email": "buyer@example.com",
    "customer_phone": "+506 8888-1234",
}


class Store:
    def __init__(self, engine, sessions, gated) -> None:
        self.engine = engine
        self.sessions = sessions
        self.gated = gated

    @asynccontextmanager
    async def gdb(self):
        async with self.sessions() as session:
            yield GatedAsyncSession(session=session, gated=self.gated)

    async def call(self, fn, *args, **kw):
        async with self.gdb() as gdb:
            return await fn(gdb, *args, **kw)

    async def reserve(self, tickets, unit_price: int = UNIT_PRICE,
                      now: Optional[float] = None, **kw):
        return await self.call(
            reserve_tickets, tickets=tickets, unit_price=unit_price,
            now=now, **{**BUYER, **kw},
        )

    async def _all(self, sql: str, params: Optional[Dict[str, Any]] = None):
        async with self.engine.connect() as conn:
            return (await conn.execute(text(sql), params or {})).all()

    async def ticket(self, n: int) -> Dict[str, Any]:
        rows = await self._all(
            "SELECT ticket_number, status, pending_at FROM tickets "
            "WHERE ticket_number = :n", {"n": n},
        )
        return dict(rows[0]._mapping)

    async def statuses(self, *numbers: int) -> Dict[int, str]:
        return {n: (await self.ticket(n))["status"] for n in numbers}

    async def order(self, order_id: str) -> Dict[str, Any]:
        rows = await self._all(
            "SELECT * FROM orders WHERE id = :id", {"id": order_id}
        )
        return dict(rows[0]._mapping)

    async def items(self, order_id: str):
        rows = await self._all(
            "SELECT ticket_number, price FROM order_items "
            "WHERE order_id = :id ORDER BY ticket_number", {"id": order_id},
        )
        return [tuple(r) for r in rows]

    async def count(self, sql: str, params=None) -> int:
        return (await self._all(sql, params))[0][0]

    async def totals(self) -> Dict[str, int]:
        rows = await self._all(
            "SELECT status, COUNT(*) FROM tickets GROUP BY status"
        )
        return {status: n for status, n in rows}

    async def snapshot(self):
        return (
            await self._all("SELECT * FROM tickets ORDER BY ticket_number"),
            await self._all("SELECT * FROM orders ORDER BY id"),
            await self._all("SELECT * FROM order_items ORDER BY id"),
        )


@pytest.fixture
async def store(tmp_path):
    engine, sessions, gated = make_async_engine(
        f"sqlite:///{tmp_path}/rifa-test.db"
    )
    async with engine.begin() as conn:
        await ensure_schema_and_fixtures(conn)
    yield Store(engine, sessions, gated)
    await engine.dispose()


# ----------------------------
# HTTP
# ----------------------------
ADMIN = {"username": "admin", "password": "test-password"}
CRON_SECRET = "cron-secret"
CLEANUP_SECRET = "manual-secret"


@pytest.fixture
def server(tmp_path, monkeypatch):
    from rifa import server as server_mod
    monkeypatch.setattr(server_mod, "DATABASE_URL",
                        f"sqlite:///{tmp_path}/rifa-api.db")
    monkeypatch.setattr(server_mod, "ADMIN_USERNAME", ADMIN["username"])
    monkeypatch.setattr(server_mod, "ADMIN_PASSWORD", ADMIN["password"])
    monkeypatch.setattr(server_mod, "CRON_SECRET", CRON_SECRET)
    monkeypatch.setattr(server_mod, "CLEANUP_API_SECRET", CLEANUP_SECRET)
    monkeypatch.setattr(server_mod, "TICKET_PRICE", UNIT_PRICE)
    monkeypatch.setattr(server_mod, "SWEEP_INTERVAL_SECONDS", 0)
    monkeypatch.setattr(server_mod, "adapter", MockTiloPay())
    return server_mod


@pytest.fixture
def client(server):
    with TestClient(server.app) as c:
        yield c


def login(client) -> None:
    r = client.post("/admin/login", data=ADMIN)
    assert r.status_code == 200, r.text


def logout(client) -> None:
    client.get("/admin/logout")
