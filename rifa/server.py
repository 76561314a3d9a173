from __future__ import annotations

import asyncio
import os
from typing import Optional

import httpx
import orjson
import redis.asyncio as redis
from fastapi import Depends, FastAPI, Form, Request
from fastapi.responses import ORJSONResponse, StreamingResponse
from loguru import logger
from starlette.middleware.sessions import SessionMiddleware

from .errors import (
    AuthError, ForbiddenError, NotFoundError, ValidationError,
    register_exception_handlers,
)
from .helpers import ct_equal
from .infra.log import setup_logging
from .infra.sql import GatedAsyncSession, make_async_engine
from .model.db import ensure_schema_and_fixtures
from .model import tickets as ticket_store
from .model.orders import (
    clamp_limit, get_order_for_buyer, list_orders, parse_order_id,
)
from .model.reconciliation import buyer_confirm, confirm_order, reject_order
from .model.reservation import reserve_tickets
from .model.sweeper import sweep_expired, run_periodic_sweep
from . import realtime
from .realtime import ALL, INSERT, UPDATE
from .tilopay import PaymentAdapter, PaymentBridgeError, new_adapter

setup_logging()

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./rifa.db")

TICKET_PRICE = int(os.environ.get("TICKET_PRICE", "20"))
SWEEP_INTERVAL_SECONDS = float(os.environ.get("SWEEP_INTERVAL_SECONDS", "0"))

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")

# cleanup endpoint: scheduler header or manual bearer token
CRON_HEADER = "x-cron-auth-token"
CRON_SECRET = os.environ.get("CRON_SECRET", "")
CLEANUP_API_SECRET = os.environ.get("CLEANUP_API_SECRET", "")

REALTIME_TABLES = ("tickets", "orders")

adapter: PaymentAdapter = new_adapter()

app = FastAPI(
    title="Rifa",
    default_response_class=ORJSONResponse,
)
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET)
register_exception_handlers(app)


async def get_db(request: Request) -> GatedAsyncSession:
    state = request.app.state
    async with state.sessions() as session:
        yield GatedAsyncSession(session=session, gated=state.gated)


def get_feed(request: Request):
    return request.app.state.feed


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    logger.info("=" * 50)
    logger.info("Rifa is starting up...")
    logger.info(f"   - Database: {DATABASE_URL.split('://', 1)[0]}")
    logger.info(f"   - Realtime backend: {realtime.BACKEND}")
    logger.info(f"   - Payment adapter: {type(adapter).__name__}")
    logger.info("=" * 50)


@app.on_event("startup")
async def _db_init():
    engine, sessions, gated = make_async_engine(DATABASE_URL)
    app.state.engine = engine
    app.state.sessions = sessions
    app.state.gated = gated
    # Create tables and seed the ticket grid
    async with engine.begin() as conn:
        await ensure_schema_and_fixtures(conn)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=10.0,
        limits=httpx.Limits(
            max_connections=64, max_keepalive_connections=16
        ),
    )


@app.on_event("startup")
async def _redis_start():
    app.state.redis = None
    if realtime.BACKEND == "redis":
        REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=int(os.getenv("REDIS_MAX_CONN", "512")),
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("startup")
async def _feed_start():
    app.state.feed = realtime.new_feed(r=app.state.redis)


@app.on_event("startup")
async def _sweeper_start():
    app.state.sweeper = None
    if SWEEP_INTERVAL_SECONDS > 0:
        app.state.sweeper = asyncio.create_task(run_periodic_sweep(
            app.state.sessions, app.state.gated, SWEEP_INTERVAL_SECONDS,
            feed=app.state.feed,
        ))


@app.on_event("shutdown")
async def _sweeper_stop():
    task = getattr(app.state, "sweeper", None)
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        app.state.sweeper = None


@app.on_event("shutdown")
async def _feed_stop():
    feed = getattr(app.state, "feed", None)
    if feed is not None:
        await feed.close()
        app.state.feed = None


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


@app.on_event("shutdown")
async def _db_stop():
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.dispose()
        app.state.engine = None


# ----------------------------
# Helpers
# ----------------------------
def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise AuthError()


def cleanup_authorized(request: Request) -> bool:
    cron_token = request.headers.get(CRON_HEADER)
    auth_header = request.headers.get("authorization")
    cron_ok = bool(CRON_SECRET) and cron_token is not None and ct_equal(
        cron_token, CRON_SECRET
    )
    manual_ok = bool(CLEANUP_API_SECRET) and auth_header is not None and (
        ct_equal(auth_header, f"Bearer {CLEANUP_API_SECRET}")
    )
    return cron_ok or manual_ok


# ----------------------------
# Ticket grid
# ----------------------------
@app.get("/api/tickets")
async def api_tickets(db: GatedAsyncSession = Depends(get_db)):
    return {"items": await ticket_store.list_tickets(db)}


@app.get("/api/tickets/stats")
async def api_ticket_stats(db: GatedAsyncSession = Depends(get_db)):
    return await ticket_store.ticket_stats(db)


# ----------------------------
# Checkout: reserve tickets
# ----------------------------
@app.post("/api/orders")
async def create_order(
    payload: dict,
    db: GatedAsyncSession = Depends(get_db),
    feed=Depends(get_feed),
):
    return await reserve_tickets(
        db,
        customer_name=payload.get("customerName"),
        customer_email=payload.get("customerEmail"),
        customer_phone=payload.get("customerPhone"),
        tickets=payload.get("tickets") or [],
        unit_price=TICKET_PRICE,
        feed=feed,
    )


# ----------------------------
# API: Order status (polled by the payment page)
# ----------------------------
@app.get("/api/orders/{order_id}")
async def get_order(order_id: str, token: Optional[str] = None,
                    db: GatedAsyncSession = Depends(get_db)):
    if not token:
        raise ForbiddenError()
    return await get_order_for_buyer(db, order_id, token)


# ----------------------------
# Buyer: "I paid"
# ----------------------------
@app.post("/user-confirm-payment")
async def user_confirm_payment(
    payload: dict,
    db: GatedAsyncSession = Depends(get_db),
    feed=Depends(get_feed),
):
    order_id = payload.get("orderId")
    token = payload.get("token")
    if not order_id or not token:
        raise ValidationError("Order ID and token are required")
    if not isinstance(order_id, str) or not isinstance(token, str):
        raise ForbiddenError()
    return await buyer_confirm(db, order_id, token, feed=feed)


# ----------------------------
# Admin: reconciliation
# ----------------------------
@app.post("/confirm-payment-sinpe")
async def admin_confirm_payment(
    request: Request,
    payload: dict,
    db: GatedAsyncSession = Depends(get_db),
    feed=Depends(get_feed),
):
    require_admin(request)
    return await confirm_order(db, parse_order_id(payload), feed=feed)


@app.post("/cancel-order")
async def admin_cancel_order(
    request: Request,
    payload: dict,
    db: GatedAsyncSession = Depends(get_db),
    feed=Depends(get_feed),
):
    require_admin(request)
    return await reject_order(db, parse_order_id(payload), feed=feed)


@app.get("/api/admin/orders")
async def api_admin_orders(
    request: Request,
    status: Optional[str] = None,
    limit: int = 200,
    db: GatedAsyncSession = Depends(get_db),
):
    require_admin(request)
    limit = clamp_limit(limit)
    items = await list_orders(db, status=status, limit=limit)
    return {"items": items, "limit": limit}


# ----------------------------
# Expiry sweep (external cron / manual)
# ----------------------------
@app.api_route("/cleanup-pending-tickets", methods=["GET", "POST"])
async def cleanup_pending_tickets(
    request: Request,
    db: GatedAsyncSession = Depends(get_db),
    feed=Depends(get_feed),
):
    if not cleanup_authorized(request):
        raise AuthError()
    return await sweep_expired(db, feed=feed)


# ----------------------------
# Card payment SDK token bridge
# ----------------------------
@app.post("/api/tilopay-token")
async def tilopay_token(request: Request):
    try:
        return await adapter.sdk_token(request.app.state.http)
    except PaymentBridgeError as e:
        logger.error(f"Error getting TiloPay token: {e}")
        return ORJSONResponse({"error": "Failed to get token"},
                              status_code=500)


# ----------------------------
# Realtime: Server-Sent Events
# ----------------------------
@app.get("/api/realtime/{table}")
async def realtime_stream(
    table: str,
    request: Request,
    event: str = ALL,
    feed=Depends(get_feed),
):
    if table not in REALTIME_TABLES:
        raise NotFoundError(f"Unknown table: {table}")
    # order rows carry buyer contact details
    if table == "orders":
        require_admin(request)
    if event not in (ALL, INSERT, UPDATE):
        raise ValidationError(f"Unknown event filter: {event}")

    async def stream():
        # no subscription exists until the body is iterated
        sub = await feed.subscribe(table, event)
        try:
            yield ": subscribed\n\n"
            async for ev in sub:
                data = orjson.dumps(ev.to_dict()).decode()
                yield f"event: {ev.type}\ndata: {data}\n\n"
        finally:
            await sub.unsubscribe()

    return StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# ----------------------------
# Admin session
# ----------------------------
@app.post("/admin/login")
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
):
    ok_user = ct_equal(username.strip(), ADMIN_USERNAME)
    ok_pass = ct_equal(password, ADMIN_PASSWORD)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        logger.info(f"admin {username.strip()} logged in")
        return {"ok": True, "user": username.strip()}
    # auth failed
    raise AuthError("Invalid credentials.")


@app.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return {"ok": True}


@app.get("/admin/session")
async def admin_session(request: Request):
    return {"admin": is_admin(request),
            "user": request.session.get("admin_user")}
