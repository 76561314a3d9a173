from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    ForeignKey,
    Index,
    CheckConstraint,
    text,
    bindparam,
)
from sqlalchemy.ext.asyncio import AsyncConnection

TICKET_COUNT = 500
RESERVATION_TTL_SECONDS = 10 * 60

# Ticket statuses
T_AVAILABLE = "available"
T_PENDING = "pending"
T_SOLD = "sold"

# Order statuses
O_PENDING = "pending"
O_AWAITING = "awaiting_verification"
O_COMPLETED = "completed"
O_CANCELLED = "cancelled"

# orders an admin may still confirm or reject
O_OPEN = (O_PENDING, O_AWAITING)
# orders that own their tickets
O_LIVE = (O_PENDING, O_AWAITING, O_COMPLETED)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class Ticket(Base):
    __tablename__ = "tickets"
    ticket_number = Column(Integer, primary_key=True, autoincrement=False)
    # available | pending | sold
    status = Column(String, nullable=False, default=T_AVAILABLE)
    pending_at = Column(Float, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('available','pending','sold')",
            name="tickets_status_ck",
        ),
        Index("tickets_status_idx", "status"),
    )


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    order_number = Column(String, nullable=False)
    customer_name = Column(String, nullable=False)
    customer_email = Column(String, nullable=False)
    customer_phone = Column(String, nullable=False)
    total_amount = Column(Integer, nullable=False)

    # pending | awaiting_verification | completed | cancelled
    status = Column(String, nullable=False, default=O_PENDING)
    confirmation_token = Column(String, nullable=False)
    user_confirmed_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','awaiting_verification',"
            "'completed','cancelled')",
            name="orders_status_ck",
        ),
        Index("orders_status_created_idx", "status", "created_at"),
    )


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False,
                      index=True)
    ticket_number = Column(Integer, nullable=False, index=True)
    # unit price at time of purchase
    price = Column(Integer, nullable=False)


# ------------------------------------------------------------------------------
# DDL (idempotent) + fixtures
# ------------------------------------------------------------------------------
async def ensure_schema_and_fixtures(conn: AsyncConnection) -> None:
    """
    Create tables if missing and seed the ticket rows that don't exist yet.
    """
    await conn.run_sync(Base.metadata.create_all)
    await conn.execute(
        text("""
            INSERT INTO tickets (ticket_number, status)
            VALUES (:n, 'available')
            ON CONFLICT (ticket_number) DO NOTHING
        """),
        [{"n": n} for n in range(1, TICKET_COUNT + 1)],
    )


# ------------------------------------------------------------------------------
# shared SQL fragments
# ------------------------------------------------------------------------------

# a ticket referenced by a live order other than :order_id
SQL_HELD_BY_OTHER_ORDER = """
    EXISTS (
        SELECT 1 FROM order_items oi
        JOIN orders o ON o.id = oi.order_id
        WHERE oi.ticket_number = tickets.ticket_number
          AND o.id <> :order_id
          AND o.status IN :live
    )
"""


def expanding(stmt: str, *names: str):
    return text(stmt).bindparams(
        *(bindparam(n, expanding=True) for n in names)
    )
