"""
Reconciliation Service — queries (read side)

Lookups against the storefront tables: aggregate loads and the
correlation lookups the resolver runs tier by tier.
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import PENDING_PAYMENT, LineItem, OrderAggregate, ReturnAggregate

_PENDING_PAYMENT_SQL = ", ".join(f"'{s}'" for s in PENDING_PAYMENT)


async def get_order_items(session: AsyncSession, order_id: str) -> list[LineItem]:
    result = await session.execute(
        text("""
            SELECT variant_id, product_name, quantity, unit_price, is_presale
            FROM order_items
            WHERE order_id = :order_id
            ORDER BY id
        """),
        {"order_id": order_id},
    )
    return [
        LineItem(
            variant_id=str(row.variant_id),
            quantity=int(row.quantity),
            unit_price=float(row.unit_price or 0),
            is_presale=bool(row.is_presale),
            product_name=row.product_name or "",
        )
        for row in result.fetchall()
    ]


async def get_order(session: AsyncSession, order_id: str) -> OrderAggregate | None:
    """Load an order together with its line items."""
    result = await session.execute(
        text("SELECT * FROM orders WHERE id = :id"),
        {"id": order_id},
    )
    row = result.fetchone()
    if not row:
        return None
    items = await get_order_items(session, order_id)
    return OrderAggregate.from_row(row, items)


async def get_return(session: AsyncSession, return_id: str) -> ReturnAggregate | None:
    result = await session.execute(
        text("SELECT * FROM returns WHERE id = :id"),
        {"id": return_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return ReturnAggregate.from_row(row)


async def order_exists(session: AsyncSession, order_id: str) -> bool:
    result = await session.execute(
        text("SELECT 1 FROM orders WHERE id = :id"),
        {"id": order_id},
    )
    return result.first() is not None


async def return_exists(session: AsyncSession, return_id: str) -> bool:
    result = await session.execute(
        text("SELECT 1 FROM returns WHERE id = :id"),
        {"id": return_id},
    )
    return result.first() is not None


# ── Correlation lookups ──────────────────────────


async def find_order_by_payment_intent(
    session: AsyncSession, payment_intent_id: str
) -> str | None:
    result = await session.execute(
        text("""
            SELECT id FROM orders
            WHERE stripe_payment_intent_id = :pi
            ORDER BY created_at DESC
        """),
        {"pi": payment_intent_id},
    )
    row = result.first()
    return str(row.id) if row else None


async def find_return_by_label_intent(
    session: AsyncSession, payment_intent_id: str
) -> str | None:
    result = await session.execute(
        text("""
            SELECT id FROM returns
            WHERE return_label_payment_intent_id = :pi
            ORDER BY created_at DESC
        """),
        {"pi": payment_intent_id},
    )
    row = result.first()
    return str(row.id) if row else None


async def find_pending_order_by_email(
    session: AsyncSession, email: str, amount: int | None = None
) -> str | None:
    """
    Most recent order for this customer still waiting for payment.
    When the event carries an amount, the order total must match it.
    """
    result = await session.execute(
        text(f"""
            SELECT id, total FROM orders
            WHERE lower(email) = lower(:email)
              AND payment_status IN ({_PENDING_PAYMENT_SQL})
            ORDER BY created_at DESC
        """),
        {"email": email},
    )
    for row in result.fetchall():
        if amount is None or round(float(row.total) * 100) == amount:
            return str(row.id)
    return None


async def find_pending_return_by_email(session: AsyncSession, email: str) -> str | None:
    result = await session.execute(
        text("""
            SELECT r.id FROM returns r
            JOIN orders o ON o.id = r.order_id
            WHERE lower(o.email) = lower(:email)
              AND r.status = 'return_label_payment_pending'
            ORDER BY r.created_at DESC
        """),
        {"email": email},
    )
    row = result.first()
    return str(row.id) if row else None


async def find_return_awaiting_refund(session: AsyncSession, order_id: str) -> str | None:
    """
    A return of this order that a refund can settle: received back at the
    warehouse, or already put into refund processing by an admin.
    """
    result = await session.execute(
        text("""
            SELECT id FROM returns
            WHERE order_id = :order_id
              AND status IN ('return_received', 'refund_processing')
            ORDER BY created_at DESC
        """),
        {"order_id": order_id},
    )
    row = result.first()
    return str(row.id) if row else None


async def find_return_by_parcel(session: AsyncSession, parcel_id: str) -> str | None:
    result = await session.execute(
        text("SELECT id FROM returns WHERE label_parcel_id = :parcel_id"),
        {"parcel_id": parcel_id},
    )
    row = result.first()
    return str(row.id) if row else None


# ── Inventory / settings ─────────────────────────



async def load_site_settings(session: AsyncSession) -> dict[str, str]:
    result = await session.execute(text("SELECT key, value FROM site_settings"))
    return {row.key: row.value for row in result.fetchall()}
