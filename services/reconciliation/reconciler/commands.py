"""
Reconciliation Service — commands (write side)

Every transition is a single conditional UPDATE guarded by the states it
may start from. The returned flag says whether this call changed the
row; only the delivery that wins the update performs side effects, so a
redelivered event, or two deliveries racing each other, apply at most
once. This replaces locking.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import LABEL_PAYABLE, PAYMENT_SOURCES, RETURN_TERMINAL
from .collaborators import LabelResult


def _in(values: tuple[str, ...]) -> str:
    # Only ever called with module constants.
    return ", ".join(f"'{v}'" for v in values)


async def _conditional(session: AsyncSession, sql: str, params: dict) -> bool:
    result = await session.execute(text(sql), params)
    await session.commit()
    return result.rowcount == 1


# ── Order ────────────────────────────────────────


async def mark_order_paid(
    session: AsyncSession,
    order_id: str,
    payment_intent_id: str | None,
    now: datetime,
) -> bool:
    return await _conditional(
        session,
        f"""
            UPDATE orders
            SET payment_status = 'paid',
                status = 'processing',
                stripe_payment_intent_id = COALESCE(:pi, stripe_payment_intent_id),
                paid_at = :now,
                updated_at = :now
            WHERE id = :id AND payment_status IN ({_in(PAYMENT_SOURCES["paid"])})
        """,
        {"id": order_id, "pi": payment_intent_id, "now": now},
    )


async def mark_order_payment_failed(
    session: AsyncSession, order_id: str, reason: str, now: datetime
) -> bool:
    return await _conditional(
        session,
        f"""
            UPDATE orders
            SET payment_status = 'failed',
                payment_failure_reason = :reason,
                updated_at = :now
            WHERE id = :id AND payment_status IN ({_in(PAYMENT_SOURCES["failed"])})
        """,
        {"id": order_id, "reason": reason, "now": now},
    )


async def mark_order_expired(session: AsyncSession, order_id: str, now: datetime) -> bool:
    return await _conditional(
        session,
        f"""
            UPDATE orders
            SET payment_status = 'expired', updated_at = :now
            WHERE id = :id AND payment_status IN ({_in(PAYMENT_SOURCES["expired"])})
        """,
        {"id": order_id, "now": now},
    )


async def mark_order_refunded(session: AsyncSession, order_id: str, now: datetime) -> bool:
    return await _conditional(
        session,
        f"""
            UPDATE orders
            SET payment_status = 'refunded',
                status = 'refunded',
                refunded_at = :now,
                updated_at = :now
            WHERE id = :id AND payment_status IN ({_in(PAYMENT_SOURCES["refunded"])})
        """,
        {"id": order_id, "now": now},
    )


async def set_order_status(
    session: AsyncSession, order_id: str, status: str, now: datetime
) -> bool:
    """Fulfillment status follow-up driven by the order's return."""
    return await _conditional(
        session,
        """
            UPDATE orders SET status = :status, updated_at = :now
            WHERE id = :id AND status <> :status
        """,
        {"id": order_id, "status": status, "now": now},
    )


async def update_order_tracking(
    session: AsyncSession,
    order_id: str,
    tracking_code: str | None,
    tracking_url: str | None,
    carrier: str | None,
    now: datetime,
) -> bool:
    return await _conditional(
        session,
        """
            UPDATE orders
            SET tracking_code = COALESCE(:code, tracking_code),
                tracking_url = COALESCE(:url, tracking_url),
                carrier = COALESCE(:carrier, carrier),
                updated_at = :now
            WHERE id = :id
        """,
        {"id": order_id, "code": tracking_code, "url": tracking_url, "carrier": carrier, "now": now},
    )


async def advance_order_status(
    session: AsyncSession,
    order_id: str,
    status: str,
    from_statuses: tuple[str, ...],
    now: datetime,
) -> bool:
    if not from_statuses:
        return False
    return await _conditional(
        session,
        f"""
            UPDATE orders
            SET status = :status,
                shipped_at = CASE WHEN :status = 'shipped' THEN :now ELSE shipped_at END,
                delivered_at = CASE WHEN :status = 'delivered' THEN :now ELSE delivered_at END,
                updated_at = :now
            WHERE id = :id AND status IN ({_in(from_statuses)})
        """,
        {"id": order_id, "status": status, "now": now},
    )


# ── Return Request ───────────────────────────────


async def mark_return_label_paid(session: AsyncSession, return_id: str, now: datetime) -> bool:
    return await _conditional(
        session,
        f"""
            UPDATE returns
            SET status = 'return_label_payment_completed',
                return_label_payment_status = 'completed',
                return_label_paid_at = :now,
                updated_at = :now
            WHERE id = :id AND status IN ({_in(LABEL_PAYABLE)})
        """,
        {"id": return_id, "now": now},
    )


async def claim_label_generation(
    session: AsyncSession, return_id: str, now: datetime, lease_expired: datetime
) -> bool:
    """
    Take the right to call the courier for this return. A claim older than
    `lease_expired` is treated as abandoned and can be taken over.
    """
    return await _conditional(
        session,
        """
            UPDATE returns
            SET label_generation_started_at = :now
            WHERE id = :id
              AND status = 'return_label_payment_completed'
              AND return_label_url IS NULL
              AND (label_generation_started_at IS NULL
                   OR label_generation_started_at < :lease_expired)
        """,
        {"id": return_id, "now": now, "lease_expired": lease_expired},
    )


async def release_label_claim(session: AsyncSession, return_id: str) -> None:
    await session.execute(
        text("UPDATE returns SET label_generation_started_at = NULL WHERE id = :id"),
        {"id": return_id},
    )
    await session.commit()


async def store_return_label(
    session: AsyncSession, return_id: str, label: LabelResult, now: datetime
) -> bool:
    """Record a generated label. Refuses a second label for the same return."""
    return await _conditional(
        session,
        """
            UPDATE returns
            SET status = 'return_label_generated',
                return_label_url = :label_url,
                return_tracking_code = :tracking_code,
                return_tracking_url = :tracking_url,
                label_parcel_id = :parcel_id,
                label_generated_at = :now,
                label_generation_started_at = NULL,
                updated_at = :now
            WHERE id = :id
              AND status = 'return_label_payment_completed'
              AND return_label_url IS NULL
        """,
        {
            "id": return_id,
            "label_url": label.label_url,
            "tracking_code": label.tracking_number,
            "tracking_url": label.tracking_url,
            "parcel_id": label.parcel_id,
            "now": now,
        },
    )


async def mark_return_refunded(session: AsyncSession, return_id: str, now: datetime) -> bool:
    return await _conditional(
        session,
        f"""
            UPDATE returns
            SET status = 'refunded', refunded_at = :now, updated_at = :now
            WHERE id = :id AND status NOT IN ({_in(RETURN_TERMINAL)})
        """,
        {"id": return_id, "now": now},
    )


async def advance_return_status(
    session: AsyncSession,
    return_id: str,
    status: str,
    from_statuses: tuple[str, ...],
    now: datetime,
) -> bool:
    if not from_statuses:
        return False
    return await _conditional(
        session,
        f"""
            UPDATE returns SET status = :status, updated_at = :now
            WHERE id = :id AND status IN ({_in(from_statuses)})
        """,
        {"id": return_id, "status": status, "now": now},
    )


# ── Inventory ────────────────────────────────────

_STOCK_COLUMNS = {
    "regular": "stock_quantity",
    "presale": "presale_stock_quantity",
}


async def decrement_stock(
    session: AsyncSession, variant_id: str, quantity: int, pool: str, now: datetime
) -> bool:
    """Atomic clamp-at-zero decrement; False when the variant is unknown."""
    column = _STOCK_COLUMNS[pool]
    return await _conditional(
        session,
        f"""
            UPDATE product_variants
            SET {column} = CASE WHEN {column} > :qty THEN {column} - :qty ELSE 0 END,
                updated_at = :now
            WHERE id = :id
        """,
        {"id": variant_id, "qty": quantity, "now": now},
    )


async def increment_stock(
    session: AsyncSession, variant_id: str, quantity: int, now: datetime
) -> bool:
    return await _conditional(
        session,
        """
            UPDATE product_variants
            SET stock_quantity = stock_quantity + :qty, updated_at = :now
            WHERE id = :id
        """,
        {"id": variant_id, "qty": quantity, "now": now},
    )


# ── Email log ────────────────────────────────────


async def append_email_log(
    session: AsyncSession,
    email_type: str,
    recipient: str,
    status: str,
    now: datetime,
    order_id: str | None = None,
    return_id: str | None = None,
    provider_id: str | None = None,
    error: str | None = None,
) -> None:
    await session.execute(
        text("""
            INSERT INTO email_log
                (id, order_id, return_id, email_type, recipient, status, provider_id, error, created_at)
            VALUES
                (:id, :order_id, :return_id, :email_type, :recipient, :status, :provider_id, :error, :now)
        """),
        {
            "id": str(uuid4()),
            "order_id": order_id,
            "return_id": return_id,
            "email_type": email_type,
            "recipient": recipient,
            "status": status,
            "provider_id": provider_id,
            "error": error,
            "now": now,
        },
    )
    await session.commit()
