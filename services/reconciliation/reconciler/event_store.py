"""
Reconciliation Service — delivery log

Append-only record of every webhook delivery and what it did. Nothing
is ever replayed from it; it exists so an operator can see why an order
looks the way it does.
"""

import json
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


async def append_delivery(
    session: AsyncSession,
    source: str,
    outcome: dict,
) -> str:
    """Record one delivery. Returns the delivery id."""
    delivery_id = str(uuid4())
    await session.execute(
        text("""
            INSERT INTO webhook_events
                (delivery_id, event_id, event_type, source,
                 aggregate_type, aggregate_id, outcome, detail, created_at)
            VALUES
                (:delivery_id, :event_id, :event_type, :source,
                 :agg_type, :agg_id, :outcome, :detail, :now)
        """),
        {
            "delivery_id": delivery_id,
            "event_id": outcome.get("event_id"),
            "event_type": outcome.get("event_type"),
            "source": source,
            "agg_type": outcome.get("aggregate_type"),
            "agg_id": outcome.get("aggregate_id"),
            "outcome": outcome.get("result", "unknown"),
            "detail": json.dumps(
                {
                    "kind": outcome.get("kind"),
                    "detail": outcome.get("detail"),
                    "steps": outcome.get("steps", []),
                    "errors": outcome.get("errors", []),
                },
                default=str,
            ),
            "now": datetime.now(timezone.utc),
        },
    )
    await session.commit()
    return delivery_id


def _row_to_dict(row) -> dict:
    created_at = row.created_at
    if isinstance(created_at, datetime):
        created_at = created_at.isoformat()
    return {
        "delivery_id": row.delivery_id,
        "event_id": row.event_id,
        "event_type": row.event_type,
        "source": row.source,
        "aggregate_type": row.aggregate_type,
        "aggregate_id": row.aggregate_id,
        "outcome": row.outcome,
        "detail": json.loads(row.detail) if isinstance(row.detail, str) else row.detail,
        "created_at": created_at,
    }


async def load_deliveries(session: AsyncSession, aggregate_id: str) -> list[dict]:
    """Every delivery that touched one order or return, oldest first."""
    result = await session.execute(
        text("""
            SELECT delivery_id, event_id, event_type, source,
                   aggregate_type, aggregate_id, outcome, detail, created_at
            FROM webhook_events
            WHERE aggregate_id = :agg_id
            ORDER BY created_at ASC
        """),
        {"agg_id": aggregate_id},
    )
    return [_row_to_dict(row) for row in result.fetchall()]


async def load_all_deliveries(session: AsyncSession, limit: int = 100) -> list[dict]:
    """Most recent deliveries first (debugging)."""
    result = await session.execute(
        text("""
            SELECT delivery_id, event_id, event_type, source,
                   aggregate_type, aggregate_id, outcome, detail, created_at
            FROM webhook_events
            ORDER BY created_at DESC
            LIMIT :limit
        """),
        {"limit": limit},
    )
    return [_row_to_dict(row) for row in result.fetchall()]
