"""
Reconciliation Service — inventory adjuster

Stock moves are single atomic statements (clamped at zero), one session
per line item. A failing item is logged and the next one proceeds: a
confirmed payment is never undone because a counter could not move.
"""

import logging
from collections.abc import Iterable
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from . import commands
from .aggregate import LineItem, ReturnItem

logger = logging.getLogger(__name__)


class InventoryAdjuster:
    def __init__(self, session_factory: sessionmaker) -> None:
        self.sessions = session_factory

    async def decrement(self, variant_id: str, quantity: int, pool: str = "regular") -> bool:
        """Take `quantity` from the variant's regular or presale pool."""
        async with self.sessions() as session:
            return await commands.decrement_stock(
                session, variant_id, quantity, pool, datetime.now(timezone.utc)
            )

    async def increment(self, variant_id: str, quantity: int) -> bool:
        """Put returned units back into the regular pool."""
        async with self.sessions() as session:
            return await commands.increment_stock(
                session, variant_id, quantity, datetime.now(timezone.utc)
            )

    async def decrement_items(self, items: Iterable[LineItem], order_id: str) -> list[dict]:
        results = []
        for item in items:
            results.append(
                await self._adjust(
                    "decrement",
                    self.decrement(item.variant_id, item.quantity, item.pool),
                    item.variant_id,
                    item.quantity,
                    order_id=order_id,
                    pool=item.pool,
                )
            )
        return results

    async def restock_items(self, items: Iterable[ReturnItem], return_id: str) -> list[dict]:
        results = []
        for item in items:
            results.append(
                await self._adjust(
                    "increment",
                    self.increment(item.variant_id, item.quantity),
                    item.variant_id,
                    item.quantity,
                    return_id=return_id,
                    pool="regular",
                )
            )
        return results

    async def _adjust(self, action, coro, variant_id, quantity, pool, **context) -> dict:
        entry = {"action": action, "variant_id": variant_id, "quantity": quantity, "pool": pool}
        try:
            changed = await coro
        except SQLAlchemyError as e:
            logger.error(
                "Stock %s failed variant_id=%s quantity=%s %s",
                action, variant_id, quantity, _fmt(context), exc_info=True,
            )
            entry.update(status="FAILED", error=str(e))
            return entry
        if not changed:
            logger.warning(
                "Stock %s skipped, unknown variant_id=%s %s", action, variant_id, _fmt(context)
            )
            entry.update(status="SKIPPED")
            return entry
        entry["status"] = "COMPLETED"
        return entry


def _fmt(context: dict) -> str:
    return " ".join(f"{k}={v}" for k, v in context.items())
