"""
Reconciliation Service — idempotency & correlation

Maps an inbound event to the aggregate it concerns. Tiers are tried in
order and the first hit wins:

  1. metadata identifier written by checkout (order_id / return_id)
  2. payment intent id stored on the row at creation time
  3. customer email + still-pending payment (payment events only)

A resolved correlation is memoized in Redis under the event id, so a
redelivery skips the lookups and lands on the same aggregate.
"""

import logging
from dataclasses import dataclass

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy.orm import sessionmaker

from . import queries
from .events import CorrelationKeys, EventKind

logger = logging.getLogger(__name__)

ORDER = "order"
RETURN = "return"


@dataclass(frozen=True)
class Correlation:
    aggregate_type: str
    aggregate_id: str
    tier: str

    @property
    def is_return(self) -> bool:
        return self.aggregate_type == RETURN


class CorrelationMemo:
    """Redis-backed memo of event id → aggregate. Best effort."""

    PREFIX = "reconciler:correlation:"

    def __init__(self, redis: aioredis.Redis | None, ttl_seconds: int) -> None:
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    async def recall(self, event_id: str) -> Correlation | None:
        if self.redis is None:
            return None
        try:
            value = await self.redis.get(self.PREFIX + event_id)
        except RedisError:
            logger.warning("Correlation memo read failed event_id=%s", event_id, exc_info=True)
            return None
        if not value:
            return None
        if isinstance(value, bytes):
            value = value.decode()
        aggregate_type, _, aggregate_id = value.partition(":")
        if aggregate_type not in (ORDER, RETURN) or not aggregate_id:
            return None
        return Correlation(aggregate_type, aggregate_id, tier="memo")

    async def remember(self, event_id: str, correlation: Correlation) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.set(
                self.PREFIX + event_id,
                f"{correlation.aggregate_type}:{correlation.aggregate_id}",
                ex=self.ttl_seconds,
            )
        except RedisError:
            logger.warning("Correlation memo write failed event_id=%s", event_id, exc_info=True)


class CorrelationResolver:
    def __init__(
        self,
        session_factory: sessionmaker,
        memo: CorrelationMemo,
        email_fallback: bool = True,
    ) -> None:
        self.sessions = session_factory
        self.memo = memo
        self.email_fallback = email_fallback

    async def resolve(
        self, event_id: str, kind: EventKind, keys: CorrelationKeys
    ) -> Correlation | None:
        """Return the aggregate this event concerns, or None when nothing matches."""
        correlation = await self.memo.recall(event_id)
        if correlation is not None:
            logger.debug(
                "Correlation recalled event_id=%s %s_id=%s",
                event_id, correlation.aggregate_type, correlation.aggregate_id,
            )
            return correlation

        if kind == EventKind.CHARGE_REFUNDED:
            correlation = await self._resolve_refund(keys)
        else:
            correlation = await self._resolve_payment(keys)

        if correlation is None:
            logger.warning(
                "No aggregate matches event_id=%s kind=%s payment_intent=%s",
                event_id, kind.value, keys.payment_intent_id,
            )
            return None

        logger.info(
            "Correlated event_id=%s to %s_id=%s via %s",
            event_id, correlation.aggregate_type, correlation.aggregate_id, correlation.tier,
        )
        await self.memo.remember(event_id, correlation)
        return correlation

    async def _resolve_payment(self, keys: CorrelationKeys) -> Correlation | None:
        metadata = keys.metadata
        async with self.sessions() as session:
            # Tier 1: metadata written at checkout
            return_id = metadata.get("return_id")
            if metadata.get("type") == "return_label_payment" and return_id:
                if await queries.return_exists(session, return_id):
                    return Correlation(RETURN, return_id, tier="metadata")
            order_id = metadata.get("order_id")
            if order_id and await queries.order_exists(session, order_id):
                return Correlation(ORDER, order_id, tier="metadata")

            # Tier 2: intent id stored at creation
            if keys.payment_intent_id:
                found = await queries.find_order_by_payment_intent(session, keys.payment_intent_id)
                if found:
                    return Correlation(ORDER, found, tier="payment_intent")
                found = await queries.find_return_by_label_intent(session, keys.payment_intent_id)
                if found:
                    return Correlation(RETURN, found, tier="payment_intent")

            # Tier 3: most recent pending payment for this customer
            if self.email_fallback and keys.email:
                found = await queries.find_pending_order_by_email(session, keys.email, keys.amount)
                if found:
                    return Correlation(ORDER, found, tier="email")
                found = await queries.find_pending_return_by_email(session, keys.email)
                if found:
                    return Correlation(RETURN, found, tier="email")
        return None

    async def _resolve_refund(self, keys: CorrelationKeys) -> Correlation | None:
        """
        A refund concerns a return when one is named in metadata, or when
        the refunded order has a return received back or in refund
        processing. Otherwise it is a plain order refund.
        """
        metadata = keys.metadata
        async with self.sessions() as session:
            return_id = metadata.get("return_id")
            if return_id and await queries.return_exists(session, return_id):
                return Correlation(RETURN, return_id, tier="metadata")

            order_id = metadata.get("order_id")
            tier = "metadata"
            if not (order_id and await queries.order_exists(session, order_id)):
                order_id = None
                if keys.payment_intent_id:
                    order_id = await queries.find_order_by_payment_intent(
                        session, keys.payment_intent_id
                    )
                    tier = "payment_intent"
            if order_id is None:
                return None

            return_id = await queries.find_return_awaiting_refund(session, order_id)
            if return_id:
                return Correlation(RETURN, return_id, tier=tier)
            return Correlation(ORDER, order_id, tier=tier)
