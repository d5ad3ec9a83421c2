"""
Reconciliation Service — return label generation

Runs after a return's label payment is confirmed, and again from the
admin re-drive endpoint when the courier failed the first time.

  1. short-circuit when the return already has a label
  2. load return + order (with items)
  3. claim the courier call (conditional UPDATE, leased)
     └─ claim held by another delivery → in_progress, no courier call
  4. ask the courier for a label (bounded by a timeout)
     ├─ success → store label refs conditionally (at most one label)
     │            → move the parent order along → label-ready email
     └─ failure → claim released, return stays at
                  return_label_payment_completed, recoverable error
                  logged for a later re-drive
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from . import commands, queries
from .aggregate import ORDER_STATUS_FOR_RETURN
from .collaborators import LabelGenerator
from .exceptions import StateUpdateFailed
from .notifications import NotificationDispatcher, isolated

logger = logging.getLogger(__name__)

GENERATED = "generated"
ALREADY_GENERATED = "already_generated"
NOT_FOUND = "not_found"
NOT_READY = "not_ready"
IN_PROGRESS = "in_progress"
FAILED = "failed"

# Extra time a claim is held beyond the courier timeout before another
# delivery may take it over.
CLAIM_GRACE_SECONDS = 30


@dataclass
class LabelAttempt:
    return_id: str
    status: str
    label_url: str | None = None
    tracking_code: str | None = None
    error: str | None = None
    steps: list[dict] = field(default_factory=list)

    def as_dict(self) -> dict:
        return asdict(self)


class LabelService:
    def __init__(
        self,
        session_factory: sessionmaker,
        label_generator: LabelGenerator,
        notifier: NotificationDispatcher,
        timeout: float,
    ) -> None:
        self.sessions = session_factory
        self.generator = label_generator
        self.notifier = notifier
        self.timeout = timeout

    async def generate(self, return_id: str) -> LabelAttempt:
        async with self.sessions() as session:
            ret = await queries.get_return(session, return_id)
            if ret is None:
                return LabelAttempt(return_id, NOT_FOUND, error="Unknown return")
            if ret.has_label:
                return LabelAttempt(
                    return_id,
                    ALREADY_GENERATED,
                    label_url=ret.return_label_url,
                    tracking_code=ret.return_tracking_code,
                )
            if ret.status != "return_label_payment_completed":
                return LabelAttempt(
                    return_id, NOT_READY, error=f"Return is {ret.status}, label not paid"
                )
            order = await queries.get_order(session, ret.order_id)
        if order is None:
            logger.error("Label generation skipped, order_id=%s missing return_id=%s",
                         ret.order_id, return_id)
            return LabelAttempt(return_id, FAILED, error="Order not found")

        if not await self._claim(return_id):
            async with self.sessions() as session:
                current = await queries.get_return(session, return_id)
            if current is not None and current.has_label:
                return LabelAttempt(
                    return_id,
                    ALREADY_GENERATED,
                    label_url=current.return_label_url,
                    tracking_code=current.return_tracking_code,
                )
            logger.info(
                "Label generation for return_id=%s already running elsewhere, not calling courier",
                return_id,
            )
            return LabelAttempt(
                return_id, IN_PROGRESS, error="Label generation already in progress"
            )

        try:
            label = await asyncio.wait_for(
                self.generator.create_label(return_id, order, ret.return_items),
                timeout=self.timeout,
            )
        except Exception as e:
            detail = f"{type(e).__name__}: {e}"
            logger.error(
                "Label generation failed return_id=%s order_id=%s; "
                "return left at return_label_payment_completed for re-drive: %s",
                return_id, order.id, detail, exc_info=True,
            )
            await self._release(return_id)
            return LabelAttempt(return_id, FAILED, error=detail)

        now = datetime.now(timezone.utc)
        try:
            async with self.sessions() as session:
                stored = await commands.store_return_label(session, return_id, label, now)
                if stored:
                    await commands.set_order_status(
                        session,
                        order.id,
                        ORDER_STATUS_FOR_RETURN["return_label_generated"],
                        now,
                    )
                ret = await queries.get_return(session, return_id)
        except SQLAlchemyError as e:
            raise StateUpdateFailed("return", return_id, f"storing label: {e}") from e

        if not stored:
            # Another delivery stored its label first; ours is discarded.
            logger.warning(
                "Label for return_id=%s already stored, discarding duplicate %s",
                return_id, label.label_url,
            )
            return LabelAttempt(
                return_id,
                ALREADY_GENERATED,
                label_url=ret.return_label_url,
                tracking_code=ret.return_tracking_code,
            )

        logger.info("Label generated return_id=%s tracking=%s", return_id, label.tracking_number)
        step = await isolated(
            "send_return_label_ready",
            self.notifier.label_ready(ret, order),
            self.timeout,
            return_id=return_id,
        )
        return LabelAttempt(
            return_id,
            GENERATED,
            label_url=ret.return_label_url,
            tracking_code=ret.return_tracking_code,
            steps=[step],
        )

    async def _claim(self, return_id: str) -> bool:
        now = datetime.now(timezone.utc)
        lease_expired = now - timedelta(seconds=self.timeout + CLAIM_GRACE_SECONDS)
        try:
            async with self.sessions() as session:
                return await commands.claim_label_generation(
                    session, return_id, now, lease_expired
                )
        except SQLAlchemyError as e:
            raise StateUpdateFailed("return", return_id, f"claiming label generation: {e}") from e

    async def _release(self, return_id: str) -> None:
        try:
            async with self.sessions() as session:
                await commands.release_label_claim(session, return_id)
        except SQLAlchemyError:
            # The lease expires on its own; a re-drive then takes it over.
            logger.warning(
                "Could not release label claim return_id=%s", return_id, exc_info=True
            )
