"""
Reconciliation Service — reconciliation engine

Applies a verified, correlated event to its aggregate.

  event ──▶ resolver ──▶ (aggregate_type, kind) handler
                             │
                             ├─ conditional UPDATE wins  → side effects (parallel, isolated)
                             ├─ already in target state  → duplicate (info)
                             └─ not a legal transition   → rejected (critical, manual review)

Dispatch table:
  (order,  payment_succeeded)       → paid / processing, stock down, confirmation email
  (order,  payment_failed)          → failed, failure email
  (order,  checkout_expired)        → expired
  (order,  charge_refunded)         → refunded
  (return, label_payment_succeeded) → label paid, receipt email, label generation
  (return, charge_refunded)         → refunded, stock back, refund email
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from . import commands, queries
from .aggregate import ORDER_STATUS_FOR_RETURN, OrderAggregate, ReturnAggregate
from .correlation import ORDER, RETURN, Correlation, CorrelationResolver
from .events import EventKind, PaymentIntentFailed, ProviderEvent, UnknownEvent
from .exceptions import StateUpdateFailed
from .inventory import InventoryAdjuster
from .labels import FAILED as LABEL_FAILED
from .labels import LabelService
from .notifications import NotificationDispatcher, isolated

logger = logging.getLogger(__name__)

APPLIED = "applied"
DUPLICATE = "duplicate"
REJECTED = "rejected"
UNMATCHED = "unmatched"
IGNORED = "ignored"
FAILED = "failed"
MALFORMED = "malformed"


@dataclass
class Outcome:
    """What one delivery did. Returned to the event source as diagnostics."""

    event_id: str | None
    event_type: str | None
    kind: str | None = None
    aggregate_type: str | None = None
    aggregate_id: str | None = None
    result: str = IGNORED
    detail: str | None = None
    steps: list[dict] = field(default_factory=list)

    @property
    def errors(self) -> list[str]:
        return [
            f"{s['task']}: {s.get('error', 'failed')}"
            for s in self.steps
            if s.get("status") == "FAILED"
        ]

    def as_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "kind": self.kind,
            "aggregate_type": self.aggregate_type,
            "aggregate_id": self.aggregate_id,
            "result": self.result,
            "detail": self.detail,
            "steps": self.steps,
            "errors": self.errors,
        }


class ReconciliationEngine:
    def __init__(
        self,
        session_factory: sessionmaker,
        resolver: CorrelationResolver,
        inventory: InventoryAdjuster,
        notifier: NotificationDispatcher,
        labels: LabelService,
        notify_timeout: float,
    ) -> None:
        self.sessions = session_factory
        self.resolver = resolver
        self.inventory = inventory
        self.notifier = notifier
        self.labels = labels
        self.notify_timeout = notify_timeout
        self._handlers = {
            (ORDER, EventKind.PAYMENT_SUCCEEDED): self._order_paid,
            (ORDER, EventKind.PAYMENT_FAILED): self._order_payment_failed,
            (ORDER, EventKind.CHECKOUT_EXPIRED): self._order_expired,
            (ORDER, EventKind.CHARGE_REFUNDED): self._order_refunded,
            (RETURN, EventKind.LABEL_PAYMENT_SUCCEEDED): self._return_label_paid,
            (RETURN, EventKind.CHARGE_REFUNDED): self._return_refunded,
        }

    async def handle(self, event: ProviderEvent | UnknownEvent) -> Outcome:
        outcome = Outcome(event_id=event.id, event_type=event.type)
        kind = event.kind
        if kind is None:
            logger.info("Ignoring event_id=%s type=%s", event.id, event.type)
            outcome.detail = "No reconciliation for this event type"
            return outcome

        correlation = await self.resolver.resolve(event.id, kind, event.correlation_keys())
        if correlation is None:
            outcome.kind = kind.value
            outcome.result = UNMATCHED
            outcome.detail = "No order or return matches this event"
            return outcome

        # A successful payment on a return is always its label payment.
        if correlation.is_return and kind == EventKind.PAYMENT_SUCCEEDED:
            kind = EventKind.LABEL_PAYMENT_SUCCEEDED

        outcome.kind = kind.value
        outcome.aggregate_type = correlation.aggregate_type
        outcome.aggregate_id = correlation.aggregate_id

        handler = self._handlers.get((correlation.aggregate_type, kind))
        if handler is None:
            logger.info(
                "No %s transition for %s_id=%s event_id=%s",
                kind.value, correlation.aggregate_type, correlation.aggregate_id, event.id,
            )
            outcome.detail = f"{kind.value} does not apply to a {correlation.aggregate_type}"
            return outcome

        try:
            await handler(event, correlation, outcome)
        except StateUpdateFailed as e:
            logger.critical(
                "State update failed event_id=%s %s_id=%s: %s",
                event.id, e.aggregate_type, e.aggregate_id, e.detail, exc_info=True,
            )
            outcome.result = FAILED
            outcome.detail = str(e)
        return outcome

    # ── Order handlers ───────────────────────────

    async def _order_paid(self, event, correlation: Correlation, outcome: Outcome) -> None:
        intent_id = event.correlation_keys().payment_intent_id
        changed = await self._apply(correlation, commands.mark_order_paid, intent_id, _now())
        order = await self._load_order(correlation.aggregate_id)
        if not changed:
            self._explain_order(event, order, "paid", outcome)
            return

        self._applied(event, correlation, outcome)
        outcome.steps = list(
            await asyncio.gather(
                isolated(
                    "decrement_inventory",
                    self.inventory.decrement_items(order.items, order.id),
                    self.notify_timeout,
                    order_id=order.id,
                ),
                isolated(
                    "send_order_confirmation",
                    self.notifier.order_confirmation(order),
                    self.notify_timeout,
                    order_id=order.id,
                ),
            )
        )

    async def _order_payment_failed(self, event, correlation: Correlation, outcome: Outcome) -> None:
        reason = event.failure_reason if isinstance(event, PaymentIntentFailed) else "Payment failed"
        changed = await self._apply(
            correlation, commands.mark_order_payment_failed, reason, _now()
        )
        order = await self._load_order(correlation.aggregate_id)
        if not changed:
            self._explain_order(event, order, "failed", outcome)
            return

        self._applied(event, correlation, outcome)
        outcome.steps = [
            await isolated(
                "send_payment_failed",
                self.notifier.payment_failed(order, reason),
                self.notify_timeout,
                order_id=order.id,
            )
        ]

    async def _order_expired(self, event, correlation: Correlation, outcome: Outcome) -> None:
        changed = await self._apply(correlation, commands.mark_order_expired, _now())
        if not changed:
            order = await self._load_order(correlation.aggregate_id)
            self._explain_order(event, order, "expired", outcome)
            return
        self._applied(event, correlation, outcome)

    async def _order_refunded(self, event, correlation: Correlation, outcome: Outcome) -> None:
        refunded = event.correlation_keys().amount
        order = await self._load_order(correlation.aggregate_id)
        if refunded is not None and refunded < order.total_cents:
            # No return matched; a partial refund never settles the whole order.
            outcome.detail = (
                f"Partial refund {refunded} of {order.total_cents} matches no return; "
                "order left unchanged"
            )
            logger.warning(
                "Partial refund for order_id=%s event_id=%s (%s of %s) matches no return, "
                "needs manual review",
                order.id, event.id, refunded, order.total_cents,
            )
            return

        changed = await self._apply(correlation, commands.mark_order_refunded, _now())
        if not changed:
            order = await self._load_order(correlation.aggregate_id)
            self._explain_order(event, order, "refunded", outcome)
            return
        self._applied(event, correlation, outcome)

    # ── Return handlers ──────────────────────────

    async def _return_label_paid(self, event, correlation: Correlation, outcome: Outcome) -> None:
        changed = await self._apply(correlation, commands.mark_return_label_paid, _now())
        ret = await self._load_return(correlation.aggregate_id)

        if not changed:
            if ret.status == "return_label_payment_completed" and not ret.has_label:
                # Earlier delivery paid but the label never came through.
                logger.info(
                    "Label payment redelivered for return_id=%s without a label, re-driving",
                    ret.id,
                )
                outcome.result = DUPLICATE
                outcome.detail = "Label payment already recorded; label generation re-driven"
                outcome.steps = [await self._generate_label(ret.id)]
                return
            self._explain_return(event, ret, "return_label_payment_completed", outcome)
            return

        self._applied(event, correlation, outcome)
        order = await self._load_order(ret.order_id)
        sync = await self._sync_order(
            ret.order_id, ORDER_STATUS_FOR_RETURN["return_label_payment_completed"]
        )
        outcome.steps = [sync] + list(
            await asyncio.gather(
                isolated(
                    "send_return_label_payment_received",
                    self.notifier.label_payment_received(ret, order),
                    self.notify_timeout,
                    return_id=ret.id,
                ),
                self._generate_label(ret.id),
            )
        )

    async def _return_refunded(self, event, correlation: Correlation, outcome: Outcome) -> None:
        changed = await self._apply(correlation, commands.mark_return_refunded, _now())
        ret = await self._load_return(correlation.aggregate_id)
        if not changed:
            self._explain_return(event, ret, "refunded", outcome)
            return

        self._applied(event, correlation, outcome)
        order = await self._load_order(ret.order_id)
        sync = await self._sync_order(ret.order_id, ORDER_STATUS_FOR_RETURN["refunded"])
        outcome.steps = [sync] + list(
            await asyncio.gather(
                isolated(
                    "restock_returned_items",
                    self.inventory.restock_items(ret.return_items, ret.id),
                    self.notify_timeout,
                    return_id=ret.id,
                ),
                isolated(
                    "send_return_refunded",
                    self.notifier.return_refunded(ret, order),
                    self.notify_timeout,
                    return_id=ret.id,
                ),
            )
        )

    # ── Helpers ──────────────────────────────────

    async def _apply(self, correlation: Correlation, command, *args) -> bool:
        """Run one conditional transition; True when this call changed the row."""
        try:
            async with self.sessions() as session:
                return await command(session, correlation.aggregate_id, *args)
        except SQLAlchemyError as e:
            raise StateUpdateFailed(
                correlation.aggregate_type, correlation.aggregate_id, str(e)
            ) from e

    async def _load_order(self, order_id: str) -> OrderAggregate:
        try:
            async with self.sessions() as session:
                order = await queries.get_order(session, order_id)
        except SQLAlchemyError as e:
            raise StateUpdateFailed(ORDER, order_id, f"reload failed: {e}") from e
        if order is None:
            raise StateUpdateFailed(ORDER, order_id, "order disappeared")
        return order

    async def _load_return(self, return_id: str) -> ReturnAggregate:
        try:
            async with self.sessions() as session:
                ret = await queries.get_return(session, return_id)
        except SQLAlchemyError as e:
            raise StateUpdateFailed(RETURN, return_id, f"reload failed: {e}") from e
        if ret is None:
            raise StateUpdateFailed(RETURN, return_id, "return disappeared")
        return ret

    async def _sync_order(self, order_id: str, status: str) -> dict:
        """Move the parent order along with its return."""
        step = {
            "task": "sync_order_status",
            "status": "COMPLETED",
            "timestamp": _now().isoformat(),
            "order_id": order_id,
            "order_status": status,
        }
        try:
            async with self.sessions() as session:
                await commands.set_order_status(session, order_id, status, _now())
        except SQLAlchemyError as e:
            logger.critical(
                "Order status sync failed order_id=%s target=%s", order_id, status, exc_info=True
            )
            step.update(status="FAILED", error=str(e))
        return step

    async def _generate_label(self, return_id: str) -> dict:
        # LabelService bounds its own outbound calls.
        step = await isolated(
            "generate_return_label",
            self.labels.generate(return_id),
            None,
            return_id=return_id,
        )
        attempt = step.pop("result", None)
        if attempt is not None:
            step["label"] = attempt.as_dict()
            if attempt.status == LABEL_FAILED:
                step.update(status="FAILED", error=attempt.error)
        return step

    def _applied(self, event, correlation: Correlation, outcome: Outcome) -> None:
        outcome.result = APPLIED
        logger.info(
            "Applied %s to %s_id=%s event_id=%s",
            outcome.kind, correlation.aggregate_type, correlation.aggregate_id, event.id,
        )

    def _explain_order(self, event, order: OrderAggregate, target: str, outcome: Outcome) -> None:
        if order.payment_status == target:
            outcome.result = DUPLICATE
            outcome.detail = f"Order already {target}"
            logger.info(
                "Duplicate %s for order_id=%s event_id=%s", outcome.kind, order.id, event.id
            )
            return
        outcome.result = REJECTED
        outcome.detail = f"Order payment_status {order.payment_status} does not accept {target}"
        logger.critical(
            "Rejected %s for order_id=%s event_id=%s: payment_status=%s, needs manual review",
            outcome.kind, order.id, event.id, order.payment_status,
        )

    def _explain_return(self, event, ret: ReturnAggregate, target: str, outcome: Outcome) -> None:
        if ret.status == "return_rejected":
            outcome.result = REJECTED
            outcome.detail = f"Return is return_rejected, cannot become {target}"
            logger.critical(
                "Rejected %s for return_id=%s event_id=%s: return was rejected, needs manual review",
                outcome.kind, ret.id, event.id,
            )
            return
        outcome.result = DUPLICATE
        outcome.detail = f"Return already past {target} (now {ret.status})"
        logger.info("Duplicate %s for return_id=%s event_id=%s", outcome.kind, ret.id, event.id)


def _now() -> datetime:
    return datetime.now(timezone.utc)
