"""
Reconciliation Service — carrier tracking webhook

The courier reports parcel progress. Outbound parcels carry the order id
as order_number; return parcels are recognised by the parcel id stored
when their label was generated. Statuses only ever move forward.

Courier status id → fulfillment status
  1, 3               → processing
  4, 5, 6, 8, 91     → shipped
  7, 11              → delivered
  12, 13             → cancelled
  anything else      → processing
"""

import hashlib
import hmac
import logging
from datetime import datetime, timezone

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from . import commands, queries
from .aggregate import ORDER_STATUS_FOR_RETURN, fulfillment_sources, return_sources
from .correlation import ORDER, RETURN
from .engine import APPLIED, DUPLICATE, FAILED, IGNORED, UNMATCHED, Outcome
from .events import ProviderModel
from .exceptions import InvalidSignature, MalformedEvent, StateUpdateFailed
from .notifications import NotificationDispatcher, isolated

logger = logging.getLogger(__name__)

STATUS_MAP = {
    1: "processing",
    3: "processing",
    4: "shipped",
    5: "shipped",
    6: "shipped",
    8: "shipped",
    91: "shipped",
    7: "delivered",
    11: "delivered",
    12: "cancelled",
    13: "cancelled",
}

# Return parcels only report movement back to the shop.
RETURN_STATUS_MAP = {
    "shipped": "return_in_transit",
    "delivered": "return_received",
}

HANDLED_ACTIONS = ("parcel_created", "parcel_status_changed")


def map_carrier_status(status_id: int | None) -> str:
    return STATUS_MAP.get(status_id, "processing")


class ParcelStatus(ProviderModel):
    id: int | None = None
    message: str | None = None


class CarrierInfo(ProviderModel):
    code: str | None = None
    name: str | None = None


class Parcel(ProviderModel):
    id: int
    tracking_number: str | None = None
    tracking_url: str | None = None
    status: ParcelStatus | None = None
    carrier: CarrierInfo | None = None
    order_number: str | None = None


class CarrierEvent(ProviderModel):
    action: str
    timestamp: int | None = None
    parcel: Parcel

    @property
    def id(self) -> str:
        return f"parcel-{self.parcel.id}-{self.timestamp or 0}"

    @property
    def type(self) -> str:
        return self.action


def verify_carrier_signature(payload: bytes, signature: str | None, secret: str | None) -> CarrierEvent:
    """Hex HMAC-SHA256 of the raw body; compared in constant time."""
    if not signature or not secret:
        raise InvalidSignature("Missing carrier signature or webhook secret")
    expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise InvalidSignature("Carrier signature mismatch")
    try:
        return CarrierEvent.model_validate_json(payload)
    except ValidationError as e:
        raise MalformedEvent(f"Carrier event invalid: {e.error_count()} error(s)") from e


class CarrierReconciler:
    def __init__(
        self,
        session_factory: sessionmaker,
        notifier: NotificationDispatcher,
        notify_timeout: float,
    ) -> None:
        self.sessions = session_factory
        self.notifier = notifier
        self.notify_timeout = notify_timeout

    async def handle(self, event: CarrierEvent) -> Outcome:
        outcome = Outcome(event_id=event.id, event_type=event.action)
        if event.action not in HANDLED_ACTIONS:
            logger.info("Ignoring carrier action=%s parcel=%s", event.action, event.parcel.id)
            outcome.detail = "Unhandled carrier action"
            return outcome

        parcel = event.parcel
        if event.action == "parcel_created":
            target = "shipped"
        else:
            target = map_carrier_status(parcel.status.id if parcel.status else None)
        outcome.kind = target

        try:
            async with self.sessions() as session:
                return_id = await queries.find_return_by_parcel(session, str(parcel.id))
            if return_id:
                await self._return_parcel(return_id, target, outcome)
            else:
                await self._order_parcel(parcel, target, outcome)
        except SQLAlchemyError as e:
            failure = StateUpdateFailed(
                outcome.aggregate_type or "parcel", outcome.aggregate_id or str(parcel.id), str(e)
            )
            logger.critical("Carrier update failed: %s", failure, exc_info=True)
            outcome.result = FAILED
            outcome.detail = str(failure)
        return outcome

    async def _return_parcel(self, return_id: str, target: str, outcome: Outcome) -> None:
        outcome.aggregate_type = RETURN
        outcome.aggregate_id = return_id
        return_target = RETURN_STATUS_MAP.get(target)
        if return_target is None:
            outcome.detail = f"Carrier status {target} does not move a return"
            return

        now = datetime.now(timezone.utc)
        async with self.sessions() as session:
            changed = await commands.advance_return_status(
                session, return_id, return_target, return_sources(return_target), now
            )
            ret = await queries.get_return(session, return_id)
            if changed:
                await commands.set_order_status(
                    session, ret.order_id, ORDER_STATUS_FOR_RETURN[return_target], now
                )

        if not changed:
            outcome.result = DUPLICATE if ret.status == return_target else IGNORED
            outcome.detail = f"Return is {ret.status}, not moving to {return_target}"
            return
        outcome.result = APPLIED
        logger.info("Return parcel update return_id=%s status=%s", return_id, return_target)

    async def _order_parcel(self, parcel: Parcel, target: str, outcome: Outcome) -> None:
        order_id = parcel.order_number
        if not order_id:
            logger.warning("Carrier parcel=%s carries no order_number", parcel.id)
            outcome.result = UNMATCHED
            outcome.detail = "No order_number on parcel"
            return

        async with self.sessions() as session:
            order = await queries.get_order(session, order_id)
        if order is None:
            logger.warning("Carrier parcel=%s names unknown order_id=%s", parcel.id, order_id)
            outcome.result = UNMATCHED
            outcome.detail = "Unknown order"
            return
        outcome.aggregate_type = ORDER
        outcome.aggregate_id = order.id

        if order.payment_status != "paid":
            logger.warning(
                "Carrier update for order_id=%s with payment_status=%s ignored",
                order.id, order.payment_status,
            )
            outcome.detail = f"Order payment_status is {order.payment_status}"
            return

        now = datetime.now(timezone.utc)
        carrier_name = parcel.carrier.name if parcel.carrier else None
        async with self.sessions() as session:
            await commands.update_order_tracking(
                session, order.id, parcel.tracking_number, parcel.tracking_url, carrier_name, now
            )
            changed = await commands.advance_order_status(
                session, order.id, target, fulfillment_sources(target), now
            )

        if not changed:
            outcome.result = DUPLICATE if order.status == target else IGNORED
            outcome.detail = f"Order is {order.status}, not moving to {target}"
            return

        outcome.result = APPLIED
        logger.info("Order status updated order_id=%s %s -> %s", order.id, order.status, target)
        if target == "shipped":
            outcome.steps.append(
                await isolated(
                    "send_order_shipped",
                    self.notifier.order_shipped(order, parcel.tracking_number, parcel.tracking_url),
                    self.notify_timeout,
                    order_id=order.id,
                )
            )
        elif target == "delivered":
            outcome.steps.append(
                await isolated(
                    "send_order_delivered",
                    self.notifier.order_delivered(order),
                    self.notify_timeout,
                    order_id=order.id,
                )
            )
