"""
Reconciliation Service — aggregates (Order / Return Request)

The storefront persists orders and returns as mutable rows. This module
rebuilds them from rows and holds the transition rules the engine and
the carrier webhook apply to them.

Order payment_status (monotonic partial order):
    unpaid / pending ──▶ paid ──▶ refunded
    unpaid / pending ──▶ failed   (absorbing)
    unpaid / pending ──▶ expired  (absorbing)

Return status (forward only, terminal at refunded / return_rejected):
    return_requested → return_approved → return_label_payment_pending
    → return_label_payment_completed → return_label_generated
    → return_in_transit → return_received → refund_processing → refunded
"""

import json
from dataclasses import dataclass, field

# ── Order ────────────────────────────────────────

PENDING_PAYMENT = ("unpaid", "pending")

PAYMENT_SOURCES: dict[str, tuple[str, ...]] = {
    "paid": PENDING_PAYMENT,
    "failed": PENDING_PAYMENT,
    "expired": PENDING_PAYMENT,
    "refunded": PENDING_PAYMENT + ("paid",),
}

FULFILLMENT_FLOW = ("pending", "paid", "processing", "shipped", "delivered")


def fulfillment_sources(target: str) -> tuple[str, ...]:
    """Order statuses a carrier update may move forward to `target`."""
    if target == "cancelled":
        return ("pending", "paid", "processing", "shipped")
    if target not in FULFILLMENT_FLOW:
        return ()
    return FULFILLMENT_FLOW[: FULFILLMENT_FLOW.index(target)]


@dataclass(frozen=True)
class LineItem:
    variant_id: str
    quantity: int
    unit_price: float = 0.0
    is_presale: bool = False
    product_name: str = ""

    @property
    def pool(self) -> str:
        return "presale" if self.is_presale else "regular"


@dataclass
class OrderAggregate:
    id: str
    email: str
    status: str
    payment_status: str
    total: float
    stripe_payment_intent_id: str | None = None
    customer_name: str = ""
    items: list[LineItem] = field(default_factory=list)

    @property
    def total_cents(self) -> int:
        return round(self.total * 100)

    @classmethod
    def from_row(cls, row, items: list[LineItem] | None = None) -> "OrderAggregate":
        return cls(
            id=str(row.id),
            email=row.email,
            status=row.status,
            payment_status=row.payment_status,
            total=float(row.total or 0),
            stripe_payment_intent_id=row.stripe_payment_intent_id,
            customer_name=_customer_name(row.shipping_address),
            items=items or [],
        )


def _customer_name(shipping_address) -> str:
    if not shipping_address:
        return ""
    address = json.loads(shipping_address) if isinstance(shipping_address, str) else shipping_address
    return address.get("name") or ""


# ── Return Request ───────────────────────────────

RETURN_FLOW = (
    "return_requested",
    "return_approved",
    "return_label_payment_pending",
    "return_label_payment_completed",
    "return_label_generated",
    "return_in_transit",
    "return_received",
    "refund_processing",
    "refunded",
)

RETURN_TERMINAL = ("refunded", "return_rejected")

LABEL_PAYABLE = ("return_requested", "return_approved", "return_label_payment_pending")

# Parent order status while a return is in a given state.
ORDER_STATUS_FOR_RETURN = {
    "return_requested": "return_requested",
    "return_approved": "return_requested",
    "return_label_payment_pending": "return_requested",
    "return_label_payment_completed": "return_requested",
    "return_label_generated": "return_requested",
    "return_in_transit": "return_requested",
    "return_received": "returned",
    "refund_processing": "returned",
    "refunded": "refunded",
    "return_rejected": "delivered",
}


def return_sources(target: str) -> tuple[str, ...]:
    """Return statuses that may move forward to `target`."""
    if target not in RETURN_FLOW:
        return ()
    return RETURN_FLOW[: RETURN_FLOW.index(target)]


@dataclass(frozen=True)
class ReturnItem:
    variant_id: str
    quantity: int


@dataclass
class ReturnAggregate:
    id: str
    order_id: str
    status: str
    return_items: list[ReturnItem] = field(default_factory=list)
    return_label_payment_intent_id: str | None = None
    return_label_url: str | None = None
    return_tracking_code: str | None = None
    return_tracking_url: str | None = None
    label_parcel_id: str | None = None

    @property
    def has_label(self) -> bool:
        return bool(self.return_label_url)

    @classmethod
    def from_row(cls, row) -> "ReturnAggregate":
        raw_items = row.return_items
        items = json.loads(raw_items) if isinstance(raw_items, str) else (raw_items or [])
        return cls(
            id=str(row.id),
            order_id=str(row.order_id),
            status=row.status,
            return_items=[
                ReturnItem(variant_id=str(i["variant_id"]), quantity=int(i["quantity"]))
                for i in items
            ],
            return_label_payment_intent_id=row.return_label_payment_intent_id,
            return_label_url=row.return_label_url,
            return_tracking_code=row.return_tracking_code,
            return_tracking_url=row.return_tracking_url,
            label_parcel_id=row.label_parcel_id,
        )
