"""
Reconciliation Service — inbound event definitions

Payment-provider notifications are modelled as a closed tagged union,
discriminated by the provider's `type` tag. Each member carries its own
typed payload. Unknown tags are not errors: they parse into UnknownEvent,
get logged, and are acknowledged.

Provider type               → reconciliation kind
  payment_intent.succeeded   → payment_succeeded
  checkout.session.completed → payment_succeeded (only when paid)
  payment_intent.payment_failed → payment_failed
  checkout.session.expired   → checkout_expired
  payment_intent.canceled    → checkout_expired
  charge.refunded            → charge_refunded
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .exceptions import MalformedEvent


class EventKind(str, Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    LABEL_PAYMENT_SUCCEEDED = "label_payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    CHECKOUT_EXPIRED = "checkout_expired"
    CHARGE_REFUNDED = "charge_refunded"


@dataclass(frozen=True)
class CorrelationKeys:
    """Everything an event offers for matching it to an aggregate."""

    metadata: dict[str, str] = field(default_factory=dict)
    payment_intent_id: str | None = None
    email: str | None = None
    amount: int | None = None  # minor units (cents)


class ProviderModel(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


# ── Payload objects ──────────────────────────────


class PaymentError(ProviderModel):
    code: str | None = None
    decline_code: str | None = None
    message: str | None = None


class PaymentIntent(ProviderModel):
    id: str
    amount: int | None = None
    currency: str | None = None
    status: str | None = None
    receipt_email: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    last_payment_error: PaymentError | None = None
    cancellation_reason: str | None = None


class CustomerDetails(ProviderModel):
    email: str | None = None
    name: str | None = None


class CheckoutSession(ProviderModel):
    id: str
    payment_intent: str | None = None
    payment_status: str | None = None
    amount_total: int | None = None
    customer_email: str | None = None
    customer_details: CustomerDetails | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


class Refund(ProviderModel):
    id: str
    amount: int | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


class RefundList(ProviderModel):
    data: list[Refund] = Field(default_factory=list)


class BillingDetails(ProviderModel):
    email: str | None = None
    name: str | None = None


class Charge(ProviderModel):
    id: str
    payment_intent: str | None = None
    amount: int | None = None
    amount_refunded: int | None = None
    receipt_email: str | None = None
    billing_details: BillingDetails | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    refunds: RefundList | None = None


class PaymentIntentData(ProviderModel):
    object: PaymentIntent


class CheckoutSessionData(ProviderModel):
    object: CheckoutSession


class ChargeData(ProviderModel):
    object: Charge


# ── Events ───────────────────────────────────────


class ProviderEvent(ProviderModel):
    id: str
    created: int | None = None
    livemode: bool = False

    @property
    def kind(self) -> EventKind | None:
        raise NotImplementedError

    def correlation_keys(self) -> CorrelationKeys:
        raise NotImplementedError


class _PaymentIntentEvent(ProviderEvent):
    data: PaymentIntentData

    def correlation_keys(self) -> CorrelationKeys:
        intent = self.data.object
        return CorrelationKeys(
            metadata=dict(intent.metadata),
            payment_intent_id=intent.id,
            email=intent.receipt_email or intent.metadata.get("customer_email"),
            amount=intent.amount,
        )


class PaymentIntentSucceeded(_PaymentIntentEvent):
    type: Literal["payment_intent.succeeded"]

    @property
    def kind(self) -> EventKind:
        return EventKind.PAYMENT_SUCCEEDED


class PaymentIntentFailed(_PaymentIntentEvent):
    type: Literal["payment_intent.payment_failed"]

    @property
    def kind(self) -> EventKind:
        return EventKind.PAYMENT_FAILED

    @property
    def failure_reason(self) -> str:
        error = self.data.object.last_payment_error
        if error is None:
            return "Unknown failure"
        return error.message or error.decline_code or error.code or "Unknown failure"


class PaymentIntentCanceled(_PaymentIntentEvent):
    type: Literal["payment_intent.canceled"]

    @property
    def kind(self) -> EventKind:
        return EventKind.CHECKOUT_EXPIRED


class _CheckoutSessionEvent(ProviderEvent):
    data: CheckoutSessionData

    def correlation_keys(self) -> CorrelationKeys:
        session = self.data.object
        email = session.customer_email
        if email is None and session.customer_details is not None:
            email = session.customer_details.email
        return CorrelationKeys(
            metadata=dict(session.metadata),
            payment_intent_id=session.payment_intent,
            email=email,
            amount=session.amount_total,
        )


class CheckoutSessionCompleted(_CheckoutSessionEvent):
    type: Literal["checkout.session.completed"]

    @property
    def kind(self) -> EventKind | None:
        # Delayed payment methods complete the session before the money
        # arrives; payment_intent.succeeded follows for those.
        if self.data.object.payment_status not in (None, "paid"):
            return None
        return EventKind.PAYMENT_SUCCEEDED


class CheckoutSessionExpired(_CheckoutSessionEvent):
    type: Literal["checkout.session.expired"]

    @property
    def kind(self) -> EventKind:
        return EventKind.CHECKOUT_EXPIRED


class ChargeRefunded(ProviderEvent):
    type: Literal["charge.refunded"]
    data: ChargeData

    @property
    def kind(self) -> EventKind:
        return EventKind.CHARGE_REFUNDED

    def correlation_keys(self) -> CorrelationKeys:
        charge = self.data.object
        metadata = dict(charge.metadata)
        # Refund metadata is set by whoever issued the refund and wins
        # over the metadata copied from checkout.
        if charge.refunds is not None:
            for refund in charge.refunds.data:
                metadata.update(refund.metadata)
        email = charge.receipt_email
        if email is None and charge.billing_details is not None:
            email = charge.billing_details.email
        return CorrelationKeys(
            metadata=metadata,
            payment_intent_id=charge.payment_intent,
            email=email,
            amount=charge.amount_refunded,
        )


class UnknownEvent(ProviderModel):
    """An authentic event whose type tag is outside the union."""

    id: str
    type: str

    @property
    def kind(self) -> None:
        return None


class _Envelope(ProviderModel):
    id: str
    type: str


InboundEvent = Annotated[
    Union[
        PaymentIntentSucceeded,
        PaymentIntentFailed,
        PaymentIntentCanceled,
        CheckoutSessionCompleted,
        CheckoutSessionExpired,
        ChargeRefunded,
    ],
    Field(discriminator="type"),
]

KNOWN_EVENT_TYPES = frozenset(
    {
        "payment_intent.succeeded",
        "payment_intent.payment_failed",
        "payment_intent.canceled",
        "checkout.session.completed",
        "checkout.session.expired",
        "charge.refunded",
    }
)

_inbound = TypeAdapter(InboundEvent)


def parse_event(payload: bytes | str) -> ProviderEvent | UnknownEvent:
    """Deserialize an already-authenticated body into its typed event."""
    try:
        envelope = _Envelope.model_validate_json(payload)
    except ValidationError as e:
        raise MalformedEvent(f"Event envelope invalid: {e.error_count()} error(s)") from e

    if envelope.type not in KNOWN_EVENT_TYPES:
        return UnknownEvent(id=envelope.id, type=envelope.type)

    try:
        return _inbound.validate_json(payload)
    except ValidationError as e:
        raise MalformedEvent(
            f"{envelope.type} {envelope.id} does not match its schema: {e.errors()[0]['msg']}"
        ) from e
