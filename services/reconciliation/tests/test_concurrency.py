import asyncio

import pytest

from factories import (
    checkout_session_event,
    encode,
    fetch_one,
    payment_intent_event,
    seed_order,
    seed_return,
    seed_variant,
)
from reconciler.events import parse_event

pytestmark = pytest.mark.asyncio


async def handle(services, raw: dict, delay: float = 0.0):
    if delay:
        await asyncio.sleep(delay)
    return await services.reconciler.handle(parse_event(encode(raw)))


async def test_paired_label_payment_events_generate_one_label(
    services, session_factory, email_sender, label_generator
):
    order_id = await seed_order(session_factory, payment_status="paid", status="delivered")
    return_id = await seed_return(
        session_factory, order_id, items=[{"variant_id": "v1", "quantity": 1}]
    )
    metadata = {"type": "return_label_payment", "return_id": return_id}
    label_generator.delay = 0.3

    first, second = await asyncio.gather(
        handle(services, checkout_session_event(metadata=metadata, amount_total=695)),
        handle(services, payment_intent_event(metadata=metadata, amount=695), delay=0.05),
    )

    assert label_generator.calls == [return_id]
    assert sorted([first.result, second.result]) == ["applied", "duplicate"]
    row = await fetch_one(session_factory, "SELECT * FROM returns WHERE id = :id", id=return_id)
    assert row.status == "return_label_generated"
    assert row.label_parcel_id == "9100"
    assert row.label_generation_started_at is None
    assert email_sender.kinds().count("return_label_ready") == 1
    assert email_sender.kinds().count("return_label_payment_received") == 1


async def test_paired_order_payment_events_apply_once(services, session_factory, email_sender):
    await seed_variant(session_factory, "v-pair", stock=5)
    order_id = await seed_order(
        session_factory, items=[{"variant_id": "v-pair", "quantity": 2}]
    )
    metadata = {"order_id": order_id}

    outcomes = await asyncio.gather(
        handle(services, checkout_session_event(metadata=metadata, payment_intent="pi_pair")),
        handle(services, payment_intent_event(intent_id="pi_pair", metadata=metadata)),
    )

    assert sorted(o.result for o in outcomes) == ["applied", "duplicate"]
    order = await fetch_one(session_factory, "SELECT * FROM orders WHERE id = :id", id=order_id)
    assert (order.payment_status, order.status) == ("paid", "processing")
    stock = await fetch_one(
        session_factory, "SELECT stock_quantity FROM product_variants WHERE id = 'v-pair'"
    )
    assert stock.stock_quantity == 3
    assert email_sender.kinds() == ["order_confirmation"]
