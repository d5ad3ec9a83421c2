import logging

import pytest

from factories import (
    charge_refunded_event,
    checkout_session_event,
    count_rows,
    encode,
    fetch_one,
    payment_intent_event,
    seed_order,
    seed_return,
    seed_variant,
)
from reconciler.events import parse_event

pytestmark = pytest.mark.asyncio


async def handle(services, raw: dict):
    return await services.reconciler.handle(parse_event(encode(raw)))


async def order_row(session_factory, order_id):
    return await fetch_one(session_factory, "SELECT * FROM orders WHERE id = :id", id=order_id)


async def return_row(session_factory, return_id):
    return await fetch_one(session_factory, "SELECT * FROM returns WHERE id = :id", id=return_id)


# ── Order payments ───────────────────────────────


async def test_checkout_completed_marks_order_paid(services, session_factory, email_sender):
    await seed_variant(session_factory, "v1", stock=10)
    order_id = await seed_order(session_factory, items=[{"variant_id": "v1", "quantity": 1}])

    outcome = await handle(
        services,
        checkout_session_event(metadata={"order_id": order_id}, payment_intent="pi_cs"),
    )

    assert outcome.result == "applied"
    row = await order_row(session_factory, order_id)
    assert (row.payment_status, row.status) == ("paid", "processing")
    assert row.stripe_payment_intent_id == "pi_cs"
    assert row.paid_at is not None
    assert email_sender.kinds() == ["order_confirmation"]
    assert email_sender.sent[0]["context"]["customer_name"] == "Sam Customer"
    assert [s["task"] for s in outcome.steps] == ["decrement_inventory", "send_order_confirmation"]


async def test_unpaid_checkout_session_is_ignored(services, session_factory, email_sender):
    order_id = await seed_order(session_factory)
    outcome = await handle(
        services,
        checkout_session_event(metadata={"order_id": order_id}, payment_status="unpaid"),
    )
    assert outcome.result == "ignored"
    assert (await order_row(session_factory, order_id)).payment_status == "pending"
    assert email_sender.sent == []


async def test_payment_failed_records_reason_and_notifies(services, session_factory, email_sender):
    order_id = await seed_order(session_factory)
    outcome = await handle(
        services,
        payment_intent_event(
            "payment_intent.payment_failed",
            metadata={"order_id": order_id},
            last_payment_error={"message": "Insufficient funds"},
        ),
    )
    assert outcome.result == "applied"
    row = await order_row(session_factory, order_id)
    assert row.payment_status == "failed"
    assert row.payment_failure_reason == "Insufficient funds"
    assert email_sender.kinds() == ["payment_failed"]


async def test_checkout_expired_is_absorbing(services, session_factory, caplog):
    order_id = await seed_order(session_factory)
    await handle(services, checkout_session_event("checkout.session.expired", metadata={"order_id": order_id}))
    assert (await order_row(session_factory, order_id)).payment_status == "expired"

    late = await handle(services, payment_intent_event(metadata={"order_id": order_id}))
    assert late.result == "rejected"
    row = await order_row(session_factory, order_id)
    assert row.payment_status == "expired"
    assert any(
        r.levelno == logging.CRITICAL and order_id in r.getMessage() for r in caplog.records
    )


async def test_duplicate_payment_is_logged_at_info(services, session_factory, caplog):
    caplog.set_level(logging.INFO, logger="reconciler")
    order_id = await seed_order(session_factory)
    event = payment_intent_event(metadata={"order_id": order_id})
    await handle(services, event)
    replay = await handle(services, event)

    assert replay.result == "duplicate"
    assert replay.steps == []
    assert not any(r.levelno == logging.CRITICAL for r in caplog.records)


async def test_order_refund(services, session_factory):
    order_id = await seed_order(
        session_factory, payment_status="paid", status="delivered", payment_intent_id="pi_ref"
    )
    outcome = await handle(services, charge_refunded_event(intent_id="pi_ref"))
    assert outcome.aggregate_type == "order"
    row = await order_row(session_factory, order_id)
    assert (row.payment_status, row.status) == ("refunded", "refunded")
    assert row.refunded_at is not None


async def test_refund_of_failed_order_is_rejected(services, session_factory):
    order_id = await seed_order(session_factory, payment_status="failed", payment_intent_id="pi_f")
    outcome = await handle(services, charge_refunded_event(intent_id="pi_f"))
    assert outcome.result == "rejected"
    assert (await order_row(session_factory, order_id)).payment_status == "failed"


async def test_unmatched_event_mutates_nothing(services, session_factory):
    order_id = await seed_order(session_factory)
    outcome = await handle(services, payment_intent_event(intent_id="pi_nobody"))
    assert outcome.result == "unmatched"
    assert (await order_row(session_factory, order_id)).payment_status == "pending"


# ── Returns ──────────────────────────────────────


async def test_label_payment_generates_label_once(
    services, session_factory, email_sender, label_generator
):
    order_id = await seed_order(session_factory, payment_status="paid", status="delivered")
    return_id = await seed_return(
        session_factory, order_id, items=[{"variant_id": "v1", "quantity": 1}]
    )
    event = payment_intent_event(
        metadata={"type": "return_label_payment", "return_id": return_id}, amount=695
    )

    outcome = await handle(services, event)

    assert outcome.kind == "label_payment_succeeded"
    assert outcome.result == "applied"
    row = await return_row(session_factory, return_id)
    assert row.status == "return_label_generated"
    assert row.return_label_payment_status == "completed"
    assert row.return_label_url == f"https://labels.test/{return_id}.pdf"
    assert row.label_parcel_id == "9100"
    assert sorted(email_sender.kinds()) == ["return_label_payment_received", "return_label_ready"]
    assert (await order_row(session_factory, order_id)).status == "return_requested"

    replay = await handle(services, event)
    assert replay.result == "duplicate"
    assert label_generator.calls == [return_id]
    assert len(email_sender.sent) == 2


async def test_label_payment_redelivery_redrives_missing_label(
    services, session_factory, email_sender, label_generator
):
    order_id = await seed_order(session_factory, payment_status="paid", status="delivered")
    return_id = await seed_return(session_factory, order_id, label_intent_id="pi_lbl")
    event = payment_intent_event(intent_id="pi_lbl", amount=695)

    label_generator.error = TimeoutError("courier timeout")
    first = await handle(services, event)
    assert first.result == "applied"
    assert (await return_row(session_factory, return_id)).status == "return_label_payment_completed"

    label_generator.error = None
    second = await handle(services, event)
    assert second.result == "duplicate"
    assert (await return_row(session_factory, return_id)).status == "return_label_generated"
    assert email_sender.kinds().count("return_label_payment_received") == 1
    assert email_sender.kinds().count("return_label_ready") == 1


async def test_return_refund_restocks_and_moves_order(services, session_factory, email_sender):
    await seed_variant(session_factory, "v-ret", stock=2)
    order_id = await seed_order(
        session_factory, payment_status="paid", status="returned", payment_intent_id="pi_ord"
    )
    return_id = await seed_return(
        session_factory,
        order_id,
        status="refund_processing",
        items=[{"variant_id": "v-ret", "quantity": 2}],
    )
    event = charge_refunded_event(intent_id="pi_ord", refund_metadata={"return_id": return_id})

    outcome = await handle(services, event)
    assert outcome.aggregate_type == "return"
    assert (await return_row(session_factory, return_id)).status == "refunded"
    assert (await order_row(session_factory, order_id)).status == "refunded"
    stock = await fetch_one(
        session_factory, "SELECT stock_quantity FROM product_variants WHERE id = 'v-ret'"
    )
    assert stock.stock_quantity == 4
    assert email_sender.kinds() == ["return_refunded"]

    await handle(services, event)
    stock = await fetch_one(
        session_factory, "SELECT stock_quantity FROM product_variants WHERE id = 'v-ret'"
    )
    assert stock.stock_quantity == 4


async def test_refund_without_embedded_refunds_settles_received_return(
    services, session_factory, email_sender
):
    await seed_variant(session_factory, "v-back", stock=0)
    order_id = await seed_order(
        session_factory, payment_status="paid", status="returned", payment_intent_id="pi_1"
    )
    return_id = await seed_return(
        session_factory,
        order_id,
        status="return_received",
        items=[{"variant_id": "v-back", "quantity": 1}],
    )
    event = charge_refunded_event(
        intent_id="pi_1", amount_refunded=2995, charge_amount=5990, embed_refunds=False
    )

    outcome = await handle(services, event)

    assert (outcome.aggregate_type, outcome.result) == ("return", "applied")
    assert (await return_row(session_factory, return_id)).status == "refunded"
    order = await order_row(session_factory, order_id)
    assert (order.payment_status, order.status) == ("paid", "refunded")
    stock = await fetch_one(
        session_factory, "SELECT stock_quantity FROM product_variants WHERE id = 'v-back'"
    )
    assert stock.stock_quantity == 1
    assert email_sender.kinds() == ["return_refunded"]

    replay = await handle(services, event)
    assert (replay.aggregate_type, replay.result) == ("return", "duplicate")


async def test_partial_refund_without_return_leaves_order_paid(services, session_factory, caplog):
    order_id = await seed_order(
        session_factory, payment_status="paid", status="delivered", payment_intent_id="pi_part"
    )
    outcome = await handle(
        services,
        charge_refunded_event(
            intent_id="pi_part", amount_refunded=1000, charge_amount=5990, embed_refunds=False
        ),
    )

    assert outcome.aggregate_type == "order"
    assert outcome.result == "ignored"
    order = await order_row(session_factory, order_id)
    assert (order.payment_status, order.status) == ("paid", "delivered")
    assert order.refunded_at is None
    assert any(
        r.levelno == logging.WARNING and order_id in r.getMessage() for r in caplog.records
    )


async def test_refund_of_rejected_return_is_rejected(services, session_factory):
    order_id = await seed_order(session_factory, payment_status="paid", status="delivered")
    return_id = await seed_return(session_factory, order_id, status="return_rejected")
    outcome = await handle(services, charge_refunded_event(refund_metadata={"return_id": return_id}))
    assert outcome.result == "rejected"
    assert (await return_row(session_factory, return_id)).status == "return_rejected"


async def test_failed_email_does_not_undo_payment(services, session_factory, email_sender):
    email_sender.fail_kinds.add("order_confirmation")
    order_id = await seed_order(session_factory)
    outcome = await handle(services, payment_intent_event(metadata={"order_id": order_id}))

    assert outcome.result == "applied"
    assert (await order_row(session_factory, order_id)).payment_status == "paid"
    assert outcome.errors and outcome.errors[0].startswith("send_order_confirmation")
    assert await count_rows(
        session_factory,
        "SELECT COUNT(*) FROM email_log WHERE order_id = :id AND status = 'failed'",
        id=order_id,
    ) == 1
