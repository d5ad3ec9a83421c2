import json

import pytest

from factories import fetch_one, seed_order, seed_return, sign_carrier
from reconciler.carrier import map_carrier_status

pytestmark = pytest.mark.asyncio


def parcel_event(action="parcel_status_changed", parcel_id=501, status_id=None, order_number=None):
    return {
        "action": action,
        "timestamp": 1700000000,
        "parcel": {
            "id": parcel_id,
            "tracking_number": "3SABC123",
            "tracking_url": "https://track.test/3SABC123",
            "status": {"id": status_id, "message": "update"},
            "carrier": {"code": "postnl", "name": "PostNL"},
            "order_number": order_number,
        },
    }


async def post_carrier(client, event: dict, signature: str | None = None):
    body = json.dumps(event).encode()
    return await client.post(
        "/webhooks/carrier",
        content=body,
        headers={"Sendcloud-Signature": signature if signature is not None else sign_carrier(body)},
    )


@pytest.mark.parametrize(
    "status_id,expected",
    [(1, "processing"), (3, "processing"), (5, "shipped"), (91, "shipped"),
     (11, "delivered"), (12, "cancelled"), (999, "processing"), (None, "processing")],
)
async def test_status_map(status_id, expected):
    assert map_carrier_status(status_id) == expected


async def test_bad_signature_is_401(client):
    resp = await post_carrier(client, parcel_event(), signature="deadbeef")
    assert resp.status_code == 401
    assert resp.json()["received"] is False


async def test_parcel_created_ships_order_and_stores_tracking(client, session_factory, email_sender):
    order_id = await seed_order(session_factory, payment_status="paid", status="processing")
    resp = await post_carrier(client, parcel_event("parcel_created", order_number=order_id))

    assert resp.status_code == 200
    assert resp.json()["result"] == "applied"
    row = await fetch_one(session_factory, "SELECT * FROM orders WHERE id = :id", id=order_id)
    assert row.status == "shipped"
    assert (row.tracking_code, row.carrier) == ("3SABC123", "PostNL")
    assert row.shipped_at is not None
    assert email_sender.kinds() == ["order_shipped"]


async def test_delivered_sends_email_once(client, session_factory, email_sender):
    order_id = await seed_order(session_factory, payment_status="paid", status="shipped")
    event = parcel_event(status_id=11, order_number=order_id)

    await post_carrier(client, event)
    again = await post_carrier(client, event)

    assert again.json()["result"] == "duplicate"
    row = await fetch_one(session_factory, "SELECT * FROM orders WHERE id = :id", id=order_id)
    assert row.status == "delivered"
    assert email_sender.kinds() == ["order_delivered"]


async def test_status_never_moves_backwards(client, session_factory, email_sender):
    order_id = await seed_order(session_factory, payment_status="paid", status="delivered")
    resp = await post_carrier(client, parcel_event(status_id=5, order_number=order_id))

    assert resp.json()["result"] == "ignored"
    row = await fetch_one(session_factory, "SELECT * FROM orders WHERE id = :id", id=order_id)
    assert row.status == "delivered"
    assert email_sender.sent == []


async def test_unpaid_order_is_not_shipped(client, session_factory):
    order_id = await seed_order(session_factory, payment_status="pending")
    await post_carrier(client, parcel_event("parcel_created", order_number=order_id))
    row = await fetch_one(session_factory, "SELECT * FROM orders WHERE id = :id", id=order_id)
    assert row.status == "pending"


async def test_unknown_order_is_acknowledged(client):
    resp = await post_carrier(client, parcel_event(status_id=5, order_number="nope"))
    assert resp.status_code == 200
    assert resp.json()["result"] == "unmatched"


async def test_return_parcel_moves_return_and_order(client, session_factory):
    order_id = await seed_order(session_factory, payment_status="paid", status="return_requested")
    return_id = await seed_return(
        session_factory,
        order_id,
        status="return_label_generated",
        label_url="https://labels.test/r.pdf",
        parcel_id="777",
    )

    await post_carrier(client, parcel_event(parcel_id=777, status_id=5))
    row = await fetch_one(session_factory, "SELECT * FROM returns WHERE id = :id", id=return_id)
    assert row.status == "return_in_transit"

    await post_carrier(client, parcel_event(parcel_id=777, status_id=11))
    row = await fetch_one(session_factory, "SELECT * FROM returns WHERE id = :id", id=return_id)
    assert row.status == "return_received"
    order = await fetch_one(session_factory, "SELECT * FROM orders WHERE id = :id", id=order_id)
    assert order.status == "returned"

    # Late in-transit scan after receipt
    late = await post_carrier(client, parcel_event(parcel_id=777, status_id=5))
    assert late.json()["result"] == "ignored"
    row = await fetch_one(session_factory, "SELECT * FROM returns WHERE id = :id", id=return_id)
    assert row.status == "return_received"
