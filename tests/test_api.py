"""Tests for the REST API."""

import httpx
import pytest
import pytest_asyncio

from api import create_app
from flows import ALICE, BOB, CAROL, SCORES


@pytest_asyncio.fixture
async def client(engine, items):
    app = create_app(engine)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def as_user(user_id):
    return {"X-User-Id": user_id}


@pytest.mark.asyncio
async def test_root(client):
    response = await client.get("/")

    assert response.status_code == 200
    assert response.json()["status"] == "running"


@pytest.mark.asyncio
async def test_trade_lifecycle(client):
    """Test a cash trade from proposal to revealed ratings over HTTP."""
    response = await client.post("/trades", headers=as_user(ALICE), json={
        "receiver_id": BOB,
        "proposer_item_ids": ["alice-watch"],
        "receiver_item_ids": ["bob-guitar"],
        "proposer_cash": 4500
    })
    assert response.status_code == 201
    trade_id = response.json()["id"]

    response = await client.get(f"/trades/{trade_id}/differential")
    assert response.json()["payer_id"] == ALICE
    assert response.json()["amount"] == 4500

    response = await client.post(f"/trades/{trade_id}/respond", headers=as_user(BOB), json={"action": "accept"})
    assert response.json()["status"] == "payment_pending"

    response = await client.post(f"/trades/{trade_id}/escrow/fund", headers=as_user(ALICE))
    assert response.json()["status"] == "escrow_funded"

    response = await client.get(f"/trades/{trade_id}/escrow")
    assert response.json()["escrow_hold"]["amount"] == 4500

    await client.post(f"/trades/{trade_id}/tracking", headers=as_user(ALICE), json={"tracking_number": "1Z999AA10123456784"})
    await client.post(f"/trades/{trade_id}/tracking", headers=as_user(BOB), json={"tracking_number": "9400111899223197428490"})
    response = await client.post("/trades/tracking-events", json={
        "tracking_number": "1Z999AA10123456784", "status": "DELIVERED"
    })
    assert response.json()["status"] == "in_transit"

    response = await client.post(f"/trades/{trade_id}/delivered")
    assert response.json()["status"] == "delivered_awaiting_verification"

    await client.post(f"/trades/{trade_id}/verify", headers=as_user(ALICE))
    response = await client.post(f"/trades/{trade_id}/verify", headers=as_user(BOB))
    assert response.json()["status"] == "completed_awaiting_rating"

    response = await client.post(f"/ratings/trade/{trade_id}", headers=as_user(ALICE), json={
        **SCORES, "private_feedback": "Took a while to ship"
    })
    assert response.status_code == 201
    assert not response.json()["is_revealed"]

    response = await client.get(f"/ratings/trade/{trade_id}", headers=as_user(BOB))
    assert response.json() == []

    await client.post(f"/ratings/trade/{trade_id}", headers=as_user(BOB), json=SCORES)
    response = await client.get(f"/ratings/trade/{trade_id}", headers=as_user(BOB))
    ratings = response.json()
    assert len(ratings) == 2
    assert all(r["private_feedback"] is None for r in ratings)

    response = await client.get(f"/ratings/user/{BOB}")
    assert [r["rater_id"] for r in response.json()] == [ALICE]

    response = await client.get("/trades", headers=as_user(ALICE), params={"status": "completed"})
    assert [t["id"] for t in response.json()] == [trade_id]


@pytest.mark.asyncio
async def test_error_status_codes(client):
    """Test that engine errors map to HTTP status codes."""
    response = await client.get("/trades/missing", headers=as_user(ALICE))
    assert response.status_code == 404

    response = await client.post("/trades", headers=as_user(ALICE), json={
        "receiver_id": BOB, "proposer_item_ids": ["bob-guitar"]
    })
    assert response.status_code == 422

    response = await client.post("/trades", headers=as_user(ALICE), json={
        "receiver_id": BOB, "receiver_item_ids": ["bob-guitar"], "proposer_cash": 50000
    })
    assert response.status_code == 402

    response = await client.post("/trades", headers=as_user(ALICE), json={
        "receiver_id": BOB, "proposer_item_ids": ["alice-watch"]
    })
    trade_id = response.json()["id"]

    response = await client.get(f"/trades/{trade_id}", headers=as_user(CAROL))
    assert response.status_code == 403

    response = await client.post(f"/trades/{trade_id}/respond", headers=as_user(ALICE), json={"action": "accept"})
    assert response.status_code == 403

    response = await client.post(f"/trades/{trade_id}/verify", headers=as_user(ALICE))
    assert response.status_code == 409

    # Caller identity is required
    response = await client.post(f"/trades/{trade_id}/respond", json={"action": "accept"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_dispute_endpoints(client, engine):
    """Test opening and resolving a dispute over HTTP."""
    trade = await engine.trades.propose(ALICE, BOB, ["alice-watch"], [], proposer_cash=1000)
    await engine.trades.respond(trade.id, BOB, "accept")
    await engine.escrow.fund_escrow(trade.id, ALICE)
    await engine.shipping.submit_tracking(trade.id, ALICE, "1Z999AA10123456784")
    await engine.shipping.mark_delivered(trade.id)

    response = await client.post("/disputes", headers=as_user(BOB), json={
        "trade_id": trade.id,
        "dispute_type": "significantly-not-as-described",
        "statement": "Watch face is scratched"
    })
    assert response.status_code == 201
    ticket_id = response.json()["id"]
    assert response.json()["status"] == "awaiting_evidence"

    response = await client.post(f"/disputes/{ticket_id}/evidence", headers=as_user(BOB), json={"attachments": []})
    assert response.status_code == 422
    await client.post(f"/disputes/{ticket_id}/evidence", headers=as_user(BOB), json={"attachments": ["face.jpg"]})

    response = await client.post(f"/disputes/{ticket_id}/response", headers=as_user(ALICE), json={
        "statement": "It was scratched in the listing photos"
    })
    assert response.json()["status"] == "in_mediation"

    response = await client.post(f"/disputes/{ticket_id}/messages", headers=as_user(BOB), json={"text": "Can we split it?"})
    assert response.status_code == 201
    response = await client.get(f"/disputes/{ticket_id}/messages")
    assert [m["sender_id"] for m in response.json()] == [BOB]

    response = await client.post(f"/disputes/{ticket_id}/escalate", headers=as_user(CAROL))
    assert response.status_code == 403
    await client.post(f"/disputes/{ticket_id}/escalate", headers=as_user(BOB))

    response = await client.post(f"/disputes/{ticket_id}/resolve", headers=as_user(BOB), json={
        "resolution": "full-refund",
        "moderator_notes": "I am owed a full refund"
    })
    assert response.status_code == 403

    response = await client.post(f"/disputes/{ticket_id}/resolve", headers=as_user("moderator-1"), json={
        "resolution": "partial-refund",
        "moderator_notes": "Scratch not shown clearly, refund 400",
        "refund_amount": 400
    })
    assert response.status_code == 200
    assert response.json()["status"] == "resolved"
    assert response.json()["moderator_id"] == "moderator-1"

    response = await client.get("/disputes", params={"status": "resolved"})
    assert [t["id"] for t in response.json()] == [ticket_id]

    assert (await engine.ledger.get_user(ALICE)).cash_balance == 9400
    assert (await engine.ledger.get_user(BOB)).cash_balance == 10600
