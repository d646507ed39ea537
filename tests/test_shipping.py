"""Tests for tracking, delivery and verification."""

import asyncio

import pytest

from core.exceptions import InvalidStateError, NotAuthorizedError, ValidationError
from core.models import TradeStatus
from flows import ALICE, BOB, CAROL, accept, deliver
from ledger import EscrowStatus
from notifications import NotificationType
from shipping import Carrier, TrackingEvent, TrackingStatus, detect_carrier


@pytest.mark.parametrize("tracking_number,carrier", [
    ("1Z999AA10123456784", Carrier.UPS),
    ("9400111899223197428490", Carrier.USPS),
    ("123456789012", Carrier.FEDEX),
    ("1234567890", Carrier.DHL),
    ("JD014600006281234567", Carrier.DHL),
    ("1z999aa1 0123456784", Carrier.UPS),
    ("not-a-number", Carrier.UNKNOWN),
])
def test_detect_carrier(tracking_number, carrier):
    """Test guessing the carrier from a tracking number."""
    assert detect_carrier(tracking_number) == carrier


@pytest.mark.asyncio
async def test_both_tracking_numbers_put_trade_in_transit(engine, items, sink):
    """Test that the second tracking number starts transit."""
    trade = await engine.trades.propose(ALICE, BOB, ["alice-watch"], ["bob-guitar"])
    trade = await accept(engine, trade)

    trade = await engine.shipping.submit_tracking(trade.id, ALICE, "1Z999AA10123456784")
    assert trade.status == TradeStatus.SHIPPING_PENDING
    assert trade.proposer_carrier == Carrier.UPS.value

    trade = await engine.shipping.submit_tracking(trade.id, BOB, "9400111899223197428490")
    assert trade.status == TradeStatus.IN_TRANSIT
    assert NotificationType.TRADE_IN_TRANSIT in [n.event_type for n in sink.for_user(ALICE)]


@pytest.mark.asyncio
async def test_one_sided_trade_ships_after_one_number(engine, items):
    """Test that a side with nothing to ship does not need tracking."""
    trade = await engine.trades.propose(ALICE, BOB, ["alice-watch"], [])
    trade = await accept(engine, trade)

    trade = await engine.shipping.submit_tracking(trade.id, ALICE, "1Z999AA10123456784")

    assert trade.status == TradeStatus.IN_TRANSIT


@pytest.mark.asyncio
async def test_funded_trade_accepts_tracking(engine, items):
    """Test that tracking on an escrow funded trade starts shipping."""
    trade = await engine.trades.propose(ALICE, BOB, ["alice-watch"], ["bob-guitar"], proposer_cash=1000)
    trade = await accept(engine, trade)
    assert trade.status == TradeStatus.ESCROW_FUNDED

    trade = await engine.shipping.submit_tracking(trade.id, BOB, "9400111899223197428490")

    assert trade.status == TradeStatus.SHIPPING_PENDING


@pytest.mark.asyncio
async def test_submit_tracking_errors(engine, items):
    """Test tracking submission in the wrong state, by outsiders and blank."""
    trade = await engine.trades.propose(ALICE, BOB, ["alice-watch"], [])

    with pytest.raises(InvalidStateError):
        await engine.shipping.submit_tracking(trade.id, ALICE, "1Z999AA10123456784")

    trade = await accept(engine, trade)
    with pytest.raises(NotAuthorizedError):
        await engine.shipping.submit_tracking(trade.id, CAROL, "1Z999AA10123456784")
    with pytest.raises(ValidationError):
        await engine.shipping.submit_tracking(trade.id, ALICE, "   ")


@pytest.mark.asyncio
async def test_tracking_feed_marks_delivery(engine, items):
    """Test that delivery events for both shipments deliver the trade."""
    trade = await engine.trades.propose(ALICE, BOB, ["alice-watch"], ["bob-guitar"])
    trade = await accept(engine, trade)
    await engine.shipping.submit_tracking(trade.id, ALICE, "1Z999AA10123456784")
    await engine.shipping.submit_tracking(trade.id, BOB, "9400111899223197428490")

    # Progress events change nothing
    trade = await engine.shipping.record_tracking_event(
        TrackingEvent(tracking_number="1Z999AA10123456784", status=TrackingStatus.OUT_FOR_DELIVERY)
    )
    assert trade.status == TradeStatus.IN_TRANSIT

    trade = await engine.shipping.record_tracking_event(
        TrackingEvent(tracking_number="1Z999AA10123456784", status=TrackingStatus.DELIVERED)
    )
    assert trade.proposer_delivered
    assert trade.status == TradeStatus.IN_TRANSIT

    trade = await engine.shipping.record_tracking_event(
        TrackingEvent(tracking_number="9400111899223197428490", status=TrackingStatus.DELIVERED)
    )
    assert trade.status == TradeStatus.DELIVERED_AWAITING_VERIFICATION


@pytest.mark.asyncio
async def test_tracking_feed_ignores_unknown_numbers(engine, items):
    """Test that events for numbers no trade uses are ignored."""
    result = await engine.shipping.record_tracking_event(
        TrackingEvent(tracking_number="unknown", status=TrackingStatus.DELIVERED)
    )

    assert result is None


@pytest.mark.asyncio
async def test_verify_requires_delivery(engine, items):
    """Test that verification is only possible after delivery."""
    trade = await engine.trades.propose(ALICE, BOB, ["alice-watch"], [])
    trade = await accept(engine, trade)

    with pytest.raises(InvalidStateError):
        await engine.shipping.verify_satisfaction(trade.id, ALICE)

    await deliver(engine, trade)
    with pytest.raises(NotAuthorizedError):
        await engine.shipping.verify_satisfaction(trade.id, CAROL)


@pytest.mark.asyncio
async def test_second_verification_completes_trade(engine, items, clock):
    """Test that settlement happens on the second verification only."""
    trade = await engine.trades.propose(ALICE, BOB, ["alice-watch"], ["bob-guitar"])
    trade = await accept(engine, trade)
    await deliver(engine, trade)

    trade = await engine.shipping.verify_satisfaction(trade.id, ALICE)
    assert trade.status == TradeStatus.DELIVERED_AWAITING_VERIFICATION
    assert (await engine.ledger.get_item("alice-watch")).owner_id == ALICE

    trade = await engine.shipping.verify_satisfaction(trade.id, BOB)
    assert trade.status == TradeStatus.COMPLETED_AWAITING_RATING
    assert trade.rating_deadline == clock.now + engine.shipping.rating_window
    assert (await engine.ledger.get_item("alice-watch")).owner_id == BOB


@pytest.mark.asyncio
async def test_verification_is_idempotent(engine, items):
    """Test that verifying again never settles or scores twice."""
    trade = await engine.trades.propose(ALICE, BOB, ["alice-watch"], ["bob-guitar"], proposer_cash=2000)
    trade = await accept(engine, trade)
    await deliver(engine, trade)
    await engine.shipping.verify_satisfaction(trade.id, ALICE)
    await engine.shipping.verify_satisfaction(trade.id, BOB)

    snapshot = [await engine.ledger.get_user(u) for u in (ALICE, BOB)]

    for user_id in (ALICE, BOB, ALICE):
        trade = await engine.shipping.verify_satisfaction(trade.id, user_id)
        assert trade.status == TradeStatus.COMPLETED_AWAITING_RATING

    assert [await engine.ledger.get_user(u) for u in (ALICE, BOB)] == snapshot


@pytest.mark.asyncio
async def test_concurrent_verification_settles_once(engine, items):
    """Test that simultaneous verifications settle exactly once."""
    trade = await engine.trades.propose(ALICE, BOB, ["alice-camera"], ["bob-lens"], proposer_cash=3000)
    trade = await accept(engine, trade)
    await deliver(engine, trade)

    results = await asyncio.gather(
        engine.shipping.verify_satisfaction(trade.id, ALICE),
        engine.shipping.verify_satisfaction(trade.id, BOB),
        engine.shipping.verify_satisfaction(trade.id, ALICE),
        engine.shipping.verify_satisfaction(trade.id, BOB),
    )

    assert results[-1].status == TradeStatus.COMPLETED_AWAITING_RATING
    alice = await engine.ledger.get_user(ALICE)
    bob = await engine.ledger.get_user(BOB)
    assert alice.cash_balance == 7000
    assert bob.cash_balance == 13000
    # 53000 vs 20000 is overvalued: one penalty, one bonus
    assert alice.valuation_reputation_score == 90
    assert bob.valuation_reputation_score == 101
    entries = await engine.ledger.get_escrow_entries(trade.id)
    assert len(entries) == 2


@pytest.mark.asyncio
async def test_failed_settlement_sends_no_escrow_notification(engine, items, sink, monkeypatch):
    """Test that a settlement rolled back by a later failure notifies nobody."""
    trade = await engine.trades.propose(ALICE, BOB, ["alice-watch"], ["bob-guitar"], proposer_cash=2000)
    trade = await accept(engine, trade)
    trade = await deliver(engine, trade)
    await engine.shipping.verify_satisfaction(trade.id, ALICE)

    async def failing_save(trade):
        raise RuntimeError("storage unavailable")

    monkeypatch.setattr(engine.store, "save", failing_save)
    with pytest.raises(RuntimeError):
        await engine.shipping.verify_satisfaction(trade.id, BOB)
    monkeypatch.undo()

    events = [n.event_type for n in sink.notifications]
    assert NotificationType.ESCROW_RELEASED not in events
    assert NotificationType.TRADE_COMPLETED not in events
    assert (await engine.ledger.get_user(BOB)).cash_balance == 10000
    assert (await engine.ledger.get_item("alice-watch")).owner_id == ALICE
    assert (await engine.ledger.get_escrow_hold(trade.id)).status == EscrowStatus.FUNDED

    # The retry settles and notifies once committed
    trade = await engine.shipping.verify_satisfaction(trade.id, BOB)
    assert trade.status == TradeStatus.COMPLETED_AWAITING_RATING
    released = [n for n in sink.notifications if n.event_type == NotificationType.ESCROW_RELEASED]
    assert [n.recipient_id for n in released] == [BOB]
