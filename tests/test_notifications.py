"""Tests for notification delivery."""

import logging

import pytest

from core.models import TradeStatus
from disputes import DisputeStatus
from flows import ALICE, BOB, SCORES, accept, deliver
from notifications import MemoryNotificationSink, NotificationSink, NotificationType, Notifier

NOTES = "Both parties heard, photos reviewed"


class FailingSink(NotificationSink):
    """A sink whose delivery backend is down."""

    def __init__(self):
        self.attempts = 0

    async def send(self, notification):
        self.attempts += 1
        raise ConnectionError("push gateway unreachable")


@pytest.fixture
def sink():
    return FailingSink()


@pytest.mark.asyncio
async def test_failing_sink_does_not_fail_transitions(engine, items, sink, caplog):
    """Test that trades, verification and disputes commit while delivery fails."""
    with caplog.at_level(logging.WARNING, logger="notifications"):
        trade = await engine.trades.propose(ALICE, BOB, ["alice-watch"], ["bob-guitar"], proposer_cash=2000)
        assert (await engine.trades.get_trade(trade.id)).status == TradeStatus.PENDING_ACCEPTANCE

        trade = await accept(engine, trade)
        trade = await deliver(engine, trade)
        await engine.shipping.verify_satisfaction(trade.id, ALICE)
        trade = await engine.shipping.verify_satisfaction(trade.id, BOB)
        assert trade.status == TradeStatus.COMPLETED_AWAITING_RATING
        assert (await engine.ledger.get_user(BOB)).cash_balance == 12000
        await engine.ratings.submit_rating(trade.id, ALICE, SCORES)
        await engine.ratings.submit_rating(trade.id, BOB, SCORES)

        ticket = await engine.disputes.open_dispute(trade.id, BOB, "item-not-received", "The parcel never arrived")
        await engine.disputes.submit_evidence(ticket.id, [])
        await engine.disputes.submit_response(ticket.id, "Shipped on time, see receipt", ["receipt.pdf"])
        await engine.disputes.escalate(ticket.id)
        ticket = await engine.disputes.resolve(ticket.id, "full-refund", NOTES, "mod-1")

    assert ticket.status == DisputeStatus.RESOLVED
    assert (await engine.disputes.get_ticket(ticket.id)).status == DisputeStatus.RESOLVED
    assert (await engine.ledger.get_user(ALICE)).cash_balance == 10000

    assert sink.attempts > 0
    warnings = [r for r in caplog.records if r.name == "notifications" and r.levelno == logging.WARNING]
    assert len(warnings) == sink.attempts
    assert "push gateway unreachable" in warnings[0].getMessage()


@pytest.mark.asyncio
async def test_deferred_notifications_wait_for_commit():
    """Test that deferred notifications are sent on exit and dropped on error."""
    sink = MemoryNotificationSink()
    notifier = Notifier(sink)

    async with notifier.deferred():
        await notifier.notify(NotificationType.ESCROW_RELEASED, BOB, "trade-1")
        async with notifier.deferred():
            await notifier.notify(NotificationType.ESCROW_REFUNDED, ALICE, "trade-1")
        assert sink.notifications == []

    assert [n.event_type for n in sink.notifications] == [
        NotificationType.ESCROW_RELEASED,
        NotificationType.ESCROW_REFUNDED,
    ]

    with pytest.raises(RuntimeError):
        async with notifier.deferred():
            await notifier.notify(NotificationType.ESCROW_RELEASED, BOB, "trade-2")
            raise RuntimeError("rolled back")

    assert [n.trade_id for n in sink.notifications] == ["trade-1", "trade-1"]

    # Outside a deferred block delivery is immediate
    await notifier.notify(NotificationType.TRADE_PROPOSED, BOB, "trade-3")
    assert sink.notifications[-1].trade_id == "trade-3"
