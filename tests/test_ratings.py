"""Tests for blind double ratings."""

import asyncio
from datetime import timedelta

import pytest

from core.exceptions import ConflictError, InvalidStateError, NotAuthorizedError, ValidationError
from core.models import TradeStatus
from flows import ALICE, BOB, CAROL, SCORES, accept, complete
from notifications import NotificationType


async def completed_trade(engine):
    trade = await engine.trades.propose(ALICE, BOB, ["alice-watch"], ["bob-guitar"])
    trade = await accept(engine, trade)
    return await complete(engine, trade)


@pytest.mark.asyncio
async def test_both_ratings_reveal_together(engine, items, sink):
    """Test that the second rating reveals both and completes the trade."""
    trade = await completed_trade(engine)

    first = await engine.ratings.submit_rating(trade.id, ALICE, SCORES, public_comment="Great trader")
    assert not first.is_revealed
    assert first.ratee_id == BOB
    trade = await engine.trades.get_trade(trade.id)
    assert trade.status == TradeStatus.COMPLETED_AWAITING_RATING
    assert trade.proposer_rated and not trade.receiver_rated

    # Hidden from everyone but its author
    assert await engine.ratings.get_ratings_for_trade(trade.id, BOB) == []
    assert len(await engine.ratings.get_ratings_for_trade(trade.id, ALICE)) == 1

    second = await engine.ratings.submit_rating(trade.id, BOB, SCORES)
    assert second.is_revealed
    trade = await engine.trades.get_trade(trade.id)
    assert trade.status == TradeStatus.COMPLETED

    ratings = await engine.ratings.get_ratings_for_trade(trade.id)
    assert len(ratings) == 2
    assert all(r.is_revealed for r in ratings)
    assert NotificationType.RATINGS_REVEALED in [n.event_type for n in sink.for_user(ALICE)]


@pytest.mark.asyncio
async def test_submit_rating_errors(engine, items):
    """Test rating before completion, by outsiders, out of range and twice."""
    trade = await engine.trades.propose(ALICE, BOB, ["alice-watch"], [])
    with pytest.raises(InvalidStateError):
        await engine.ratings.submit_rating(trade.id, ALICE, SCORES)

    trade = await accept(engine, trade)
    trade = await complete(engine, trade)

    with pytest.raises(NotAuthorizedError):
        await engine.ratings.submit_rating(trade.id, CAROL, SCORES)
    with pytest.raises(ValidationError):
        await engine.ratings.submit_rating(trade.id, ALICE, {**SCORES, 'overall_score': 6})
    with pytest.raises(ValidationError):
        await engine.ratings.submit_rating(trade.id, ALICE, {**SCORES, 'communication_score': 0})
    with pytest.raises(ValidationError):
        await engine.ratings.submit_rating(trade.id, ALICE, {'overall_score': 5})

    await engine.ratings.submit_rating(trade.id, ALICE, SCORES)
    with pytest.raises(ConflictError):
        await engine.ratings.submit_rating(trade.id, ALICE, SCORES)


@pytest.mark.asyncio
async def test_rating_after_deadline_rejected(engine, items, clock):
    """Test that the window closes at the rating deadline."""
    trade = await completed_trade(engine)

    clock.advance(days=7)

    with pytest.raises(InvalidStateError):
        await engine.ratings.submit_rating(trade.id, ALICE, SCORES)


@pytest.mark.asyncio
async def test_expiry_reveals_lone_rating(engine, items, clock):
    """Test that a single rating is revealed once the window closes."""
    trade = await completed_trade(engine)
    await engine.ratings.submit_rating(trade.id, BOB, SCORES, private_feedback="Slow to reply")

    clock.advance(days=6)
    assert await engine.ratings.run_expiry_job() == 0

    clock.advance(days=1, seconds=1)
    assert await engine.ratings.run_expiry_job() == 1
    assert await engine.ratings.run_expiry_job() == 0

    trade = await engine.trades.get_trade(trade.id)
    assert trade.status == TradeStatus.COMPLETED
    ratings = await engine.ratings.get_ratings_for_trade(trade.id, ALICE)
    assert len(ratings) == 1
    assert ratings[0].is_revealed
    assert ratings[0].private_feedback is None

    # Alice's window is closed for good
    with pytest.raises(InvalidStateError):
        await engine.ratings.submit_rating(trade.id, ALICE, SCORES)


@pytest.mark.asyncio
async def test_expiry_completes_unrated_trade(engine, items, clock):
    """Test that a trade nobody rated still completes after the window."""
    trade = await completed_trade(engine)

    clock.advance(days=8)
    assert await engine.ratings.run_expiry_job() == 0

    trade = await engine.trades.get_trade(trade.id)
    assert trade.status == TradeStatus.COMPLETED


@pytest.mark.asyncio
async def test_rating_and_expiry_race(engine, items, clock):
    """Test that a rating racing the expiry job is revealed exactly once."""
    trade = await completed_trade(engine)
    await engine.ratings.submit_rating(trade.id, ALICE, SCORES)
    clock.advance(days=7, seconds=-1)

    results = await asyncio.gather(
        engine.ratings.submit_rating(trade.id, BOB, SCORES),
        engine.ratings.run_expiry_job(),
        return_exceptions=True
    )

    assert not any(isinstance(r, Exception) for r in results)
    ratings = await engine.ratings.get_ratings_for_trade(trade.id)
    assert len(ratings) == 2
    assert all(r.is_revealed for r in ratings)
    assert len({r.revealed_at for r in ratings}) == 1


@pytest.mark.asyncio
async def test_private_feedback_visibility(engine, items):
    """Test that private feedback is only shown to its author."""
    trade = await completed_trade(engine)
    await engine.ratings.submit_rating(trade.id, ALICE, SCORES, private_feedback="Packaging was poor")
    await engine.ratings.submit_rating(trade.id, BOB, SCORES)

    as_alice = {r.rater_id: r for r in await engine.ratings.get_ratings_for_trade(trade.id, ALICE)}
    as_bob = {r.rater_id: r for r in await engine.ratings.get_ratings_for_trade(trade.id, BOB)}

    assert as_alice[ALICE].private_feedback == "Packaging was poor"
    assert as_bob[ALICE].private_feedback is None

    received = await engine.ratings.get_ratings_for_user(BOB)
    assert [r.rater_id for r in received] == [ALICE]
    assert received[0].private_feedback is None


@pytest.mark.asyncio
async def test_new_round_after_dispute(engine, items, clock):
    """Test that a resolved dispute lets both parties rate again."""
    trade = await completed_trade(engine)
    await engine.ratings.submit_rating(trade.id, ALICE, SCORES)
    await engine.ratings.submit_rating(trade.id, BOB, SCORES)

    ticket = await engine.disputes.open_dispute(trade.id, BOB, "shipping-damage", "Dented body")
    await engine.disputes.submit_evidence(ticket.id, ["dent.jpg"])
    await engine.disputes.submit_response(ticket.id, "Packed it carefully", [])
    await engine.disputes.escalate(ticket.id)
    await engine.disputes.resolve(ticket.id, "trade-upheld", "Damage happened in transit", "mod-1")

    trade = await engine.trades.get_trade(trade.id)
    assert trade.rating_round == 1
    assert trade.rating_deadline == clock.now + timedelta(days=7)

    rating = await engine.ratings.submit_rating(trade.id, BOB, {**SCORES, 'overall_score': 2})
    assert rating.round == 1
    assert not rating.is_revealed

    await engine.ratings.submit_rating(trade.id, ALICE, SCORES)
    ratings = await engine.ratings.get_ratings_for_trade(trade.id)
    assert len(ratings) == 4
    assert [r.round for r in ratings] == [0, 0, 1, 1]
    # A resolved trade stays resolved after the second round
    trade = await engine.trades.get_trade(trade.id)
    assert trade.status == TradeStatus.DISPUTE_RESOLVED
