"""Tests for reputation scoring."""

import pytest

from flows import ALICE, BOB, accept, complete
from reputation import ReputationScorer


def test_score_fair_trade():
    """Test that a balanced trade rewards both parties."""
    scorer = ReputationScorer(ledger=None)

    delta = scorer.score(12000, 12000)

    assert not delta.overvalued
    assert delta.proposer_reputation == 1
    assert delta.receiver_reputation == 1
    assert delta.proposer_surplus == 0


def test_score_boundary_is_not_overvalued():
    """Test that exactly 1.2x the receiver total is still fair."""
    scorer = ReputationScorer(ledger=None)

    assert not scorer.score(12000, 10000).overvalued
    assert scorer.score(12001, 10000).overvalued


def test_score_overvalued_offer():
    """Test the penalty for a proposer who overvalues their side."""
    scorer = ReputationScorer(ledger=None)

    delta = scorer.score(50000, 20000)

    assert delta.overvalued
    assert delta.proposer_reputation == -10
    assert delta.receiver_reputation == 1
    assert delta.proposer_surplus == -30000
    assert delta.receiver_surplus == 30000


def test_score_uses_configured_constants():
    """Test custom ratio, penalty and bonus."""
    scorer = ReputationScorer(
        ledger=None,
        overvaluation_ratio_percent=150,
        overvaluation_penalty=5,
        fair_trade_bonus=2
    )

    assert scorer.score(14000, 10000).proposer_reputation == 2
    assert scorer.score(16000, 10000).proposer_reputation == -5


@pytest.mark.asyncio
async def test_overvalued_trade_penalizes_proposer(engine, items):
    """Test reputation after settling a 50000 for 20000 trade."""
    trade = await engine.trades.propose(ALICE, BOB, ["alice-camera"], ["bob-lens"])
    trade = await accept(engine, trade)

    await complete(engine, trade)

    alice = await engine.ledger.get_user(ALICE)
    bob = await engine.ledger.get_user(BOB)
    assert alice.valuation_reputation_score == 90
    assert bob.valuation_reputation_score == 101
    assert alice.net_trade_surplus == -30000
    assert bob.net_trade_surplus == 30000


@pytest.mark.asyncio
async def test_fair_trade_rewards_both(engine, items):
    """Test reputation after settling a fair trade."""
    trade = await engine.trades.propose(ALICE, BOB, ["alice-watch"], ["bob-guitar"])
    trade = await accept(engine, trade)

    await complete(engine, trade)

    alice = await engine.ledger.get_user(ALICE)
    bob = await engine.ledger.get_user(BOB)
    assert alice.valuation_reputation_score == 101
    assert bob.valuation_reputation_score == 101
    assert alice.net_trade_surplus == 4500
    assert bob.net_trade_surplus == -4500
