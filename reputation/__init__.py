"""Reputation scoring for settled trades.

A trade's two offer totals (item values plus declared cash) decide how each
party's valuation reputation moves, and the difference between them is
booked into each party's net trade surplus. The overvaluation penalty only
ever applies to the proposer.
"""
import logging

from pydantic import BaseModel

from core.models import Trade

logger = logging.getLogger(__name__)

DEFAULT_OVERVALUATION_RATIO_PERCENT = 120
DEFAULT_OVERVALUATION_PENALTY = 10
DEFAULT_FAIR_TRADE_BONUS = 1


class ReputationDelta(BaseModel):
    proposer_reputation: int
    receiver_reputation: int
    proposer_surplus: int
    receiver_surplus: int
    overvalued: bool


class ReputationScorer:
    """Derives and applies reputation and surplus changes."""

    def __init__(
        self,
        ledger,
        overvaluation_ratio_percent: int = DEFAULT_OVERVALUATION_RATIO_PERCENT,
        overvaluation_penalty: int = DEFAULT_OVERVALUATION_PENALTY,
        fair_trade_bonus: int = DEFAULT_FAIR_TRADE_BONUS
    ) -> None:
        """Initialize scorer.

        Args:
            ledger: Ledger used to write the user changes
            overvaluation_ratio_percent: Proposer total above this share of the
                receiver total counts as overvalued (120 means 1.2x)
            overvaluation_penalty: Reputation taken from an overvaluing proposer
            fair_trade_bonus: Reputation given to each party otherwise, and to
                the receiver of an overvalued offer
        """
        self.ledger = ledger
        self.overvaluation_ratio_percent = overvaluation_ratio_percent
        self.overvaluation_penalty = overvaluation_penalty
        self.fair_trade_bonus = fair_trade_bonus

    def score(self, proposer_total: int, receiver_total: int) -> ReputationDelta:
        # Integer comparison of proposer_total > receiver_total * ratio
        overvalued = proposer_total * 100 > receiver_total * self.overvaluation_ratio_percent

        return ReputationDelta(
            proposer_reputation=-self.overvaluation_penalty if overvalued else self.fair_trade_bonus,
            receiver_reputation=self.fair_trade_bonus,
            proposer_surplus=receiver_total - proposer_total,
            receiver_surplus=proposer_total - receiver_total,
            overvalued=overvalued
        )

    async def apply(self, trade: Trade, proposer_total: int, receiver_total: int) -> ReputationDelta:
        """Score a trade and write the result to both parties.

        Runs inside the settlement transaction, which guarantees it happens
        once per trade.
        """
        delta = self.score(proposer_total, receiver_total)
        async with self.ledger.transaction():
            await self.ledger.adjust_reputation(
                trade.proposer_id, delta.proposer_reputation, delta.proposer_surplus
            )
            await self.ledger.adjust_reputation(
                trade.receiver_id, delta.receiver_reputation, delta.receiver_surplus
            )

        if delta.overvalued:
            logger.info(
                f"Trade {trade.id}: proposer {trade.proposer_id} overvalued offer "
                f"({proposer_total} vs {receiver_total}), reputation {delta.proposer_reputation}"
            )
        else:
            logger.debug(f"Trade {trade.id}: fair trade, both parties +{self.fair_trade_bonus}")
        return delta
