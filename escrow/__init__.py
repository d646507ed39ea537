"""Escrow module for cash differentials, funding and settlement.

This module computes what cash a trade needs, takes the payer's funds into
escrow, and holds the one settlement routine that pays out escrow, moves
both item lists and scores reputation. Settlement is all-or-nothing and
happens at most once per trade.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from database.locks import LockRegistry, trade_key
from core.exceptions import (
    InvalidStateError,
    NotAuthorizedError,
    ValidationError,
)
from core.models import Trade, TradeStatus, CashDifferential, utc_now
from ledger import Ledger, EscrowHold, EscrowStatus
from notifications import Notifier, NotificationType
from reputation import ReputationScorer
from trades.store import TradeStore
from valuation import ValuationSnapshot

logger = logging.getLogger(__name__)

__all__ = ['EscrowCoordinator']


class EscrowCoordinator:
    """Tracks funding and release of a trade's cash differential."""

    def __init__(
        self,
        store: TradeStore,
        ledger: Ledger,
        valuation: ValuationSnapshot,
        scorer: ReputationScorer,
        locks: LockRegistry,
        notifier: Notifier,
        clock: Callable[[], datetime] = utc_now
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.valuation = valuation
        self.scorer = scorer
        self.locks = locks
        self.notifier = notifier
        self.clock = clock

    async def compute_cash_differential(self, trade_id: str) -> CashDifferential:
        """Compute who pays whom, and how much, for a trade.

        Raises:
            NotFoundError: If the trade or one of its items does not exist
        """
        trade = await self.store.get(trade_id)
        return await self.differential_for(trade)

    async def differential_for(self, trade: Trade) -> CashDifferential:
        """Compute the differential for an already loaded trade.

        Only a side that declared cash can be the payer. Without declared
        cash the value gap is reported for information and nobody pays.
        """
        proposer_total = await self.valuation.total_value(trade.proposer_item_ids) + trade.proposer_cash
        receiver_total = await self.valuation.total_value(trade.receiver_item_ids) + trade.receiver_cash

        if not trade.has_cash:
            amount = abs(proposer_total - receiver_total)
            return CashDifferential(
                amount=amount,
                description=(
                    "Balanced trade, no cash needed" if amount == 0
                    else f"Item values differ by {amount}, no cash declared"
                ),
                proposer_total=proposer_total,
                receiver_total=receiver_total
            )

        net = trade.proposer_cash - trade.receiver_cash
        if net == 0:
            return CashDifferential(
                amount=0,
                description="Declared cash cancels out, no cash needed",
                proposer_total=proposer_total,
                receiver_total=receiver_total
            )

        if net > 0:
            payer_id, payee_id, payer_role = trade.proposer_id, trade.receiver_id, "Proposer"
        else:
            payer_id, payee_id, payer_role = trade.receiver_id, trade.proposer_id, "Receiver"

        return CashDifferential(
            amount=abs(net),
            payer_id=payer_id,
            payee_id=payee_id,
            description=f"{payer_role} pays {abs(net)} into escrow",
            proposer_total=proposer_total,
            receiver_total=receiver_total
        )

    async def fund_escrow(self, trade_id: str, payer_id: str) -> Trade:
        """Take the payer's cash into escrow and mark the trade funded.

        Raises:
            InvalidStateError: If the trade is not awaiting payment
            NotAuthorizedError: If payer_id is not the computed payer
            InsufficientFundsError: If the payer's balance is too low
        """
        async with self.locks.hold(trade_key(trade_id)):
            trade = await self.store.get(trade_id)
            if trade.status != TradeStatus.PAYMENT_PENDING:
                raise InvalidStateError(
                    f"Trade {trade_id} is not awaiting payment",
                    trade.status.value
                )

            differential = await self.differential_for(trade)
            if differential.payer_id is None or differential.amount == 0:
                raise InvalidStateError(f"Trade {trade_id} has no cash differential to fund")
            if payer_id != differential.payer_id:
                raise NotAuthorizedError(f"User {payer_id} is not the payer for trade {trade_id}")

            async with self.ledger.transaction():
                await self.ledger.hold_in_escrow(
                    trade_id,
                    differential.amount,
                    differential.payer_id,
                    differential.payee_id
                )
                trade.status = TradeStatus.ESCROW_FUNDED
                trade = await self.store.save(trade)

        logger.info(f"Funded escrow for trade {trade_id}: {differential.amount} from {payer_id}")
        await self.notifier.notify_parties(NotificationType.ESCROW_FUNDED, trade)
        return trade

    async def release_escrow(self, trade: Trade, refund_amount: Optional[int] = None) -> Optional[EscrowHold]:
        """Settle a trade: pay out escrow, swap items, score reputation.

        The caller must hold the trade's lock and persist the trade
        afterwards; ``trade.settled_at`` is set here. With a refund_amount,
        that much of the hold goes back to the payer and the rest to the
        payee. A trade that is already settled is left untouched.

        Returns:
            The final escrow hold, or None when the trade had no escrow

        Raises:
            ValidationError: If refund_amount is given without a funded hold
            InvalidStateError: If an item changed owner since the proposal
        """
        if trade.settled_at is not None:
            logger.debug(f"Trade {trade.id} already settled at {trade.settled_at}")
            return await self.ledger.get_escrow_hold(trade.id)

        differential = await self.differential_for(trade)

        async with self.ledger.transaction():
            hold = await self.ledger.get_escrow_hold(trade.id)
            funded = hold is not None and hold.status == EscrowStatus.FUNDED

            if refund_amount is not None:
                if not funded:
                    raise ValidationError(f"Trade {trade.id} has no funded escrow to refund from")
                if refund_amount <= 0 or refund_amount > hold.remaining:
                    raise ValidationError(
                        f"Refund amount must be between 1 and {hold.remaining}, got {refund_amount}"
                    )
                hold = await self.ledger.release_from_escrow(trade.id, hold.payer_id, refund_amount)

            if funded and hold.remaining:
                hold = await self.ledger.release_from_escrow(trade.id, hold.payee_id)

            await self._move_items(trade, trade.proposer_item_ids, trade.proposer_id, trade.receiver_id)
            await self._move_items(trade, trade.receiver_item_ids, trade.receiver_id, trade.proposer_id)

            await self.scorer.apply(trade, differential.proposer_total, differential.receiver_total)
            trade.settled_at = self.clock()

        logger.info(f"Settled trade {trade.id}")
        if funded:
            await self.notifier.notify(NotificationType.ESCROW_RELEASED, hold.payee_id, trade.id)
            if refund_amount:
                await self.notifier.notify(NotificationType.ESCROW_REFUNDED, hold.payer_id, trade.id)
        return hold

    async def refund_escrow(self, trade: Trade) -> Optional[EscrowHold]:
        """Return everything still held to the payer without moving items.

        The caller must hold the trade's lock and persist the trade. The
        trade is marked settled so it can never be paid out afterwards.
        """
        if trade.settled_at is not None:
            raise InvalidStateError(f"Trade {trade.id} is already settled")

        async with self.ledger.transaction():
            hold = await self.ledger.get_escrow_hold(trade.id)
            if hold is not None and hold.status == EscrowStatus.FUNDED:
                hold = await self.ledger.release_from_escrow(trade.id, hold.payer_id)
            trade.settled_at = self.clock()

        if hold is not None:
            logger.info(f"Refunded escrow for trade {trade.id} to {hold.payer_id}")
            await self.notifier.notify(NotificationType.ESCROW_REFUNDED, hold.payer_id, trade.id)
        return hold

    async def reverse_settlement(self, trade: Trade) -> None:
        """Undo a completed settlement: items and released cash go back.

        The caller must hold the trade's lock and persist the trade.

        Raises:
            InvalidStateError: If the trade was never settled
            InsufficientFundsError: If the payee no longer has the released cash
        """
        if trade.settled_at is None:
            raise InvalidStateError(f"Trade {trade.id} has not been settled")

        async with self.ledger.transaction():
            await self._move_items(trade, trade.proposer_item_ids, trade.receiver_id, trade.proposer_id)
            await self._move_items(trade, trade.receiver_item_ids, trade.proposer_id, trade.receiver_id)
            hold = await self.ledger.get_escrow_hold(trade.id)
            if hold is not None and hold.released_amount:
                await self.claw_back(trade)

        logger.info(f"Reversed settlement of trade {trade.id}")

    async def claw_back(self, trade: Trade, amount: Optional[int] = None) -> Optional[EscrowHold]:
        """Move cash already released to the payee back to the payer.

        Used when a dispute on a settled trade awards money back. Items are
        not touched. The caller must hold the trade's lock. Without an
        amount, a trade that released no cash is left as it is.

        Raises:
            ValidationError: If amount is given but exceeds what was released
            InsufficientFundsError: If the payee no longer has the cash
        """
        hold = await self.ledger.get_escrow_hold(trade.id)
        if hold is None or not hold.released_amount:
            if amount is not None:
                raise ValidationError(f"Trade {trade.id} has no released escrow to refund")
            logger.debug(f"Trade {trade.id} released no cash, nothing to return")
            return hold

        hold = await self.ledger.return_released(trade.id, amount)
        await self.notifier.notify(NotificationType.ESCROW_REFUNDED, hold.payer_id, trade.id)
        return hold

    async def get_escrow_status(self, trade_id: str) -> Dict[str, Any]:
        trade = await self.store.get(trade_id)
        hold = await self.ledger.get_escrow_hold(trade_id)
        return {
            'trade_id': trade_id,
            'has_escrow': hold is not None,
            'escrow_hold': hold,
            'cash_differential': await self.differential_for(trade),
        }

    async def _move_items(self, trade: Trade, item_ids, from_user_id: str, to_user_id: str) -> None:
        for item_id in item_ids:
            item = await self.ledger.get_item(item_id)
            if item.owner_id != from_user_id:
                raise InvalidStateError(
                    f"Item {item_id} in trade {trade.id} is owned by {item.owner_id}, expected {from_user_id}"
                )
            await self.ledger.transfer_item_ownership(item_id, to_user_id)
