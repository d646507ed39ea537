"""Trades module for proposing, answering and countering trades.

This module owns the start of a trade's lifecycle: creating proposals,
accepting, rejecting or cancelling them, superseding them with counter
offers, and the delivery transition driven by the shipping tracker. It
ensures offered items belong to the side offering them and are not already
committed to another open trade.
"""
import logging
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from database.locks import LockRegistry, trade_key, item_key
from core.exceptions import (
    ConflictError,
    InsufficientFundsError,
    InvalidStateError,
    ItemNotOwnedError,
    NotAuthorizedError,
    ValidationError,
)
from core.models import Trade, TradeStatus, TradeAction, utc_now
from notifications import Notifier, NotificationType
from .store import TradeStore

logger = logging.getLogger(__name__)

__all__ = ['TradeManager', 'TradeStore']


class TradeManager:
    """Manages trade proposals and the transitions that precede shipping."""

    def __init__(
        self,
        store: TradeStore,
        ledger,
        escrow,
        locks: LockRegistry,
        notifier: Notifier,
        clock: Callable[[], datetime] = utc_now
    ) -> None:
        """Initialize trade manager.

        Args:
            store: Trade persistence
            ledger: Ledger used to resolve users and items
            escrow: Escrow coordinator used to decide whether accepting needs payment
            locks: Shared per-aggregate lock registry
            notifier: Notification dispatcher
            clock: Source of the current time
        """
        self.store = store
        self.ledger = ledger
        self.escrow = escrow
        self.locks = locks
        self.notifier = notifier
        self.clock = clock

    async def propose(
        self,
        proposer_id: str,
        receiver_id: str,
        proposer_item_ids: Iterable[str],
        receiver_item_ids: Iterable[str],
        proposer_cash: int = 0,
        receiver_cash: int = 0
    ) -> Trade:
        """Create a new trade proposal.

        Cash is a declaration at this point; nothing is held until the
        payer funds escrow after acceptance.

        Raises:
            ValidationError: If the offer is malformed
            NotFoundError: If a user or item does not exist
            InsufficientFundsError: If the proposer cannot cover proposer_cash
            ItemNotOwnedError: If an item is not owned by the side offering it
            ConflictError: If an item is already part of another open trade
        """
        proposer_item_ids = list(proposer_item_ids)
        receiver_item_ids = list(receiver_item_ids)

        keys = [item_key(i) for i in proposer_item_ids + receiver_item_ids]
        async with self.locks.hold_many(*keys):
            trade = await self._build_trade(
                proposer_id,
                receiver_id,
                proposer_item_ids,
                receiver_item_ids,
                proposer_cash,
                receiver_cash
            )
            trade = await self.store.add(trade)

        logger.info(f"Trade {trade.id} proposed by {proposer_id} to {receiver_id}")
        await self.notifier.notify(NotificationType.TRADE_PROPOSED, receiver_id, trade.id)
        return trade

    async def respond(self, trade_id: str, user_id: str, action: str) -> Trade:
        """Accept, reject or cancel a pending trade.

        The receiver accepts or rejects; only the proposer may cancel.
        Accepting moves to payment_pending when cash has to change hands,
        otherwise straight to shipping_pending. Items never move here.

        Raises:
            ValidationError: If the action is unknown
            InvalidStateError: If the trade is not pending acceptance
            NotAuthorizedError: If the caller may not take this action
        """
        try:
            action = TradeAction(action)
        except ValueError:
            raise ValidationError(f"Unknown trade action: {action}")

        async with self.locks.hold(trade_key(trade_id)):
            trade = await self.store.get(trade_id)
            if trade.status != TradeStatus.PENDING_ACCEPTANCE:
                raise InvalidStateError(
                    f"Trade {trade_id} is not pending acceptance",
                    trade.status.value
                )

            if action == TradeAction.CANCEL:
                if user_id != trade.proposer_id:
                    raise NotAuthorizedError(f"Only the proposer can cancel trade {trade_id}")
                trade.status = TradeStatus.CANCELLED
                event = NotificationType.TRADE_CANCELLED
            else:
                if user_id != trade.receiver_id:
                    raise NotAuthorizedError(f"Only the receiver can {action.value} trade {trade_id}")
                if action == TradeAction.REJECT:
                    trade.status = TradeStatus.REJECTED
                    event = NotificationType.TRADE_REJECTED
                else:
                    differential = await self.escrow.differential_for(trade)
                    if trade.has_cash and differential.amount > 0:
                        trade.status = TradeStatus.PAYMENT_PENDING
                    else:
                        trade.status = TradeStatus.SHIPPING_PENDING
                    event = NotificationType.TRADE_ACCEPTED

            trade = await self.store.save(trade)

        logger.info(f"Trade {trade_id}: {action.value} by {user_id}, now {trade.status.value}")
        await self.notifier.notify(event, trade.other_party(user_id), trade.id)
        return trade

    async def counter_offer(
        self,
        original_trade_id: str,
        user_id: str,
        offered_item_ids: Iterable[str],
        requested_item_ids: Iterable[str],
        offered_cash: int = 0,
        requested_cash: int = 0
    ) -> Trade:
        """Answer a pending trade with new terms.

        The original receiver becomes the proposer of a new trade that points
        back at the original. The original is marked countered in the same
        transaction, which frees its items for the counter offer.

        Args:
            original_trade_id: Trade being countered
            user_id: Caller, who must be the original receiver
            offered_item_ids: Items the caller gives
            requested_item_ids: Items the caller asks for from the original proposer
            offered_cash: Cash the caller gives
            requested_cash: Cash the caller asks for

        Raises:
            InvalidStateError: If the original is not pending acceptance
            NotAuthorizedError: If the caller is not the original receiver
        """
        offered_item_ids = list(offered_item_ids)
        requested_item_ids = list(requested_item_ids)

        keys = [trade_key(original_trade_id)]
        keys += [item_key(i) for i in offered_item_ids + requested_item_ids]
        async with self.locks.hold_many(*keys):
            original = await self.store.get(original_trade_id)
            if original.status != TradeStatus.PENDING_ACCEPTANCE:
                raise InvalidStateError(
                    f"Trade {original_trade_id} is not pending acceptance",
                    original.status.value
                )
            if user_id != original.receiver_id:
                raise NotAuthorizedError(
                    f"Only the receiver can counter trade {original_trade_id}"
                )

            counter = await self._build_trade(
                user_id,
                original.proposer_id,
                offered_item_ids,
                requested_item_ids,
                offered_cash,
                requested_cash,
                ignore_trade_id=original.id
            )
            counter.parent_trade_id = original.id

            async with self.store.repository.transaction():
                counter = await self.store.add(counter)
                original.status = TradeStatus.COUNTERED
                await self.store.save(original)

        logger.info(f"Trade {original_trade_id} countered by {user_id} with trade {counter.id}")
        await self.notifier.notify(NotificationType.COUNTER_OFFER, original.proposer_id, counter.id)
        return counter

    async def mark_delivered(self, trade_id: str) -> Trade:
        """Move an in-transit trade to delivered_awaiting_verification.

        Raises:
            InvalidStateError: If the trade is not in transit
        """
        async with self.locks.hold(trade_key(trade_id)):
            trade = await self.store.get(trade_id)
            self.transition_to_delivered(trade)
            trade = await self.store.save(trade)

        await self.notifier.notify_parties(NotificationType.TRADE_DELIVERED, trade)
        return trade

    def transition_to_delivered(self, trade: Trade) -> None:
        """Apply the delivery transition to a trade whose lock the caller holds."""
        if trade.status != TradeStatus.IN_TRANSIT:
            raise InvalidStateError(
                f"Trade {trade.id} is not in transit",
                trade.status.value
            )
        trade.status = TradeStatus.DELIVERED_AWAITING_VERIFICATION
        logger.info(f"Trade {trade.id} delivered, awaiting verification")

    async def get_trade(self, trade_id: str) -> Trade:
        return await self.store.get(trade_id)

    async def list_trades_for_user(self, user_id: str, status: Optional[TradeStatus] = None) -> List[Trade]:
        trades = [
            t for t in await self.store.list()
            if user_id in (t.proposer_id, t.receiver_id)
            and (status is None or t.status == status)
        ]
        return sorted(trades, key=lambda t: t.created_at, reverse=True)

    async def _build_trade(
        self,
        proposer_id: str,
        receiver_id: str,
        proposer_item_ids: List[str],
        receiver_item_ids: List[str],
        proposer_cash: int,
        receiver_cash: int,
        ignore_trade_id: Optional[str] = None
    ) -> Trade:
        """Validate an offer and return the unsaved trade."""
        if proposer_id == receiver_id:
            raise ValidationError("A user cannot trade with themselves")
        if proposer_cash < 0 or receiver_cash < 0:
            raise ValidationError("Cash amounts must be non-negative")
        all_item_ids = proposer_item_ids + receiver_item_ids
        if len(set(all_item_ids)) != len(all_item_ids):
            raise ValidationError("An item can only appear once in a trade")
        if not all_item_ids and not proposer_cash and not receiver_cash:
            raise ValidationError("A trade must offer at least one item or some cash")

        proposer = await self.ledger.get_user(proposer_id)
        await self.ledger.get_user(receiver_id)

        if proposer.cash_balance < proposer_cash:
            raise InsufficientFundsError(proposer_id, proposer.cash_balance, proposer_cash)

        for owner_id, item_ids in ((proposer_id, proposer_item_ids), (receiver_id, receiver_item_ids)):
            for item_id in item_ids:
                item = await self.ledger.get_item(item_id)
                if item.owner_id != owner_id:
                    raise ItemNotOwnedError(item_id, owner_id)

        requested = set(all_item_ids)
        for other in await self.store.list():
            if other.id == ignore_trade_id or not other.is_open:
                continue
            overlap = requested.intersection(other.item_ids)
            if overlap:
                raise ConflictError(
                    f"Items {', '.join(sorted(overlap))} are already part of open trade {other.id}"
                )

        now = self.clock()
        return Trade(
            proposer_id=proposer_id,
            receiver_id=receiver_id,
            proposer_item_ids=proposer_item_ids,
            receiver_item_ids=receiver_item_ids,
            proposer_cash=proposer_cash,
            receiver_cash=receiver_cash,
            created_at=now,
            updated_at=now
        )
