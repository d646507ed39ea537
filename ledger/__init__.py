"""Ledger module for cash balances, escrow holds and item ownership.

This is the only code that writes user balances and item owners. Each
operation is atomic on its own; callers that need several operations to
commit together (a status change plus a hold, or a full settlement) wrap
them in ``Ledger.transaction()``.
"""
import logging
from datetime import datetime
from typing import Callable, List, Optional

from database import (
    Repository,
    USERS,
    ITEMS,
    ESCROW_HOLDS,
    ESCROW_ENTRIES,
)
from core.exceptions import NotFoundError, InsufficientFundsError, InvalidStateError, ValidationError
from core.models import User, Item, utc_now
from .models import EscrowHold, EscrowEntry, EscrowStatus, EscrowEntryType

logger = logging.getLogger(__name__)

__all__ = ['Ledger', 'EscrowHold', 'EscrowEntry', 'EscrowStatus', 'EscrowEntryType']


class Ledger:
    """Moves cash between balances and escrow, and reassigns item ownership."""

    def __init__(self, repository: Repository, clock: Callable[[], datetime] = utc_now) -> None:
        self.repository = repository
        self.clock = clock

    def transaction(self):
        """Group ledger operations (and any other repository writes) atomically."""
        return self.repository.transaction()

    async def register_user(self, user: User) -> User:
        return await self.repository.add(USERS, user.id, user)

    async def register_item(self, item: Item) -> Item:
        return await self.repository.add(ITEMS, item.id, item)

    async def get_user(self, user_id: str) -> User:
        user = await self.repository.get(USERS, user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        return user

    async def get_item(self, item_id: str) -> Item:
        item = await self.repository.get(ITEMS, item_id)
        if item is None:
            raise NotFoundError("Item", item_id)
        return item

    async def debit(self, user_id: str, amount: int) -> User:
        """Remove cash from a user's balance.

        Raises:
            NotFoundError: If the user does not exist
            InsufficientFundsError: If the balance is below amount
        """
        _check_amount(amount)
        async with self.transaction():
            user = await self.get_user(user_id)
            if user.cash_balance < amount:
                raise InsufficientFundsError(user_id, user.cash_balance, amount)
            user.cash_balance -= amount
            return await self.repository.compare_and_swap(USERS, user_id, user)

    async def credit(self, user_id: str, amount: int) -> User:
        """Add cash to a user's balance."""
        _check_amount(amount)
        async with self.transaction():
            user = await self.get_user(user_id)
            user.cash_balance += amount
            return await self.repository.compare_and_swap(USERS, user_id, user)

    async def hold_in_escrow(
        self,
        trade_id: str,
        amount: int,
        from_user_id: str,
        to_user_id: str
    ) -> EscrowHold:
        """Debit the payer and hold the amount under the trade.

        Raises:
            InvalidStateError: If the trade already has an escrow hold
            InsufficientFundsError: If the payer's balance is below amount
        """
        async with self.transaction():
            if await self.repository.get(ESCROW_HOLDS, trade_id) is not None:
                raise InvalidStateError(f"Trade {trade_id} already has an escrow hold")

            await self.debit(from_user_id, amount)
            now = self.clock()
            hold = await self.repository.add(ESCROW_HOLDS, trade_id, EscrowHold(
                trade_id=trade_id,
                payer_id=from_user_id,
                payee_id=to_user_id,
                amount=amount,
                created_at=now,
                updated_at=now
            ))
            await self._record_entry(trade_id, from_user_id, amount, EscrowEntryType.HOLD)

        logger.info(f"Held {amount} in escrow for trade {trade_id} from {from_user_id}")
        return hold

    async def release_from_escrow(
        self,
        trade_id: str,
        to_user_id: str,
        amount: Optional[int] = None
    ) -> EscrowHold:
        """Credit held funds to one of the hold's parties.

        Releasing to the payer is a refund. Without an amount, everything
        still held is released.

        Raises:
            NotFoundError: If the trade has no escrow hold
            InvalidStateError: If the hold is already fully paid out
            InsufficientFundsError: If amount exceeds what is still held
        """
        async with self.transaction():
            hold = await self.get_escrow_hold(trade_id)
            if hold is None:
                raise NotFoundError("Escrow hold", trade_id)
            if to_user_id not in (hold.payer_id, hold.payee_id):
                raise ValidationError(f"{to_user_id} is not a party to the escrow for trade {trade_id}")
            if hold.status != EscrowStatus.FUNDED:
                raise InvalidStateError(
                    f"Escrow for trade {trade_id} is not funded",
                    hold.status.value
                )

            amount = hold.remaining if amount is None else amount
            if amount > hold.remaining:
                raise InsufficientFundsError(f"escrow:{trade_id}", hold.remaining, amount)

            is_refund = to_user_id == hold.payer_id
            if amount:
                await self.credit(to_user_id, amount)
                await self._record_entry(
                    trade_id,
                    to_user_id,
                    amount,
                    EscrowEntryType.REFUND if is_refund else EscrowEntryType.RELEASE
                )

            if is_refund:
                hold.refunded_amount += amount
            else:
                hold.released_amount += amount

            if hold.remaining == 0:
                if not hold.refunded_amount:
                    hold.status = EscrowStatus.RELEASED
                elif not hold.released_amount:
                    hold.status = EscrowStatus.REFUNDED
                else:
                    hold.status = EscrowStatus.PARTIALLY_REFUNDED
            hold.updated_at = self.clock()
            hold = await self.repository.compare_and_swap(ESCROW_HOLDS, trade_id, hold)

        logger.info(
            f"{'Refunded' if is_refund else 'Released'} {amount} from escrow "
            f"for trade {trade_id} to {to_user_id}"
        )
        return hold

    async def return_released(self, trade_id: str, amount: Optional[int] = None) -> EscrowHold:
        """Move cash already released to the payee back to the payer.

        Without an amount, everything released is returned.

        Raises:
            NotFoundError: If the trade has no escrow hold
            ValidationError: If amount is not between 1 and the released amount
            InsufficientFundsError: If the payee's balance is below amount
        """
        async with self.transaction():
            hold = await self.get_escrow_hold(trade_id)
            if hold is None:
                raise NotFoundError("Escrow hold", trade_id)
            amount = hold.released_amount if amount is None else amount
            if amount <= 0 or amount > hold.released_amount:
                raise ValidationError(
                    f"Refund amount must be between 1 and {hold.released_amount}, got {amount}"
                )

            await self.debit(hold.payee_id, amount)
            await self.credit(hold.payer_id, amount)
            await self._record_entry(trade_id, hold.payer_id, amount, EscrowEntryType.REFUND)

            hold.released_amount -= amount
            hold.refunded_amount += amount
            hold.status = EscrowStatus.REFUNDED if not hold.released_amount else EscrowStatus.PARTIALLY_REFUNDED
            hold.updated_at = self.clock()
            hold = await self.repository.compare_and_swap(ESCROW_HOLDS, trade_id, hold)

        logger.info(f"Returned {amount} of released escrow for trade {trade_id} to {hold.payer_id}")
        return hold

    async def transfer_item_ownership(self, item_id: str, to_user_id: str) -> Item:
        """Reassign an item to a new owner."""
        async with self.transaction():
            await self.get_user(to_user_id)
            item = await self.get_item(item_id)
            previous_owner = item.owner_id
            item.owner_id = to_user_id
            item = await self.repository.compare_and_swap(ITEMS, item_id, item)

        logger.debug(f"Transferred item {item_id} from {previous_owner} to {to_user_id}")
        return item

    async def adjust_reputation(self, user_id: str, reputation_delta: int, surplus_delta: int) -> User:
        """Apply reputation and net trade surplus changes to a user."""
        async with self.transaction():
            user = await self.get_user(user_id)
            user.valuation_reputation_score += reputation_delta
            user.net_trade_surplus += surplus_delta
            return await self.repository.compare_and_swap(USERS, user_id, user)

    async def get_escrow_hold(self, trade_id: str) -> Optional[EscrowHold]:
        return await self.repository.get(ESCROW_HOLDS, trade_id)

    async def get_escrow_entries(self, trade_id: str) -> List[EscrowEntry]:
        entries = [e for e in await self.repository.list(ESCROW_ENTRIES) if e.trade_id == trade_id]
        return sorted(entries, key=lambda e: e.created_at)

    async def total_cash(self) -> int:
        """Sum of every balance plus everything still held in escrow."""
        balances = sum(u.cash_balance for u in await self.repository.list(USERS))
        held = sum(h.remaining for h in await self.repository.list(ESCROW_HOLDS))
        return balances + held

    async def _record_entry(self, trade_id: str, user_id: str, amount: int, entry_type: EscrowEntryType) -> None:
        entry = EscrowEntry(
            trade_id=trade_id,
            user_id=user_id,
            amount=amount,
            entry_type=entry_type,
            created_at=self.clock()
        )
        await self.repository.add(ESCROW_ENTRIES, entry.id, entry)


def _check_amount(amount: int) -> None:
    if amount < 0:
        raise ValidationError(f"Amount must be non-negative, got {amount}")
