"""Trade persistence helpers shared by every manager that changes a trade."""
from datetime import datetime
from typing import Callable, List

from database import Repository, TRADES
from core.exceptions import NotFoundError
from core.models import Trade, utc_now


class TradeStore:
    """Loads trades by id and writes them back with compare-and-swap."""

    def __init__(self, repository: Repository, clock: Callable[[], datetime] = utc_now) -> None:
        self.repository = repository
        self.clock = clock

    async def get(self, trade_id: str) -> Trade:
        trade = await self.repository.get(TRADES, trade_id)
        if trade is None:
            raise NotFoundError("Trade", trade_id)
        return trade

    async def add(self, trade: Trade) -> Trade:
        return await self.repository.add(TRADES, trade.id, trade)

    async def save(self, trade: Trade) -> Trade:
        trade.touch(self.clock())
        return await self.repository.compare_and_swap(TRADES, trade.id, trade)

    async def list(self) -> List[Trade]:
        return await self.repository.list(TRADES)

    async def find_by_tracking_number(self, tracking_number: str) -> List[Trade]:
        return [
            t for t in await self.list()
            if tracking_number in (t.proposer_tracking_number, t.receiver_tracking_number)
        ]
