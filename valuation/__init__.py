"""Read-only lookup of items' current estimated market value."""
import logging
from typing import Iterable

from database import Repository, ITEMS
from core.exceptions import NotFoundError

logger = logging.getLogger(__name__)


class ValuationSnapshot:
    """Reads estimated values from the item store. Never writes."""

    def __init__(self, repository: Repository) -> None:
        self.repository = repository

    async def get_estimated_value(self, item_id: str) -> int:
        """Get an item's estimated market value in minor units.

        Raises:
            NotFoundError: If the item does not exist
        """
        item = await self.repository.get(ITEMS, item_id)
        if item is None:
            raise NotFoundError("Item", item_id)
        return item.estimated_market_value

    async def total_value(self, item_ids: Iterable[str]) -> int:
        total = 0
        for item_id in item_ids:
            total += await self.get_estimated_value(item_id)
        return total
