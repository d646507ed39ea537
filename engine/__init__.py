"""Engine module wiring every component to one repository.

Managers are built bottom-up: the ledger and valuation snapshot sit on the
repository, escrow settles through the ledger and the reputation scorer,
and the trade, shipping, dispute and rating managers drive escrow. All of
them share a single lock registry so per-aggregate locks mean the same
thing everywhere.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import database
from database import (
    Repository,
    USERS,
    ITEMS,
    TRADES,
    DISPUTES,
    RATINGS,
    ESCROW_HOLDS,
    ESCROW_ENTRIES,
)
from database.locks import LockRegistry
from core.models import User, Item, Trade, utc_now
from disputes import DisputeManager
from disputes.models import DisputeTicket
from escrow import EscrowCoordinator
from ledger import Ledger
from ledger.models import EscrowHold, EscrowEntry
from notifications import Notifier, NotificationSink
from ratings import RatingManager
from ratings.models import TradeRating
from reputation import ReputationScorer
from shipping import ShippingTracker
from trades import TradeManager, TradeStore
from valuation import ValuationSnapshot

logger = logging.getLogger(__name__)

# Model class for each aggregate kind, used to decode stored rows
MODELS = {
    USERS: User,
    ITEMS: Item,
    TRADES: Trade,
    DISPUTES: DisputeTicket,
    RATINGS: TradeRating,
    ESCROW_HOLDS: EscrowHold,
    ESCROW_ENTRIES: EscrowEntry,
}


class TradeEngine:
    """Holds the wired components of one engine instance."""

    def __init__(
        self,
        repository: Repository,
        settings: Optional[Dict[str, Any]] = None,
        sink: Optional[NotificationSink] = None,
        clock: Callable[[], datetime] = utc_now
    ) -> None:
        """Wire the engine.

        Args:
            repository: Initialized repository
            settings: Validated settings; defaults to the loaded settings.conf
            sink: Where notifications go; defaults to the log
            clock: Source of the current time for every component
        """
        if settings is None:
            from config import settings_conf
            settings = settings_conf

        self.repository = repository
        self.settings = settings
        self.clock = clock
        rating_window = timedelta(days=settings['rating_window_days'])

        self.locks = LockRegistry()
        self.notifier = Notifier(sink, clock)
        self.ledger = Ledger(repository, clock)
        self.valuation = ValuationSnapshot(repository)
        self.scorer = ReputationScorer(
            self.ledger,
            overvaluation_ratio_percent=settings['overvaluation_ratio_percent'],
            overvaluation_penalty=settings['overvaluation_penalty'],
            fair_trade_bonus=settings['fair_trade_bonus']
        )
        self.store = TradeStore(repository, clock)
        self.escrow = EscrowCoordinator(
            self.store, self.ledger, self.valuation, self.scorer,
            self.locks, self.notifier, clock
        )
        self.trades = TradeManager(
            self.store, self.ledger, self.escrow, self.locks, self.notifier, clock
        )
        self.shipping = ShippingTracker(
            self.store, self.trades, self.escrow, self.locks, self.notifier, clock,
            rating_window=rating_window
        )
        self.disputes = DisputeManager(
            repository, self.store, self.escrow, self.locks, self.notifier, clock,
            evidence_deadline=timedelta(hours=settings['evidence_deadline_hours']),
            response_deadline=timedelta(hours=settings['response_deadline_hours']),
            mediation_deadline=timedelta(days=settings['mediation_deadline_days']),
            rating_window=rating_window,
            min_notes_length=settings['min_moderator_notes_length'],
            moderator_ids=settings['moderator_ids']
        )
        self.ratings = RatingManager(
            repository, self.store, self.locks, self.notifier, clock
        )

    async def close(self) -> None:
        await self.repository.close()


async def create_engine(
    settings: Optional[Dict[str, Any]] = None,
    sink: Optional[NotificationSink] = None,
    clock: Callable[[], datetime] = utc_now
) -> TradeEngine:
    """Initialize the configured repository and wire an engine on top of it."""
    if settings is None:
        from config import settings_conf
        settings = settings_conf

    repository = await database.init_db(
        MODELS,
        backend=settings['storage_backend'],
        db_url=settings.get('db_url')
    )
    engine = TradeEngine(repository, settings, sink, clock)
    logger.info(f"Trade engine ready on {settings['storage_backend']} storage")
    return engine


__all__ = ['TradeEngine', 'create_engine', 'MODELS']
