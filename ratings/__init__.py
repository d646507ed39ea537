"""Ratings module for blind double ratings.

Each party rates the other once per rating round. Ratings stay hidden until
both parties have rated, or until the rating deadline passes, at which point
the one rating that exists is revealed on its own. Both paths go through
the same reveal decision under the trade's lock, so a rating submitted at
the deadline and the expiry job can never both reveal.
"""
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Union

import pydantic

from database import Repository, RATINGS
from database.locks import LockRegistry, trade_key
from core.exceptions import (
    ConflictError,
    InvalidStateError,
    NotAuthorizedError,
    ValidationError,
)
from core.models import Trade, TradeStatus, PartyRole, utc_now
from notifications import Notifier, NotificationType
from trades.store import TradeStore
from .models import TradeRating, RatingScores, MIN_SCORE, MAX_SCORE

logger = logging.getLogger(__name__)

__all__ = ['RatingManager', 'TradeRating', 'RatingScores']


class RatingManager:
    """Accepts ratings and decides when they become visible."""

    def __init__(
        self,
        repository: Repository,
        store: TradeStore,
        locks: LockRegistry,
        notifier: Notifier,
        clock: Callable[[], datetime] = utc_now
    ) -> None:
        self.repository = repository
        self.store = store
        self.locks = locks
        self.notifier = notifier
        self.clock = clock

    async def submit_rating(
        self,
        trade_id: str,
        rater_id: str,
        scores: Union[RatingScores, Dict[str, int]],
        public_comment: Optional[str] = None,
        private_feedback: Optional[str] = None
    ) -> TradeRating:
        """Store a hidden rating of the other party.

        Args:
            trade_id: Trade being rated
            rater_id: Party submitting the rating
            scores: Overall, item accuracy, communication and shipping speed, each 1-5
            public_comment: Shown to everyone once revealed
            private_feedback: Shown only to the rater

        Returns:
            The stored rating, revealed if this completed the pair

        Raises:
            InvalidStateError: If the rating window is not open
            NotAuthorizedError: If the rater is not a party
            ValidationError: If a score is out of range
            ConflictError: If the rater already rated this round
        """
        async with self.locks.hold(trade_key(trade_id)):
            trade = await self.store.get(trade_id)
            now = self.clock()
            if trade.rating_deadline is None or now >= trade.rating_deadline:
                raise InvalidStateError(
                    f"Rating window for trade {trade_id} is not open",
                    trade.status.value
                )
            role = trade.role_of(rater_id)
            if role is None:
                raise NotAuthorizedError(f"User {rater_id} is not a party to trade {trade_id}")
            scores = _validate_scores(scores)

            already_rated = trade.proposer_rated if role == PartyRole.PROPOSER else trade.receiver_rated
            if already_rated or any(r.rater_id == rater_id for r in await self._round_ratings(trade)):
                raise ConflictError(f"User {rater_id} has already rated trade {trade_id}")

            rating = TradeRating(
                trade_id=trade_id,
                rater_id=rater_id,
                ratee_id=trade.other_party(rater_id),
                public_comment=public_comment,
                private_feedback=private_feedback,
                created_at=now,
                round=trade.rating_round,
                **scores.model_dump()
            )

            async with self.repository.transaction():
                rating = await self.repository.add(RATINGS, rating.id, rating)
                if role == PartyRole.PROPOSER:
                    trade.proposer_rated = True
                else:
                    trade.receiver_rated = True
                revealed = await self._apply_reveal_decision(trade, now)
                await self.store.save(trade)

            for r in revealed:
                if r.id == rating.id:
                    rating = r

        logger.info(f"Rating {rating.id} submitted by {rater_id} for trade {trade_id}")
        await self.notifier.notify(NotificationType.RATING_RECEIVED, rating.ratee_id, trade_id)
        if revealed:
            await self.notifier.notify_parties(NotificationType.RATINGS_REVEALED, trade)
        return rating

    async def run_expiry_job(self) -> int:
        """Reveal lone ratings on trades whose rating deadline has passed.

        Trades still awaiting ratings are completed once their window
        closes. Running the job again changes nothing.

        Returns:
            Number of ratings revealed
        """
        now = self.clock()
        candidates = [
            t for t in await self.store.list()
            if t.rating_deadline is not None and t.rating_deadline <= now
            and (t.status == TradeStatus.COMPLETED_AWAITING_RATING or t.proposer_rated != t.receiver_rated)
        ]

        revealed_count = 0
        for candidate in candidates:
            try:
                revealed_count += await self._expire_trade(candidate.id)
            except Exception as e:
                logger.error(f"Error expiring ratings for trade {candidate.id}: {e}")
                continue

        if revealed_count:
            logger.info(f"Rating expiry revealed {revealed_count} ratings")
        return revealed_count

    async def get_ratings_for_trade(self, trade_id: str, viewer_id: Optional[str] = None) -> List[TradeRating]:
        """Ratings on a trade as seen by viewer_id.

        Revealed ratings are visible to everyone and a rater always sees
        their own. Private feedback is only ever shown to its author.
        """
        await self.store.get(trade_id)
        ratings = [r for r in await self.repository.list(RATINGS) if r.trade_id == trade_id]
        visible = [
            _as_seen_by(r, viewer_id) for r in ratings
            if r.is_revealed or r.rater_id == viewer_id
        ]
        return sorted(visible, key=lambda r: (r.round, r.created_at))

    async def get_ratings_for_user(self, user_id: str) -> List[TradeRating]:
        """Revealed ratings a user has received."""
        ratings = [
            _as_seen_by(r, None) for r in await self.repository.list(RATINGS)
            if r.ratee_id == user_id and r.is_revealed
        ]
        return sorted(ratings, key=lambda r: r.created_at, reverse=True)

    async def _expire_trade(self, trade_id: str) -> int:
        async with self.locks.hold(trade_key(trade_id)):
            trade = await self.store.get(trade_id)
            now = self.clock()
            if trade.rating_deadline is None or trade.rating_deadline > now:
                return 0

            status = trade.status
            async with self.repository.transaction():
                revealed = await self._apply_reveal_decision(trade, now)
                if trade.status != status:
                    await self.store.save(trade)

        if revealed:
            await self.notifier.notify_parties(NotificationType.RATINGS_REVEALED, trade)
        return len(revealed)

    async def _apply_reveal_decision(self, trade: Trade, now: datetime) -> List[TradeRating]:
        """Reveal what may be revealed and complete the trade when due.

        The caller holds the trade lock, runs inside a transaction and saves
        the trade afterwards.
        """
        both_rated = trade.proposer_rated and trade.receiver_rated
        expired = trade.rating_deadline is not None and trade.rating_deadline <= now

        if not both_rated and not expired:
            return []

        revealed = []
        for rating in await self._round_ratings(trade):
            if rating.is_revealed:
                continue
            rating.is_revealed = True
            rating.revealed_at = now
            revealed.append(await self.repository.compare_and_swap(RATINGS, rating.id, rating))

        if trade.status == TradeStatus.COMPLETED_AWAITING_RATING:
            trade.status = TradeStatus.COMPLETED
            logger.info(f"Trade {trade.id} completed")
        if revealed:
            logger.info(f"Revealed {len(revealed)} ratings for trade {trade.id}")
        return revealed

    async def _round_ratings(self, trade: Trade) -> List[TradeRating]:
        return [
            r for r in await self.repository.list(RATINGS)
            if r.trade_id == trade.id and r.round == trade.rating_round
        ]


def _validate_scores(scores: Union[RatingScores, Dict[str, int]]) -> RatingScores:
    if not isinstance(scores, RatingScores):
        try:
            scores = RatingScores(**scores)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid rating scores: {e}")
    for name, value in scores.model_dump().items():
        if not MIN_SCORE <= value <= MAX_SCORE:
            raise ValidationError(f"{name} must be between {MIN_SCORE} and {MAX_SCORE}, got {value}")
    return scores


def _as_seen_by(rating: TradeRating, viewer_id: Optional[str]) -> TradeRating:
    if rating.rater_id == viewer_id:
        return rating
    return rating.model_copy(update={'private_feedback': None})
