"""Shipping module for tracking submission, delivery and verification.

Both parties submit tracking numbers; once both have, the trade is in
transit. Delivery is reported by a carrier tracking feed (or marked
explicitly), after which each party verifies they are satisfied. The second
verification is the one point where escrow pays out and items change owner.

A side that offers no items has nothing to ship and counts as already
submitted and delivered.
"""
import logging
import re
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel, Field

from database.locks import LockRegistry, trade_key
from core.exceptions import InvalidStateError, NotAuthorizedError, ValidationError
from core.models import Trade, TradeStatus, PartyRole, utc_now
from notifications import Notifier, NotificationType
from trades.store import TradeStore

logger = logging.getLogger(__name__)

DEFAULT_RATING_WINDOW = timedelta(days=7)

TRACKING_READY_STATUSES = frozenset({
    TradeStatus.ESCROW_FUNDED,
    TradeStatus.SHIPPING_PENDING,
    TradeStatus.IN_TRANSIT,
})


class Carrier(str, Enum):
    USPS = "USPS"
    UPS = "UPS"
    FEDEX = "FEDEX"
    DHL = "DHL"
    UNKNOWN = "UNKNOWN"


class TrackingStatus(str, Enum):
    LABEL_CREATED = "LABEL_CREATED"
    PICKED_UP = "PICKED_UP"
    IN_TRANSIT = "IN_TRANSIT"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    EXCEPTION = "EXCEPTION"
    UNKNOWN = "UNKNOWN"


class TrackingEvent(BaseModel):
    """One status update for one shipment from the carrier feed."""
    tracking_number: str
    status: TrackingStatus
    carrier: Optional[Carrier] = None
    timestamp: datetime = Field(default_factory=utc_now)


# Checked in order; the first match wins
CARRIER_PATTERNS = [
    (Carrier.USPS, re.compile(r'^9[0-9]{19,21}$')),
    (Carrier.USPS, re.compile(r'^(94|93|92|91)[0-9]{17,21}$')),
    (Carrier.UPS, re.compile(r'^1Z[A-Z0-9]{16}$')),
    (Carrier.FEDEX, re.compile(r'^[0-9]{12,15}$')),
    (Carrier.FEDEX, re.compile(r'^[0-9]{22}$')),
    (Carrier.DHL, re.compile(r'^[0-9]{10}$')),
    (Carrier.DHL, re.compile(r'^JD[0-9]{18}$')),
]


def detect_carrier(tracking_number: str) -> Carrier:
    """Guess the carrier from the shape of a tracking number."""
    cleaned = re.sub(r'\s+', '', tracking_number).upper()
    for carrier, pattern in CARRIER_PATTERNS:
        if pattern.match(cleaned):
            return carrier
    return Carrier.UNKNOWN


def ships_items(trade: Trade, role: PartyRole) -> bool:
    if role == PartyRole.PROPOSER:
        return bool(trade.proposer_item_ids)
    return bool(trade.receiver_item_ids)


def both_submitted(trade: Trade) -> bool:
    return (
        (trade.proposer_submitted_tracking or not ships_items(trade, PartyRole.PROPOSER))
        and (trade.receiver_submitted_tracking or not ships_items(trade, PartyRole.RECEIVER))
    )


def both_delivered(trade: Trade) -> bool:
    return (
        (trade.proposer_delivered or not ships_items(trade, PartyRole.PROPOSER))
        and (trade.receiver_delivered or not ships_items(trade, PartyRole.RECEIVER))
    )


class ShippingTracker:
    """Records shipments and the mutual verification that completes a trade."""

    def __init__(
        self,
        store: TradeStore,
        trades,
        escrow,
        locks: LockRegistry,
        notifier: Notifier,
        clock: Callable[[], datetime] = utc_now,
        rating_window: timedelta = DEFAULT_RATING_WINDOW
    ) -> None:
        """Initialize shipping tracker.

        Args:
            store: Trade persistence
            trades: Trade manager providing the delivery transition
            escrow: Escrow coordinator providing settlement
            locks: Shared per-aggregate lock registry
            notifier: Notification dispatcher
            clock: Source of the current time
            rating_window: How long both parties may rate after completion
        """
        self.store = store
        self.trades = trades
        self.escrow = escrow
        self.locks = locks
        self.notifier = notifier
        self.clock = clock
        self.rating_window = rating_window

    async def submit_tracking(self, trade_id: str, user_id: str, tracking_number: str) -> Trade:
        """Record the caller's tracking number.

        Raises:
            ValidationError: If the tracking number is blank
            InvalidStateError: If the trade is not ready to ship
            NotAuthorizedError: If the caller is not a party
        """
        tracking_number = (tracking_number or '').strip()
        if not tracking_number:
            raise ValidationError("Tracking number is required")

        async with self.locks.hold(trade_key(trade_id)):
            trade = await self.store.get(trade_id)
            if trade.status not in TRACKING_READY_STATUSES:
                raise InvalidStateError(
                    f"Trade {trade_id} is not ready for shipping",
                    trade.status.value
                )
            role = trade.role_of(user_id)
            if role is None:
                raise NotAuthorizedError(f"User {user_id} is not a party to trade {trade_id}")

            carrier = detect_carrier(tracking_number).value
            if role == PartyRole.PROPOSER:
                trade.proposer_submitted_tracking = True
                trade.proposer_tracking_number = tracking_number
                trade.proposer_carrier = carrier
            else:
                trade.receiver_submitted_tracking = True
                trade.receiver_tracking_number = tracking_number
                trade.receiver_carrier = carrier

            if trade.status == TradeStatus.ESCROW_FUNDED:
                trade.status = TradeStatus.SHIPPING_PENDING

            entered_transit = False
            if trade.status == TradeStatus.SHIPPING_PENDING and both_submitted(trade):
                trade.status = TradeStatus.IN_TRANSIT
                entered_transit = True
                # Feed events can arrive before the second number is submitted
                if both_delivered(trade):
                    self.trades.transition_to_delivered(trade)

            trade = await self.store.save(trade)

        logger.info(f"Tracking {tracking_number} ({carrier}) submitted by {user_id} for trade {trade_id}")
        await self.notifier.notify(NotificationType.TRACKING_ADDED, trade.other_party(user_id), trade.id)
        if entered_transit:
            await self.notifier.notify_parties(NotificationType.TRADE_IN_TRANSIT, trade)
        if trade.status == TradeStatus.DELIVERED_AWAITING_VERIFICATION:
            await self.notifier.notify_parties(NotificationType.TRADE_DELIVERED, trade)
        return trade

    async def record_tracking_event(self, event: TrackingEvent) -> Optional[Trade]:
        """Apply a carrier feed event to the trade that owns the shipment.

        Returns:
            The updated trade, or None if no open trade uses the tracking number
        """
        candidates = [t for t in await self.store.find_by_tracking_number(event.tracking_number) if t.is_open]
        if not candidates:
            logger.warning(f"Ignoring tracking event for unknown number {event.tracking_number}")
            return None

        trade_id = candidates[0].id
        async with self.locks.hold(trade_key(trade_id)):
            trade = await self.store.get(trade_id)
            if event.status != TrackingStatus.DELIVERED:
                logger.debug(f"Shipment {event.tracking_number} for trade {trade_id}: {event.status.value}")
                return trade

            if event.tracking_number == trade.proposer_tracking_number:
                trade.proposer_delivered = True
            if event.tracking_number == trade.receiver_tracking_number:
                trade.receiver_delivered = True

            delivered = trade.status == TradeStatus.IN_TRANSIT and both_delivered(trade)
            if delivered:
                self.trades.transition_to_delivered(trade)
            trade = await self.store.save(trade)

        logger.info(f"Shipment {event.tracking_number} for trade {trade_id} delivered")
        if delivered:
            await self.notifier.notify_parties(NotificationType.TRADE_DELIVERED, trade)
        return trade

    async def mark_delivered(self, trade_id: str) -> Trade:
        """Explicitly mark an in-transit trade as delivered."""
        return await self.trades.mark_delivered(trade_id)

    async def verify_satisfaction(self, trade_id: str, user_id: str) -> Trade:
        """Record that a party is satisfied with what they received.

        When the second party verifies, the trade is settled (escrow paid
        out, items reassigned, reputation scored), the rating window opens
        and the trade moves to completed_awaiting_rating. Verifying again
        once both have verified changes nothing.

        Raises:
            InvalidStateError: If the trade is not awaiting verification
            NotAuthorizedError: If the caller is not a party
        """
        async with self.locks.hold(trade_key(trade_id)):
            trade = await self.store.get(trade_id)
            role = trade.role_of(user_id)

            if role is not None and trade.proposer_verified_satisfaction and trade.receiver_verified_satisfaction:
                logger.debug(f"Trade {trade_id} already verified by both parties")
                return trade
            if trade.status != TradeStatus.DELIVERED_AWAITING_VERIFICATION:
                raise InvalidStateError(
                    f"Trade {trade_id} is not awaiting verification",
                    trade.status.value
                )
            if role is None:
                raise NotAuthorizedError(f"User {user_id} is not a party to trade {trade_id}")

            if role == PartyRole.PROPOSER:
                trade.proposer_verified_satisfaction = True
            else:
                trade.receiver_verified_satisfaction = True

            completed = trade.proposer_verified_satisfaction and trade.receiver_verified_satisfaction
            if completed:
                async with self.notifier.deferred(), self.store.repository.transaction():
                    await self.escrow.release_escrow(trade)
                    trade.rating_deadline = self.clock() + self.rating_window
                    trade.status = TradeStatus.COMPLETED_AWAITING_RATING
                    trade = await self.store.save(trade)
            else:
                trade = await self.store.save(trade)

        logger.info(f"Trade {trade_id} verified by {user_id}")
        await self.notifier.notify(NotificationType.ITEMS_VERIFIED, trade.other_party(user_id), trade.id)
        if completed:
            await self.notifier.notify_parties(NotificationType.TRADE_COMPLETED, trade)
        return trade
