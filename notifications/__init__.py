"""Notifications module for informing trade parties of state changes.

Delivery itself (email, push) happens outside the engine. The engine hands
``(event_type, recipient_id, trade_id)`` to a sink and moves on; a failing
sink is logged and never fails the transition that triggered it.
"""
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from core.models import utc_now

logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    TRADE_PROPOSED = "trade_proposed"
    TRADE_ACCEPTED = "trade_accepted"
    TRADE_REJECTED = "trade_rejected"
    TRADE_CANCELLED = "trade_cancelled"
    COUNTER_OFFER = "counter_offer"
    ESCROW_FUNDED = "escrow_funded"
    ESCROW_RELEASED = "escrow_released"
    ESCROW_REFUNDED = "escrow_refunded"
    TRACKING_ADDED = "tracking_added"
    TRADE_IN_TRANSIT = "trade_in_transit"
    TRADE_DELIVERED = "trade_delivered"
    ITEMS_VERIFIED = "items_verified"
    TRADE_COMPLETED = "trade_completed"
    DISPUTE_OPENED = "dispute_opened"
    DISPUTE_UPDATED = "dispute_updated"
    DISPUTE_MESSAGE = "dispute_message"
    DISPUTE_ESCALATED = "dispute_escalated"
    DISPUTE_RESOLVED = "dispute_resolved"
    RATING_RECEIVED = "rating_received"
    RATINGS_REVEALED = "ratings_revealed"


class Notification(BaseModel):
    event_type: NotificationType
    recipient_id: str
    trade_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class NotificationSink(ABC):
    """Receives fire-and-forget notifications."""

    @abstractmethod
    async def send(self, notification: Notification) -> None:
        """Deliver or enqueue one notification."""


class LoggingNotificationSink(NotificationSink):
    """Writes notifications to the log. Default when no sink is configured."""

    async def send(self, notification: Notification) -> None:
        logger.info(
            f"Notify {notification.recipient_id}: {notification.event_type.value} "
            f"(trade {notification.trade_id})"
        )


class MemoryNotificationSink(NotificationSink):
    """Keeps notifications in memory for polling clients."""

    def __init__(self) -> None:
        self.notifications: List[Notification] = []

    async def send(self, notification: Notification) -> None:
        self.notifications.append(notification)

    def for_user(self, user_id: str, since: Optional[datetime] = None) -> List[Notification]:
        return [
            n for n in self.notifications
            if n.recipient_id == user_id and (since is None or n.created_at > since)
        ]


class Notifier:
    """Shields callers from sink failures.

    Inside a ``deferred()`` block notifications are queued and only sent
    once the block exits cleanly. A block that raises drops them, so nobody
    hears about a change that was rolled back.
    """

    def __init__(self, sink: Optional[NotificationSink] = None, clock=utc_now) -> None:
        self.sink = sink or LoggingNotificationSink()
        self.clock = clock
        self._pending: ContextVar[Optional[List[Notification]]] = (
            ContextVar(f'notifier_pending_{id(self)}', default=None)
        )

    @asynccontextmanager
    async def deferred(self):
        if self._pending.get() is not None:
            # Nested blocks join the outer one
            yield
            return

        pending: List[Notification] = []
        token = self._pending.set(pending)
        try:
            yield
        except BaseException:
            if pending:
                logger.debug(f"Dropped {len(pending)} notifications from a failed transition")
            raise
        finally:
            self._pending.reset(token)

        for notification in pending:
            await self._send(notification)

    async def notify(self, event_type: NotificationType, recipient_id: str, trade_id: Optional[str] = None) -> None:
        notification = Notification(
            event_type=event_type,
            recipient_id=recipient_id,
            trade_id=trade_id,
            created_at=self.clock()
        )
        pending = self._pending.get()
        if pending is not None:
            pending.append(notification)
            return
        await self._send(notification)

    async def notify_parties(self, event_type: NotificationType, trade) -> None:
        for user_id in (trade.proposer_id, trade.receiver_id):
            await self.notify(event_type, user_id, trade.id)

    async def _send(self, notification: Notification) -> None:
        try:
            await self.sink.send(notification)
        except Exception as e:
            logger.warning(
                f"Failed to deliver {notification.event_type.value} notification "
                f"to {notification.recipient_id}: {e}"
            )
