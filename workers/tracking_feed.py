"""Worker that feeds carrier tracking events into the shipping tracker."""

import asyncio
import logging
from typing import Optional

from shipping import TrackingEvent

logger = logging.getLogger(__name__)


class TrackingFeedConsumer:
    """Drains a queue of tracking events.

    Carrier integrations (webhooks, polling clients) put ``TrackingEvent``
    objects on the queue; this consumer applies them one at a time.
    """

    def __init__(self, shipping, queue: Optional[asyncio.Queue] = None):
        self.shipping = shipping
        self.queue = queue if queue is not None else asyncio.Queue()
        self._stop_requested = False

    def stop(self):
        """Signal the consumer to stop once the queue is idle."""
        self._stop_requested = True

    async def publish(self, event: TrackingEvent) -> None:
        await self.queue.put(event)

    async def process_event(self, event: TrackingEvent) -> None:
        try:
            await self.shipping.record_tracking_event(event)
        except Exception as e:
            logger.error(f"Error processing tracking event for {event.tracking_number}: {e}")

    async def drain(self) -> int:
        """Process every event currently queued.

        Returns:
            Number of events processed
        """
        processed = 0
        while not self.queue.empty():
            event = self.queue.get_nowait()
            try:
                await self.process_event(event)
                processed += 1
            finally:
                self.queue.task_done()
        return processed

    async def run(self):
        """Main consumer loop."""
        logger.info("Tracking feed consumer starting up")
        while not self._stop_requested:
            try:
                event = await asyncio.wait_for(self.queue.get(), timeout=1)
            except asyncio.TimeoutError:
                continue
            try:
                await self.process_event(event)
            finally:
                self.queue.task_done()
        logger.info("Tracking feed consumer stopped")
