"""Worker that applies rating and dispute deadlines."""

import asyncio
import logging
import traceback

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Periodically reveals expired ratings and applies lapsed dispute deadlines."""

    def __init__(self, ratings, disputes, interval: float = 60):
        """Initialize sweeper.

        Args:
            ratings: Rating manager whose expiry job is run
            disputes: Dispute manager whose deadline sweep is run
            interval: Seconds between passes
        """
        self.ratings = ratings
        self.disputes = disputes
        self.interval = interval
        self._stop_requested = False

    def stop(self):
        """Signal the sweeper to stop after the current pass."""
        self._stop_requested = True

    async def run_once(self) -> dict:
        """Run one pass of both jobs.

        A failure in one job is logged and does not prevent the other.

        Returns:
            Number of ratings revealed and disputes changed
        """
        revealed = 0
        disputes_changed = 0

        try:
            revealed = await self.ratings.run_expiry_job()
        except Exception as e:
            logger.error(f"Error in rating expiry job: {e}")
            logger.error(traceback.format_exc())

        try:
            disputes_changed = await self.disputes.run_deadline_sweep()
        except Exception as e:
            logger.error(f"Error in dispute deadline sweep: {e}")
            logger.error(traceback.format_exc())

        return {'ratings_revealed': revealed, 'disputes_changed': disputes_changed}

    async def run(self):
        """Main sweep loop."""
        logger.info("Expiry sweeper starting up")
        while not self._stop_requested:
            result = await self.run_once()
            if result['ratings_revealed'] or result['disputes_changed']:
                logger.info(
                    f"Sweep revealed {result['ratings_revealed']} ratings, "
                    f"changed {result['disputes_changed']} disputes"
                )
            await asyncio.sleep(self.interval)
        logger.info("Expiry sweeper stopped")
