"""REST API module for the trade engine.

This module provides HTTP endpoints for:
- Proposing, answering and countering trades
- Funding escrow and checking cash differentials
- Submitting tracking numbers and verifying delivery
- Opening, mediating and resolving disputes
- Submitting and reading blind ratings
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from engine import TradeEngine, create_engine
from workers import ExpirySweeper, TrackingFeedConsumer

logger = logging.getLogger(__name__)


async def _stop_task(task: asyncio.Task) -> None:
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


# Lifecycle management
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the engine if none was supplied and run the background workers."""
    logger.info("Initializing API...")
    owns_engine = getattr(app.state, 'engine', None) is None
    if owns_engine:
        app.state.engine = await create_engine()
    engine = app.state.engine

    sweeper = ExpirySweeper(engine.ratings, engine.disputes, engine.settings['expiry_sweep_interval'])
    tracking_feed = TrackingFeedConsumer(engine.shipping)
    app.state.tracking_feed = tracking_feed
    tasks = [
        asyncio.create_task(sweeper.run(), name="expiry_sweeper"),
        asyncio.create_task(tracking_feed.run(), name="tracking_feed"),
    ]
    logger.info(f"Started expiry sweeper (every {sweeper.interval}s) and tracking feed consumer")

    yield

    logger.info("Shutting down API...")
    sweeper.stop()
    tracking_feed.stop()
    for task in tasks:
        await _stop_task(task)
    if owns_engine:
        await engine.close()


def create_app(engine: Optional[TradeEngine] = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        engine: Engine to serve. If not provided, one is created from
            settings.conf when the application starts.
    """
    app = FastAPI(
        title="Trade Settlement API",
        description="REST API for trade settlement, escrow, disputes and ratings",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.engine = engine

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    async def root():
        return {
            "name": "Trade Settlement API",
            "version": "1.0.0",
            "status": "running"
        }

    # Import and include all routers
    from .trades import router as trades_router
    from .disputes import router as disputes_router
    from .ratings import router as ratings_router

    app.include_router(trades_router)
    app.include_router(disputes_router)
    app.include_router(ratings_router)

    return app


app = create_app()
