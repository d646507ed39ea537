"""Command line interface for running the API server and background workers."""
import argparse
import asyncio
import logging
import signal

import uvicorn

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

should_exit = False


def handle_shutdown(signum, frame):
    """Handle shutdown signals gracefully."""
    global should_exit
    logger.info("Shutdown signal received. Cleaning up...")
    should_exit = True


class UvicornServer:
    """Wrapper for running uvicorn with proper lifecycle management."""

    def __init__(self, app_path: str = "api:app", host: str = "0.0.0.0", port: int = 8000):
        self.config = uvicorn.Config(
            app_path,
            host=host,
            port=port,
            log_level="info"
        )
        self.server = uvicorn.Server(self.config)

    async def run(self):
        """Run the server in a way that can be stopped."""
        await self.server.serve()

    async def stop(self):
        """Stop the server."""
        self.server.should_exit = True


async def main(host: str, port: int):
    """Run the API server; the app's lifespan runs the engine's workers."""
    global should_exit

    signal.signal(signal.SIGINT, handle_shutdown)
    signal.signal(signal.SIGTERM, handle_shutdown)

    server = UvicornServer(host=host, port=port)
    task = asyncio.create_task(server.run(), name="api")
    logger.info(f"API server starting on {host}:{port}")

    try:
        while not should_exit and not task.done():
            await asyncio.sleep(1)

        if task.done() and not task.cancelled() and task.exception():
            logger.error(f"API server failed with error: {task.exception()}")
    finally:
        logger.info("Stopping API server...")
        await server.stop()
        try:
            await asyncio.wait_for(task, timeout=10)
        except asyncio.TimeoutError:
            task.cancel()
        except Exception as e:
            logger.error(f"Error while stopping API server: {e}")
        logger.info("Cleanup complete.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run the trade settlement API")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()

    asyncio.run(main(args.host, args.port))
