"""
Queue polling worker: delivers due notifications at a fixed interval.
"""

import argparse
import logging
import time
from typing import Callable, Optional

from dotenv import load_dotenv

from sigalert.app import SignalAlertApp
from sigalert.database.connection import Database

logger = logging.getLogger(__name__)


class NotificationWorker:
    """Runs maintenance and a dispatch batch on every tick."""

    def __init__(
        self,
        app: SignalAlertApp,
        interval_seconds: float = 30,
        sync_prices: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize worker.

        Args:
            app: Wired pipeline
            interval_seconds: Pause between ticks
            sync_prices: Also evaluate price rules against the price feed
            sleep: Sleep function (replaceable in tests)
        """
        self.app = app
        self.interval_seconds = interval_seconds
        self.sync_prices = sync_prices
        self.sleep = sleep
        self._running = False

    def run_once(self) -> None:
        """One tick. Each phase logs its own errors so delivery always runs."""
        try:
            self.app.maintenance()
        except Exception:
            logger.exception("Queue maintenance failed")

        if self.sync_prices:
            try:
                self.app.sync_prices()
            except Exception:
                logger.exception("Price sync failed")

        try:
            self.app.process_queue()
        except Exception:
            logger.exception("Queue processing failed")

    def run_forever(self, max_ticks: Optional[int] = None) -> None:
        """Poll until stopped (or for max_ticks ticks)."""
        self._running = True
        ticks = 0
        logger.info(f"Worker started, polling every {self.interval_seconds}s")
        while self._running:
            self.run_once()
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            self.sleep(self.interval_seconds)
        self._running = False

    def stop(self) -> None:
        self._running = False


def main():
    """CLI entry point."""
    load_dotenv()

    parser = argparse.ArgumentParser(description="Signal alert notification worker")
    parser.add_argument("--config", default="config.yaml", help="Path to config file")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    parser.add_argument(
        "--sync-prices", action="store_true", help="Check price rules on every tick"
    )
    args = parser.parse_args()

    from sigalert.config import load_config

    config = load_config(args.config)

    # Setup logging
    log_level = logging.DEBUG if args.debug else config.advanced.log_level.upper()
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    db = Database(config.database.path)
    db.initialize()

    app = SignalAlertApp(db=db, config=config)
    worker = NotificationWorker(
        app,
        interval_seconds=config.dispatcher.poll_interval_seconds,
        sync_prices=args.sync_prices,
    )

    try:
        if args.once:
            worker.run_once()
        else:
            worker.run_forever()
    except KeyboardInterrupt:
        logger.info("Worker stopped")
    finally:
        db.close()


if __name__ == "__main__":
    main()
