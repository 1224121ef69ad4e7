"""
Market Runner - Startup sequence and live poll loop.

Startup:
1. Load the history file
2. Leave legacy CSV mode
3. Backfill from the last stored tick till now
4. Fill recent gaps from the source
5. Interpolate older gaps
6. Verify integrity (fatal if broken)

Main Loop:
- Fetch the current ticker
- Push it through the aggregator
- Hand the consumer-level bucket to the consumer
- Save the history file periodically
- Wait the poll interval (interruptible by the stop event)

Critical Design:
- A stop request is honored only between iterations, never mid-push
- Per-tick errors are logged and the tick skipped
- The history file is saved on shutdown
"""

import argparse
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional

from .connectors.backfill_client import BackfillClient, TRANSIENT_ERRORS
from .connectors.replay_client import ReplayBackfillClient
from .core.config import MarketConfig, load_config
from .core.constants import DEFAULT_CONFIG_FILE, FileFormat
from .core.exceptions import (
    DataValidationError,
    HistoricalMarketError,
    MissingConfigError,
    OutOfOrderError,
)
from .core.types import IntervalBucket
from .data.historical_market import HistoricalMarket
from .monitoring.logger import get_logger, setup_logger
from .strategies.price_consumer import PriceConsumer, create_consumer


class MarketRunner:
    """
    Orchestrates the startup repair sequence and the poll loop.

    The HistoricalMarket is built by the caller and shared by reference.
    """

    def __init__(
        self,
        market: HistoricalMarket,
        client: BackfillClient,
        consumer: PriceConsumer,
        symbol: str,
        data_file: str,
        config: Optional[MarketConfig] = None,
        ui: bool = False,
        stop_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize runner.

        Args:
            market: Shared historical market
            client: Live ticker source
            consumer: Receives the consumer-level bucket on every tick
            symbol: Symbol to poll
            data_file: History file loaded at startup and saved on shutdown
            config: Loaded configuration (defaults if None)
            ui: True when an external UI renders state (suppresses price lines)
            stop_event: Cancellation signal checked between iterations
            clock: Current epoch time provider
        """
        self.market = market
        self.client = client
        self.consumer = consumer
        self.symbol = symbol
        self.data_file = data_file
        self.config = config or MarketConfig()
        self.ui = ui
        self.stop_event = stop_event or threading.Event()
        self.clock = clock

        self.logger = get_logger(__name__)
        self.loop_iteration = 0
        self.ticks_processed = 0
        self.last_save = clock()

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def prepare(self, missing_ok: bool = True) -> None:
        """
        Load, backfill, repair and verify the history.

        Raises:
            FormatError: If the history file is corrupt
            SourceUnavailableError: If the backfill source keeps failing
            IntegrityViolation: If the repaired history is still broken
        """
        self.logger.info("=" * 60)
        self.logger.info("Preparing historical market", symbol=self.symbol)
        self.logger.info("=" * 60)

        self.logger.info(f"1. Loading history file: {self.data_file}")
        started = time.monotonic()
        loaded = self.market.read_from_file(self.data_file, missing_ok=missing_ok)
        self.market.disable_csv()
        elapsed_ms = int((time.monotonic() - started) * 1000)
        self.logger.info(f"✓ Loaded in {elapsed_ms} ms", ticks=loaded)

        self.logger.info("2. Getting prices till now from the market...")
        pushed = self.market.fulfil_till_now(self.symbol)
        self.logger.info("✓ Backfill complete", ticks=pushed)

        window_days = self.config.gap_filling.recent_window_days
        self.logger.info(f"3. Filling price gaps in the last {window_days:g} days...")
        filled = self.market.fill_gaps(self.symbol)
        self.logger.info("✓ Recent gaps filled", slots=filled)

        self.logger.info("4. Filling older gaps if there are any...")
        interpolated = self.market.fill_older_gaps()
        self.logger.info("✓ Older gaps filled", slots=interpolated)

        self.logger.info("5. Checking integrity...")
        self.market.verify_integrity()
        self.logger.info("✓ Integrity is ok", ticks=len(self.market))

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------

    def poll_once(self) -> Optional[IntervalBucket]:
        """
        One loop iteration: fetch, push, hand to consumer.

        Returns:
            The bucket handed to the consumer, or None if the tick was skipped
        """
        try:
            ticker = self.client.get_ticker(self.symbol)
        except TRANSIENT_ERRORS as e:
            self.logger.warning("Ticker fetch failed - retrying next cycle", error=str(e))
            return None
        except DataValidationError as e:
            self.logger.warning("Malformed ticker skipped", error=str(e))
            return None

        if ticker is None:
            return None

        try:
            self.market.push_lowest_and_recalculate_parents(ticker)
        except OutOfOrderError as e:
            self.logger.warning("Out of order tick skipped", error=str(e))
            return None

        level = self.config.polling.consumer_level
        bucket = self.market.get_interval(ticker.time, level)
        if bucket is None:
            return None

        self.ticks_processed += 1

        try:
            self.consumer.process_new_price(bucket)
        except Exception as e:
            self.logger.error(
                "Consumer failed to process price",
                consumer=self.consumer.get_name(),
                error=str(e),
                exc_info=True
            )

        if not self.ui:
            self.logger.info("Current price", price=bucket.price, level=level)

        return bucket

    def run(self, max_iterations: Optional[int] = None) -> int:
        """
        Prepare the history, then poll until a stop is requested.

        Args:
            max_iterations: Stop after this many iterations (None = unbounded)

        Returns:
            Process exit code
        """
        try:
            self.prepare()
        except HistoricalMarketError as e:
            self.logger.critical("Startup failed - cannot start polling", error=str(e))
            return 1

        self.logger.info("Starting poll loop...")

        while not self.stop_event.is_set():
            self.loop_iteration += 1
            self.poll_once()

            if self._should_save():
                self.save()

            if max_iterations is not None and self.loop_iteration >= max_iterations:
                break

            self.stop_event.wait(self.config.polling.interval_sec)

        self.shutdown()
        return 0

    def request_stop(self) -> None:
        """Ask the loop to stop after the current iteration."""
        self.stop_event.set()

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        self.logger.info(f"Received signal {signum} - stopping after current tick")
        self.request_stop()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _should_save(self) -> bool:
        interval = self.config.polling.save_interval_sec
        return self.clock() - self.last_save >= interval

    def save(self) -> None:
        try:
            self.market.write_to_file(self.data_file)
            self.last_save = self.clock()
        except (OSError, HistoricalMarketError) as e:
            self.logger.error("Error saving history file", error=str(e))

    def shutdown(self) -> None:
        """Graceful shutdown: persist the history."""
        self.logger.info("Shutting down", ticks_processed=self.ticks_processed)
        self.save()


def refresh_data_file(market: HistoricalMarket, data_file: str, symbol: str) -> int:
    """
    Bring a history file up to date without trading.

    Loads the file (missing allowed), backfills, fills every gap, verifies
    integrity and writes the result back in binary form.

    Returns:
        Number of ticks written
    """
    logger = get_logger(__name__)
    market.read_from_file(data_file, missing_ok=True)
    market.disable_csv()
    market.fulfil_till_now(symbol)
    market.fill_gaps(symbol)
    market.fill_older_gaps()
    market.verify_integrity()
    market.write_to_file(data_file, FileFormat.BINARY)
    logger.info("History file refreshed", path=data_file, ticks=len(market))
    return len(market)


def _load_config(path: Optional[str]) -> MarketConfig:
    if path is not None:
        return load_config(path)
    try:
        return load_config(DEFAULT_CONFIG_FILE)
    except MissingConfigError:
        return MarketConfig()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Historical market store")
    parser.add_argument('--config', help=f'Config file (default: {DEFAULT_CONFIG_FILE} if present)')
    parser.add_argument('--replay', required=True, help='CSV of recorded ticks used as the market source')
    sub = parser.add_subparsers(dest='command', required=True)

    trade = sub.add_parser('trade', help='Go to the current market and feed the strategy')
    trade.add_argument('filename', help='.dat file path with historical prices')
    trade.add_argument('strategy_name', help='Strategy name')
    trade.add_argument('symbol', help='Trading symbol pair name, like btcusd')
    trade.add_argument('ui', nargs='?', type=int, default=1, help='Display UI progress 0/1 (default 1)')

    refresh = sub.add_parser('refresh', help='Backfill and repair a .dat file')
    refresh.add_argument('filename', help='.dat file path with historical prices')
    refresh.add_argument('symbol', help='Trading symbol pair name, like btcusd')

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = _load_config(args.config)
    except HistoricalMarketError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logger(log_file=config.monitoring.log_file, level=config.monitoring.log_level)
    logger = get_logger(__name__)

    try:
        client = ReplayBackfillClient.from_csv(args.replay)
        market = HistoricalMarket.from_config(config, client=client)
        data_file = str(Path.cwd() / args.filename)

        if args.command == 'refresh':
            refresh_data_file(market, data_file, args.symbol)
            return 0

        trader_setting = config.find_trader_setting(args.symbol, args.strategy_name)
        consumer = create_consumer(args.strategy_name, args.symbol, trader_setting)
    except HistoricalMarketError as e:
        logger.critical("Fatal error", error=str(e))
        return 1

    runner = MarketRunner(
        market=market,
        client=client,
        consumer=consumer,
        symbol=args.symbol,
        data_file=data_file,
        config=config,
        ui=bool(args.ui)
    )
    runner.install_signal_handlers()
    return runner.run()


if __name__ == "__main__":
    sys.exit(main())
