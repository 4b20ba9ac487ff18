"""
DeepBook Buyback Bot - Main Entry Point

Usage:
    python -m deepbook_buyback.main [--dry-run] [--log-level LEVEL]
                                    [--state-path PATH] [--markets PATH]
                                    [--pid-file PATH]

Configuration:
    The bot reads configuration from:
    1. Environment variables and .env (see deepbook_buyback.config)
    2. Command line arguments

Execution:
    Purchases go through the dry-run executor, which logs each buyback
    and reports it as filled. Signing executors are wired in by
    constructing BuybackService directly.

    --dry-run evaluates buybacks even when BUYBACK_ENABLED is false, so
    the bot can be watched before it is enabled.
"""

from __future__ import annotations

import argparse
import asyncio
import atexit
import fcntl
import logging
import os
import signal
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

from pydantic import ValidationError

# Configure logging before imports
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

from deepbook_buyback.config import BuybackSettings  # noqa: E402
from deepbook_buyback.core.service import BuybackService  # noqa: E402
from deepbook_buyback.storage import SnapshotError, SnapshotStore  # noqa: E402

# Default PID file location
DEFAULT_PID_FILE = "/tmp/deepbook-buyback.pid"

# Seconds between stats log lines
STATS_INTERVAL_SECONDS = 300


class SingletonBotError(Exception):
    """Raised when another bot instance holds the PID file lock."""

    def __init__(self, pid_file: Path, holder_pid: Optional[int] = None):
        self.pid_file = pid_file
        self.holder_pid = holder_pid
        holder = f"PID {holder_pid}" if holder_pid else "PID unknown"
        super().__init__(f"Buyback bot already running ({holder}, lock file {pid_file})")


def read_pid_file(pid_path: Path) -> Optional[int]:
    """PID recorded in a PID file, or None when missing or unreadable."""
    try:
        text = pid_path.read_text().strip()
    except FileNotFoundError:
        return None
    return int(text) if text.isdigit() else None


@contextmanager
def singleton_lock(pid_file: Union[str, Path] = DEFAULT_PID_FILE) -> Iterator[Path]:
    """
    Hold the bot's PID file lock for the lifetime of the context.

    The lock is an exclusive flock, so the kernel drops it when the holding
    process dies. A PID file left behind by a crashed bot is taken over.

    Raises:
        SingletonBotError: If another live instance holds the lock
    """
    pid_path = Path(pid_file)
    pid_path.parent.mkdir(parents=True, exist_ok=True)

    # O_CREAT without O_TRUNC keeps the holder's PID readable until we own the lock
    fd = os.open(pid_path, os.O_RDWR | os.O_CREAT, 0o644)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        os.close(fd)
        raise SingletonBotError(pid_path, read_pid_file(pid_path)) from None

    os.ftruncate(fd, 0)
    os.write(fd, str(os.getpid()).encode())
    released = False

    def release() -> None:
        nonlocal released
        if released:
            return
        released = True
        # Unlink while still locked; closing the descriptor drops the flock
        pid_path.unlink(missing_ok=True)
        os.close(fd)

    atexit.register(release)
    logger.info(f"Holding PID lock {pid_path} as PID {os.getpid()}")
    try:
        yield pid_path
    finally:
        release()
        atexit.unregister(release)


def load_settings(args: argparse.Namespace) -> BuybackSettings:
    """Settings from the environment with command line overrides applied."""
    settings = BuybackSettings()

    overrides = {}
    if args.dry_run:
        overrides["buyback_enabled"] = True
    if args.state_path:
        overrides["state_path"] = Path(args.state_path)
    if args.log_level:
        overrides["log_level"] = args.log_level

    return settings.model_copy(update=overrides) if overrides else settings


def load_markets(service: BuybackService, path: str) -> int:
    """Register the markets listed in a snapshot-format JSON file."""
    snapshot = SnapshotStore(path).load()
    if snapshot is None:
        raise SnapshotError(f"Markets file not found: {path}")

    for record in snapshot.markets:
        service.registry.register(record.market_id, record.to_config())
    return len(snapshot.markets)


def setup_signal_handlers(shutdown_event: asyncio.Event) -> None:
    """Set the shutdown event on SIGINT/SIGTERM."""
    loop = asyncio.get_running_loop()

    def handle_signal(sig):
        logger.info(f"Received signal {sig}")
        shutdown_event.set()

    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))
    except NotImplementedError:
        # Windows doesn't support add_signal_handler
        pass


async def run_until_shutdown(
    service: BuybackService,
    shutdown_event: asyncio.Event,
    stats_interval: float = STATS_INTERVAL_SECONDS,
) -> None:
    """Run the service, logging stats periodically, until shutdown is requested."""
    await service.start()

    try:
        while not shutdown_event.is_set():
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=stats_interval)
                break  # Shutdown requested
            except asyncio.TimeoutError:
                pass

            stats = service.engine.stats
            poller_stats = service.poller.stats
            logger.info(
                f"Stats: markets={len(service.registry)}, "
                f"events={poller_stats.events_processed}, "
                f"triggers={poller_stats.triggers}, "
                f"executed={stats.executed}, skipped={stats.skipped}, failed={stats.failed}"
            )
    finally:
        await service.stop()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="DeepBook Buyback Bot",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Evaluate buybacks with the dry-run executor even if BUYBACK_ENABLED is false",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override log level",
    )
    parser.add_argument(
        "--state-path",
        type=str,
        help="Snapshot file for registrations and cursor (overrides STATE_PATH)",
    )
    parser.add_argument(
        "--markets",
        type=str,
        help="JSON file of markets to register on startup (snapshot format)",
    )
    parser.add_argument(
        "--pid-file",
        type=str,
        default=DEFAULT_PID_FILE,
        help=f"PID file for the single-instance lock (default: {DEFAULT_PID_FILE})",
    )
    return parser.parse_args(argv)


async def main_async(args: argparse.Namespace) -> int:
    """Async main function."""
    try:
        settings = load_settings(args)
    except ValidationError as e:
        logger.error(f"Invalid configuration:\n{e}")
        logger.error("POLL_INTERVAL_SECONDS must be set (environment or .env)")
        return 1

    logging.getLogger().setLevel(getattr(logging, settings.log_level, logging.INFO))

    logger.info("=" * 60)
    logger.info("DEEPBOOK BUYBACK BOT")
    logger.info("=" * 60)
    logger.info(f"Network: {settings.network}")
    logger.info(f"Buybacks: {'ENABLED (dry-run executor)' if settings.buyback_enabled else 'DISABLED'}")
    logger.info(f"Poll interval: {settings.poll_interval_seconds}s")
    logger.info("=" * 60)

    service = BuybackService.from_settings(settings)

    try:
        if args.markets:
            count = load_markets(service, args.markets)
            logger.info(f"Registered {count} market(s) from {args.markets}")

        shutdown_event = asyncio.Event()
        setup_signal_handlers(shutdown_event)
        await run_until_shutdown(service, shutdown_event)
        return 0
    except SnapshotError as e:
        logger.error(str(e))
        return 1
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        return 1


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    if args.log_level:
        logging.getLogger().setLevel(getattr(logging, args.log_level))

    try:
        with singleton_lock(args.pid_file):
            try:
                return asyncio.run(main_async(args))
            except KeyboardInterrupt:
                return 0
    except SingletonBotError as e:
        logger.error(str(e))
        print(f"\n{e}\n", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
