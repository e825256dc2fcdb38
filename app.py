#!/usr/bin/env python3
"""
Notification Queue - Service Entry Point.

============================================================
SINGLE ENTRYPOINT
============================================================
Runs the dispatch side of the notification queue.

- Builds storage, resolver, rate limiter, client and dispatcher
  from environment configuration (.env aware)
- Runs one tick (--once) or the periodic loop
- Stops gracefully on SIGINT / SIGTERM

============================================================
USAGE
============================================================
Direct execution:
    python app.py
    python app.py --once --tenant customer-a --tenant customer-b

With PM2:
    pm2 start app.py --interpreter python --name telegram-queue

Environment-based configuration:
    NQ_STORAGE_BACKEND=sql DATABASE_URL=postgresql+asyncpg://... python app.py

============================================================
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import List, Optional

from notification_queue.clock import get_default_clock
from notification_queue.config import QueueServiceConfig
from notification_queue.dispatcher import Dispatcher
from notification_queue.logging_utils import setup_logging
from notification_queue.priority_resolver import PriorityCache, PriorityResolver
from notification_queue.queue_core import QueueCore
from notification_queue.rate_limiter import RateLimiter
from notification_queue.storage import StorageBackend, StorageFactory
from notification_queue.telegram_client import TelegramClient
from notification_queue.types import NotificationQueueError


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="telegram-queue",
        description="Priority notification dispatch queue for the Telegram Bot API",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                                # Run the dispatch loop
  %(prog)s --once                         # One tick for tenants with work
  %(prog)s --once --tenant customer-a     # One tick for one tenant
  %(prog)s --backend sql --log-level DEBUG
        """,
    )

    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single dispatch tick and exit",
    )

    parser.add_argument(
        "--tenant",
        action="append",
        dest="tenants",
        metavar="CUSTOMER_ID",
        help="Tenant to dispatch (repeatable, default: every tenant with work)",
    )

    parser.add_argument(
        "--backend",
        choices=[b.value for b in StorageBackend],
        help="Storage backend (overrides NQ_STORAGE_BACKEND)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (overrides LOG_LEVEL)",
    )

    parser.add_argument(
        "--env-file",
        metavar="PATH",
        help="Load environment from this file instead of .env",
    )

    return parser


# ============================================================
# SERVICE
# ============================================================

def install_signal_handlers(dispatcher: Dispatcher) -> None:
    """Stop the dispatcher on SIGINT / SIGTERM."""
    logger = logging.getLogger(__name__)

    def _handle(signum: int, frame=None) -> None:
        logger.info(f"Received signal {signum}")
        dispatcher.stop()

    if sys.platform == "win32":
        signal.signal(signal.SIGINT, _handle)
        return

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _handle, sig)


async def run_service(config: QueueServiceConfig, once: bool, tenants: Optional[List[str]]) -> int:
    """
    Wire the object graph and run the dispatcher.

    Returns:
        Exit code
    """
    logger = logging.getLogger(__name__)
    clock = get_default_clock()

    try:
        bundle = StorageFactory.create(config.storage, clock)
    except NotificationQueueError as e:
        logger.error(f"Invalid storage configuration: {e}")
        return 2

    client = TelegramClient(
        api_base=config.telegram.api_base,
        timeout_seconds=config.telegram.timeout_seconds,
        max_message_length=config.telegram.max_message_length,
    )

    try:
        await bundle.storage.initialize()

        queue = QueueCore(bundle.storage, clock)
        resolver = PriorityResolver(
            bundle.config_source,
            cache=PriorityCache(config.cache.ttl_seconds, clock),
            clock=clock,
        )
        dispatcher = Dispatcher(
            queue=queue,
            rate_limiter=RateLimiter(bundle.storage, clock),
            resolver=resolver,
            client=client,
            config=config.dispatcher,
            clock=clock,
        )

        if once:
            results = await dispatcher.run_once(tenants)
            for result in results.values():
                print(json.dumps(result.to_dict()))
            return 1 if any(r.error for r in results.values()) else 0

        install_signal_handlers(dispatcher)

        provider = None
        if tenants:
            async def provider() -> List[str]:
                return list(tenants)

        logger.info("Starting dispatch loop (press Ctrl+C to stop)...")
        await dispatcher.run_forever(provider)
        return 0

    except NotificationQueueError as e:
        logger.error(f"Fatal error: {e}")
        return 1
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1
    finally:
        await client.close()
        await bundle.close()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = create_parser().parse_args(argv)

    config = QueueServiceConfig.from_env(args.env_file)
    if args.backend:
        config.storage.backend = args.backend
    if args.log_level:
        config.log_level = args.log_level

    setup_logging(config.log_level, config.log_format)

    try:
        return asyncio.run(run_service(config, args.once, args.tenants))
    except KeyboardInterrupt:
        return 130


# ============================================================
# ENTRY POINT
# ============================================================

if __name__ == "__main__":
    sys.exit(main())
