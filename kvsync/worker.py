#!/usr/bin/env python3
"""
kvsync Cron Worker Entry Point

Runs a command on a cron schedule. Several workers started with the same
--name share one distributed lock, so in serial mode (the default) the
command runs on only one of them per matching minute.

Usage:
    kvsync-cron --cron "*/5 * * * *" --name cleanup -- ./cleanup.sh
    kvsync-cron --cron "@hourly" --parallel -- python rotate.py
    python -m kvsync.worker --cron "0 3 * * *" --host redis.internal -- backup

Environment Variables:
    KVSYNC_REDIS_HOST     - Store host
    KVSYNC_REDIS_PORT     - Store port
    KVSYNC_REDIS_PASSWORD - Store password
    KVSYNC_POOL_SIZE      - Maximum pooled connections
    KVSYNC_DEBUG          - Enable debug mode (true/false)
"""

import argparse
import asyncio
import logging
import signal
import sys
from dataclasses import replace
from datetime import datetime
from typing import List, Optional

from .config.settings import settings
from .context import CoordinationContext
from .cron.expression import CronExpression
from .cron.job import CronScheduler

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="kvsync: run a command on a fleet-wide cron schedule",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--cron",
        type=str,
        required=True,
        help="Five-field cron expression or @preset",
    )

    parser.add_argument(
        "--name",
        type=str,
        default=None,
        help="Job identity shared by all workers (default: command name)",
    )

    parser.add_argument(
        "--parallel",
        action="store_true",
        help="Run on every worker instead of one per minute",
    )

    parser.add_argument(
        "--host",
        type=str,
        default=settings.REDIS_HOST,
        help="Store host",
    )

    parser.add_argument(
        "--port",
        type=int,
        default=settings.REDIS_PORT,
        help="Store port",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        default=settings.DEBUG,
        help="Enable debug logging",
    )

    parser.add_argument(
        "command",
        nargs=argparse.REMAINDER,
        help="Command to run (after --)",
    )

    args = parser.parse_args(argv)
    if args.command and args.command[0] == "--":
        args.command = args.command[1:]
    if not args.command:
        parser.error("a command to run is required")
    if args.name is None:
        args.name = args.command[0]
    return args


def setup_logging(debug: bool = False) -> None:
    """Configure logging based on debug flag."""
    level = logging.DEBUG if debug else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
        ]
    )


def make_command_runner(command: List[str]):
    """Build the job function that runs command as a subprocess."""
    async def run_command(now: datetime) -> int:
        logger.info(f"Running {' '.join(command)} for {now:%Y-%m-%d %H:%M}")
        process = await asyncio.create_subprocess_exec(*command)
        returncode = await process.wait()
        if returncode != 0:
            logger.warning(f"Command exited with status {returncode}")
        return returncode

    return run_command


async def run_worker(args: argparse.Namespace) -> None:
    """Schedule the command and run until a shutdown signal arrives."""
    expression = CronExpression.from_cron_string(args.cron)
    config = replace(settings, REDIS_HOST=args.host, REDIS_PORT=args.port)

    context = CoordinationContext(config=config)
    scheduler = CronScheduler(context=context)
    scheduler.schedule(
        expression,
        make_command_runner(args.command),
        name=args.name,
        serial=not args.parallel,
    )

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    # Register signal handlers (Unix only)
    if sys.platform != 'win32':
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, shutdown_event.set)

    logger.info(f"Starting kvsync cron worker")
    logger.info(f"  Job: {args.name} ({'parallel' if args.parallel else 'serial'})")
    logger.info(f"  Schedule: {args.cron}")
    logger.info(f"  Store: {args.host}:{args.port}")

    scheduler.start()
    try:
        await shutdown_event.wait()
    finally:
        logger.info("Stopping scheduler...")
        await scheduler.stop()
        await context.shutdown()


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the cron worker."""
    args = parse_args(argv)
    setup_logging(debug=args.debug)

    try:
        asyncio.run(run_worker(args))
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    finally:
        logger.info("Worker shutdown complete")


if __name__ == "__main__":
    main()
