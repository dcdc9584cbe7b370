"""Command-line entry point for the scheduled sweepers"""

import asyncio
import logging
import sys

from book_detection.config import settings
from book_detection.workers.retention_cleaner import RetentionCleaner
from book_detection.workers.timeout_reaper import TimeoutReaper

logger = logging.getLogger(__name__)

SWEEPERS = {
    "reaper": TimeoutReaper,
    "cleaner": RetentionCleaner,
}


async def run_sweeper(name: str):
    """Run one sweeper pass and return its summary"""
    sweeper = SWEEPERS[name]()
    return await sweeper.run()


def main(argv=None):
    """
    Main entry point for running a sweeper from an external scheduler.

    Usage:
        python -m book_detection.workers.sweepers reaper
        python -m book_detection.workers.sweepers cleaner
    """
    import argparse

    parser = argparse.ArgumentParser(description="Detection Job Sweepers")
    parser.add_argument(
        "sweeper",
        choices=sorted(SWEEPERS),
        help="Sweeper to run once",
    )

    args = parser.parse_args(argv)

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    try:
        summary = asyncio.run(run_sweeper(args.sweeper))
    except Exception as e:
        logger.error(f"Sweeper {args.sweeper} failed: {e}", exc_info=True)
        sys.exit(1)

    logger.info(f"Sweeper {args.sweeper} finished: {summary.model_dump()}")
    sys.exit(1 if summary.errored else 0)


if __name__ == "__main__":
    main()
