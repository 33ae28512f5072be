#!/usr/bin/env python3
"""
Start the generation queue service.

Runs the dispatcher, hang reclaimer, queue position reporter and delivery
processor, restarting the service when it stays unhealthy.
"""

import asyncio
import os
import sys
import signal
import logging
from pathlib import Path

from genqueue.core.config import QueueConfig
from genqueue.service import GenerationService
from genqueue.utils.logging_config import LOG_DIR, setup_rotating_logger

# Library loggers live under "genqueue", so route that namespace to the file
logger = setup_rotating_logger(
    'genqueue',
    log_file=LOG_DIR / 'service.log',
    console_output=True,
    level=logging.INFO
)

HEALTH_CHECK_INTERVAL = 10
MAX_UNHEALTHY_CHECKS = 6
MAX_CONSECUTIVE_FAILURES = 5


async def run_generation_service():
    """Run the generation service with automatic recovery."""
    consecutive_failures = 0
    shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown_event.set)

    while consecutive_failures < MAX_CONSECUTIVE_FAILURES and not shutdown_event.is_set():
        service = None
        try:
            service = GenerationService(QueueConfig.from_env())
            await service.start()
            consecutive_failures = 0

            unhealthy_count = 0
            while not shutdown_event.is_set():
                try:
                    await asyncio.wait_for(shutdown_event.wait(), timeout=HEALTH_CHECK_INTERVAL)
                    break
                except asyncio.TimeoutError:
                    pass

                status = await service.health_check()
                logger.debug(f"Service status - Healthy: {status.get('healthy')}, Jobs: {status.get('jobs')}")
                if status.get('healthy'):
                    unhealthy_count = 0
                    continue

                unhealthy_count += 1
                logger.warning(f"Service unhealthy (count: {unhealthy_count}): {status.get('error')}")
                if unhealthy_count > MAX_UNHEALTHY_CHECKS:
                    logger.error("Service unhealthy for too long, restarting...")
                    break

        except Exception as e:
            consecutive_failures += 1
            logger.error(
                f"Error in generation service (failure {consecutive_failures}/{MAX_CONSECUTIVE_FAILURES}): {e}",
                exc_info=True,
            )
            if consecutive_failures < MAX_CONSECUTIVE_FAILURES:
                wait_time = min(60, 10 * consecutive_failures)
                logger.info(f"Restarting service in {wait_time} seconds...")
                await asyncio.sleep(wait_time)
            else:
                logger.critical("Too many consecutive failures, giving up")
        finally:
            if service:
                try:
                    await service.stop()
                except Exception as e:
                    logger.error(f"Error during cleanup: {e}")

    logger.info("Generation service stopped")
    return consecutive_failures < MAX_CONSECUTIVE_FAILURES


def main():
    """Main entry point."""
    logger.info("=" * 60)
    logger.info("GENQUEUE GENERATION SERVICE")
    logger.info("=" * 60)

    pid_file = Path.home() / '.genqueue' / 'service.pid'
    pid_file.parent.mkdir(exist_ok=True)
    pid_file.write_text(str(os.getpid()))

    try:
        ok = asyncio.run(run_generation_service())
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        if pid_file.exists():
            pid_file.unlink()
    if not ok:
        sys.exit(1)


if __name__ == '__main__':
    main()
