#!/usr/bin/env python3
"""
Serve the generation queue HTTP API.

The app starts the dispatcher, reclaimer and delivery loops in its lifespan,
so this script is an alternative to ``run_service.py``, not a companion.
Pass ``--no-queue`` to serve the read-only views against a queue that is run
elsewhere.

Usage:
    python run_api.py [--host HOST] [--port PORT] [--env-file PATH] [--no-queue]
"""

import argparse
import logging
import os

import uvicorn
from dotenv import load_dotenv

from genqueue.utils.logging_config import LOG_DIR, setup_rotating_logger

logger = logging.getLogger(__name__)


def build_app():
    """uvicorn factory; reads the queue mode chosen on the command line."""
    from genqueue.api.app import create_app

    manage_service = os.environ.get("GENQUEUE_API_MANAGES_QUEUE", "true") == "true"
    return create_app(manage_service=manage_service)


def parse_args():
    parser = argparse.ArgumentParser(description="Serve the generation queue API")
    parser.add_argument("--host", default="127.0.0.1", help="Interface to bind")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind")
    parser.add_argument("--env-file", help="Load GENQUEUE_* settings from this file first")
    parser.add_argument("--no-queue", action="store_true", help="Serve views only, do not run queue loops")
    parser.add_argument("--reload", action="store_true", help="Reload on code changes (development)")
    parser.add_argument(
        "--log-level", default="info", choices=["debug", "info", "warning", "error"]
    )
    return parser.parse_args()


def main():
    args = parse_args()
    if args.env_file:
        load_dotenv(args.env_file)
    os.environ["GENQUEUE_API_MANAGES_QUEUE"] = "false" if args.no_queue else "true"

    setup_rotating_logger(
        "genqueue",
        log_file=str(LOG_DIR / "api.log"),
        level=getattr(logging, args.log_level.upper()),
    )
    mode = "views only" if args.no_queue else "with queue loops"
    logger.info(f"Serving generation queue API on {args.host}:{args.port} ({mode})")

    uvicorn.run(
        "run_api:build_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()
