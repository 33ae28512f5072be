"""
Logging setup for the queue processes.

Long-running processes (``run_service.py``, ``run_api.py``, ``genqueue run``)
write to a size-rotated file under ``~/.genqueue``. Interactive CLI commands
log to the terminal through rich.
"""

import logging
import logging.handlers
from pathlib import Path
from typing import Optional, Union

from rich.console import Console
from rich.logging import RichHandler

LOG_DIR = Path.home() / '.genqueue'
LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'

# Libraries that log every request at INFO
NOISY_LOGGERS = ("aiohttp.access", "uvicorn.access", "asyncio")


def setup_rotating_logger(
    name: str,
    log_file: Optional[Union[str, Path]] = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    level: int = logging.INFO,
    console_output: bool = True
) -> logging.Logger:
    """
    Attach a rotating file handler to the ``name`` logger.

    Module loggers are children of ``genqueue``, so configuring that name
    captures the whole package. Calling this again replaces the handlers.

    Args:
        name: Logger namespace to configure
        log_file: Target file, ``~/.genqueue/<name>.log`` when omitted
        max_bytes: Size at which the file rotates
        backup_count: Rotated files kept next to the active one
        level: Minimum level written
        console_output: Also echo records to stderr

    Returns:
        The configured logger
    """
    path = Path(log_file) if log_file else LOG_DIR / f'{name}.log'
    path.parent.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(name)
    logger.handlers.clear()
    logger.setLevel(level)

    formatter = logging.Formatter(LOG_FORMAT)
    handlers = [
        logging.handlers.RotatingFileHandler(
            filename=path, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'
        )
    ]
    if console_output:
        handlers.append(logging.StreamHandler())

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.setLevel(level)
        logger.addHandler(handler)

    return logger


def setup_cli_logging(level: str = "INFO", console: Optional[Console] = None) -> None:
    """Send all log records to a rich handler on the terminal."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    handler = RichHandler(
        console=console,
        rich_tracebacks=True,
        show_path=log_level == logging.DEBUG,
        markup=False,
    )
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter(fmt="%(message)s", datefmt="[%X]"))

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))
