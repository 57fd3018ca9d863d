"""
structlog configuration for the automation agent.

Log events go through the stdlib ``logging`` module so uvicorn, aiohttp and
web3 records land in the same handlers as ours.
"""

import logging
import sys
from pathlib import Path
from typing import List, Optional

import structlog
from rich.console import Console
from rich.logging import RichHandler

from .config import Settings


NOISY_LOGGERS = ("uvicorn", "asyncio", "aiohttp", "web3", "urllib3")

PLAIN_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _renderer(settings: Settings):
    if settings.log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=settings.is_development)


def _formatter(settings: Settings) -> logging.Formatter:
    # Records are already rendered by structlog in json mode
    return logging.Formatter("%(message)s" if settings.log_format == "json" else PLAIN_FORMAT)


def _console_handler(settings: Settings) -> logging.Handler:
    if settings.is_development and settings.log_format != "json":
        return RichHandler(
            console=Console(file=sys.stderr),
            show_time=True,
            show_path=True,
            rich_tracebacks=True,
        )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_formatter(settings))
    return handler


def _build_handlers(settings: Settings, log_file: Optional[str]) -> List[logging.Handler]:
    handlers = [_console_handler(settings)]

    target = log_file or settings.log_file
    if target:
        path = Path(target)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path)
        file_handler.setFormatter(_formatter(settings))
        handlers.append(file_handler)

    return handlers


def setup_logging(settings: Settings, log_file: Optional[str] = None) -> None:
    """Route structlog through stdlib logging with console and optional file output."""
    level = getattr(logging, settings.log_level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            _renderer(settings),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handlers = _build_handlers(settings, log_file)
    for handler in handlers:
        handler.setLevel(level)
    logging.basicConfig(level=level, handlers=handlers, force=True)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
