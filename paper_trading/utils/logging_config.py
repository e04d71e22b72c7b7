"""Logging configuration."""
import logging
import sys
from pathlib import Path
from typing import Optional

import structlog

from paper_trading.core.config import LoggingConfig, logging_config


def setup_logging(config: Optional[LoggingConfig] = None, log_to_file: bool = True):
    """Configure structured logging."""
    config = config or logging_config
    level = getattr(logging, config.level.upper())

    # Configure standard library logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if config.json_format
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    # Configure structlog
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if not log_to_file:
        return

    # Create logs directory
    log_path = Path(config.file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    # Add file handler
    file_handler = logging.FileHandler(log_path)
    file_handler.setLevel(level)

    root_logger = logging.getLogger()
    root_logger.addHandler(file_handler)
