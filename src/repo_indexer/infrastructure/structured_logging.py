"""
Structured Logging Infrastructure

Configures structlog on top of the standard logging module:
- JSON output for log aggregation, console rendering for development
- ISO timestamps, logger name and level on every event
- Exception stack traces rendered into the event

Modules call get_logger(__name__) and log snake_case events with keyword
context, e.g. logger.info("batch_processed", project_id=..., processed=10).
"""

import logging
import os
import sys
from typing import Optional

import structlog

SERVICE_NAME = os.getenv("SERVICE_NAME", "repo-indexer")


def setup_structured_logging(
    level: str = "INFO",
    json_output: bool = False,
    stream=None
) -> None:
    """Configure structlog and the stdlib root logger for the process"""
    log_level = getattr(logging, level.upper(), logging.INFO)

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    # JSON output for production, pretty for development
    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Logs go to stderr so CLI output on stdout stays parseable
    logging.basicConfig(
        format="%(message)s",
        level=log_level,
        stream=stream or sys.stderr,
        force=True,
    )


def get_logger(name: Optional[str] = None):
    """Get a structlog logger bound to the service name"""
    return structlog.get_logger(name or SERVICE_NAME, service=SERVICE_NAME)


