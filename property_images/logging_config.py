"""
Structured logging setup shared by both Lambda entry points.
"""

import logging

import structlog


def configure_logging(level: str = "INFO") -> None:
    """Configure structlog for JSON output on top of stdlib logging."""
    logging.basicConfig(format="%(message)s", level=getattr(logging, level, logging.INFO))
    logging.getLogger().setLevel(getattr(logging, level, logging.INFO))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
