"""
Structured logging setup.

Every component gets its logger with `structlog.get_logger(__name__)` and binds
`component=...`; events are snake_case names with keyword fields.
"""

import logging

import structlog

from selfimprove.config import LoggingConfig


def configure_logging(config: LoggingConfig | None = None) -> None:
    """Configure stdlib logging and the structlog processor chain."""
    config = config or LoggingConfig()

    logging.basicConfig(format="%(message)s", level=getattr(logging, config.level))

    renderer = (
        structlog.dev.ConsoleRenderer()
        if config.format == "console"
        else structlog.processors.JSONRenderer()
    )

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
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
