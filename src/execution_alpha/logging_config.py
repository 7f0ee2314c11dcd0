"""
Logging Setup

structlog configuration shared by every component:
- stdlib-backed loggers so level filtering works through logging
- ISO timestamps, logger names and exception rendering
- Console output for development, JSON lines for collection
"""

import logging
import sys
import structlog


def configure_logging(level: str = "INFO", renderer: str = "console") -> None:
    """
    Configure structlog and the stdlib root logger

    Args:
        level: Log level name
        renderer: 'console' or 'json'
    """
    level_value = logging.getLevelName(level.upper())
    if not isinstance(level_value, int):
        raise ValueError(f"Unknown log level: {level}")

    if renderer == "json":
        final_processor = structlog.processors.JSONRenderer()
    elif renderer == "console":
        final_processor = structlog.dev.ConsoleRenderer()
    else:
        raise ValueError(f"Unknown renderer: {renderer}")

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level_value, force=True)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            final_processor
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
