"""structlog setup shared by the API process and Celery workers."""

import logging
import sys
import structlog

from marketsync.config import settings

_configured = False


def configure_logging(level: str = None, json_logs: bool = None) -> None:
    """
    Configure structlog and the stdlib root logger once per process.

    Args:
        level: Log level name (defaults to LOG_LEVEL)
        json_logs: Render JSON lines (defaults to true outside development)
    """
    global _configured
    if _configured:
        return

    level = (level or settings.log_level).upper()
    if json_logs is None:
        json_logs = settings.app_env != "development"

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _configured = True
