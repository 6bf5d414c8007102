"""
Structured JSON logging with structlog.
One JSON object per line, so token refresh failures are easy to alert on.
"""

import logging
import structlog
from crm_gateway.config import settings

_configured = False


def configure_logging():
    global _configured
    if _configured:
        return
    level = logging.getLevelName(settings.LOG_LEVEL.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )
    _configured = True


def get_logger():
    return structlog.get_logger(settings.SERVICE_NAME)
