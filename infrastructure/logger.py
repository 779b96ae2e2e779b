# infrastructure/logger.py
"""
📝 LOGGING

Structured logging for the whole service.
Uses structlog so every event is a JSON line with keyword context
(order_id, payment_id, channel...).
"""

import logging
import sys

import structlog

from config.settings import config


# ==========================================
# STRUCTLOG INITIALIZATION
# ==========================================

def setup_logging(level: int = None):
    """
    Initialize logging.

    Called once when the application starts (see main.py).
    """

    if level is None:
        level = logging.DEBUG if config.debug else logging.INFO

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
            structlog.processors.JSONRenderer(ensure_ascii=False)
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="[%(asctime)s] %(levelname)s: %(message)s",
        stream=sys.stdout,
        level=level,
    )


# ==========================================
# LOGGER
# ==========================================

logger = structlog.get_logger()
