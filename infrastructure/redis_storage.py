# infrastructure/redis_storage.py
"""
🔴 REDIS

Redis carries order/payment events between API workers.
Each worker keeps its own WebSocket connections, so an event produced
by the worker that received a webhook has to reach the worker where
the customer's socket lives.

Example:
- Worker A receives the Mercado Pago webhook → publishes to "orders:events"
- Worker B is subscribed → pushes PAYMENT_STATUS_UPDATE to the PIX screen

With BROADCAST_BACKEND=memory (the default) Redis is never touched and
events stay inside the process.
"""

from typing import Optional

from redis.asyncio.client import Redis

import structlog

from config.settings import config

logger = structlog.get_logger()


# ==========================================
# CLIENT FACTORY
# ==========================================

def create_redis(url: Optional[str] = None) -> Redis:
    """
    Create an asyncio Redis client.

    Example:
        redis = create_redis()
        await redis.publish("orders:events", "{...}")
    """
    return Redis.from_url(
        url or config.redis_url,
        encoding="utf-8",
        decode_responses=True
    )


# ==========================================
# CHECK THE CONNECTION
# ==========================================

async def check_redis_connection(redis: Optional[Redis]) -> bool:
    """
    Check that Redis is alive and answering.
    Called on startup for diagnostics.
    """

    if redis is None:
        return False

    try:
        await redis.ping()
        return True
    except Exception as e:
        logger.error("redis_connection_error", error=str(e))
        return False


# ==========================================
# EXPORT
# ==========================================

__all__ = [
    "create_redis",
    "check_redis_connection",
]
