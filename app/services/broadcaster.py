# app/services/broadcaster.py
"""
📡 ORDER STATUS BROADCASTER

Pushes order and payment events to connected WebSocket sessions.

Sessions subscribe to topics instead of receiving everything:
- "admin"            → back office (NEW_ORDER, every ORDER_STATUS_UPDATE)
- "order:<id>"       → tracking screen of one order
- "payment:<id>"     → PIX screen waiting for one payment

No replay and no delivery guarantee: a socket that is offline misses
the event and catches up with the next poll.

With a Redis client the broadcaster publishes to a Redis channel and a
listener task delivers locally, so every API worker sees every event.
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Protocol, Set

import structlog
from redis.exceptions import RedisError

logger = structlog.get_logger()


ADMIN_TOPIC = "admin"


def order_topic(order_id: str) -> str:
    return f"order:{order_id}"


def payment_topic(payment_id) -> str:
    return f"payment:{payment_id}"


def is_valid_topic(topic: str) -> bool:
    if topic == ADMIN_TOPIC:
        return True
    prefix, _, key = topic.partition(":")
    return prefix in ("order", "payment") and bool(key)


class Subscriber(Protocol):
    """Anything with an async send_json (starlette WebSocket in production)."""

    async def send_json(self, data: Any) -> None: ...


# ==========================================
# BROADCASTER
# ==========================================

class OrderBroadcaster:
    """Topic-scoped fan-out of order/payment events."""

    def __init__(
        self,
        redis=None,
        channel: str = "orders:events",
        reconnect_delay: float = 1.0,
        reconnect_max_delay: float = 30.0,
    ):
        self._redis = redis
        self._channel = channel
        self._reconnect_delay = reconnect_delay
        self._reconnect_max_delay = reconnect_max_delay
        self._relay_connected = False
        self._topics: Dict[str, Set[Subscriber]] = {}
        self._subscriptions: Dict[Subscriber, Set[str]] = {}
        self._listener: Optional[asyncio.Task] = None

    @property
    def redis(self):
        return self._redis

    @property
    def relay_connected(self) -> bool:
        return self._relay_connected

    # ==========================================
    # CONNECTIONS
    # ==========================================

    def connect(self, socket: Subscriber) -> None:
        self._subscriptions.setdefault(socket, set())

    def disconnect(self, socket: Subscriber) -> None:
        for topic in self._subscriptions.pop(socket, set()):
            sockets = self._topics.get(topic)
            if sockets is None:
                continue
            sockets.discard(socket)
            if not sockets:
                del self._topics[topic]

    def subscribe(self, socket: Subscriber, topic: str) -> None:
        self._subscriptions.setdefault(socket, set()).add(topic)
        self._topics.setdefault(topic, set()).add(socket)

    def unsubscribe(self, socket: Subscriber, topic: str) -> None:
        self._subscriptions.get(socket, set()).discard(topic)
        sockets = self._topics.get(topic)
        if sockets is not None:
            sockets.discard(socket)
            if not sockets:
                del self._topics[topic]

    def stats(self) -> dict:
        return {
            "connectedClients": len(self._subscriptions),
            "topics": {topic: len(sockets) for topic, sockets in self._topics.items()},
            "backend": "redis" if self._redis is not None else "memory",
        }

    # ==========================================
    # PUBLISH
    # ==========================================

    async def publish(self, topics: Iterable[str], message: dict) -> int:
        """
        Publish an event to one or more topics.

        Returns how many local sockets received it (0 when relayed
        through Redis, delivery then happens in the listener). While the
        listener is reconnecting the event is also delivered locally.

        Example:
            await broadcaster.publish(
                [ADMIN_TOPIC, order_topic(order.id)],
                {"type": "ORDER_STATUS_UPDATE", "orderId": order.id, "status": "CONFIRMED"},
            )
        """
        topics = list(dict.fromkeys(topics))
        payload = dict(message)
        payload.setdefault("timestamp", datetime.now(timezone.utc).isoformat())

        if self._redis is not None:
            try:
                await self._redis.publish(
                    self._channel,
                    json.dumps({"topics": topics, "message": payload}, default=str),
                )
                if self._listener is None or self._relay_connected:
                    return 0
                logger.warning("broadcast_relay_reconnecting_local_delivery", event_type=payload.get("type"))
            except Exception as e:
                # Redis down: still serve the sockets of this worker
                logger.error("broadcast_redis_publish_failed", error=str(e), event_type=payload.get("type"))

        return await self.deliver(topics, payload)

    async def deliver(self, topics: Iterable[str], payload: dict) -> int:
        """Send to every local socket subscribed to any of the topics, once."""
        recipients: Set[Subscriber] = set()
        for topic in topics:
            recipients.update(self._topics.get(topic, ()))

        sent = 0
        for socket in list(recipients):
            try:
                await socket.send_json(payload)
                sent += 1
            except Exception as e:
                logger.warning("broadcast_send_failed", error=str(e))
                self.disconnect(socket)

        logger.debug(
            "broadcast_delivered",
            event_type=payload.get("type"),
            topics=list(topics),
            recipients=sent
        )
        return sent

    # ==========================================
    # REDIS LISTENER
    # ==========================================

    async def start(self) -> None:
        if self._redis is None or self._listener is not None:
            return
        self._listener = asyncio.create_task(self._listen())
        logger.info("broadcast_listener_started", channel=self._channel)

    async def stop(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        self._relay_connected = False

        if self._redis is not None:
            await self._redis.aclose()

    async def _listen(self) -> None:
        """
        Keep the relay subscription alive.

        A dropped connection is logged and resubscribed after
        1 s, 2 s, 4 s ... (max reconnect_max_delay). Until then publish()
        also delivers to this worker's sockets.
        """
        failures = 0
        while True:
            try:
                await self._relay()
                error = "subscription closed"
            except (RedisError, OSError) as e:
                error = str(e) or type(e).__name__

            self._relay_connected = False
            failures += 1
            delay = min(self._reconnect_delay * 2 ** (failures - 1), self._reconnect_max_delay)
            logger.error(
                "broadcast_listener_disconnected",
                channel=self._channel,
                error=error,
                failures=failures,
                retry_in=delay
            )
            await asyncio.sleep(delay)

    async def _relay(self) -> None:
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(self._channel)
            self._relay_connected = True
            logger.info("broadcast_listener_subscribed", channel=self._channel)

            async for raw in pubsub.listen():
                if raw.get("type") != "message":
                    continue
                try:
                    envelope = json.loads(raw["data"])
                    await self.deliver(envelope["topics"], envelope["message"])
                except (ValueError, KeyError, TypeError) as e:
                    logger.error("broadcast_envelope_invalid", error=str(e))
        finally:
            self._relay_connected = False
            try:
                await pubsub.aclose()
            except (RedisError, OSError) as e:
                logger.warning("broadcast_pubsub_close_failed", error=str(e))
