# app/api/routes/websocket.py
"""
📡 WEBSOCKET /api/ws

Client → server:
    {"action": "subscribe", "topic": "order:<id>"}
    {"action": "unsubscribe", "topic": "payment:<id>"}
    {"action": "ping"}

Server → client:
    {"type": "connection", ...}                     on connect
    {"type": "subscribed" | "unsubscribed", "topic": ...}
    {"type": "ORDER_STATUS_UPDATE" | "PAYMENT_STATUS_UPDATE" | "NEW_ORDER", ...}
    {"type": "error", "message": ...}

Shortcut: /api/ws?order_id=...&payment_id=... subscribes right away.
The "admin" topic needs ?token=<ADMIN_API_TOKEN> when one is configured.
"""

import json
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

import structlog

from config.settings import config

from app.api.dependencies import get_broadcaster, is_admin_token, require_admin
from app.services.broadcaster import (
    ADMIN_TOPIC,
    OrderBroadcaster,
    is_valid_topic,
    order_topic,
    payment_topic,
)

logger = structlog.get_logger()
router = APIRouter(tags=["websocket"])


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.websocket(config.websocket_path)
async def order_events(
    websocket: WebSocket,
    order_id: Optional[str] = None,
    payment_id: Optional[str] = None,
    token: Optional[str] = None,
):
    broadcaster: OrderBroadcaster = websocket.app.state.broadcaster

    await websocket.accept()
    broadcaster.connect(websocket)
    logger.info("ws_connected", order_id=order_id, payment_id=payment_id)

    try:
        await websocket.send_json({
            "type": "connection",
            "message": "Connected to order updates",
            "timestamp": _now(),
        })

        if order_id:
            broadcaster.subscribe(websocket, order_topic(order_id))
        if payment_id:
            broadcaster.subscribe(websocket, payment_topic(payment_id))

        while True:
            raw = await websocket.receive_text()

            try:
                message = json.loads(raw)
            except ValueError:
                await websocket.send_json({"type": "error", "message": "Invalid JSON"})
                continue

            if not isinstance(message, dict):
                await websocket.send_json({"type": "error", "message": "Invalid message"})
                continue

            action = message.get("action")
            topic = message.get("topic")

            if action == "ping":
                await websocket.send_json({"type": "pong", "timestamp": _now()})
                continue

            if action not in ("subscribe", "unsubscribe") or not isinstance(topic, str) or not is_valid_topic(topic):
                await websocket.send_json({"type": "error", "message": "Invalid message"})
                continue

            if action == "subscribe":
                if topic == ADMIN_TOPIC and not is_admin_token(token or message.get("token")):
                    logger.warning("ws_admin_subscribe_rejected")
                    await websocket.send_json({"type": "error", "message": "Unauthorized"})
                    continue
                broadcaster.subscribe(websocket, topic)
                await websocket.send_json({"type": "subscribed", "topic": topic})
            else:
                broadcaster.unsubscribe(websocket, topic)
                await websocket.send_json({"type": "unsubscribed", "topic": topic})

    except WebSocketDisconnect:
        logger.info("ws_disconnected", order_id=order_id, payment_id=payment_id)

    finally:
        broadcaster.disconnect(websocket)


@router.get(f"{config.websocket_path}/stats", dependencies=[Depends(require_admin)])
async def websocket_stats(broadcaster: OrderBroadcaster = Depends(get_broadcaster)):
    return broadcaster.stats()
