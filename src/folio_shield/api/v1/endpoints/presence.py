"""WebSocket endpoint for live presence."""

from __future__ import annotations

import json
import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from folio_shield.security.client import extract_client_ip
from folio_shield.services.presence import PresenceHub, get_presence_hub

logger = logging.getLogger(__name__)

router = APIRouter(tags=["presence"])

PresenceHubDep = Annotated[PresenceHub, Depends(get_presence_hub)]


def decode_frame(message: dict[str, Any]) -> Any:
    """Decode a ``websocket.receive`` message carrying JSON as text or UTF-8 bytes.

    Returns ``None`` for frames that are empty or not valid JSON.
    """
    raw = message.get("text")
    if raw is None:
        payload = message.get("bytes")
        if not payload:
            return None
        try:
            raw = payload.decode("utf-8")
        except UnicodeDecodeError:
            return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


@router.websocket("/ws/presence")
async def presence_socket(websocket: WebSocket, hub: PresenceHubDep) -> None:
    """Bidirectional presence channel.

    On connect the server sends a ``connected`` frame with the socket id and a
    ``liveCountUpdate`` frame. Clients send ``visitorJoin``, ``pageChange``,
    ``activityUpdate`` and ``visitorLeave`` frames as text or binary JSON.
    """
    client_host = websocket.client.host if websocket.client else None
    ip_address = extract_client_ip(websocket.headers, client_host)
    user_agent = websocket.headers.get("user-agent", "")

    socket_id = await hub.connect(websocket)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            frame = decode_frame(message)
            if not isinstance(frame, dict):
                logger.debug("Ignoring malformed presence frame from %s", socket_id)
                continue
            data = frame.get("data")
            await hub.handle_event(
                socket_id,
                frame.get("event"),
                data if isinstance(data, dict) else {},
                ip_address=ip_address,
                user_agent=user_agent,
            )
    except WebSocketDisconnect:
        pass
    finally:
        await hub.disconnect(socket_id)
