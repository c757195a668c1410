"""Relay router providing the live WebSocket endpoint.

This module provides:
    - WebSocket /ws: presence, message relay, read receipts, heartbeats

The credential is the ``token`` cookie sent with the upgrade request (the
browser client's login sets it). Non-browser clients may pass
``?token=<jwt>`` instead.

Protocol Flow:
    1. Client connects -> server verifies the credential
       -> everyone receives {online: [...]}
    2. Client sends {recipient, text?, file?, sendTime}
       -> message persisted, recipient's connections receive the record
    3. Client sends {type: "selected_user_change", selectedUserId}
    4. Client sends {type: "read", message_id, ...}
       -> original sender's connections receive {type: "read", ...}
    5. Server sends {type: "ping"} every interval; client answers {type: "pong"}
    6. On disconnect or missed pong -> everyone receives {online: [...]}
"""
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket

from .manager import get_manager

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def websocket_relay_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Credential for clients that cannot send cookies"),
) -> None:
    """WebSocket endpoint serving one live client connection.

    Malformed or unauthorised events are answered with
    ``{type: "error", error}`` on this connection only; the loop keeps
    running until the transport closes or the heartbeat times out.

    Args:
        websocket: The WebSocket connection.
        token: Optional credential from the query string.
    """
    manager = get_manager()
    await websocket.accept()

    credential = websocket.cookies.get(manager.verifier.cookie_name) or token
    connection = await manager.connect(websocket, credential)
    logger.info(
        f"[WS] Connection {connection.id} accepted "
        f"(user={connection.user_id}, {len(manager.registry)} live)"
    )

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break

            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes") or b""
            await manager.handle_raw(connection, raw)
    finally:
        await manager.disconnect(connection)
