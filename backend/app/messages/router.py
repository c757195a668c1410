"""Message history and user directory endpoints.

Endpoints:
    GET /messages/{peer_id}: Conversation with a peer (marks it read)
    GET /people: All users in the directory
"""
import asyncio
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from app.auth.router import get_current_identity
from app.auth.verifier import Identity
from app.chat.manager import get_manager
from .schemas import UserRecord

logger = logging.getLogger(__name__)

router = APIRouter(tags=["messages"])


@router.get("/messages/{peer_id}")
async def get_conversation(
    peer_id: str,
    identity: Identity = Depends(get_current_identity),
) -> JSONResponse:
    """Return the conversation between the caller and *peer_id*.

    Opening a conversation reads it: every unread message from the peer to
    the caller is marked read and the peer's live connections receive
    ``{type: "all-read"}``.

    Returns:
        JSON array of messages, oldest first.
    """
    if peer_id == identity.userId:
        raise HTTPException(status_code=400, detail="Cannot open a conversation with yourself")

    messages = await get_manager().receipts.open_conversation(identity.userId, peer_id)
    logger.info(f"[History] {identity.userId} fetched {len(messages)} messages with {peer_id}")
    return JSONResponse([msg.model_dump(mode="json") for msg in messages])


@router.get("/people", response_model=List[UserRecord])
async def list_people(_: Identity = Depends(get_current_identity)) -> List[UserRecord]:
    """List every known user, online or not."""
    return await asyncio.to_thread(get_manager().store.list_users)
