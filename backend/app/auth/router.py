"""Auth router and request authentication dependency.

Endpoints:
    GET /profile - Identity behind the caller's credential
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from app.chat.manager import get_manager

from .verifier import AuthFailure, Identity, extract_bearer_token

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])


async def get_current_identity(
    request: Request,
    authorization: Optional[str] = Header(default=None),
) -> Identity:
    """FastAPI dependency returning the authenticated caller.

    The credential is read from the auth cookie, falling back to an
    ``Authorization: Bearer`` header.
    """
    manager = get_manager()
    token = request.cookies.get(manager.verifier.cookie_name) or extract_bearer_token(authorization)
    try:
        identity = manager.verifier.verify(token)
    except AuthFailure as e:
        logger.warning("UNAUTHORIZED_ACCESS path=%s reason=%s", request.url.path, e)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))

    await manager.remember_user(identity)
    return identity


@router.get("/profile", response_model=Identity)
async def profile(identity: Identity = Depends(get_current_identity)) -> Identity:
    """Return the identity carried by the caller's credential."""
    return identity
