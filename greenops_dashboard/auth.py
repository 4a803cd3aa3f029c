"""Bearer-token auth shared by every /api route."""

import logging

from fastapi import Header, HTTPException

from greenops_dashboard import supabase_client as db

logger = logging.getLogger(__name__)


def bearer_token(authorization: str) -> str:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization or not authorization.startswith("Bearer "):
        return ""
    return authorization[len("Bearer "):].strip()


def require_user(authorization: str = Header("")) -> dict:
    """FastAPI dependency: resolve the Supabase user or raise 401."""
    token = bearer_token(authorization)
    if not token:
        raise HTTPException(
            status_code=401,
            detail="Authorization header required. Please sign in first.",
        )

    user = db.get_user(token)
    if not user:
        raise HTTPException(status_code=401, detail="Authentication failed. Please sign in again.")

    logger.debug("Authenticated %s", user["email"])
    return user
