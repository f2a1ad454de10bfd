"""
Supabase client and current-user resolution.

The service client bypasses RLS; every query in the sync subsystem filters by
user_id explicitly, so the user id must come from a verified session token.
Session JWTs are HS256-signed with the project's JWT secret
(SUPABASE_JWT_SECRET) and carry the user id in `sub`.
"""
from __future__ import annotations

import os
import logging
from functools import lru_cache
from typing import Optional, Annotated

import jwt
from supabase import create_client, Client
from fastapi import Depends, HTTPException, Header

logger = logging.getLogger(__name__)

JWT_ALGORITHMS = ["HS256"]
JWT_AUDIENCE = "authenticated"


@lru_cache()
def get_supabase_url() -> str:
    url = os.environ.get("SUPABASE_URL")
    if not url:
        raise ValueError("SUPABASE_URL must be set")
    return url


@lru_cache()
def get_service_client() -> Client:
    """Get Supabase client with service key (bypasses RLS)."""
    url = get_supabase_url()
    key = os.environ.get("SUPABASE_SERVICE_KEY")
    if not key:
        raise ValueError("SUPABASE_SERVICE_KEY must be set")
    return create_client(url, key)


def verify_session_token(token: str) -> dict:
    """
    Verify a session JWT's signature, expiry and audience; return its claims.

    Raises HTTPException(401) for any invalid token and 503 when the JWT
    secret is not configured.
    """
    secret = os.environ.get("SUPABASE_JWT_SECRET")
    if not secret:
        raise HTTPException(status_code=503, detail="SUPABASE_JWT_SECRET not configured")

    try:
        return jwt.decode(token, secret, algorithms=JWT_ALGORITHMS, audience=JWT_AUDIENCE)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Session expired")
    except jwt.InvalidTokenError as e:
        logger.warning(f"[AUTH] Rejected session token: {e}")
        raise HTTPException(status_code=401, detail="Invalid session token")


def get_current_user_id(authorization: Optional[str] = Header(None)) -> str:
    """
    Resolve the current user id from the verified session JWT (`sub` claim).
    Use as FastAPI dependency.
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid Authorization header")

    payload = verify_session_token(authorization[len("Bearer "):])

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token: no user ID")
    return user_id


# Type alias for dependency injection
CurrentUserId = Annotated[str, Depends(get_current_user_id)]
