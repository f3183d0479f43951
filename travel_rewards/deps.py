from __future__ import annotations
from typing import Any, Dict, AsyncGenerator
from fastapi import Header, HTTPException, status
import time
import uuid
import httpx
import jwt
from jwt.algorithms import RSAAlgorithm
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db import get_session, async_session_maker
from .core.config import get_settings

settings = get_settings()

ROLES = ("user", "owner", "organiser", "admin", "service")

_JWKS: Dict[str, Any] | None = None
_JWKS_TS: float = 0.0
_JWKS_TTL: int = 3600

async def fetch_jwks() -> Dict[str, Any]:
    global _JWKS, _JWKS_TS
    now = time.time()
    if _JWKS is None or (now - _JWKS_TS) > _JWKS_TTL:
        async with httpx.AsyncClient() as client:
            r = await client.get(settings.auth_jwks_url, timeout=5.0)
            r.raise_for_status()
            _JWKS = r.json()
            _JWKS_TS = now
    return _JWKS

async def get_signing_key():
    jwks = await fetch_jwks()
    key = jwks["keys"][0]
    return RSAAlgorithm.from_jwk(key)

async def get_claims(authorization: str | None = Header(default=None)) -> Dict[str, Any]:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")
    token = authorization.split(" ", 1)[1].strip()
    try:
        key = await get_signing_key()
    except httpx.HTTPError:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Auth keys unavailable")
    try:
        payload = jwt.decode(
            token, key=key, algorithms=["RS256"], issuer=settings.token_issuer,
            options={"verify_aud": False},
        )
    except jwt.PyJWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    if "sub" not in payload or payload.get("role") not in ROLES:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    return payload

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async for s in get_session():
        yield s

# --- claim helpers

def current_user_id(claims: Dict[str, Any]) -> uuid.UUID:
    try:
        return uuid.UUID(str(claims["sub"]))
    except (KeyError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid subject")

def has_role(claims: Dict[str, Any], *roles: str) -> bool:
    return claims.get("role") in roles

def require_roles(claims: Dict[str, Any], *roles: str) -> None:
    if not has_role(claims, *roles):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"{'/'.join(r.title() for r in roles)} role required")

def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Session factory for flows that open one transaction per item (the expiry sweep)."""
    return async_session_maker
