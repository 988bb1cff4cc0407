# auth.py — Bearer token verification for WorkHub
# Features:
# - Verifies JWTs issued by the identity provider (never issues them)
# - The "sub" claim is the principal id used by every authorization decision
# - First sight of a principal creates its local User row from the token claims

import os
import secrets
import logging
from typing import Any, Dict, Optional

from jose import jwt, JWTError, ExpiredSignatureError
from fastapi import HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel

from dependencies import Services, get_services
from models import User, utcnow
from store import Store, StoreTransaction

logger = logging.getLogger("workhub.auth")

# ============================================================
# CONFIGURATION
# ============================================================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
if not SECRET_KEY:
    SECRET_KEY = secrets.token_urlsafe(64)
    logger.warning(
        "JWT_SECRET_KEY not set. Generated an ephemeral key; "
        "no externally issued token will verify until it is configured."
    )

ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_AUDIENCE = os.getenv("JWT_AUDIENCE") or None

security = HTTPBearer(auto_error=False)


class CurrentUser(BaseModel):
    id: str
    email: str
    display_name: str = ""


class AuthenticationFailed(Exception):
    """Token missing, malformed, expired or naming an unknown principal"""


# ============================================================
# VERIFICATION
# ============================================================

def decode_token(token: str) -> Dict[str, Any]:
    """Decode and verify a bearer token. Raises AuthenticationFailed."""
    options = {"verify_aud": JWT_AUDIENCE is not None}
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM], audience=JWT_AUDIENCE, options=options)
    except ExpiredSignatureError:
        raise AuthenticationFailed("Token expired")
    except JWTError:
        raise AuthenticationFailed("Invalid token")

    if payload.get("type", "access") != "access":
        raise AuthenticationFailed("Invalid token type")
    if not payload.get("sub"):
        raise AuthenticationFailed("Invalid token")
    return payload


async def resolve_principal(store: Store, payload: Dict[str, Any]) -> CurrentUser:
    """Map verified claims onto the local User row, creating it on first sight"""
    user_id = payload["sub"]
    email: Optional[str] = payload.get("email")
    name: Optional[str] = payload.get("name") or payload.get("display_name")

    async def _run(tx: StoreTransaction) -> User:
        user = await tx.get_user(user_id)
        if user is not None:
            return user
        if not email:
            raise AuthenticationFailed("Unknown principal")
        user = User(id=user_id, email=email.lower(), display_name=name or email.split("@")[0], created_at=utcnow())
        tx.add(user)
        await tx.flush()
        logger.info(f"Registered principal {user_id[:8]} from token claims")
        return user

    user = await store.with_transaction(_run)
    return CurrentUser(id=user.id, email=user.email, display_name=user.display_name or "")


async def authenticate(store: Store, token: str) -> CurrentUser:
    return await resolve_principal(store, decode_token(token))


# ============================================================
# FASTAPI DEPENDENCIES
# ============================================================

async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    services: Services = Depends(get_services),
) -> CurrentUser:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authenticated", headers={"WWW-Authenticate": "Bearer"})
    try:
        return await authenticate(services.store, credentials.credentials)
    except AuthenticationFailed as e:
        raise HTTPException(status_code=401, detail=str(e), headers={"WWW-Authenticate": "Bearer"})
