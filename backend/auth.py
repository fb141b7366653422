"""
Bearer-token identity adapter.

Tokens are issued elsewhere; this module only decodes them and loads the
matching actor record from the users collection.
"""

from typing import Optional
import jwt
from fastapi import HTTPException, Request, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import ValidationError

from ledger_core import Actor, NotFoundError

USERS_COLLECTION = "users"

# HTTP Bearer for token extraction
security = HTTPBearer()


def decode_access_token(token: str, secret_key: str, algorithm: str = "HS256") -> dict:
    """Decode and validate JWT access token"""
    try:
        payload = jwt.decode(token, secret_key, algorithms=[algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Access token has expired. Please refresh."
        )
    except jwt.InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials"
        )

    # Verify token type
    if payload.get("type", "access") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type"
        )
    return payload


def actor_from_record(user: dict) -> Actor:
    """Build an Actor from a users document; role and party come from the record, never the token"""
    try:
        return Actor(
            id=user["id"],
            role=user.get("role") or "member",
            party=user.get("party") or None,
            permissions=set(user.get("permissions") or []),
        )
    except (KeyError, ValidationError):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User record has no valid ledger role"
        )


async def get_current_actor(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> Actor:
    """Extract the acting user from the bearer token"""
    settings = request.app.state.settings
    payload = decode_access_token(credentials.credentials, settings.jwt_secret_key, settings.jwt_algorithm)

    user_id: Optional[str] = payload.get("user_id") or payload.get("sub")
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials"
        )

    try:
        user = await request.app.state.store.get_by_id(USERS_COLLECTION, user_id)
    except NotFoundError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found"
        )
    if user.get("active_status") is False:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive"
        )
    return actor_from_record(user)
