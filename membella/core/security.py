"""Bearer token verification for member requests.

Tokens are issued elsewhere; this module only validates them. An access token
is an HS256 JWT whose ``sub`` is the member id and whose ``type`` is
``access``.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from membella.core.config import settings
from membella.core.database import get_session
from membella.core.exceptions import AuthenticationError
from membella.modules.member.models import Member
from membella.modules.member.repository import MemberRepository


class TokenPayload(BaseModel):
    """JWT token payload structure."""

    sub: str
    exp: datetime
    type: str


def decode_token(token: str) -> Optional[TokenPayload]:
    """Decode a JWT token.

    Args:
        token: Encoded JWT token

    Returns:
        TokenPayload | None: Decoded payload if the signature is valid
    """
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
        return TokenPayload(
            sub=payload["sub"],
            exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            type=payload.get("type", "access"),
        )
    except (JWTError, KeyError, TypeError, ValueError):
        return None


def validate_token(token: str, expected_type: str = "access") -> Optional[TokenPayload]:
    """Validate signature, type and expiry of a token."""
    payload = decode_token(token)
    if payload is None:
        return None
    if payload.type != expected_type:
        return None
    if payload.exp < datetime.now(timezone.utc):
        return None
    return payload


def get_member_id_from_token(token: str) -> Optional[uuid.UUID]:
    """Extract the member ID from a valid access token."""
    payload = validate_token(token, "access")
    if payload is None:
        return None
    try:
        return uuid.UUID(payload.sub)
    except ValueError:
        return None


security = HTTPBearer(auto_error=False)


async def get_current_member(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    session: AsyncSession = Depends(get_session),
) -> Member:
    """Resolve the authenticated member from the bearer token.

    Raises:
        AuthenticationError: If the token is missing, invalid or expired,
            or the member no longer exists or is inactive
    """
    if credentials is None:
        raise AuthenticationError("Missing bearer token")

    member_id = get_member_id_from_token(credentials.credentials)
    if member_id is None:
        raise AuthenticationError("Invalid or expired token")

    member = await MemberRepository(session).get_member(member_id)
    if member is None or not member.is_active:
        raise AuthenticationError("Member not found or inactive")
    return member
