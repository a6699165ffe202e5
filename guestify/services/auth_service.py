"""Bearer-token authentication and get_current_user dependency.

Tokens are issued by the identity provider; this service only verifies them.
"""

import jwt
from fastapi import Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from guestify.config import get_settings
from guestify.constants import BEARER_PREFIX
from guestify.db.session import get_db
from guestify.models.profile import Profile


def _decode_jwt(token: str) -> dict:
    settings = get_settings()
    return jwt.decode(
        token, settings.jwt_secret, algorithms=[settings.jwt_algorithm],
        audience=settings.jwt_audience,
        options={"require": ["exp", "sub"]},
    )


async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Profile:
    """FastAPI dependency: decode the bearer token and return the Profile, or raise 401."""
    header = request.headers.get("Authorization", "")
    if not header.startswith(BEARER_PREFIX):
        raise HTTPException(status_code=401, detail="Authorization header is required")
    try:
        payload = _decode_jwt(header.removeprefix(BEARER_PREFIX))
        user_id = str(payload["sub"])
    except (jwt.ExpiredSignatureError, jwt.InvalidTokenError, KeyError):
        raise HTTPException(status_code=401, detail="Invalid or expired session")

    result = await db.execute(select(Profile).where(Profile.id == user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=401, detail="User not allowed")
    return user
