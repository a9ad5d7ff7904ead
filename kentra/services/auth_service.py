"""JWT session handling and the get_current_user dependency."""

from datetime import datetime, timedelta, UTC

import jwt
from fastapi import Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kentra.config import get_settings
from kentra.constants import COOKIE_NAME
from kentra.db.session import get_db
from kentra.models.user import User
from kentra.services.rate_limiter import get_client_identifier


def create_jwt(user_id: int) -> str:
    """Create a signed JWT for the given user."""
    settings = get_settings()
    payload = {
        "sub": str(user_id),
        "exp": datetime.now(UTC) + timedelta(days=settings.jwt_expire_days),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def _decode_jwt(token: str) -> dict:
    settings = get_settings()
    return jwt.decode(
        token, settings.jwt_secret, algorithms=[settings.jwt_algorithm],
        options={"require": ["exp", "sub"]},
    )


def _extract_token(request: Request) -> str | None:
    auth_header = request.headers.get("authorization", "")
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip() or None
    return request.cookies.get(COOKIE_NAME)


async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> User:
    """FastAPI dependency: decode the bearer token or session cookie, or raise 401."""
    token = _extract_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="No autorizado")
    try:
        payload = _decode_jwt(token)
        user_id = int(payload["sub"])
    except (jwt.ExpiredSignatureError, jwt.InvalidTokenError, KeyError, ValueError):
        raise HTTPException(status_code=401, detail="Sesión inválida o expirada")

    result = await db.execute(select(User).where(User.id == user_id, User.is_active == True))
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=401, detail="Usuario no encontrado o desactivado")
    return user


def user_rate_limit_key(request: Request) -> str:
    """Rate limit by user id when a valid token is present, else by IP."""
    token = _extract_token(request)
    if token:
        try:
            return f"user:{int(_decode_jwt(token)['sub'])}"
        except (jwt.InvalidTokenError, KeyError, ValueError):
            pass
    return get_client_identifier(request)
