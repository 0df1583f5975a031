import uuid

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.security import decode_token
from app.models.user import User
from app.services.finicity_auth import TokenCache, token_cache
from app.services.finicity_client import FinicityClient

_UNAUTHORIZED = HTTPException(
    status_code=status.HTTP_401_UNAUTHORIZED,
    detail="Not authenticated",
    headers={"WWW-Authenticate": "Bearer"},
)


def _extract_token(request: Request) -> str | None:
    auth = request.headers.get("Authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return request.cookies.get("access_token")


async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> User:
    token = _extract_token(request)
    if not token:
        raise _UNAUTHORIZED

    payload = decode_token(token)
    if not payload or payload.get("type") != "access" or not payload.get("sub"):
        raise _UNAUTHORIZED

    try:
        user_id = uuid.UUID(payload["sub"])
    except ValueError:
        raise _UNAUTHORIZED

    user = await db.get(User, user_id)
    if user is None:
        raise _UNAUTHORIZED
    return user


def get_finicity_client() -> FinicityClient:
    return FinicityClient.from_settings()


def get_token_cache() -> TokenCache:
    return token_cache
