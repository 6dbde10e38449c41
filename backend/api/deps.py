"""Shared API dependencies: settings, DB session, auth, device identity."""

from __future__ import annotations

import re
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from backend.config import Settings
from backend.models.user import User
from backend.services.auth_service import decode_access_token
from backend.services.lock_service import KeyedLocks

security = HTTPBearer(auto_error=False)

_DEVICE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def get_settings(request: Request) -> Settings:
    """Get application settings from app state."""
    settings: Settings = request.app.state.settings
    return settings


def get_entity_locks(request: Request) -> KeyedLocks:
    """Get the per-entity lock registry from app state."""
    locks: KeyedLocks = request.app.state.entity_locks
    return locks


async def get_session(request: Request) -> AsyncGenerator[AsyncSession]:
    """Get a database session."""
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        yield session


async def get_current_user(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)] = None,
    session: AsyncSession = Depends(get_session),
) -> User | None:
    """Get current authenticated user, or None if not authenticated."""
    if credentials is None:
        return None

    settings: Settings = request.app.state.settings
    payload = decode_access_token(credentials.credentials, settings.secret_key)
    if payload is None:
        return None
    user_id = payload.get("sub")
    if not isinstance(user_id, str) or not user_id.isdigit():
        return None
    user = await session.get(User, int(user_id))
    if user is None or not user.is_active:
        return None
    return user


async def require_auth(
    user: Annotated[User | None, Depends(get_current_user)],
) -> User:
    """Require authentication. Raises 401 if not authenticated."""
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def get_device_id(
    x_device_id: Annotated[str | None, Header()] = None,
) -> str:
    """Return the pushing device's id from the ``X-Device-Id`` header."""
    if x_device_id is None or not _DEVICE_ID_RE.fullmatch(x_device_id):
        raise HTTPException(
            status_code=422,
            detail="X-Device-Id header must be 1-64 characters of [A-Za-z0-9_-]",
        )
    return x_device_id
