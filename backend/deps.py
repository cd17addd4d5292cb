"""
Shared FastAPI dependencies.

Routers import DB sessions, the transaction-owning session factory, auth
guards and pagination from this single place.
"""

from __future__ import annotations

from typing import TypedDict

from fastapi import Depends, Path, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db, get_session_factory
from db_models import User
from domain.errors import NotFoundError
from middleware.auth import require_cron_secret

__all__ = [
    "Pagination",
    "pagination_params",
    "get_db",
    "get_session_factory",
    "require_cron_secret",
    "require_user",
]


class Pagination(TypedDict):
    limit: int
    offset: int


def pagination_params(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0, le=100_000),
) -> Pagination:
    return {"limit": limit, "offset": offset}


async def require_user(
    user_id: int = Path(..., ge=1),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Resolve the `{user_id}` path parameter to an existing user."""
    res = await db.execute(select(User).where(User.id == user_id))
    user = res.scalar_one_or_none()
    if not user:
        raise NotFoundError("User", str(user_id))
    return user
