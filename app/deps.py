"""Shared FastAPI dependencies."""

from fastapi import Request

from app.core.exceptions import ForbiddenError, UnauthorizedError
from app.core.logging import bind_actor
from app.core.security import load_session_cookie
from app.schemas.ledger import ROLE_ADMIN, ROLE_TEACHER, Owner
from app.storage.base import get_store

SESSION_COOKIE_NAME = "schoolpoints_session"


async def get_current_user(request: Request) -> Owner:
    """Dependency: load session from cookie and return the owner."""
    cookie = request.cookies.get(SESSION_COOKIE_NAME)
    if not cookie:
        raise UnauthorizedError("Not authenticated")
    payload = load_session_cookie(cookie)
    if not payload:
        raise UnauthorizedError("Invalid or expired session")
    user_id = payload.get("user_id")
    if not user_id:
        raise UnauthorizedError("Invalid session")
    user = await get_store().get_owner(str(user_id))
    if not user:
        raise UnauthorizedError("User not found")
    bind_actor(user.id)
    return user


def require_roles(*role_ids: int):
    """Dependency factory: current user must have one of role_ids."""

    async def _dependency(request: Request) -> Owner:
        user = await get_current_user(request)
        if user.role_id not in role_ids:
            raise ForbiddenError("Not allowed for your role")
        return user

    return _dependency


require_admin = require_roles(ROLE_ADMIN)
require_staff = require_roles(ROLE_TEACHER, ROLE_ADMIN)
