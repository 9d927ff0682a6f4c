"""Shared FastAPI dependencies for database access and authentication."""

from typing import Optional

from fastapi import Depends, Request
from sqlmodel import Session

from exam_portal.database import get_session
from exam_portal.errors import Forbidden, NotAuthenticated
from exam_portal.models import User


def get_current_user(
    request: Request, session: Session = Depends(get_session)
) -> Optional[User]:
    """Return the currently logged-in user based on the session cookie, if any."""
    user_id = request.session.get("user_id")
    if not user_id:
        return None

    user = session.get(User, user_id)
    if not user or not user.is_active:
        # Clear any stale session
        request.session.clear()
        return None
    return user


def require_login(current_user: Optional[User] = Depends(get_current_user)) -> User:
    if current_user is None:
        raise NotAuthenticated()
    return current_user


def require_role(required_roles: list[str]):
    """Dependency factory that enforces one of the given roles."""

    def wrapper(current_user: User = Depends(require_login)) -> User:
        if current_user.role not in required_roles:
            raise Forbidden()
        return current_user

    return wrapper
