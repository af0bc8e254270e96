from collections.abc import Callable

from fastapi import Depends

from app.authz.gate import ensure_authorized
from app.core.auth import get_authed_user
from app.platform.security.context import AuthedUser


def require_permissions(*permissions: str) -> Callable[[AuthedUser], AuthedUser]:
    """Dependency that admits active users holding any of ``permissions``."""

    def checker(user: AuthedUser = Depends(get_authed_user)) -> AuthedUser:
        return ensure_authorized(user, permissions)

    return checker


def require_active_user(user: AuthedUser = Depends(get_authed_user)) -> AuthedUser:
    """Dependency that admits any active user regardless of permissions."""
    return ensure_authorized(user, None)
