from app.platform.security.context import AuthedUser
from app.platform.security.errors import AuthenticationError, AuthorizationError, NotFoundError

__all__ = [
    "AuthedUser",
    "AuthenticationError",
    "AuthorizationError",
    "NotFoundError",
]
