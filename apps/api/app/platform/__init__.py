from app.platform.security import AuthedUser, AuthenticationError, AuthorizationError, NotFoundError

__all__ = [
    "AuthedUser",
    "AuthenticationError",
    "AuthorizationError",
    "NotFoundError",
]
