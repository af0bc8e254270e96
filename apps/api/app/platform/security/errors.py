from __future__ import annotations


class AuthenticationError(Exception):
    """Missing, invalid or expired session, or a session naming an unknown user."""

    def __init__(self, message: str = "unauthorized") -> None:
        super().__init__(message)
        self.message = message


class AuthorizationError(Exception):
    """Authenticated but not allowed.

    The client-facing message is always the generic ``forbidden``; the reason is
    only logged so responses never reveal which permission was missing.
    """

    def __init__(self, reason: str = "forbidden") -> None:
        super().__init__(reason)
        self.reason = reason
        self.message = "forbidden"


class NotFoundError(Exception):
    def __init__(self, resource: str) -> None:
        super().__init__(f"{resource} not found")
        self.resource = resource
        self.message = f"{resource} not found"
