from __future__ import annotations

from dataclasses import dataclass, field

from app.authz.catalog import ADMIN_PERMISSION, PermissionKey


@dataclass(slots=True)
class AuthedUser:
    """The identity of one request, computed from the session and the role directory.

    Never persisted; rebuilt on every request so role edits apply on the next call.
    """

    id: str
    full_name: str = ""
    active: bool = True
    role_key: str = ""
    permissions: frozenset[PermissionKey] = field(default_factory=frozenset)
    email: str | None = None

    @property
    def is_admin(self) -> bool:
        return ADMIN_PERMISSION in self.permissions
