from app.authz.models import DirectoryUser, Role

__all__ = [
    "DirectoryUser",
    "Role",
]
