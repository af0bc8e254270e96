from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fastapi import Depends
from jose import JWTError, jwt
from sqlalchemy.orm import Session
from starlette.requests import HTTPConnection

from app.authz.catalog import normalize_role_key
from app.authz.models import DirectoryUser
from app.authz.resolver import PermissionCache, resolve_role_permissions
from app.context import set_user_id
from app.core.config import get_settings
from app.core.database import get_db
from app.platform.security.context import AuthedUser
from app.platform.security.errors import AuthenticationError


@dataclass
class SessionClaims:
    uid: str
    active: bool = True


def issue_session_token(uid: str, *, active: bool = True, ttl: timedelta | None = None) -> tuple[str, datetime]:
    settings = get_settings()
    expires_at = datetime.now(timezone.utc) + (ttl or timedelta(minutes=settings.session_ttl_minutes))
    claims = {"sub": uid, "active": active, "exp": int(expires_at.timestamp())}
    token = jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return token, expires_at


def verify_session(token: str) -> SessionClaims:
    if not token:
        raise AuthenticationError("missing session")
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise AuthenticationError("invalid session") from exc

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        raise AuthenticationError("invalid session")
    active = payload.get("active", True)
    return SessionClaims(uid=subject, active=active is not False)


def extract_session_token(connection: HTTPConnection) -> str:
    auth_header = connection.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[len("Bearer ") :].strip()
    cookie = connection.cookies.get(get_settings().session_cookie_name)
    if cookie:
        return cookie
    # Browsers cannot set headers on a websocket handshake.
    return connection.query_params.get("token", "")


def authenticate(session: Session, token: str, cache: PermissionCache | None = None) -> AuthedUser:
    claims = verify_session(token)
    record = session.get(DirectoryUser, claims.uid)
    if record is None:
        raise AuthenticationError("unknown user")

    role_key = normalize_role_key(record.role)
    permissions = resolve_role_permissions(session, role_key, cache if cache is not None else {})
    active = record.active is not False and claims.active
    return AuthedUser(
        id=record.id,
        full_name=record.full_name or "",
        active=active,
        role_key=role_key,
        permissions=permissions,
        email=record.email,
    )


def get_authed_user(connection: HTTPConnection, db: Session = Depends(get_db)) -> AuthedUser:
    user = authenticate(db, extract_session_token(connection))
    connection.state.user_id = user.id
    set_user_id(user.id)
    return user
