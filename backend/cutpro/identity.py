"""Owner identity resolution.

Every request is attributed to exactly one owner. An owner is either an
authenticated user (bearer token or session cookie backed by a live session)
or an anonymous visitor identified by a random UUID the client keeps in a
cookie or sends in the ``X-Owner-Id`` header. An anonymous id never names a
registered user.
"""

import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable
from uuid import UUID, uuid4

from fastapi import HTTPException

SESSION_COOKIE_NAME = "cutpro_session"
ANONYMOUS_COOKIE_NAME = "cutpro_temp_user_id"
ANONYMOUS_HEADER_NAME = "X-Owner-Id"

active_sessions: dict[str, dict[str, Any]] = {}


class IdentityKind(str, Enum):
    authenticated = "authenticated"
    anonymous = "anonymous"


@dataclass(frozen=True)
class Identity:
    kind: IdentityKind
    owner_id: UUID
    # anonymous id generated for this request; the client has not stored it yet
    issued: bool = False

    @property
    def is_authenticated(self) -> bool:
        return self.kind == IdentityKind.authenticated


def create_session(user_id: UUID) -> str:
    token = secrets.token_urlsafe(32)
    active_sessions[token] = {"user_id": user_id, "created_at": datetime.now(timezone.utc)}
    return token


def drop_session(token: str | None) -> bool:
    if token and token in active_sessions:
        del active_sessions[token]
        return True
    return False


def session_user_id(token: str | None) -> UUID | None:
    if not token:
        return None
    session = active_sessions.get(token)
    if session is None:
        return None
    return session.get("user_id")


def token_from_header(authorization: str) -> str:
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
        raise HTTPException(status_code=401, detail="invalid Authorization header")
    return parts[1].strip()


def _parse_owner_id(value: str | None) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(value.strip())
    except ValueError:
        return None


def _anonymous(owner_id: UUID, is_registered: Callable[[UUID], bool] | None) -> Identity:
    # registered user ids are only reachable through a session
    if is_registered is not None and is_registered(owner_id):
        raise HTTPException(status_code=403, detail="owner id belongs to a registered user; log in instead")
    return Identity(IdentityKind.anonymous, owner_id)


def resolve_identity(
    authorization: str | None = None,
    session_token: str | None = None,
    owner_header: str | None = None,
    owner_cookie: str | None = None,
    is_registered: Callable[[UUID], bool] | None = None,
) -> Identity:
    if authorization:
        user_id = session_user_id(token_from_header(authorization))
        if user_id is None:
            raise HTTPException(status_code=401, detail="invalid or expired token")
        return Identity(IdentityKind.authenticated, user_id)

    user_id = session_user_id(session_token)
    if user_id is not None:
        return Identity(IdentityKind.authenticated, user_id)

    if owner_header:
        owner_id = _parse_owner_id(owner_header)
        if owner_id is None:
            raise HTTPException(status_code=400, detail=f"{ANONYMOUS_HEADER_NAME} must be a UUID")
        return _anonymous(owner_id, is_registered)

    owner_id = _parse_owner_id(owner_cookie)
    if owner_id is not None:
        return _anonymous(owner_id, is_registered)
    return Identity(IdentityKind.anonymous, uuid4(), issued=True)
