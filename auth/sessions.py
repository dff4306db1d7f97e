"""
auth/sessions.py -- Session manager: opaque cookie sessions backed by the store.

The cookie carries only a random token (secrets.token_urlsafe(32)). The
sessions table stores HMAC-SHA256(SECRET_KEY, token) as token_hash plus its
own row id, so neither the user id nor the role ever reaches the client and
a leaked database does not hand out live cookies.

Sessions are rows, not process memory: a restart does not log anyone out.

Rotation: every authentication-state transition (register, login, logout,
password reset, account deletion) deletes the old row and, where the caller
stays signed in, inserts a brand new one with a new token. An old cookie can
therefore never resolve to the new privilege state.

Expiry is absolute (SESSION_TTL_SECONDS from creation). resolve() treats an
expired row as absent and deletes it; purge_expired() sweeps the rest.

Layer rule: no imports from api/ or accounts/. The cookie helpers take any
Starlette response object.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from auth.models import Caller
from auth.store import is_past, iso_after
from auth.tokens import digest, generate_token
from core.config import Settings, get_settings

if TYPE_CHECKING:
    from auth.context import AuthContext, ScopedAccess
    from auth.store import CredentialStore

logger = logging.getLogger("gatehouse.auth.sessions")


class SessionManager:
    def __init__(self, store: CredentialStore, context: AuthContext, settings: Settings | None = None) -> None:
        self._store = store
        self._context = context
        self._settings = settings or get_settings()

    def _hash(self, token: str) -> str:
        return digest(token, self._settings.secret_key)

    def create(self, scope: ScopedAccess, user_id: str) -> str:
        """Insert a session for user_id and return the raw token for the cookie."""
        token = generate_token()
        session = self._store.insert_session(
            scope, user_id, self._hash(token), iso_after(self._settings.session_ttl_seconds)
        )
        logger.info("Session %s created for user %s", session.id, user_id)
        return token

    def resolve(self, scope: ScopedAccess, token: str | None) -> Caller | None:
        """Map a cookie token to a Caller. Absent, unknown or expired tokens give None."""
        if not token:
            return None
        found = self._store.get_session_by_hash(scope, self._hash(token))
        if found is None:
            return None
        session, role = found
        if is_past(session.expires_at):
            self._store.delete_session_by_hash(scope, self._hash(token))
            logger.info("Session %s expired", session.id)
            return None
        return Caller(user_id=session.user_id, role=role, session_id=session.id)

    def lookup(self, token: str | None) -> Caller | None:
        """resolve() in its own short system unit. Used by request dependencies."""
        if not token:
            return None
        with self._context.as_system("resolve session") as scope:
            return self.resolve(scope, token)

    def invalidate(self, scope: ScopedAccess, token: str | None) -> bool:
        """Delete the session behind a cookie token. Returns True if one existed."""
        if not token:
            return False
        return self._store.delete_session_by_hash(scope, self._hash(token))

    def invalidate_user(self, scope: ScopedAccess, user_id: str, keep_session_id: str | None = None) -> int:
        """Delete every session of a user except keep_session_id. Returns the count removed."""
        removed = self._store.delete_user_sessions(scope, user_id, keep_session_id=keep_session_id)
        if removed:
            logger.info("Invalidated %d session(s) for user %s", removed, user_id)
        return removed

    def rotate(self, scope: ScopedAccess, old_token: str | None, user_id: str) -> str:
        """Replace the session behind old_token (if any) with a fresh one for user_id."""
        self.invalidate(scope, old_token)
        return self.create(scope, user_id)

    def purge_expired(self) -> int:
        with self._context.as_system("purge expired sessions") as scope:
            removed = self._store.purge_expired_sessions(scope)
        if removed:
            logger.info("Purged %d expired session(s)", removed)
        return removed


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, token: str, settings: Settings | None = None) -> None:
    """Write the session token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST (CSRF mitigation).
    secure: only sent over HTTPS when SECURE_COOKIES=true.
    max_age: matches the server-side session expiry.
    """
    settings = settings or get_settings()
    response.set_cookie(
        settings.session_cookie_name,
        value=token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=settings.session_ttl_seconds,
    )


def clear_session_cookie(response, settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    response.delete_cookie(
        settings.session_cookie_name,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
    )
