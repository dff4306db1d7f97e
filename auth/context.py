"""
auth/context.py -- Authorization context switcher.

Every piece of data access runs inside one scoped access unit:

    with context.as_caller(caller) as scope:
        store.list_emails(scope, caller.user_id)

A unit is exactly one database transaction (engine.begin()). It commits when
the block exits normally and rolls back when anything escapes it, so a flow
either applies all of its writes or none of them.

An authenticated request uses two units, not one. The session cookie is
resolved in a short as_system unit by the request dependency
(SessionManager.lookup), before the route knows which flow it will run.
The flow then opens its own as_caller unit, which re-reads the session row
inside its transaction. A session deleted or expired between the two units
is therefore rejected, and every read and write the flow makes shares one
transaction.

Two kinds of unit:
  as_caller(caller)  Acts for an authenticated caller. Raises NotAuthenticated
                     before touching the database when caller is None, and
                     again if the caller's session row has been deleted or has
                     expired since the request resolved it. Row policy
                     restricts store queries to the caller's own rows unless
                     the caller is an admin.

  as_system(reason)  Acts with full row visibility. Used for anonymous entry
                     points whose authority comes from something other than a
                     session (a password, a confirmation token, an OAuth
                     callback) and for maintenance jobs. The reason is logged.

Row policy is carried in two ways:
  1. ScopedAccess.rows(column) returns a SQL filter the store ANDs into every
     owner-sensitive query. This works on every database.
  2. On PostgreSQL the caller identity is also bound to the transaction with
     set_config('gatehouse.user_id', ...) and set_config('gatehouse.session_id',
     ...), and DATABASE_VISITOR_ROLE (when set) is assumed for caller units,
     so row-level security policies inside the database apply as well.

Deferred work:
  scope.after_commit(fn, *args) queues a callable that runs only after the
  transaction has committed. Notifications use this so an email is never
  sent for a change that was rolled back.

Layer rule: no imports from api/ or accounts/.
"""

from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Callable, Iterator

from sqlalchemy import false, text, true
from sqlalchemy.engine import Connection

from auth.models import Caller
from core.config import Settings, get_settings

if TYPE_CHECKING:
    from auth.store import CredentialStore

logger = logging.getLogger("gatehouse.auth.context")

_ROLE_NAME = re.compile(r"[A-Za-z_][A-Za-z0-9_]{0,62}")


class NotAuthenticated(Exception):
    """Raised when an operation that needs a caller is attempted without one."""


class ScopedAccess:
    """Handle for one scoped access unit: the open connection plus row policy."""

    def __init__(self, conn: Connection, caller: Caller | None, system: bool = False) -> None:
        self.conn = conn
        self.caller = caller
        self.system = system
        self._deferred: list[tuple[Callable[..., Any], tuple]] = []

    def rows(self, owner_column):
        """Return the row filter for an owner column (a users.id reference)."""
        if self.system or (self.caller is not None and self.caller.is_admin):
            return true()
        if self.caller is None:
            return false()
        return owner_column == self.caller.user_id

    def after_commit(self, fn: Callable[..., Any], *args: Any) -> None:
        self._deferred.append((fn, args))

    def run_deferred(self) -> None:
        for fn, args in self._deferred:
            try:
                fn(*args)
            except Exception:
                # The transaction is already committed; the failure cannot be
                # undone, only reported.
                logger.exception("Deferred callback %s failed after commit", getattr(fn, "__name__", fn))
        self._deferred.clear()


class AuthContext:
    """Factory for scoped access units over one CredentialStore."""

    def __init__(self, store: CredentialStore, settings: Settings | None = None) -> None:
        self._store = store
        self._settings = settings or get_settings()
        role = self._settings.database_visitor_role
        if role and not _ROLE_NAME.fullmatch(role):
            raise ValueError(f"DATABASE_VISITOR_ROLE is not a valid role name: {role!r}")

    @contextmanager
    def as_caller(self, caller: Caller | None) -> Iterator[ScopedAccess]:
        if caller is None:
            raise NotAuthenticated()
        with self._unit(caller, system=False) as scope:
            if not self._store.session_is_live(scope, caller.session_id, caller.user_id):
                logger.info("Session %s no longer live for user %s", caller.session_id, caller.user_id)
                raise NotAuthenticated()
            yield scope

    @contextmanager
    def as_system(self, reason: str, caller: Caller | None = None) -> Iterator[ScopedAccess]:
        logger.debug("System scope opened: %s", reason)
        with self._unit(caller, system=True) as scope:
            yield scope

    @contextmanager
    def _unit(self, caller: Caller | None, system: bool) -> Iterator[ScopedAccess]:
        with self._store.engine.begin() as conn:
            scope = ScopedAccess(conn, caller, system=system)
            self._bind_identity(conn, caller, system)
            yield scope
        scope.run_deferred()

    def _bind_identity(self, conn: Connection, caller: Caller | None, system: bool) -> None:
        """Expose the caller to database-side policy. PostgreSQL only; a no-op elsewhere."""
        if self._store.dialect != "postgresql":
            return
        conn.execute(
            text("SELECT set_config('gatehouse.user_id', :user_id, true), set_config('gatehouse.session_id', :session_id, true)"),
            {
                "user_id": caller.user_id if caller else "",
                "session_id": caller.session_id if caller else "",
            },
        )
        role = self._settings.database_visitor_role
        if role and not system:
            # set_config('role', ..., true) is the bindable form of SET LOCAL ROLE
            conn.execute(text("SELECT set_config('role', :role, true)"), {"role": role})
