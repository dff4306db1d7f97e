"""
auth/store.py -- SQLAlchemy Core persistence layer for the credential store.

Pattern: Repository + Data Mapper. CredentialStore is the repository; the
_row_to_* functions are the mappers. Flow and route code never touches SQL
directly.

Every query method takes a ``scope`` (auth/context.py ScopedAccess) as its
first argument. The scope carries the open transaction (``scope.conn``) and
the row policy for the caller (``scope.rows(column)``), so a method called on
behalf of a user can only see or mutate that user's rows unless the caller is
an admin or the scope is a system scope. The store never opens its own
transaction for domain data; atomicity is the caller's unit of work.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Session ids and confirmation tokens arrive here already digested
  (HMAC-SHA256, see auth/tokens.py). Password hashes and token digests are
  returned only by the narrow accessors that need them and never mapped onto
  the public dataclasses.

Constraints backing the account invariants:
  - lower(username) and lower(email) are unique (case-insensitive identity).
  - (service, identifier) is unique on user_authentications.
  - a partial unique index allows at most one is_primary=1 email per user.
  - every dependent table cascades on users.id. SQLite needs
    PRAGMA foreign_keys=ON per connection for that, set in _on_connect.

Layer rule: no imports from api/ or accounts/.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Engine

from auth.models import Session, TokenKind, User, UserAuthentication, UserEmail
from core.config import get_settings

if TYPE_CHECKING:
    from auth.context import ScopedAccess

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("username", String(64), nullable=False),
    Column("name", String(255)),
    Column("bio", Text, nullable=False, server_default=""),
    Column("avatar_url", Text),
    Column("role", String(16), nullable=False, server_default="user"),
    Column("is_verified", Integer, nullable=False, server_default="0"),  # boolean stored as 0/1
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_user_emails = Table(
    "user_emails",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("email", String(320), nullable=False),
    Column("is_verified", Integer, nullable=False, server_default="0"),
    Column("is_primary", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_user_email_secrets = Table(
    "user_email_secrets",
    metadata,
    Column("user_email_id", String(36), ForeignKey("user_emails.id", ondelete="CASCADE"), primary_key=True),
    Column("verification_token", String(64)),  # HMAC digest
    Column("verification_token_expires", String(32)),
    Column("verification_email_sent_at", String(32)),
)

_user_secrets = Table(
    "user_secrets",
    metadata,
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("password_hash", Text),  # NULL for OAuth-only users
    Column("reset_password_token", String(64)),
    Column("reset_password_token_expires", String(32)),
    Column("delete_account_token", String(64)),
    Column("delete_account_token_expires", String(32)),
    Column("last_login_at", String(32)),
)

_user_authentications = Table(
    "user_authentications",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("service", String(30), nullable=False),
    Column("identifier", String(255), nullable=False),
    Column("details", Text, nullable=False, server_default="{}"),  # JSON object
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    UniqueConstraint("service", "identifier", name="uq_user_authentications_identity"),
)

_sessions = Table(
    "sessions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
)

Index("uq_users_username_lower", func.lower(_users.c.username), unique=True)
Index("uq_user_emails_email_lower", func.lower(_user_emails.c.email), unique=True)
Index(
    "uq_user_emails_one_primary",
    _user_emails.c.user_id,
    unique=True,
    sqlite_where=_user_emails.c.is_primary == 1,
    postgresql_where=_user_emails.c.is_primary == 1,
)
Index("ix_user_emails_user_id", _user_emails.c.user_id)
Index("ix_user_authentications_user_id", _user_authentications.c.user_id)
Index("ix_sessions_user_id", _sessions.c.user_id)

# Pending-token columns per kind: (table, subject column, digest column, expiry column)
_TOKEN_COLUMNS = {
    TokenKind.EMAIL_VERIFICATION: (
        _user_email_secrets,
        "user_email_id",
        "verification_token",
        "verification_token_expires",
    ),
    TokenKind.PASSWORD_RESET: (_user_secrets, "user_id", "reset_password_token", "reset_password_token_expires"),
    TokenKind.ACCOUNT_DELETION: (_user_secrets, "user_id", "delete_account_token", "delete_account_token_expires"),
}

# ---------------------------------------------------------------------------
# Connection setup
# ---------------------------------------------------------------------------


def _on_connect(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement on SQLite.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. foreign_keys=ON makes ON DELETE CASCADE work.

    isolation_level=None stops the sqlite3 driver from issuing its own BEGIN;
    _on_begin issues BEGIN IMMEDIATE instead.
    """
    dbapi_conn.isolation_level = None
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _on_begin(conn) -> None:
    """Take SQLite's write lock when the transaction starts.

    A deferred transaction that read a row and then tries to write it after
    another writer committed fails with "database is locked" in WAL mode.
    BEGIN IMMEDIATE makes concurrent units queue (up to the driver's busy
    timeout) and then read the committed state, so the loser of a token race
    sees an already-cleared token.
    """
    conn.exec_driver_sql("BEGIN IMMEDIATE")


# ---------------------------------------------------------------------------
# Time helpers
#
# Timestamps are stored as ISO 8601 UTC strings with second precision. All
# values share one format, so string order is chronological order.
# ---------------------------------------------------------------------------


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def iso_after(seconds: int) -> str:
    return (datetime.now(timezone.utc) + timedelta(seconds=seconds)).isoformat(timespec="seconds")


def is_past(iso: str | None) -> bool:
    """Return True for a timestamp at or before now. None and garbage count as past."""
    if not iso:
        return True
    try:
        moment = datetime.fromisoformat(iso)
    except ValueError:
        return True
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment <= datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for users, emails, secrets, linked identities and sessions.

    Usage:
        store = CredentialStore("sqlite:///:memory:")
        context = AuthContext(store)
        with context.as_system("bootstrap") as scope:
            user, email = store.create_user(scope, User(username="admin"), password_hash=h)
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _on_connect)
            event.listen(self.engine, "begin", _on_begin)
        metadata.create_all(self.engine)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def ping(self) -> bool:
        """Return True if the database answers a trivial query. Used by /health."""
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(
        self,
        scope: ScopedAccess,
        user: User,
        password_hash: str | None = None,
        email: str | None = None,
        email_verified: bool = False,
    ) -> tuple[User, UserEmail | None]:
        """Insert a user with its secret row and, optionally, a primary email.

        Raises sqlalchemy.exc.IntegrityError if the username or email is
        already taken. Callers let it escape the scoped access unit so the
        whole transaction rolls back, then map it to a conflict.
        """
        now = now_iso()
        user_id = _new_id()
        scope.conn.execute(
            _users.insert().values(
                id=user_id,
                username=user.username,
                name=user.name,
                bio=user.bio or "",
                avatar_url=user.avatar_url,
                role=user.role,
                is_verified=1 if (email and email_verified) else 0,
                created_at=now,
                updated_at=now,
            )
        )
        scope.conn.execute(_user_secrets.insert().values(user_id=user_id, password_hash=password_hash))
        user_email = None
        if email:
            user_email = self.add_email(scope, user_id, email, verified=email_verified, primary=True)
        return self.get_user(scope, user_id), user_email

    def get_user(self, scope: ScopedAccess, user_id: str) -> User | None:
        row = scope.conn.execute(
            _users.select().where((_users.c.id == user_id) & scope.rows(_users.c.id))
        ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_username(self, scope: ScopedAccess, username: str) -> User | None:
        """Case-insensitive username lookup."""
        row = scope.conn.execute(
            _users.select().where(func.lower(_users.c.username) == username.lower())
        ).fetchone()
        return _row_to_user(row) if row is not None else None

    def username_taken(self, scope: ScopedAccess, username: str, exclude_user_id: str | None = None) -> bool:
        query = select(func.count()).select_from(_users).where(func.lower(_users.c.username) == username.lower())
        if exclude_user_id is not None:
            query = query.where(_users.c.id != exclude_user_id)
        return (scope.conn.execute(query).scalar() or 0) > 0

    def find_login(self, scope: ScopedAccess, identifier: str) -> tuple[User, str | None] | None:
        """Resolve a username-or-email identifier to (User, password_hash).

        Matching is case-insensitive on both columns. Returns None if neither
        matches. Only used by the identity verifier.
        """
        needle = identifier.lower()
        row = scope.conn.execute(
            select(_users, _user_secrets.c.password_hash)
            .select_from(_users.outerjoin(_user_secrets, _user_secrets.c.user_id == _users.c.id))
            .where(
                or_(
                    func.lower(_users.c.username) == needle,
                    _users.c.id.in_(
                        select(_user_emails.c.user_id).where(func.lower(_user_emails.c.email) == needle)
                    ),
                )
            )
        ).fetchone()
        if row is None:
            return None
        return _row_to_user(row), row.password_hash

    def update_user(self, scope: ScopedAccess, user_id: str, **fields) -> User | None:
        """Update mutable profile fields (username, name, bio, avatar_url, role).

        Returns the refreshed User, or None if the row is not visible to the scope.
        Raises IntegrityError on a username collision.
        """
        if fields:
            result = scope.conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & scope.rows(_users.c.id))
                .values(updated_at=now_iso(), **fields)
            )
            if result.rowcount == 0:
                return None
        return self.get_user(scope, user_id)

    def delete_user(self, scope: ScopedAccess, user_id: str) -> bool:
        """Delete a user and every dependent row. Returns True if the user existed.

        Dependents are removed explicitly, in child-first order, so the result
        does not depend on the database honouring ON DELETE CASCADE.
        """
        if self.get_user(scope, user_id) is None:
            return False
        conn = scope.conn
        email_ids = select(_user_emails.c.id).where(_user_emails.c.user_id == user_id)
        conn.execute(_sessions.delete().where(_sessions.c.user_id == user_id))
        conn.execute(_user_authentications.delete().where(_user_authentications.c.user_id == user_id))
        conn.execute(_user_email_secrets.delete().where(_user_email_secrets.c.user_email_id.in_(email_ids)))
        conn.execute(_user_emails.delete().where(_user_emails.c.user_id == user_id))
        conn.execute(_user_secrets.delete().where(_user_secrets.c.user_id == user_id))
        result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    def refresh_verified(self, scope: ScopedAccess, user_id: str) -> None:
        """Recompute users.is_verified from the user's emails."""
        verified = (
            scope.conn.execute(
                select(func.count())
                .select_from(_user_emails)
                .where((_user_emails.c.user_id == user_id) & (_user_emails.c.is_verified == 1))
            ).scalar()
            or 0
        )
        scope.conn.execute(
            _users.update().where(_users.c.id == user_id).values(is_verified=1 if verified else 0, updated_at=now_iso())
        )

    # ------------------------------------------------------------------
    # Secrets
    # ------------------------------------------------------------------

    def get_password_hash(self, scope: ScopedAccess, user_id: str) -> str | None:
        return scope.conn.execute(
            select(_user_secrets.c.password_hash).where(
                (_user_secrets.c.user_id == user_id) & scope.rows(_user_secrets.c.user_id)
            )
        ).scalar()

    def set_password_hash(self, scope: ScopedAccess, user_id: str, password_hash: str) -> None:
        scope.conn.execute(
            _user_secrets.update()
            .where((_user_secrets.c.user_id == user_id) & scope.rows(_user_secrets.c.user_id))
            .values(password_hash=password_hash)
        )

    def record_login(self, scope: ScopedAccess, user_id: str) -> None:
        scope.conn.execute(
            _user_secrets.update().where(_user_secrets.c.user_id == user_id).values(last_login_at=now_iso())
        )

    # ------------------------------------------------------------------
    # Pending tokens
    # ------------------------------------------------------------------

    def set_pending_token(self, scope: ScopedAccess, kind: TokenKind, subject_id: str, digest: str, expires_at: str) -> bool:
        """Overwrite the pending token of this kind for the subject.

        Returns False if the subject has no secret row (unknown id).
        """
        table, subject_col, token_col, expires_col = _TOKEN_COLUMNS[kind]
        values = {token_col: digest, expires_col: expires_at}
        if kind is TokenKind.EMAIL_VERIFICATION:
            values["verification_email_sent_at"] = now_iso()
        result = scope.conn.execute(table.update().where(table.c[subject_col] == subject_id).values(**values))
        return result.rowcount > 0

    def get_pending_token(self, scope: ScopedAccess, kind: TokenKind, subject_id: str) -> tuple[str, str] | None:
        """Return (digest, expires_at) of the pending token, or None if none is pending.

        Locks the secret row (SELECT ... FOR UPDATE) on databases that support
        it. SQLite ignores the clause; there the unit already holds the write
        lock (see _on_begin).
        """
        table, subject_col, token_col, expires_col = _TOKEN_COLUMNS[kind]
        row = scope.conn.execute(
            select(table.c[token_col], table.c[expires_col])
            .where(table.c[subject_col] == subject_id)
            .with_for_update()
        ).fetchone()
        if row is None or row[0] is None:
            return None
        return row[0], row[1]

    def clear_pending_token(self, scope: ScopedAccess, kind: TokenKind, subject_id: str, expected_digest: str) -> bool:
        """Clear the pending token only if it still equals expected_digest.

        Returns True for exactly one of any number of concurrent callers that
        read the same digest: the losers' UPDATE matches zero rows.
        """
        table, subject_col, token_col, expires_col = _TOKEN_COLUMNS[kind]
        result = scope.conn.execute(
            table.update()
            .where((table.c[subject_col] == subject_id) & (table.c[token_col] == expected_digest))
            .values(**{token_col: None, expires_col: None})
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Emails
    # ------------------------------------------------------------------

    def email_registered(self, scope: ScopedAccess, email: str) -> bool:
        """Return True if any account holds this address (case-insensitive).

        Deliberately not filtered by scope: address uniqueness is global.
        """
        count = scope.conn.execute(
            select(func.count()).select_from(_user_emails).where(func.lower(_user_emails.c.email) == email.lower())
        ).scalar()
        return (count or 0) > 0

    def get_email_by_address(self, scope: ScopedAccess, email: str) -> UserEmail | None:
        row = scope.conn.execute(
            _user_emails.select().where(func.lower(_user_emails.c.email) == email.lower())
        ).fetchone()
        return _row_to_email(row) if row is not None else None

    def add_email(
        self,
        scope: ScopedAccess,
        user_id: str,
        email: str,
        verified: bool = False,
        primary: bool = False,
    ) -> UserEmail:
        """Insert an email and its (empty) secret row. Raises IntegrityError if taken."""
        now = now_iso()
        email_id = _new_id()
        scope.conn.execute(
            _user_emails.insert().values(
                id=email_id,
                user_id=user_id,
                email=email,
                is_verified=1 if verified else 0,
                is_primary=1 if primary else 0,
                created_at=now,
                updated_at=now,
            )
        )
        scope.conn.execute(_user_email_secrets.insert().values(user_email_id=email_id))
        return self.get_email(scope, email_id)

    def get_email(self, scope: ScopedAccess, email_id: str) -> UserEmail | None:
        row = scope.conn.execute(
            _user_emails.select().where((_user_emails.c.id == email_id) & scope.rows(_user_emails.c.user_id))
        ).fetchone()
        return _row_to_email(row) if row is not None else None

    def list_emails(self, scope: ScopedAccess, user_id: str) -> list[UserEmail]:
        """Return the user's emails, primary first, then oldest first."""
        rows = scope.conn.execute(
            _user_emails.select()
            .where((_user_emails.c.user_id == user_id) & scope.rows(_user_emails.c.user_id))
            .order_by(_user_emails.c.is_primary.desc(), _user_emails.c.created_at, _user_emails.c.email)
        ).fetchall()
        return [_row_to_email(r) for r in rows]

    def mark_email_verified(self, scope: ScopedAccess, email_id: str) -> None:
        scope.conn.execute(
            _user_emails.update().where(_user_emails.c.id == email_id).values(is_verified=1, updated_at=now_iso())
        )

    def set_primary_email(self, scope: ScopedAccess, user_id: str, email_id: str) -> None:
        """Demote the current primary, then promote email_id.

        Two statements in this order so the one-primary partial unique index
        is never violated mid-transaction.
        """
        now = now_iso()
        scope.conn.execute(
            _user_emails.update()
            .where((_user_emails.c.user_id == user_id) & (_user_emails.c.is_primary == 1))
            .values(is_primary=0, updated_at=now)
        )
        scope.conn.execute(
            _user_emails.update()
            .where((_user_emails.c.id == email_id) & (_user_emails.c.user_id == user_id))
            .values(is_primary=1, updated_at=now)
        )

    def delete_email(self, scope: ScopedAccess, email_id: str) -> bool:
        scope.conn.execute(_user_email_secrets.delete().where(_user_email_secrets.c.user_email_id == email_id))
        result = scope.conn.execute(
            _user_emails.delete().where((_user_emails.c.id == email_id) & scope.rows(_user_emails.c.user_id))
        )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Linked identities
    # ------------------------------------------------------------------

    def get_identity(self, scope: ScopedAccess, service: str, identifier: str) -> UserAuthentication | None:
        """Look up a linked identity by (service, identifier). Not scope-filtered."""
        row = scope.conn.execute(
            _user_authentications.select().where(
                (_user_authentications.c.service == service) & (_user_authentications.c.identifier == identifier)
            )
        ).fetchone()
        return _row_to_authentication(row) if row is not None else None

    def get_authentication(self, scope: ScopedAccess, auth_id: str) -> UserAuthentication | None:
        row = scope.conn.execute(
            _user_authentications.select().where(
                (_user_authentications.c.id == auth_id) & scope.rows(_user_authentications.c.user_id)
            )
        ).fetchone()
        return _row_to_authentication(row) if row is not None else None

    def list_authentications(self, scope: ScopedAccess, user_id: str) -> list[UserAuthentication]:
        rows = scope.conn.execute(
            _user_authentications.select()
            .where((_user_authentications.c.user_id == user_id) & scope.rows(_user_authentications.c.user_id))
            .order_by(_user_authentications.c.created_at, _user_authentications.c.service)
        ).fetchall()
        return [_row_to_authentication(r) for r in rows]

    def add_authentication(self, scope: ScopedAccess, auth: UserAuthentication) -> UserAuthentication:
        """Insert a linked identity. Raises IntegrityError if (service, identifier) is taken."""
        now = now_iso()
        auth_id = _new_id()
        scope.conn.execute(
            _user_authentications.insert().values(
                id=auth_id,
                user_id=auth.user_id,
                service=auth.service,
                identifier=auth.identifier,
                details=json.dumps(auth.details or {}),
                created_at=now,
                updated_at=now,
            )
        )
        return self.get_identity(scope, auth.service, auth.identifier)

    def update_authentication_details(self, scope: ScopedAccess, auth_id: str, details: dict) -> None:
        scope.conn.execute(
            _user_authentications.update()
            .where(_user_authentications.c.id == auth_id)
            .values(details=json.dumps(details or {}), updated_at=now_iso())
        )

    def delete_authentication(self, scope: ScopedAccess, auth_id: str) -> bool:
        result = scope.conn.execute(
            _user_authentications.delete().where(
                (_user_authentications.c.id == auth_id) & scope.rows(_user_authentications.c.user_id)
            )
        )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def insert_session(self, scope: ScopedAccess, user_id: str, token_hash: str, expires_at: str) -> Session:
        session = Session(id=_new_id(), user_id=user_id, created_at=now_iso(), expires_at=expires_at)
        scope.conn.execute(
            _sessions.insert().values(
                id=session.id,
                token_hash=token_hash,
                user_id=user_id,
                created_at=session.created_at,
                expires_at=expires_at,
            )
        )
        return session

    def get_session_by_hash(self, scope: ScopedAccess, token_hash: str) -> tuple[Session, str] | None:
        """Return (Session, user role) for a session digest, or None if unknown."""
        row = scope.conn.execute(
            select(_sessions, _users.c.role)
            .select_from(_sessions.join(_users, _users.c.id == _sessions.c.user_id))
            .where(_sessions.c.token_hash == token_hash)
        ).fetchone()
        if row is None:
            return None
        return _row_to_session(row), row.role

    def session_is_live(self, scope: ScopedAccess, session_id: str, user_id: str) -> bool:
        row = scope.conn.execute(
            select(_sessions.c.expires_at).where((_sessions.c.id == session_id) & (_sessions.c.user_id == user_id))
        ).fetchone()
        return row is not None and not is_past(row.expires_at)

    def delete_session_by_hash(self, scope: ScopedAccess, token_hash: str) -> bool:
        result = scope.conn.execute(_sessions.delete().where(_sessions.c.token_hash == token_hash))
        return result.rowcount > 0

    def delete_user_sessions(self, scope: ScopedAccess, user_id: str, keep_session_id: str | None = None) -> int:
        """Delete every session of a user, optionally sparing one. Returns the count removed."""
        query = _sessions.delete().where(_sessions.c.user_id == user_id)
        if keep_session_id is not None:
            query = query.where(_sessions.c.id != keep_session_id)
        return scope.conn.execute(query).rowcount

    def purge_expired_sessions(self, scope: ScopedAccess) -> int:
        return scope.conn.execute(_sessions.delete().where(_sessions.c.expires_at <= now_iso())).rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        name=row.name,
        bio=row.bio or "",
        avatar_url=row.avatar_url,
        role=row.role,
        is_verified=bool(row.is_verified),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_email(row) -> UserEmail:
    return UserEmail(
        id=row.id,
        user_id=row.user_id,
        email=row.email,
        is_verified=bool(row.is_verified),
        is_primary=bool(row.is_primary),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_authentication(row) -> UserAuthentication:
    return UserAuthentication(
        id=row.id,
        user_id=row.user_id,
        service=row.service,
        identifier=row.identifier,
        details=json.loads(row.details) if row.details else {},
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_session(row) -> Session:
    return Session(id=row.id, user_id=row.user_id, created_at=row.created_at, expires_at=row.expires_at)
