"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, almost zero logic). Dataclasses own
domain shape; the store and the flows do the work.

UserSecret has no dataclass on purpose: password hashes and pending token
digests never leave auth/store.py and auth/tokens.py.

Layer rule: no imports from api/ or accounts/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class TokenKind(str, Enum):
    """The three kinds of single-use confirmation token."""

    EMAIL_VERIFICATION = "email-verification"  # subject: user_emails.id
    PASSWORD_RESET = "password-reset"  # subject: users.id
    ACCOUNT_DELETION = "account-deletion"  # subject: users.id


@dataclass
class User:
    """Public identity row.

    username is unique case-insensitively. is_verified is derived: it is True
    while the user holds at least one verified email, and the store keeps it
    in step whenever emails change.
    """

    username: str
    id: str | None = None
    name: str | None = None
    bio: str = ""
    avatar_url: str | None = None
    role: str = "user"  # "user" or "admin"
    is_verified: bool = False
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class UserEmail:
    """An email address owned by a user.

    At most one row per user has is_primary=True, and it is the verified one
    whenever the user holds any verified email.
    """

    user_id: str
    email: str
    id: str | None = None
    is_verified: bool = False
    is_primary: bool = False
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class UserAuthentication:
    """An external identity linked to a user.

    (service, identifier) is globally unique: the same provider account can
    never be attached to two users.
    """

    user_id: str
    service: str  # "github", "google", "oidc"
    identifier: str  # provider's stable subject id
    id: str | None = None
    details: dict = field(default_factory=dict)
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Session:
    """A stored session row. The raw cookie value is never kept, only its digest."""

    id: str
    user_id: str
    created_at: str
    expires_at: str


@dataclass(frozen=True)
class Caller:
    """The authenticated identity a request acts as.

    Threaded explicitly through every flow call instead of being read from
    ambient request state. session_id is the session row id, not the cookie.
    """

    user_id: str
    role: str
    session_id: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass
class ExternalProfile:
    """Provider-neutral view of an OAuth profile, produced by auth/oauth.py."""

    subject: str
    username: str | None = None
    email: str | None = None
    email_verified: bool = False
    name: str | None = None
    avatar_url: str | None = None
    raw: dict = field(default_factory=dict)


@dataclass
class AccountSettings:
    """Everything the settings page needs about the caller's credentials."""

    emails: list[UserEmail]
    authentications: list[UserAuthentication]
    has_password: bool
