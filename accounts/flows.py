"""
accounts/flows.py -- Account flow orchestrator.

Each public method of AccountFlows is one externally triggered transition.
Pending state between steps (tokens, unverified emails, sessions) lives in
the database, never in this object, so any worker process can serve any
step.

Conventions:
  - The caller is an explicit argument (auth.models.Caller or None). Nothing
    reads request-global state.
  - Expected failures return Fail. Only bugs and infrastructure failures
    raise, and a raise inside a scoped access unit rolls it back whole.
  - sqlalchemy IntegrityError is caught outside the unit (after rollback)
    and reported as a conflict. The flows pre-check uniqueness so the
    constraint only fires on a genuine race.
  - Token consumption and the effect it authorizes share one unit.
  - Notifications are queued with scope.after_commit().
  - Any transition that changes who the browser is signed in as issues a
    brand new session token (SessionGrant.token) and kills the old one.

Account invariants maintained here (the schema backs them with unique and
partial unique indexes, see auth/store.py):
  - a user holding emails has exactly one primary, and it is verified
    whenever any of the user's emails is verified
  - an unverified email is never promoted explicitly
  - the primary or sole email cannot be deleted
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import urlencode

from sqlalchemy.exc import IntegrityError

from accounts.linker import USERNAME_MAX, USERNAME_MIN, IdentityLinker
from accounts.notifier import Notification, Notifier
from accounts.results import Fail, FailKind, Ok, Result, field_fail, form_fail
from auth.context import NotAuthenticated
from auth.models import AccountSettings, Caller, ExternalProfile, TokenKind, User, UserEmail
from auth.passwords import authenticate, failure_delay, hash_password, verify_password
from core.config import Settings, get_settings

if TYPE_CHECKING:
    from auth.context import AuthContext, ScopedAccess
    from auth.sessions import SessionManager
    from auth.store import CredentialStore
    from auth.tokens import TokenIssuer

logger = logging.getLogger("gatehouse.accounts")

ROLES = ("user", "admin")
PASSWORD_MIN = 6
PASSWORD_MAX = 255

_USERNAME_RE = re.compile(r"\w+")

INVALID_CREDENTIALS = "invalid username or password"
INVALID_TOKEN = "invalid token"
USERNAME_TAKEN = "username already exists"
EMAIL_TAKEN = "email already exists"
RESET_SENT = "Password reset email sent"


# ---------------------------------------------------------------------------
# Shape checks shared with the API request models
# ---------------------------------------------------------------------------


def username_problem(username: str) -> str | None:
    if not USERNAME_MIN <= len(username) <= USERNAME_MAX:
        return f"username must be between {USERNAME_MIN} and {USERNAME_MAX} characters"
    if not _USERNAME_RE.fullmatch(username):
        return "username may only contain letters, numbers and underscores"
    return None


def password_problem(password: str) -> str | None:
    if len(password) < PASSWORD_MIN:
        return f"password must be at least {PASSWORD_MIN} characters"
    if len(password) > PASSWORD_MAX:
        return f"password must be at most {PASSWORD_MAX} characters"
    return None


@dataclass
class SessionGrant:
    """A user plus the raw session token to set as the cookie (None: keep the current one)."""

    user: User
    token: str | None = None


class AccountFlows:
    def __init__(
        self,
        store: CredentialStore,
        context: AuthContext,
        sessions: SessionManager,
        tokens: TokenIssuer,
        notifier: Notifier,
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._context = context
        self._sessions = sessions
        self._tokens = tokens
        self._notifier = notifier
        self._settings = settings or get_settings()
        self.linker = IdentityLinker(store)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _link(self, path: str, **params: str) -> str:
        return f"{self._settings.root_url.rstrip('/')}{path}?{urlencode(params)}"

    def _notify(self, scope: ScopedAccess, template: str, to: str, **variables) -> None:
        scope.after_commit(self._notifier.send, Notification(template=template, to=to, variables=variables))

    def _send_verification(self, scope: ScopedAccess, user: User, user_email: UserEmail) -> None:
        raw = self._tokens.issue(scope, TokenKind.EMAIL_VERIFICATION, user_email.id)
        self._notify(
            scope,
            "email_verification",
            user_email.email,
            username=user.username,
            link=self._link("/verify", id=user_email.id, token=raw),
        )

    @staticmethod
    def _primary(emails: list[UserEmail]) -> UserEmail | None:
        return next((e for e in emails if e.is_primary), None)

    def _conflict_after_race(self, username: str | None, email: str | None) -> Fail:
        """Work out which uniqueness rule a rolled-back write tripped over."""
        with self._context.as_system("classify conflict") as scope:
            if email and self._store.email_registered(scope, email):
                return field_fail(FailKind.CONFLICT, "email_taken", "email", EMAIL_TAKEN)
        return field_fail(FailKind.CONFLICT, "username_taken", "username", USERNAME_TAKEN)

    # ------------------------------------------------------------------
    # Registration and sign-in
    # ------------------------------------------------------------------

    def register(
        self,
        username: str,
        email: str | None,
        password: str,
        session_token: str | None = None,
    ) -> Result:
        """Create a user with a password and sign them in. Ok(SessionGrant)."""
        if not self._settings.self_registration_enabled:
            return form_fail(FailKind.FORBIDDEN, "registration_disabled", "registration is disabled")
        problem = username_problem(username) or password_problem(password)
        if problem:
            return form_fail(FailKind.INVALID, "invalid_input", problem)

        try:
            with self._context.as_system("register") as scope:
                if self._store.username_taken(scope, username):
                    return field_fail(FailKind.CONFLICT, "username_taken", "username", USERNAME_TAKEN)
                if email and self._store.email_registered(scope, email):
                    return field_fail(FailKind.CONFLICT, "email_taken", "email", EMAIL_TAKEN)
                user, user_email = self._store.create_user(
                    scope, User(username=username), password_hash=hash_password(password), email=email
                )
                token = self._sessions.rotate(scope, session_token, user.id)
                if user_email is not None and self._settings.send_verification_on_register:
                    self._send_verification(scope, user, user_email)
        except IntegrityError:
            logger.info("Registration of %r lost a uniqueness race", username)
            return self._conflict_after_race(username, email)

        logger.info("Registered user %s (%s)", user.id, user.username)
        return Ok(SessionGrant(user=user, token=token))

    def login(self, identifier: str, password: str, session_token: str | None = None) -> Result:
        """Verify a username-or-email and password, then issue a new session. Ok(SessionGrant)."""
        with self._context.as_system("login") as scope:
            user = authenticate(self._store, scope, identifier, password)
            if user is not None:
                self._store.record_login(scope, user.id)
                token = self._sessions.rotate(scope, session_token, user.id)

        if user is None:
            logger.warning("Failed login for identifier %r", identifier)
            failure_delay(self._settings.login_delay_min_ms, self._settings.login_delay_max_ms)
            return form_fail(FailKind.UNAUTHENTICATED, "invalid_credentials", INVALID_CREDENTIALS)

        logger.info("User %s logged in", user.id)
        return Ok(SessionGrant(user=user, token=token))

    def logout(self, session_token: str | None) -> Result:
        with self._context.as_system("logout") as scope:
            self._sessions.invalidate(scope, session_token)
        return Ok(None, ["logged out"])

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    def current_user(self, caller: Caller | None) -> Result:
        """Ok(User) for a live caller, Ok(None) otherwise."""
        if caller is None:
            return Ok(None)
        try:
            with self._context.as_caller(caller) as scope:
                return Ok(self._store.get_user(scope, caller.user_id))
        except NotAuthenticated:
            return Ok(None)

    def update_profile(
        self,
        caller: Caller | None,
        username: str | None = None,
        name: str | None = None,
        bio: str | None = None,
        avatar_url: str | None = None,
    ) -> Result:
        fields = {
            key: value
            for key, value in (("username", username), ("name", name), ("bio", bio), ("avatar_url", avatar_url))
            if value is not None
        }
        if username is not None:
            problem = username_problem(username)
            if problem:
                return field_fail(FailKind.INVALID, "invalid_input", "username", problem)
        try:
            with self._context.as_caller(caller) as scope:
                if username is not None and self._store.username_taken(
                    scope, username, exclude_user_id=caller.user_id
                ):
                    return field_fail(FailKind.CONFLICT, "username_taken", "username", USERNAME_TAKEN)
                user = self._store.update_user(scope, caller.user_id, **fields)
        except IntegrityError:
            return field_fail(FailKind.CONFLICT, "username_taken", "username", USERNAME_TAKEN)
        return Ok(user)

    def account_settings(self, caller: Caller | None) -> Result:
        with self._context.as_caller(caller) as scope:
            settings = AccountSettings(
                emails=self._store.list_emails(scope, caller.user_id),
                authentications=self._store.list_authentications(scope, caller.user_id),
                has_password=self._store.get_password_hash(scope, caller.user_id) is not None,
            )
        return Ok(settings)

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def change_password(self, caller: Caller | None, old_password: str | None, new_password: str) -> Result:
        """Set a new password. The old one is required unless none is set yet.

        Every other session of the user is signed out; the caller's stays.
        """
        problem = password_problem(new_password)
        if problem:
            return field_fail(FailKind.INVALID, "invalid_input", "new_password", problem)
        with self._context.as_caller(caller) as scope:
            current_hash = self._store.get_password_hash(scope, caller.user_id)
            if current_hash is not None and not (old_password and verify_password(old_password, current_hash)):
                logger.warning("Password change for user %s rejected: wrong previous password", caller.user_id)
                return field_fail(
                    FailKind.INVALID, "incorrect_password", "old_password", "previous password was incorrect"
                )
            self._store.set_password_hash(scope, caller.user_id, hash_password(new_password))
            self._sessions.invalidate_user(scope, caller.user_id, keep_session_id=caller.session_id)
        logger.info("User %s changed password", caller.user_id)
        return Ok(None, ["password updated"])

    def forgot_password(self, email: str) -> Result:
        """Send a reset link if the address is registered. The result never says which."""
        with self._context.as_system("forgot password") as scope:
            user_email = self._store.get_email_by_address(scope, email)
            if user_email is None:
                self._notify(scope, "password_reset_unregistered", email, email=email)
            else:
                user = self._store.get_user(scope, user_email.user_id)
                raw = self._tokens.issue(scope, TokenKind.PASSWORD_RESET, user.id)
                self._notify(
                    scope,
                    "password_reset",
                    user_email.email,
                    username=user.username,
                    link=self._link("/reset", user_id=user.id, token=raw),
                )
        return Ok(None, [RESET_SENT])

    def reset_password(
        self,
        user_id: str,
        token: str,
        new_password: str,
        session_token: str | None = None,
    ) -> Result:
        """Consume a reset token, set the password, sign out everywhere, sign in here. Ok(SessionGrant)."""
        problem = password_problem(new_password)
        if problem:
            return field_fail(FailKind.INVALID, "invalid_input", "password", problem)
        with self._context.as_system("reset password") as scope:
            user = self._store.get_user(scope, user_id)
            if user is None or not self._tokens.consume(scope, TokenKind.PASSWORD_RESET, user_id, token):
                logger.warning("Password reset rejected for user id %r", user_id)
                return field_fail(FailKind.INVALID, "invalid_token", "token", INVALID_TOKEN)
            self._store.set_password_hash(scope, user_id, hash_password(new_password))
            self._sessions.invalidate_user(scope, user_id)
            new_token = self._sessions.rotate(scope, session_token, user_id)
        logger.info("User %s reset password", user_id)
        return Ok(SessionGrant(user=user, token=new_token))

    # ------------------------------------------------------------------
    # Emails
    # ------------------------------------------------------------------

    def add_email(self, caller: Caller | None, email: str) -> Result:
        """Add an unverified address and send its verification link. Ok(UserEmail).

        The first address a user adds becomes primary. If a concurrent add
        claimed the primary slot first, the address is added as non-primary.
        """
        try:
            return self._insert_email(caller, email, primary_if_first=True)
        except IntegrityError:
            with self._context.as_system("classify email conflict") as scope:
                taken = self._store.email_registered(scope, email)
        if taken:
            return field_fail(FailKind.CONFLICT, "email_taken", "email", EMAIL_TAKEN)
        logger.info("Primary email for %s was claimed concurrently; adding %r as secondary", caller.user_id, email)
        try:
            return self._insert_email(caller, email, primary_if_first=False)
        except IntegrityError:
            return field_fail(FailKind.CONFLICT, "email_taken", "email", EMAIL_TAKEN)

    def _insert_email(self, caller: Caller | None, email: str, primary_if_first: bool) -> Result:
        with self._context.as_caller(caller) as scope:
            if self._store.email_registered(scope, email):
                return field_fail(FailKind.CONFLICT, "email_taken", "email", EMAIL_TAKEN)
            user = self._store.get_user(scope, caller.user_id)
            primary = primary_if_first and not self._store.list_emails(scope, caller.user_id)
            user_email = self._store.add_email(scope, caller.user_id, email, primary=primary)
            self._send_verification(scope, user, user_email)
        return Ok(user_email)

    def resend_verification(self, caller: Caller | None, email_id: str) -> Result:
        with self._context.as_caller(caller) as scope:
            user_email = self._store.get_email(scope, email_id)
            if user_email is None:
                return form_fail(FailKind.NOT_FOUND, "email_not_found", "email not found")
            if user_email.is_verified:
                return field_fail(FailKind.INVALID, "already_verified", "email_id", "email is already verified")
            user = self._store.get_user(scope, user_email.user_id)
            self._send_verification(scope, user, user_email)
        return Ok(None, ["verification email sent"])

    def verify_email(self, email_id: str, token: str, caller: Caller | None = None) -> Result:
        """Consume a verification token and mark the email verified. Ok(UserEmail).

        Token-gated, so no session is needed. If the user's primary email is
        not verified, the newly verified one becomes primary.
        """
        with self._context.as_system("verify email", caller) as scope:
            user_email = self._store.get_email(scope, email_id)
            if user_email is None or not self._tokens.consume(
                scope, TokenKind.EMAIL_VERIFICATION, email_id, token
            ):
                logger.warning("Email verification rejected for email id %r", email_id)
                return field_fail(FailKind.INVALID, "invalid_token", "token", INVALID_TOKEN)
            self._store.mark_email_verified(scope, email_id)
            primary = self._primary(self._store.list_emails(scope, user_email.user_id))
            if primary is None or not primary.is_verified:
                self._store.set_primary_email(scope, user_email.user_id, email_id)
            self._store.refresh_verified(scope, user_email.user_id)
            verified = self._store.get_email(scope, email_id)
        logger.info("Email %s verified for user %s", email_id, user_email.user_id)
        return Ok(verified)

    def make_email_primary(self, caller: Caller | None, email_id: str) -> Result:
        """Promote a verified email; the old primary is demoted. Ok(list[UserEmail])."""
        with self._context.as_caller(caller) as scope:
            user_email = self._store.get_email(scope, email_id)
            if user_email is None:
                return form_fail(FailKind.NOT_FOUND, "email_not_found", "email not found")
            if not user_email.is_verified:
                return field_fail(
                    FailKind.INVALID,
                    "email_unverified",
                    "email_id",
                    "email must be verified before it can be made primary",
                )
            if not user_email.is_primary:
                self._store.set_primary_email(scope, user_email.user_id, email_id)
            emails = self._store.list_emails(scope, user_email.user_id)
        return Ok(emails)

    def delete_email(self, caller: Caller | None, email_id: str) -> Result:
        """Remove a non-primary email. Ok(list[UserEmail]) of what remains."""
        with self._context.as_caller(caller) as scope:
            user_email = self._store.get_email(scope, email_id)
            if user_email is None:
                return form_fail(FailKind.NOT_FOUND, "email_not_found", "email not found")
            emails = self._store.list_emails(scope, user_email.user_id)
            if len(emails) == 1:
                return field_fail(FailKind.INVALID, "last_email", "email_id", "you cannot delete your only email")
            if user_email.is_primary:
                return field_fail(
                    FailKind.INVALID, "primary_email", "email_id", "you cannot delete your primary email"
                )
            self._store.delete_email(scope, email_id)
            self._store.refresh_verified(scope, user_email.user_id)
            remaining = self._store.list_emails(scope, user_email.user_id)
        return Ok(remaining)

    # ------------------------------------------------------------------
    # Account deletion
    # ------------------------------------------------------------------

    def request_account_deletion(self, caller: Caller | None) -> Result:
        """Mail a deletion confirmation link to the primary email."""
        with self._context.as_caller(caller) as scope:
            user = self._store.get_user(scope, caller.user_id)
            primary = self._primary(self._store.list_emails(scope, caller.user_id))
            if primary is None:
                return form_fail(
                    FailKind.INVALID,
                    "no_primary_email",
                    "add an email address to your account before deleting it",
                )
            raw = self._tokens.issue(scope, TokenKind.ACCOUNT_DELETION, user.id)
            self._notify(
                scope,
                "account_deletion",
                primary.email,
                username=user.username,
                link=self._link("/settings", user_id=user.id, delete_token=raw),
            )
        return Ok(None, ["check your email to confirm account deletion"])

    def confirm_account_deletion(
        self,
        caller: Caller | None,
        token: str,
        user_id: str | None = None,
        session_token: str | None = None,
    ) -> Result:
        """Consume a deletion token and delete the account with everything it owns.

        The token is the authority: the holder does not need to be signed in,
        in which case user_id names the account.
        """
        subject_id = user_id or (caller.user_id if caller else None)
        if not subject_id:
            return field_fail(FailKind.INVALID, "invalid_token", "token", INVALID_TOKEN)
        with self._context.as_system("confirm account deletion", caller) as scope:
            if not self._tokens.consume(scope, TokenKind.ACCOUNT_DELETION, subject_id, token):
                logger.warning("Account deletion rejected for user id %r", subject_id)
                return field_fail(FailKind.INVALID, "invalid_token", "token", INVALID_TOKEN)
            self._store.delete_user(scope, subject_id)
            self._sessions.invalidate(scope, session_token)
        logger.info("User %s deleted their account", subject_id)
        return Ok(None, ["account deleted"])

    # ------------------------------------------------------------------
    # External identities
    # ------------------------------------------------------------------

    def complete_oauth(
        self,
        caller: Caller | None,
        provider: str,
        profile: ExternalProfile,
        details: dict,
        session_token: str | None = None,
    ) -> Result:
        """Link or sign in with a verified external identity. Ok(SessionGrant).

        Signed-in callers get the identity attached and keep their session.
        Anonymous callers are signed in as the linked (possibly new) user.
        """
        try:
            unit = (
                self._context.as_caller(caller)
                if caller is not None
                else self._context.as_system(f"{provider} sign-in")
            )
            with unit as scope:
                result = self.linker.link_or_register(
                    scope, caller.user_id if caller else None, provider, profile, details
                )
                if not result.ok:
                    return result
                user = self._store.get_user(scope, result.payload)
                token = None
                if caller is None:
                    self._store.record_login(scope, user.id)
                    token = self._sessions.rotate(scope, session_token, user.id)
        except IntegrityError:
            logger.warning("%s identity %s lost a linking race", provider, profile.subject)
            return form_fail(
                FailKind.CONFLICT, "identity_linked_elsewhere", "that account is already linked to a different user"
            )
        return Ok(SessionGrant(user=user, token=token))

    def unlink_identity(self, caller: Caller | None, authentication_id: str) -> Result:
        """Remove a linked identity unless it is the account's last way to sign in."""
        with self._context.as_caller(caller) as scope:
            auth = self._store.get_authentication(scope, authentication_id)
            if auth is None:
                return form_fail(FailKind.NOT_FOUND, "identity_not_found", "linked account not found")
            has_password = self._store.get_password_hash(scope, auth.user_id) is not None
            others = [a for a in self._store.list_authentications(scope, auth.user_id) if a.id != auth.id]
            if not has_password and not others:
                return form_fail(
                    FailKind.FORBIDDEN,
                    "last_credential",
                    "set a password before unlinking your only sign-in method",
                )
            self._store.delete_authentication(scope, auth.id)
        logger.info("Unlinked %s identity from user %s", auth.service, auth.user_id)
        return Ok(None, ["account unlinked"])

    # ------------------------------------------------------------------
    # Maintenance (CLI)
    # ------------------------------------------------------------------

    def create_user(
        self,
        username: str,
        password: str | None,
        email: str | None = None,
        role: str = "user",
        email_verified: bool = False,
    ) -> Result:
        """Create an account directly, bypassing self-registration. Ok(User)."""
        if role not in ROLES:
            return form_fail(FailKind.INVALID, "invalid_role", f"role must be one of {', '.join(ROLES)}")
        problem = username_problem(username) or (password_problem(password) if password else None)
        if problem:
            return form_fail(FailKind.INVALID, "invalid_input", problem)
        try:
            with self._context.as_system("create user") as scope:
                if self._store.username_taken(scope, username):
                    return field_fail(FailKind.CONFLICT, "username_taken", "username", USERNAME_TAKEN)
                if email and self._store.email_registered(scope, email):
                    return field_fail(FailKind.CONFLICT, "email_taken", "email", EMAIL_TAKEN)
                user, _ = self._store.create_user(
                    scope,
                    User(username=username, role=role),
                    password_hash=hash_password(password) if password else None,
                    email=email,
                    email_verified=email_verified,
                )
        except IntegrityError:
            return self._conflict_after_race(username, email)
        return Ok(user)

    def set_role(self, username: str, role: str) -> Result:
        if role not in ROLES:
            return form_fail(FailKind.INVALID, "invalid_role", f"role must be one of {', '.join(ROLES)}")
        with self._context.as_system("set role") as scope:
            user = self._store.get_user_by_username(scope, username)
            if user is None:
                return form_fail(FailKind.NOT_FOUND, "user_not_found", f"no user named {username!r}")
            user = self._store.update_user(scope, user.id, role=role)
        return Ok(user)
