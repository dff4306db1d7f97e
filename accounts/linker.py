"""
accounts/linker.py -- Identity linker: reconcile an external identity with a local user.

link_or_register() runs inside the caller's scoped access unit, so the user
it may create, the identity row it inserts and the session the flow issues
afterwards commit or roll back together.

Rules:
  - (provider, subject) already linked to the signed-in user: refresh details.
  - (provider, subject) linked to a different user: conflict. Identities are
    never moved between users.
  - signed in, identity unknown: attach it to the signed-in user.
  - anonymous, identity known: that identity's user.
  - anonymous, identity unknown: create a user seeded from the profile, then
    link. The username gets a numeric suffix when the provider login is
    taken; the email is attached (verified, primary) only when the provider
    vouched for it [H1] and no account already holds it.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

from accounts.results import FailKind, Ok, Result, form_fail
from auth.models import ExternalProfile, User, UserAuthentication

if TYPE_CHECKING:
    from auth.context import ScopedAccess
    from auth.store import CredentialStore

logger = logging.getLogger("gatehouse.accounts.linker")

USERNAME_MIN = 3
USERNAME_MAX = 64

_NON_WORD = re.compile(r"\W+")


class IdentityLinker:
    def __init__(self, store: CredentialStore) -> None:
        self._store = store

    def link_or_register(
        self,
        scope: ScopedAccess,
        current_user_id: str | None,
        provider: str,
        profile: ExternalProfile,
        details: dict,
    ) -> Result:
        """Return Ok(user_id) of the user now linked to (provider, profile.subject), or a conflict."""
        store = self._store
        existing = store.get_identity(scope, provider, profile.subject)

        if existing is not None:
            if current_user_id is not None and existing.user_id != current_user_id:
                logger.warning(
                    "Refused to link %s identity %s to user %s: already linked to another user",
                    provider,
                    profile.subject,
                    current_user_id,
                )
                return form_fail(
                    FailKind.CONFLICT,
                    "identity_linked_elsewhere",
                    "that account is already linked to a different user",
                )
            store.update_authentication_details(scope, existing.id, details)
            return Ok(existing.user_id)

        user_id = current_user_id
        if user_id is None:
            user_id = self._register(scope, provider, profile)

        store.add_authentication(
            scope,
            UserAuthentication(user_id=user_id, service=provider, identifier=profile.subject, details=details),
        )
        logger.info("Linked %s identity %s to user %s", provider, profile.subject, user_id)
        return Ok(user_id)

    def _register(self, scope: ScopedAccess, provider: str, profile: ExternalProfile) -> str:
        username = self.available_username(scope, profile.username or profile.name or provider)
        email = None
        if profile.email and profile.email_verified and not self._store.email_registered(scope, profile.email):
            email = profile.email
        user, _ = self._store.create_user(
            scope,
            User(username=username, name=profile.name, avatar_url=profile.avatar_url),
            password_hash=None,
            email=email,
            email_verified=email is not None,
        )
        logger.info("Registered user %s from %s sign-in", user.id, provider)
        return user.id

    def available_username(self, scope: ScopedAccess, seed: str) -> str:
        """Turn a provider login into a valid username not yet taken."""
        base = _NON_WORD.sub("", seed)[:USERNAME_MAX] or "user"
        if len(base) < USERNAME_MIN:
            base = base.ljust(USERNAME_MIN, "_")
        candidate = base
        n = 1
        while self._store.username_taken(scope, candidate):
            suffix = str(n)
            candidate = base[: USERNAME_MAX - len(suffix)] + suffix
            n += 1
        return candidate
