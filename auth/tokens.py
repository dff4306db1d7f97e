"""
auth/tokens.py -- Token issuer for single-use confirmation tokens.

Three kinds (auth.models.TokenKind): email verification (subject is the
email id), password reset and account deletion (subject is the user id).

Security design decisions:
  Generation: secrets.token_urlsafe(32) gives 256 bits of entropy, safe to
       put in a link query string without escaping.

  Storage: only HMAC-SHA256(SECRET_KEY, raw) is persisted, the same keyed
       digest used for session cookies. A database dump alone does not
       yield usable tokens. bcrypt's slowness buys nothing for 256-bit
       secrets, and a deterministic digest allows O(1) lookup.

  Last write wins: issue() overwrites the pending digest and expiry for the
       (kind, subject) pair, so only the newest token of a kind is valid.

  Consumption is validate-and-clear in the caller's transaction:
       1. read the pending digest (row locked where the database supports it)
       2. hmac.compare_digest against the digest of the supplied token
       3. reject if expired
       4. clear the pending token with UPDATE ... WHERE token = <digest read>
          and require exactly one affected row
       The caller applies the token's effect in the same scoped access unit.
       A crash before commit leaves the token intact; two concurrent
       consumers of the same token cannot both see rowcount 1.

Layer rule: no imports from api/ or accounts/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from typing import TYPE_CHECKING

from auth.models import TokenKind
from auth.store import is_past, iso_after
from core.config import Settings, get_settings

if TYPE_CHECKING:
    from auth.context import ScopedAccess
    from auth.store import CredentialStore

logger = logging.getLogger("gatehouse.auth.tokens")


def generate_token() -> str:
    """Return a new URL-safe random token (43 characters, 256 bits)."""
    return secrets.token_urlsafe(32)


def digest(raw: str, secret_key: str | None = None) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw) as a hex string."""
    key = secret_key if secret_key is not None else get_settings().secret_key
    return hmac.new(key.encode(), raw.encode(), hashlib.sha256).hexdigest()


class TokenIssuer:
    """Issues and consumes pending confirmation tokens."""

    def __init__(self, store: CredentialStore, settings: Settings | None = None) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._ttl = {
            TokenKind.EMAIL_VERIFICATION: self._settings.email_verification_ttl_seconds,
            TokenKind.PASSWORD_RESET: self._settings.password_reset_ttl_seconds,
            TokenKind.ACCOUNT_DELETION: self._settings.account_deletion_ttl_seconds,
        }

    def issue(self, scope: ScopedAccess, kind: TokenKind, subject_id: str) -> str | None:
        """Create a token for the subject, replacing any pending one. Returns the raw token.

        Returns None if the subject does not exist.
        """
        raw = generate_token()
        stored = self._store.set_pending_token(
            scope,
            kind,
            subject_id,
            digest(raw, self._settings.secret_key),
            iso_after(self._ttl[kind]),
        )
        if not stored:
            return None
        logger.info("Issued %s token for %s", kind.value, subject_id)
        return raw

    def consume(self, scope: ScopedAccess, kind: TokenKind, subject_id: str, supplied: str) -> bool:
        """Validate the supplied token and clear it. Returns True exactly once per issued token."""
        if not supplied:
            return False
        pending = self._store.get_pending_token(scope, kind, subject_id)
        if pending is None:
            logger.info("No pending %s token for %s", kind.value, subject_id)
            return False
        stored_digest, expires_at = pending
        if not hmac.compare_digest(stored_digest, digest(supplied, self._settings.secret_key)):
            logger.info("Mismatched %s token for %s", kind.value, subject_id)
            return False
        if is_past(expires_at):
            logger.info("Expired %s token for %s", kind.value, subject_id)
            return False
        if not self._store.clear_pending_token(scope, kind, subject_id, stored_digest):
            logger.info("Lost race consuming %s token for %s", kind.value, subject_id)
            return False
        return True
