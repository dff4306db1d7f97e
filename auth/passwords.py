"""
auth/passwords.py -- Identity verifier: password hashing and credential checks.

Passwords: bcrypt used directly (no passlib wrapper). bcrypt only looks at
the first 72 bytes of input and current releases raise on longer input, so
both hash_password() and verify_password() truncate to 72 bytes. The API
layer caps passwords at 255 characters.

Timing [C1]:
  authenticate() always runs one bcrypt comparison, against _DUMMY_HASH when
  the account is unknown or has no password, so the database path costs the
  same whether or not the identifier exists.

  On top of that every failed login waits a random delay drawn from
  [login_delay_min_ms, login_delay_max_ms] before answering. The delay is
  applied by the flow after its database scope has closed, so no connection
  is held while sleeping.

Layer rule: no imports from api/ or accounts/.
"""

from __future__ import annotations

import logging
import secrets
import time
from typing import TYPE_CHECKING

import bcrypt

if TYPE_CHECKING:
    from auth.context import ScopedAccess
    from auth.models import User
    from auth.store import CredentialStore

logger = logging.getLogger("gatehouse.auth")

_BCRYPT_MAX_BYTES = 72

_random = secrets.SystemRandom()


def _encode(plain: str) -> bytes:
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(_encode(plain), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A malformed stored hash counts as a mismatch.
    """
    try:
        return bcrypt.checkpw(_encode(plain), hashed.encode("utf-8"))
    except ValueError:
        logger.warning("Stored password hash is not a valid bcrypt hash")
        return False


# Computed once at import so the first failed login is not measurably
# slower than later ones.
_DUMMY_HASH: str = hash_password("gatehouse_timing_dummy")


def authenticate(store: CredentialStore, scope: ScopedAccess, identifier: str, password: str) -> User | None:
    """Check a username-or-email and password pair. Returns the User or None.

    Unknown identifier, account without a password, and wrong password all
    return None after the same bcrypt work. No side effects on failure.
    """
    found = store.find_login(scope, identifier.strip())
    if found is None or found[1] is None:
        verify_password(password, _DUMMY_HASH)
        return None
    user, password_hash = found
    if not verify_password(password, password_hash):
        return None
    return user


def failure_delay(min_ms: int, max_ms: int) -> None:
    """Block for a random delay in [min_ms, max_ms] milliseconds.

    Called on every failed login regardless of the reason so that the
    not-found and wrong-password paths share the same latency floor.
    """
    time.sleep(_random.uniform(min_ms, max_ms) / 1000.0)
