"""
tests/test_tokens.py -- Token issuer: single use, last write wins, expiry, races.

The race test uses a real SQLite file (tmp_path) rather than the shared
in-memory database: shared-cache mode reports lock conflicts immediately
instead of waiting, which is not how a deployed database behaves.
"""

from __future__ import annotations

import threading

from conftest import build_components, make_store

from auth.models import TokenKind, User
from auth.tokens import TokenIssuer, digest, generate_token
from core.config import get_settings


def _user(components, username: str = "dave") -> User:
    with components.context.as_system("seed") as scope:
        user, _ = components.store.create_user(scope, User(username=username), email=f"{username}@example.com")
    return user


def _issue(components, kind: TokenKind, subject_id: str, issuer: TokenIssuer | None = None) -> str:
    with components.context.as_system("issue") as scope:
        return (issuer or components.tokens).issue(scope, kind, subject_id)


def _consume(components, kind: TokenKind, subject_id: str, token: str, issuer: TokenIssuer | None = None) -> bool:
    with components.context.as_system("consume") as scope:
        return (issuer or components.tokens).consume(scope, kind, subject_id, token)


class TestGeneration:
    def test_tokens_are_long_and_distinct(self) -> None:
        tokens = {generate_token() for _ in range(50)}
        assert len(tokens) == 50
        assert all(len(t) >= 43 for t in tokens)

    def test_digest_is_keyed(self) -> None:
        assert digest("abc", "k" * 32) != digest("abc", "j" * 32)
        assert digest("abc", "k" * 32) == digest("abc", "k" * 32)


class TestConsume:
    def test_valid_token_succeeds_once(self, components) -> None:
        user = _user(components)
        raw = _issue(components, TokenKind.PASSWORD_RESET, user.id)
        assert _consume(components, TokenKind.PASSWORD_RESET, user.id, raw) is True
        assert _consume(components, TokenKind.PASSWORD_RESET, user.id, raw) is False

    def test_modified_token_fails_and_original_still_works(self, components) -> None:
        user = _user(components)
        raw = _issue(components, TokenKind.PASSWORD_RESET, user.id)
        assert _consume(components, TokenKind.PASSWORD_RESET, user.id, raw + "x") is False
        assert _consume(components, TokenKind.PASSWORD_RESET, user.id, raw[:-1]) is False
        assert _consume(components, TokenKind.PASSWORD_RESET, user.id, raw) is True

    def test_token_is_bound_to_kind_and_subject(self, components) -> None:
        alice = _user(components, "alice")
        bob = _user(components, "bob")
        raw = _issue(components, TokenKind.PASSWORD_RESET, alice.id)
        assert _consume(components, TokenKind.ACCOUNT_DELETION, alice.id, raw) is False
        assert _consume(components, TokenKind.PASSWORD_RESET, bob.id, raw) is False
        assert _consume(components, TokenKind.PASSWORD_RESET, alice.id, raw) is True

    def test_last_issued_token_wins(self, components) -> None:
        user = _user(components)
        first = _issue(components, TokenKind.ACCOUNT_DELETION, user.id)
        second = _issue(components, TokenKind.ACCOUNT_DELETION, user.id)
        assert _consume(components, TokenKind.ACCOUNT_DELETION, user.id, first) is False
        assert _consume(components, TokenKind.ACCOUNT_DELETION, user.id, second) is True

    def test_expired_token_fails_even_when_it_matches(self, components) -> None:
        user = _user(components)
        expired = TokenIssuer(
            components.store, get_settings().model_copy(update={"password_reset_ttl_seconds": -60})
        )
        raw = _issue(components, TokenKind.PASSWORD_RESET, user.id, issuer=expired)
        assert _consume(components, TokenKind.PASSWORD_RESET, user.id, raw) is False

    def test_empty_and_unknown_subjects_fail(self, components) -> None:
        user = _user(components)
        assert _consume(components, TokenKind.PASSWORD_RESET, user.id, "") is False
        assert _consume(components, TokenKind.PASSWORD_RESET, "no-such-user", "whatever") is False
        assert _issue(components, TokenKind.PASSWORD_RESET, "no-such-user") is None

    def test_verification_tokens_are_per_email(self, components) -> None:
        user = _user(components)
        with components.context.as_system("add") as scope:
            extra = components.store.add_email(scope, user.id, "dave.work@example.com")
            first = components.store.list_emails(scope, user.id)[0]
        raw_first = _issue(components, TokenKind.EMAIL_VERIFICATION, first.id)
        raw_extra = _issue(components, TokenKind.EMAIL_VERIFICATION, extra.id)
        assert _consume(components, TokenKind.EMAIL_VERIFICATION, first.id, raw_first) is True
        assert _consume(components, TokenKind.EMAIL_VERIFICATION, extra.id, raw_extra) is True

    def test_raw_token_is_not_stored(self, components) -> None:
        user = _user(components)
        raw = _issue(components, TokenKind.PASSWORD_RESET, user.id)
        with components.context.as_system("peek") as scope:
            stored, _expires = components.store.get_pending_token(scope, TokenKind.PASSWORD_RESET, user.id)
        assert stored != raw
        assert stored == digest(raw)

    def test_rolled_back_consumption_leaves_token_usable(self, components) -> None:
        """A failure after consume() but before commit must not burn the token."""
        user = _user(components)
        raw = _issue(components, TokenKind.PASSWORD_RESET, user.id)
        try:
            with components.context.as_system("crash") as scope:
                assert components.tokens.consume(scope, TokenKind.PASSWORD_RESET, user.id, raw)
                raise RuntimeError("simulated crash before commit")
        except RuntimeError:
            pass
        assert _consume(components, TokenKind.PASSWORD_RESET, user.id, raw) is True


class TestConcurrentConsumption:
    def test_exactly_one_of_two_racing_consumers_wins(self, tmp_path) -> None:
        store = make_store(f"sqlite:///{tmp_path / 'race.db'}")
        components = build_components(store)
        try:
            user = _user(components)
            raw = _issue(components, TokenKind.PASSWORD_RESET, user.id)
            barrier = threading.Barrier(2)
            outcomes: list[bool] = []
            lock = threading.Lock()

            def attempt() -> None:
                barrier.wait()
                ok = _consume(components, TokenKind.PASSWORD_RESET, user.id, raw)
                with lock:
                    outcomes.append(ok)

            threads = [threading.Thread(target=attempt) for _ in range(2)]
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=30)

            assert sorted(outcomes) == [False, True]
        finally:
            store.close()

    def test_racing_password_resets_apply_once(self, tmp_path) -> None:
        store = make_store(f"sqlite:///{tmp_path / 'reset-race.db'}")
        components = build_components(store)
        try:
            user = _user(components)
            raw = _issue(components, TokenKind.PASSWORD_RESET, user.id)
            barrier = threading.Barrier(2)
            results: dict[str, bool] = {}
            lock = threading.Lock()

            def attempt(password: str) -> None:
                barrier.wait()
                result = components.flows.reset_password(user.id, raw, password)
                with lock:
                    results[password] = result.ok

            threads = [threading.Thread(target=attempt, args=(p,)) for p in ("first-pass", "second-pass")]
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=30)

            winners = [p for p, ok in results.items() if ok]
            assert len(winners) == 1
            loser = next(p for p in results if p not in winners)
            assert components.flows.login("dave", winners[0]).ok
            assert not components.flows.login("dave", loser).ok
        finally:
            store.close()
