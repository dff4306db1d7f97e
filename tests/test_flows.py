"""
tests/test_flows.py -- Account flow orchestrator, driven directly without HTTP.

Notification links are read back from the recording notifier, the same way
a user would click them.
"""

from __future__ import annotations

import time

from accounts.flows import INVALID_CREDENTIALS, RESET_SENT, SessionGrant
from accounts.results import FailKind
from auth.models import Caller
from core.config import get_settings


def _register(components, username: str = "alice", email: str = "alice@example.com", password: str = "hunter22"):
    result = components.flows.register(username, email, password)
    assert result.ok, result
    return result.payload


def _caller(components, grant: SessionGrant) -> Caller:
    return components.sessions.lookup(grant.token)


def _verify(components, email: str) -> None:
    params = components.notifier.link_params("email_verification")
    sent_to = components.notifier.last("email_verification").to
    assert sent_to == email
    assert components.flows.verify_email(params["id"], params["token"]).ok


class TestRegistration:
    def test_register_creates_session_and_sends_verification(self, components) -> None:
        grant = _register(components)
        assert grant.user.username == "alice"
        assert grant.token
        assert _caller(components, grant).user_id == grant.user.id
        note = components.notifier.last("email_verification")
        assert note.to == "alice@example.com"
        assert note.variables["link"].startswith("http://frontend.test/verify?")

    def test_duplicate_username_fails_case_insensitively(self, components) -> None:
        _register(components)
        result = components.flows.register("ALICE", "other@example.com", "hunter22")
        assert not result.ok
        assert result.kind is FailKind.CONFLICT
        assert result.code == "username_taken"
        assert result.field_errors == {"username": ["username already exists"]}

    def test_duplicate_email_fails(self, components) -> None:
        _register(components)
        result = components.flows.register("bob", "Alice@Example.com", "hunter22")
        assert result.code == "email_taken"

    def test_shape_checks(self, components) -> None:
        assert components.flows.register("ab", "a@example.com", "hunter22").code == "invalid_input"
        assert components.flows.register("bad name", "a@example.com", "hunter22").code == "invalid_input"
        assert components.flows.register("goodname", "a@example.com", "short").code == "invalid_input"

    def test_trailing_newline_is_not_a_username_character(self, components) -> None:
        assert components.flows.register("bob\n", "bob@example.com", "hunter22").code == "invalid_input"
        assert components.flows.create_user("bob\n", None).code == "invalid_input"

    def test_registration_rotates_an_existing_session(self, components) -> None:
        first = _register(components)
        second = components.flows.register("bob", "bob@example.com", "hunter22", session_token=first.token).payload
        assert components.sessions.lookup(first.token) is None
        assert components.sessions.lookup(second.token).user_id == second.user.id


class TestLogin:
    def test_login_by_username_or_email(self, components) -> None:
        _register(components)
        assert components.flows.login("alice", "hunter22").ok
        assert components.flows.login("ALICE@example.com", "hunter22").ok

    def test_failures_share_one_generic_message(self, components) -> None:
        _register(components)
        wrong_password = components.flows.login("alice", "nope-nope")
        unknown_user = components.flows.login("mallory", "hunter22")
        for result in (wrong_password, unknown_user):
            assert not result.ok
            assert result.kind is FailKind.UNAUTHENTICATED
            assert result.message == INVALID_CREDENTIALS
        assert wrong_password.code == unknown_user.code

    def test_every_failure_waits_the_minimum_delay(self, components) -> None:
        _register(components)
        floor = get_settings().login_delay_min_ms / 1000.0
        assert floor > 0
        attempts = [("alice", "nope-nope"), ("mallory", "hunter22"), ("alice", "hunter2"), ("ALICE", "HUNTER22")]
        for identifier, password in attempts * 2:
            started = time.monotonic()
            result = components.flows.login(identifier, password)
            elapsed = time.monotonic() - started
            assert not result.ok
            assert result.code == "invalid_credentials"
            assert elapsed >= floor

    def test_login_rotates_the_session(self, components) -> None:
        grant = _register(components)
        again = components.flows.login("alice", "hunter22", session_token=grant.token).payload
        assert again.token != grant.token
        assert components.sessions.lookup(grant.token) is None
        assert components.sessions.lookup(again.token) is not None

    def test_logout(self, components) -> None:
        grant = _register(components)
        components.flows.logout(grant.token)
        assert components.sessions.lookup(grant.token) is None


class TestProfile:
    def test_current_user(self, components) -> None:
        grant = _register(components)
        assert components.flows.current_user(None).payload is None
        assert components.flows.current_user(_caller(components, grant)).payload.id == grant.user.id

    def test_update_profile_and_username_conflict(self, components) -> None:
        alice = _register(components)
        _register(components, "bob", "bob@example.com")
        caller = _caller(components, alice)

        updated = components.flows.update_profile(caller, name="Alice A.", bio="hi").payload
        assert (updated.name, updated.bio, updated.username) == ("Alice A.", "hi", "alice")

        conflict = components.flows.update_profile(caller, username="Bob")
        assert conflict.code == "username_taken"

        renamed = components.flows.update_profile(caller, username="Alice_2").payload
        assert renamed.username == "Alice_2"

    def test_account_settings(self, components) -> None:
        grant = _register(components)
        settings = components.flows.account_settings(_caller(components, grant)).payload
        assert [e.email for e in settings.emails] == ["alice@example.com"]
        assert settings.authentications == []
        assert settings.has_password is True


class TestChangePassword:
    def test_wrong_previous_password(self, components) -> None:
        grant = _register(components)
        result = components.flows.change_password(_caller(components, grant), "wrong-one", "newpass1")
        assert result.code == "incorrect_password"
        assert result.field_errors == {"old_password": ["previous password was incorrect"]}
        assert components.flows.login("alice", "hunter22").ok

    def test_change_signs_out_other_sessions_only(self, components) -> None:
        grant = _register(components)
        other = components.flows.login("alice", "hunter22").payload
        result = components.flows.change_password(_caller(components, grant), "hunter22", "newpass1")
        assert result.ok
        assert components.sessions.lookup(grant.token) is not None
        assert components.sessions.lookup(other.token) is None
        assert components.flows.login("alice", "newpass1").ok
        assert not components.flows.login("alice", "hunter22").ok

    def test_first_password_needs_no_old_password(self, components) -> None:
        with components.context.as_system("seed") as scope:
            from auth.models import User

            user, _ = components.store.create_user(scope, User(username="oauthonly"))
            token = components.sessions.create(scope, user.id)
        caller = components.sessions.lookup(token)
        assert components.flows.change_password(caller, None, "firstpass").ok
        assert components.flows.login("oauthonly", "firstpass").ok


class TestForgotAndReset:
    def test_full_reset(self, components) -> None:
        grant = _register(components)
        result = components.flows.forgot_password("alice@example.com")
        assert result.messages == [RESET_SENT]
        params = components.notifier.link_params("password_reset")
        assert params["user_id"] == grant.user.id

        reset = components.flows.reset_password(params["user_id"], params["token"], "brand-new")
        assert reset.ok
        assert reset.payload.token
        assert components.sessions.lookup(grant.token) is None  # every old session is gone
        assert components.flows.login("alice", "brand-new").ok

    def test_reset_token_is_single_use(self, components) -> None:
        _register(components)
        components.flows.forgot_password("alice@example.com")
        params = components.notifier.link_params("password_reset")
        assert components.flows.reset_password(params["user_id"], params["token"], "brand-new").ok
        again = components.flows.reset_password(params["user_id"], params["token"], "another1")
        assert again.code == "invalid_token"
        assert again.field_errors == {"token": ["invalid token"]}
        assert components.flows.login("alice", "brand-new").ok

    def test_unknown_address_answers_identically(self, components) -> None:
        _register(components)
        known = components.flows.forgot_password("alice@example.com")
        unknown = components.flows.forgot_password("nobody@example.com")
        assert known.ok and unknown.ok
        assert known.messages == unknown.messages
        note = components.notifier.last("password_reset_unregistered")
        assert note.to == "nobody@example.com"

    def test_unknown_user_id(self, components) -> None:
        assert components.flows.reset_password("no-such-user", "token", "brand-new").code == "invalid_token"


class TestEmails:
    def test_register_then_verify_makes_email_verified_and_primary(self, components) -> None:
        grant = _register(components)
        _verify(components, "alice@example.com")
        emails = components.flows.account_settings(_caller(components, grant)).payload.emails
        assert len(emails) == 1
        assert emails[0].is_verified and emails[0].is_primary
        assert components.flows.current_user(_caller(components, grant)).payload.is_verified

    def test_adding_a_registered_address_conflicts(self, components) -> None:
        grant = _register(components)
        _register(components, "bob", "bob@example.com")
        caller = _caller(components, grant)
        assert components.flows.add_email(caller, "alice@example.com").code == "email_taken"
        assert components.flows.add_email(caller, "BOB@example.com").code == "email_taken"

    def test_new_address_starts_unverified_and_not_primary(self, components) -> None:
        grant = _register(components)
        added = components.flows.add_email(_caller(components, grant), "alice.work@example.com").payload
        assert not added.is_verified
        assert not added.is_primary
        assert components.notifier.last("email_verification").to == "alice.work@example.com"

    def test_losing_the_primary_slot_race_adds_a_secondary(self, components, monkeypatch) -> None:
        grant = _register(components)
        caller = _caller(components, grant)
        real_list = components.store.list_emails
        stale_reads = [[]]

        def list_emails(scope, user_id):
            # first read misses the primary committed by a concurrent add
            return stale_reads.pop() if stale_reads else real_list(scope, user_id)

        monkeypatch.setattr(components.store, "list_emails", list_emails)
        result = components.flows.add_email(caller, "alice.work@example.com")
        assert result.ok, result
        assert not result.payload.is_primary

        with components.context.as_system("check") as scope:
            emails = real_list(scope, grant.user.id)
        assert [e.email for e in emails if e.is_primary] == ["alice@example.com"]
        assert len(emails) == 2

    def test_unverified_email_cannot_be_promoted(self, components) -> None:
        grant = _register(components)
        _verify(components, "alice@example.com")
        caller = _caller(components, grant)
        added = components.flows.add_email(caller, "alice.work@example.com").payload
        result = components.flows.make_email_primary(caller, added.id)
        assert result.code == "email_unverified"

    def test_verified_email_promotion_leaves_exactly_one_primary(self, components) -> None:
        grant = _register(components)
        _verify(components, "alice@example.com")
        caller = _caller(components, grant)
        added = components.flows.add_email(caller, "alice.work@example.com").payload
        _verify(components, "alice.work@example.com")

        emails = components.flows.make_email_primary(caller, added.id).payload
        primaries = [e for e in emails if e.is_primary]
        assert len(primaries) == 1
        assert primaries[0].id == added.id

    def test_verifying_while_primary_is_unverified_moves_primary(self, components) -> None:
        grant = _register(components)
        caller = _caller(components, grant)
        added = components.flows.add_email(caller, "alice.work@example.com").payload
        _verify(components, "alice.work@example.com")
        emails = components.flows.account_settings(caller).payload.emails
        assert [e.id for e in emails if e.is_primary] == [added.id]

    def test_cannot_delete_only_or_primary_email(self, components) -> None:
        grant = _register(components)
        caller = _caller(components, grant)
        only = components.flows.account_settings(caller).payload.emails[0]
        assert components.flows.delete_email(caller, only.id).code == "last_email"

        added = components.flows.add_email(caller, "alice.work@example.com").payload
        assert components.flows.delete_email(caller, only.id).code == "primary_email"
        remaining = components.flows.delete_email(caller, added.id).payload
        assert [e.id for e in remaining] == [only.id]

    def test_other_users_emails_are_not_found(self, components) -> None:
        alice = _register(components)
        bob = _register(components, "bob", "bob@example.com")
        bob_email = components.flows.account_settings(_caller(components, bob)).payload.emails[0]
        caller = _caller(components, alice)
        assert components.flows.delete_email(caller, bob_email.id).kind is FailKind.NOT_FOUND
        assert components.flows.make_email_primary(caller, bob_email.id).kind is FailKind.NOT_FOUND
        assert components.flows.resend_verification(caller, bob_email.id).kind is FailKind.NOT_FOUND

    def test_resend_replaces_the_previous_link(self, components) -> None:
        grant = _register(components)
        first = components.notifier.link_params("email_verification")
        assert components.flows.resend_verification(_caller(components, grant), first["id"]).ok
        second = components.notifier.link_params("email_verification")
        assert first["token"] != second["token"]
        assert components.flows.verify_email(first["id"], first["token"]).code == "invalid_token"
        assert components.flows.verify_email(second["id"], second["token"]).ok

    def test_resend_for_verified_email_is_rejected(self, components) -> None:
        grant = _register(components)
        params = components.notifier.link_params("email_verification")
        _verify(components, "alice@example.com")
        result = components.flows.resend_verification(_caller(components, grant), params["id"])
        assert result.code == "already_verified"

    def test_tampered_verification_token(self, components) -> None:
        _register(components)
        params = components.notifier.link_params("email_verification")
        assert components.flows.verify_email(params["id"], params["token"] + "A").code == "invalid_token"
        assert components.flows.verify_email(params["id"], params["token"]).ok


class TestAccountDeletion:
    def test_request_then_confirm(self, components) -> None:
        grant = _register(components)
        caller = _caller(components, grant)
        assert components.flows.request_account_deletion(caller).ok
        note = components.notifier.last("account_deletion")
        assert note.to == "alice@example.com"
        params = components.notifier.link_params("account_deletion")

        result = components.flows.confirm_account_deletion(caller, params["delete_token"], session_token=grant.token)
        assert result.ok
        assert components.sessions.lookup(grant.token) is None
        relogin = components.flows.login("alice", "hunter22")
        assert relogin.message == INVALID_CREDENTIALS

    def test_confirm_without_session_using_user_id(self, components) -> None:
        grant = _register(components)
        components.flows.request_account_deletion(_caller(components, grant))
        params = components.notifier.link_params("account_deletion")
        result = components.flows.confirm_account_deletion(None, params["delete_token"], user_id=params["user_id"])
        assert result.ok
        # The address is free again once the account is gone.
        assert components.flows.register("alice", "alice@example.com", "hunter22").ok

    def test_bad_token_keeps_the_account(self, components) -> None:
        grant = _register(components)
        caller = _caller(components, grant)
        components.flows.request_account_deletion(caller)
        params = components.notifier.link_params("account_deletion")
        result = components.flows.confirm_account_deletion(caller, params["delete_token"] + "x")
        assert result.code == "invalid_token"
        assert components.flows.login("alice", "hunter22").ok

    def test_deletion_needs_a_primary_email(self, components) -> None:
        with components.context.as_system("seed") as scope:
            from auth.models import User

            user, _ = components.store.create_user(scope, User(username="noemail"))
            token = components.sessions.create(scope, user.id)
        result = components.flows.request_account_deletion(components.sessions.lookup(token))
        assert result.code == "no_primary_email"


class TestMaintenance:
    def test_create_user_and_set_role(self, components) -> None:
        created = components.flows.create_user("admin", "adminpass", email="admin@example.com", email_verified=True)
        assert created.ok
        assert created.payload.is_verified
        promoted = components.flows.set_role("ADMIN", "admin")
        assert promoted.payload.role == "admin"
        assert components.flows.set_role("ghost", "admin").kind is FailKind.NOT_FOUND
        assert components.flows.set_role("admin", "root").code == "invalid_role"
