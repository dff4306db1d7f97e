"""
tests/test_cli.py -- Maintenance command line (main.py).
"""

from __future__ import annotations

import pytest

import main as cli
from conftest import build_components, make_store


@pytest.fixture
def store():
    store = make_store()
    yield store
    store.close()


@pytest.fixture
def passwords(monkeypatch):
    """Answer getpass prompts from a list."""
    answers: list[str] = []
    monkeypatch.setattr(cli.getpass, "getpass", lambda prompt="": answers.pop(0))
    return answers


class TestCreateUser:
    def test_creates_an_admin_who_can_log_in(self, store, passwords, capsys) -> None:
        passwords.extend(["rootpass1", "rootpass1"])
        code = cli.main(["create-user", "root", "--email", "root@example.com", "--verified", "--admin"], store=store)
        assert code == 0
        assert "Created admin root" in capsys.readouterr().out

        flows = build_components(store).flows
        grant = flows.login("root", "rootpass1").payload
        assert grant.user.role == "admin"
        assert grant.user.is_verified

    def test_mismatched_prompt_aborts(self, store, passwords) -> None:
        passwords.extend(["rootpass1", "rootpass2"])
        with pytest.raises(SystemExit):
            cli.main(["create-user", "root"], store=store)

    def test_no_password_account(self, store, passwords) -> None:
        assert cli.main(["create-user", "svc", "--no-password"], store=store) == 0
        assert passwords == []
        assert not build_components(store).flows.login("svc", "anything").ok

    def test_duplicate_username_fails(self, store, passwords, capsys) -> None:
        cli.main(["create-user", "svc", "--no-password"], store=store)
        assert cli.main(["create-user", "SVC", "--no-password"], store=store) == 1
        assert "username_taken" in capsys.readouterr().err


class TestSetRole:
    def test_promote_and_unknown_user(self, store, passwords, capsys) -> None:
        cli.main(["create-user", "carol", "--no-password"], store=store)
        assert cli.main(["set-role", "carol", "admin"], store=store) == 0
        assert "carol is now admin" in capsys.readouterr().out
        assert cli.main(["set-role", "nobody", "admin"], store=store) == 1


class TestPurge:
    def test_purge_reports_count(self, store, capsys) -> None:
        assert cli.main(["purge-sessions"], store=store) == 0
        assert "Purged 0 expired session(s)" in capsys.readouterr().out


def test_no_command_prints_help(capsys) -> None:
    assert cli.main([]) == 2
    assert "COMMAND" in capsys.readouterr().out
