import importlib.util
from pathlib import Path

import pytest

from youandme_auth.service.runtime import get_runtime

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"
PASSWORD = "Sufficiently-Long-9"


@pytest.fixture
def script():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.mark.parametrize(
    "password,ok",
    [
        ("short1!", False),
        ("alllowercaseletters", False),
        ("lowercase-and-digits-1", True),
        ("UPPER lower 1234", True),
    ],
)
def test_validate_password(script, password, ok):
    assert script.validate_password(password) is ok


def test_creates_confirmed_admin(script):
    result = script.bootstrap_admin("Root@Example.com", PASSWORD)
    assert result["status"] == "created"

    runtime = get_runtime()
    user = runtime.store.get_user_by_email("root@example.com")
    assert user.role == "admin"
    assert user.email_confirmed is True
    assert runtime.auth.verify_password(user.id, PASSWORD)

    assert script.bootstrap_admin("root@example.com", PASSWORD)["status"] == "already_admin"


def test_promotes_existing_user(script):
    runtime = get_runtime()
    user = runtime.store.create_user("member@example.com", email_confirmed=True)

    dry = script.bootstrap_admin("member@example.com", PASSWORD, dry_run=True)
    assert dry["status"] == "dry_run"
    assert runtime.store.get_user(user.id).role == "user"

    result = script.bootstrap_admin("member@example.com", PASSWORD)
    assert result == {"user_id": user.id, "email": "member@example.com", "status": "promoted"}
    assert runtime.store.get_user(user.id).role == "admin"


def test_dry_run_creates_nothing(script):
    result = script.bootstrap_admin("ghost@example.com", PASSWORD, dry_run=True)
    assert result["status"] == "dry_run"
    assert get_runtime().store.get_user_by_email("ghost@example.com") is None


def test_main_requires_arguments(script, monkeypatch, capsys):
    monkeypatch.delenv("ADMIN_EMAIL", raising=False)
    monkeypatch.delenv("ADMIN_PASSWORD", raising=False)
    assert script.main([]) == 1
    assert "--email" in capsys.readouterr().out


def test_main_rejects_weak_password(script, capsys):
    assert script.main(["--email", "a@example.com", "--password", "weak"]) == 1
    assert "12 characters" in capsys.readouterr().out


def test_main_creates_admin(script, monkeypatch, capsys):
    monkeypatch.setenv("ALLOW_REDIS_FALLBACK_DEV", "true")
    assert script.main(["--email", "cli@example.com", "--password", PASSWORD]) == 0
    assert "Admin user created: cli@example.com" in capsys.readouterr().out
