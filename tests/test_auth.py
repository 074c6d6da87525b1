import os
import sys

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from auth_service import AuthError, AuthService, Session
from config import YamlConfig
from db import ConflictError, UserRepository


@pytest.fixture
def auth(tmp_path):
    users = UserRepository(str(tmp_path / "users.db"))
    return AuthService(users, YamlConfig(str(tmp_path / "settings.yaml")))


def test_sign_up_creates_session(auth):
    session = auth.sign_up(" Ada ", " Ada@Example.com ", "secret1")
    assert session.is_logged_in
    assert session.user["email"] == "ada@example.com"
    assert session.user["name"] == "Ada"
    assert session.user["password_hash"] != "secret1"
    assert auth.config.get("session_user_id") == session.user_id


def test_duplicate_email_maps_to_message(auth):
    auth.sign_up("Ada", "ada@example.com", "secret1")
    with pytest.raises(AuthError) as info:
        auth.sign_up("Other", "ADA@example.com", "secret2")
    assert str(info.value) == "An account with this email already exists."


def test_repository_conflict_is_typed(auth):
    auth.users.create("A", "a@b.co", "hash")
    with pytest.raises(ConflictError):
        auth.users.create("B", "a@b.co", "hash")


@pytest.mark.parametrize(
    "name,email,password,message",
    [
        ("", "a@b.co", "secret1", "Please enter your name."),
        ("A", " ", "secret1", "Please enter your email."),
        ("A", "not-an-email", "secret1", "Please enter a valid email address."),
        ("A", "a@b.co", "123", "Password must be at least 6 characters."),
    ],
)
def test_sign_up_validation(auth, name, email, password, message):
    with pytest.raises(AuthError) as info:
        auth.sign_up(name, email, password)
    assert str(info.value) == message


def test_log_in_checks_password(auth):
    auth.sign_up("Ada", "ada@example.com", "secret1")
    with pytest.raises(AuthError):
        auth.log_in("ada@example.com", "wrong-pass")
    with pytest.raises(AuthError):
        auth.log_in("nobody@example.com", "secret1")
    session = auth.log_in("ADA@example.com", "secret1")
    assert session.user["name"] == "Ada"


def test_restore_and_log_out(auth):
    created = auth.sign_up("Ada", "ada@example.com", "secret1")
    restored = auth.restore_session()
    assert restored.user_id == created.user_id
    auth.log_out(restored)
    assert not restored.is_logged_in
    assert not auth.restore_session().is_logged_in


def test_session_without_config(tmp_path):
    service = AuthService(UserRepository(str(tmp_path / "u.db")))
    assert isinstance(service.restore_session(), Session)
    session = service.sign_up("Ada", "ada@example.com", "secret1")
    assert service.users.fetch(session.user_id)["email"] == "ada@example.com"
