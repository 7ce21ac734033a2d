import logging
import os

import pytest
from cryptography.fernet import Fernet

from mailsync import config
from mailsync.config import AppLimits
from mailsync.models import BackendKind, FolderMapping, FolderType
from mailsync.storage.encryption import SecretBox, load_or_create_key
from mailsync.utils.errors import (
    ConfigError, DecryptionError, FolderNotConfiguredError, InvalidCredentialsError,
    MessageNotFoundError, ProtocolError, ReauthRequiredError, TransportError,
    human_friendly_message, is_retryable,
)
from mailsync.utils.logging_cfg import setup_logging
from tests.helpers import make_account


def test_complete_account_validates():
    make_account().validate()
    make_account(oauth=True).validate()


@pytest.mark.parametrize("field,value,message", [
    ("email", "not-an-address", "invalid email"),
    ("name", " ", "name is required"),
    ("check_interval", 0, "check_interval"),
])
def test_malformed_account_names_the_field(field, value, message):
    account = make_account(**{field: value})

    with pytest.raises(ConfigError, match=message):
        account.validate()


def test_missing_password_is_rejected():
    account = make_account()
    account.smtp.password = None

    with pytest.raises(ConfigError, match="SMTP password"):
        account.validate()


def test_oauth_account_needs_client_configuration():
    account = make_account(oauth=True, oauth2=None)

    with pytest.raises(ConfigError, match="OAuth2"):
        account.validate()


def test_gmail_api_account_needs_no_servers():
    account = make_account(oauth=True, backend=BackendKind.GMAIL_API)
    account.imap.server = ""
    account.smtp.server = ""

    account.validate()


def test_duplicate_folder_role_is_rejected():
    account = make_account()
    account.imap.folders.append(FolderMapping(FolderType.INBOX, "Inbox2"))

    with pytest.raises(ConfigError, match="more than one"):
        account.validate()


def test_limits_validation():
    AppLimits().validate()
    with pytest.raises(ConfigError):
        AppLimits(max_messages_per_folder=0).validate()
    with pytest.raises(ConfigError):
        AppLimits(check_interval=-1).validate()
    assert AppLimits(check_interval=2).check_interval_seconds == 120


def test_load_env_overrides_defaults(tmp_path, monkeypatch):
    for name in ("DATA_DIR", "SQLITE_DB_PATH", "SECRET_KEY_FILE", "LOG_DIR", "LOG_LEVEL",
                 "OAUTH_CLIENT_ID", "OAUTH_CLIENT_SECRET"):
        monkeypatch.setattr(config, name, getattr(config, name))
    monkeypatch.setenv("MAILSYNC_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("MAILSYNC_LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("GOOGLE_CLIENT_ID", "cid")
    monkeypatch.delenv("MAILSYNC_DB_PATH", raising=False)

    config.load_env(str(tmp_path / "missing.env"))

    assert config.DATA_DIR == tmp_path / "data"
    assert config.SQLITE_DB_PATH == tmp_path / "data" / "mailsync.db"
    assert config.LOG_LEVEL == "DEBUG"
    assert config.OAUTH_CLIENT_ID == "cid"
    assert (tmp_path / "data").is_dir()


def test_load_env_reads_dotenv_file(tmp_path, monkeypatch):
    for name in ("DATA_DIR", "SQLITE_DB_PATH", "SECRET_KEY_FILE", "LOG_DIR", "LOG_LEVEL",
                 "OAUTH_CLIENT_ID", "OAUTH_CLIENT_SECRET"):
        monkeypatch.setattr(config, name, getattr(config, name))
    monkeypatch.delenv("MAILSYNC_DB_PATH", raising=False)
    monkeypatch.delenv("GOOGLE_CLIENT_SECRET", raising=False)
    monkeypatch.setenv("MAILSYNC_DATA_DIR", str(tmp_path))
    env_file = tmp_path / ".env"
    env_file.write_text("GOOGLE_CLIENT_SECRET=from-file\n")

    try:
        config.load_env(str(env_file))
    finally:
        # load_dotenv writes straight into os.environ
        os.environ.pop("GOOGLE_CLIENT_SECRET", None)

    assert config.OAUTH_CLIENT_SECRET == "from-file"


def test_setup_logging_writes_to_file(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "LOG_DIR", tmp_path / "logs")
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    try:
        setup_logging(debug=True)
        logging.getLogger("mailsync.test").debug("hello from the test")
        for handler in root.handlers:
            handler.flush()
    finally:
        for handler in root.handlers:
            if handler not in handlers:
                handler.close()
        root.handlers = handlers
        root.setLevel(level)

    assert "hello from the test" in (tmp_path / "logs" / "mailsync.log").read_text()


def test_secret_box_round_trip_and_wrong_key():
    box = SecretBox(key=Fernet.generate_key())
    token = box.encrypt_json({"a": 1})

    assert box.decrypt_json(token) == {"a": 1}
    assert box.decrypt_text(box.encrypt_text("héllo")) == "héllo"
    with pytest.raises(DecryptionError):
        SecretBox(key=Fernet.generate_key()).decrypt_text(token)
    with pytest.raises(DecryptionError):
        box.decrypt_bytes(b"")


def test_key_file_is_created_once(tmp_path):
    key_file = tmp_path / "keys" / "secret.key"

    first = load_or_create_key(key_file)
    second = load_or_create_key(key_file)

    assert first == second
    if os.name == "posix":
        assert key_file.stat().st_mode & 0o777 == 0o600


def test_corrupted_key_file_is_replaced(tmp_path):
    key_file = tmp_path / "secret.key"
    key_file.write_bytes(b"garbage")

    key = load_or_create_key(key_file)

    assert key != b"garbage"
    assert key_file.read_bytes() == key


def test_only_transport_errors_are_retried():
    assert is_retryable(TransportError("reset"))
    assert not is_retryable(InvalidCredentialsError("no"))
    assert not is_retryable(ProtocolError("BAD"))
    assert not is_retryable(ConfigError("bad"))


@pytest.mark.parametrize("exc,fragment", [
    (ReauthRequiredError(), "sign in again"),
    (InvalidCredentialsError(), "username and password"),
    (TransportError("read timed out"), "took too long"),
    (TransportError("refused"), "internet connection"),
    (MessageNotFoundError(), "no longer exists"),
    (FolderNotConfiguredError("no trash"), "not available"),
    (ValueError("x"), "unexpected error"),
])
def test_human_friendly_message(exc, fragment):
    assert fragment in human_friendly_message(exc)
