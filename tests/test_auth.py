import base64
import threading
import urllib.request
from datetime import timedelta

import pytest
from cryptography.fernet import Fernet

from mailsync.auth.callback_server import OAuthCallbackServer
from mailsync.auth.credentials import (
    LoginCredential, OAuth2Credential, PlainCredential, build_credential,
)
from mailsync.auth.token_store import TokenStore
from mailsync.models import AuthMethod, BackendKind, Token
from mailsync.storage.encryption import SecretBox
from mailsync.utils.errors import ReauthRequiredError, TransportError
from tests.helpers import T0, make_account


def test_xoauth2_initial_response():
    credential = OAuth2Credential(username=" user@example.com ", access_token="ya29.token")

    assert credential.sasl_initial_response() == b"user=user@example.com\x01auth=Bearer ya29.token\x01\x01"
    assert base64.b64decode(credential.xoauth2_base64()) == credential.sasl_initial_response()


def test_plain_initial_response():
    credential = PlainCredential(username="user", password="pw")
    assert credential.sasl_initial_response() == b"\0user\0pw"


def test_build_credential_follows_auth_method():
    account = make_account()
    assert isinstance(build_credential(account), PlainCredential)

    account.smtp.auth_method = AuthMethod.LOGIN
    smtp = build_credential(account, protocol="smtp")
    assert isinstance(smtp, LoginCredential)
    assert smtp.password == "secret"


def test_build_credential_for_oauth_needs_a_token():
    account = make_account(oauth=True)

    with pytest.raises(ReauthRequiredError):
        build_credential(account)

    credential = build_credential(account, Token("abc", "r", T0))
    assert credential.mechanism == "XOAUTH2"
    assert credential.username == "acc1@example.com"


def test_xoauth2_names_the_account_email_not_the_login():
    account = make_account(oauth=True)
    account.imap.username = "legacy-login"
    account.smtp.username = ""

    imap = build_credential(account, Token("abc"))
    smtp = build_credential(account, Token("abc"), protocol="smtp")

    assert imap.username == smtp.username == "acc1@example.com"
    assert b"user=acc1@example.com\x01" in imap.sasl_initial_response()


def test_gmail_api_account_always_uses_oauth():
    account = make_account(oauth=True, backend=BackendKind.GMAIL_API)
    account.imap.auth_method = AuthMethod.PLAIN

    assert isinstance(build_credential(account, Token("abc")), OAuth2Credential)


def test_token_store_round_trip(token_store):
    token = Token("access", "refresh", T0 + timedelta(hours=1))

    token_store.save("acc1", token)

    assert token_store.load("acc1") == token
    assert token_store.load("other") is None


def test_token_store_replaces_previous_token(token_store):
    token_store.save("acc1", Token("old", "r1", T0))
    token_store.save("acc1", Token("new", "r2", T0))

    assert token_store.load("acc1").access_token == "new"


def test_token_encrypted_with_another_key_reads_as_missing(token_store, db_path):
    token_store.save("acc1", Token("access", "refresh", T0))

    other = TokenStore(db_path, SecretBox(key=Fernet.generate_key()))

    assert other.load("acc1") is None


def test_token_store_clear(token_store):
    token_store.save("acc1", Token("access", "refresh", T0))

    token_store.clear("acc1")

    assert token_store.load("acc1") is None


def test_token_usable_window():
    token = Token("a", "r", T0 + timedelta(seconds=120))

    assert token.is_usable(T0, 60)
    assert not token.is_usable(T0 + timedelta(seconds=61), 60)
    assert not token.expired_copy().is_usable(T0, 0)
    assert token.expired_copy().refresh_token == "r"


def test_token_from_response_keeps_previous_refresh_token():
    token = Token.from_response({"access_token": "new", "expires_in": 600}, T0, "old-refresh")

    assert token.refresh_token == "old-refresh"
    assert token.expires_at == T0 + timedelta(seconds=600)


def _get(url):
    with urllib.request.urlopen(url, timeout=5) as response:
        return response.status, response.read()


def test_callback_server_delivers_code_and_state():
    server = OAuthCallbackServer(port=0)
    results = []
    waiter = threading.Thread(target=lambda: results.append(server.wait_for_callback(timeout=5)))
    waiter.start()
    try:
        status, body = _get(f"http://127.0.0.1:{server.port}/oauth/callback?code=abc&state=s1")
        waiter.join(timeout=5)
    finally:
        server.close()

    assert status == 200
    assert b"Successful" in body
    assert results[0].code == "abc"
    assert results[0].state == "s1"


def test_callback_server_reports_provider_error():
    server = OAuthCallbackServer(port=0)
    results = []
    waiter = threading.Thread(target=lambda: results.append(server.wait_for_callback(timeout=5)))
    waiter.start()
    try:
        _, body = _get(f"http://127.0.0.1:{server.port}/oauth/callback?error=access_denied&state=s1")
        waiter.join(timeout=5)
    finally:
        server.close()

    assert b"Failed" in body
    assert results[0].error == "access_denied"
    assert results[0].code is None


def test_callback_server_times_out():
    with OAuthCallbackServer(port=0) as server:
        with pytest.raises(TransportError):
            server.wait_for_callback(timeout=0.2)


def test_callback_server_redirect_uri():
    with OAuthCallbackServer(port=0, path="/cb") as server:
        assert server.redirect_uri == f"http://localhost:{server.port}/cb"
