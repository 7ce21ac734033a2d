import asyncio
import email
import imaplib
import smtplib
from email.errors import HeaderParseError

import pytest

from mailsync.auth.credentials import OAuth2Credential, PlainCredential
from mailsync.models import FLAGGED, SEEN, EmailMessage, ImapConfig, SmtpConfig
from mailsync.network.imap_backend import ImapSmtpBackend
from mailsync.network.imap_client import (
    ImapClient, iter_fetch_items, parse_fetch_meta, parse_list_response, quote_folder_name,
)
from mailsync.core.sync_manager import SyncManager
from mailsync.network import mime
from mailsync.network.backend import AsyncBackend
from mailsync.network.mime import build_mime, decode_mime_header, parse_message
from mailsync.network.smtp_client import SmtpClient
from mailsync.utils.errors import (
    InvalidCredentialsError, MessageNotFoundError, ProtocolError, TransportError,
)
from tests.helpers import make_account

BAD_SUBJECT_MESSAGE = (
    b"Message-ID: <m2@example.com>\r\n"
    b"From: alice@example.com\r\n"
    b"Subject: =?utf-8?b?a?=\r\n"
    b"\r\n"
    b"body\r\n"
)

RAW_MESSAGE = (
    b"Message-ID: <m1@example.com>\r\n"
    b"From: =?utf-8?q?J=C3=B6rg?= <jorg@example.com>\r\n"
    b"To: Bob <bob@example.com>, carol@example.com\r\n"
    b"Subject: =?utf-8?b?SGVsbG8gV29ybGQ=?=\r\n"
    b"Date: Thu, 01 Jan 2026 10:00:00 +0000\r\n"
    b"MIME-Version: 1.0\r\n"
    b"Content-Type: multipart/mixed; boundary=\"XX\"\r\n"
    b"\r\n"
    b"--XX\r\n"
    b"Content-Type: text/plain; charset=utf-8\r\n"
    b"\r\n"
    b"Plain body\r\n"
    b"--XX\r\n"
    b"Content-Type: application/pdf\r\n"
    b"Content-Disposition: attachment; filename=\"report.pdf\"\r\n"
    b"Content-Transfer-Encoding: base64\r\n"
    b"\r\n"
    b"JVBERi0=\r\n"
    b"--XX--\r\n"
)


class FakeImapConnection:
    """Answers like imaplib.IMAP4 for a single folder."""

    capabilities = ("IMAP4REV1",)

    def __init__(self, messages=None, uidvalidity=42):
        self.messages = messages if messages is not None else {}
        self.uidvalidity = uidvalidity
        self.commands = []
        self.reject_auth = False
        self.abort_next = False
        self.auth_blob = None

    def _maybe_abort(self):
        if self.abort_next:
            self.abort_next = False
            raise imaplib.IMAP4.abort("socket error: EOF")

    def authenticate(self, mechanism, authobject):
        self.auth_blob = authobject(b"")
        if self.reject_auth:
            authobject(b'{"status":"401"}')
            raise imaplib.IMAP4.error("AUTHENTICATE failed")
        return "OK", [b"Success"]

    def login(self, user, password):
        return "OK", [b"LOGIN completed"]

    def logout(self):
        return "BYE", [b""]

    def noop(self):
        self._maybe_abort()
        return "OK", [b"NOOP completed"]

    def list(self):
        return "OK", [
            b'(\\HasNoChildren) "/" "INBOX"',
            b'(\\HasChildren \\Noselect) "/" "[Gmail]"',
            b'(\\HasNoChildren \\Sent) "/" "[Gmail]/Sent Mail"',
            (b'(\\HasNoChildren) "/" {10}', b'Quote"Name'),
        ]

    def select(self, name):
        self.commands.append(("SELECT", name))
        if name == "Missing":
            return "NO", [b"Mailbox does not exist"]
        return "OK", [str(len(self.messages)).encode()]

    def response(self, code):
        if code == "UIDVALIDITY":
            return code, [str(self.uidvalidity).encode()]
        return code, [None]

    def uid(self, command, *args):
        self._maybe_abort()
        self.commands.append((command,) + args)
        if command == "SEARCH":
            criteria = args[-1]
            if criteria == "ALL":
                uids = sorted(self.messages)
            else:
                wanted = int(criteria.split()[1])
                uids = [wanted] if wanted in self.messages else []
            return "OK", [" ".join(str(u) for u in uids).encode()]
        if command == "FETCH":
            uids = [int(u) for u in args[0].split(",")]
            data = []
            for uid in uids:
                if uid not in self.messages:
                    continue
                flags = " ".join(sorted(self.messages[uid]["flags"]))
                if "(UID FLAGS)" == args[1]:
                    data.append(f"{uid} (UID {uid} FLAGS ({flags}))".encode())
                else:
                    data.append((f"{uid} (UID {uid} FLAGS ({flags}) BODY[] {{100}}".encode(),
                                 self.messages[uid]["raw"]))
                    data.append(b")")
            return "OK", data
        if command in ("STORE", "COPY", "MOVE", "EXPUNGE"):
            return "OK", [b""]
        return "BAD", [b"unknown command"]

    def expunge(self):
        self.commands.append(("EXPUNGE",))
        return "OK", [b""]


@pytest.fixture
def conn():
    return FakeImapConnection({
        3: {"flags": {SEEN}, "raw": RAW_MESSAGE},
        7: {"flags": {FLAGGED, "\\Recent"}, "raw": RAW_MESSAGE},
    })


@pytest.fixture
def client(conn):
    imap = ImapClient(ImapConfig(server="imap.example.com"), connection_factory=lambda: conn)
    imap.connect()
    return imap


def test_quote_folder_name():
    assert quote_folder_name("INBOX") == "INBOX"
    assert quote_folder_name("[Gmail]/Sent Mail") == '"[Gmail]/Sent Mail"'
    assert quote_folder_name('"already"') == '"already"'


def test_parse_list_response():
    folder = parse_list_response(b'(\\HasNoChildren \\Trash) "." "Deleted Items"')

    assert folder.server_name == "Deleted Items"
    assert folder.delimiter == "."
    assert "\\Trash" in folder.attributes
    assert parse_list_response(b"garbage") is None


def test_fetch_meta_ignores_recent():
    uid, flags = parse_fetch_meta(b"1 (UID 17 FLAGS (\\Seen \\Recent $Label))")

    assert uid == 17
    assert flags == {SEEN, "$Label"}


def test_iter_fetch_items_joins_trailing_flags():
    data = [(b"1 (UID 5 BODY[] {3}", b"abc"), b" FLAGS (\\Seen))"]

    items = list(iter_fetch_items(data))

    assert len(items) == 1
    assert parse_fetch_meta(items[0][0]) == (5, {SEEN})


def test_list_folders(client):
    folders = {f.server_name: f for f in client.list_folders()}

    assert set(folders) == {"INBOX", "[Gmail]", "[Gmail]/Sent Mail", 'Quote"Name'}
    assert not folders["[Gmail]"].selectable
    assert folders["INBOX"].selectable


def test_select_reports_uidvalidity(client, conn):
    status = client.select_folder("[Gmail]/Sent Mail")

    assert status.uidvalidity == 42
    assert status.exists == 2
    assert conn.commands[0] == ("SELECT", '"[Gmail]/Sent Mail"')


def test_select_missing_folder_is_protocol_error(client):
    with pytest.raises(ProtocolError):
        client.select_folder("Missing")


def test_search_and_fetch(client):
    assert client.search_uids("INBOX") == {3, 7}

    messages = client.fetch_messages("INBOX", [7, 3, 99])

    assert [m.uid for m in messages] == [3, 7]
    assert messages[1].flags == {FLAGGED}
    assert messages[0].subject == "Hello World"
    assert messages[0].sender == "Jörg <jorg@example.com>"
    assert not messages[0].has_body


def test_fetch_flags(client):
    assert client.fetch_flags("INBOX", [3, 7]) == {3: {SEEN}, 7: {FLAGGED}}


def test_store_flags_on_expunged_message(client):
    with pytest.raises(MessageNotFoundError):
        client.store_flags("INBOX", 99, {SEEN}, set())


def test_move_copies_then_expunges(client, conn):
    client.move_message("INBOX", 3, "Archive")

    names = [c[0] for c in conn.commands]
    assert names[-3:] == ["COPY", "STORE", "EXPUNGE"]


def test_move_uses_uid_move_when_offered(client, conn):
    conn.capabilities = ("IMAP4REV1", "MOVE")

    client.move_message("INBOX", 3, "Archive")

    assert conn.commands[-1] == ("MOVE", "3", "Archive")
    assert not any(c[0] in ("COPY", "EXPUNGE") for c in conn.commands)


def test_delete_expunges_only_its_own_uid_with_uidplus(client, conn):
    conn.capabilities = ("IMAP4REV1", "UIDPLUS")

    client.delete_message("INBOX", 7)

    assert conn.commands[-2][:2] == ("STORE", "7")
    assert conn.commands[-1] == ("EXPUNGE", "7")
    assert ("EXPUNGE",) not in conn.commands


def test_malformed_encoded_word_is_kept_raw(client, conn):
    conn.messages[9] = {"flags": set(), "raw": BAD_SUBJECT_MESSAGE}

    messages = client.fetch_messages("INBOX", [9])

    assert [m.uid for m in messages] == [9]
    assert messages[0].subject == "=?utf-8?b?a?="
    assert decode_mime_header("=?utf-8?b?a?=") == "=?utf-8?b?a?="


def test_unparseable_message_becomes_a_placeholder(monkeypatch):
    def explode(*args, **kwargs):
        raise HeaderParseError("Base64 decoding error")

    monkeypatch.setattr(mime, "parse_message", explode)

    message = mime.parse_message_or_placeholder(b"junk", 5, {SEEN}, with_body=True)

    assert (message.uid, message.flags) == (5, {SEEN})
    assert not message.has_body
    assert message.subject == ""


def test_unparseable_body_is_a_protocol_error(monkeypatch):
    def explode(*args, **kwargs):
        raise ValueError("bad payload")

    monkeypatch.setattr(mime, "extract_body", explode)

    with pytest.raises(ProtocolError):
        mime.parse_body(RAW_MESSAGE, keep_attachment_data=False)


def test_folder_with_malformed_header_still_syncs(conn, cache, limits, inbox):
    conn.messages[9] = {"flags": {SEEN}, "raw": BAD_SUBJECT_MESSAGE}
    imap = ImapClient(ImapConfig(server="imap.example.com"), connection_factory=lambda: conn)
    backend = ImapSmtpBackend(make_account(), imap_client=imap)
    backend.open()

    result = asyncio.run(SyncManager(cache, limits).sync_folder(AsyncBackend(backend, 5), inbox))

    assert result.new_uids == {3, 7, 9}
    assert cache.get_message("acc1", inbox.id, 9).subject == "=?utf-8?b?a?="
    assert cache.get_cursor(inbox.id).highest_uid == 9


def test_aborted_connection_is_transport_error(client, conn):
    conn.abort_next = True

    with pytest.raises(TransportError):
        client.noop()
    assert client.connection is None


def test_xoauth2_rejection_is_invalid_credentials(client, conn):
    conn.reject_auth = True
    credential = OAuth2Credential("user@example.com", "expired")

    with pytest.raises(InvalidCredentialsError):
        client.authenticate(credential)
    assert conn.auth_blob == b"user=user@example.com\x01auth=Bearer expired\x01\x01"


def test_unreachable_server_is_transport_error():
    def refuse():
        raise ConnectionRefusedError("refused")

    imap = ImapClient(ImapConfig(server="imap.example.com"), connection_factory=refuse)

    with pytest.raises(TransportError):
        imap.connect()


def test_backend_fetch_body_extracts_attachments(conn):
    imap = ImapClient(ImapConfig(server="imap.example.com"), connection_factory=lambda: conn)
    backend = ImapSmtpBackend(make_account(), imap_client=imap, keep_attachment_data=True)
    backend.open()

    plain, html, attachments = backend.fetch_body("INBOX", 3)

    assert plain.strip() == "Plain body"
    assert html == ""
    assert attachments[0].filename == "report.pdf"
    assert attachments[0].data == b"%PDF-"


def test_parse_message_with_body():
    message = parse_message(RAW_MESSAGE, 1, {SEEN}, with_body=True)

    assert message.has_body
    assert message.to == ["bob@example.com", "carol@example.com"]
    assert message.attachments[0].data is None
    assert message.date.year == 2026


def test_build_mime_appends_signature():
    message = EmailMessage(sender="a@example.com", to=["b@example.com"], cc=["c@example.com"],
                           subject="Hi", body_plain="Hello", body_html="<p>Hello</p>")

    mime = email.message_from_string(build_mime(message, signature="Alice").as_string())

    assert mime["Cc"] == "c@example.com"
    parts = [p for p in mime.walk() if not p.is_multipart()]
    assert parts[0].get_payload(decode=True).decode().endswith("-- \nAlice")
    assert parts[1].get_content_type() == "text/html"


class FakeSmtpConnection:
    def __init__(self, auth_code=235, refuse=None, drop=False):
        self.auth_code = auth_code
        self.refuse = refuse or {}
        self.drop = drop
        self.commands = []
        self.sent = []
        self.quit_called = False
        self.user = self.password = None

    def docmd(self, cmd, args=""):
        self.commands.append((cmd, args))
        if cmd == "AUTH":
            return (self.auth_code, b"accepted") if self.auth_code == 235 else (334, b"eyJzdGF0dXMiOiI0MDAifQ==")
        return self.auth_code, b"5.7.8 Username and Password not accepted"

    def auth_plain(self, challenge=None):
        return f"\0{self.user}\0{self.password}"

    def auth_login(self, challenge=None):
        return self.user

    def auth(self, mechanism, authobject, initial_response_ok=True):
        self.commands.append(("AUTH", mechanism, authobject()))
        if self.auth_code != 235:
            raise smtplib.SMTPAuthenticationError(535, b"bad credentials")
        return 235, b"ok"

    def sendmail(self, sender, recipients, body):
        if self.drop:
            raise smtplib.SMTPServerDisconnected("Connection unexpectedly closed")
        self.sent.append((sender, recipients, body))
        return self.refuse

    def quit(self):
        self.quit_called = True

    def close(self):
        pass


def _outgoing():
    return EmailMessage(sender="a@example.com", to=["b@example.com"], bcc=["hidden@example.com"],
                        subject="Report", body_plain="See attached")


def test_smtp_plain_submission():
    conn = FakeSmtpConnection()
    client = SmtpClient(SmtpConfig(server="smtp.example.com"), connection_factory=lambda: conn)

    client.send(_outgoing(), PlainCredential("a@example.com", "pw"))

    sender, recipients, body = conn.sent[0]
    assert recipients == ["b@example.com", "hidden@example.com"]
    assert "hidden@example.com" not in body
    assert conn.commands[0] == ("AUTH", "PLAIN", "\0a@example.com\0pw")
    assert conn.quit_called


def test_smtp_xoauth2_rejection():
    conn = FakeSmtpConnection(auth_code=535)
    client = SmtpClient(SmtpConfig(server="smtp.example.com"), connection_factory=lambda: conn)

    with pytest.raises(InvalidCredentialsError):
        client.send(_outgoing(), OAuth2Credential("a@example.com", "stale"))
    assert conn.commands[1] == ("", "")
    assert conn.sent == []


def test_smtp_refused_recipient_is_protocol_error():
    conn = FakeSmtpConnection(refuse={"b@example.com": (550, b"no such user")})
    client = SmtpClient(SmtpConfig(server="smtp.example.com"), connection_factory=lambda: conn)

    with pytest.raises(ProtocolError):
        client.send(_outgoing(), PlainCredential("a@example.com", "pw"))


def test_smtp_dropped_connection_is_transport_error():
    conn = FakeSmtpConnection(drop=True)
    client = SmtpClient(SmtpConfig(server="smtp.example.com"), connection_factory=lambda: conn)

    with pytest.raises(TransportError):
        client.send(_outgoing(), PlainCredential("a@example.com", "pw"))


def test_smtp_needs_recipients():
    client = SmtpClient(SmtpConfig(server="smtp.example.com"), connection_factory=lambda: None)

    with pytest.raises(ProtocolError):
        client.send(EmailMessage(sender="a@example.com"), PlainCredential("a", "b"))
