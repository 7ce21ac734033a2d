"""
In-memory fakes for the engine's collaborators.

FakeMailBackend behaves like a small IMAP server: folders with a
UIDVALIDITY, messages keyed by UID, flags, and forced failures for the
error paths.
"""
import copy
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Set
from urllib.parse import parse_qs, urlparse

from mailsync.auth.callback_server import CallbackResult
from mailsync.auth.credentials import Credential
from mailsync.auth.oauth import OAuthProvider
from mailsync.models import (
    Account, AuthMethod, EmailMessage, FolderMapping, ImapConfig, OAuth2Config,
    SearchDocument, SmtpConfig,
)
from mailsync.network.backend import BodyParts, FolderStatus, MailBackend, RemoteFolder
from mailsync.storage.cache_repo import SyncPass
from mailsync.utils.errors import InvalidCredentialsError, MessageNotFoundError

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_account(account_id: str = "acc1", oauth: bool = False, **overrides) -> Account:
    email = overrides.pop("email", f"{account_id}@example.com")
    method = AuthMethod.OAUTH2 if oauth else AuthMethod.PLAIN
    account = Account(
        id=account_id,
        name=f"Account {account_id}",
        email=email,
        imap=ImapConfig(server="imap.example.com", username=email,
                        password=None if oauth else "secret", auth_method=method),
        smtp=SmtpConfig(server="smtp.example.com", username=email,
                        password=None if oauth else "secret", auth_method=method),
        oauth2=OAuth2Config(client_id="client-id", client_secret="client-secret") if oauth else None,
    )
    for key, value in overrides.items():
        setattr(account, key, value)
    return account


def make_message(uid: int, subject: Optional[str] = None, flags: Iterable[str] = (),
                 body: str = "") -> EmailMessage:
    return EmailMessage(
        uid=uid,
        message_id=f"<{uid}@example.com>",
        subject=subject if subject is not None else f"Message {uid}",
        sender="Alice <alice@example.com>",
        to=["bob@example.com"],
        date=T0 + timedelta(minutes=uid),
        flags=set(flags),
        body_plain=body,
    )


def seed_folder(cache, account_id: str, folder_id: int, uids: Iterable[int],
                uidvalidity: int, highest_uid: Optional[int] = None) -> None:
    """Put messages and a cursor into the cache as an earlier sync would have."""
    uids = list(uids)
    cache.apply_sync_pass(account_id, folder_id, SyncPass(
        uidvalidity=uidvalidity,
        highest_uid=highest_uid if highest_uid is not None else max(uids, default=0),
        synced_at=T0,
        new_messages=[make_message(uid) for uid in uids],
    ))


@dataclass
class FakeFolder:
    uidvalidity: int = 1
    messages: Dict[int, EmailMessage] = field(default_factory=dict)
    attributes: Set[str] = field(default_factory=set)


class FakeMailBackend(MailBackend):
    """
    In-memory mailbox.

    Set `fail_next` to an exception instance to make the next call raise it.
    Set `reject_auth` to make authenticate() fail.
    Set `fetch_delay` to the seconds each fetched message takes.
    """

    def __init__(self):
        self.folders: Dict[str, FakeFolder] = {}
        self.fail_next: Optional[Exception] = None
        self.fail_on: Dict[str, Exception] = {}
        self.reject_auth = False
        self.fetch_delay = 0.0
        self.opened = False
        self.credentials: List[Credential] = []
        self.submitted: List[EmailMessage] = []
        self.calls: List[str] = []
        self.selected: List[str] = []
        self.mappings: Optional[List[FolderMapping]] = None
        self._lock = threading.Lock()

    # --- setup helpers ----------------------------------------------------

    def add_folder(self, name: str, uidvalidity: int = 1, attributes: Iterable[str] = ()) -> FakeFolder:
        folder = self.folders.setdefault(name, FakeFolder(uidvalidity=uidvalidity))
        folder.uidvalidity = uidvalidity
        folder.attributes = set(attributes)
        return folder

    def add_messages(self, name: str, uids: Iterable[int], flags: Iterable[str] = ()) -> None:
        folder = self.folders.setdefault(name, FakeFolder())
        for uid in uids:
            folder.messages[uid] = make_message(uid, flags=flags, body=f"Body of message {uid}")

    def _maybe_fail(self, call: str) -> None:
        with self._lock:
            self.calls.append(call)
            if call in self.fail_on:
                raise self.fail_on.pop(call)
            if self.fail_next is not None:
                exc, self.fail_next = self.fail_next, None
                raise exc

    def _folder(self, name: str) -> FakeFolder:
        return self.folders[name]

    def _message(self, name: str, uid: int) -> EmailMessage:
        try:
            return self._folder(name).messages[uid]
        except KeyError:
            raise MessageNotFoundError(f"UID {uid} not found in {name}") from None

    # --- MailBackend --------------------------------------------------------

    def folder_mappings(self) -> Optional[List[FolderMapping]]:
        return self.mappings

    def open(self) -> None:
        self._maybe_fail("open")
        self.opened = True

    def authenticate(self, credential: Credential) -> None:
        self._maybe_fail("authenticate")
        self.credentials.append(credential)
        if self.reject_auth:
            raise InvalidCredentialsError("AUTHENTICATE failed")

    def close(self) -> None:
        self.calls.append("close")
        self.opened = False

    def noop(self) -> None:
        self._maybe_fail("noop")

    def list_folders(self) -> List[RemoteFolder]:
        self._maybe_fail("list_folders")
        return [RemoteFolder(name, "/", set(f.attributes)) for name, f in self.folders.items()]

    def select_folder(self, server_name: str) -> FolderStatus:
        self._maybe_fail("select_folder")
        self.selected.append(server_name)
        folder = self._folder(server_name)
        return FolderStatus(uidvalidity=folder.uidvalidity, exists=len(folder.messages))

    def search_uids(self, server_name: str) -> Set[int]:
        self._maybe_fail("search_uids")
        return set(self._folder(server_name).messages)

    def fetch_messages(self, server_name: str, uids: Iterable[int], with_body: bool = False) -> List[EmailMessage]:
        self._maybe_fail("fetch_messages")
        uids = list(uids)
        if self.fetch_delay:
            time.sleep(self.fetch_delay * len(uids))
        folder = self._folder(server_name)
        result = []
        for uid in uids:
            if uid not in folder.messages:
                continue
            message = copy.deepcopy(folder.messages[uid])
            if with_body:
                message.has_body = True
            else:
                message.body_plain = ""
            result.append(message)
        return result

    def fetch_flags(self, server_name: str, uids: Iterable[int]) -> Dict[int, Set[str]]:
        self._maybe_fail("fetch_flags")
        folder = self._folder(server_name)
        return {uid: set(folder.messages[uid].flags) for uid in uids if uid in folder.messages}

    def fetch_body(self, server_name: str, uid: int) -> BodyParts:
        self._maybe_fail("fetch_body")
        message = self._message(server_name, uid)
        return message.body_plain, f"<p>{message.body_plain}</p>", []

    def store_flags(self, server_name: str, uid: int, add: Set[str], remove: Set[str]) -> None:
        self._maybe_fail("store_flags")
        message = self._message(server_name, uid)
        message.flags = (message.flags | set(add)) - set(remove)

    def move_message(self, server_name: str, uid: int, dest_server_name: str) -> None:
        self._maybe_fail("move_message")
        message = self._message(server_name, uid)
        dest = self.folders.setdefault(dest_server_name, FakeFolder())
        new_uid = max(dest.messages, default=0) + 1
        del self._folder(server_name).messages[uid]
        message.uid = new_uid
        dest.messages[new_uid] = message

    def delete_message(self, server_name: str, uid: int) -> None:
        self._maybe_fail("delete_message")
        self._message(server_name, uid)
        del self._folder(server_name).messages[uid]

    def submit_message(self, message: EmailMessage, credential: Credential) -> None:
        self._maybe_fail("submit_message")
        self.credentials.append(credential)
        self.submitted.append(message)


class FakeOAuthProvider(OAuthProvider):
    """
    Token endpoint double.

    `refresh_delay` keeps a refresh in flight (it runs in a worker thread)
    so concurrent callers can pile up behind it.
    """

    def __init__(self, expires_in: int = 3600, refresh_delay: float = 0.0):
        self.expires_in = expires_in
        self.refresh_delay = refresh_delay
        self.refresh_calls = 0
        self.exchange_calls = 0
        self.refresh_error: Optional[Exception] = None
        self.exchange_error: Optional[Exception] = None
        self._lock = threading.Lock()

    def get_authorization_url(self, state: str) -> str:
        return f"https://auth.example.com/authorize?client_id=client-id&state={state}"

    def exchange_code_for_tokens(self, code: str) -> Dict[str, object]:
        self.exchange_calls += 1
        if self.exchange_error is not None:
            raise self.exchange_error
        return {"access_token": f"access-{code}", "refresh_token": "refresh-1", "expires_in": self.expires_in}

    def refresh_tokens(self, refresh_token: str) -> Dict[str, object]:
        with self._lock:
            self.refresh_calls += 1
            count = self.refresh_calls
        if self.refresh_delay:
            time.sleep(self.refresh_delay)
        if self.refresh_error is not None:
            raise self.refresh_error
        return {"access_token": f"refreshed-{count}", "expires_in": self.expires_in}


class FakeBrowser:
    """Stands in for webbrowser.open; remembers the last URL."""

    def __init__(self):
        self.urls: List[str] = []

    def __call__(self, url: str) -> bool:
        self.urls.append(url)
        return True

    @property
    def issued_state(self) -> str:
        return parse_qs(urlparse(self.urls[-1]).query)["state"][0]


class FakeCallbackListener:
    """
    Redirect listener double.

    By default answers with the state the browser was sent with; pass
    `state` to simulate a forged callback.
    """

    def __init__(self, browser: FakeBrowser, code: str = "auth-code",
                 state: Optional[str] = None, error: Optional[str] = None):
        self.browser = browser
        self.code = code
        self.state = state
        self.error = error
        self.closed = False

    def wait_for_callback(self, timeout: float) -> CallbackResult:
        if self.error:
            return CallbackResult(error=self.error, error_description="denied by user")
        state = self.state if self.state is not None else self.browser.issued_state
        return CallbackResult(code=self.code, state=state)

    def close(self) -> None:
        self.closed = True


class RecordingSink:
    """Search index double recording the feed."""

    def __init__(self):
        self.documents: List[SearchDocument] = []
        self.tombstones: List[tuple] = []

    def index(self, doc: SearchDocument) -> None:
        self.documents.append(doc)

    def tombstone(self, account_id: str, folder_id: int, uid: int) -> None:
        self.tombstones.append((account_id, folder_id, uid))

    def indexed_uids(self) -> Set[int]:
        return {doc.uid for doc in self.documents}

    def tombstoned_uids(self) -> Set[int]:
        return {uid for _, _, uid in self.tombstones}

    def clear(self) -> None:
        self.documents.clear()
        self.tombstones.clear()
