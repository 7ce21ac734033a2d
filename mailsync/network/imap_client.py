"""
High-level IMAP client wrapper.

Wraps imaplib with UID-based operations and translates library failures
into the engine's error taxonomy:

- socket/TLS failures and imaplib.IMAP4.abort become TransportError;
- NO/BAD answers (imaplib.IMAP4.error) become ProtocolError, or
  InvalidCredentialsError while authenticating.
"""
import imaplib
import logging
import re
import ssl
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from mailsync import config
from mailsync.auth.credentials import Credential, LoginCredential, OAuth2Credential
from mailsync.models import DELETED, EmailMessage, ImapConfig
from mailsync.network.backend import FolderStatus, RemoteFolder
from mailsync.network.mime import parse_message_or_placeholder
from mailsync.utils.errors import (
    InvalidCredentialsError, MessageNotFoundError, ProtocolError, TransportError,
)

logger = logging.getLogger(__name__)

FETCH_BATCH_SIZE = 100

_LIST_RE = re.compile(rb'\((?P<flags>[^)]*)\)\s+(?P<delim>"[^"]*"|NIL)\s+(?P<name>.+)$')
_UID_RE = re.compile(rb'UID\s+(\d+)')


def quote_folder_name(name: str) -> str:
    """
    Quote a mailbox name for an IMAP command when it needs it.

    "INBOX" stays bare; "[Gmail]/Sent Mail" becomes '"[Gmail]/Sent Mail"'.
    """
    if not name or (name.startswith('"') and name.endswith('"')):
        return name
    if re.search(r'[\s\[\]/"\\(){%*]', name):
        escaped = name.replace('\\', '\\\\').replace('"', '\\"')
        return f'"{escaped}"'
    return name


def parse_list_response(line: bytes) -> Optional[RemoteFolder]:
    """Parse one LIST response line: (\\HasNoChildren) "/" "INBOX"."""
    match = _LIST_RE.match(line.strip())
    if not match:
        return None
    delim = match.group('delim').decode('utf-8', errors='replace').strip('"')
    name = match.group('name').decode('utf-8', errors='replace').strip()
    if name.startswith('"') and name.endswith('"'):
        name = name[1:-1].replace('\\"', '"').replace('\\\\', '\\')
    attributes = {a for a in match.group('flags').decode('ascii', errors='replace').split() if a}
    return RemoteFolder(server_name=name, delimiter=delim if delim != "NIL" else "", attributes=attributes)


def iter_fetch_items(data: List) -> Iterable[Tuple[bytes, Optional[bytes]]]:
    """
    Yield (metadata, literal) for each message in a FETCH response.

    Some servers put FLAGS after the literal, in the trailing b')' element;
    that tail is appended to the metadata.
    """
    items = list(data or [])
    for index, item in enumerate(items):
        if isinstance(item, tuple):
            meta, literal = item[0], item[1]
            following = items[index + 1] if index + 1 < len(items) else None
            if isinstance(following, bytes):
                meta = meta + b' ' + following
            yield meta, literal
        elif isinstance(item, bytes) and _UID_RE.search(item) and b'FLAGS' in item:
            # FETCH (UID FLAGS) answers carry no literal
            previous = items[index - 1] if index > 0 else None
            if not isinstance(previous, tuple):
                yield item, None


def parse_fetch_meta(meta: bytes) -> Tuple[Optional[int], Set[str]]:
    uid_match = _UID_RE.search(meta)
    uid = int(uid_match.group(1)) if uid_match else None
    flags = {f.decode('utf-8', errors='replace') for f in imaplib.ParseFlags(meta)}
    # \Recent belongs to the IMAP session, not to the message
    flags.discard('\\Recent')
    return uid, flags


class ImapClient:
    """
    One IMAP connection for one account.

    Args:
        cfg: The account's IMAP configuration.
        timeout: Socket timeout in seconds.
        connection_factory: Builds the imaplib connection; tests pass a fake.
    """

    def __init__(self, cfg: ImapConfig, timeout: float = config.NETWORK_TIMEOUT_SECONDS,
                 connection_factory: Optional[Callable[[], imaplib.IMAP4]] = None):
        self.cfg = cfg
        self.timeout = timeout
        self.connection_factory = connection_factory or self._open_socket
        self.connection: Optional[imaplib.IMAP4] = None
        self._selected: Optional[str] = None

    def _open_socket(self) -> imaplib.IMAP4:
        context = ssl.create_default_context()
        if self.cfg.use_tls:
            return imaplib.IMAP4_SSL(self.cfg.server, self.cfg.port, ssl_context=context, timeout=self.timeout)
        conn = imaplib.IMAP4(self.cfg.server, self.cfg.port, timeout=self.timeout)
        if self.cfg.use_starttls:
            conn.starttls(ssl_context=context)
        return conn

    def connect(self) -> None:
        """Open TCP + TLS (or upgrade with STARTTLS)."""
        self.close()
        logger.info(f"Connecting to IMAP server {self.cfg.server}:{self.cfg.port}")
        try:
            self.connection = self.connection_factory()
        except (OSError, imaplib.IMAP4.abort) as e:
            raise TransportError(f"Cannot connect to {self.cfg.server}:{self.cfg.port}: {e}") from e
        except imaplib.IMAP4.error as e:
            raise ProtocolError(f"IMAP greeting rejected by {self.cfg.server}: {e}") from e

    def authenticate(self, credential: Credential) -> None:
        """
        Authenticate with XOAUTH2, PLAIN or LOGIN.

        Raises:
            InvalidCredentialsError: If the server refuses the credential.
        """
        conn = self._require_connection()
        blob = credential.sasl_initial_response()
        try:
            if isinstance(credential, LoginCredential):
                conn.login(credential.username, credential.password)
            else:
                sent = []

                def responder(challenge: bytes) -> Optional[bytes]:
                    # Second challenge is the server's error detail; None aborts the exchange
                    if sent:
                        if challenge:
                            logger.debug(f"{credential.mechanism} challenge: {challenge[:200]!r}")
                        return None
                    sent.append(True)
                    return blob

                conn.authenticate(credential.mechanism, responder)
        except imaplib.IMAP4.abort as e:
            raise TransportError(f"Connection lost during authentication: {e}") from e
        except imaplib.IMAP4.error as e:
            kind = "token" if isinstance(credential, OAuth2Credential) else "credentials"
            raise InvalidCredentialsError(f"IMAP server rejected {kind} for {credential.username}: {e}") from e
        except OSError as e:
            raise TransportError(f"Connection failed during authentication: {e}") from e
        logger.info(f"IMAP authenticated as {credential.username} ({credential.mechanism})")

    def close(self) -> None:
        if self.connection is None:
            return
        try:
            self.connection.logout()
        except (OSError, imaplib.IMAP4.error) as e:
            logger.debug(f"Error during IMAP logout: {e}")
        finally:
            self.connection = None
            self._selected = None

    def _forget(self, conn: imaplib.IMAP4) -> None:
        # A late failure of an abandoned command must not drop a newer connection
        if self.connection is conn:
            self.connection = None
            self._selected = None

    def _has_capability(self, name: str) -> bool:
        conn = self._require_connection()
        return name in getattr(conn, "capabilities", ())

    def _require_connection(self) -> imaplib.IMAP4:
        if self.connection is None:
            raise TransportError("IMAP connection is not open")
        return self.connection

    def _command(self, what: str, func, *args):
        """Run one imaplib command, translating failures."""
        conn = self._require_connection()
        try:
            typ, data = func(conn, *args)
        except imaplib.IMAP4.abort as e:
            self._forget(conn)
            raise TransportError(f"Connection lost during {what}: {e}") from e
        except imaplib.IMAP4.error as e:
            raise ProtocolError(f"{what} failed: {e}") from e
        except OSError as e:
            self._forget(conn)
            raise TransportError(f"Network error during {what}: {e}") from e
        if typ != 'OK':
            detail = data[0].decode('utf-8', errors='replace') if data and isinstance(data[0], bytes) else typ
            raise ProtocolError(f"{what} failed: {detail}")
        return data

    def noop(self) -> None:
        self._command("NOOP", lambda c: c.noop())

    def list_folders(self) -> List[RemoteFolder]:
        data = self._command("LIST", lambda c: c.list())
        folders = []
        for line in data:
            if isinstance(line, tuple):
                # Literal mailbox name: (b'(\\HasNoChildren) "/" {12}', b'Name with "')
                line = line[0].rsplit(b'{', 1)[0] + b'"' + line[1].replace(b'"', b'\\"') + b'"'
            if not line:
                continue
            folder = parse_list_response(line)
            if folder is None:
                logger.debug(f"Skipping unparsable LIST line {line!r}")
                continue
            folders.append(folder)
        return folders

    def select_folder(self, server_name: str) -> FolderStatus:
        """Select a folder read-write and report its UIDVALIDITY."""
        data = self._command(f"SELECT {server_name}", lambda c: c.select(quote_folder_name(server_name)))
        self._selected = server_name
        conn = self._require_connection()
        _typ, validity = conn.response('UIDVALIDITY')
        if not validity or validity[0] is None:
            raise ProtocolError(f"Server did not report UIDVALIDITY for {server_name}")
        _typ, uidnext = conn.response('UIDNEXT')
        try:
            exists = int(data[0]) if data and data[0] else 0
        except ValueError:
            exists = 0
        return FolderStatus(
            uidvalidity=int(validity[0]),
            exists=exists,
            uidnext=int(uidnext[0]) if uidnext and uidnext[0] else None,
        )

    def _ensure_selected(self, server_name: str) -> None:
        if self._selected != server_name:
            self.select_folder(server_name)

    def search_uids(self, server_name: str) -> Set[int]:
        self._ensure_selected(server_name)
        data = self._command("UID SEARCH", lambda c: c.uid('SEARCH', None, 'ALL'))
        if not data or not data[0]:
            return set()
        return {int(u) for u in data[0].split()}

    def message_exists(self, server_name: str, uid: int) -> bool:
        self._ensure_selected(server_name)
        data = self._command("UID SEARCH", lambda c: c.uid('SEARCH', None, f'UID {uid}'))
        return bool(data and data[0] and str(uid).encode() in data[0].split())

    def _require_message(self, server_name: str, uid: int) -> None:
        if not self.message_exists(server_name, uid):
            raise MessageNotFoundError(f"UID {uid} no longer exists in {server_name}")

    def fetch_messages(self, server_name: str, uids: Iterable[int], with_body: bool = False,
                       keep_attachment_data: bool = False) -> List[EmailMessage]:
        """Fetch headers and flags (and full bodies) in batches; BODY.PEEK leaves \\Seen alone."""
        self._ensure_selected(server_name)
        wanted = sorted(set(uids))
        section = 'BODY.PEEK[]' if with_body else 'BODY.PEEK[HEADER]'
        messages = []
        for start in range(0, len(wanted), FETCH_BATCH_SIZE):
            batch = ",".join(str(u) for u in wanted[start:start + FETCH_BATCH_SIZE])
            data = self._command("UID FETCH", lambda c: c.uid('FETCH', batch, f'(UID FLAGS {section})'))
            for meta, literal in iter_fetch_items(data):
                uid, flags = parse_fetch_meta(meta)
                if uid is None or literal is None:
                    continue
                messages.append(
                    parse_message_or_placeholder(literal, uid, flags, with_body, keep_attachment_data)
                )
        return messages

    def fetch_flags(self, server_name: str, uids: Iterable[int]) -> Dict[int, Set[str]]:
        self._ensure_selected(server_name)
        wanted = sorted(set(uids))
        flags_by_uid: Dict[int, Set[str]] = {}
        for start in range(0, len(wanted), FETCH_BATCH_SIZE * 5):
            batch = ",".join(str(u) for u in wanted[start:start + FETCH_BATCH_SIZE * 5])
            data = self._command("UID FETCH FLAGS", lambda c: c.uid('FETCH', batch, '(UID FLAGS)'))
            for item in data or []:
                meta = item[0] if isinstance(item, tuple) else item
                if not isinstance(meta, bytes):
                    continue
                uid, flags = parse_fetch_meta(meta)
                if uid is not None:
                    flags_by_uid[uid] = flags
        return flags_by_uid

    def fetch_raw(self, server_name: str, uid: int) -> Tuple[bytes, Set[str]]:
        self._ensure_selected(server_name)
        data = self._command("UID FETCH", lambda c: c.uid('FETCH', str(uid), '(UID FLAGS BODY.PEEK[])'))
        for meta, literal in iter_fetch_items(data):
            found_uid, flags = parse_fetch_meta(meta)
            if found_uid == uid and literal is not None:
                return literal, flags
        raise MessageNotFoundError(f"UID {uid} no longer exists in {server_name}")

    def store_flags(self, server_name: str, uid: int, add: Set[str], remove: Set[str]) -> None:
        self._require_message(server_name, uid)
        if add:
            self._command("UID STORE", lambda c: c.uid('STORE', str(uid), '+FLAGS', f"({' '.join(sorted(add))})"))
        if remove:
            self._command("UID STORE", lambda c: c.uid('STORE', str(uid), '-FLAGS', f"({' '.join(sorted(remove))})"))

    def _expunge_uid(self, uid: int) -> None:
        """
        Remove one \\Deleted message.

        UID EXPUNGE (UIDPLUS, RFC 4315) leaves other \\Deleted messages alone;
        a server without it only offers the folder-wide EXPUNGE.
        """
        if self._has_capability('UIDPLUS'):
            self._command("UID EXPUNGE", lambda c: c.uid('EXPUNGE', str(uid)))
        else:
            self._command("EXPUNGE", lambda c: c.expunge())

    def move_message(self, server_name: str, uid: int, dest_server_name: str) -> None:
        """UID MOVE (RFC 6851) when offered, otherwise copy, flag \\Deleted and expunge."""
        self._require_message(server_name, uid)
        dest = quote_folder_name(dest_server_name)
        if self._has_capability('MOVE'):
            self._command("UID MOVE", lambda c: c.uid('MOVE', str(uid), dest))
            return
        self._command("UID COPY", lambda c: c.uid('COPY', str(uid), dest))
        self._command("UID STORE", lambda c: c.uid('STORE', str(uid), '+FLAGS', f"({DELETED})"))
        self._expunge_uid(uid)

    def delete_message(self, server_name: str, uid: int) -> None:
        self._require_message(server_name, uid)
        self._command("UID STORE", lambda c: c.uid('STORE', str(uid), '+FLAGS', f"({DELETED})"))
        self._expunge_uid(uid)
