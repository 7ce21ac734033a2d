"""
Core domain models for the mail sync engine.

This module contains pure domain models (dataclasses) without any database,
network or UI dependencies. Accounts arrive from the configuration layer
already parsed; everything else is produced by the engine itself.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from mailsync.config import DEFAULT_IMAP_PORT, DEFAULT_SMTP_PORT, OAUTH_REDIRECT_URI, GMAIL_SCOPES
from mailsync.utils.errors import ConfigError

# System flags as IMAP spells them
SEEN = '\\Seen'
ANSWERED = '\\Answered'
FLAGGED = '\\Flagged'
DELETED = '\\Deleted'
DRAFT = '\\Draft'
SYSTEM_FLAGS = frozenset({SEEN, ANSWERED, FLAGGED, DELETED, DRAFT})


def utcnow() -> datetime:
    """Timezone-aware current time, the default clock everywhere."""
    return datetime.now(timezone.utc)


class AuthMethod(str, Enum):
    PLAIN = "plain"
    LOGIN = "login"
    OAUTH2 = "oauth2"


class FolderType(str, Enum):
    """Canonical folder role, independent of the provider's naming."""
    INBOX = "inbox"
    SENT = "sent"
    DRAFTS = "drafts"
    TRASH = "trash"
    SPAM = "spam"
    ARCHIVE = "archive"
    CUSTOM = "custom"

    @property
    def is_canonical(self) -> bool:
        return self is not FolderType.CUSTOM


# Sync order: inbox first, then the other canonical roles
ROLE_SYNC_ORDER = (
    FolderType.INBOX, FolderType.SENT, FolderType.DRAFTS, FolderType.TRASH,
    FolderType.ARCHIVE, FolderType.SPAM, FolderType.CUSTOM,
)


class BackendKind(str, Enum):
    IMAP_SMTP = "imap"
    GMAIL_API = "gmail_api"


@dataclass(slots=True)
class FolderMapping:
    """Maps a canonical role to the server's folder name and a display name."""
    folder_type: FolderType
    server_name: str
    local_name: str = ""

    def __post_init__(self) -> None:
        if not self.local_name:
            self.local_name = self.server_name


def default_folder_mappings() -> List[FolderMapping]:
    return [
        FolderMapping(FolderType.INBOX, "INBOX", "Inbox"),
        FolderMapping(FolderType.SENT, "Sent", "Sent"),
        FolderMapping(FolderType.DRAFTS, "Drafts", "Drafts"),
        FolderMapping(FolderType.TRASH, "Trash", "Trash"),
    ]


@dataclass(slots=True)
class ImapConfig:
    server: str = ""
    port: int = DEFAULT_IMAP_PORT
    username: str = ""
    password: Optional[str] = None
    use_tls: bool = True  # implicit TLS (IMAPS)
    use_starttls: bool = False
    auth_method: AuthMethod = AuthMethod.PLAIN
    folders: List[FolderMapping] = field(default_factory=default_folder_mappings)


@dataclass(slots=True)
class SmtpConfig:
    server: str = ""
    port: int = DEFAULT_SMTP_PORT
    username: str = ""
    password: Optional[str] = None
    use_tls: bool = False  # implicit TLS (SMTPS, usually port 465)
    use_starttls: bool = True
    auth_method: AuthMethod = AuthMethod.PLAIN


@dataclass(slots=True)
class OAuth2Config:
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = OAUTH_REDIRECT_URI
    scopes: List[str] = field(default_factory=lambda: list(GMAIL_SCOPES))
    provider: str = "google"


@dataclass(slots=True)
class Token:
    """OAuth2 token set. `expires_at` is an absolute, timezone-aware time."""
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: datetime = field(default_factory=utcnow)

    def is_usable(self, now: datetime, skew_seconds: float) -> bool:
        """A token is usable only while now < expires_at - skew."""
        return now < self.expires_at - timedelta(seconds=skew_seconds)

    def expired_copy(self) -> "Token":
        """Same refresh token, access token marked as already expired."""
        return Token(
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            expires_at=datetime.fromtimestamp(0, timezone.utc),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Token":
        expires_at = datetime.fromisoformat(data["expires_at"])
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=expires_at,
        )

    @classmethod
    def from_response(cls, payload: Dict[str, Any], now: datetime,
                      previous_refresh_token: Optional[str] = None) -> "Token":
        """
        Build a token from an OAuth2 token endpoint JSON response.

        Providers usually omit refresh_token on refresh; the previous one is kept.
        """
        expires_in = int(payload.get("expires_in", 3600))
        return cls(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or previous_refresh_token,
            expires_at=now + timedelta(seconds=expires_in),
        )


@dataclass(slots=True)
class Account:
    """
    Represents a configured mail account.

    Created by the configuration layer; the engine only ever mutates `token`.
    """
    id: str
    name: str = ""
    email: str = ""
    imap: ImapConfig = field(default_factory=ImapConfig)
    smtp: SmtpConfig = field(default_factory=SmtpConfig)
    signature: str = ""
    default_folder: str = "INBOX"
    enabled: bool = True
    oauth2: Optional[OAuth2Config] = None
    token: Optional[Token] = None
    backend: BackendKind = BackendKind.IMAP_SMTP
    check_interval: Optional[int] = None  # minutes, overrides the app default
    sync_all_folders: bool = False

    @property
    def uses_oauth2(self) -> bool:
        return AuthMethod.OAUTH2 in (self.imap.auth_method, self.smtp.auth_method) \
            or self.backend is BackendKind.GMAIL_API

    def validate(self) -> None:
        """
        Fail fast when a required field is missing.

        Raises:
            ConfigError: Naming the first missing or malformed field.
        """
        if not self.id:
            raise ConfigError("Account id is required")
        if not self.name.strip():
            raise ConfigError(f"Account {self.id}: name is required")
        if not self.email.strip():
            raise ConfigError(f"Account {self.id}: email is required")
        if "@" not in self.email:
            raise ConfigError(f"Account {self.id}: invalid email address {self.email!r}")
        if self.check_interval is not None and self.check_interval <= 0:
            raise ConfigError(f"Account {self.id}: check_interval must be positive")
        # The Gmail API backend reads and sends over HTTPS only
        if self.backend is BackendKind.IMAP_SMTP:
            for label, cfg in (("IMAP", self.imap), ("SMTP", self.smtp)):
                if not cfg.server.strip():
                    raise ConfigError(f"Account {self.id}: {label} server is required")
                if not cfg.username.strip():
                    raise ConfigError(f"Account {self.id}: {label} username is required")
                if cfg.auth_method is not AuthMethod.OAUTH2 and not cfg.password:
                    raise ConfigError(f"Account {self.id}: {label} password is required")
        if self.uses_oauth2 and (self.oauth2 is None or not self.oauth2.client_id):
            raise ConfigError(f"Account {self.id}: OAuth2 client configuration is required")
        seen_roles: Set[FolderType] = set()
        for mapping in self.imap.folders:
            if not mapping.server_name:
                raise ConfigError(f"Account {self.id}: folder mapping without server name")
            if mapping.folder_type.is_canonical:
                if mapping.folder_type in seen_roles:
                    raise ConfigError(
                        f"Account {self.id}: more than one folder mapped to {mapping.folder_type.value}"
                    )
                seen_roles.add(mapping.folder_type)


@dataclass(slots=True)
class SyncCursor:
    """Durable bookmark of reconciliation progress for one folder."""
    uidvalidity: Optional[int] = None
    highest_uid: int = 0
    last_sync_at: Optional[datetime] = None


@dataclass(slots=True)
class Folder:
    """A folder of an account as stored in the local cache, with its sync cursor."""
    id: Optional[int] = None
    account_id: str = ""
    role: FolderType = FolderType.CUSTOM
    server_name: str = ""
    local_name: str = ""
    uidvalidity: Optional[int] = None
    highest_uid: int = 0
    last_sync_at: Optional[datetime] = None
    total_count: int = 0
    unread_count: int = 0

    @property
    def cursor(self) -> SyncCursor:
        return SyncCursor(self.uidvalidity, self.highest_uid, self.last_sync_at)


@dataclass(slots=True)
class Attachment:
    """Represents an email attachment."""
    id: Optional[int] = None
    filename: str = ""
    mime_type: str = ""
    size_bytes: int = 0
    data: Optional[bytes] = None  # only kept when attachments are downloaded


@dataclass(slots=True)
class EmailMessage:
    """Represents an email message."""
    id: Optional[int] = None
    account_id: str = ""
    folder_id: int = 0
    uid: int = 0
    uidvalidity: int = 0
    message_id: str = ""
    subject: str = ""
    sender: str = ""
    to: List[str] = field(default_factory=list)
    cc: List[str] = field(default_factory=list)
    bcc: List[str] = field(default_factory=list)
    date: Optional[datetime] = None
    flags: Set[str] = field(default_factory=set)
    body_plain: str = ""
    body_html: str = ""
    has_body: bool = False
    attachments: List[Attachment] = field(default_factory=list)
    is_deleted: bool = False

    @property
    def is_read(self) -> bool:
        return SEEN in self.flags

    @property
    def is_starred(self) -> bool:
        return FLAGGED in self.flags

    def to_payload(self) -> Dict[str, Any]:
        """Serializable form used to queue outgoing mail."""
        return {
            "sender": self.sender,
            "to": list(self.to),
            "cc": list(self.cc),
            "bcc": list(self.bcc),
            "subject": self.subject,
            "body_plain": self.body_plain,
            "body_html": self.body_html,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "EmailMessage":
        return cls(
            sender=payload.get("sender", ""),
            to=list(payload.get("to", [])),
            cc=list(payload.get("cc", [])),
            bcc=list(payload.get("bcc", [])),
            subject=payload.get("subject", ""),
            body_plain=payload.get("body_plain", ""),
            body_html=payload.get("body_html", ""),
        )


class OutboundKind(str, Enum):
    SET_FLAGS = "set_flags"
    MOVE = "move"
    DELETE = "delete"
    SEND = "send"


@dataclass(slots=True)
class OutboundOperation:
    """A local mutation waiting to be replayed against the server."""
    id: Optional[int] = None
    account_id: str = ""
    kind: OutboundKind = OutboundKind.SET_FLAGS
    folder_id: Optional[int] = None
    server_name: str = ""
    uid: Optional[int] = None
    add_flags: Set[str] = field(default_factory=set)
    remove_flags: Set[str] = field(default_factory=set)
    dest_server_name: str = ""
    payload: Optional[Dict[str, Any]] = None
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    SYNCING = "syncing"
    IDLE = "idle"
    ERROR = "error"
    RECONNECTING = "reconnecting"

    @property
    def is_operative(self) -> bool:
        return self in (SessionState.READY, SessionState.SYNCING, SessionState.IDLE)


@dataclass(slots=True)
class SessionStatus:
    """Snapshot of one account session for the UI."""
    account_id: str
    state: SessionState
    last_error: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    needs_reauth: bool = False
    enabled: bool = True


@dataclass(slots=True)
class SearchDocument:
    """What the engine hands to the search index for one message."""
    account_id: str
    folder_id: int
    uid: int
    subject: str = ""
    sender: str = ""
    body_text: str = ""
    date: Optional[datetime] = None
