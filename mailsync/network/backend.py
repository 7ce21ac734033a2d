"""
Backend-agnostic mail access.

A MailBackend is what the session and the sync engine talk to, whether the
account is reached over IMAP/SMTP or over a provider's HTTP API. Backends
are synchronous and blocking; AsyncBackend runs every call in a worker
thread with the network timeout so the event loop never blocks. Calls on the
mailbox connection are serialized, so a call abandoned after a timeout has
finished before the next one (a reconnect included) starts.
"""
import functools
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from mailsync.auth.credentials import Credential
from mailsync.models import Attachment, EmailMessage, FolderMapping
from mailsync.utils.aio import run_blocking
from mailsync.utils.errors import TransportError


@dataclass(slots=True)
class RemoteFolder:
    """A folder as listed by the server."""
    server_name: str
    delimiter: str = "/"
    attributes: Set[str] = field(default_factory=set)  # e.g. {'\\Sent', '\\HasNoChildren'}

    @property
    def selectable(self) -> bool:
        return '\\Noselect' not in self.attributes and '\\NonExistent' not in self.attributes


@dataclass(slots=True)
class FolderStatus:
    """What selecting a folder reports."""
    uidvalidity: int
    exists: int = 0
    uidnext: Optional[int] = None


BodyParts = Tuple[str, str, List[Attachment]]


class MailBackend(ABC):
    """Contract shared by the IMAP/SMTP and provider API variants."""

    # UIDs per fetch call; each call is one bounded round of network I/O
    fetch_batch_size = 50
    # UIDs per flag fetch; None when one call covers any number of UIDs
    flag_batch_size: Optional[int] = 500

    def folder_mappings(self) -> Optional[List[FolderMapping]]:
        """Role mappings the backend imposes, or None to use the account's."""
        return None

    @abstractmethod
    def open(self) -> None:
        """Open the transport (TCP + TLS, or an HTTP session)."""

    @abstractmethod
    def authenticate(self, credential: Credential) -> None:
        """
        Authenticate the open transport.

        Raises:
            InvalidCredentialsError: If the server rejects the credential.
        """

    @abstractmethod
    def close(self) -> None:
        """Close the transport. Never raises."""

    @abstractmethod
    def noop(self) -> None:
        """Round-trip to check the connection is alive."""

    @abstractmethod
    def list_folders(self) -> List[RemoteFolder]:
        pass

    @abstractmethod
    def select_folder(self, server_name: str) -> FolderStatus:
        pass

    @abstractmethod
    def search_uids(self, server_name: str) -> Set[int]:
        """All UIDs currently in the folder."""

    @abstractmethod
    def fetch_messages(self, server_name: str, uids: Iterable[int], with_body: bool = False) -> List[EmailMessage]:
        """Headers and flags (and bodies when asked) of the given UIDs."""

    @abstractmethod
    def fetch_flags(self, server_name: str, uids: Iterable[int]) -> Dict[int, Set[str]]:
        pass

    @abstractmethod
    def fetch_body(self, server_name: str, uid: int) -> BodyParts:
        """
        Raises:
            MessageNotFoundError: If the UID is gone.
        """

    @abstractmethod
    def store_flags(self, server_name: str, uid: int, add: Set[str], remove: Set[str]) -> None:
        """
        Raises:
            MessageNotFoundError: If the UID is gone.
        """

    @abstractmethod
    def move_message(self, server_name: str, uid: int, dest_server_name: str) -> None:
        """
        Raises:
            MessageNotFoundError: If the UID is gone.
        """

    @abstractmethod
    def delete_message(self, server_name: str, uid: int) -> None:
        """
        Raises:
            MessageNotFoundError: If the UID is gone.
        """

    @abstractmethod
    def submit_message(self, message: EmailMessage, credential: Credential) -> None:
        """Send a message over a short-lived submission connection."""


class AsyncBackend:
    """Awaitable view of a MailBackend; every call is bounded by `timeout`."""

    def __init__(self, backend: MailBackend, timeout: float):
        self.backend = backend
        self.timeout = timeout
        self._connection_lock = threading.Lock()

    @property
    def fetch_batch_size(self) -> int:
        return self.backend.fetch_batch_size

    @property
    def flag_batch_size(self) -> Optional[int]:
        return self.backend.flag_batch_size

    async def _call(self, func, *args, **kwargs):
        abandoned = threading.Event()

        @functools.wraps(func)
        def exclusive():
            with self._connection_lock:
                # Timed out or cancelled while queued behind another call
                if abandoned.is_set():
                    raise TransportError(f"{func.__name__} abandoned before it started")
                return func(*args, **kwargs)

        try:
            return await run_blocking(exclusive, timeout=self.timeout)
        except BaseException:
            abandoned.set()
            raise

    async def open(self) -> None:
        await self._call(self.backend.open)

    async def authenticate(self, credential: Credential) -> None:
        await self._call(self.backend.authenticate, credential)

    async def close(self) -> None:
        await self._call(self.backend.close)

    async def noop(self) -> None:
        await self._call(self.backend.noop)

    async def list_folders(self) -> List[RemoteFolder]:
        return await self._call(self.backend.list_folders)

    async def select_folder(self, server_name: str) -> FolderStatus:
        return await self._call(self.backend.select_folder, server_name)

    async def search_uids(self, server_name: str) -> Set[int]:
        return await self._call(self.backend.search_uids, server_name)

    async def fetch_messages(self, server_name: str, uids: Iterable[int], with_body: bool = False) -> List[EmailMessage]:
        return await self._call(self.backend.fetch_messages, server_name, list(uids), with_body)

    async def fetch_flags(self, server_name: str, uids: Iterable[int]) -> Dict[int, Set[str]]:
        return await self._call(self.backend.fetch_flags, server_name, list(uids))

    async def fetch_body(self, server_name: str, uid: int) -> BodyParts:
        return await self._call(self.backend.fetch_body, server_name, uid)

    async def store_flags(self, server_name: str, uid: int, add: Set[str], remove: Set[str]) -> None:
        await self._call(self.backend.store_flags, server_name, uid, add, remove)

    async def move_message(self, server_name: str, uid: int, dest_server_name: str) -> None:
        await self._call(self.backend.move_message, server_name, uid, dest_server_name)

    async def delete_message(self, server_name: str, uid: int) -> None:
        await self._call(self.backend.delete_message, server_name, uid)

    async def submit_message(self, message: EmailMessage, credential: Credential) -> None:
        # Submission uses its own connection and may overlap a sync
        await run_blocking(self.backend.submit_message, message, credential, timeout=self.timeout)
