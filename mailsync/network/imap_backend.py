"""
IMAP/SMTP backend: IMAP for the mailbox, SMTP for submission.
"""
import logging
from typing import Dict, Iterable, List, Optional, Set

from mailsync import config
from mailsync.auth.credentials import Credential
from mailsync.models import Account, EmailMessage
from mailsync.network.backend import BodyParts, FolderStatus, MailBackend, RemoteFolder
from mailsync.network.imap_client import FETCH_BATCH_SIZE, ImapClient
from mailsync.network.mime import parse_body
from mailsync.network.smtp_client import SmtpClient


logger = logging.getLogger(__name__)


class ImapSmtpBackend(MailBackend):
    """
    Args:
        account: The account; its IMAP and SMTP configs are used.
        timeout: Socket timeout for both protocols.
        keep_attachment_data: Keep attachment bytes when bodies are fetched.
        imap_client: Prebuilt IMAP client (tests).
        smtp_client: Prebuilt SMTP client (tests).
    """

    fetch_batch_size = FETCH_BATCH_SIZE
    flag_batch_size = FETCH_BATCH_SIZE * 5

    def __init__(self, account: Account, timeout: float = config.NETWORK_TIMEOUT_SECONDS,
                 keep_attachment_data: bool = False,
                 imap_client: Optional[ImapClient] = None,
                 smtp_client: Optional[SmtpClient] = None):
        self.account = account
        self.keep_attachment_data = keep_attachment_data
        self.imap = imap_client or ImapClient(account.imap, timeout=timeout)
        self.smtp = smtp_client or SmtpClient(account.smtp, timeout=timeout)

    def open(self) -> None:
        self.imap.connect()

    def authenticate(self, credential: Credential) -> None:
        self.imap.authenticate(credential)

    def close(self) -> None:
        self.imap.close()

    def noop(self) -> None:
        self.imap.noop()

    def list_folders(self) -> List[RemoteFolder]:
        return self.imap.list_folders()

    def select_folder(self, server_name: str) -> FolderStatus:
        return self.imap.select_folder(server_name)

    def search_uids(self, server_name: str) -> Set[int]:
        return self.imap.search_uids(server_name)

    def fetch_messages(self, server_name: str, uids: Iterable[int], with_body: bool = False) -> List[EmailMessage]:
        return self.imap.fetch_messages(server_name, uids, with_body, self.keep_attachment_data)

    def fetch_flags(self, server_name: str, uids: Iterable[int]) -> Dict[int, Set[str]]:
        return self.imap.fetch_flags(server_name, uids)

    def fetch_body(self, server_name: str, uid: int) -> BodyParts:
        raw, _flags = self.imap.fetch_raw(server_name, uid)
        return parse_body(raw, self.keep_attachment_data)

    def store_flags(self, server_name: str, uid: int, add: Set[str], remove: Set[str]) -> None:
        self.imap.store_flags(server_name, uid, add, remove)

    def move_message(self, server_name: str, uid: int, dest_server_name: str) -> None:
        self.imap.move_message(server_name, uid, dest_server_name)

    def delete_message(self, server_name: str, uid: int) -> None:
        self.imap.delete_message(server_name, uid)

    def submit_message(self, message: EmailMessage, credential: Credential) -> None:
        if not message.sender:
            message.sender = self.account.email
        self.smtp.send(message, credential, signature=self.account.signature)
