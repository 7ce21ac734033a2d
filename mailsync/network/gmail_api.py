"""
Gmail REST API backend.

Used for Google accounts where IMAP is unavailable or undesired. Gmail has
labels instead of folders and string ids instead of UIDs, so this backend
maps them onto the IMAP model the sync engine expects:

- a label is a folder; system labels keep their ids as server names
  (INBOX, SENT, DRAFT, TRASH, SPAM);
- a message id is a hexadecimal number and is used as the UID;
- UIDVALIDITY is constant, message ids never change meaning;
- flags are derived from labels: no UNREAD means \\Seen, STARRED means
  \\Flagged, DRAFT means \\Draft.
"""
import base64
import binascii
import logging
from typing import Any, Dict, Iterable, List, Optional, Set

import requests

from mailsync import config
from mailsync.auth.credentials import Credential, OAuth2Credential
from mailsync.models import (
    DRAFT, FLAGGED, SEEN, Account, EmailMessage, FolderMapping, FolderType,
)
from mailsync.network.backend import BodyParts, FolderStatus, MailBackend, RemoteFolder
from mailsync.network.mime import (
    build_mime, decode_mime_header, parse_body, parse_date, parse_message_or_placeholder,
)
from mailsync.utils.errors import (
    InvalidCredentialsError, MessageNotFoundError, ProtocolError, TransportError,
)

logger = logging.getLogger(__name__)

GMAIL_API_BASE_URL = "https://www.googleapis.com/gmail/v1"
GMAIL_UIDVALIDITY = 1
LIST_PAGE_SIZE = 500

_SPECIAL_USE = {
    "SENT": "\\Sent",
    "DRAFT": "\\Drafts",
    "TRASH": "\\Trash",
    "SPAM": "\\Junk",
}


def gmail_folder_mappings() -> List[FolderMapping]:
    """Canonical roles for a Gmail account reached through the API."""
    return [
        FolderMapping(FolderType.INBOX, "INBOX", "Inbox"),
        FolderMapping(FolderType.SENT, "SENT", "Sent"),
        FolderMapping(FolderType.DRAFTS, "DRAFT", "Drafts"),
        FolderMapping(FolderType.TRASH, "TRASH", "Trash"),
        FolderMapping(FolderType.SPAM, "SPAM", "Spam"),
    ]


def uid_for_message_id(message_id: str) -> int:
    return int(message_id, 16)


def flags_from_labels(label_ids: Iterable[str]) -> Set[str]:
    labels = set(label_ids)
    flags = set()
    if "UNREAD" not in labels:
        flags.add(SEEN)
    if "STARRED" in labels:
        flags.add(FLAGGED)
    if "DRAFT" in labels:
        flags.add(DRAFT)
    return flags


def label_changes(add: Set[str], remove: Set[str]) -> Dict[str, List[str]]:
    """Translate IMAP flag changes into Gmail label changes."""
    add_labels, remove_labels = [], []
    if SEEN in add:
        remove_labels.append("UNREAD")
    if SEEN in remove:
        add_labels.append("UNREAD")
    if FLAGGED in add:
        add_labels.append("STARRED")
    if FLAGGED in remove:
        remove_labels.append("STARRED")
    return {"addLabelIds": add_labels, "removeLabelIds": remove_labels}


class GmailApiBackend(MailBackend):
    """
    Args:
        account: The Google account.
        timeout: Per-request timeout.
        keep_attachment_data: Keep attachment bytes when bodies are fetched.
        session: requests session; tests pass a fake.
    """

    # Each fetched message is its own HTTP request
    fetch_batch_size = 25
    flag_batch_size = None

    def __init__(self, account: Account, timeout: float = config.NETWORK_TIMEOUT_SECONDS,
                 keep_attachment_data: bool = False, session: Optional[requests.Session] = None):
        self.account = account
        self.timeout = timeout
        self.keep_attachment_data = keep_attachment_data
        self._session_override = session
        self.session: Optional[requests.Session] = None
        self._labels: Dict[str, str] = {}  # label name -> label id
        self._ids: Dict[int, str] = {}  # uid -> message id

    def folder_mappings(self) -> Optional[List[FolderMapping]]:
        return gmail_folder_mappings()

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    def _request(self, method: str, path: str, session: Optional[requests.Session] = None, **kwargs) -> Any:
        session = session or self.session
        if session is None:
            raise TransportError("Gmail API session is not open")
        url = f"{GMAIL_API_BASE_URL}/{path}"
        try:
            response = session.request(method, url, timeout=self.timeout, **kwargs)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise TransportError(f"Gmail API unreachable: {e}") from e
        except requests.exceptions.RequestException as e:
            raise ProtocolError(f"Gmail API request failed: {e}") from e

        status = response.status_code
        if status in (200, 204):
            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError as e:
                raise ProtocolError(f"Gmail API returned a non-JSON body for {method} {path}") from e
        if status == 401:
            raise InvalidCredentialsError("Gmail API rejected the access token")
        if status == 404:
            raise MessageNotFoundError(f"Gmail API: {path} not found")
        if status == 429 or status >= 500:
            raise TransportError(f"Gmail API unavailable: HTTP {status}")
        raise ProtocolError(f"Gmail API request {method} {path} failed: HTTP {status} {response.text[:200]}")

    def _message_id(self, uid: int) -> str:
        return self._ids.get(uid) or format(uid, "x")

    def _label_id(self, server_name: str) -> str:
        if not self._labels:
            self.list_folders()
        return self._labels.get(server_name, server_name)

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def open(self) -> None:
        self.session = self._session_override or requests.Session()

    def authenticate(self, credential: Credential) -> None:
        if not isinstance(credential, OAuth2Credential):
            raise InvalidCredentialsError("The Gmail API only accepts OAuth2 credentials")
        self.session.headers["Authorization"] = f"Bearer {credential.access_token}"
        profile = self._request("GET", "users/me/profile")
        logger.info(f"Gmail API connected as {profile.get('emailAddress', credential.username)}")

    def close(self) -> None:
        if self.session is not None:
            self.session.headers.pop("Authorization", None)
            if self._session_override is None:
                self.session.close()
        self.session = None

    def noop(self) -> None:
        self._request("GET", "users/me/profile")

    # ------------------------------------------------------------------
    # Mailbox
    # ------------------------------------------------------------------

    def list_folders(self) -> List[RemoteFolder]:
        data = self._request("GET", "users/me/labels")
        folders = []
        self._labels = {}
        for label in data.get("labels", []):
            name, label_id = label.get("name", ""), label.get("id", "")
            if not name or label.get("labelListVisibility") == "labelHide":
                continue
            self._labels[name] = label_id
            attributes = {_SPECIAL_USE[label_id]} if label_id in _SPECIAL_USE else set()
            folders.append(RemoteFolder(server_name=name, delimiter="/", attributes=attributes))
        return folders

    def select_folder(self, server_name: str) -> FolderStatus:
        label = self._request("GET", f"users/me/labels/{self._label_id(server_name)}")
        return FolderStatus(uidvalidity=GMAIL_UIDVALIDITY, exists=int(label.get("messagesTotal", 0)))

    def _list_uids(self, label_ids: List[str]) -> Set[int]:
        """UIDs of the messages carrying every one of `label_ids`, one page per request."""
        uids: Set[int] = set()
        page_token = None
        while True:
            params: Dict[str, Any] = {"labelIds": label_ids, "maxResults": LIST_PAGE_SIZE}
            if page_token:
                params["pageToken"] = page_token
            data = self._request("GET", "users/me/messages", params=params)
            for item in data.get("messages", []):
                uid = uid_for_message_id(item["id"])
                self._ids[uid] = item["id"]
                uids.add(uid)
            page_token = data.get("nextPageToken")
            if not page_token:
                return uids

    def search_uids(self, server_name: str) -> Set[int]:
        return self._list_uids([self._label_id(server_name)])

    def _get_message(self, uid: int, fmt: str) -> Dict[str, Any]:
        params: Dict[str, Any] = {"format": fmt}
        if fmt == "metadata":
            params["metadataHeaders"] = ["Subject", "From", "To", "Cc", "Date", "Message-ID"]
        return self._request("GET", f"users/me/messages/{self._message_id(uid)}", params=params)

    @staticmethod
    def _raw_bytes(uid: int, data: Dict[str, Any]) -> bytes:
        try:
            return base64.urlsafe_b64decode(data["raw"])
        except (KeyError, TypeError, binascii.Error) as e:
            raise ProtocolError(f"Gmail message {uid:x} has no usable raw content") from e

    def fetch_messages(self, server_name: str, uids: Iterable[int], with_body: bool = False) -> List[EmailMessage]:
        messages = []
        for uid in sorted(set(uids)):
            try:
                if with_body:
                    data = self._get_message(uid, "raw")
                    flags = flags_from_labels(data.get("labelIds", []))
                    try:
                        raw = self._raw_bytes(uid, data)
                    except ProtocolError as e:
                        logger.warning(f"{e}, caching headers only")
                        messages.append(EmailMessage(uid=uid, flags=flags))
                        continue
                    message = parse_message_or_placeholder(raw, uid, flags, True, self.keep_attachment_data)
                else:
                    message = self._message_from_metadata(uid, self._get_message(uid, "metadata"))
            except MessageNotFoundError:
                # Removed between listing and fetching; the next pass sees it gone
                logger.debug(f"Gmail message {uid:x} vanished before fetch")
                continue
            messages.append(message)
        return messages

    @staticmethod
    def _message_from_metadata(uid: int, data: Dict[str, Any]) -> EmailMessage:
        headers = {h["name"].lower(): h.get("value", "") for h in data.get("payload", {}).get("headers", [])}
        return EmailMessage(
            uid=uid,
            message_id=headers.get("message-id", ""),
            subject=decode_mime_header(headers.get("subject")),
            sender=decode_mime_header(headers.get("from")),
            to=[a.strip() for a in headers.get("to", "").split(",") if a.strip()],
            cc=[a.strip() for a in headers.get("cc", "").split(",") if a.strip()],
            date=parse_date(headers.get("date")),
            flags=flags_from_labels(data.get("labelIds", [])),
        )

    def fetch_flags(self, server_name: str, uids: Iterable[int]) -> Dict[int, Set[str]]:
        """
        Flags from label listings rather than one request per message.

        Four listings cover the folder however many UIDs are asked for:
        the folder itself, then the folder intersected with UNREAD, STARRED
        and DRAFT. UIDs no longer in the folder are left out.
        """
        label_id = self._label_id(server_name)
        present = self._list_uids([label_id]) & set(uids)
        labelled = {name: self._list_uids([label_id, name]) for name in ("UNREAD", "STARRED", "DRAFT")}
        return {
            uid: flags_from_labels(name for name, members in labelled.items() if uid in members)
            for uid in present
        }

    def fetch_body(self, server_name: str, uid: int) -> BodyParts:
        data = self._get_message(uid, "raw")
        return parse_body(self._raw_bytes(uid, data), self.keep_attachment_data)

    def store_flags(self, server_name: str, uid: int, add: Set[str], remove: Set[str]) -> None:
        changes = label_changes(add, remove)
        if changes["addLabelIds"] or changes["removeLabelIds"]:
            self._request("POST", f"users/me/messages/{self._message_id(uid)}/modify", json=changes)

    def move_message(self, server_name: str, uid: int, dest_server_name: str) -> None:
        body = {
            "addLabelIds": [self._label_id(dest_server_name)],
            "removeLabelIds": [self._label_id(server_name)],
        }
        self._request("POST", f"users/me/messages/{self._message_id(uid)}/modify", json=body)

    def delete_message(self, server_name: str, uid: int) -> None:
        self._request("POST", f"users/me/messages/{self._message_id(uid)}/trash")

    def submit_message(self, message: EmailMessage, credential: Credential) -> None:
        if not message.sender:
            message.sender = self.account.email
        mime = build_mime(message, self.account.signature)
        if message.bcc:
            mime["Bcc"] = ", ".join(message.bcc)
        raw = base64.urlsafe_b64encode(mime.as_bytes()).decode("ascii")
        # Submission has its own short-lived session, independent of the mailbox one
        session = self._session_override or requests.Session()
        try:
            self._request(
                "POST", "users/me/messages/send", session=session, json={"raw": raw},
                headers={"Authorization": f"Bearer {credential.access_token}"},
            )
        finally:
            if self._session_override is None:
                session.close()
        logger.info("Message sent through the Gmail API")
