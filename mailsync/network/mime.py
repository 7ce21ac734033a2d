"""
RFC 822 parsing and composition shared by the backends.
"""
import email
import logging
from datetime import datetime, timezone
from email import policy
from email.errors import MessageError
from email.header import decode_header, make_header
from email.message import Message
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate, getaddresses, make_msgid, parsedate_to_datetime
from typing import Iterable, List, Optional, Tuple

from mailsync.models import Attachment, EmailMessage
from mailsync.utils.errors import ProtocolError

logger = logging.getLogger(__name__)

# What the email package raises on input it cannot make sense of
PARSE_ERRORS = (MessageError, ValueError, LookupError, TypeError, IndexError, AttributeError)


def decode_mime_header(value: Optional[str]) -> str:
    """Decode an RFC 2047 encoded header into text; malformed words are kept raw."""
    if not value:
        return ""
    try:
        return str(make_header(decode_header(value)))
    except (UnicodeDecodeError, LookupError, ValueError, MessageError):
        return value


def parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _addresses(msg: Message, header: str) -> List[str]:
    values = msg.get_all(header, [])
    return [addr for _name, addr in getaddresses([decode_mime_header(str(v)) for v in values]) if addr]


def _part_text(part: Message) -> str:
    payload = part.get_payload(decode=True)
    if not payload:
        return ""
    charset = part.get_content_charset() or 'utf-8'
    try:
        return payload.decode(charset, errors='replace')
    except LookupError:
        return payload.decode('utf-8', errors='replace')


def extract_body(msg: Message, keep_attachment_data: bool) -> Tuple[str, str, List[Attachment]]:
    """
    Split a parsed message into plain text, HTML and attachments.

    Only the first text/plain and first text/html parts that are not
    attachments count as the body.
    """
    plain, html = "", ""
    attachments: List[Attachment] = []
    parts = msg.walk() if msg.is_multipart() else [msg]
    for part in parts:
        if part.is_multipart():
            continue
        content_type = part.get_content_type()
        disposition = str(part.get("Content-Disposition", "")).lower()
        filename = part.get_filename()
        if "attachment" in disposition or (filename and content_type not in ("text/plain", "text/html")):
            data = part.get_payload(decode=True) or b""
            attachments.append(Attachment(
                filename=decode_mime_header(filename) or "attachment",
                mime_type=content_type,
                size_bytes=len(data),
                data=data if keep_attachment_data else None,
            ))
        elif content_type == "text/plain" and not plain:
            plain = _part_text(part)
        elif content_type == "text/html" and not html:
            html = _part_text(part)
    return plain, html, attachments


def parse_message(raw: bytes, uid: int, flags, with_body: bool,
                  keep_attachment_data: bool = False) -> EmailMessage:
    """Build an EmailMessage from raw header (or full message) bytes."""
    msg = email.message_from_bytes(raw, policy=policy.compat32)
    message = EmailMessage(
        uid=uid,
        message_id=(msg.get("Message-ID") or "").strip(),
        subject=decode_mime_header(msg.get("Subject")),
        sender=decode_mime_header(msg.get("From")),
        to=_addresses(msg, "To"),
        cc=_addresses(msg, "Cc"),
        date=parse_date(msg.get("Date")),
        flags=set(flags),
    )
    if with_body:
        message.body_plain, message.body_html, message.attachments = extract_body(msg, keep_attachment_data)
        message.has_body = True
    return message


def parse_message_or_placeholder(raw: bytes, uid: int, flags: Iterable[str], with_body: bool,
                                 keep_attachment_data: bool = False) -> EmailMessage:
    """
    Like parse_message, but a message that cannot be parsed still yields a row.

    The placeholder carries only the UID and flags, so the folder cursor can
    move past it and the body can be retried on demand.
    """
    try:
        return parse_message(raw, uid, flags, with_body, keep_attachment_data)
    except PARSE_ERRORS as e:
        logger.warning(f"Cannot parse message uid {uid}, caching headers only: {e}")
        return EmailMessage(uid=uid, flags=set(flags))


def parse_body(raw: bytes, keep_attachment_data: bool) -> Tuple[str, str, List[Attachment]]:
    """
    Parse a full message into its body parts.

    Raises:
        ProtocolError: The message is malformed beyond repair.
    """
    try:
        return extract_body(email.message_from_bytes(raw, policy=policy.compat32), keep_attachment_data)
    except PARSE_ERRORS as e:
        raise ProtocolError(f"Malformed message body: {e}") from e


def build_mime(message: EmailMessage, signature: str = "") -> MIMEMultipart:
    """Compose an outgoing message. The signature is appended to the plain body."""
    body_plain = message.body_plain
    if signature:
        body_plain = f"{body_plain}\n\n-- \n{signature}"

    mime = MIMEMultipart("alternative")
    mime["From"] = message.sender
    mime["To"] = ", ".join(message.to)
    if message.cc:
        mime["Cc"] = ", ".join(message.cc)
    mime["Subject"] = message.subject
    mime["Date"] = formatdate(localtime=True)
    mime["Message-ID"] = message.message_id or make_msgid()
    mime.attach(MIMEText(body_plain, "plain", "utf-8"))
    if message.body_html:
        mime.attach(MIMEText(message.body_html, "html", "utf-8"))
    return mime


def all_recipients(message: EmailMessage) -> List[str]:
    return [addr for addr in message.to + message.cc + message.bcc if addr]
