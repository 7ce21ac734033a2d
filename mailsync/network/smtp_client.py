"""
SMTP submission.

Each send opens its own connection, authenticates, submits and closes.
Submission therefore never depends on the state of the account's IMAP
connection.
"""
import logging
import smtplib
import ssl
from typing import Callable, Optional

from mailsync import config
from mailsync.auth.credentials import Credential, LoginCredential, OAuth2Credential, PlainCredential
from mailsync.models import EmailMessage, SmtpConfig
from mailsync.network.mime import all_recipients, build_mime
from mailsync.utils.errors import InvalidCredentialsError, ProtocolError, TransportError

logger = logging.getLogger(__name__)


class SmtpClient:
    """
    Short-lived SMTP submission client.

    Args:
        cfg: The account's SMTP configuration.
        timeout: Socket timeout in seconds.
        connection_factory: Builds the smtplib connection; tests pass a fake.
    """

    def __init__(self, cfg: SmtpConfig, timeout: float = config.NETWORK_TIMEOUT_SECONDS,
                 connection_factory: Optional[Callable[[], smtplib.SMTP]] = None):
        self.cfg = cfg
        self.timeout = timeout
        self.connection_factory = connection_factory or self._open_socket

    def _open_socket(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        # Implicit TLS (usually port 465) or plain + optional STARTTLS (587)
        if self.cfg.use_tls:
            return smtplib.SMTP_SSL(self.cfg.server, self.cfg.port, timeout=self.timeout, context=context)
        conn = smtplib.SMTP(self.cfg.server, self.cfg.port, timeout=self.timeout)
        conn.ehlo()
        if self.cfg.use_starttls:
            conn.starttls(context=context)
            conn.ehlo()
        return conn

    def _authenticate(self, conn: smtplib.SMTP, credential: Credential) -> None:
        try:
            if isinstance(credential, OAuth2Credential):
                code, response = conn.docmd('AUTH', 'XOAUTH2 ' + credential.xoauth2_base64())
                if code == 334:
                    # Error details arrive as a challenge; an empty reply ends the exchange
                    code, response = conn.docmd('')
                if code != 235:
                    detail = response.decode('utf-8', errors='replace') if isinstance(response, bytes) else str(response)
                    raise InvalidCredentialsError(f"SMTP server rejected token for {credential.username}: {detail}")
            elif isinstance(credential, (PlainCredential, LoginCredential)):
                conn.user, conn.password = credential.username, credential.password
                auth_object = conn.auth_login if isinstance(credential, LoginCredential) else conn.auth_plain
                conn.auth(credential.mechanism, auth_object, initial_response_ok=True)
        except smtplib.SMTPAuthenticationError as e:
            raise InvalidCredentialsError(f"SMTP authentication failed for {credential.username}: {e}") from e
        except smtplib.SMTPNotSupportedError as e:
            raise ProtocolError(f"SMTP server does not support {credential.mechanism}: {e}") from e

    def send(self, message: EmailMessage, credential: Credential, signature: str = "") -> None:
        """
        Submit one message.

        Raises:
            TransportError: Connection or TLS failure; safe to retry.
            InvalidCredentialsError: Authentication refused.
            ProtocolError: The server refused the sender, recipients or data.
        """
        recipients = all_recipients(message)
        if not recipients:
            raise ProtocolError("No recipients specified")
        mime = build_mime(message, signature)

        try:
            conn = self.connection_factory()
        except (OSError, smtplib.SMTPConnectError, smtplib.SMTPServerDisconnected) as e:
            raise TransportError(f"Cannot connect to SMTP server {self.cfg.server}:{self.cfg.port}: {e}") from e

        try:
            self._authenticate(conn, credential)
            logger.info(f"Sending message to {len(recipients)} recipient(s)")
            refused = conn.sendmail(message.sender, recipients, mime.as_string())
            if refused:
                raise ProtocolError(f"Recipients refused: {', '.join(sorted(refused))}")
        # smtplib exceptions derive from OSError, so the specific ones come first
        except (smtplib.SMTPRecipientsRefused, smtplib.SMTPSenderRefused, smtplib.SMTPDataError) as e:
            raise ProtocolError(f"SMTP server refused the message: {e}") from e
        except smtplib.SMTPResponseException as e:
            raise ProtocolError(f"SMTP error {e.smtp_code}: {e.smtp_error!r}") from e
        except smtplib.SMTPNotSupportedError as e:
            raise ProtocolError(f"SMTP server does not support the request: {e}") from e
        except (smtplib.SMTPServerDisconnected, OSError) as e:
            raise TransportError(f"SMTP connection lost: {e}") from e
        finally:
            try:
                conn.quit()
            except (smtplib.SMTPException, OSError):
                conn.close()
        logger.info("Message sent")
