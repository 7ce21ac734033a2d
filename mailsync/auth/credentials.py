"""
Authentication credentials for IMAP and SMTP.

A credential knows its SASL mechanism and how to produce the initial client
response. IMAP's AUTHENTICATE and SMTP's AUTH both accept these blobs; imaplib
base64-encodes raw bytes itself, SMTP needs the base64 form.
"""
import base64
from dataclasses import dataclass
from typing import Optional, Union

from mailsync.models import Account, AuthMethod, BackendKind, Token
from mailsync.utils.errors import ReauthRequiredError


@dataclass(slots=True)
class PlainCredential:
    username: str
    password: str
    mechanism: str = "PLAIN"

    def sasl_initial_response(self) -> bytes:
        return f"\0{self.username}\0{self.password}".encode('utf-8')


@dataclass(slots=True)
class LoginCredential:
    """Username/password sent with the IMAP LOGIN command or SMTP AUTH LOGIN."""
    username: str
    password: str
    mechanism: str = "LOGIN"

    def sasl_initial_response(self) -> bytes:
        return self.username.encode('utf-8')


@dataclass(slots=True)
class OAuth2Credential:
    username: str
    access_token: str
    mechanism: str = "XOAUTH2"

    def sasl_initial_response(self) -> bytes:
        """
        Build the XOAUTH2 string as raw bytes.

        Format: user=<email>\\x01auth=Bearer <token>\\x01\\x01
        """
        # Stray whitespace in the address makes the server reject the blob
        return f"user={self.username.strip()}\x01auth=Bearer {self.access_token}\x01\x01".encode('utf-8')

    def xoauth2_base64(self) -> str:
        return base64.b64encode(self.sasl_initial_response()).decode('ascii')


Credential = Union[PlainCredential, LoginCredential, OAuth2Credential]


def build_credential(account: Account, token: Optional[Token] = None, protocol: str = "imap") -> Credential:
    """
    Choose the credential variant configured for the account and protocol.

    An OAuth2 token is issued to the account's email address, so XOAUTH2
    always names that address; the configured username only applies to
    password logins.

    Args:
        account: The account.
        token: A usable token, required when the method is OAuth2.
        protocol: "imap" or "smtp".

    Raises:
        ReauthRequiredError: If the method is OAuth2 and no token is given.
    """
    cfg = account.smtp if protocol == "smtp" else account.imap
    username = cfg.username or account.email
    if cfg.auth_method is AuthMethod.OAUTH2 or account.backend is BackendKind.GMAIL_API:
        if token is None or not token.access_token:
            raise ReauthRequiredError(f"Account {account.id} has no OAuth2 token")
        return OAuth2Credential(username=account.email, access_token=token.access_token)
    if cfg.auth_method is AuthMethod.LOGIN:
        return LoginCredential(username=username, password=cfg.password or "")
    return PlainCredential(username=username, password=cfg.password or "")
