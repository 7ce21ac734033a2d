"""
Encrypted per-account OAuth2 token persistence.

Tokens are serialized to JSON, encrypted with the cache's SecretBox and kept
in the `tokens` table of the cache database, one row per account.
"""
import logging
from pathlib import Path
from typing import Optional, Union

from mailsync.models import Token, utcnow
from mailsync.storage import db
from mailsync.storage.encryption import SecretBox
from mailsync.utils.errors import CacheError, DecryptionError

logger = logging.getLogger(__name__)


class TokenStore:
    """Loads and saves token sets by account id."""

    def __init__(self, db_path: Union[str, Path], secret_box: SecretBox):
        self.db_path = db_path
        self.secret_box = secret_box

    def load(self, account_id: str) -> Optional[Token]:
        """
        Get the stored token for an account.

        Returns:
            The token, or None if none is stored or the stored one is unreadable.
        """
        with db.reading(self.db_path) as conn:
            row = conn.execute(
                "SELECT encrypted_token_bundle FROM tokens WHERE account_id = ?",
                (account_id,),
            ).fetchone()
        if row is None:
            return None
        try:
            return Token.from_dict(self.secret_box.decrypt_json(row["encrypted_token_bundle"]))
        except (DecryptionError, KeyError, ValueError) as e:
            # An unreadable token is the same as no token: the user signs in again
            logger.warning(f"Stored token for account {account_id} is unreadable: {e}")
            return None

    def save(self, account_id: str, token: Token) -> None:
        """
        Persist a token, replacing any previous one.

        Raises:
            CacheError: If the token cannot be written.
        """
        if not token.access_token:
            raise CacheError("Refusing to store a token without an access token")
        encrypted = self.secret_box.encrypt_json(token.to_dict())
        with db.transaction(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO tokens (account_id, encrypted_token_bundle, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(account_id) DO UPDATE SET
                    encrypted_token_bundle = excluded.encrypted_token_bundle,
                    updated_at = excluded.updated_at
                """,
                (account_id, encrypted, utcnow().isoformat()),
            )
        logger.debug(f"Stored token for account {account_id}, expires {token.expires_at.isoformat()}")

    def clear(self, account_id: str) -> None:
        with db.transaction(self.db_path) as conn:
            conn.execute("DELETE FROM tokens WHERE account_id = ?", (account_id,))
