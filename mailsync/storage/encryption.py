"""
Symmetric encryption for data at rest.

OAuth tokens and cached message bodies are encrypted with Fernet
(AES-128-CBC with HMAC). The key lives in a 0600 key file that is
generated on first use.
"""
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

from cryptography.fernet import Fernet, InvalidToken

from mailsync import config
from mailsync.utils.errors import DecryptionError

logger = logging.getLogger(__name__)


def load_or_create_key(key_file: Path) -> bytes:
    """
    Read the Fernet key from `key_file`, generating a new one if it is missing
    or unreadable as a key.
    """
    key_file.parent.mkdir(parents=True, exist_ok=True)

    if key_file.exists():
        key = key_file.read_bytes().strip()
        try:
            Fernet(key)
            return key
        except (ValueError, TypeError):
            logger.warning(f"Secret key file {key_file} is corrupted, generating a new key")

    key = Fernet.generate_key()
    key_file.write_bytes(key)
    try:
        os.chmod(key_file, 0o600)
    except OSError:
        logger.debug(f"Could not restrict permissions on {key_file}")
    return key


class SecretBox:
    """Encrypts and decrypts text and JSON payloads with one Fernet key."""

    def __init__(self, key_file: Optional[Path] = None, key: Optional[bytes] = None):
        if key is None:
            key = load_or_create_key(Path(key_file) if key_file else config.SECRET_KEY_FILE)
        self._cipher = Fernet(key)

    def encrypt_bytes(self, data: bytes) -> bytes:
        return self._cipher.encrypt(data)

    def decrypt_bytes(self, data: Union[bytes, str]) -> bytes:
        """
        Decrypt bytes data.

        Raises:
            DecryptionError: If the data is corrupted or was encrypted with another key.
        """
        if not data:
            raise DecryptionError("Cannot decrypt empty data")
        if isinstance(data, str):
            data = data.encode('ascii')
        try:
            return self._cipher.decrypt(data)
        except InvalidToken as e:
            raise DecryptionError("Decryption failed: invalid or corrupted data") from e

    def encrypt_text(self, text: str) -> str:
        """Encrypt text; the result is an ASCII token safe to store in a TEXT column."""
        return self.encrypt_bytes(text.encode('utf-8')).decode('ascii')

    def decrypt_text(self, data: Union[bytes, str]) -> str:
        try:
            return self.decrypt_bytes(data).decode('utf-8')
        except UnicodeDecodeError as e:
            raise DecryptionError(f"Decrypted data is not valid UTF-8: {e}") from e

    def encrypt_json(self, payload: Dict[str, Any]) -> str:
        return self.encrypt_text(json.dumps(payload, default=str))

    def decrypt_json(self, data: Union[bytes, str]) -> Dict[str, Any]:
        try:
            return json.loads(self.decrypt_text(data))
        except json.JSONDecodeError as e:
            raise DecryptionError(f"Decrypted data is not valid JSON: {e}") from e
