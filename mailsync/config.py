"""
Global settings and constants for the mail sync engine.

Module-level defaults can be overridden from the environment (or a .env file)
by calling load_env() once at startup.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from mailsync.utils.errors import ConfigError


# Default port constants
DEFAULT_IMAP_PORT: int = 993
DEFAULT_SMTP_PORT: int = 587

# Application paths
DATA_DIR: Path = Path.home() / ".mailsync"
SQLITE_DB_PATH: Path = DATA_DIR / "mailsync.db"
SECRET_KEY_FILE: Path = DATA_DIR / "secret.key"
LOG_DIR: Path = DATA_DIR / "logs"
LOG_LEVEL: str = "INFO"

# Network settings
NETWORK_TIMEOUT_SECONDS: float = 30.0

# Session reconnect backoff
BACKOFF_MIN_SECONDS: float = 1.0
BACKOFF_MAX_SECONDS: float = 300.0
BACKOFF_JITTER: float = 0.1

# Sync and caching configuration
DEFAULT_CHECK_INTERVAL_MINUTES: int = 5
MAX_MESSAGES_PER_FOLDER: int = 1000
DOWNLOAD_ATTACHMENTS: bool = False

# OAuth configuration
OAUTH_CLIENT_ID: Optional[str] = None
OAUTH_CLIENT_SECRET: Optional[str] = None
OAUTH_REDIRECT_HOST: str = "localhost"
OAUTH_REDIRECT_PORT: int = 8080
OAUTH_CALLBACK_PATH: str = "/oauth/callback"
OAUTH_REDIRECT_URI: str = f"http://{OAUTH_REDIRECT_HOST}:{OAUTH_REDIRECT_PORT}{OAUTH_CALLBACK_PATH}"
OAUTH_CALLBACK_TIMEOUT_SECONDS: float = 300.0
# A token is usable only while now < expires_at - skew
TOKEN_EXPIRY_SKEW_SECONDS: int = 60

GMAIL_SCOPES: List[str] = [
    "https://mail.google.com/",
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/gmail.send",
    "https://www.googleapis.com/auth/userinfo.email",
]


@dataclass(slots=True)
class AppLimits:
    """App-level limits handed to every session."""
    check_interval: int = DEFAULT_CHECK_INTERVAL_MINUTES  # minutes
    max_messages_per_folder: int = MAX_MESSAGES_PER_FOLDER
    download_attachments: bool = DOWNLOAD_ATTACHMENTS
    auto_mark_read: bool = False
    network_timeout: float = NETWORK_TIMEOUT_SECONDS

    @property
    def check_interval_seconds(self) -> float:
        return self.check_interval * 60.0

    def validate(self) -> None:
        """
        Fail fast on nonsensical limits.

        Raises:
            ConfigError: If a limit is zero or negative.
        """
        if self.check_interval <= 0:
            raise ConfigError("check_interval must be positive")
        if self.max_messages_per_folder <= 0:
            raise ConfigError("max_messages_per_folder must be positive")
        if self.network_timeout <= 0:
            raise ConfigError("network_timeout must be positive")


def load_env(env_file: Optional[str] = None) -> None:
    """
    Load environment variables and apply them over the defaults.

    Reads a .env file (if present) with python-dotenv, then overrides the
    data directory, database path, log level and OAuth client credentials.
    Creates the data directory.

    Args:
        env_file: Optional explicit path to a .env file.
    """
    global DATA_DIR, SQLITE_DB_PATH, SECRET_KEY_FILE, LOG_DIR, LOG_LEVEL
    global OAUTH_CLIENT_ID, OAUTH_CLIENT_SECRET

    load_dotenv(env_file)

    data_dir_env = os.environ.get("MAILSYNC_DATA_DIR")
    if data_dir_env:
        DATA_DIR = Path(data_dir_env)
        SQLITE_DB_PATH = DATA_DIR / "mailsync.db"
        SECRET_KEY_FILE = DATA_DIR / "secret.key"
        LOG_DIR = DATA_DIR / "logs"

    db_path_env = os.environ.get("MAILSYNC_DB_PATH")
    if db_path_env:
        SQLITE_DB_PATH = Path(db_path_env)

    LOG_LEVEL = os.environ.get("MAILSYNC_LOG_LEVEL", LOG_LEVEL)

    OAUTH_CLIENT_ID = os.environ.get("GOOGLE_CLIENT_ID")
    OAUTH_CLIENT_SECRET = os.environ.get("GOOGLE_CLIENT_SECRET")

    DATA_DIR.mkdir(parents=True, exist_ok=True)
    SQLITE_DB_PATH.parent.mkdir(parents=True, exist_ok=True)
