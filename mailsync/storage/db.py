"""
SQLite database connection and schema management.

The cache and the token store share one SQLite file. Connections are opened
per logical unit of work; a unit that writes runs inside transaction() so
readers never observe it half-applied.
"""
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from datetime import datetime, timezone
from typing import Iterator, Optional, Union

from mailsync.utils.errors import CacheError

logger = logging.getLogger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS folders (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        account_id TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'custom',
        server_name TEXT NOT NULL,
        local_name TEXT NOT NULL,
        uidvalidity INTEGER,
        highest_uid INTEGER NOT NULL DEFAULT 0,
        last_sync_at TEXT,
        UNIQUE(account_id, server_name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        account_id TEXT NOT NULL,
        folder_id INTEGER NOT NULL,
        uidvalidity INTEGER NOT NULL,
        uid INTEGER NOT NULL,
        message_id TEXT,
        subject TEXT,
        sender TEXT,
        recipients TEXT,
        cc TEXT,
        sent_at TEXT,
        flags TEXT NOT NULL DEFAULT '[]',
        body_plain TEXT,
        body_html TEXT,
        has_body INTEGER NOT NULL DEFAULT 0,
        has_attachments INTEGER NOT NULL DEFAULT 0,
        is_deleted INTEGER NOT NULL DEFAULT 0,
        FOREIGN KEY (folder_id) REFERENCES folders(id) ON DELETE CASCADE,
        UNIQUE(account_id, folder_id, uidvalidity, uid)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS attachments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        message_row_id INTEGER NOT NULL,
        filename TEXT NOT NULL,
        mime_type TEXT,
        size_bytes INTEGER NOT NULL DEFAULT 0,
        data TEXT,
        FOREIGN KEY (message_row_id) REFERENCES messages(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS outbound_ops (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        account_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        folder_id INTEGER,
        server_name TEXT,
        uid INTEGER,
        add_flags TEXT NOT NULL DEFAULT '[]',
        remove_flags TEXT NOT NULL DEFAULT '[]',
        dest_server_name TEXT,
        payload TEXT,
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tokens (
        account_id TEXT PRIMARY KEY,
        encrypted_token_bundle TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS search_documents (
        account_id TEXT NOT NULL,
        folder_id INTEGER NOT NULL,
        uid INTEGER NOT NULL,
        subject TEXT,
        sender TEXT,
        body_text TEXT,
        sent_at TEXT,
        PRIMARY KEY (account_id, folder_id, uid)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_folders_account ON folders(account_id)",
    "CREATE INDEX IF NOT EXISTS idx_messages_folder_uid ON messages(folder_id, uid)",
    "CREATE INDEX IF NOT EXISTS idx_messages_sent_at ON messages(sent_at)",
    "CREATE INDEX IF NOT EXISTS idx_attachments_message ON attachments(message_row_id)",
    "CREATE INDEX IF NOT EXISTS idx_outbound_account ON outbound_ops(account_id, id)",
    "CREATE INDEX IF NOT EXISTS idx_search_subject ON search_documents(subject)",
    "CREATE INDEX IF NOT EXISTS idx_search_sender ON search_documents(sender)",
]


def connect(db_path: Union[str, Path]) -> sqlite3.Connection:
    """
    Open a connection to the database.

    Returns:
        A sqlite3.Connection in autocommit mode with row_factory set to
        sqlite3.Row. Writes that must be atomic go through transaction().
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        conn = sqlite3.connect(str(db_path), isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
    except sqlite3.Error as e:
        raise CacheError(f"Cannot open database {db_path}: {e}") from e
    return conn


def init_db(db_path: Union[str, Path]) -> None:
    """Create all tables and indexes if they don't exist."""
    conn = connect(db_path)
    try:
        for statement in SCHEMA:
            conn.execute(statement)
    except sqlite3.Error as e:
        raise CacheError(f"Cannot initialize database schema: {e}") from e
    finally:
        conn.close()
    logger.debug(f"Database schema ready at {db_path}")


@contextmanager
def transaction(db_path: Union[str, Path]) -> Iterator[sqlite3.Connection]:
    """
    Run a block as one atomic unit.

    Commits when the block finishes, rolls back on any exception.
    sqlite3 errors are re-raised as CacheError; other exceptions propagate
    unchanged after the rollback.
    """
    conn = connect(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    except sqlite3.Error as e:
        raise CacheError(f"Database transaction failed: {e}") from e
    finally:
        conn.close()


def parse_datetime(dt_str: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp stored by the cache; naive values are taken as UTC."""
    if not dt_str:
        return None
    try:
        parsed = datetime.fromisoformat(dt_str.replace('Z', '+00:00'))
    except (ValueError, AttributeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@contextmanager
def reading(db_path: Union[str, Path]) -> Iterator[sqlite3.Connection]:
    """Connection for read-only queries, with sqlite3 errors surfaced as CacheError."""
    conn = connect(db_path)
    try:
        yield conn
    except sqlite3.Error as e:
        raise CacheError(f"Database query failed: {e}") from e
    finally:
        conn.close()
