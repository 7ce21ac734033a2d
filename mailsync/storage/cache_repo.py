"""
Local cache repository.

The cache is the single source of truth for the UI and the search index.
Reads are open to everyone; writes come from exactly two places:

- the sync engine, which applies one whole reconciliation pass for a folder
  (messages, flags, deletions, pruning and the new cursor) in a single
  transaction through apply_sync_pass();
- the outbound queue, where a local mutation (flag change, move, delete,
  send) is applied optimistically together with its queue entry.

Message bodies and attachment data are encrypted at rest. The search index
feed is notified only after the owning transaction has committed.
"""
import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Union

from mailsync.core.search import NullSearchIndex, SearchIndexSink
from mailsync.models import (
    SEEN, Attachment, EmailMessage, Folder, FolderType, OutboundKind,
    OutboundOperation, SearchDocument, SyncCursor, utcnow,
)
from mailsync.storage import db
from mailsync.storage.db import parse_datetime
from mailsync.storage.encryption import SecretBox
from mailsync.utils.errors import CacheError, DecryptionError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SyncPass:
    """Everything one reconciliation pass writes for a folder."""
    uidvalidity: int
    highest_uid: int
    synced_at: datetime
    reset_epoch: bool = False
    new_messages: List[EmailMessage] = field(default_factory=list)
    flag_updates: Dict[int, Set[str]] = field(default_factory=dict)
    deleted_uids: Set[int] = field(default_factory=set)
    pruned_uids: Set[int] = field(default_factory=set)


class CacheRepo:
    """
    Repository over the SQLite cache.

    Args:
        db_path: Path of the SQLite file (schema must exist, see db.init_db).
        secret_box: Encrypts bodies and attachment data.
        index_sink: Receives the search feed. Defaults to discarding it.
    """

    def __init__(self, db_path: Union[str, Path], secret_box: SecretBox,
                 index_sink: Optional[SearchIndexSink] = None):
        self.db_path = db_path
        self.secret_box = secret_box
        self.index_sink = index_sink or NullSearchIndex()

    # ========================================================================
    # Folders
    # ========================================================================

    def upsert_folder(self, folder: Folder) -> Folder:
        """
        Insert or update a folder's role and display name.

        The sync cursor is never touched here; it only moves with a sync pass.

        Returns:
            The stored folder with id and cursor populated.
        """
        with db.transaction(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO folders (account_id, role, server_name, local_name)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(account_id, server_name) DO UPDATE SET
                    role = excluded.role,
                    local_name = excluded.local_name
                """,
                (folder.account_id, folder.role.value, folder.server_name, folder.local_name),
            )
            row = conn.execute(
                "SELECT * FROM folders WHERE account_id = ? AND server_name = ?",
                (folder.account_id, folder.server_name),
            ).fetchone()
        return _row_to_folder(row)

    def list_folders(self, account_id: str) -> List[Folder]:
        """List an account's folders with message and unread counts."""
        with db.reading(self.db_path) as conn:
            rows = conn.execute(
                f"""
                SELECT f.*,
                    (SELECT COUNT(*) FROM messages m
                     WHERE m.folder_id = f.id AND m.is_deleted = 0) AS total_count,
                    (SELECT COUNT(*) FROM messages m
                     WHERE m.folder_id = f.id AND m.is_deleted = 0 AND {_UNSEEN_SQL}) AS unread_count
                FROM folders f
                WHERE f.account_id = ?
                ORDER BY f.id
                """,
                (SEEN, account_id),
            ).fetchall()
        return [_row_to_folder(row) for row in rows]

    def get_folder(self, folder_id: int) -> Optional[Folder]:
        with db.reading(self.db_path) as conn:
            row = conn.execute("SELECT * FROM folders WHERE id = ?", (folder_id,)).fetchone()
        return _row_to_folder(row) if row else None

    def get_folder_by_server_name(self, account_id: str, server_name: str) -> Optional[Folder]:
        with db.reading(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM folders WHERE account_id = ? AND server_name = ?",
                (account_id, server_name),
            ).fetchone()
        return _row_to_folder(row) if row else None

    def get_cursor(self, folder_id: int) -> SyncCursor:
        folder = self.get_folder(folder_id)
        if folder is None:
            raise CacheError(f"Unknown folder id {folder_id}")
        return folder.cursor

    # ========================================================================
    # Messages (read side)
    # ========================================================================

    def list_messages(
        self,
        account_id: str,
        folder_id: int,
        include_deleted: bool = False,
        limit: int = 100,
        offset: int = 0
    ) -> List[EmailMessage]:
        """
        List cached messages of a folder, newest UID first, without bodies.

        Args:
            account_id: The account.
            folder_id: The folder.
            include_deleted: Also return rows marked deleted.
            limit: Maximum number of messages.
            offset: Number of messages to skip.
        """
        sql = "SELECT * FROM messages WHERE account_id = ? AND folder_id = ?"
        if not include_deleted:
            sql += " AND is_deleted = 0"
        sql += " ORDER BY uid DESC LIMIT ? OFFSET ?"
        with db.reading(self.db_path) as conn:
            rows = conn.execute(sql, (account_id, folder_id, limit, offset)).fetchall()
        return [self._row_to_message(row) for row in rows]

    def get_message(self, account_id: str, folder_id: int, uid: int) -> Optional[EmailMessage]:
        """Get one message with its decrypted body and attachments."""
        with db.reading(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM messages WHERE account_id = ? AND folder_id = ? AND uid = ?",
                (account_id, folder_id, uid),
            ).fetchone()
            if row is None:
                return None
            attachment_rows = conn.execute(
                "SELECT * FROM attachments WHERE message_row_id = ? ORDER BY id",
                (row["id"],),
            ).fetchall()
        message = self._row_to_message(row, load_body=True)
        message.attachments = [self._row_to_attachment(a) for a in attachment_rows]
        return message

    def cached_flags(self, folder_id: int, uidvalidity: int) -> Dict[int, Set[str]]:
        """Flags of every live cached message of the folder's current epoch."""
        with db.reading(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT uid, flags FROM messages
                WHERE folder_id = ? AND uidvalidity = ? AND is_deleted = 0
                """,
                (folder_id, uidvalidity),
            ).fetchall()
        return {row["uid"]: _load_flags(row["flags"]) for row in rows}

    def cached_uids(self, folder_id: int, include_deleted: bool = True) -> Set[int]:
        sql = "SELECT uid FROM messages WHERE folder_id = ?"
        if not include_deleted:
            sql += " AND is_deleted = 0"
        with db.reading(self.db_path) as conn:
            rows = conn.execute(sql, (folder_id,)).fetchall()
        return {row["uid"] for row in rows}

    def count_messages(self, folder_id: int) -> int:
        with db.reading(self.db_path) as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM messages WHERE folder_id = ? AND is_deleted = 0",
                (folder_id,),
            ).fetchone()
        return row["n"]

    def unread_count(self, folder_id: int) -> int:
        with db.reading(self.db_path) as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS n FROM messages m WHERE m.folder_id = ? AND m.is_deleted = 0 AND {_UNSEEN_SQL}",
                (folder_id, SEEN),
            ).fetchone()
        return row["n"]

    # ========================================================================
    # Sync engine writes
    # ========================================================================

    def apply_sync_pass(self, account_id: str, folder_id: int, sync_pass: SyncPass) -> None:
        """
        Apply one reconciliation pass to one folder atomically.

        Order inside the transaction: epoch reset, new messages, flag updates,
        remote deletions, pruning, and finally the cursor. Any failure rolls
        back everything, so the cursor never runs ahead of stored data.

        Raises:
            CacheError: If the database rejects the pass. Nothing is applied.
        """
        tombstones: Set[int] = set()
        with db.transaction(self.db_path) as conn:
            current = conn.execute(
                "SELECT uidvalidity, highest_uid FROM folders WHERE id = ? AND account_id = ?",
                (folder_id, account_id),
            ).fetchone()
            if current is None:
                raise CacheError(f"Unknown folder id {folder_id} for account {account_id}")

            if sync_pass.reset_epoch:
                tombstones |= self._reset_folder_epoch(conn, account_id, folder_id)

            for message in sync_pass.new_messages:
                self._insert_message(conn, account_id, folder_id, sync_pass.uidvalidity, message)

            for uid, flags in sync_pass.flag_updates.items():
                conn.execute(
                    """
                    UPDATE messages SET flags = ?
                    WHERE folder_id = ? AND uidvalidity = ? AND uid = ?
                    """,
                    (_dump_flags(flags), folder_id, sync_pass.uidvalidity, uid),
                )

            for uid in sync_pass.deleted_uids:
                conn.execute(
                    """
                    UPDATE messages SET is_deleted = 1
                    WHERE folder_id = ? AND uidvalidity = ? AND uid = ?
                    """,
                    (folder_id, sync_pass.uidvalidity, uid),
                )
            tombstones |= sync_pass.deleted_uids

            if sync_pass.pruned_uids:
                self._delete_rows(conn, folder_id, sync_pass.pruned_uids)
                tombstones |= sync_pass.pruned_uids

            if sync_pass.reset_epoch or current["uidvalidity"] != sync_pass.uidvalidity:
                highest_uid = sync_pass.highest_uid
            else:
                # Never lower the cursor within an epoch
                highest_uid = max(current["highest_uid"] or 0, sync_pass.highest_uid)
            self._write_cursor(conn, folder_id, sync_pass.uidvalidity, highest_uid, sync_pass.synced_at)

        # Tombstones go out first, so a UID reused by a new epoch is indexed again
        updated = {m.uid for m in sync_pass.new_messages} | set(sync_pass.flag_updates)
        gone = sync_pass.deleted_uids | sync_pass.pruned_uids
        self._emit_feed(account_id, folder_id, updated - gone, tombstones)

    def _write_cursor(self, conn: sqlite3.Connection, folder_id: int, uidvalidity: int,
                      highest_uid: int, synced_at: datetime) -> None:
        conn.execute(
            "UPDATE folders SET uidvalidity = ?, highest_uid = ?, last_sync_at = ? WHERE id = ?",
            (uidvalidity, highest_uid, synced_at.isoformat(), folder_id),
        )

    def _reset_folder_epoch(self, conn: sqlite3.Connection, account_id: str, folder_id: int) -> Set[int]:
        """Discard every cached UID of the folder and the operations that target them."""
        uids = {row["uid"] for row in conn.execute(
            "SELECT uid FROM messages WHERE folder_id = ?", (folder_id,)
        )}
        conn.execute("DELETE FROM messages WHERE folder_id = ?", (folder_id,))
        dropped = conn.execute(
            "DELETE FROM outbound_ops WHERE account_id = ? AND folder_id = ? AND kind != ?",
            (account_id, folder_id, OutboundKind.SEND.value),
        ).rowcount
        if dropped:
            logger.warning(
                f"Dropped {dropped} queued operation(s) for folder {folder_id}: UIDVALIDITY changed"
            )
        conn.execute(
            "UPDATE folders SET uidvalidity = NULL, highest_uid = 0 WHERE id = ?",
            (folder_id,),
        )
        return uids

    def _insert_message(self, conn: sqlite3.Connection, account_id: str, folder_id: int,
                        uidvalidity: int, message: EmailMessage) -> None:
        body_plain = self.secret_box.encrypt_text(message.body_plain) if message.body_plain else None
        body_html = self.secret_box.encrypt_text(message.body_html) if message.body_html else None
        conn.execute(
            """
            INSERT INTO messages (
                account_id, folder_id, uidvalidity, uid, message_id, subject, sender,
                recipients, cc, sent_at, flags, body_plain, body_html, has_body,
                has_attachments, is_deleted
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0)
            ON CONFLICT(account_id, folder_id, uidvalidity, uid) DO UPDATE SET
                flags = excluded.flags,
                is_deleted = 0
            """,
            (
                account_id,
                folder_id,
                uidvalidity,
                message.uid,
                message.message_id,
                message.subject,
                message.sender,
                json.dumps(message.to),
                json.dumps(message.cc),
                message.date.isoformat() if message.date else None,
                _dump_flags(message.flags),
                body_plain,
                body_html,
                1 if message.has_body else 0,
                1 if message.attachments else 0,
            ),
        )
        if message.attachments:
            row_id = conn.execute(
                "SELECT id FROM messages WHERE folder_id = ? AND uidvalidity = ? AND uid = ?",
                (folder_id, uidvalidity, message.uid),
            ).fetchone()["id"]
            self._replace_attachments(conn, row_id, message.attachments)

    def _replace_attachments(self, conn: sqlite3.Connection, row_id: int,
                             attachments: Iterable[Attachment]) -> None:
        conn.execute("DELETE FROM attachments WHERE message_row_id = ?", (row_id,))
        for attachment in attachments:
            data = None
            if attachment.data:
                data = self.secret_box.encrypt_bytes(attachment.data).decode('ascii')
            conn.execute(
                """
                INSERT INTO attachments (message_row_id, filename, mime_type, size_bytes, data)
                VALUES (?, ?, ?, ?, ?)
                """,
                (row_id, attachment.filename, attachment.mime_type, attachment.size_bytes, data),
            )

    @staticmethod
    def _delete_rows(conn: sqlite3.Connection, folder_id: int, uids: Iterable[int]) -> None:
        conn.executemany(
            "DELETE FROM messages WHERE folder_id = ? AND uid = ?",
            [(folder_id, uid) for uid in uids],
        )

    def store_body(self, account_id: str, folder_id: int, uid: int, body_plain: str,
                   body_html: str, attachments: Optional[List[Attachment]] = None) -> None:
        """Store a lazily fetched body (and attachments) for a cached message."""
        with db.transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT id FROM messages WHERE account_id = ? AND folder_id = ? AND uid = ?",
                (account_id, folder_id, uid),
            ).fetchone()
            if row is None:
                raise CacheError(f"Message uid {uid} is not cached in folder {folder_id}")
            conn.execute(
                """
                UPDATE messages SET body_plain = ?, body_html = ?, has_body = 1, has_attachments = ?
                WHERE id = ?
                """,
                (
                    self.secret_box.encrypt_text(body_plain) if body_plain else None,
                    self.secret_box.encrypt_text(body_html) if body_html else None,
                    1 if attachments else 0,
                    row["id"],
                ),
            )
            if attachments is not None:
                self._replace_attachments(conn, row["id"], attachments)
        self._emit_feed(account_id, folder_id, {uid}, set())

    # ========================================================================
    # Outbound queue (local mutations)
    # ========================================================================

    def apply_local_flags(self, account_id: str, folder_id: int, uid: int,
                          add: Iterable[str] = (), remove: Iterable[str] = ()) -> OutboundOperation:
        """Change flags optimistically and queue the change for the server."""
        add, remove = set(add), set(remove)
        with db.transaction(self.db_path) as conn:
            folder, row = self._require_message(conn, account_id, folder_id, uid)
            flags = (_load_flags(row["flags"]) | add) - remove
            conn.execute("UPDATE messages SET flags = ? WHERE id = ?", (_dump_flags(flags), row["id"]))
            op = OutboundOperation(
                account_id=account_id, kind=OutboundKind.SET_FLAGS, folder_id=folder_id,
                server_name=folder["server_name"], uid=uid, add_flags=add, remove_flags=remove,
            )
            self._insert_op(conn, op)
        self._emit_feed(account_id, folder_id, {uid}, set())
        return op

    def queue_delete(self, account_id: str, folder_id: int, uid: int) -> OutboundOperation:
        """Hide a message locally and queue its deletion on the server."""
        with db.transaction(self.db_path) as conn:
            folder, row = self._require_message(conn, account_id, folder_id, uid)
            conn.execute("UPDATE messages SET is_deleted = 1 WHERE id = ?", (row["id"],))
            op = OutboundOperation(
                account_id=account_id, kind=OutboundKind.DELETE, folder_id=folder_id,
                server_name=folder["server_name"], uid=uid,
            )
            self._insert_op(conn, op)
        self._emit_feed(account_id, folder_id, set(), {uid})
        return op

    def queue_move(self, account_id: str, folder_id: int, uid: int,
                   dest_server_name: str) -> OutboundOperation:
        """Hide a message from its source folder and queue the move."""
        with db.transaction(self.db_path) as conn:
            folder, row = self._require_message(conn, account_id, folder_id, uid)
            conn.execute("UPDATE messages SET is_deleted = 1 WHERE id = ?", (row["id"],))
            op = OutboundOperation(
                account_id=account_id, kind=OutboundKind.MOVE, folder_id=folder_id,
                server_name=folder["server_name"], uid=uid, dest_server_name=dest_server_name,
            )
            self._insert_op(conn, op)
        self._emit_feed(account_id, folder_id, set(), {uid})
        return op

    def queue_send(self, account_id: str, message: EmailMessage) -> OutboundOperation:
        """Queue an outgoing message whose submission could not complete."""
        op = OutboundOperation(account_id=account_id, kind=OutboundKind.SEND, payload=message.to_payload())
        with db.transaction(self.db_path) as conn:
            self._insert_op(conn, op)
        return op

    def pending_ops(self, account_id: str) -> List[OutboundOperation]:
        """Queued operations of an account in the order they were made."""
        with db.reading(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM outbound_ops WHERE account_id = ? ORDER BY id",
                (account_id,),
            ).fetchall()
        return [self._row_to_op(row) for row in rows]

    def pending_uids(self, folder_id: int) -> Set[int]:
        """UIDs of a folder with an unacknowledged local change."""
        with db.reading(self.db_path) as conn:
            rows = conn.execute(
                "SELECT DISTINCT uid FROM outbound_ops WHERE folder_id = ? AND uid IS NOT NULL",
                (folder_id,),
            ).fetchall()
        return {row["uid"] for row in rows}

    def complete_op(self, op: OutboundOperation) -> None:
        """
        Clear an acknowledged operation.

        An acknowledged move or delete also removes the source row, so the
        next sync does not report the UID's disappearance as a remote delete.
        """
        with db.transaction(self.db_path) as conn:
            conn.execute("DELETE FROM outbound_ops WHERE id = ?", (op.id,))
            if op.kind in (OutboundKind.MOVE, OutboundKind.DELETE) and op.folder_id is not None:
                self._delete_rows(conn, op.folder_id, [op.uid])

    def drop_op(self, op: OutboundOperation, reason: str) -> None:
        """
        Give up on an operation the server can never apply.

        A dropped move or delete makes the message visible again, since it is
        still on the server.
        """
        restored = False
        with db.transaction(self.db_path) as conn:
            conn.execute("DELETE FROM outbound_ops WHERE id = ?", (op.id,))
            if op.kind in (OutboundKind.MOVE, OutboundKind.DELETE) and op.folder_id is not None:
                cursor = conn.execute(
                    "UPDATE messages SET is_deleted = 0 WHERE folder_id = ? AND uid = ? AND is_deleted = 1",
                    (op.folder_id, op.uid),
                )
                restored = cursor.rowcount > 0
        if restored:
            self._emit_feed(op.account_id, op.folder_id, {op.uid}, set())
        logger.warning(
            f"Dropped {op.kind.value} operation {op.id} for account {op.account_id} "
            f"(folder {op.server_name or '-'}, uid {op.uid}): {reason}"
        )

    def record_attempt(self, op: OutboundOperation, error: str) -> None:
        with db.transaction(self.db_path) as conn:
            conn.execute(
                "UPDATE outbound_ops SET attempts = attempts + 1, last_error = ? WHERE id = ?",
                (error, op.id),
            )
        op.attempts += 1
        op.last_error = error

    def delete_account_data(self, account_id: str) -> None:
        """Remove everything cached for an account."""
        with db.transaction(self.db_path) as conn:
            conn.execute("DELETE FROM outbound_ops WHERE account_id = ?", (account_id,))
            conn.execute("DELETE FROM messages WHERE account_id = ?", (account_id,))
            conn.execute("DELETE FROM folders WHERE account_id = ?", (account_id,))
            conn.execute("DELETE FROM search_documents WHERE account_id = ?", (account_id,))

    def _require_message(self, conn: sqlite3.Connection, account_id: str, folder_id: int, uid: int):
        folder = conn.execute(
            "SELECT * FROM folders WHERE id = ? AND account_id = ?", (folder_id, account_id)
        ).fetchone()
        if folder is None:
            raise CacheError(f"Unknown folder id {folder_id} for account {account_id}")
        row = conn.execute(
            "SELECT * FROM messages WHERE folder_id = ? AND uid = ? AND is_deleted = 0",
            (folder_id, uid),
        ).fetchone()
        if row is None:
            raise CacheError(f"Message uid {uid} is not cached in folder {folder['server_name']}")
        return folder, row

    def _insert_op(self, conn: sqlite3.Connection, op: OutboundOperation) -> None:
        op.created_at = op.created_at or utcnow()
        payload = self.secret_box.encrypt_json(op.payload) if op.payload is not None else None
        cursor = conn.execute(
            """
            INSERT INTO outbound_ops (
                account_id, kind, folder_id, server_name, uid, add_flags, remove_flags,
                dest_server_name, payload, attempts, last_error, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, NULL, ?)
            """,
            (
                op.account_id,
                op.kind.value,
                op.folder_id,
                op.server_name,
                op.uid,
                _dump_flags(op.add_flags),
                _dump_flags(op.remove_flags),
                op.dest_server_name,
                payload,
                op.created_at.isoformat(),
            ),
        )
        op.id = cursor.lastrowid

    # ========================================================================
    # Search feed
    # ========================================================================

    def _emit_feed(self, account_id: str, folder_id: int, updated: Set[int], removed: Set[int]) -> None:
        """Notify the index after commit. Index failures never undo cache writes."""
        try:
            for uid in sorted(removed):
                self.index_sink.tombstone(account_id, folder_id, uid)
            if updated:
                for doc in self._documents(account_id, folder_id, updated):
                    self.index_sink.index(doc)
        except Exception as e:
            logger.error(f"Search index update failed for folder {folder_id}: {e}")

    def _documents(self, account_id: str, folder_id: int, uids: Set[int]) -> List[SearchDocument]:
        with db.reading(self.db_path) as conn:
            placeholders = ",".join("?" for _ in uids)
            rows = conn.execute(
                f"""
                SELECT * FROM messages
                WHERE account_id = ? AND folder_id = ? AND is_deleted = 0 AND uid IN ({placeholders})
                ORDER BY uid
                """,
                (account_id, folder_id, *sorted(uids)),
            ).fetchall()
        docs = []
        for row in rows:
            message = self._row_to_message(row, load_body=True)
            docs.append(SearchDocument(
                account_id=account_id,
                folder_id=folder_id,
                uid=message.uid,
                subject=message.subject,
                sender=message.sender,
                body_text=message.body_plain,
                date=message.date,
            ))
        return docs

    # ========================================================================
    # Row conversion
    # ========================================================================

    def _row_to_message(self, row: sqlite3.Row, load_body: bool = False) -> EmailMessage:
        body_plain = ""
        body_html = ""
        has_body = bool(row["has_body"])
        if load_body:
            try:
                if row["body_plain"]:
                    body_plain = self.secret_box.decrypt_text(row["body_plain"])
                if row["body_html"]:
                    body_html = self.secret_box.decrypt_text(row["body_html"])
            except DecryptionError as e:
                # Treat as not downloaded; the body is fetched again on demand
                logger.warning(f"Cached body of uid {row['uid']} unreadable: {e}")
                body_plain, body_html, has_body = "", "", False
        return EmailMessage(
            id=row["id"],
            account_id=row["account_id"],
            folder_id=row["folder_id"],
            uid=row["uid"],
            uidvalidity=row["uidvalidity"],
            message_id=row["message_id"] or "",
            subject=row["subject"] or "",
            sender=row["sender"] or "",
            to=_load_list(row["recipients"]),
            cc=_load_list(row["cc"]),
            date=parse_datetime(row["sent_at"]),
            flags=_load_flags(row["flags"]),
            body_plain=body_plain,
            body_html=body_html,
            has_body=has_body,
            is_deleted=bool(row["is_deleted"]),
        )

    def _row_to_attachment(self, row: sqlite3.Row) -> Attachment:
        data = None
        if row["data"]:
            try:
                data = self.secret_box.decrypt_bytes(row["data"])
            except DecryptionError as e:
                logger.warning(f"Cached attachment {row['id']} unreadable: {e}")
        return Attachment(
            id=row["id"],
            filename=row["filename"],
            mime_type=row["mime_type"] or "",
            size_bytes=row["size_bytes"] or 0,
            data=data,
        )

    def _row_to_op(self, row: sqlite3.Row) -> OutboundOperation:
        payload = None
        if row["payload"]:
            payload = self.secret_box.decrypt_json(row["payload"])
        return OutboundOperation(
            id=row["id"],
            account_id=row["account_id"],
            kind=OutboundKind(row["kind"]),
            folder_id=row["folder_id"],
            server_name=row["server_name"] or "",
            uid=row["uid"],
            add_flags=_load_flags(row["add_flags"]),
            remove_flags=_load_flags(row["remove_flags"]),
            dest_server_name=row["dest_server_name"] or "",
            payload=payload,
            attempts=row["attempts"],
            last_error=row["last_error"],
            created_at=parse_datetime(row["created_at"]),
        )


# Flags are stored as a JSON array; json_each lets SQL test membership
_UNSEEN_SQL = "NOT EXISTS (SELECT 1 FROM json_each(m.flags) WHERE json_each.value = ?)"


def _row_to_folder(row: sqlite3.Row) -> Folder:
    keys = row.keys()
    return Folder(
        id=row["id"],
        account_id=row["account_id"],
        role=FolderType(row["role"]),
        server_name=row["server_name"],
        local_name=row["local_name"],
        uidvalidity=row["uidvalidity"],
        highest_uid=row["highest_uid"] or 0,
        last_sync_at=parse_datetime(row["last_sync_at"]),
        total_count=row["total_count"] if "total_count" in keys else 0,
        unread_count=row["unread_count"] if "unread_count" in keys else 0,
    )


def _dump_flags(flags: Iterable[str]) -> str:
    return json.dumps(sorted(flags))


def _load_flags(raw: Optional[str]) -> Set[str]:
    if not raw:
        return set()
    try:
        return set(json.loads(raw))
    except (json.JSONDecodeError, TypeError):
        return set()


def _load_list(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    try:
        return list(json.loads(raw))
    except (json.JSONDecodeError, TypeError):
        return []
