"""
Search index feed and cache-backed search.

The cache emits one SearchDocument per inserted or updated message and a
tombstone per removed message. Any object with index() and tombstone()
methods can consume that feed; CacheSearchIndex is the default, storing
documents in the search_documents table and matching them with SQL LIKE.
"""
import logging
from pathlib import Path
from typing import List, Optional, Protocol, Union

from mailsync.models import SearchDocument
from mailsync.storage import db

logger = logging.getLogger(__name__)


class SearchIndexSink(Protocol):
    def index(self, doc: SearchDocument) -> None:
        ...

    def tombstone(self, account_id: str, folder_id: int, uid: int) -> None:
        ...


class NullSearchIndex:
    """Discards the feed."""

    def index(self, doc: SearchDocument) -> None:
        pass

    def tombstone(self, account_id: str, folder_id: int, uid: int) -> None:
        pass


class CacheSearchIndex:
    """Stores indexed documents next to the cache and answers LIKE queries."""

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = db_path

    def index(self, doc: SearchDocument) -> None:
        with db.transaction(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO search_documents (account_id, folder_id, uid, subject, sender, body_text, sent_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(account_id, folder_id, uid) DO UPDATE SET
                    subject = excluded.subject,
                    sender = excluded.sender,
                    body_text = CASE WHEN excluded.body_text != '' THEN excluded.body_text
                                     ELSE search_documents.body_text END,
                    sent_at = excluded.sent_at
                """,
                (
                    doc.account_id, doc.folder_id, doc.uid, doc.subject, doc.sender,
                    doc.body_text or "", doc.date.isoformat() if doc.date else None,
                ),
            )

    def tombstone(self, account_id: str, folder_id: int, uid: int) -> None:
        with db.transaction(self.db_path) as conn:
            conn.execute(
                "DELETE FROM search_documents WHERE account_id = ? AND folder_id = ? AND uid = ?",
                (account_id, folder_id, uid),
            )

    def search(
        self,
        account_id: Optional[str] = None,
        query: str = "",
        folder_id: Optional[int] = None,
        limit: int = 50
    ) -> List[SearchDocument]:
        """
        Search indexed messages.

        Matches subject, sender and plain-text body with SQL LIKE.

        Args:
            account_id: Optional account filter.
            query: Search text. Empty returns everything matching the filters.
            folder_id: Optional folder filter.
            limit: Maximum number of results.

        Returns:
            Matching documents, newest first.
        """
        conditions = []
        params: list = []
        if account_id is not None:
            conditions.append("account_id = ?")
            params.append(account_id)
        if folder_id is not None:
            conditions.append("folder_id = ?")
            params.append(folder_id)
        if query and query.strip():
            term = f"%{query.strip()}%"
            conditions.append("(subject LIKE ? OR sender LIKE ? OR body_text LIKE ?)")
            params.extend([term, term, term])

        sql = "SELECT * FROM search_documents"
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY sent_at DESC, uid DESC LIMIT ?"
        params.append(limit)

        with db.reading(self.db_path) as conn:
            rows = conn.execute(sql, params).fetchall()

        return [
            SearchDocument(
                account_id=row["account_id"],
                folder_id=row["folder_id"],
                uid=row["uid"],
                subject=row["subject"] or "",
                sender=row["sender"] or "",
                body_text=row["body_text"] or "",
                date=db.parse_datetime(row["sent_at"]),
            )
            for row in rows
        ]
