"""
Synchronization manager.

This module reconciles one remote folder at a time with the local cache.
A pass reads the server state, computes the difference against the folder's
sync cursor and the cached messages, and hands it to the cache as
SyncPass commits. Each commit is atomic and moves the cursor only as far as
the messages it stores.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set

from mailsync.config import AppLimits
from mailsync.core.search import SearchIndexSink
from mailsync.models import ROLE_SYNC_ORDER, EmailMessage, Folder, utcnow
from mailsync.network.backend import AsyncBackend
from mailsync.storage.cache_repo import CacheRepo, SyncPass
from mailsync.utils.errors import CacheError, ConfigError, ProtocolError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SyncResult:
    """What one folder pass changed."""
    server_name: str
    new_uids: Set[int] = field(default_factory=set)
    updated_uids: Set[int] = field(default_factory=set)
    deleted_uids: Set[int] = field(default_factory=set)
    pruned_uids: Set[int] = field(default_factory=set)
    epoch_reset: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.epoch_reset or self.new_uids or self.updated_uids
                    or self.deleted_uids or self.pruned_uids)


def newest_uids(uids: Iterable[int], limit: int) -> Set[int]:
    """The `limit` highest UIDs of `uids`."""
    return set(sorted(uids, reverse=True)[:limit])


def chunks(items: List[int], size: Optional[int]) -> List[List[int]]:
    """Split `items` into lists of at most `size`; None keeps them whole."""
    if not items:
        return []
    if not size:
        return [list(items)]
    return [items[i:i + size] for i in range(0, len(items), size)]


class SyncManager:
    """
    Reconciles remote folders with the local cache.

    The manager holds no connection and no per-account state; the session
    passes in its backend for every call and serializes calls per account.

    Args:
        cache: The local cache repository.
        limits: App-level limits (window size, eager body download).
        index_sink: Search feed consumer; the cache emits the feed, this is
            kept so callers can inspect or replace it.
        clock: Returns the current timezone-aware time.
    """

    def __init__(self, cache: CacheRepo, limits: AppLimits,
                 index_sink: Optional[SearchIndexSink] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.cache = cache
        self.limits = limits
        self.index_sink = index_sink
        if index_sink is not None:
            cache.index_sink = index_sink
        self.clock = clock

    async def sync_folder(self, remote: AsyncBackend, folder: Folder) -> SyncResult:
        """
        Run one reconciliation pass for a folder.

        1. Select the folder. A UIDVALIDITY different from the cursor's
           discards every cached UID of the folder (full resync).
        2. New UIDs are those above the cursor, bounded to the
           `max_messages_per_folder` highest.
        3. New messages are fetched (headers, plus bodies when configured)
           in ascending batches of the backend's `fetch_batch_size`.
        4. Flags of cached UIDs still on the server are overwritten by the
           server's, except for UIDs with a queued local change.
        5. Cached UIDs the server no longer reports are marked deleted.
        6. Each batch commits in its own transaction together with a cursor
           at the batch's highest UID. The first commit also carries the
           epoch reset, flag updates and deletions; the last one carries
           window pruning. Without new messages everything is one commit.

        Args:
            remote: The connected backend.
            folder: The cached folder (must have an id).

        Returns:
            SyncResult describing the committed changes.

        Raises:
            TransportError: The connection failed; batches committed before
                the failure are kept.
            ProtocolError: The server answered unexpectedly; earlier batches are kept.
            CacheError: A batch could not be stored; earlier batches are kept.
        """
        if folder.id is None:
            raise CacheError(f"Folder {folder.server_name} has not been stored yet")
        limit = self.limits.max_messages_per_folder
        name = folder.server_name

        status = await remote.select_folder(name)
        cursor = self.cache.get_cursor(folder.id)
        epoch_reset = cursor.uidvalidity is not None and cursor.uidvalidity != status.uidvalidity
        if epoch_reset:
            logger.warning(
                f"UIDVALIDITY of {folder.account_id}/{name} changed "
                f"({cursor.uidvalidity} -> {status.uidvalidity}), resyncing folder"
            )

        if epoch_reset or cursor.uidvalidity is None:
            since_uid = 0
            cached: Dict[int, Set[str]] = {}
        else:
            since_uid = cursor.highest_uid
            cached = self.cache.cached_flags(folder.id, status.uidvalidity)

        server_uids = await remote.search_uids(name)

        # New messages above the cursor, newest first when over the limit
        candidates = [uid for uid in server_uids if uid > since_uid and uid not in cached]
        new_uids = newest_uids(candidates, limit)
        if len(candidates) > len(new_uids):
            logger.info(
                f"{folder.account_id}/{name}: {len(candidates)} new messages, "
                f"fetching the {len(new_uids)} most recent"
            )

        # Flags of messages we already have
        pending = self.cache.pending_uids(folder.id) if cached else set()
        present = (set(cached) & server_uids) - pending
        flag_updates: Dict[int, Set[str]] = {}
        for chunk in chunks(sorted(present), remote.flag_batch_size):
            remote_flags = await remote.fetch_flags(name, chunk)
            for uid, flags in remote_flags.items():
                if uid in cached and flags != cached[uid]:
                    flag_updates[uid] = set(flags)

        deleted_uids = set(cached) - server_uids
        result = SyncResult(
            server_name=name,
            updated_uids=set(flag_updates),
            deleted_uids=deleted_uids,
            epoch_reset=epoch_reset,
        )

        # Oldest batch first; each batch commits with a cursor at its highest UID,
        # so an interrupted first sync resumes where it stopped
        batches = chunks(sorted(new_uids), remote.fetch_batch_size) or [[]]
        live = set(cached) - deleted_uids
        highest_uid = since_uid
        for index, batch in enumerate(batches):
            first, last = index == 0, index == len(batches) - 1
            new_messages: List[EmailMessage] = []
            if batch:
                new_messages = await remote.fetch_messages(
                    name, batch, with_body=self.limits.download_attachments,
                )
                for message in new_messages:
                    message.uidvalidity = status.uidvalidity
                highest_uid = max(batch)
            live |= {m.uid for m in new_messages}
            # New UIDs are the highest, so only cached rows fall out of the window
            pruned_uids = (live - newest_uids(live, limit)) if last else set()
            sync_pass = SyncPass(
                uidvalidity=status.uidvalidity,
                highest_uid=highest_uid,
                synced_at=self.clock(),
                reset_epoch=epoch_reset and first,
                new_messages=[m for m in new_messages if m.uid not in pruned_uids],
                flag_updates={uid: f for uid, f in flag_updates.items()
                              if first and uid not in pruned_uids},
                deleted_uids=deleted_uids if first else set(),
                pruned_uids=pruned_uids,
            )
            self.cache.apply_sync_pass(folder.account_id, folder.id, sync_pass)
            result.new_uids |= {m.uid for m in sync_pass.new_messages}
            result.pruned_uids |= pruned_uids
            if len(batches) > 1:
                logger.debug(f"{folder.account_id}/{name}: batch {index + 1}/{len(batches)} stored")

        result.updated_uids -= result.pruned_uids
        if result.has_changes:
            logger.info(
                f"Synced {folder.account_id}/{name}: {len(result.new_uids)} new, "
                f"{len(result.updated_uids)} updated, {len(result.deleted_uids)} deleted, "
                f"{len(result.pruned_uids)} pruned; cursor ({highest_uid}, {status.uidvalidity})"
            )
        else:
            logger.debug(f"{folder.account_id}/{name} is up to date")
        return result

    async def sync_account(self, remote: AsyncBackend, folders: Iterable[Folder]) -> Dict[str, SyncResult]:
        """
        Synchronize several folders of one account, Inbox first.

        A ProtocolError, CacheError or ConfigError in one folder is logged and
        recorded in that folder's result; the remaining folders still sync.

        Raises:
            TransportError: The connection failed; later folders are skipped.
            AuthError: The server rejected the session.
        """
        ordered = sorted(folders, key=lambda f: ROLE_SYNC_ORDER.index(f.role))
        results: Dict[str, SyncResult] = {}
        for folder in ordered:
            try:
                results[folder.server_name] = await self.sync_folder(remote, folder)
            except (ProtocolError, CacheError, ConfigError) as e:
                logger.error(f"Sync of {folder.account_id}/{folder.server_name} failed: {e}")
                results[folder.server_name] = SyncResult(server_name=folder.server_name, errors=[str(e)])
        return results

    async def fetch_and_cache_body(self, remote: AsyncBackend, folder: Folder, uid: int) -> EmailMessage:
        """
        Download a message body on demand and store it in the cache.

        Returns:
            The cached message with body and attachments.

        Raises:
            MessageNotFoundError: The server no longer has the message.
            CacheError: The message is not cached.
        """
        body_plain, body_html, attachments = await remote.fetch_body(folder.server_name, uid)
        self.cache.store_body(folder.account_id, folder.id, uid, body_plain, body_html, attachments)
        message = self.cache.get_message(folder.account_id, folder.id, uid)
        if message is None:
            raise CacheError(f"Message uid {uid} disappeared from {folder.server_name}")
        return message
