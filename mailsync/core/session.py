"""
Account session: the per-account connection state machine.

A session owns one mailbox connection (IMAP or the Gmail API), runs sync
passes through the SyncManager, replays the outbound queue and decides how
each failure is handled:

- TransportError: ERROR -> RECONNECTING, retried after an exponential,
  jittered and capped backoff delay that resets on every READY.
- AuthError: ERROR, and the session waits for the user to re-authenticate.
  A rejected OAuth2 access token is invalidated first and retried once with
  a freshly refreshed token; the same credential is never retried.
- ProtocolError / CacheError: the operation is abandoned, the connection
  stays usable.
- ConfigError: ERROR until the account is corrected.

SMTP submission is not part of the state machine. Every send gets its own
short-lived connection and does not wait for the mailbox connection.
"""
import asyncio
import logging
import random
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Union

from mailsync import config
from mailsync.auth.oauth_manager import OAuth2Manager
from mailsync.config import AppLimits
from mailsync.core.folder_normalizer import FolderNormalizer
from mailsync.core.search import SearchIndexSink
from mailsync.core.sync_manager import SyncManager, SyncResult
from mailsync.models import (
    FLAGGED, SEEN, Account, BackendKind, EmailMessage, Folder, FolderType,
    OutboundKind, OutboundOperation, SessionState, SessionStatus, utcnow,
)
from mailsync.network.backend import AsyncBackend, MailBackend
from mailsync.network.gmail_api import GmailApiBackend
from mailsync.network.imap_backend import ImapSmtpBackend
from mailsync.storage.cache_repo import CacheRepo
from mailsync.utils.errors import (
    AuthError, CacheError, ConfigError, InvalidCredentialsError, MailSyncError,
    ProtocolError, TransportError,
)

logger = logging.getLogger(__name__)

StateListener = Callable[[str, SessionState, SessionState], None]

_ALLOWED_TRANSITIONS = {
    SessionState.DISCONNECTED: {SessionState.CONNECTING},
    SessionState.CONNECTING: {SessionState.AUTHENTICATING, SessionState.ERROR},
    SessionState.AUTHENTICATING: {SessionState.READY, SessionState.ERROR},
    SessionState.READY: {SessionState.SYNCING, SessionState.ERROR},
    SessionState.SYNCING: {SessionState.IDLE, SessionState.ERROR},
    SessionState.IDLE: {SessionState.SYNCING, SessionState.ERROR},
    SessionState.ERROR: {SessionState.RECONNECTING, SessionState.CONNECTING},
    SessionState.RECONNECTING: {SessionState.CONNECTING, SessionState.ERROR},
}


def create_backend(account: Account, limits: AppLimits) -> MailBackend:
    """Pick the backend variant configured for the account."""
    if account.backend is BackendKind.GMAIL_API:
        return GmailApiBackend(account, timeout=limits.network_timeout,
                               keep_attachment_data=limits.download_attachments)
    return ImapSmtpBackend(account, timeout=limits.network_timeout,
                           keep_attachment_data=limits.download_attachments)


class Backoff:
    """
    Exponential reconnect delay with jitter.

    Args:
        minimum: First delay in seconds.
        maximum: No delay exceeds this.
        factor: Growth per consecutive failure.
        jitter: Relative spread; 0.1 means +/-10%.
    """

    def __init__(self, minimum: float = config.BACKOFF_MIN_SECONDS,
                 maximum: float = config.BACKOFF_MAX_SECONDS,
                 factor: float = 2.0, jitter: float = config.BACKOFF_JITTER,
                 rand: Callable[[float, float], float] = random.uniform):
        self.minimum = minimum
        self.maximum = maximum
        self.factor = factor
        self.jitter = jitter
        self.rand = rand
        self.attempts = 0

    def next_delay(self) -> float:
        base = min(self.maximum, self.minimum * (self.factor ** self.attempts))
        self.attempts += 1
        spread = base * self.jitter
        return max(0.0, min(self.maximum, base + self.rand(-spread, spread)))

    def reset(self) -> None:
        self.attempts = 0


class AccountSession:
    """
    Connection state machine for one account.

    Args:
        account: The account this session serves.
        cache: Shared local cache.
        oauth: Shared OAuth2 manager; source of every credential.
        limits: App-level limits.
        index_sink: Search feed consumer.
        backend: Backend to use instead of the one the account configures.
        backoff: Reconnect delay policy.
        clock: Returns the current timezone-aware time.
    """

    def __init__(
        self,
        account: Account,
        cache: CacheRepo,
        oauth: OAuth2Manager,
        limits: AppLimits,
        index_sink: Optional[SearchIndexSink] = None,
        backend: Optional[MailBackend] = None,
        backoff: Optional[Backoff] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.account = account
        self.cache = cache
        self.oauth = oauth
        self.limits = limits
        self.backend = backend or create_backend(account, limits)
        self.remote = AsyncBackend(self.backend, limits.network_timeout)
        self.engine = SyncManager(cache, limits, index_sink, clock)
        self.backoff = backoff or Backoff()
        self.clock = clock

        self.state = SessionState.DISCONNECTED
        self.last_error: Optional[str] = None
        self.last_sync_at: Optional[datetime] = None
        self.needs_reauth = False
        self.config_error: Optional[str] = None
        self.retry_delay: Optional[float] = None

        self.normalizer = FolderNormalizer(account, mappings=self.backend.folder_mappings())
        self._sync_lock = asyncio.Lock()
        self._listeners: List[StateListener] = []
        self._auth_retries = 0
        self._pass_task: Optional[asyncio.Task] = None
        self._interrupted = False

    # ========================================================================
    # State
    # ========================================================================

    @property
    def account_id(self) -> str:
        return self.account.id

    @property
    def interval_seconds(self) -> float:
        minutes = self.account.check_interval or self.limits.check_interval
        return minutes * 60.0

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def _transition(self, new_state: SessionState) -> None:
        old_state = self.state
        if new_state is old_state:
            return
        # Disconnecting is always possible
        if new_state is not SessionState.DISCONNECTED and new_state not in _ALLOWED_TRANSITIONS[old_state]:
            raise RuntimeError(
                f"Account {self.account_id}: invalid transition {old_state.value} -> {new_state.value}"
            )
        self.state = new_state
        logger.debug(f"Account {self.account_id}: {old_state.value} -> {new_state.value}")
        for listener in list(self._listeners):
            try:
                listener(self.account_id, old_state, new_state)
            except Exception as e:
                logger.error(f"State listener failed for account {self.account_id}: {e}", exc_info=True)

    def status(self) -> SessionStatus:
        return SessionStatus(
            account_id=self.account_id,
            state=self.state,
            last_error=self.last_error,
            last_sync_at=self.last_sync_at,
            needs_reauth=self.needs_reauth,
            enabled=self.account.enabled,
        )

    # ========================================================================
    # Connection
    # ========================================================================

    async def connect(self) -> None:
        """
        Open and authenticate the mailbox connection.

        CONNECTING -> AUTHENTICATING -> READY. The failure is handled (see
        handle_failure) before it is re-raised.

        Raises:
            ConfigError: The account is malformed.
            AuthError: The credential was rejected or no usable token exists.
            TransportError: The server could not be reached.
        """
        if self.state.is_operative:
            return
        self._transition(SessionState.CONNECTING)
        try:
            self.account.validate()
            logger.info(f"Connecting account {self.account_id} ({self.account.backend.value})")
            await self.remote.open()
            self._transition(SessionState.AUTHENTICATING)
            credential = await self.oauth.credential_for(self.account, "imap")
            await self.remote.authenticate(credential)
        except MailSyncError as e:
            await self.handle_failure(e)
            raise
        except Exception as e:
            logger.error(f"Account {self.account_id}: connecting failed unexpectedly: {e}", exc_info=True)
            self._fail(e)
            await self._close_backend()
            raise

        self.backoff.reset()
        self.retry_delay = None
        self._auth_retries = 0
        self.needs_reauth = False
        self.config_error = None
        self.last_error = None
        self._transition(SessionState.READY)
        logger.info(f"Account {self.account_id} is ready")

    async def _close_backend(self) -> None:
        try:
            await self.remote.close()
        except MailSyncError as e:
            logger.debug(f"Closing connection of account {self.account_id} failed: {e}")

    async def disconnect(self) -> None:
        """
        Close the connection. Queued operations and the cache are kept.

        A sync pass in flight is cancelled first and ends with a TransportError
        for its caller.
        """
        task = self._pass_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            self._interrupted = True
            task.cancel()
            await asyncio.wait({task})
        if self.state is SessionState.DISCONNECTED:
            return
        await self._close_backend()
        self._transition(SessionState.DISCONNECTED)
        logger.info(f"Account {self.account_id} disconnected")

    async def reauthenticate(self) -> None:
        """
        Let the user sign in again, then reconnect.

        For OAuth2 accounts this runs the interactive authorization flow.
        Password accounts simply retry with their (corrected) configuration.
        """
        if self.oauth.requires_oauth(self.account, "imap") or self.oauth.requires_oauth(self.account, "smtp"):
            await self.oauth.obtain(self.account)
        self.needs_reauth = False
        self.config_error = None
        self._auth_retries = 0
        await self.disconnect()
        await self.connect()

    def _fail(self, exc: BaseException) -> None:
        self.last_error = str(exc) or exc.__class__.__name__
        if self.state is not SessionState.ERROR:
            self._transition(SessionState.ERROR)

    async def handle_failure(self, exc: MailSyncError) -> Optional[float]:
        """
        Apply the failure policy for `exc`.

        Returns:
            The delay before the next connection attempt, or None when the
            session either stays usable or must wait for the user.
        """
        if self.state is SessionState.DISCONNECTED:
            # The call was cut short by disconnect(); there is nothing to recover
            logger.debug(f"Account {self.account_id}: ignoring failure after disconnect: {exc}")
            return None

        if isinstance(exc, TransportError):
            logger.warning(f"Account {self.account_id}: connection failed: {exc}")
            self._fail(exc)
            await self._close_backend()
            self.retry_delay = self.backoff.next_delay()
            self._transition(SessionState.RECONNECTING)
            logger.info(f"Account {self.account_id}: reconnecting in {self.retry_delay:.1f}s")
            return self.retry_delay

        if isinstance(exc, AuthError):
            self._fail(exc)
            await self._close_backend()
            oauth = self.oauth.requires_oauth(self.account, "imap")
            if oauth and isinstance(exc, InvalidCredentialsError) and self._auth_retries == 0:
                # The server rejected a token we thought usable: refresh once
                self._auth_retries += 1
                self.oauth.invalidate(self.account)
                self.retry_delay = self.backoff.next_delay()
                self._transition(SessionState.RECONNECTING)
                logger.warning(f"Account {self.account_id}: access token rejected, refreshing: {exc}")
                return self.retry_delay
            if oauth:
                self.oauth.invalidate(self.account)
            self.needs_reauth = True
            self.retry_delay = None
            logger.error(f"Account {self.account_id}: authentication failed, sign-in required: {exc}")
            return None

        if isinstance(exc, ConfigError):
            self._fail(exc)
            await self._close_backend()
            self.config_error = str(exc)
            self.retry_delay = None
            logger.error(f"Account {self.account_id} is misconfigured: {exc}")
            return None

        # ProtocolError, CacheError: this operation is lost, the connection is not
        self.last_error = str(exc)
        logger.error(f"Account {self.account_id}: operation failed: {exc}")
        if self.state is SessionState.SYNCING:
            self._transition(SessionState.IDLE)
        elif not self.state.is_operative:
            self._fail(exc)
        return None

    # ========================================================================
    # Sync
    # ========================================================================

    async def sync(self, folders: Optional[Iterable[str]] = None) -> Dict[str, SyncResult]:
        """
        Run one sync pass. Passes of the same account never overlap.

        Replays the outbound queue, discovers and stores folders, then
        reconciles each one (Inbox first). A disconnect() during the pass
        cancels it; what was committed before stays in the cache.

        Args:
            folders: Server names to restrict the pass to.

        Returns:
            Per-folder results keyed by server name.

        Raises:
            TransportError: The session was disconnected during the pass.
            MailSyncError: After the failure has been handled.
        """
        async with self._sync_lock:
            self._interrupted = False
            self._pass_task = asyncio.create_task(self._run_pass(folders))
            try:
                return await self._pass_task
            except asyncio.CancelledError:
                if not self._interrupted:
                    raise
                logger.info(f"Account {self.account_id}: sync pass stopped by disconnect")
                raise TransportError(f"Account {self.account_id} was disconnected during sync") from None
            finally:
                self._pass_task = None

    async def _run_pass(self, folders: Optional[Iterable[str]]) -> Dict[str, SyncResult]:
        if not self.state.is_operative:
            await self.connect()
        self._transition(SessionState.SYNCING)
        try:
            await self._replay_pending()
            targets = await self._discover_folders(folders)
            results = await self.engine.sync_account(self.remote, targets)
        except MailSyncError as e:
            await self.handle_failure(e)
            raise
        except Exception as e:
            logger.error(f"Account {self.account_id}: sync pass failed unexpectedly: {e}", exc_info=True)
            self._fail(e)
            await self._close_backend()
            raise

        self.last_sync_at = self.clock()
        errors = [f"{name}: {err}" for name, result in results.items() for err in result.errors]
        self.last_error = "; ".join(errors) if errors else None
        self._transition(SessionState.IDLE)
        return results

    async def _discover_folders(self, folders: Optional[Iterable[str]]) -> List[Folder]:
        remote_folders = await self.remote.list_folders()
        self.normalizer = FolderNormalizer(self.account, remote_folders, self.backend.folder_mappings())
        targets = self.normalizer.sync_targets(remote_folders)
        if folders is not None:
            wanted = list(folders)
            chosen = {f.server_name for f in targets}
            available = {f.server_name for f in remote_folders if f.selectable}
            targets = [f for f in targets if f.server_name in wanted]
            for name in wanted:
                if name not in chosen and name in available:
                    targets.append(self.normalizer.to_folder(name))
        return [self.cache.upsert_folder(folder) for folder in targets]

    async def _replay_pending(self) -> int:
        applied = 0
        for op in self.cache.pending_ops(self.account_id):
            try:
                await self._apply_op(op)
            except ProtocolError as e:
                # Expunged or otherwise unappliable: retrying would never succeed
                self.cache.drop_op(op, str(e))
                continue
            except (TransportError, AuthError) as e:
                self.cache.record_attempt(op, str(e))
                raise
            self.cache.complete_op(op)
            applied += 1
        if applied:
            logger.info(f"Account {self.account_id}: replayed {applied} queued operation(s)")
        return applied

    async def replay_outbound(self) -> int:
        """
        Replay queued local changes in the order they were made.

        An acknowledged operation is cleared. One the server refuses is
        dropped and logged. A transport or auth failure stops the replay and
        leaves the remaining operations queued.

        Returns:
            Number of operations acknowledged by the server.
        """
        async with self._sync_lock:
            if not self.state.is_operative:
                await self.connect()
            try:
                return await self._replay_pending()
            except MailSyncError as e:
                await self.handle_failure(e)
                raise

    async def _apply_op(self, op: OutboundOperation) -> None:
        if op.kind is OutboundKind.SET_FLAGS:
            await self.remote.store_flags(op.server_name, op.uid, op.add_flags, op.remove_flags)
        elif op.kind is OutboundKind.MOVE:
            await self.remote.move_message(op.server_name, op.uid, op.dest_server_name)
        elif op.kind is OutboundKind.DELETE:
            await self.remote.delete_message(op.server_name, op.uid)
        elif op.kind is OutboundKind.SEND:
            credential = await self.oauth.credential_for(self.account, "smtp")
            await self.remote.submit_message(EmailMessage.from_payload(op.payload or {}), credential)

    # ========================================================================
    # Local changes
    # ========================================================================

    async def _after_local_change(self) -> None:
        # Push right away when connected and not busy; otherwise the next sync does
        if not self.state.is_operative or self._sync_lock.locked():
            return
        try:
            await self.replay_outbound()
        except MailSyncError as e:
            logger.info(f"Account {self.account_id}: change stays queued: {e}")

    async def set_flags(self, folder_id: int, uid: int, add: Iterable[str] = (),
                        remove: Iterable[str] = ()) -> OutboundOperation:
        op = self.cache.apply_local_flags(self.account_id, folder_id, uid, add, remove)
        await self._after_local_change()
        return op

    async def mark_read(self, folder_id: int, uid: int) -> OutboundOperation:
        return await self.set_flags(folder_id, uid, add={SEEN})

    async def mark_unread(self, folder_id: int, uid: int) -> OutboundOperation:
        return await self.set_flags(folder_id, uid, remove={SEEN})

    async def set_flagged(self, folder_id: int, uid: int, flagged: bool = True) -> OutboundOperation:
        if flagged:
            return await self.set_flags(folder_id, uid, add={FLAGGED})
        return await self.set_flags(folder_id, uid, remove={FLAGGED})

    async def delete_message(self, folder_id: int, uid: int) -> OutboundOperation:
        op = self.cache.queue_delete(self.account_id, folder_id, uid)
        await self._after_local_change()
        return op

    async def move_message(self, folder_id: int, uid: int,
                           destination: Union[FolderType, str]) -> OutboundOperation:
        """
        Move a message to another folder.

        Args:
            destination: A canonical role or a server folder name.

        Raises:
            FolderNotConfiguredError: The role has no folder on this account.
        """
        if isinstance(destination, FolderType):
            destination = self.normalizer.server_name(destination)
        op = self.cache.queue_move(self.account_id, folder_id, uid, destination)
        await self._after_local_change()
        return op

    async def send_message(self, message: EmailMessage) -> bool:
        """
        Submit a message over its own short-lived connection.

        Runs regardless of the mailbox connection state. A transport failure
        queues the message for replay.

        Returns:
            True if the server accepted it now, False if it was queued.

        Raises:
            AuthError: The user has to sign in again.
            ProtocolError: The server refused the message.
        """
        if not message.sender:
            message.sender = self.account.email
        try:
            credential = await self.oauth.credential_for(self.account, "smtp")
            await self.remote.submit_message(message, credential)
        except TransportError as e:
            logger.warning(f"Account {self.account_id}: send failed, message queued: {e}")
            self.cache.queue_send(self.account_id, message)
            return False
        return True

    async def fetch_body(self, folder_id: int, uid: int) -> EmailMessage:
        """
        Return a cached message with its body, downloading it if needed.

        Raises:
            CacheError: The message is not cached.
            TransportError: The body is not cached and the account is offline.
        """
        message = self.cache.get_message(self.account_id, folder_id, uid)
        if message is None:
            raise CacheError(f"Message uid {uid} is not cached in folder {folder_id}")
        if message.has_body:
            return message
        folder = self.cache.get_folder(folder_id)
        if folder is None:
            raise CacheError(f"Unknown folder id {folder_id}")
        async with self._sync_lock:
            if not self.state.is_operative:
                raise TransportError(f"Account {self.account_id} is not connected")
            try:
                message = await self.engine.fetch_and_cache_body(self.remote, folder, uid)
            except (TransportError, AuthError) as e:
                await self.handle_failure(e)
                raise
        if self.limits.auto_mark_read and not message.is_read:
            await self.mark_read(folder_id, uid)
        return message

    # ========================================================================
    # Scheduling
    # ========================================================================

    async def run_forever(self, trigger: asyncio.Event) -> None:
        """
        Sync every `interval_seconds`, or earlier when `trigger` is set.

        After a transport failure the next attempt comes after the backoff
        delay instead. While sign-in is required or the account is
        misconfigured, only the trigger wakes the loop. Any other exception
        is retried after the backoff delay. Runs until cancelled.
        """
        while True:
            if self.needs_reauth:
                await trigger.wait()
                trigger.clear()
                continue
            if self.config_error:
                await trigger.wait()
                trigger.clear()
                self.config_error = None
            delay = self.interval_seconds
            try:
                await self.sync()
            except MailSyncError:
                if self.state is SessionState.RECONNECTING and self.retry_delay is not None:
                    delay = self.retry_delay
                elif self.needs_reauth or self.config_error:
                    continue
            except Exception as e:
                # Already logged and the session is in ERROR; keep the schedule alive
                self.last_error = str(e) or e.__class__.__name__
                delay = self.backoff.next_delay()
                logger.warning(f"Account {self.account_id}: next attempt in {delay:.1f}s")
            try:
                await asyncio.wait_for(trigger.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
            trigger.clear()
