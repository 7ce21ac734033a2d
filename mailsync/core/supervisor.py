"""
Account supervisor.

Owns one AccountSession per configured account and one asyncio task per
enabled account. Sessions share nothing but the cache and the OAuth2
manager (and through it the token store), so one account's failure never
reaches another's task.
"""
import asyncio
import logging
from typing import Callable, Dict, Iterable, Optional

from mailsync.auth.oauth_manager import OAuth2Manager
from mailsync.config import AppLimits
from mailsync.core.search import SearchIndexSink
from mailsync.core.session import AccountSession
from mailsync.models import Account, SessionStatus
from mailsync.storage.cache_repo import CacheRepo
from mailsync.utils.errors import ConfigError

logger = logging.getLogger(__name__)

SessionFactory = Callable[..., AccountSession]


class AccountSupervisor:
    """
    Schedules periodic sync for every enabled account.

    Args:
        accounts: The configured accounts.
        cache: Shared local cache.
        oauth: Shared OAuth2 manager.
        limits: App-level limits.
        index_sink: Search feed consumer handed to every session.
        session_factory: Builds a session; defaults to AccountSession.
    """

    def __init__(
        self,
        accounts: Iterable[Account],
        cache: CacheRepo,
        oauth: OAuth2Manager,
        limits: AppLimits,
        index_sink: Optional[SearchIndexSink] = None,
        session_factory: Optional[SessionFactory] = None,
    ):
        self.cache = cache
        self.oauth = oauth
        self.limits = limits
        self.index_sink = index_sink
        self.session_factory = session_factory or AccountSession
        self._sessions: Dict[str, AccountSession] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._triggers: Dict[str, asyncio.Event] = {}
        self._running = False
        for account in accounts:
            self._register(account)

    def _register(self, account: Account) -> AccountSession:
        if account.id in self._sessions:
            raise ConfigError(f"Duplicate account id {account.id}")
        session = self.session_factory(account, self.cache, self.oauth, self.limits, self.index_sink)
        self._sessions[account.id] = session
        self._triggers[account.id] = asyncio.Event()
        return session

    def session(self, account_id: str) -> AccountSession:
        """
        Raises:
            ConfigError: No such account.
        """
        try:
            return self._sessions[account_id]
        except KeyError:
            raise ConfigError(f"Unknown account {account_id}") from None

    def status(self) -> Dict[str, SessionStatus]:
        return {account_id: session.status() for account_id, session in self._sessions.items()}

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> None:
        """Start one scheduling task per enabled account."""
        self._running = True
        for account_id, session in self._sessions.items():
            if session.account.enabled:
                self._start_task(account_id)
        logger.info(f"Supervisor started {len(self._tasks)} of {len(self._sessions)} account(s)")

    async def stop(self) -> None:
        """Cancel every task and disconnect every session."""
        self._running = False
        for account_id in list(self._tasks):
            await self._stop_task(account_id)
        for session in self._sessions.values():
            await session.disconnect()
        logger.info("Supervisor stopped")

    def _start_task(self, account_id: str) -> None:
        if account_id in self._tasks and not self._tasks[account_id].done():
            return
        session = self._sessions[account_id]
        trigger = self._triggers[account_id]
        self._tasks[account_id] = asyncio.create_task(
            self._run_session(session, trigger), name=f"mailsync-{account_id}"
        )

    async def _run_session(self, session: AccountSession, trigger: asyncio.Event) -> None:
        try:
            await session.run_forever(trigger)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # A bug in one session must not stop the others
            logger.error(f"Session of account {session.account_id} crashed: {e}", exc_info=True)
            session.last_error = str(e)

    async def _stop_task(self, account_id: str) -> None:
        task = self._tasks.pop(account_id, None)
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # ========================================================================
    # Per-account control
    # ========================================================================

    def request_sync(self, account_id: str) -> None:
        """Wake the account's task for an immediate sync."""
        self.session(account_id)
        self._triggers[account_id].set()

    async def enable_account(self, account_id: str) -> None:
        session = self.session(account_id)
        session.account.enabled = True
        if self._running:
            self._start_task(account_id)
        logger.info(f"Account {account_id} enabled")

    async def disable_account(self, account_id: str) -> None:
        """Stop scheduling the account and disconnect it. Its cache is kept."""
        session = self.session(account_id)
        session.account.enabled = False
        await self._stop_task(account_id)
        await session.disconnect()
        logger.info(f"Account {account_id} disabled")

    async def reauthenticate(self, account_id: str) -> None:
        """
        Run the sign-in flow for an account and resume its schedule.

        Raises:
            AuthError: Sign-in failed.
        """
        session = self.session(account_id)
        await session.reauthenticate()
        self._triggers[account_id].set()

    async def add_account(self, account: Account) -> AccountSession:
        account.validate()
        session = self._register(account)
        if self._running and account.enabled:
            self._start_task(account.id)
        logger.info(f"Account {account.id} added")
        return session

    async def remove_account(self, account_id: str, purge_cache: bool = True) -> None:
        """Stop and forget an account; its cached data is deleted unless told otherwise."""
        session = self.session(account_id)
        await self._stop_task(account_id)
        await session.disconnect()
        del self._sessions[account_id]
        del self._triggers[account_id]
        if purge_cache:
            self.cache.delete_account_data(account_id)
            self.oauth.token_store.clear(account_id)
        logger.info(f"Account {account_id} removed")
