"""
OAuth2 token lifecycle: obtain, refresh and ensure_valid.

At most one refresh per account is in flight at any time. A caller that
arrives while a refresh is running awaits that refresh instead of starting
its own, since on some providers a second refresh invalidates the first
one's refresh token.
"""
import asyncio
import logging
import secrets
import webbrowser
from datetime import datetime
from typing import Callable, Dict, Optional
from urllib.parse import urlparse

from mailsync import config
from mailsync.auth.callback_server import OAuthCallbackServer
from mailsync.auth.credentials import Credential, build_credential
from mailsync.auth.oauth import GoogleOAuthProvider, OAuthProvider
from mailsync.auth.token_store import TokenStore
from mailsync.models import Account, AuthMethod, BackendKind, Token, utcnow
from mailsync.utils.aio import run_blocking
from mailsync.utils.errors import (
    ConfigError, OAuthStateMismatchError, ReauthRequiredError, TokenExchangeFailedError,
)

logger = logging.getLogger(__name__)


def _default_callback_factory(account: Account) -> OAuthCallbackServer:
    parsed = urlparse(account.oauth2.redirect_uri)
    return OAuthCallbackServer(port=parsed.port or config.OAUTH_REDIRECT_PORT,
                               path=parsed.path or config.OAUTH_CALLBACK_PATH)


class OAuth2Manager:
    """
    Issues and refreshes OAuth2 tokens for accounts.

    Args:
        token_store: Where tokens are persisted.
        provider_factory: Builds the OAuthProvider for an account.
        callback_factory: Opens the redirect listener for an account's obtain flow.
        open_url: Sends the user to the authorization URL.
        skew: Safety margin in seconds; a token is usable only while
            now < expires_at - skew.
        timeout: Timeout for each token endpoint call.
        callback_timeout: How long obtain() waits for the user.
        clock: Returns the current timezone-aware time.
    """

    def __init__(
        self,
        token_store: TokenStore,
        provider_factory: Optional[Callable[[Account], OAuthProvider]] = None,
        callback_factory: Optional[Callable[[Account], OAuthCallbackServer]] = None,
        open_url: Callable[[str], object] = webbrowser.open,
        skew: float = config.TOKEN_EXPIRY_SKEW_SECONDS,
        timeout: float = config.NETWORK_TIMEOUT_SECONDS,
        callback_timeout: float = config.OAUTH_CALLBACK_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.token_store = token_store
        self.provider_factory = provider_factory or (
            lambda account: GoogleOAuthProvider(account.oauth2, timeout=timeout)
        )
        self.callback_factory = callback_factory or _default_callback_factory
        self.open_url = open_url
        self.skew = skew
        self.timeout = timeout
        self.callback_timeout = callback_timeout
        self.clock = clock
        self._providers: Dict[str, OAuthProvider] = {}
        self._refreshing: Dict[str, asyncio.Task] = {}
        self._obtain_locks: Dict[str, asyncio.Lock] = {}

    def _provider(self, account: Account) -> OAuthProvider:
        if account.oauth2 is None:
            raise ConfigError(f"Account {account.id} has no OAuth2 configuration")
        provider = self._providers.get(account.id)
        if provider is None:
            provider = self.provider_factory(account)
            self._providers[account.id] = provider
        return provider

    def _current_token(self, account: Account) -> Optional[Token]:
        if account.token is None:
            account.token = self.token_store.load(account.id)
        return account.token

    def _store(self, account: Account, token: Token) -> None:
        self.token_store.save(account.id, token)
        account.token = token

    async def obtain(self, account: Account) -> Token:
        """
        Run the authorization-code flow and persist the resulting token.

        Raises:
            OAuthStateMismatchError: If the callback's state was not the one issued.
            TokenExchangeFailedError: If the user denied access or the code exchange failed.
            TransportError: If the callback never arrives or the endpoint is unreachable.
        """
        lock = self._obtain_locks.setdefault(account.id, asyncio.Lock())
        async with lock:
            provider = self._provider(account)
            state = secrets.token_urlsafe(32)
            listener = self.callback_factory(account)
            try:
                url = provider.get_authorization_url(state)
                logger.info(f"Starting OAuth2 sign-in for account {account.id}")
                self.open_url(url)
                result = await asyncio.to_thread(listener.wait_for_callback, self.callback_timeout)
            finally:
                listener.close()

            if result.error:
                raise TokenExchangeFailedError(
                    f"Authorization failed: {result.error} {result.error_description}".strip()
                )
            if not result.state or not secrets.compare_digest(result.state, state):
                logger.warning(f"OAuth2 callback for account {account.id} carried an unknown state")
                raise OAuthStateMismatchError("OAuth2 state parameter does not match the request")

            payload = await run_blocking(provider.exchange_code_for_tokens, result.code, timeout=self.timeout)
            token = Token.from_response(payload, self.clock())
            self._store(account, token)
            logger.info(f"Account {account.id} signed in, token valid until {token.expires_at.isoformat()}")
            return token

    async def refresh(self, account: Account) -> Token:
        """
        Exchange the stored refresh token for a new access token.

        Concurrent callers for the same account share one exchange.

        Raises:
            ReauthRequiredError: No refresh token, or the provider rejected it.
            TokenExchangeFailedError: Other provider-side failures.
            TransportError: Endpoint unreachable or timed out.
        """
        task = self._refreshing.get(account.id)
        if task is None:
            task = asyncio.ensure_future(self._refresh_once(account))
            self._refreshing[account.id] = task
            task.add_done_callback(lambda _t, key=account.id: self._refreshing.pop(key, None))
        # shield: one caller being cancelled must not cancel the shared exchange
        return await asyncio.shield(task)

    async def _refresh_once(self, account: Account) -> Token:
        current = self._current_token(account)
        if current is None or not current.refresh_token:
            raise ReauthRequiredError(f"Account {account.id} has no refresh token")
        provider = self._provider(account)
        logger.debug(f"Refreshing access token for account {account.id}")
        payload = await run_blocking(provider.refresh_tokens, current.refresh_token, timeout=self.timeout)
        token = Token.from_response(payload, self.clock(), current.refresh_token)
        self._store(account, token)
        return token

    async def ensure_valid(self, account: Account) -> Token:
        """
        Return a token usable for at least `skew` more seconds.

        The cached token is returned unchanged while it is usable; otherwise
        it is refreshed.

        Raises:
            ReauthRequiredError: The user has to sign in again.
            TransportError: The provider could not be reached; retry later.
        """
        token = self._current_token(account)
        if token is not None and token.is_usable(self.clock(), self.skew):
            return token
        if token is None:
            raise ReauthRequiredError(f"Account {account.id} has not been signed in")
        try:
            token = await self.refresh(account)
        except TokenExchangeFailedError as e:
            raise ReauthRequiredError(f"Token refresh rejected for account {account.id}: {e}") from e
        if not token.is_usable(self.clock(), self.skew):
            raise ReauthRequiredError(f"Provider issued an already expiring token for account {account.id}")
        return token

    def invalidate(self, account: Account) -> None:
        """
        Forget the current access token after a server rejected it.

        The refresh token is kept, so the next ensure_valid() performs a
        fresh refresh instead of handing out the rejected token again.
        """
        token = self._current_token(account)
        if token is None:
            return
        self._store(account, token.expired_copy())
        logger.info(f"Access token of account {account.id} invalidated")

    def requires_oauth(self, account: Account, protocol: str = "imap") -> bool:
        if account.backend is BackendKind.GMAIL_API:
            return True
        cfg = account.smtp if protocol == "smtp" else account.imap
        return cfg.auth_method is AuthMethod.OAUTH2

    async def credential_for(self, account: Account, protocol: str = "imap") -> Credential:
        """Build the credential for a protocol, making sure an OAuth2 token is usable first."""
        token = None
        if self.requires_oauth(account, protocol):
            token = await self.ensure_valid(account)
        return build_credential(account, token, protocol)
