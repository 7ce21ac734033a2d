"""
OAuth2 providers.

An OAuthProvider builds the authorization URL and talks to the provider's
token endpoint. Calls are blocking (requests); the lifecycle manager runs
them off the event loop with a timeout.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import requests

from mailsync import config
from mailsync.models import OAuth2Config
from mailsync.utils.errors import ReauthRequiredError, TokenExchangeFailedError, TransportError

logger = logging.getLogger(__name__)

# Error codes meaning the refresh token itself is no longer any good
_REAUTH_ERRORS = {"invalid_grant", "invalid_client", "unauthorized_client"}


class OAuthProvider(ABC):
    """Abstract base class for OAuth2 providers."""

    @abstractmethod
    def get_authorization_url(self, state: str) -> str:
        """
        Generate the authorization URL for the authorization-code flow.

        Args:
            state: CSRF state nonce echoed back on the redirect.
        """
        pass

    @abstractmethod
    def exchange_code_for_tokens(self, code: str) -> Dict[str, Any]:
        """
        Exchange an authorization code at the token endpoint.

        Returns:
            The token endpoint's JSON response (access_token, expires_in, refresh_token).

        Raises:
            TokenExchangeFailedError: If the provider rejects the code.
            TransportError: If the endpoint cannot be reached.
        """
        pass

    @abstractmethod
    def refresh_tokens(self, refresh_token: str) -> Dict[str, Any]:
        """
        Exchange a refresh token for a new access token.

        Raises:
            ReauthRequiredError: If the provider rejects the refresh token.
            TokenExchangeFailedError: For any other provider-side failure.
            TransportError: If the endpoint cannot be reached.
        """
        pass


def _json_object(response: requests.Response, what: str) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError as e:
        raise TokenExchangeFailedError(f"{what} is not JSON") from e
    if not isinstance(body, dict):
        raise TokenExchangeFailedError(f"{what} is not a JSON object")
    return body


class GoogleOAuthProvider(OAuthProvider):
    """
    OAuth2 provider for Google accounts (installed-app flow).

    Args:
        oauth: The account's client configuration.
        session: requests session to use; a new one by default.
        timeout: Per-request timeout in seconds.
    """

    AUTHORIZATION_BASE_URL = "https://accounts.google.com/o/oauth2/auth"
    TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
    USERINFO_ENDPOINT = "https://www.googleapis.com/oauth2/v2/userinfo"
    TOKENINFO_ENDPOINT = "https://www.googleapis.com/oauth2/v1/tokeninfo"

    def __init__(self, oauth: OAuth2Config, session: Optional[requests.Session] = None,
                 timeout: float = config.NETWORK_TIMEOUT_SECONDS):
        self.client_id = oauth.client_id or config.OAUTH_CLIENT_ID
        self.client_secret = oauth.client_secret or config.OAUTH_CLIENT_SECRET
        self.redirect_uri = oauth.redirect_uri
        self.scopes: List[str] = list(oauth.scopes)
        self.session = session or requests.Session()
        self.timeout = timeout

    def get_authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(self.scopes),
            "response_type": "code",
            "access_type": "offline",  # required to get a refresh token
            "prompt": "consent",
            "state": state,
        }
        return f"{self.AUTHORIZATION_BASE_URL}?{urlencode(params)}"

    def exchange_code_for_tokens(self, code: str) -> Dict[str, Any]:
        payload = self._post_token({
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
            "redirect_uri": self.redirect_uri,
            "grant_type": "authorization_code",
        }, refreshing=False)
        if "access_token" not in payload:
            raise TokenExchangeFailedError("Token response did not contain an access token")
        return payload

    def refresh_tokens(self, refresh_token: str) -> Dict[str, Any]:
        payload = self._post_token({
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }, refreshing=True)
        if "access_token" not in payload:
            raise TokenExchangeFailedError("Refresh response did not contain an access token")
        return payload

    def fetch_user_info(self, access_token: str) -> Dict[str, Any]:
        """Fetch the signed-in user's profile (email, name)."""
        response = self._get(self.USERINFO_ENDPOINT, headers={"Authorization": f"Bearer {access_token}"})
        if response.status_code != 200:
            raise TokenExchangeFailedError(f"User info request failed: HTTP {response.status_code}")
        return _json_object(response, "User info response")

    def validate_token(self, access_token: str) -> bool:
        """Ask the provider whether an access token is still accepted."""
        response = self._get(self.TOKENINFO_ENDPOINT, params={"access_token": access_token})
        return response.status_code == 200

    def _get(self, url: str, **kwargs) -> requests.Response:
        try:
            return self.session.get(url, timeout=self.timeout, **kwargs)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise TransportError(f"Cannot reach {url}: {e}") from e

    def _post_token(self, data: Dict[str, str], refreshing: bool) -> Dict[str, Any]:
        try:
            response = self.session.post(self.TOKEN_ENDPOINT, data=data, timeout=self.timeout)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise TransportError(f"Token endpoint unreachable: {e}") from e
        except requests.exceptions.RequestException as e:
            raise TokenExchangeFailedError(f"Token request failed: {e}") from e

        if response.status_code == 200:
            return _json_object(response, "Token response")

        error_code = ""
        try:
            body = response.json()
            error_code = body.get("error", "") if isinstance(body, dict) else ""
        except ValueError:
            body = response.text
        logger.warning(f"Token endpoint returned HTTP {response.status_code} ({error_code or 'no error code'})")

        if refreshing and response.status_code in (400, 401) and error_code in _REAUTH_ERRORS:
            raise ReauthRequiredError(f"Refresh token rejected: {error_code}")
        if response.status_code >= 500:
            raise TransportError(f"Token endpoint unavailable: HTTP {response.status_code}")
        raise TokenExchangeFailedError(
            f"Token exchange failed: HTTP {response.status_code} {error_code}".strip()
        )
