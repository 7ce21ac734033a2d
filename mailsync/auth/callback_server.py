"""
Local listener for the OAuth2 redirect.

The browser is sent back to http://localhost:<port>/oauth/callback with
`code` and `state` (or `error`) in the query string. The server answers with
a small HTML page and hands the parameters to whoever is waiting.
"""
import http.server
import logging
import socketserver
import threading
import time
import urllib.parse
from dataclasses import dataclass
from typing import Optional

from mailsync import config
from mailsync.utils.errors import TransportError

logger = logging.getLogger(__name__)

_SUCCESS_PAGE = (
    b'<html><head><title>Authentication Successful</title></head>'
    b'<body style="font-family: Arial, sans-serif; text-align: center; padding: 50px;">'
    b'<h1 style="color: #4caf50;">Authentication Successful!</h1>'
    b'<p>You can close this window.</p></body></html>'
)
_FAILURE_PAGE = (
    b'<html><head><title>Authentication Failed</title></head>'
    b'<body style="font-family: Arial, sans-serif; text-align: center; padding: 50px;">'
    b'<h1 style="color: #d32f2f;">Authentication Failed</h1>'
    b'<p>You can close this window and try again.</p></body></html>'
)


@dataclass(slots=True)
class CallbackResult:
    code: Optional[str] = None
    state: Optional[str] = None
    error: Optional[str] = None
    error_description: str = ""


class _ThreadedTCPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    allow_reuse_address = True
    daemon_threads = True


class OAuthCallbackServer:
    """
    One-shot redirect listener.

    Args:
        port: Port to bind on localhost. 0 picks a free port.
        path: Callback path.
        host: Interface to bind.
    """

    def __init__(self, port: int = config.OAUTH_REDIRECT_PORT,
                 path: str = config.OAUTH_CALLBACK_PATH, host: str = "127.0.0.1"):
        self.path = path
        self._result: Optional[CallbackResult] = None
        self._received = threading.Event()

        owner = self

        class CallbackHandler(http.server.BaseHTTPRequestHandler):
            def log_message(self, format, *args):
                logger.debug("callback server: " + format % args)

            def do_GET(self):
                parsed = urllib.parse.urlparse(self.path)
                if parsed.path != owner.path:
                    self.send_response(204 if parsed.path == "/favicon.ico" else 404)
                    self.end_headers()
                    return

                params = urllib.parse.parse_qs(parsed.query)
                result = CallbackResult(
                    code=params.get("code", [None])[0],
                    state=params.get("state", [None])[0],
                    error=params.get("error", [None])[0],
                    error_description=params.get("error_description", [""])[0],
                )
                if result.code is None and result.error is None:
                    result.error = "missing_code"

                self.send_response(200)
                self.send_header("Content-type", "text/html")
                self.end_headers()
                self.wfile.write(_FAILURE_PAGE if result.error else _SUCCESS_PAGE)
                self.wfile.flush()
                owner._deliver(result)

        try:
            self._server = _ThreadedTCPServer((host, port), CallbackHandler)
        except OSError as e:
            raise TransportError(f"Cannot listen for the OAuth callback on port {port}: {e}") from e
        self._server.timeout = 0.5
        self.port = self._server.server_address[1]
        logger.info(f"OAuth callback listener on port {self.port}")

    @property
    def redirect_uri(self) -> str:
        return f"http://localhost:{self.port}{self.path}"

    def _deliver(self, result: CallbackResult) -> None:
        # First callback wins; reloads of the page are ignored
        if not self._received.is_set():
            self._result = result
            self._received.set()

    def wait_for_callback(self, timeout: float = config.OAUTH_CALLBACK_TIMEOUT_SECONDS) -> CallbackResult:
        """
        Serve requests until the callback arrives.

        Raises:
            TransportError: If nothing arrives within `timeout` seconds.
        """
        deadline = time.monotonic() + timeout
        while not self._received.is_set():
            if time.monotonic() >= deadline:
                raise TransportError(f"No OAuth callback received within {timeout:.0f}s")
            self._server.handle_request()
        return self._result

    def close(self) -> None:
        # Daemon handler threads exit on their own; only the socket needs closing
        self._server.server_close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
