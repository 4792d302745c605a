"""Short-lived local HTTP listener that receives the OAuth redirect.

The listener runs ``serve_forever`` on daemon threads, one per listen address. The request handler
validates the callback, exchanges the code, and hands exactly one result
(a ``TokenInfo`` or the exception that aborted the flow) to the waiting
caller through a single-element queue. The caller shuts the listener down
as soon as it has the result.
"""

import logging
import queue
import socket
import threading
import urllib.parse
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Callable, List, Optional, Sequence, Union

from .auth import AuthorizationError, SpotifyAuthError, StateMismatchError
from .credential_store import TokenInfo

logger = logging.getLogger(__name__)

CLOSE_WINDOW_HTML = b'<script>window.open("about:blank","_self").close();</script>'

CallbackResult = Union[TokenInfo, SpotifyAuthError]


class CallbackHandler(BaseHTTPRequestHandler):
    server: "CallbackServer"

    def log_message(self, format, *args):
        logger.debug("callback %s - %s", self.address_string(), format % args)

    def _respond(self, status: int, body: bytes, content_type: str = "text/plain; charset=utf-8") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self):
        parsed = urllib.parse.urlparse(self.path)
        if parsed.path != self.server.callback_path:
            self._respond(404, b"404 page not found\n")
            return

        if self.server.completed.is_set():
            self._respond(410, b"Authorization already completed.\n")
            return

        params = urllib.parse.parse_qs(parsed.query)
        error = (params.get("error") or [""])[0]
        code = (params.get("code") or [""])[0]
        state = (params.get("state") or [""])[0]

        if error:
            self._respond(400, f"Authorization failed: {error}\n".encode("utf-8"))
            self.server.deliver(AuthorizationError(f"Spotify returned an error: {error}"))
            return

        if not code:
            self._respond(200, b"Missing Parameters!")
            return

        if state != self.server.expected_state:
            self._respond(404, b"404 page not found\n")
            self.server.deliver(StateMismatchError(state, self.server.expected_state))
            return

        try:
            token = self.server.exchange(code)
        except SpotifyAuthError as e:
            self._respond(403, b"Couldn't get token\n")
            self.server.deliver(e)
            return

        self._respond(200, CLOSE_WINDOW_HTML, content_type="text/html")
        self.server.deliver(token)


class CallbackHandoff:
    """One-shot handoff shared by every server of a flow."""

    def __init__(self):
        self.completed = threading.Event()
        self.results: "queue.Queue[CallbackResult]" = queue.Queue(maxsize=1)

    def deliver(self, result: CallbackResult) -> None:
        # Only the first terminal outcome is handed over.
        if self.completed.is_set():
            return
        self.completed.set()
        self.results.put_nowait(result)


class CallbackServer(HTTPServer):
    """HTTPServer carrying the flow state the handler needs."""

    def __init__(
        self,
        address,
        *,
        callback_path: str,
        expected_state: str,
        exchange: Callable[[str], TokenInfo],
        handoff: Optional[CallbackHandoff] = None,
    ):
        if ":" in address[0]:
            self.address_family = socket.AF_INET6
        super().__init__(address, CallbackHandler)
        self.callback_path = callback_path
        self.expected_state = expected_state
        self.exchange = exchange
        self.handoff = handoff or CallbackHandoff()

    @property
    def completed(self) -> threading.Event:
        return self.handoff.completed

    def deliver(self, result: CallbackResult) -> None:
        self.handoff.deliver(result)


class CallbackListener:
    """Context manager around one CallbackServer per listen address.

    A redirect to ``localhost`` may arrive over IPv4 or IPv6 depending on
    how the browser resolves the name, so every address is served on the
    same port and the first terminal callback on any of them wins.

    ::

        with CallbackListener(hosts=["127.0.0.1", "::1"], ...) as listener:
            open_browser(url)
            token = listener.wait()
    """

    def __init__(
        self,
        *,
        hosts: Sequence[str],
        port: int,
        callback_path: str,
        expected_state: str,
        exchange: Callable[[str], TokenInfo],
    ):
        self.handoff = CallbackHandoff()
        self.servers: List[CallbackServer] = []
        bind_error: Optional[OSError] = None

        for host in hosts:
            try:
                server = CallbackServer(
                    (host, self.servers[0].server_address[1] if self.servers else port),
                    callback_path=callback_path,
                    expected_state=expected_state,
                    exchange=exchange,
                    handoff=self.handoff,
                )
            except OSError as e:
                logger.warning("Could not listen on %s port %s: %s", host or "*", port, e)
                bind_error = e
                continue
            self.servers.append(server)

        if not self.servers:
            if bind_error is not None:
                raise bind_error
            raise ValueError("No listen address for the callback listener")
        self._threads: List[threading.Thread] = []

    @property
    def port(self) -> int:
        return self.servers[0].server_address[1]

    def start(self) -> None:
        for server in self.servers:
            thread = threading.Thread(target=server.serve_forever, name="oauth-callback", daemon=True)
            thread.start()
            self._threads.append(thread)
            logger.debug("Callback listener on %s port %s", server.server_address[0] or "*", self.port)

    def wait(self, timeout: Optional[float] = None) -> TokenInfo:
        """Block until the callback produced a token; raise what aborted it otherwise."""
        try:
            result = self.handoff.results.get(timeout=timeout)
        except queue.Empty as e:
            raise SpotifyAuthError(f"No authorization callback received within {timeout} seconds") from e

        if isinstance(result, SpotifyAuthError):
            raise result
        return result

    def shutdown(self) -> None:
        if self._threads:
            for server in self.servers:
                server.shutdown()
            for thread in self._threads:
                thread.join()
            self._threads = []
        for server in self.servers:
            server.server_close()

    def __enter__(self) -> "CallbackListener":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()
