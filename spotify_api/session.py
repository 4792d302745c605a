import logging
import socket
import urllib.parse
from typing import Any, Callable, Dict, List, Optional

import httpx
import questionary

from config import callback_path, callback_port
from .auth import (
    AuthorizationCancelled,
    SpotifyAuthError,
    SpotifyPKCEAuth,
    open_browser,
)
from .callback_server import CallbackListener
from .credential_store import Credential, CredentialStore

logger = logging.getLogger(__name__)

LOCAL_HOSTNAMES = ("localhost", "127.0.0.1", "::1")


def prompt_client_id() -> str:
    """Ask for the Spotify app Client ID on the terminal."""
    answer = questionary.text("ClientID:").ask()
    client_id = (answer or "").strip()
    if not client_id:
        raise AuthorizationCancelled("canceled")
    return client_id


def _listen_hosts(config: Dict[str, Any]) -> List[str]:
    """Loopback addresses the redirect host resolves to, or all interfaces for any other host."""
    hostname = urllib.parse.urlparse(str(config.get("spotify_redirect_uri", ""))).hostname or ""
    if hostname not in LOCAL_HOSTNAMES:
        return [""]

    try:
        infos = socket.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
    except socket.gaierror as e:
        logger.debug("Could not resolve %s, listening on 127.0.0.1: %s", hostname, e)
        return ["127.0.0.1"]

    hosts: List[str] = ["127.0.0.1"] if hostname == "localhost" else []
    for family, _, _, _, sockaddr in infos:
        if family in (socket.AF_INET, socket.AF_INET6) and sockaddr[0] not in hosts:
            hosts.append(sockaddr[0])
    return hosts or ["127.0.0.1"]


def authorize(
    config: Dict[str, Any],
    store: CredentialStore,
    client_id: str,
    *,
    browser: Callable[[str], None] = open_browser,
    transport: Optional[httpx.BaseTransport] = None,
    timeout: Optional[float] = None,
) -> Credential:
    """Run the PKCE browser handshake and persist the resulting credential."""

    auth = SpotifyPKCEAuth(config, client_id, transport=transport)
    flow = auth.begin_oauth_flow()
    pkce_pair = flow["pkce_pair"]

    def exchange(code: str):
        return auth.exchange_code_for_token(code=code, code_verifier=pkce_pair.code_verifier)

    with CallbackListener(
        hosts=_listen_hosts(config),
        port=callback_port(config),
        callback_path=callback_path(config),
        expected_state=flow["state"],
        exchange=exchange,
    ) as listener:
        logger.info("Opening browser for Spotify login. If it does not open, visit:\n%s", flow["auth_url"])
        browser(flow["auth_url"])
        token = listener.wait(timeout=timeout)

    credential = store.save_token(client_id, token)
    logger.info("Spotify authorization complete; credential saved to %s", store.path)
    return credential


def load_or_authorize(
    config: Dict[str, Any],
    store: CredentialStore,
    *,
    prompt: Callable[[], str] = prompt_client_id,
    **authorize_kwargs,
) -> Credential:
    """Return a credential with a usable token, authorizing only when needed."""

    stored = store.load()
    if stored is not None and stored.client_id and stored.has_valid_token():
        logger.debug("Using stored Spotify token")
        return stored

    if (
        stored is not None
        and stored.client_id
        and stored.token is not None
        and stored.token.refresh_token
        and config.get("spotify_auto_refresh", True)
    ):
        auth = SpotifyPKCEAuth(config, stored.client_id, transport=authorize_kwargs.get("transport"))
        try:
            refreshed = auth.refresh_access_token(refresh_token=stored.token.refresh_token)
        except SpotifyAuthError as e:
            logger.warning("Stored token could not be refreshed, re-authorizing: %s", e)
        else:
            return store.save_token(stored.client_id, refreshed)

    if stored is not None and stored.client_id:
        client_id = stored.client_id
    elif str(config.get("spotify_client_id") or "").strip():
        client_id = str(config["spotify_client_id"]).strip()
    else:
        client_id = prompt()

    return authorize(config, store, client_id, **authorize_kwargs)
