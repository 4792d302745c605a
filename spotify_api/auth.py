import base64
import hashlib
import json
import logging
import secrets
import urllib.parse
import webbrowser
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

import httpx

from .credential_store import TokenInfo

logger = logging.getLogger(__name__)

SPOTIFY_ACCOUNTS_BASE_URL = "https://accounts.spotify.com"
SPOTIFY_TOKEN_URL = f"{SPOTIFY_ACCOUNTS_BASE_URL}/api/token"

# RFC 7636 section 4.1
PKCE_VERIFIER_MIN_LENGTH = 43
PKCE_VERIFIER_MAX_LENGTH = 128


class SpotifyAuthError(RuntimeError):
    """Base class for errors that abort the authorization handshake."""


class AuthorizationCancelled(SpotifyAuthError):
    pass


class AuthorizationError(SpotifyAuthError):
    """Spotify redirected back with ?error=... (e.g. access_denied)."""


class StateMismatchError(SpotifyAuthError):
    def __init__(self, received: str, expected: str):
        super().__init__(f"OAuth state mismatch: {received!r} != {expected!r}")
        self.received = received
        self.expected = expected


class TokenExchangeError(SpotifyAuthError):
    pass


def _base64url_no_pad(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def code_challenge_from_verifier(verifier: str) -> str:
    """Compute PKCE S256 code_challenge from code_verifier."""

    digest = hashlib.sha256((verifier or "").encode("utf-8")).digest()
    return _base64url_no_pad(digest)


def open_browser(url: str) -> None:
    """Open url in the system browser; raise if no browser could be launched."""
    try:
        opened = webbrowser.open(url)
    except webbrowser.Error as e:
        raise SpotifyAuthError(f"Could not open a browser: {e}") from e
    if not opened:
        raise SpotifyAuthError("Could not open a browser (unsupported platform?)")


@dataclass(frozen=True)
class PKCEPair:
    code_verifier: str
    code_challenge: str


class SpotifyPKCEAuth:
    """Spotify OAuth (Authorization Code + PKCE) helper."""

    def __init__(
        self,
        config: Dict[str, Any],
        client_id: str,
        *,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.config = config or {}
        self.client_id = str(client_id or "").strip()
        self.transport = transport

    @property
    def redirect_uri(self) -> str:
        return str(self.config.get("spotify_redirect_uri", "")).strip()

    @staticmethod
    def generate_pkce_pair() -> PKCEPair:
        """Generate a PKCE verifier + challenge."""

        # Verifier characters come from ALPHA / DIGIT / "-" / "." / "_" / "~"
        verifier = secrets.token_urlsafe(64).rstrip("=")
        verifier = verifier[:PKCE_VERIFIER_MAX_LENGTH]
        if len(verifier) < PKCE_VERIFIER_MIN_LENGTH:
            verifier = (verifier + secrets.token_urlsafe(64)).rstrip("=")[:PKCE_VERIFIER_MIN_LENGTH]

        challenge = code_challenge_from_verifier(verifier)
        return PKCEPair(code_verifier=verifier, code_challenge=challenge)

    def get_authorize_url(
        self,
        *,
        code_challenge: str,
        state: Optional[str] = None,
        scopes: Optional[Iterable[str]] = None,
    ) -> str:
        if not self.client_id:
            raise ValueError("Missing Spotify client id")
        if not self.redirect_uri:
            raise ValueError("Missing config.spotify_redirect_uri")

        scope_list = list(scopes if scopes is not None else self.config.get("spotify_scopes", []))
        scope_str = " ".join([str(s).strip() for s in scope_list if str(s).strip()])

        params: Dict[str, str] = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": self.redirect_uri,
            "code_challenge_method": "S256",
            "code_challenge": str(code_challenge),
        }
        if scope_str:
            params["scope"] = scope_str
        if state:
            params["state"] = str(state)

        return f"{SPOTIFY_ACCOUNTS_BASE_URL}/authorize?{urllib.parse.urlencode(params)}"

    def begin_oauth_flow(self) -> Dict[str, Any]:
        """Return {auth_url, pkce_pair, state} for starting the PKCE browser flow."""

        pkce = self.generate_pkce_pair()
        state = str(self.config.get("oauth_state") or "").strip() or secrets.token_urlsafe(16).rstrip("=")
        url = self.get_authorize_url(code_challenge=pkce.code_challenge, state=state)
        return {"auth_url": url, "pkce_pair": pkce, "state": state}

    def exchange_code_for_token(self, *, code: str, code_verifier: str) -> TokenInfo:
        payload = self._post_form(
            SPOTIFY_TOKEN_URL,
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri,
                "client_id": self.client_id,
                "code_verifier": code_verifier,
            },
        )
        token = TokenInfo.from_spotify_token_response(payload)
        if not token.access_token:
            raise TokenExchangeError(f"Spotify token exchange failed: {payload}")
        return token

    def refresh_access_token(self, *, refresh_token: str) -> TokenInfo:
        payload = self._post_form(
            SPOTIFY_TOKEN_URL,
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.client_id,
            },
        )

        token = TokenInfo.from_spotify_token_response(payload)

        # Spotify may omit refresh_token on refresh; keep existing.
        if not token.refresh_token:
            token = TokenInfo(
                access_token=token.access_token,
                token_type=token.token_type,
                expires_at=token.expires_at,
                refresh_token=refresh_token,
                scope=token.scope,
            )

        if not token.access_token:
            raise TokenExchangeError(f"Spotify token refresh failed: {payload}")
        return token

    def _post_form(self, url: str, form: Dict[str, Any]) -> Dict[str, Any]:
        data = {k: str(v) for k, v in (form or {}).items() if v is not None}

        try:
            with httpx.Client(timeout=30.0, follow_redirects=False, transport=self.transport) as client:
                resp = client.post(
                    url,
                    data=data,
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
        except httpx.HTTPError as e:
            raise TokenExchangeError(f"Spotify token request failed: {e}") from e

        if resp.status_code >= 400:
            raise TokenExchangeError(f"Spotify token request failed (HTTP {resp.status_code}): {resp.text}")

        try:
            payload = resp.json()
        except json.JSONDecodeError as e:
            raise TokenExchangeError(f"Spotify token response was not JSON: {resp.text}") from e

        if not isinstance(payload, dict):
            raise TokenExchangeError(f"Spotify token response was not an object: {payload}")

        return payload
