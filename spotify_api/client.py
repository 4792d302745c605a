import json
import logging
import time
from typing import Any, Callable, Dict, Optional

import httpx

from .auth import SpotifyPKCEAuth
from .credential_store import TokenInfo

logger = logging.getLogger(__name__)

SPOTIFY_API_BASE_URL = "https://api.spotify.com/v1"

# Spotify's 401 body for a stale bearer token.
TOKEN_EXPIRED_MESSAGE = "The access token expired"

MAX_RETRY_AFTER_SECONDS = 30.0


class SpotifyAPIError(RuntimeError):
    def __init__(self, message: str, *, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class TokenExpiredError(SpotifyAPIError):
    pass


def _error_message(resp: httpx.Response) -> str:
    try:
        payload = resp.json()
    except (json.JSONDecodeError, ValueError):
        return resp.text
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or "")
    if isinstance(error, str):
        return str(payload.get("error_description") or error)
    return resp.text


class SpotifyClient:
    """Thin Spotify Web API client bound to one OAuth token.

    The token is never refreshed behind the caller's back: an expired token
    surfaces as TokenExpiredError and the caller decides to call
    refresh_token() and persist the result.
    """

    def __init__(
        self,
        auth: SpotifyPKCEAuth,
        token: TokenInfo,
        *,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.auth = auth
        self.token = token
        self._sleep = sleep
        self._http = httpx.Client(base_url=SPOTIFY_API_BASE_URL, timeout=30.0, transport=transport)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "SpotifyClient":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # -----------------
    # Token management
    # -----------------

    def refresh_token(self) -> TokenInfo:
        if not self.token.refresh_token:
            raise TokenExpiredError("Spotify token expired and no refresh_token is available.", status=401)
        self.token = self.auth.refresh_access_token(refresh_token=self.token.refresh_token)
        return self.token

    # -----------------
    # HTTP helpers
    # -----------------

    def request_json(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        retry_429: bool = True,
    ) -> Optional[Dict[str, Any]]:
        """Make a Spotify Web API request and return parsed JSON (None on 204)."""

        while True:
            try:
                resp = self._http.request(
                    method.upper(),
                    path,
                    params={k: str(v) for k, v in (params or {}).items() if v is not None},
                    headers={
                        "Authorization": f"{self.token.token_type} {self.token.access_token}",
                        "Accept": "application/json",
                    },
                )
            except httpx.HTTPError as e:
                raise SpotifyAPIError(f"Spotify API request failed: {e}") from e

            status = resp.status_code

            if status == 401:
                message = _error_message(resp)
                if TOKEN_EXPIRED_MESSAGE.lower() in message.lower() or self.token.is_expired(skew_seconds=0):
                    raise TokenExpiredError(message or TOKEN_EXPIRED_MESSAGE, status=status)
                raise SpotifyAPIError(f"Spotify API error {status}: {message}", status=status)

            # 429: rate limited, one retry honoring Retry-After.
            if status == 429 and retry_429:
                retry_after = resp.headers.get("Retry-After")
                try:
                    delay = float(retry_after) if retry_after is not None else 1.0
                except ValueError:
                    delay = 1.0
                logger.warning("Spotify rate limit hit; retrying in %.0fs", delay)
                self._sleep(min(MAX_RETRY_AFTER_SECONDS, max(1.0, delay)))
                retry_429 = False
                continue

            if status >= 400:
                raise SpotifyAPIError(f"Spotify API error {status}: {_error_message(resp)}", status=status)

            if status == 204 or not resp.content:
                return None

            try:
                return resp.json()
            except (json.JSONDecodeError, ValueError) as e:
                raise SpotifyAPIError(f"Spotify API response was not JSON (status {status}): {resp.text}", status=status) from e

    # -----------------
    # Convenience endpoints
    # -----------------

    def currently_playing(self) -> Optional[Dict[str, Any]]:
        """Return the user's currently playing object, or None when nothing is active."""
        return self.request_json("GET", "/me/player/currently-playing")
