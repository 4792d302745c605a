import json
import sys
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional, TextIO

from spotify_api.auth import SpotifyAuthError
from spotify_api.client import SpotifyAPIError, SpotifyClient, TokenExpiredError
from spotify_api.credential_store import CredentialStore
from utils.logger import log_debug, log_error, log_info, log_warning


@dataclass(frozen=True)
class NowPlaying:
    artist: str
    album: str
    title: str

    @staticmethod
    def from_currently_playing(payload: Optional[Dict[str, Any]]) -> Optional["NowPlaying"]:
        """Build a snapshot from /me/player/currently-playing, or None if nothing is playing."""
        if not payload or not payload.get("is_playing"):
            return None

        item = payload.get("item")
        if not isinstance(item, dict):
            return None

        # Episodes have a show instead of artists/album.
        artists = item.get("artists") or []
        if not artists:
            return None

        return NowPlaying(
            artist=str((artists[0] or {}).get("name") or ""),
            album=str((item.get("album") or {}).get("name") or ""),
            title=str(item.get("name") or ""),
        )

    def differs_from(self, other: Optional["NowPlaying"]) -> bool:
        if other is None:
            return True
        return self.artist != other.artist or self.album != other.album or self.title != other.title

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False, separators=(",", ":"))

    def __str__(self) -> str:
        return f"{self.artist} - {self.title}"


class Poller:
    """Polls the currently playing track and prints a line on every change."""

    def __init__(
        self,
        client: SpotifyClient,
        store: CredentialStore,
        client_id: str,
        config: Dict[str, Any],
        *,
        out: Optional[TextIO] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.store = store
        self.client_id = client_id
        self.interval = float(config.get("poll_interval", 10))
        self.json_output = bool(config.get("json_output", False))
        self.oneshot = bool(config.get("oneshot", False))
        self.verbose = bool(config.get("verbose", False))
        self.out = out
        self._sleep = sleep
        self.previous: Optional[NowPlaying] = None

    def emit(self, current: NowPlaying) -> None:
        out = self.out or sys.stdout
        out.write((current.to_json() if self.json_output else str(current)) + "\n")
        out.flush()

    def refresh_token(self) -> None:
        try:
            token = self.client.refresh_token()
        except (SpotifyAuthError, SpotifyAPIError) as e:
            log_error(f"Token refresh failed: {e}")
            return
        log_info("Spotify access token refreshed")
        try:
            self.store.save_token(self.client_id, token)
        except OSError as e:
            log_error(f"Could not save refreshed token: {e}")

    def poll_once(self) -> bool:
        """Run one tick; return True when a track change was emitted."""
        try:
            payload = self.client.currently_playing()
        except TokenExpiredError as e:
            log_warning(f"{e}; refreshing token")
            self.refresh_token()
            return False
        except SpotifyAPIError as e:
            log_error(str(e))
            return False

        current = NowPlaying.from_currently_playing(payload)
        if current is None:
            log_debug("Nothing playing")
            return False

        if self.verbose:
            log_info(current.to_json())

        changed = current.differs_from(self.previous)
        if changed:
            self.emit(current)
        self.previous = current
        return changed

    def run(self) -> None:
        while True:
            if self.poll_once() and self.oneshot:
                return
            self._sleep(self.interval)
