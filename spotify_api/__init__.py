"""Spotify Web API integration (OAuth PKCE) for the now-playing watcher."""

from .auth import SpotifyPKCEAuth
from .client import SpotifyClient
from .credential_store import Credential, CredentialStore, TokenInfo

__all__ = [
    "Credential",
    "CredentialStore",
    "SpotifyClient",
    "SpotifyPKCEAuth",
    "TokenInfo",
]
