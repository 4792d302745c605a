import json
import logging
import os
import re
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_EXPIRY_SKEW_SECONDS = 10

_FRACTION_RE = re.compile(r"(\.\d+)")


def _format_expiry(expires_at: float) -> str:
    if not expires_at:
        return ""
    return datetime.fromtimestamp(float(expires_at), tz=timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_expiry(raw: Any) -> float:
    """Accept an RFC 3339 timestamp or a unix timestamp; empty means no expiry."""
    if raw is None or raw == "":
        return 0.0
    if isinstance(raw, bool):
        raise ValueError(f"invalid expiry: {raw!r}")
    if isinstance(raw, (int, float)):
        return float(raw)

    text = str(raw).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # Some writers use nanoseconds; fromisoformat before 3.11 wants exactly six digits.
    text = _FRACTION_RE.sub(lambda m: (m.group(1) + "000000")[:7], text)
    parsed = datetime.fromisoformat(text)
    # 0001-01-01 is the zero timestamp some OAuth libraries write for tokens without expiry.
    if parsed.year == 1:
        return 0.0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


@dataclass(frozen=True)
class TokenInfo:
    """OAuth token as stored in the credential file."""

    access_token: str
    token_type: str
    expires_at: float
    refresh_token: Optional[str] = None
    scope: Optional[str] = None

    @staticmethod
    def from_spotify_token_response(payload: Dict[str, Any], *, now: Optional[float] = None) -> "TokenInfo":
        """Convert Spotify token response JSON into TokenInfo.

        Spotify returns:
        - access_token
        - token_type
        - expires_in (seconds)
        - refresh_token (optional)
        - scope (space-delimited string)
        """

        now_ts = float(time.time() if now is None else now)
        expires_in = float(payload.get("expires_in", 0) or 0)

        return TokenInfo(
            access_token=str(payload.get("access_token", "") or ""),
            token_type=str(payload.get("token_type", "Bearer") or "Bearer"),
            expires_at=float(int(now_ts + expires_in)) if expires_in > 0 else 0.0,
            refresh_token=payload.get("refresh_token") or None,
            scope=payload.get("scope") or None,
        )

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "TokenInfo":
        if not isinstance(data, dict):
            raise ValueError(f"token must be an object, got {type(data).__name__}")

        raw_expiry = data.get("expiry", data.get("expires_at"))
        return TokenInfo(
            access_token=str(data.get("access_token", "") or ""),
            token_type=str(data.get("token_type", "Bearer") or "Bearer"),
            expires_at=_parse_expiry(raw_expiry),
            refresh_token=data.get("refresh_token") or None,
            scope=data.get("scope") or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "refresh_token": self.refresh_token or "",
            "expiry": _format_expiry(self.expires_at),
        }
        if self.scope:
            out["scope"] = self.scope
        return out

    def is_expired(self, *, skew_seconds: float = DEFAULT_EXPIRY_SKEW_SECONDS, now: Optional[float] = None) -> bool:
        # A zero expiry means the token never expires.
        if not self.expires_at:
            return False
        now_ts = float(time.time() if now is None else now)
        return now_ts >= float(self.expires_at) - float(skew_seconds)

    def is_valid(self, *, now: Optional[float] = None) -> bool:
        return bool(self.access_token) and not self.is_expired(now=now)


@dataclass(frozen=True)
class Credential:
    """The whole content of the credential file."""

    client_id: str
    token: Optional[TokenInfo] = None

    def has_valid_token(self) -> bool:
        return self.token is not None and self.token.is_valid()

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Credential":
        if not isinstance(data, dict):
            raise ValueError(f"credential must be an object, got {type(data).__name__}")
        client_id = str(data.get("client_id", "") or "").strip()
        raw_token = data.get("token")
        if not raw_token:
            return Credential(client_id=client_id)

        try:
            token = TokenInfo.from_dict(raw_token)
        except (TypeError, ValueError) as e:
            logger.warning("Ignoring unreadable stored token: %s", e)
            return Credential(client_id=client_id)
        return Credential(client_id=client_id, token=token)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "client_id": self.client_id,
            "token": self.token.to_dict() if self.token is not None else None,
        }


class CredentialStore:
    """Loads and saves the {client_id, token} document in the user config dir."""

    def __init__(self, path: str):
        self.path = path

    def ensure_dir(self) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, mode=0o700, exist_ok=True)

    def load(self) -> Optional[Credential]:
        """Return the stored credential, or None when missing or unreadable."""
        if not os.path.exists(self.path):
            return None

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable credential file %s: %s", self.path, e)
            return None

        try:
            return Credential.from_dict(data)
        except (TypeError, ValueError) as e:
            logger.warning("Ignoring malformed credential file %s: %s", self.path, e)
            return None

    def save(self, credential: Credential) -> None:
        """Persist the credential, replacing the file in one rename."""
        self.ensure_dir()
        directory = os.path.dirname(self.path) or "."

        fd, tmp_path = tempfile.mkstemp(prefix=".config-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(credential.to_dict(), f, indent=2)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

        logger.debug("Saved credential to %s", self.path)

    def save_token(self, client_id: str, token: TokenInfo) -> Credential:
        credential = Credential(client_id=client_id, token=token)
        self.save(credential)
        return credential

    def clear(self) -> bool:
        if not os.path.exists(self.path):
            return False
        os.remove(self.path)
        return True
