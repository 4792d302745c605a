import os
import sys
import urllib.parse
from typing import Any, Dict, Optional

APP_DIR_NAME = "spotify-current-playing"
CONFIG_FILE_NAME = "config.json"

CONFIG_DIR_ENV = "SPOTIFY_NOW_PLAYING_CONFIG_DIR"
CLIENT_ID_ENV = "SPOTIFY_CLIENT_ID"

# Default runtime configuration values
DEFAULT_CONFIG = {
    # Spotify Web API (OAuth PKCE)
    "spotify_client_id": "",
    "spotify_redirect_uri": "http://localhost:3000/callback",
    "spotify_scopes": [
        "user-read-private",
        "user-read-currently-playing",
        "user-read-playback-state",
        "user-modify-playback-state",
        "user-library-modify",
        "user-library-read",
    ],
    # Fixed for the lifetime of one authorization flow; random when empty.
    "oauth_state": "",
    "spotify_auto_refresh": True,

    # Polling
    "poll_interval": 10,
    "json_output": False,
    "oneshot": False,
    "verbose": False,
}

# Validation rules for config fields
CONFIG_SCHEMA = {
    "credentials_file": {"type": str, "required": True},
    "spotify_client_id": {"type": str, "required": False},
    "spotify_redirect_uri": {"type": str, "required": True},
    "spotify_scopes": {"type": list, "required": False, "element_type": str},
    "oauth_state": {"type": str, "required": False},
    "spotify_auto_refresh": {"type": bool, "required": False},
    "poll_interval": {"type": (int, float), "required": True, "min": 1, "max": 3600},
    "json_output": {"type": bool, "required": False},
    "oneshot": {"type": bool, "required": False},
    "verbose": {"type": bool, "required": False},
}


def user_config_dir() -> str:
    """Return the per-user configuration directory for this platform."""

    if sys.platform == "win32":
        base = os.environ.get("APPDATA", "")
        if not base:
            raise OSError("%APPDATA% is not defined")
        return base

    home = os.path.expanduser("~")
    if not home or home == "~":
        raise OSError("neither $XDG_CONFIG_HOME nor $HOME are defined")

    if sys.platform == "darwin":
        return os.path.join(home, "Library", "Application Support")

    xdg = os.environ.get("XDG_CONFIG_HOME", "")
    if xdg and os.path.isabs(xdg):
        return xdg
    return os.path.join(home, ".config")


def default_credentials_path() -> str:
    override = os.environ.get(CONFIG_DIR_ENV, "").strip()
    config_dir = override or os.path.join(user_config_dir(), APP_DIR_NAME)
    return os.path.join(config_dir, CONFIG_FILE_NAME)


def callback_port(config: Dict[str, Any]) -> int:
    """Port of the local callback listener, taken from the redirect URI."""
    parsed = urllib.parse.urlparse(str(config.get("spotify_redirect_uri", "")))
    if parsed.port:
        return parsed.port
    return 443 if parsed.scheme == "https" else 80


def callback_path(config: Dict[str, Any]) -> str:
    parsed = urllib.parse.urlparse(str(config.get("spotify_redirect_uri", "")))
    return parsed.path or "/"


def build_config(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Build the runtime config: defaults, then environment, then explicit overrides."""

    config = {key: (list(value) if isinstance(value, list) else value) for key, value in DEFAULT_CONFIG.items()}

    env_client_id = os.environ.get(CLIENT_ID_ENV, "").strip()
    if env_client_id:
        config["spotify_client_id"] = env_client_id

    for key, value in (overrides or {}).items():
        if value is not None:
            config[key] = value

    if not config.get("credentials_file"):
        config["credentials_file"] = default_credentials_path()

    return config


def validate_config(config: Dict[str, Any]) -> tuple[bool, list[str]]:
    """
    Validate configuration against schema.
    Returns (is_valid, list_of_errors).
    """
    errors = []

    for key, rules in CONFIG_SCHEMA.items():
        # Check required fields
        if rules.get("required", False) and key not in config:
            errors.append(f"Missing required field: {key}")
            continue

        if key not in config:
            continue

        value = config[key]

        # bool is an int subclass; don't let True pass as a poll interval.
        expected_type = rules.get("type")
        if expected_type is not bool and isinstance(value, bool):
            type_names = expected_type.__name__ if not isinstance(expected_type, tuple) else "/".join(t.__name__ for t in expected_type)
            errors.append(f"Field '{key}' must be {type_names}, got bool")
            continue

        if expected_type and not isinstance(value, expected_type):
            type_names = expected_type.__name__ if not isinstance(expected_type, tuple) else "/".join(t.__name__ for t in expected_type)
            errors.append(f"Field '{key}' must be {type_names}, got {type(value).__name__}")
            continue

        # List element type check (when schema uses: {"type": list, "element_type": ...})
        if isinstance(value, list) and "element_type" in rules:
            elem_type = rules["element_type"]
            bad_elems = [v for v in value if not isinstance(v, elem_type)]
            if bad_elems:
                errors.append(
                    f"Field '{key}' must be a list of {elem_type.__name__}, got invalid elements: {bad_elems}"
                )
                continue

        if "choices" in rules and value not in rules["choices"]:
            errors.append(f"Field '{key}' must be one of {rules['choices']}, got '{value}'")

        # Range check for numeric values
        if isinstance(value, (int, float)):
            if "min" in rules and value < rules["min"]:
                errors.append(f"Field '{key}' must be >= {rules['min']}, got {value}")
            if "max" in rules and value > rules["max"]:
                errors.append(f"Field '{key}' must be <= {rules['max']}, got {value}")

    redirect_uri = str(config.get("spotify_redirect_uri", "")).strip()
    if redirect_uri:
        parsed = urllib.parse.urlparse(redirect_uri)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            errors.append(f"Field 'spotify_redirect_uri' must be an http(s) URL, got '{redirect_uri}'")

    return len(errors) == 0, errors
