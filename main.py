import argparse
import sys

from config import build_config, validate_config
from now_playing import Poller
from spotify_api.auth import SpotifyAuthError, SpotifyPKCEAuth
from spotify_api.client import SpotifyClient
from spotify_api.credential_store import CredentialStore
from spotify_api.session import load_or_authorize
from utils.logger import setup_logging, log_info, log_error, log_success, log_warning


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Print the track currently playing on Spotify whenever it changes.")
    parser.add_argument("--json", dest="json_output", action="store_true", help="output json")
    parser.add_argument("--oneshot", action="store_true", help="output once")
    parser.add_argument("--verbose", action="store_true", help="verbose")
    parser.add_argument("--interval", dest="poll_interval", type=float, default=None, help="seconds between polls (default: 10)")
    parser.add_argument("--logout", action="store_true", help="forget the stored Spotify credential and exit")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(args.verbose)

    try:
        config = build_config(
            {
                "json_output": args.json_output,
                "oneshot": args.oneshot,
                "verbose": args.verbose,
                "poll_interval": args.poll_interval,
            }
        )
    except OSError as e:
        log_error(f"Could not determine config directory: {e}")
        return 1

    is_valid, errors = validate_config(config)
    if not is_valid:
        for error in errors:
            log_error(error)
        return 1

    store = CredentialStore(config["credentials_file"])

    if args.logout:
        if store.clear():
            log_success(f"Removed {store.path}")
        else:
            log_warning(f"No stored credential at {store.path}")
        return 0

    try:
        credential = load_or_authorize(config, store)
    except SpotifyAuthError as e:
        log_error(str(e))
        return 1
    except OSError as e:
        log_error(f"Authorization failed: {e}")
        return 1
    except KeyboardInterrupt:
        log_info("Interrupted, exiting.")
        return 130

    auth = SpotifyPKCEAuth(config, credential.client_id)
    with SpotifyClient(auth, credential.token) as client:
        poller = Poller(client, store, credential.client_id, config)
        try:
            poller.run()
        except KeyboardInterrupt:
            log_info("Interrupted, exiting.")
            return 130

    return 0


if __name__ == "__main__":
    sys.exit(main())
