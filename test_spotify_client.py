import os
import unittest

# Ensure local imports work when running this file directly.
THIS_DIR = os.path.dirname(os.path.abspath(__file__))
if THIS_DIR not in os.sys.path:
    os.sys.path.insert(0, THIS_DIR)

import httpx

from config import build_config
from spotify_api.auth import SpotifyPKCEAuth
from spotify_api.client import SpotifyAPIError, SpotifyClient, TokenExpiredError
from spotify_api.credential_store import TokenInfo

FAR_FUTURE = 1893456000.0


def _client(handler, *, token=None, auth=None, sleeps=None):
    config = build_config({"credentials_file": "unused.json"})
    return SpotifyClient(
        auth or SpotifyPKCEAuth(config, "cid"),
        token or TokenInfo(access_token="at", token_type="Bearer", expires_at=FAR_FUTURE, refresh_token="rt"),
        transport=httpx.MockTransport(handler),
        sleep=(sleeps.append if sleeps is not None else (lambda _: None)),
    )


class TestSpotifyClient(unittest.TestCase):
    def test_currently_playing_sends_bearer_token(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"is_playing": True, "item": {"name": "T"}})

        with _client(handler) as client:
            payload = client.currently_playing()

        self.assertEqual(payload["item"]["name"], "T")
        self.assertEqual(seen[0].url.path, "/v1/me/player/currently-playing")
        self.assertEqual(seen[0].headers["Authorization"], "Bearer at")

    def test_no_content_means_nothing_playing(self):
        with _client(lambda request: httpx.Response(204)) as client:
            self.assertIsNone(client.currently_playing())

    def test_expired_token_error(self):
        def handler(request):
            return httpx.Response(401, json={"error": {"status": 401, "message": "The access token expired"}})

        with _client(handler) as client:
            with self.assertRaises(TokenExpiredError):
                client.currently_playing()

    def test_other_401_is_plain_api_error(self):
        def handler(request):
            return httpx.Response(401, json={"error": {"status": 401, "message": "Invalid access token"}})

        with _client(handler) as client:
            with self.assertRaises(SpotifyAPIError) as ctx:
                client.currently_playing()
        self.assertNotIsInstance(ctx.exception, TokenExpiredError)
        self.assertEqual(ctx.exception.status, 401)

    def test_server_error(self):
        with _client(lambda request: httpx.Response(503, text="unavailable")) as client:
            with self.assertRaises(SpotifyAPIError) as ctx:
                client.currently_playing()
        self.assertEqual(ctx.exception.status, 503)

    def test_rate_limit_retries_once_after_retry_after(self):
        responses = [
            httpx.Response(429, headers={"Retry-After": "3"}),
            httpx.Response(200, json={"is_playing": False}),
        ]
        sleeps = []
        with _client(lambda request: responses.pop(0), sleeps=sleeps) as client:
            self.assertEqual(client.currently_playing(), {"is_playing": False})
        self.assertEqual(sleeps, [3.0])

    def test_transport_error_is_wrapped(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with _client(handler) as client:
            with self.assertRaises(SpotifyAPIError):
                client.currently_playing()

    def test_refresh_token_replaces_token(self):
        class FakeAuth:
            def refresh_access_token(self, *, refresh_token):
                return TokenInfo(access_token="new", token_type="Bearer", expires_at=FAR_FUTURE, refresh_token=refresh_token)

        seen = []

        def handler(request):
            seen.append(request.headers["Authorization"])
            return httpx.Response(204)

        with _client(handler, auth=FakeAuth()) as client:
            token = client.refresh_token()
            client.currently_playing()

        self.assertEqual(token.access_token, "new")
        self.assertEqual(seen, ["Bearer new"])

    def test_refresh_without_refresh_token(self):
        token = TokenInfo(access_token="at", token_type="Bearer", expires_at=FAR_FUTURE)
        with _client(lambda request: httpx.Response(204), token=token) as client:
            with self.assertRaises(TokenExpiredError):
                client.refresh_token()


if __name__ == "__main__":
    unittest.main(verbosity=2)
