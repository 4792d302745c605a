import io
import json
import os
import tempfile
import unittest

# Ensure local imports work when running this file directly.
THIS_DIR = os.path.dirname(os.path.abspath(__file__))
if THIS_DIR not in os.sys.path:
    os.sys.path.insert(0, THIS_DIR)

from now_playing import NowPlaying, Poller
from spotify_api.auth import TokenExchangeError
from spotify_api.client import SpotifyAPIError, TokenExpiredError
from spotify_api.credential_store import CredentialStore, TokenInfo


def _playing(artist="Artist", album="Album", title="Title", is_playing=True):
    return {
        "is_playing": is_playing,
        "currently_playing_type": "track",
        "item": {
            "name": title,
            "album": {"name": album},
            "artists": [{"name": artist}, {"name": "Featured"}],
        },
    }


class FakeClient:
    """Replays a script of currently_playing() results (dicts, None, or exceptions)."""

    def __init__(self, script, refreshed=None, refresh_error=None):
        self.script = list(script)
        self.refreshed = refreshed
        self.refresh_error = refresh_error
        self.refresh_calls = 0

    def currently_playing(self):
        result = self.script.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def refresh_token(self):
        self.refresh_calls += 1
        if self.refresh_error is not None:
            raise self.refresh_error
        return self.refreshed


class TestNowPlaying(unittest.TestCase):
    def test_from_currently_playing(self):
        np = NowPlaying.from_currently_playing(_playing("A", "B", "C"))
        self.assertEqual(np, NowPlaying(artist="A", album="B", title="C"))

    def test_nothing_playing(self):
        self.assertIsNone(NowPlaying.from_currently_playing(None))
        self.assertIsNone(NowPlaying.from_currently_playing({}))
        self.assertIsNone(NowPlaying.from_currently_playing(_playing(is_playing=False)))
        self.assertIsNone(NowPlaying.from_currently_playing({"is_playing": True, "item": None}))

    def test_episode_is_ignored(self):
        payload = {"is_playing": True, "currently_playing_type": "episode", "item": {"name": "Ep", "show": {"name": "S"}}}
        self.assertIsNone(NowPlaying.from_currently_playing(payload))

    def test_differs_from(self):
        base = NowPlaying(artist="A", album="B", title="C")
        self.assertTrue(base.differs_from(None))
        self.assertFalse(base.differs_from(NowPlaying(artist="A", album="B", title="C")))
        self.assertTrue(base.differs_from(NowPlaying(artist="X", album="B", title="C")))
        self.assertTrue(base.differs_from(NowPlaying(artist="A", album="X", title="C")))
        self.assertTrue(base.differs_from(NowPlaying(artist="A", album="B", title="X")))

    def test_text_format(self):
        self.assertEqual(str(NowPlaying(artist="Daft Punk", album="Discovery", title="One More Time")), "Daft Punk - One More Time")

    def test_json_fields_are_not_swapped(self):
        out = json.loads(NowPlaying(artist="Daft Punk", album="Discovery", title="One More Time").to_json())
        self.assertEqual(out, {"artist": "Daft Punk", "album": "Discovery", "title": "One More Time"})

    def test_json_keeps_unicode(self):
        self.assertIn("Sigur Rós", NowPlaying(artist="Sigur Rós", album="()", title="Untitled").to_json())


class TestPoller(unittest.TestCase):
    def setUp(self):
        self._td = tempfile.TemporaryDirectory()
        self.store = CredentialStore(os.path.join(self._td.name, "config.json"))
        self.out = io.StringIO()
        self.sleeps = []

    def tearDown(self):
        self._td.cleanup()

    def _poller(self, client, **config):
        return Poller(client, self.store, "cid", config, out=self.out, sleep=self.sleeps.append)

    def test_emits_only_on_change(self):
        client = FakeClient(
            [
                _playing("A", "B", "C"),
                _playing("A", "B", "C"),
                _playing("A", "B", "D"),
                None,
                _playing("A", "B", "D"),
                _playing("A", "X", "D"),
            ]
        )
        poller = self._poller(client)
        emitted = [poller.poll_once() for _ in range(6)]

        self.assertEqual(emitted, [True, False, True, False, False, True])
        self.assertEqual(self.out.getvalue().splitlines(), ["A - C", "A - D", "A - D"])

    def test_json_output(self):
        poller = self._poller(FakeClient([_playing("A", "B", "C")]), json_output=True)
        poller.poll_once()
        self.assertEqual(json.loads(self.out.getvalue()), {"artist": "A", "album": "B", "title": "C"})

    def test_paused_track_is_not_emitted(self):
        poller = self._poller(FakeClient([_playing(is_playing=False)]))
        self.assertFalse(poller.poll_once())
        self.assertEqual(self.out.getvalue(), "")
        self.assertIsNone(poller.previous)

    def test_verbose_logs_every_poll(self):
        poller = self._poller(FakeClient([_playing(), _playing()]), verbose=True)
        with self.assertLogs("spotify_now_playing", level="INFO") as logs:
            poller.poll_once()
            poller.poll_once()
        self.assertEqual(len(logs.output), 2)

    def test_api_error_is_logged_and_polling_continues(self):
        client = FakeClient([SpotifyAPIError("Spotify API error 502: bad gateway", status=502), _playing()])
        poller = self._poller(client)
        with self.assertLogs("spotify_now_playing", level="ERROR"):
            self.assertFalse(poller.poll_once())
        self.assertTrue(poller.poll_once())

    def test_expired_token_is_refreshed_and_persisted(self):
        refreshed = TokenInfo(access_token="new", token_type="Bearer", expires_at=1893456000.0, refresh_token="rt")
        client = FakeClient([TokenExpiredError("The access token expired", status=401)], refreshed=refreshed)
        poller = self._poller(client)

        self.assertFalse(poller.poll_once())
        self.assertEqual(client.refresh_calls, 1)
        stored = self.store.load()
        self.assertIsNotNone(stored)
        assert stored is not None
        self.assertEqual(stored.client_id, "cid")
        self.assertEqual(stored.token, refreshed)

    def test_failed_refresh_is_logged(self):
        client = FakeClient(
            [TokenExpiredError("The access token expired", status=401)],
            refresh_error=TokenExchangeError("Spotify token refresh failed (HTTP 400)"),
        )
        poller = self._poller(client)
        with self.assertLogs("spotify_now_playing", level="ERROR"):
            self.assertFalse(poller.poll_once())
        self.assertIsNone(self.store.load())

    def test_unwritable_store_does_not_stop_polling(self):
        class ReadOnlyStore(CredentialStore):
            def save_token(self, client_id, token):
                raise PermissionError(13, "Permission denied", self.path)

        refreshed = TokenInfo(access_token="new", token_type="Bearer", expires_at=1893456000.0, refresh_token="rt")
        client = FakeClient([TokenExpiredError("The access token expired", status=401), _playing()], refreshed=refreshed)
        poller = Poller(client, ReadOnlyStore(self.store.path), "cid", {}, out=self.out, sleep=self.sleeps.append)

        with self.assertLogs("spotify_now_playing", level="ERROR") as logs:
            self.assertFalse(poller.poll_once())
        self.assertIn("Could not save refreshed token", logs.output[0])
        self.assertEqual(client.refresh_calls, 1)
        self.assertTrue(poller.poll_once())

    def test_idle_tick_logs_debug(self):
        poller = self._poller(FakeClient([None]), verbose=True)
        with self.assertLogs("spotify_now_playing", level="DEBUG") as logs:
            self.assertFalse(poller.poll_once())
        self.assertEqual(logs.output, ["DEBUG:spotify_now_playing:Nothing playing"])

    def test_oneshot_stops_after_first_change(self):
        client = FakeClient([None, _playing(is_playing=False), _playing("A", "B", "C"), _playing("Z", "Z", "Z")])
        poller = self._poller(client, oneshot=True, poll_interval=10)
        poller.run()

        self.assertEqual(self.out.getvalue(), "A - C\n")
        self.assertEqual(self.sleeps, [10.0, 10.0])
        self.assertEqual(len(client.script), 1)


if __name__ == "__main__":
    unittest.main(verbosity=2)
