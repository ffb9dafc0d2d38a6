import json
import os
import sys
import tempfile
import unittest
from unittest import mock


sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src")))


from sphs.config import (  # noqa: E402
    LOOKBACK_MONTHS_CONF,
    MAX_LOOKBACK_MONTHS,
    MAX_POLLING_INTERVAL_SECONDS,
    OAUTH_ACCESS_TOKEN_CONF,
    OAUTH_CLIENT_ID_CONF,
    OAUTH_CLIENT_SECRET_CONF,
    OAUTH_REFRESH_TOKEN_CONF,
    POLLING_INTERVAL_CONF,
    TOPIC_CONF,
    USERNAME_CONF,
    TaskConfig,
    load_config,
)
from sphs.errors import ConfigurationError  # noqa: E402
from sphs.models import Page  # noqa: E402
from sphs.runner import build_runners  # noqa: E402
from sphs.task import PlayHistoryTask, TaskState  # noqa: E402


_PROPS = {
    TOPIC_CONF: "plays",
    USERNAME_CONF: "alice",
    POLLING_INTERVAL_CONF: "15",
    OAUTH_ACCESS_TOKEN_CONF: "tok",
    OAUTH_CLIENT_ID_CONF: "cid",
    OAUTH_CLIENT_SECRET_CONF: "secret",
}


def _new_task() -> PlayHistoryTask:
    return PlayHistoryTask(mock.Mock(offset=mock.Mock(return_value=None)), source_factory=lambda cfg: _EmptySource())


class _EmptySource:
    def key(self) -> str:
        return "empty"

    def fetch(self, cursor: int) -> Page:  # noqa: ARG002
        return Page()


class TestTaskConfig(unittest.TestCase):
    def test_from_props(self) -> None:
        cfg = TaskConfig.from_props(_PROPS)
        self.assertEqual(cfg.topic, "plays")
        self.assertEqual(cfg.username, "alice")
        self.assertEqual(cfg.polling_interval_seconds, 15)
        self.assertEqual(cfg.lookback_months, 6)
        self.assertIsNone(cfg.refresh_token)
        # 凭证不出现在 repr 中
        self.assertNotIn("tok", repr(cfg))
        self.assertNotIn("secret", repr(cfg))

    def test_missing_required(self) -> None:
        for key in (TOPIC_CONF, USERNAME_CONF, OAUTH_ACCESS_TOKEN_CONF, OAUTH_CLIENT_ID_CONF, OAUTH_CLIENT_SECRET_CONF):
            props = dict(_PROPS)
            props[key] = "  "
            with self.assertRaises(ConfigurationError):
                TaskConfig.from_props(props)
        with self.assertRaises(ConfigurationError):
            TaskConfig.from_props(None)

    def test_invalid_polling_interval(self) -> None:
        for value in ("soon", "-1"):
            props = dict(_PROPS)
            props[POLLING_INTERVAL_CONF] = value
            with self.assertRaises(ConfigurationError):
                TaskConfig.from_props(props)

    def test_oversized_values_are_configuration_errors(self) -> None:
        cases = [
            (POLLING_INTERVAL_CONF, "99999999999"),
            (POLLING_INTERVAL_CONF, str(MAX_POLLING_INTERVAL_SECONDS + 1)),
            (LOOKBACK_MONTHS_CONF, "100000"),
            (LOOKBACK_MONTHS_CONF, str(MAX_LOOKBACK_MONTHS + 1)),
        ]
        for key, value in cases:
            props = dict(_PROPS)
            props[key] = value
            with self.assertRaises(ConfigurationError):
                TaskConfig.from_props(props)

            task = _new_task()
            with self.assertRaises(ConfigurationError):
                task.start(props)
            self.assertIs(task.state, TaskState.UNSTARTED)

    def test_largest_lookback_still_starts(self) -> None:
        props = dict(_PROPS)
        props[LOOKBACK_MONTHS_CONF] = str(MAX_LOOKBACK_MONTHS)
        task = _new_task()
        task.start(props)
        self.assertIs(task.state, TaskState.IDLE)
        self.assertLess(task.cursor, 0)

    def test_polling_interval_default(self) -> None:
        props = dict(_PROPS)
        del props[POLLING_INTERVAL_CONF]
        self.assertEqual(TaskConfig.from_props(props).polling_interval_seconds, 30)


class TestConfigAndBuild(unittest.TestCase):
    def _write(self, td: str, cfg: dict) -> str:
        path = os.path.join(td, "config.json")
        with open(path, "w", encoding="utf-8") as f:
            json.dump(cfg, f, ensure_ascii=False)
        return path

    def test_load_config_and_task_props(self) -> None:
        cfg = {
            "state": {"sqlite_path": "./offsets.sqlite3"},
            "sink": {"path": "./log"},
            "spotify": {
                "usernames": ["alice", " ", "bob"],
                "topic": "plays",
                "poll_interval_seconds": 5,
                "access_token_env": "T_ENV",
                "client_id_env": "C_ENV",
                "client_secret_env": "S_ENV",
                "refresh_token_env": "R_ENV",
            },
        }
        with tempfile.TemporaryDirectory() as td:
            config = load_config(self._write(td, cfg))

        self.assertEqual(config.spotify.usernames, ("alice", "bob"))
        self.assertEqual(config.spotify.lookback_months, 6)
        env = {"T_ENV": "tok", "C_ENV": "cid", "S_ENV": "secret"}
        with mock.patch.dict(os.environ, env, clear=False):
            os.environ.pop("R_ENV", None)
            props = config.task_props("bob")
        self.assertEqual(props[USERNAME_CONF], "bob")
        self.assertEqual(props[POLLING_INTERVAL_CONF], "5")
        self.assertEqual(props[OAUTH_ACCESS_TOKEN_CONF], "tok")
        self.assertNotIn(OAUTH_REFRESH_TOKEN_CONF, props)

    def test_load_config_requires_users_and_topic(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(ConfigurationError):
                load_config(self._write(td, {"spotify": {"usernames": [], "topic": "plays"}}))
            with self.assertRaises(ConfigurationError):
                load_config(self._write(td, {"spotify": {"usernames": ["alice"]}}))
            with self.assertRaises(ConfigurationError):
                load_config(self._write(td, {}))
            with self.assertRaises(ConfigurationError):
                load_config(os.path.join(td, "missing.json"))

    def test_build_runners_starts_one_task_per_user(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg = {
                "state": {"sqlite_path": os.path.join(td, "offsets.sqlite3")},
                "sink": {"path": os.path.join(td, "log")},
                "spotify": {"usernames": ["alice", "bob"], "topic": "plays", "poll_interval_seconds": 0},
            }
            config = load_config(self._write(td, cfg))
            env = {"SPOTIFY_ACCESS_TOKEN": "tok", "SPOTIFY_CLIENT_ID": "cid", "SPOTIFY_CLIENT_SECRET": "secret"}
            with mock.patch.dict(os.environ, env, clear=False):
                runners = build_runners(config, source_factory=lambda c: _EmptySource())

        self.assertEqual([r.task.partition for r in runners], [{"username": "alice"}, {"username": "bob"}])
        self.assertIs(runners[0].sink, runners[1].sink)

    def test_build_runners_fails_without_credentials(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg = {
                "state": {"sqlite_path": os.path.join(td, "offsets.sqlite3")},
                "sink": {"path": os.path.join(td, "log")},
                "spotify": {"usernames": ["alice"], "topic": "plays", "access_token_env": "SPHS_TEST_UNSET"},
            }
            config = load_config(self._write(td, cfg))
            os.environ.pop("SPHS_TEST_UNSET", None)
            with self.assertRaises(ConfigurationError):
                build_runners(config, source_factory=lambda c: _EmptySource())
