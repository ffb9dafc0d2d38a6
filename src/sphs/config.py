from __future__ import annotations

import json
import os
import threading
from dataclasses import dataclass, field
from typing import Any, Mapping

from .bootstrap import DEFAULT_LOOKBACK_MONTHS
from .errors import ConfigurationError


# task 级配置键（host 通过 start(props) 传入的字符串映射）
TOPIC_CONF = "spotify.kafka.topic"
POLLING_INTERVAL_CONF = "spotify.polling.interval"
USERNAME_CONF = "spotify.username"
OAUTH_ACCESS_TOKEN_CONF = "spotify.oauth.accessToken"
OAUTH_CLIENT_ID_CONF = "spotify.oauth.clientId"
OAUTH_CLIENT_SECRET_CONF = "spotify.oauth.clientSecret"
OAUTH_REFRESH_TOKEN_CONF = "spotify.oauth.refreshToken"
LOOKBACK_MONTHS_CONF = "spotify.lookback.months"

DEFAULT_POLLING_INTERVAL_SECONDS = 30
# Event.wait 可接受的最大超时
MAX_POLLING_INTERVAL_SECONDS = int(threading.TIMEOUT_MAX)
# 回退后的年份需保持在 datetime 可表示的范围内
MAX_LOOKBACK_MONTHS = 12 * 1000


def _require_dict(value: Any, *, where: str) -> Mapping[str, Any]:
    if not isinstance(value, dict):
        raise ConfigurationError(f"Expected object at {where}, got {type(value)}")
    return value


def _get_int(d: Mapping[str, Any], key: str, default: int) -> int:
    v = d.get(key, default)
    if isinstance(v, bool):
        return default
    try:
        return int(v)
    except (TypeError, ValueError):
        return default


def _get_str(d: Mapping[str, Any], key: str, default: str | None = None) -> str | None:
    v = d.get(key, default)
    if v is None:
        return None
    return str(v)


def _get_str_list(d: Mapping[str, Any], key: str, default: list[str]) -> list[str]:
    v = d.get(key, default)
    if v is None:
        return list(default)
    if isinstance(v, list):
        return [str(x) for x in v]
    return list(default)


def _required_prop(props: Mapping[str, str], key: str) -> str:
    v = props.get(key)
    if v is None or not str(v).strip():
        raise ConfigurationError(f"Missing required config: {key}")
    return str(v).strip()


def _bounded_int_prop(props: Mapping[str, str], key: str, default: int, *, maximum: int) -> int:
    v = props.get(key)
    if v is None or not str(v).strip():
        return default
    try:
        n = int(str(v).strip())
    except ValueError as e:
        raise ConfigurationError(f"Invalid integer for {key}: {v!r}") from e
    if n < 0:
        raise ConfigurationError(f"{key} must be >= 0, got {n}")
    if n > maximum:
        raise ConfigurationError(f"{key} must be <= {maximum}, got {n}")
    return n


@dataclass(frozen=True, slots=True)
class TaskConfig:
    """
    单个 task（一个用户 / 一个 partition）的不可变配置，启动时构造一次。

    凭证字段不参与 repr，避免出现在日志里。
    """

    topic: str
    username: str
    polling_interval_seconds: int
    access_token: str = field(repr=False)
    client_id: str = field(repr=False)
    client_secret: str = field(repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    lookback_months: int = DEFAULT_LOOKBACK_MONTHS

    @classmethod
    def from_props(cls, props: Mapping[str, str] | None) -> TaskConfig:
        if props is None:
            raise ConfigurationError("Missing task configuration")
        refresh_token = props.get(OAUTH_REFRESH_TOKEN_CONF)
        return cls(
            topic=_required_prop(props, TOPIC_CONF),
            username=_required_prop(props, USERNAME_CONF),
            polling_interval_seconds=_bounded_int_prop(
                props, POLLING_INTERVAL_CONF, DEFAULT_POLLING_INTERVAL_SECONDS, maximum=MAX_POLLING_INTERVAL_SECONDS
            ),
            access_token=_required_prop(props, OAUTH_ACCESS_TOKEN_CONF),
            client_id=_required_prop(props, OAUTH_CLIENT_ID_CONF),
            client_secret=_required_prop(props, OAUTH_CLIENT_SECRET_CONF),
            refresh_token=refresh_token.strip() if refresh_token and refresh_token.strip() else None,
            lookback_months=_bounded_int_prop(
                props, LOOKBACK_MONTHS_CONF, DEFAULT_LOOKBACK_MONTHS, maximum=MAX_LOOKBACK_MONTHS
            ),
        )


@dataclass(frozen=True, slots=True)
class SpotifySourceConfig:
    """
    Spotify 数据源配置（用户维度）。

    usernames:
      - 每个用户对应一个独立的 task / partition
    *_env:
      - 凭证所在的环境变量名，凭证本身不落盘
    """

    usernames: tuple[str, ...]
    topic: str
    poll_interval_seconds: int
    lookback_months: int
    access_token_env: str
    client_id_env: str
    client_secret_env: str
    refresh_token_env: str | None


@dataclass(frozen=True, slots=True)
class AppConfig:
    """
    应用总配置。

    sqlite_path:
      - SQLite offset 库路径（host 侧的持久化断点）
    sink_path:
      - 下游日志目录（每个 topic 一个 JSONL 文件）
    """

    sqlite_path: str
    sink_path: str
    spotify: SpotifySourceConfig

    def resolve_env(self, env_name: str | None) -> str | None:
        if not env_name:
            return None
        return os.environ.get(env_name)

    def task_props(self, username: str) -> dict[str, str]:
        """
        生成某个用户 task 的 start(props) 参数；凭证在此时从环境变量解析。
        """
        sp = self.spotify
        props = {
            TOPIC_CONF: sp.topic,
            USERNAME_CONF: username,
            POLLING_INTERVAL_CONF: str(sp.poll_interval_seconds),
            LOOKBACK_MONTHS_CONF: str(sp.lookback_months),
        }
        for key, env_name in (
            (OAUTH_ACCESS_TOKEN_CONF, sp.access_token_env),
            (OAUTH_CLIENT_ID_CONF, sp.client_id_env),
            (OAUTH_CLIENT_SECRET_CONF, sp.client_secret_env),
            (OAUTH_REFRESH_TOKEN_CONF, sp.refresh_token_env),
        ):
            value = self.resolve_env(env_name)
            if value:
                props[key] = value
        return props


def load_config(config_path: str) -> AppConfig:
    """
    使用 JSON 作为配置落地形式。

    JSON 顶层结构（示意）：
    {
      "state": { "sqlite_path": "./sphs_offsets.sqlite3" },
      "sink": { "path": "./sphs_log" },
      "spotify": {
        "usernames": ["alice"],
        "topic": "spotify-play-history",
        "poll_interval_seconds": 30,
        "lookback_months": 6,
        "access_token_env": "SPOTIFY_ACCESS_TOKEN",
        "client_id_env": "SPOTIFY_CLIENT_ID",
        "client_secret_env": "SPOTIFY_CLIENT_SECRET",
        "refresh_token_env": "SPOTIFY_REFRESH_TOKEN"
      }
    }
    """
    try:
        with open(config_path, "rb") as f:
            raw = json.loads(f.read().decode("utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Cannot read config {config_path}: {e}") from e

    root = _require_dict(raw, where="$")

    state = _require_dict(root.get("state", {}), where="$.state")
    sqlite_path = str(state.get("sqlite_path") or "./sphs_offsets.sqlite3")

    sink = _require_dict(root.get("sink", {}), where="$.sink")
    sink_path = str(sink.get("path") or "./sphs_log")

    sp = _require_dict(root.get("spotify"), where="$.spotify")
    usernames = tuple(u for u in (x.strip() for x in _get_str_list(sp, "usernames", [])) if u)
    if not usernames:
        raise ConfigurationError("Expected at least one username at $.spotify.usernames")
    topic = _get_str(sp, "topic", None)
    if not topic:
        raise ConfigurationError("Missing $.spotify.topic")

    spotify_cfg = SpotifySourceConfig(
        usernames=usernames,
        topic=topic,
        poll_interval_seconds=max(0, _get_int(sp, "poll_interval_seconds", DEFAULT_POLLING_INTERVAL_SECONDS)),
        lookback_months=max(0, _get_int(sp, "lookback_months", DEFAULT_LOOKBACK_MONTHS)),
        access_token_env=str(sp.get("access_token_env") or "SPOTIFY_ACCESS_TOKEN"),
        client_id_env=str(sp.get("client_id_env") or "SPOTIFY_CLIENT_ID"),
        client_secret_env=str(sp.get("client_secret_env") or "SPOTIFY_CLIENT_SECRET"),
        refresh_token_env=_get_str(sp, "refresh_token_env", "SPOTIFY_REFRESH_TOKEN"),
    )

    return AppConfig(sqlite_path=sqlite_path, sink_path=sink_path, spotify=spotify_cfg)
