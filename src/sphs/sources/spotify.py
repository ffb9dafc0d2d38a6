from __future__ import annotations

import base64
import http.client
import logging
import urllib.error
from dataclasses import dataclass
from typing import Any, Mapping

from ..errors import SourceUnavailable
from ..http_utils import HttpClient, HttpResponse, with_query_params
from ..models import Page, PageCursor


logger = logging.getLogger(__name__)

RECENTLY_PLAYED_URL = "https://api.spotify.com/v1/me/player/recently-played"
TOKEN_URL = "https://accounts.spotify.com/api/token"
MAX_LIMIT = 50


def _cursor_value(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


def _parse_cursors(raw: Any) -> tuple[PageCursor, ...]:
    """
    cursors 在响应里通常是单个对象：
    {"cursors": {"after": "1530136483329", "before": "1530136483329"}}

    空结果时可能为 null，且 before/after 不保证同时出现；
    这里统一归一为 PageCursor 元组，列表形式也兼容。
    """
    if raw is None:
        return ()
    entries = raw if isinstance(raw, list) else [raw]
    cursors: list[PageCursor] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        cursors.append(PageCursor(before=_cursor_value(entry.get("before")), after=_cursor_value(entry.get("after"))))
    return tuple(cursors)


@dataclass(slots=True)
class SpotifyRecentlyPlayedSource:
    """
    Spotify "Recently Played Tracks" 数据源（用户维度）。

    cursor 语义：played_at（epoch 毫秒），只请求严格晚于该值的播放记录。
    access_token 过期（401）且配置了 refresh_token 时，自动刷新一次后重试。
    """

    username: str
    http: HttpClient
    access_token: str
    client_id: str
    client_secret: str
    refresh_token: str | None = None
    limit: int = MAX_LIMIT
    api_url: str = RECENTLY_PLAYED_URL
    token_url: str = TOKEN_URL

    def key(self) -> str:
        return f"spotify:{self.username}:recently-played"

    def fetch(self, cursor: int) -> Page:
        url = with_query_params(
            self.api_url,
            {
                "limit": str(max(1, min(self.limit, MAX_LIMIT))),
                "after": str(int(cursor)),
            },
        )
        resp = self._get(url)
        try:
            data = resp.json()
        except ValueError as e:
            body_prefix = resp.text()[:400]
            raise SourceUnavailable(
                f"Spotify API invalid JSON: status={resp.status} url={resp.url} body_prefix={body_prefix!r}"
            ) from e

        if not isinstance(data, dict):
            raise SourceUnavailable(f"Spotify API expected object, got {type(data)}: url={resp.url}")

        items = data.get("items")
        if items is None:
            items = []
        if not isinstance(items, list):
            raise SourceUnavailable(f"Spotify API expected items list, got {type(items)}: url={resp.url}")

        return Page(items=tuple(items), cursors=_parse_cursors(data.get("cursors")))

    def _headers(self) -> Mapping[str, str]:
        return {
            "Accept": "application/json",
            "Authorization": f"Bearer {self.access_token}",
        }

    def _get(self, url: str) -> HttpResponse:
        try:
            return self.http.get(url, headers=self._headers())
        except urllib.error.HTTPError as e:
            if e.code != 401 or not self.refresh_token:
                raise SourceUnavailable(f"Spotify API error: status={e.code} url={url}") from e
            logger.info("access token rejected, refreshing: username=%s", self.username)
        except (OSError, http.client.HTTPException) as e:
            raise SourceUnavailable(f"Spotify API unreachable: {type(e).__name__}: {e}") from e

        self._refresh_access_token()
        try:
            return self.http.get(url, headers=self._headers())
        except (OSError, http.client.HTTPException) as e:
            raise SourceUnavailable(f"Spotify API failed after token refresh: {type(e).__name__}: {e}") from e

    def _refresh_access_token(self) -> None:
        basic = base64.b64encode(f"{self.client_id}:{self.client_secret}".encode("utf-8")).decode("ascii")
        try:
            resp = self.http.post_form(
                self.token_url,
                {"grant_type": "refresh_token", "refresh_token": self.refresh_token or ""},
                headers={"Authorization": f"Basic {basic}", "Accept": "application/json"},
            )
            data = resp.json()
        except (OSError, http.client.HTTPException, ValueError) as e:
            raise SourceUnavailable(f"Spotify token refresh failed: {type(e).__name__}: {e}") from e

        token = data.get("access_token") if isinstance(data, dict) else None
        if not isinstance(token, str) or not token:
            raise SourceUnavailable("Spotify token refresh returned no access_token")
        self.access_token = token
        # 服务端可能轮换 refresh_token
        new_refresh = data.get("refresh_token")
        if isinstance(new_refresh, str) and new_refresh:
            self.refresh_token = new_refresh
