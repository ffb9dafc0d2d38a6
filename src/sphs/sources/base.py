from __future__ import annotations

from typing import Protocol

from ..models import Page


class PlayHistorySource(Protocol):
    """
    分页数据源接口：从外部 API 拉取严格晚于 cursor 的事件。

    约定：
    - cursor 为 epoch 毫秒，请求方向为 "after"
    - 没有新事件时返回空 Page（不是错误）
    - 任何拉取失败都抛 SourceUnavailable，由 Poller 吸收并在下个周期重试
    """

    def key(self) -> str: ...

    def fetch(self, cursor: int) -> Page: ...
