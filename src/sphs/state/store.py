from __future__ import annotations

from typing import Any, Mapping, Protocol


class OffsetStore(Protocol):
    """
    host 侧的持久化 offset 存储：
    - offset：按 partition 读取最后一次提交的 offset（task 启动时只读使用）
    - commit：记录持久写入下游后，由 host 写入该记录附带的 offset
    """

    def ensure_schema(self) -> None: ...

    def offset(self, partition: Mapping[str, str]) -> Mapping[str, Any] | None: ...

    def commit(self, partition: Mapping[str, str], offset: Mapping[str, Any]) -> None: ...
