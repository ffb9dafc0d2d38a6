from __future__ import annotations

from typing import Protocol, Sequence

from ..models import EmittedRecord


class RecordSink(Protocol):
    """
    下游日志接口：按给定顺序持久写入一批记录。

    约定：
    - write 返回即表示整批记录已持久化，runner 随后才提交 offset
    - 写入失败抛异常，由 runner 统一捕获并保留该批次待重试
    """

    def name(self) -> str: ...

    def write(self, records: Sequence[EmittedRecord]) -> None: ...
