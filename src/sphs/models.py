from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Mapping


PARTITION_ID = "username"
OFFSET_ID = "played_at"

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def parse_rfc3339_datetime(value: str) -> datetime:
    """
    解析常见的 RFC3339/ISO8601 时间串为带 tzinfo 的 datetime。

    兼容：
    - 2026-02-10T12:34:56Z
    - 2026-02-10T12:34:56+00:00
    - 2026-02-10T12:34:56.123Z
    """
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def to_epoch_ms(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return (dt - _EPOCH) // timedelta(milliseconds=1)


def make_partition(username: str) -> dict[str, str]:
    return {PARTITION_ID: username}


def partition_id(partition: Mapping[str, str]) -> str:
    """
    Partition Key 的规范化字符串形式（排序后的 JSON），用作存储主键。
    """
    return json.dumps(dict(partition), ensure_ascii=False, sort_keys=True, separators=(",", ":"))


@dataclass(frozen=True, slots=True)
class CursorState:
    """
    断点位置：played_at（epoch 毫秒）之前（含）的事件均已拉取。

    约束：
    - 同一 partition 生命周期内单调不减
    - 只由 Poller 在成功拉取并解析出 after cursor 后推进
    """

    partition: Mapping[str, str]
    played_at: int

    def advance(self, value: int) -> CursorState:
        if value < self.played_at:
            raise ValueError(f"cursor must not move backwards: current={self.played_at} candidate={value}")
        return CursorState(partition=self.partition, played_at=value)


@dataclass(frozen=True, slots=True)
class PageCursor:
    before: str | None = None
    after: str | None = None


@dataclass(frozen=True, slots=True)
class Page:
    """
    一次拉取的结果。

    items:
      - 外部 API 原样返回的事件（newest-first）
    cursors:
      - 分页 cursor 元数据；空结果时可能为空，before/after 任一都可能缺失
    """

    items: tuple[Mapping[str, Any], ...] = ()
    cursors: tuple[PageCursor, ...] = ()


@dataclass(frozen=True, slots=True)
class EmittedRecord:
    """
    输出到下游日志的记录，产生后不可变。

    source_offset 随记录一起交给 host；记录被持久写入后，
    该 offset 即成为此 partition 新的断点位置。
    """

    topic: str
    source_partition: Mapping[str, str]
    source_offset: Mapping[str, int]
    key: Mapping[str, str]
    value: Mapping[str, Any]

    @property
    def played_at(self) -> int:
        return int(self.source_offset[OFFSET_ID])

    def to_json_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "partition": dict(self.source_partition),
            "offset": dict(self.source_offset),
            "key": dict(self.key),
            "value": dict(self.value),
        }
