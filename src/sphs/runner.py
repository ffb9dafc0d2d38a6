from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from .config import AppConfig
from .models import EmittedRecord, partition_id
from .sinks.base import RecordSink
from .sinks.jsonl import JsonlLogSink
from .state.sqlite_store import SqliteOffsetStore
from .state.store import OffsetStore
from .task import PlayHistoryTask, SourceFactory


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TaskRunReport:
    partition: Mapping[str, str]
    cursor_before: int | None
    cursor_after: int | None
    records_emitted: int
    records_delivered: int
    redelivery: bool
    committed_offset: Mapping[str, Any] | None
    error: str | None
    duration_ms: int


def _last_offsets(records: Sequence[EmittedRecord]) -> list[tuple[Mapping[str, str], Mapping[str, Any]]]:
    last: dict[str, tuple[Mapping[str, str], Mapping[str, Any]]] = {}
    for record in records:
        last[partition_id(record.source_partition)] = (record.source_partition, record.source_offset)
    return list(last.values())


@dataclass(slots=True)
class TaskRunner:
    """
    host 侧执行器：驱动一个 task 的单个周期闭环：
    Task.poll -> Sink(持久写入) -> OffsetStore(提交最后一条记录的 offset)

    at-least-once 约定：
    - 只有在整批记录持久写入后才提交 offset
    - 写入失败的批次保留为 pending，下个周期先重投再继续 poll（进程存活期间不丢数据）
    - 进程崩溃时，重启后的 task 从最后提交的 offset 续跑，重复投递由下游容忍
    """

    task: PlayHistoryTask
    sink: RecordSink
    offsets: OffsetStore
    pending: list[EmittedRecord] = field(default_factory=list)

    def run_once(self) -> TaskRunReport:
        start_t = time.monotonic()
        cursor_before = self.task.cursor

        redelivery = bool(self.pending)
        if redelivery:
            records = list(self.pending)
            logger.info("redelivering pending batch: partition=%s records=%d", self.task.partition, len(records))
        else:
            records = self.task.poll()

        delivered, committed, error = self._deliver(records)
        return TaskRunReport(
            partition=self.task.partition,
            cursor_before=cursor_before,
            cursor_after=self.task.cursor,
            records_emitted=0 if redelivery else len(records),
            records_delivered=delivered,
            redelivery=redelivery,
            committed_offset=committed,
            error=error,
            duration_ms=int((time.monotonic() - start_t) * 1000),
        )

    def stop(self) -> None:
        self.task.stop()

    def _deliver(self, records: list[EmittedRecord]) -> tuple[int, Mapping[str, Any] | None, str | None]:
        if not records:
            self.pending = []
            return 0, None, None

        try:
            self.sink.write(records)
        except Exception as e:  # noqa: BLE001
            self.pending = records
            logger.exception(
                "sink write failed, batch kept for retry: sink=%s partition=%s records=%d",
                self.sink.name(),
                self.task.partition,
                len(records),
            )
            return 0, None, f"{type(e).__name__}: {e}"

        self.pending = []
        committed: Mapping[str, Any] | None = None
        try:
            for partition, offset in _last_offsets(records):
                self.offsets.commit(partition, offset)
                committed = offset
        except Exception as e:  # noqa: BLE001
            # 记录已持久写入，offset 未提交只会导致重启后重复投递
            logger.exception("offset commit failed: partition=%s", self.task.partition)
            return len(records), None, f"{type(e).__name__}: {e}"

        return len(records), committed, None


def build_runners(config: AppConfig, *, source_factory: SourceFactory | None = None) -> tuple[TaskRunner, ...]:
    """
    根据配置构建并启动所有 task（每个用户一个 partition）。

    - 统一在这里做"配置 -> 实例"的装配，TaskRunner 内只关注流程编排
    - offset 存储与 sink 在各 task 间共享，二者均可跨线程使用
    - 配置错误（ConfigurationError）直接抛出，启动失败
    """
    store = SqliteOffsetStore(config.sqlite_path)
    store.ensure_schema()
    sink = JsonlLogSink(config.sink_path)

    runners: list[TaskRunner] = []
    for username in config.spotify.usernames:
        task = PlayHistoryTask(store, source_factory=source_factory)
        task.start(config.task_props(username))
        runners.append(TaskRunner(task=task, sink=sink, offsets=store))
    return tuple(runners)
