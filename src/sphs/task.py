from __future__ import annotations

import enum
import logging
import threading
from datetime import datetime
from typing import Callable, Mapping

from . import __version__
from .bootstrap import OffsetStorageReader, initial_cursor, load_offset
from .config import TaskConfig
from .errors import MalformedCursor, SourceUnavailable, TransformError
from .http_utils import HttpClient
from .models import CursorState, EmittedRecord, Page, make_partition, utc_now
from .sources.base import PlayHistorySource
from .sources.spotify import SpotifyRecentlyPlayedSource
from .transform import to_record


logger = logging.getLogger(__name__)

SourceFactory = Callable[[TaskConfig], PlayHistorySource]


class TaskState(enum.Enum):
    UNSTARTED = "unstarted"
    IDLE = "idle"
    WAITING = "waiting"
    FETCHING = "fetching"
    TRANSFORMING = "transforming"
    EMITTED = "emitted"
    STOPPED = "stopped"


def default_source_factory(config: TaskConfig) -> PlayHistorySource:
    return SpotifyRecentlyPlayedSource(
        username=config.username,
        http=HttpClient(),
        access_token=config.access_token,
        client_id=config.client_id,
        client_secret=config.client_secret,
        refresh_token=config.refresh_token,
    )


def parse_cursor(value: str) -> int:
    try:
        return int(value.strip())
    except (AttributeError, ValueError) as e:
        raise MalformedCursor(f"unparsable cursor: {value!r}") from e


class PlayHistoryTask:
    """
    增量 cursor 轮询器：一个实例对应一个用户（partition）。

    host 约定：
    - start(props) 一次，随后按节奏反复同步调用 poll()，调用之间不重叠
    - poll() 返回按 旧 -> 新 排好序的记录；空列表表示本周期无输出
    - 每条记录附带 {"played_at": ...} offset，host 在记录持久写入下游后提交该 offset；
      task 自身从不写 offset，重启后从"最后提交"而非"最后发出"的位置续跑（at-least-once）
    - stop() 可在任意时刻调用，在等待期间或下一周期开始前生效
    """

    def __init__(
        self,
        offset_reader: OffsetStorageReader,
        *,
        source_factory: SourceFactory | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._offset_reader = offset_reader
        self._source_factory = source_factory or default_source_factory
        self._clock = clock
        self._stop_event = threading.Event()
        self._state_lock = threading.Lock()
        self._state = TaskState.UNSTARTED
        self._config: TaskConfig | None = None
        self._source: PlayHistorySource | None = None
        self._partition: dict[str, str] = {}
        self._cursor: CursorState | None = None

    @property
    def state(self) -> TaskState:
        return self._state

    @property
    def partition(self) -> Mapping[str, str]:
        return dict(self._partition)

    @property
    def cursor(self) -> int | None:
        return self._cursor.played_at if self._cursor is not None else None

    def version(self) -> str:
        return __version__

    def start(self, props: Mapping[str, str] | None) -> None:
        if self._state is not TaskState.UNSTARTED:
            raise RuntimeError(f"task cannot be started from state {self._state.value}")
        logger.info("starting PlayHistoryTask v%s", self.version())

        config = TaskConfig.from_props(props)
        self._config = config
        self._source = self._source_factory(config)
        self._partition = make_partition(config.username)

        durable = load_offset(self._offset_reader, self._partition)
        played_at = initial_cursor(durable, now=self._clock(), lookback_months=config.lookback_months)
        self._cursor = CursorState(partition=dict(self._partition), played_at=played_at)
        self._state = TaskState.IDLE

        logger.info(
            "task configured: partition=%s source=%s topic=%s polling_interval=%ds offset=%d resumed=%s",
            self._partition,
            self._source.key(),
            config.topic,
            config.polling_interval_seconds,
            played_at,
            durable is not None,
        )

    def stop(self) -> None:
        if self._state is TaskState.STOPPED:
            return
        logger.info("stopping PlayHistoryTask: partition=%s", self._partition)
        with self._state_lock:
            self._state = TaskState.STOPPED
        self._stop_event.set()

    def poll(self) -> list[EmittedRecord]:
        if self._state is TaskState.UNSTARTED:
            raise RuntimeError("task not started")
        if self._state is TaskState.STOPPED:
            return []
        assert self._config is not None and self._source is not None and self._cursor is not None

        logger.debug("polling in %d seconds: partition=%s", self._config.polling_interval_seconds, self._partition)
        self._set_state(TaskState.WAITING)
        if self._stop_event.wait(self._config.polling_interval_seconds):
            return []

        self._set_state(TaskState.FETCHING)
        cursor_before = self._cursor.played_at
        try:
            page = self._source.fetch(cursor_before)
        except SourceUnavailable as e:
            logger.warning(
                "fetch failed, retrying next cycle: partition=%s cursor=%d error=%s",
                self._partition,
                cursor_before,
                e,
            )
            self._finish_cycle()
            return []

        # 先推进本地 cursor（最新已发出的 offset 会随记录由 host 持久化）
        self._update_local_offset(page)

        self._set_state(TaskState.TRANSFORMING)
        records = self._transform(page)

        self._set_state(TaskState.EMITTED)
        logger.info(
            "poll done: partition=%s fetched=%d emitted=%d cursor_before=%d cursor_after=%d",
            self._partition,
            len(page.items),
            len(records),
            cursor_before,
            self._cursor.played_at,
        )
        self._finish_cycle()
        return records

    def _set_state(self, state: TaskState) -> None:
        # STOPPED 为终态，周期内的状态切换不能覆盖它
        with self._state_lock:
            if self._state is TaskState.STOPPED:
                return
            self._state = state

    def _finish_cycle(self) -> None:
        self._set_state(TaskState.IDLE)

    def _update_local_offset(self, page: Page) -> None:
        """
        从分页 cursor 中解析 after，更新本地 cursor。

        - 无结果时 cursor 可能整体缺失，before/after 也不保证同时存在
        - 多个 cursor 条目时按迭代顺序取最后一个有效的 after
        - 无法解析或比当前值更小的 after 被忽略，本周期不推进
        """
        assert self._cursor is not None
        for entry in page.cursors:
            if entry is None or entry.after is None:
                continue
            try:
                candidate = parse_cursor(entry.after)
            except MalformedCursor as e:
                logger.warning("ignoring cursor: partition=%s error=%s", self._partition, e)
                continue
            if candidate < self._cursor.played_at:
                logger.warning(
                    "ignoring backwards cursor: partition=%s current=%d after=%d",
                    self._partition,
                    self._cursor.played_at,
                    candidate,
                )
                continue
            self._cursor = self._cursor.advance(candidate)

    def _transform(self, page: Page) -> list[EmittedRecord]:
        assert self._config is not None
        records: list[EmittedRecord] = []
        # API 返回 newest-first，反转为 oldest-first：按顺序提交时任何已提交记录之前的记录都已提交
        for item in reversed(page.items):
            try:
                records.append(
                    to_record(
                        item,
                        topic=self._config.topic,
                        partition=self._partition,
                        username=self._config.username,
                    )
                )
            except TransformError as e:
                logger.warning("skipping play history item: partition=%s error=%s", self._partition, e)
        return records
