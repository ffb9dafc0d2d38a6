from __future__ import annotations

import os
import threading
from typing import Sequence

from ..models import EmittedRecord
from .formatter import format_record_line


class JsonlLogSink:
    """
    本地追加式日志：每个 topic 一个 <topic>.jsonl 文件。

    - 记录按调用顺序逐行追加
    - write 返回前 flush + fsync，保证返回即持久
    - 多个 task 线程共用同一个 sink，写入由锁串行化
    """

    def __init__(self, root_dir: str) -> None:
        self._root_dir = root_dir
        self._lock = threading.Lock()

    def name(self) -> str:
        return "jsonl"

    def path_for(self, topic: str) -> str:
        safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in topic)
        return os.path.join(self._root_dir, f"{safe}.jsonl")

    def write(self, records: Sequence[EmittedRecord]) -> None:
        if not records:
            return
        by_topic: dict[str, list[str]] = {}
        for record in records:
            by_topic.setdefault(record.topic, []).append(format_record_line(record))

        with self._lock:
            os.makedirs(self._root_dir, exist_ok=True)
            for topic, lines in by_topic.items():
                with open(self.path_for(topic), "a", encoding="utf-8") as f:
                    for line in lines:
                        f.write(line)
                        f.write("\n")
                    f.flush()
                    os.fsync(f.fileno())
