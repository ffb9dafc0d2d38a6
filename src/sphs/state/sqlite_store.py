from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Mapping

from ..models import partition_id


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


@dataclass(slots=True)
class SqliteOffsetStore:
    """
    默认 offset 存储：SQLite

    表设计：
    - offsets：partition_key（规范化 JSON）-> offset_json，一个 partition 一行
    """

    sqlite_path: str

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.sqlite_path)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.row_factory = sqlite3.Row
        return conn

    def ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS offsets (
                    partition_key TEXT PRIMARY KEY,
                    offset_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )

    def offset(self, partition: Mapping[str, str]) -> Mapping[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT offset_json FROM offsets WHERE partition_key = ?",
                (partition_id(partition),),
            ).fetchone()
            if not row:
                return None
            value = json.loads(row["offset_json"])
            return value if isinstance(value, dict) else None

    def commit(self, partition: Mapping[str, str], offset: Mapping[str, Any]) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO offsets(partition_key, offset_json, updated_at)
                VALUES(?, ?, ?)
                ON CONFLICT(partition_key) DO UPDATE SET
                    offset_json=excluded.offset_json,
                    updated_at=excluded.updated_at
                """,
                (
                    partition_id(partition),
                    json.dumps(dict(offset), ensure_ascii=False, sort_keys=True),
                    _utc_now_iso(),
                ),
            )
