from .sqlite_store import SqliteOffsetStore
from .store import OffsetStore

__all__ = [
    "OffsetStore",
    "SqliteOffsetStore",
]
