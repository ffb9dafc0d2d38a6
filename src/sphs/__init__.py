"""
Spotify Play History Source (sphs)

以轮询方式增量拉取 Spotify 用户的最近播放记录（cursor 分页），
按"旧 -> 新"的因果顺序转换为记录写入下游持久化日志，
并依赖已提交的 offset 在重启后断点续跑（at-least-once）。
"""

from .models import CursorState, EmittedRecord, Page, PageCursor

__version__ = "0.1.0"

__all__ = [
    "CursorState",
    "EmittedRecord",
    "Page",
    "PageCursor",
    "__version__",
]
