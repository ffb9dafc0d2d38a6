from .base import RecordSink
from .formatter import format_record_line
from .jsonl import JsonlLogSink

__all__ = [
    "JsonlLogSink",
    "RecordSink",
    "format_record_line",
]
