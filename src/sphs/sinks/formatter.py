from __future__ import annotations

import json

from ..models import EmittedRecord, utc_now


def format_record_line(record: EmittedRecord) -> str:
    """
    单条记录的落盘格式：一行 JSON（不含换行符）。
    """
    payload = record.to_json_dict()
    payload["written_at"] = utc_now().isoformat()
    return json.dumps(payload, ensure_ascii=False, sort_keys=True, separators=(",", ":"))
