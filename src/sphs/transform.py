from __future__ import annotations

from typing import Any, Mapping

from .errors import TransformError
from .models import OFFSET_ID, PARTITION_ID, EmittedRecord, parse_rfc3339_datetime, to_epoch_ms


def _named(obj: Any) -> dict[str, Any] | None:
    if not isinstance(obj, dict):
        return None
    return {"id": obj.get("id"), "name": obj.get("name")}


def _project_track(track: Mapping[str, Any]) -> dict[str, Any]:
    artists = track.get("artists")
    return {
        "id": track.get("id"),
        "name": track.get("name"),
        "uri": track.get("uri"),
        "duration_ms": track.get("duration_ms"),
        "explicit": track.get("explicit"),
        "popularity": track.get("popularity"),
        "album": _named(track.get("album")),
        "artists": [a for a in (_named(x) for x in artists) if a] if isinstance(artists, list) else [],
    }


def _project_context(context: Any) -> dict[str, Any] | None:
    if not isinstance(context, dict):
        return None
    return {"type": context.get("type"), "uri": context.get("uri")}


def to_record(
    item: Any,
    *,
    topic: str,
    partition: Mapping[str, str],
    username: str,
) -> EmittedRecord:
    """
    将一条播放记录映射为输出记录。

    - key：(username, track_id)
    - value：播放记录的结构化投影（只保留稳定字段）
    - offset：{"played_at": 播放时间 epoch 毫秒}

    纯函数；输入不合法时抛 TransformError。
    """
    if not isinstance(item, dict):
        raise TransformError(f"expected play history object, got {type(item).__name__}")

    played_at_s = item.get("played_at")
    if not isinstance(played_at_s, str) or not played_at_s:
        raise TransformError(f"missing played_at: {played_at_s!r}")
    try:
        played_at_dt = parse_rfc3339_datetime(played_at_s)
    except ValueError as e:
        raise TransformError(f"invalid played_at: {played_at_s!r}") from e
    played_at = to_epoch_ms(played_at_dt)

    track = item.get("track")
    if not isinstance(track, dict):
        raise TransformError(f"missing track: played_at={played_at_s}")
    track_id = track.get("id")
    if not isinstance(track_id, str) or not track_id:
        raise TransformError(f"missing track id: played_at={played_at_s}")

    return EmittedRecord(
        topic=topic,
        source_partition=dict(partition),
        source_offset={OFFSET_ID: played_at},
        key={PARTITION_ID: username, "track_id": track_id},
        value={
            "played_at": played_at,
            "played_at_iso": played_at_dt.isoformat(),
            "track": _project_track(track),
            "context": _project_context(item.get("context")),
        },
    )
