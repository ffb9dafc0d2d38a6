import pytest

from sphs.errors import TransformError
from sphs.transform import to_record


def _item(played_at: str = "2018-06-27T21:54:43.329Z", track_id: str | None = "4uLU6hMCjMI75M1A2tKUQC") -> dict:
    track: dict = {
        "name": "Never Gonna Give You Up",
        "uri": f"spotify:track:{track_id}",
        "duration_ms": 213573,
        "explicit": False,
        "popularity": 77,
        "album": {"id": "6N9PS4QXF1D0OWPk0Sxtb4", "name": "Whenever You Need Somebody", "images": []},
        "artists": [{"id": "0gxyHStUsqpMadRV0Di1Qt", "name": "Rick Astley", "type": "artist"}],
        "available_markets": ["US"],
    }
    if track_id is not None:
        track["id"] = track_id
    return {
        "track": track,
        "played_at": played_at,
        "context": {"type": "playlist", "uri": "spotify:playlist:abc", "href": "https://api.spotify.com/x"},
    }


def test_maps_key_value_and_offset() -> None:
    record = to_record(_item(), topic="plays", partition={"username": "alice"}, username="alice")

    assert record.topic == "plays"
    assert record.source_partition == {"username": "alice"}
    assert record.source_offset == {"played_at": 1530136483329}
    assert record.key == {"username": "alice", "track_id": "4uLU6hMCjMI75M1A2tKUQC"}
    assert record.value["played_at"] == 1530136483329
    assert record.value["played_at_iso"] == "2018-06-27T21:54:43.329000+00:00"
    assert record.value["track"]["name"] == "Never Gonna Give You Up"
    assert record.value["track"]["album"] == {"id": "6N9PS4QXF1D0OWPk0Sxtb4", "name": "Whenever You Need Somebody"}
    assert record.value["track"]["artists"] == [{"id": "0gxyHStUsqpMadRV0Di1Qt", "name": "Rick Astley"}]
    assert record.value["context"] == {"type": "playlist", "uri": "spotify:playlist:abc"}
    # 未投影的字段不会泄漏到输出
    assert "available_markets" not in record.value["track"]


def test_missing_context_is_none() -> None:
    item = _item()
    item["context"] = None
    record = to_record(item, topic="plays", partition={"username": "alice"}, username="alice")
    assert record.value["context"] is None


@pytest.mark.parametrize(
    "item",
    [
        None,
        "not an object",
        _item(played_at=""),
        _item(played_at="yesterday"),
        _item(track_id=None),
        {"played_at": "2018-06-27T21:54:43.329Z", "track": None},
    ],
)
def test_malformed_items_raise_transform_error(item) -> None:  # noqa: ANN001
    with pytest.raises(TransformError):
        to_record(item, topic="plays", partition={"username": "alice"}, username="alice")
