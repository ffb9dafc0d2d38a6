import os
import sys
import tempfile
import unittest


sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src")))


from sphs.bootstrap import load_offset  # noqa: E402
from sphs.state.sqlite_store import SqliteOffsetStore  # noqa: E402


class TestSqliteOffsetStore(unittest.TestCase):
    def test_offset_roundtrip_per_partition(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            db = os.path.join(td, "offsets.sqlite3")
            store = SqliteOffsetStore(db)
            store.ensure_schema()

            self.assertIsNone(store.offset({"username": "alice"}))
            store.commit({"username": "alice"}, {"played_at": 1000})
            store.commit({"username": "bob"}, {"played_at": 5})
            store.commit({"username": "alice"}, {"played_at": 2000})

            self.assertEqual(store.offset({"username": "alice"}), {"played_at": 2000})
            self.assertEqual(store.offset({"username": "bob"}), {"played_at": 5})

    def test_survives_reopen_and_feeds_load_offset(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            db = os.path.join(td, "offsets.sqlite3")
            store = SqliteOffsetStore(db)
            store.ensure_schema()
            store.commit({"username": "alice"}, {"played_at": 1530136483329})

            reopened = SqliteOffsetStore(db)
            reopened.ensure_schema()
            self.assertEqual(load_offset(reopened, {"username": "alice"}), 1530136483329)
