import shutil
import unittest
from pathlib import Path
from uuid import uuid4

from polymodel_chat.storage import InMemoryStorage, KeyValueStorage, SqliteStorage

PROJECT_ROOT = Path(__file__).resolve().parents[1]


class InMemoryStorageTests(unittest.TestCase):
    def test_values_are_copied(self) -> None:
        storage = InMemoryStorage()
        value = [{"id": "a"}]
        storage.set("k", value)
        value.append({"id": "b"})
        storage.get("k").append({"id": "c"})

        self.assertEqual([{"id": "a"}], storage.get("k"))

    def test_remove_missing_key_is_noop(self) -> None:
        storage = InMemoryStorage({"k": 1})
        storage.remove("other")
        storage.remove("k")
        self.assertEqual("default", storage.get("k", "default"))

    def test_satisfies_protocol(self) -> None:
        self.assertIsInstance(InMemoryStorage(), KeyValueStorage)


class SqliteStorageTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp_dir = PROJECT_ROOT / ".test-artifacts" / f"sqlite-{uuid4().hex}"
        self._db_path = self._tmp_dir / "nested" / "chat.db"
        self._storage = SqliteStorage(str(self._db_path))

    def tearDown(self) -> None:
        self._storage.close()
        shutil.rmtree(self._tmp_dir, ignore_errors=True)

    def test_round_trips_json_values(self) -> None:
        self._storage.set("chat_sessions", [{"id": "s1", "title": "Café", "createdAt": 1}])
        self._storage.set("cost_per_1k", 0.5)

        self.assertEqual([{"id": "s1", "title": "Café", "createdAt": 1}], self._storage.get("chat_sessions"))
        self.assertEqual(0.5, self._storage.get("cost_per_1k"))
        self.assertIsNone(self._storage.get("missing"))

    def test_set_overwrites_and_remove_deletes(self) -> None:
        self._storage.set("k", "one")
        self._storage.set("k", "two")
        self.assertEqual("two", self._storage.get("k"))

        self._storage.remove("k")
        self.assertEqual([], self._storage.keys())

    def test_values_persist_across_connections(self) -> None:
        self._storage.set("current_session_id", "s1")
        self._storage.close()

        self._storage = SqliteStorage(str(self._db_path))
        self.assertEqual("s1", self._storage.get("current_session_id"))

    def test_in_memory_database(self) -> None:
        storage = SqliteStorage(":memory:")
        storage.set("k", {"a": 1})
        self.assertEqual({"a": 1}, storage.get("k"))
        storage.close()


if __name__ == "__main__":
    unittest.main()
