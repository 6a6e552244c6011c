import itertools
import unittest
from datetime import UTC, datetime

from polymodel_chat.models import Message
from polymodel_chat.session_registry import SessionNotFoundError, SessionRegistry
from polymodel_chat.snapshots import SnapshotFormatError
from polymodel_chat.storage import (
    CURRENT_SESSION_KEY,
    InMemoryStorage,
    messages_key,
    system_prompt_key,
)


class SessionRegistryTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.storage = InMemoryStorage()
        ids = itertools.count(1)
        self.registry = SessionRegistry(
            self.storage,
            clock=lambda: 1_700_000_000_000,
            id_factory=lambda: f"sid-{next(ids)}",
        )


class SessionLifecycleTests(SessionRegistryTestCase):
    def test_create_prepends_and_activates(self) -> None:
        first = self.registry.create()
        second = self.registry.create()

        self.assertEqual("New Chat", second.title)
        self.assertEqual(1_700_000_000_000, second.created_at)
        self.assertEqual([second.id, first.id], [s.id for s in self.registry.list_sessions()])
        self.assertEqual(second.id, self.registry.active_session_id)

    def test_select_switches_active_session(self) -> None:
        first = self.registry.create()
        self.registry.create()

        self.registry.select(first.id)

        self.assertEqual(first.id, self.registry.active_session_id)

    def test_select_unknown_session_raises(self) -> None:
        self.registry.create()
        with self.assertRaises(SessionNotFoundError):
            self.registry.select("missing")

    def test_delete_removes_owned_records_and_clears_active(self) -> None:
        keep = self.registry.create()
        doomed = self.registry.create()
        self.registry.save_messages(doomed.id, [Message(id="m1", role="user", content="hi", timestamp=1)])
        self.registry.save_system_prompt(doomed.id, "Be nice.")

        self.assertTrue(self.registry.delete(doomed.id))

        self.assertEqual([keep.id], [s.id for s in self.registry.list_sessions()])
        self.assertIsNone(self.registry.active_session_id)
        self.assertNotIn(messages_key(doomed.id), self.storage.keys())
        self.assertNotIn(system_prompt_key(doomed.id), self.storage.keys())
        self.assertNotIn(CURRENT_SESSION_KEY, self.storage.keys())

    def test_delete_inactive_session_keeps_active_pointer(self) -> None:
        other = self.registry.create()
        active = self.registry.create()

        self.registry.delete(other.id)

        self.assertEqual(active.id, self.registry.active_session_id)

    def test_rename_applies_title_policy(self) -> None:
        session = self.registry.create()

        title = self.registry.rename(session.id, "planning the quarterly offsite agenda")

        self.assertEqual("planning the quarterly offsite...", title)
        self.assertEqual(title, self.registry.get(session.id).title)

    def test_rename_unknown_session_raises(self) -> None:
        with self.assertRaises(SessionNotFoundError):
            self.registry.rename("missing", "title")

    def test_ensure_active_selects_newest_or_creates(self) -> None:
        created = self.registry.ensure_active()
        self.assertEqual(created.id, self.registry.active_session_id)

        self.registry.create()
        newest = self.registry.list_sessions()[0]
        self.storage.remove(CURRENT_SESSION_KEY)
        self.assertEqual(newest.id, self.registry.ensure_active().id)

    def test_empty_system_prompt_removes_key(self) -> None:
        session = self.registry.create()
        self.registry.save_system_prompt(session.id, "x")
        self.registry.save_system_prompt(session.id, "")
        self.assertNotIn(system_prompt_key(session.id), self.storage.keys())


class ImportTests(SessionRegistryTestCase):
    def test_imports_valid_sessions_and_drops_invalid_messages(self) -> None:
        existing = self.registry.create()
        payload = {
            "version": 1,
            "app": "polymodel-chat",
            "exportedAt": "2026-01-01T00:00:00+00:00",
            "sessions": [
                {
                    "title": "Trip planning",
                    "createdAt": 1_600_000_000_000,
                    "systemPrompt": "You are a travel agent.",
                    "messages": [
                        {"id": "a", "role": "user", "content": "Where to?", "timestamp": 1},
                        {"id": "b", "role": "assistant", "content": "Lisbon.", "timestamp": 2, "model": "x/y"},
                    ],
                },
                {
                    "title": "Recipes",
                    "messages": [
                        {"id": "c", "role": "user", "content": "Pasta?", "timestamp": 3},
                        {"id": "d", "role": "system", "content": "not allowed", "timestamp": 4},
                    ],
                },
                {"title": "Broken", "messages": [{"role": "tool", "content": "nope"}]},
            ],
        }

        count = self.registry.import_sessions(payload)

        self.assertEqual(2, count)
        sessions = self.registry.list_sessions()
        self.assertEqual(["Trip planning", "Recipes", "New Chat"], [s.title for s in sessions])
        self.assertEqual(sessions[0].id, self.registry.active_session_id)
        self.assertNotIn(existing.id, [sessions[0].id, sessions[1].id])
        self.assertEqual(1_600_000_000_000, sessions[0].created_at)
        self.assertEqual("You are a travel agent.", self.registry.load_system_prompt(sessions[0].id))
        recipes = self.registry.load_messages(sessions[1].id)
        self.assertEqual([("user", "Pasta?")], [(m.role, m.content) for m in recipes])

    def test_imported_sessions_never_reuse_source_ids(self) -> None:
        original = self.registry.create()
        exported = self.registry.export_session(original.id)
        exported["sessions"][0]["id"] = original.id

        self.registry.import_sessions(exported)

        ids = [s.id for s in self.registry.list_sessions()]
        self.assertEqual(2, len(set(ids)))

    def test_bare_session_object(self) -> None:
        count = self.registry.import_sessions({"messages": [{"role": "user", "content": "hi"}]})

        self.assertEqual(1, count)
        session = self.registry.active_session
        self.assertEqual("Imported Chat", session.title)
        messages = self.registry.load_messages(session.id)
        self.assertEqual(1, len(messages))
        self.assertTrue(messages[0].id)
        self.assertEqual(1_700_000_000_000, messages[0].timestamp)

    def test_bare_message_array(self) -> None:
        count = self.registry.import_sessions([
            {"role": "user", "content": "hi"},
            {"role": "error", "content": "API Error: 500"},
            {"role": "user", "content": 42},
        ])

        self.assertEqual(1, count)
        messages = self.registry.load_messages(self.registry.active_session_id)
        self.assertEqual(["user", "error"], [m.role for m in messages])

    def test_unrecognized_payload_raises_without_writing(self) -> None:
        self.registry.create()
        before = {key: self.storage.get(key) for key in self.storage.keys()}

        for payload in ("just text", 42, {"foo": "bar"}, []):
            with self.subTest(payload=payload):
                with self.assertRaises(SnapshotFormatError):
                    self.registry.import_sessions(payload)

        self.assertEqual(before, {key: self.storage.get(key) for key in self.storage.keys()})

    def test_payload_without_importable_sessions_raises(self) -> None:
        with self.assertRaises(SnapshotFormatError):
            self.registry.import_sessions({"sessions": [{"messages": [{"role": "bot", "content": "x"}]}, "junk"]})
        self.assertEqual([], self.registry.list_sessions())


class ExportTests(SessionRegistryTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.session = self.registry.create()
        self.registry.rename(self.session.id, "Weather talk")
        self.registry.save_system_prompt(self.session.id, "Answer briefly.")
        self.registry.save_messages(
            self.session.id,
            [
                Message(id="m1", role="user", content="Is it raining?", timestamp=1_700_000_000_000),
                Message(id="m2", role="assistant", content="No.", timestamp=1_700_000_001_000, model="x/y:free"),
            ],
        )
        self.exported_at = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def test_json_export_shape(self) -> None:
        data = self.registry.export_session(self.session.id, exported_at=self.exported_at)

        self.assertEqual(1, data["version"])
        self.assertEqual("polymodel-chat", data["app"])
        self.assertEqual("2026-03-01T12:00:00+00:00", data["exportedAt"])
        self.assertEqual(1, len(data["sessions"]))
        exported = data["sessions"][0]
        self.assertEqual("Weather talk", exported["title"])
        self.assertEqual(1_700_000_000_000, exported["createdAt"])
        self.assertEqual("Answer briefly.", exported["systemPrompt"])
        self.assertEqual(["m1", "m2"], [m["id"] for m in exported["messages"]])
        self.assertEqual("x/y:free", exported["messages"][1]["model"])

    def test_export_then_import_copies_the_conversation(self) -> None:
        self.registry.import_sessions(self.registry.export_session(self.session.id))

        copy = self.registry.active_session
        self.assertNotEqual(self.session.id, copy.id)
        self.assertEqual("Weather talk", copy.title)
        self.assertEqual(
            [(m.role, m.content) for m in self.registry.load_messages(self.session.id)],
            [(m.role, m.content) for m in self.registry.load_messages(copy.id)],
        )

    def test_markdown_transcript(self) -> None:
        text = self.registry.export_markdown(self.session.id, exported_at=self.exported_at)

        self.assertTrue(text.startswith("# Weather talk\n"))
        self.assertIn("## System Prompt\n\nAnswer briefly.", text)
        self.assertIn("### User · 2023-11-14T22:13:20+00:00\n\nIs it raining?", text)
        self.assertIn("### Assistant (x/y:free) · 2023-11-14T22:13:21+00:00\n\nNo.", text)

    def test_export_unknown_session_raises(self) -> None:
        with self.assertRaises(SessionNotFoundError):
            self.registry.export_session("missing")


if __name__ == "__main__":
    unittest.main()
