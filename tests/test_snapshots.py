import unittest
from datetime import UTC, datetime

from polymodel_chat.models import STREAMING_MESSAGE_ID, Message, Session
from polymodel_chat.snapshots import SnapshotFormatError, build_export, loads_snapshot, parse_import_payload
from polymodel_chat.usage import Usage


class SnapshotTests(unittest.TestCase):
    def test_export_skips_streaming_placeholder(self) -> None:
        session = Session(id="s1", title="Chat", created_at=0)
        messages = [
            Message(id="m1", role="user", content="hi", timestamp=1),
            Message(id=STREAMING_MESSAGE_ID, role="assistant", content="partial", timestamp=2),
        ]

        data = build_export(session, "", messages, exported_at=datetime(2026, 1, 1, tzinfo=UTC))

        self.assertEqual(["m1"], [m["id"] for m in data["sessions"][0]["messages"]])

    def test_import_keeps_message_metadata(self) -> None:
        sessions = parse_import_payload(
            {
                "messages": [
                    {"id": "x", "role": "user", "content": "q", "timestamp": 5},
                    {
                        "id": "y",
                        "role": "assistant",
                        "content": "a",
                        "timestamp": 6,
                        "model": "m/free:free",
                        "usage": {"promptTokens": 1, "completionTokens": 2, "estimated": True},
                        "costUsd": 0.01,
                    },
                ]
            },
            now_ms=100,
            id_factory=lambda: "generated",
        )

        reply = sessions[0].messages[1]
        self.assertEqual("m/free:free", reply.model)
        self.assertEqual(Usage(1, 2, 3, estimated=True), reply.usage)
        self.assertEqual(0.01, reply.cost_usd)

    def test_duplicate_message_ids_are_reissued(self) -> None:
        ids = iter(["new-1", "new-2"])
        sessions = parse_import_payload(
            [
                {"id": "dup", "role": "user", "content": "a"},
                {"id": "dup", "role": "assistant", "content": "b"},
            ],
            now_ms=100,
            id_factory=lambda: next(ids),
        )

        self.assertEqual(["dup", "new-1"], [m.id for m in sessions[0].messages])

    def test_list_of_sessions_is_read_as_sessions(self) -> None:
        sessions = parse_import_payload(
            [
                {"title": "One", "messages": [{"role": "user", "content": "a"}]},
                {"title": "Two", "messages": []},
            ],
            now_ms=100,
            id_factory=lambda: "generated",
        )

        self.assertEqual(["One", "Two"], [s.title for s in sessions])

    def test_mixed_session_list_names_the_offending_item(self) -> None:
        with self.assertRaises(SnapshotFormatError) as ctx:
            parse_import_payload(
                [
                    {"title": "One", "messages": [{"role": "user", "content": "a"}]},
                    {"role": "user", "content": "stray message"},
                ],
                now_ms=100,
                id_factory=lambda: "generated",
            )

        self.assertIn("Item 1", str(ctx.exception))

    def test_loads_snapshot_rejects_invalid_json(self) -> None:
        with self.assertRaises(SnapshotFormatError):
            loads_snapshot("{not json")
        self.assertEqual({"a": 1}, loads_snapshot('{"a": 1}'))


if __name__ == "__main__":
    unittest.main()
