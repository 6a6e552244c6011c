"""Portable session snapshots: JSON export/import and Markdown transcripts.

Export shape::

    {"version": 1, "app": "polymodel-chat", "exportedAt": "<ISO-8601>",
     "sessions": [{"title", "createdAt", "systemPrompt", "messages": [...]}]}

Import also accepts a bare session object or a bare message array.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from polymodel_chat.models import MESSAGE_ROLES, STREAMING_MESSAGE_ID, Message, Session
from polymodel_chat.titles import IMPORTED_TITLE, derive_title
from polymodel_chat.usage import Usage

EXPORT_VERSION = 1
APP_NAME = "polymodel-chat"

_ROLE_HEADINGS = {"user": "User", "assistant": "Assistant", "error": "Error"}


class SnapshotFormatError(ValueError):
    pass


@dataclass
class ImportedSession:
    title: str
    created_at: int
    system_prompt: str
    messages: list[Message] = field(default_factory=list)


def loads_snapshot(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError as ex:
        raise SnapshotFormatError(f"Import file is not valid JSON: {ex}") from ex


def _iso(epoch_ms: int) -> str:
    return datetime.fromtimestamp(epoch_ms / 1000, UTC).isoformat(timespec="seconds")


def _number(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _parse_message(
    raw: object,
    seen_ids: set[str],
    now_ms: int,
    id_factory: Callable[[], str],
) -> Message | None:
    if not isinstance(raw, dict):
        return None
    role = raw.get("role")
    content = raw.get("content")
    if role not in MESSAGE_ROLES or not isinstance(content, str):
        return None

    message_id = raw.get("id")
    if not isinstance(message_id, str) or not message_id or message_id in seen_ids:
        message_id = id_factory()
    seen_ids.add(message_id)

    timestamp = _number(raw.get("timestamp"))
    usage = raw.get("usage")
    cost = _number(raw.get("costUsd"))
    model = raw.get("model")
    return Message(
        id=message_id,
        role=role,
        content=content,
        timestamp=int(timestamp) if timestamp is not None else now_ms,
        model=model if isinstance(model, str) and model else None,
        usage=Usage.from_dict(usage) if isinstance(usage, dict) else None,
        cost_usd=cost,
    )


def _parse_session(
    raw: dict,
    now_ms: int,
    id_factory: Callable[[], str],
) -> ImportedSession | None:
    raw_messages = raw.get("messages", [])
    if not isinstance(raw_messages, list):
        return None

    seen_ids: set[str] = set()
    messages = [
        message
        for message in (_parse_message(m, seen_ids, now_ms, id_factory) for m in raw_messages)
        if message is not None
    ]
    if raw_messages and not messages:
        return None

    title = raw.get("title")
    created_at = _number(raw.get("createdAt"))
    system_prompt = raw.get("systemPrompt")
    return ImportedSession(
        title=derive_title(title if isinstance(title, str) else "", IMPORTED_TITLE),
        created_at=int(created_at) if created_at is not None else now_ms,
        system_prompt=system_prompt if isinstance(system_prompt, str) else "",
        messages=messages,
    )


def _looks_like_session(item: object) -> bool:
    return isinstance(item, dict) and "messages" in item


def _raw_sessions(payload: object) -> list[object]:
    if isinstance(payload, dict):
        if isinstance(payload.get("sessions"), list):
            return payload["sessions"]
        if "messages" in payload:
            return [payload]
    if isinstance(payload, list):
        if not payload:
            raise SnapshotFormatError("No chats found to import.")
        if not any(_looks_like_session(item) for item in payload):
            return [{"messages": payload}]
        for index, item in enumerate(payload):
            if not _looks_like_session(item):
                raise SnapshotFormatError(
                    f"Item {index} of the chat list is not a chat (expected an object with \"messages\")."
                )
        return payload
    raise SnapshotFormatError("Unrecognized import format: expected an export file, a chat, or a message list.")


def parse_import_payload(
    payload: object,
    *,
    now_ms: int,
    id_factory: Callable[[], str],
) -> list[ImportedSession]:
    """Validate an import payload without touching storage.

    Invalid messages are dropped; sessions left with nothing importable are
    skipped. Raises ``SnapshotFormatError`` if nothing can be imported.
    """
    sessions = [
        session
        for session in (
            _parse_session(raw, now_ms, id_factory) for raw in _raw_sessions(payload) if isinstance(raw, dict)
        )
        if session is not None
    ]
    if not sessions:
        raise SnapshotFormatError("No chats found to import.")
    return sessions


def _exportable(messages: list[Message]) -> list[Message]:
    return [m for m in messages if m.id != STREAMING_MESSAGE_ID]


def build_export(
    session: Session,
    system_prompt: str,
    messages: list[Message],
    *,
    exported_at: datetime | None = None,
) -> dict[str, Any]:
    exported_at = exported_at or datetime.now(UTC)
    return {
        "version": EXPORT_VERSION,
        "app": APP_NAME,
        "exportedAt": exported_at.isoformat(timespec="seconds"),
        "sessions": [
            {
                "title": session.title,
                "createdAt": session.created_at,
                "systemPrompt": system_prompt,
                "messages": [m.to_dict() for m in _exportable(messages)],
            }
        ],
    }


def render_markdown(
    session: Session,
    system_prompt: str,
    messages: list[Message],
    *,
    exported_at: datetime | None = None,
) -> str:
    exported_at = exported_at or datetime.now(UTC)
    lines = [
        f"# {session.title}",
        "",
        f"_Created: {_iso(session.created_at)} · Exported: {exported_at.isoformat(timespec='seconds')}_",
        "",
    ]
    if system_prompt:
        lines += ["## System Prompt", "", system_prompt, ""]

    for message in _exportable(messages):
        heading = _ROLE_HEADINGS.get(message.role, message.role.title())
        if message.model and message.role == "assistant":
            heading += f" ({message.model})"
        lines += [f"### {heading} · {_iso(message.timestamp)}", "", message.content, ""]

    return "\n".join(lines).rstrip() + "\n"
