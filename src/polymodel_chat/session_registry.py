from __future__ import annotations

import time
from collections.abc import Callable
from datetime import datetime
from typing import Any
from uuid import uuid4

from loguru import logger

from polymodel_chat.models import Message, Session
from polymodel_chat.snapshots import build_export, parse_import_payload, render_markdown
from polymodel_chat.storage import (
    CURRENT_SESSION_KEY,
    SESSIONS_KEY,
    KeyValueStorage,
    messages_key,
    system_prompt_key,
)
from polymodel_chat.titles import DEFAULT_TITLE, derive_title


class SessionNotFoundError(KeyError):
    def __init__(self, session_id: str):
        super().__init__(session_id)
        self.session_id = session_id

    def __str__(self) -> str:
        return f"Session does not exist: {self.session_id}"


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return str(uuid4())


class SessionRegistry:
    def __init__(
        self,
        storage: KeyValueStorage,
        *,
        clock: Callable[[], int] = now_ms,
        id_factory: Callable[[], str] = new_id,
    ):
        self._storage = storage
        self._clock = clock
        self._id_factory = id_factory

    # -- metadata --

    def list_sessions(self) -> list[Session]:
        raw = self._storage.get(SESSIONS_KEY, [])
        if not isinstance(raw, list):
            return []
        return [Session.from_dict(item) for item in raw if isinstance(item, dict) and "id" in item]

    def get(self, session_id: str) -> Session | None:
        for session in self.list_sessions():
            if session.id == session_id:
                return session
        return None

    @property
    def active_session_id(self) -> str | None:
        value = self._storage.get(CURRENT_SESSION_KEY)
        return value if isinstance(value, str) and value else None

    @property
    def active_session(self) -> Session | None:
        session_id = self.active_session_id
        return self.get(session_id) if session_id else None

    def create(self) -> Session:
        session = Session(id=self._id_factory(), title=DEFAULT_TITLE, created_at=self._clock())
        self._save([session, *self.list_sessions()])
        self._storage.set(CURRENT_SESSION_KEY, session.id)
        logger.info(f"Created session {session.id}")
        return session

    def select(self, session_id: str) -> Session:
        session = self.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        self._storage.set(CURRENT_SESSION_KEY, session.id)
        return session

    def ensure_active(self) -> Session:
        """Return the active session, selecting the newest or creating one if needed."""
        active = self.active_session
        if active is not None:
            return active
        sessions = self.list_sessions()
        if sessions:
            return self.select(sessions[0].id)
        return self.create()

    def rename(self, session_id: str, title: str) -> str:
        sessions = self.list_sessions()
        normalized = derive_title(title)
        for session in sessions:
            if session.id == session_id:
                session.title = normalized
                self._save(sessions)
                return normalized
        raise SessionNotFoundError(session_id)

    def delete(self, session_id: str) -> bool:
        sessions = self.list_sessions()
        remaining = [s for s in sessions if s.id != session_id]
        self._save(remaining)
        self._storage.remove(messages_key(session_id))
        self._storage.remove(system_prompt_key(session_id))
        if self.active_session_id == session_id:
            self._storage.remove(CURRENT_SESSION_KEY)
        deleted = len(remaining) != len(sessions)
        if deleted:
            logger.info(f"Deleted session {session_id}")
        return deleted

    # -- owned records --

    def load_messages(self, session_id: str) -> list[Message]:
        raw = self._storage.get(messages_key(session_id), [])
        if not isinstance(raw, list):
            return []
        messages: list[Message] = []
        for item in raw:
            try:
                messages.append(Message.from_dict(item))
            except (KeyError, TypeError, ValueError) as ex:
                logger.warning(f"Skipping unreadable stored message in session {session_id}: {ex}")
        return messages

    def save_messages(self, session_id: str, messages: list[Message]) -> None:
        self._storage.set(messages_key(session_id), [m.to_dict() for m in messages])

    def load_system_prompt(self, session_id: str) -> str:
        value = self._storage.get(system_prompt_key(session_id), "")
        return value if isinstance(value, str) else ""

    def save_system_prompt(self, session_id: str, prompt: str) -> None:
        if prompt:
            self._storage.set(system_prompt_key(session_id), prompt)
        else:
            self._storage.remove(system_prompt_key(session_id))

    # -- import / export --

    def import_sessions(self, payload: Any) -> int:
        """Add every importable session in ``payload`` under a fresh id.

        Nothing is written unless the whole payload validates.
        """
        imported = parse_import_payload(payload, now_ms=self._clock(), id_factory=self._id_factory)

        new_sessions: list[Session] = []
        for item in imported:
            session = Session(id=self._id_factory(), title=item.title, created_at=item.created_at)
            self.save_messages(session.id, item.messages)
            self.save_system_prompt(session.id, item.system_prompt)
            new_sessions.append(session)

        self._save([*new_sessions, *self.list_sessions()])
        self._storage.set(CURRENT_SESSION_KEY, new_sessions[0].id)
        logger.info(f"Imported {len(new_sessions)} session(s)")
        return len(new_sessions)

    def export_session(self, session_id: str, *, exported_at: datetime | None = None) -> dict[str, Any]:
        session = self._require(session_id)
        return build_export(
            session,
            self.load_system_prompt(session_id),
            self.load_messages(session_id),
            exported_at=exported_at,
        )

    def export_markdown(self, session_id: str, *, exported_at: datetime | None = None) -> str:
        session = self._require(session_id)
        return render_markdown(
            session,
            self.load_system_prompt(session_id),
            self.load_messages(session_id),
            exported_at=exported_at,
        )

    def _require(self, session_id: str) -> Session:
        session = self.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def _save(self, sessions: list[Session]) -> None:
        self._storage.set(SESSIONS_KEY, [s.to_dict() for s in sessions])
