from __future__ import annotations

from collections.abc import Callable

from loguru import logger

from polymodel_chat.completion_engine import AbortHandle, StreamingCompletionEngine
from polymodel_chat.models import (
    ROLE_ASSISTANT,
    ROLE_ERROR,
    ROLE_USER,
    STREAMING_MESSAGE_ID,
    Message,
)
from polymodel_chat.preferences import Preferences
from polymodel_chat.session_registry import SessionRegistry, new_id, now_ms
from polymodel_chat.state import StateContainer

NO_CONTENT_PLACEHOLDER = "No content received."
GENERIC_ERROR_MESSAGE = "An unexpected error occurred."


def _last_user_index(messages: list[Message]) -> int | None:
    for index in range(len(messages) - 1, -1, -1):
        if messages[index].role == ROLE_USER:
            return index
    return None


def _first_user_index(messages: list[Message]) -> int | None:
    for index, message in enumerate(messages):
        if message.role == ROLE_USER:
            return index
    return None


class ConversationStore:
    """Message history of the active session, and the send/regenerate/edit flows over it.

    Each flow persists the user-side change first, streams the completion
    while publishing deltas through the state container, then appends exactly
    one terminal message (assistant reply, placeholder or error). A request
    whose handle was cancelled appends nothing, even if it then fails.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        engine: StreamingCompletionEngine,
        preferences: Preferences,
        *,
        state: StateContainer | None = None,
        clock: Callable[[], int] = now_ms,
        id_factory: Callable[[], str] = new_id,
    ):
        self._registry = registry
        self._engine = engine
        self._preferences = preferences
        self._state = state or StateContainer()
        self._clock = clock
        self._id_factory = id_factory
        self._handle: AbortHandle | None = None

    @property
    def state(self) -> StateContainer:
        return self._state

    @property
    def session_id(self) -> str | None:
        return self._registry.active_session_id

    @property
    def is_streaming(self) -> bool:
        return self._handle is not None

    @property
    def messages(self) -> list[Message]:
        session_id = self.session_id
        return self._registry.load_messages(session_id) if session_id else []

    @property
    def system_prompt(self) -> str:
        session_id = self.session_id
        return self._registry.load_system_prompt(session_id) if session_id else ""

    def set_system_prompt(self, prompt: str) -> None:
        session_id = self.session_id
        if session_id is None:
            raise ValueError("No active session")
        self._registry.save_system_prompt(session_id, prompt.strip())

    def displayed_messages(self) -> list[Message]:
        messages = self.messages
        current = self._state.state
        if current.streaming_content and current.session_id == self.session_id:
            messages.append(
                Message(
                    id=STREAMING_MESSAGE_ID,
                    role=ROLE_ASSISTANT,
                    content=current.streaming_content,
                    timestamp=self._clock(),
                )
            )
        return messages

    async def send_message(self, text: str) -> Message | None:
        trimmed = text.strip()
        session_id = self.session_id
        credential = self._preferences.credential
        if not trimmed or session_id is None or credential is None:
            return None

        history = self._registry.load_messages(session_id)
        if not history:
            self._registry.rename(session_id, trimmed)

        history.append(
            Message(id=self._id_factory(), role=ROLE_USER, content=trimmed, timestamp=self._clock())
        )
        self._registry.save_messages(session_id, history)
        return await self._complete(session_id, history, credential)

    async def regenerate(self) -> Message | None:
        session_id = self.session_id
        credential = self._preferences.credential
        if session_id is None or credential is None:
            return None

        history = self._registry.load_messages(session_id)
        index = _last_user_index(history)
        if index is None:
            return None

        history = history[: index + 1]
        self._registry.save_messages(session_id, history)
        return await self._complete(session_id, history, credential)

    async def edit_last_user_message(self, text: str) -> Message | None:
        trimmed = text.strip()
        session_id = self.session_id
        credential = self._preferences.credential
        if not trimmed or session_id is None or credential is None:
            return None

        history = self._registry.load_messages(session_id)
        index = _last_user_index(history)
        if index is None:
            return None

        history[index] = history[index].with_content(trimmed, self._clock())
        history = history[: index + 1]
        self._registry.save_messages(session_id, history)
        if index == _first_user_index(history):
            self._registry.rename(session_id, trimmed)
        return await self._complete(session_id, history, credential)

    def stop(self) -> None:
        if self._handle is not None:
            self._handle.cancel()

    def clear(self) -> None:
        self.stop()
        session_id = self.session_id
        if session_id is not None:
            self._registry.save_messages(session_id, [])
        self._state.update(streaming_content="")

    def _api_messages(self, session_id: str, history: list[Message]) -> list[dict]:
        api_messages: list[dict] = []
        system_prompt = self._registry.load_system_prompt(session_id)
        if system_prompt:
            api_messages.append({"role": "system", "content": system_prompt})
        for message in history:
            # The completion API has no error role.
            role = ROLE_ASSISTANT if message.role == ROLE_ERROR else message.role
            api_messages.append({"role": role, "content": message.content})
        return api_messages

    async def _complete(self, session_id: str, history: list[Message], credential: str) -> Message | None:
        model = self._preferences.selected_model
        api_messages = self._api_messages(session_id, history)

        if self._handle is not None:
            self._handle.cancel()
        handle = AbortHandle()
        self._handle = handle
        self._state.update(session_id=session_id, is_loading=True, streaming_content="")

        def on_delta(_delta: str, content: str) -> None:
            if self._handle is handle:
                self._state.update(streaming_content=content)

        terminal: Message | None
        try:
            result = await self._engine.stream_completion(
                api_messages,
                model,
                credential,
                on_delta=on_delta,
                handle=handle,
            )
        except Exception as ex:
            if handle.cancelled:
                logger.info(f"Completion failed after it was cancelled: {ex}")
                terminal = None
            else:
                logger.error(f"Completion failed: {ex}")
                terminal = Message(
                    id=self._id_factory(),
                    role=ROLE_ERROR,
                    content=str(ex) or GENERIC_ERROR_MESSAGE,
                    timestamp=self._clock(),
                )
        else:
            if result.aborted or handle.cancelled:
                # A cancelled or superseded request never appends.
                logger.info(f"Completion aborted after {len(result.content)} chars")
                terminal = None
            else:
                terminal = Message(
                    id=self._id_factory(),
                    role=ROLE_ASSISTANT,
                    content=result.content or NO_CONTENT_PLACEHOLDER,
                    timestamp=self._clock(),
                    model=model,
                    usage=result.usage,
                    cost_usd=result.cost_usd,
                )
        finally:
            if self._handle is handle:
                self._handle = None
                self._state.update(is_loading=False, streaming_content="")

        if terminal is not None:
            self._append(session_id, terminal)
        return terminal

    def _append(self, session_id: str, message: Message) -> None:
        if self._registry.get(session_id) is None:
            logger.warning(f"Dropping {message.role} message for deleted session {session_id}")
            return
        messages = self._registry.load_messages(session_id)
        messages.append(message)
        self._registry.save_messages(session_id, messages)
