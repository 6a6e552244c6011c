from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any

from loguru import logger


@dataclass(frozen=True)
class ChatState:
    session_id: str | None = None
    is_loading: bool = False
    streaming_content: str = ""


Listener = Callable[[ChatState], None]


class StateContainer:
    """Holds the live chat state and notifies subscribers on every change."""

    def __init__(self, initial: ChatState | None = None):
        self._state = initial or ChatState()
        self._listeners: list[Listener] = []

    @property
    def state(self) -> ChatState:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def update(self, **changes: Any) -> ChatState:
        self._state = replace(self._state, **changes)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception as ex:
                logger.warning(f"State listener failed: {ex}")
        return self._state
