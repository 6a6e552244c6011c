from __future__ import annotations

from collections.abc import Awaitable, Callable

CommandHandler = Callable[[str], Awaitable[None]]


class CommandRouter:
    """Dispatches ``/command args`` lines to registered handlers.

    Handlers receive the argument text with the command word removed.
    """

    def __init__(self, *, on_unknown: Callable[[str], None]) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._on_unknown = on_unknown

    def register(self, name: str, handler: CommandHandler) -> None:
        self._handlers[name.lstrip("/").lower()] = handler

    @property
    def commands(self) -> list[str]:
        return sorted(f"/{name}" for name in self._handlers)

    async def try_handle(self, user_message: str) -> bool:
        trimmed = user_message.strip()
        if not trimmed.startswith("/"):
            return False

        name, _, args = trimmed[1:].partition(" ")
        handler = self._handlers.get(name.lower())
        if handler is None:
            self._on_unknown(trimmed)
            return True

        await handler(args.strip())
        return True
