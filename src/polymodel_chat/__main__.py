import asyncio
import contextlib
import json
import signal
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

from polymodel_chat.app_config import load_json_config, parse_app_config, resolve_runtime_env
from polymodel_chat.bootstrap import AppRuntime, bootstrap_runtime
from polymodel_chat.commands import CommandRouter
from polymodel_chat.models import Message
from polymodel_chat.session_registry import SessionNotFoundError
from polymodel_chat.snapshots import SnapshotFormatError, loads_snapshot
from polymodel_chat.state import ChatState
from polymodel_chat.usage import format_usage_summary

_HELP = """Commands:
  /new                      start a new chat
  /sessions                 list chats
  /switch <n|id>            switch to a chat
  /delete [n|id]            delete a chat (default: current)
  /rename <title>           rename the current chat
  /regen                    regenerate the last response
  /edit <text>              replace the last user message and regenerate
  /clear                    clear the current chat
  /system [text]            show or set the system prompt
  /model [id]               show or select the model
  /models [add|remove <id>] list, add or remove custom models
  /cost [value|off]         show or set the default price per 1K tokens
  /key <value>|remove       set or remove the API key
  /export json|md <path>    export the current chat
  /import <path>            import chats from a JSON export
  exit                      quit"""


class ChatCli:
    def __init__(self, runtime: AppRuntime):
        self._rt = runtime
        self._printed = 0
        self._router = CommandRouter(on_unknown=lambda cmd: print(f"Unknown command: {cmd}. Type /help."))
        handlers: dict[str, Callable[[str], Awaitable[None]]] = {
            "help": self._help,
            "new": self._new,
            "sessions": self._sessions,
            "switch": self._switch,
            "delete": self._delete,
            "rename": self._rename,
            "regen": self._regen,
            "edit": self._edit,
            "clear": self._clear,
            "system": self._system,
            "model": self._model,
            "models": self._models,
            "cost": self._cost,
            "key": self._key,
            "export": self._export,
            "import": self._import,
        }
        for name, handler in handlers.items():
            self._router.register(name, handler)
        runtime.store.state.subscribe(self._on_state)

    async def run(self) -> None:
        print("polymodel-chat (type 'exit' to quit, '/help' for commands)")
        print(f"Model: {self._rt.preferences.selected_model}")
        if self._rt.log_descriptions:
            print(f"Logging: {', '.join(self._rt.log_descriptions)}")
        if self._rt.preferences.credential is None:
            print("No API key configured. Set OPENROUTER_API_KEY or use /key <value>.")
        print()

        while True:
            try:
                user_input = input("you> ")
            except (EOFError, KeyboardInterrupt):
                break

            trimmed = user_input.strip()
            if trimmed in ("exit", "quit"):
                break
            if not trimmed:
                continue

            try:
                if await self._router.try_handle(trimmed):
                    continue
                if self._rt.preferences.credential is None:
                    print("No API key configured. Use /key <value>.")
                    continue
                await self._stream(self._rt.store.send_message(trimmed))
            except Exception as ex:
                logger.error(f"Unhandled error: {ex}")
                print(f"Error: {ex}")

    def _on_state(self, state: ChatState) -> None:
        content = state.streaming_content
        if len(content) > self._printed:
            print(content[self._printed:], end="", flush=True)
            self._printed = len(content)

    async def _stream(self, operation: Awaitable[Message | None]) -> None:
        loop = asyncio.get_running_loop()
        self._printed = 0
        print("assistant> ", end="", flush=True)
        installed = False
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(signal.SIGINT, self._rt.store.stop)
            installed = True
        try:
            message = await operation
        finally:
            if installed:
                loop.remove_signal_handler(signal.SIGINT)

        if message is None:
            print("\n[stopped]\n" if self._printed else "[nothing sent]\n")
            return
        if message.role == "error":
            print(f"\n[error] {message.content}\n")
            return
        if not self._printed:
            print(message.content, end="")
        summary = format_usage_summary(message, self._rt.preferences.cost_per_1k)
        print(f"\n{summary}\n" if summary else "\n")

    # -- sessions --

    def _resolve(self, ref: str) -> str:
        sessions = self._rt.registry.list_sessions()
        if ref.isdigit() and 1 <= int(ref) <= len(sessions):
            return sessions[int(ref) - 1].id
        for session in sessions:
            if session.id == ref or session.id.startswith(ref):
                return session.id
        raise SessionNotFoundError(ref)

    async def _help(self, _args: str) -> None:
        print(_HELP)

    async def _new(self, _args: str) -> None:
        session = self._rt.registry.create()
        print(f"Started {session.title} ({session.id[:8]})")

    async def _sessions(self, _args: str) -> None:
        active = self._rt.registry.active_session_id
        for index, session in enumerate(self._rt.registry.list_sessions(), start=1):
            marker = "*" if session.id == active else " "
            print(f"{marker} {index:>2}. {session.title}  ({session.id[:8]})")

    async def _switch(self, args: str) -> None:
        session = self._rt.registry.select(self._resolve(args))
        print(f"Switched to {session.title} ({len(self._rt.store.messages)} messages)")

    async def _delete(self, args: str) -> None:
        registry = self._rt.registry
        session_id = self._resolve(args) if args else registry.active_session_id
        if session_id is None:
            print("No chat selected.")
            return
        if session_id == registry.active_session_id:
            self._rt.store.stop()
        registry.delete(session_id)
        active = registry.ensure_active()
        print(f"Deleted. Current chat: {active.title}")

    async def _rename(self, args: str) -> None:
        session_id = self._rt.registry.active_session_id
        if session_id is None:
            print("No chat selected.")
            return
        print(f"Renamed to {self._rt.registry.rename(session_id, args)}")

    # -- conversation --

    async def _regen(self, _args: str) -> None:
        await self._stream(self._rt.store.regenerate())

    async def _edit(self, args: str) -> None:
        if not args:
            print("Usage: /edit <text>")
            return
        await self._stream(self._rt.store.edit_last_user_message(args))

    async def _clear(self, _args: str) -> None:
        self._rt.store.clear()
        print("Chat cleared.")

    async def _system(self, args: str) -> None:
        if not args:
            print(self._rt.store.system_prompt or "(no system prompt)")
            return
        self._rt.store.set_system_prompt("" if args == "off" else args)
        print("System prompt updated.")

    # -- settings --

    async def _model(self, args: str) -> None:
        if args:
            self._rt.preferences.select_model(args)
        print(f"Model: {self._rt.preferences.selected_model}")

    async def _models(self, args: str) -> None:
        action, _, model_id = args.partition(" ")
        prefs = self._rt.preferences
        if action == "add":
            print("Added." if prefs.add_model(model_id) else "Not added (empty or already listed).")
        elif action == "remove":
            print("Removed." if prefs.remove_model(model_id.strip()) else "Not a custom model.")
        else:
            for model_id in prefs.all_models():
                marker = "*" if model_id == prefs.selected_model else " "
                print(f"{marker} {model_id}")

    async def _cost(self, args: str) -> None:
        prefs = self._rt.preferences
        if args == "off":
            prefs.set_cost_per_1k(None)
        elif args:
            prefs.set_cost_per_1k(float(args))
        rate = prefs.cost_per_1k
        print(f"Cost per 1K tokens: {rate if rate is not None else 'not set'}")

    async def _key(self, args: str) -> None:
        if args == "remove":
            self._rt.preferences.remove_credential()
            print("API key removed.")
        elif args:
            self._rt.preferences.set_credential(args)
            print("API key saved.")
        else:
            print("Usage: /key <value>|remove")

    # -- transfer --

    async def _export(self, args: str) -> None:
        fmt, _, path = args.partition(" ")
        session_id = self._rt.registry.active_session_id
        if session_id is None or fmt not in ("json", "md") or not path.strip():
            print("Usage: /export json|md <path>")
            return
        if fmt == "json":
            text = json.dumps(self._rt.registry.export_session(session_id), indent=2, ensure_ascii=False)
        else:
            text = self._rt.registry.export_markdown(session_id)
        Path(path.strip()).write_text(text, encoding="utf-8")
        print(f"Exported to {path.strip()}")

    async def _import(self, args: str) -> None:
        if not args:
            print("Usage: /import <path>")
            return
        try:
            payload = loads_snapshot(Path(args).read_text(encoding="utf-8"))
            count = self._rt.registry.import_sessions(payload)
        except (OSError, SnapshotFormatError) as ex:
            print(f"Import failed: {ex}")
            return
        print(f"Imported {count} chat{'' if count == 1 else 's'}.")


async def main() -> None:
    load_dotenv()

    app = parse_app_config(load_json_config())
    env = resolve_runtime_env()
    runtime = bootstrap_runtime(app, env)
    try:
        await ChatCli(runtime).run()
    finally:
        await runtime.close()


def cli() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    cli()
