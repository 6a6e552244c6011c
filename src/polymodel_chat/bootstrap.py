from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from polymodel_chat.app_config import AppConfig, RuntimeEnv
from polymodel_chat.completion_engine import StreamingCompletionEngine
from polymodel_chat.conversation_store import ConversationStore
from polymodel_chat.logging_config import setup_logging
from polymodel_chat.preferences import Preferences
from polymodel_chat.session_registry import SessionRegistry
from polymodel_chat.storage import SqliteStorage


@dataclass
class AppRuntime:
    storage: SqliteStorage
    registry: SessionRegistry
    preferences: Preferences
    engine: StreamingCompletionEngine
    store: ConversationStore
    log_descriptions: list[str]

    async def close(self) -> None:
        await self.engine.aclose()
        self.storage.close()


def bootstrap_runtime(app: AppConfig, env: RuntimeEnv) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)

    db_path = Path(app.storage_path)
    if not db_path.is_absolute():
        db_path = Path.cwd() / db_path
    storage = SqliteStorage(str(db_path))

    registry = SessionRegistry(storage)
    registry.ensure_active()
    preferences = Preferences(storage, default_model=app.model, default_credential=env.api_key)
    engine = StreamingCompletionEngine(
        app.api_url,
        timeout=app.request_timeout_seconds,
        referer=app.referer,
        app_title=app.app_title,
        max_attempts=app.max_request_attempts,
    )
    store = ConversationStore(registry, engine, preferences)

    return AppRuntime(
        storage=storage,
        registry=registry,
        preferences=preferences,
        engine=engine,
        store=store,
        log_descriptions=log_descriptions,
    )
