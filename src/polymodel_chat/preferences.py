from __future__ import annotations

from polymodel_chat.storage import (
    COST_PER_1K_KEY,
    CREDENTIAL_KEY,
    CUSTOM_MODELS_KEY,
    SELECTED_MODEL_KEY,
    KeyValueStorage,
)

BUILTIN_MODELS = [
    "meta-llama/llama-3.3-70b-instruct:free",
    "liquid/lfm-2.5-1.2b-instruct:free",
    "liquid/lfm-2.5-1.2b-thinking:free",
    "allenai/molmo-2-8b:free",
    "nvidia/nemotron-3-nano-30b-a3b:free",
    "tngtech/deepseek-r1t2-chimera:free",
    "tngtech/deepseek-r1t-chimera:free",
    "arcee-ai/trinity-mini:free",
    "openai/gpt-oss-20b:free",
]


class Preferences:
    """Global settings shared by every session."""

    def __init__(
        self,
        storage: KeyValueStorage,
        *,
        default_model: str | None = None,
        default_credential: str | None = None,
    ):
        self._storage = storage
        self._default_model = default_model or BUILTIN_MODELS[0]
        self._default_credential = default_credential or None

    @property
    def selected_model(self) -> str:
        value = self._storage.get(SELECTED_MODEL_KEY)
        return value if isinstance(value, str) and value else self._default_model

    def select_model(self, model_id: str) -> str:
        trimmed = model_id.strip()
        if not trimmed:
            raise ValueError("Model id must not be empty")
        self._storage.set(SELECTED_MODEL_KEY, trimmed)
        return trimmed

    @property
    def credential(self) -> str | None:
        value = self._storage.get(CREDENTIAL_KEY)
        return value if isinstance(value, str) and value else self._default_credential

    def set_credential(self, value: str) -> None:
        trimmed = value.strip()
        if not trimmed:
            raise ValueError("Credential must not be empty")
        self._storage.set(CREDENTIAL_KEY, trimmed)

    def remove_credential(self) -> None:
        self._storage.remove(CREDENTIAL_KEY)

    @property
    def cost_per_1k(self) -> float | None:
        value = self._storage.get(COST_PER_1K_KEY)
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            return None
        return float(value)

    def set_cost_per_1k(self, value: float | None) -> None:
        if value is None:
            self._storage.remove(COST_PER_1K_KEY)
            return
        if value < 0:
            raise ValueError("Cost per 1K tokens must be non-negative")
        self._storage.set(COST_PER_1K_KEY, float(value))

    @property
    def custom_models(self) -> list[str]:
        value = self._storage.get(CUSTOM_MODELS_KEY, [])
        if not isinstance(value, list):
            return []
        return [m for m in value if isinstance(m, str)]

    def all_models(self) -> list[str]:
        return [*BUILTIN_MODELS, *self.custom_models]

    def add_model(self, model_id: str) -> bool:
        trimmed = model_id.strip()
        models = self.custom_models
        if not trimmed or trimmed in models or trimmed in BUILTIN_MODELS:
            return False
        self._storage.set(CUSTOM_MODELS_KEY, [*models, trimmed])
        return True

    def remove_model(self, model_id: str) -> bool:
        models = self.custom_models
        remaining = [m for m in models if m != model_id]
        if len(remaining) == len(models):
            return False
        self._storage.set(CUSTOM_MODELS_KEY, remaining)
        return True
