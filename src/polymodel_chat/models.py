from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any

from polymodel_chat.usage import Usage

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_ERROR = "error"

MESSAGE_ROLES = frozenset({ROLE_USER, ROLE_ASSISTANT, ROLE_ERROR})

STREAMING_MESSAGE_ID = "streaming-msg"


@dataclass
class Message:
    id: str
    role: str
    content: str
    timestamp: int
    model: str | None = None
    usage: Usage | None = None
    cost_usd: float | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.model is not None:
            data["model"] = self.model
        if self.usage is not None:
            data["usage"] = self.usage.to_dict()
        if self.cost_usd is not None:
            data["costUsd"] = self.cost_usd
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        usage = data.get("usage")
        cost = data.get("costUsd")
        return cls(
            id=str(data["id"]),
            role=str(data["role"]),
            content=str(data["content"]),
            timestamp=int(data.get("timestamp") or 0),
            model=data.get("model") if isinstance(data.get("model"), str) else None,
            usage=Usage.from_dict(usage) if isinstance(usage, dict) else None,
            cost_usd=float(cost) if isinstance(cost, (int, float)) and not isinstance(cost, bool) else None,
        )

    def with_content(self, content: str, timestamp: int) -> Message:
        return replace(self, content=content, timestamp=timestamp)


@dataclass
class Session:
    id: str
    title: str
    created_at: int

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "title": self.title, "createdAt": self.created_at}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or ""),
            created_at=int(data.get("createdAt") or 0),
        )
