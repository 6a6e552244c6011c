"""loguru sinks for the chat client.

Consumers come from the ``LogConsumers`` list in ``config.json``; each entry
names a ``type`` (``console`` or ``file``) plus optional ``level`` and
sink-specific options. Every record passes through ``redact_credentials``
first so API keys never reach a sink.
"""

import re
import sys
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from loguru import logger

REDACTED = "***REDACTED***"

_CREDENTIAL_PATTERNS = (
    re.compile(r"(?<=Bearer )[^\s'\"]+"),
    re.compile(r"\bsk-[A-Za-z0-9_-]{8,}"),
)


def redact_credentials(text: str) -> str:
    for pattern in _CREDENTIAL_PATTERNS:
        text = pattern.sub(REDACTED, text)
    return text


def _redact_record(record: dict) -> None:
    record["message"] = redact_credentials(record["message"])


@runtime_checkable
class LogConsumer(Protocol):
    def register(self, level: str) -> None: ...
    def describe(self, level: str) -> str: ...


class ConsoleLogConsumer:
    def register(self, level: str) -> None:
        logger.add(
            sys.stderr,
            level=level,
            format="<level>{level:<8}</level> | <cyan>{name}</cyan> - <level>{message}</level>",
        )

    def describe(self, level: str) -> str:
        return f"console (stderr, {level})"


class FileLogConsumer:
    """Rotating log file; ``json: true`` writes one serialized record per line."""

    def __init__(
        self,
        path: str = "polymodel-chat.log",
        rotation: str = "5 MB",
        retention: int = 3,
        json: bool = False,
    ):
        self._path = path
        self._rotation = rotation
        self._retention = retention
        self._json = json

    def register(self, level: str) -> None:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            self._path,
            level=level,
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{function}:{line} - {message}",
            rotation=self._rotation,
            retention=self._retention,
            serialize=self._json,
            encoding="utf-8",
        )

    def describe(self, level: str) -> str:
        kind = "jsonl" if self._json else "file"
        return f"{kind} ({self._path}, {level})"


_CONSUMER_TYPES: dict[str, type] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
}

# Console stays at WARNING so log lines do not interleave with streamed replies.
_DEFAULT_CONSUMERS = [
    {"type": "console", "level": "WARNING"},
    {"type": "file", "path": "polymodel-chat.log"},
]


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Replace loguru's sinks with the configured consumers.

    Returns a human-readable description of each registered consumer.
    """
    logger.remove()
    logger.configure(patcher=_redact_record)

    descriptions: list[str] = []
    for config in _DEFAULT_CONSUMERS if consumers is None else consumers:
        sink_type = config.get("type", "")
        cls = _CONSUMER_TYPES.get(sink_type)
        if cls is None:
            logger.warning(f"Unknown log consumer type: {sink_type!r}")
            continue

        options = {k: v for k, v in config.items() if k not in ("type", "level")}
        sink_level = config.get("level", level)
        consumer = cls(**options)
        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))

    return descriptions
