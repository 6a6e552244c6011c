from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

import httpx
from loguru import logger
from tenacity import AsyncRetrying

from polymodel_chat.retry_policy import RetryableStatusError, default_retry_kwargs
from polymodel_chat.usage import Usage, estimate_usage, extract_cost, normalize_usage

DEFAULT_API_URL = "https://openrouter.ai/api/v1/chat/completions"

_DATA_PREFIX = "data:"
_DONE_SENTINEL = "[DONE]"
_RETRYABLE_STATUS_CODES = frozenset({429})

DeltaCallback = Callable[[str, str], None]
T = TypeVar("T")


class CompletionError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AbortHandle:
    """Cancellation handle scoped to a single completion request."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class CompletionResult:
    content: str
    aborted: bool
    usage: Usage
    cost_usd: float | None = None


class SseLineBuffer:
    """Splits arbitrarily chunked text into complete lines.

    The trailing fragment after the last newline is held back until the next
    chunk arrives (or the stream ends and ``flush`` is called).
    """

    def __init__(self) -> None:
        self._pending = ""

    def feed(self, chunk: str) -> list[str]:
        self._pending += chunk
        *lines, self._pending = self._pending.split("\n")
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        remaining, self._pending = self._pending, ""
        if not remaining.strip():
            return []
        return [remaining.rstrip("\r")]


@dataclass
class _StreamState:
    parts: list[str] = field(default_factory=list)
    usage: Usage | None = None
    cost_usd: float | None = None
    done: bool = False

    @property
    def content(self) -> str:
        return "".join(self.parts)


def _error_message(body: bytes, status_code: int) -> str:
    try:
        data = json.loads(body)
    except ValueError:
        data = None
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str) and error["message"]:
            return error["message"]
        if isinstance(error, str) and error:
            return error
        if isinstance(data.get("message"), str) and data["message"]:
            return data["message"]
    return f"API Error: {status_code}"


def _extract_delta(payload: dict) -> str:
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first = choices[0]
    if not isinstance(first, dict):
        return ""
    delta = first.get("delta")
    if not isinstance(delta, dict):
        return ""
    content = delta.get("content")
    return content if isinstance(content, str) else ""


async def _race_abort(awaitable: Awaitable[T], handle: AbortHandle) -> asyncio.Task[T]:
    """Run ``awaitable`` until it finishes or ``handle`` is cancelled.

    The returned task is always settled: finished, failed or cancelled.
    """
    task = asyncio.ensure_future(awaitable)
    abort_task = asyncio.ensure_future(handle.wait())
    try:
        await asyncio.wait({task, abort_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        pending = {t for t in (task, abort_task) if not t.done()}
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.wait(pending)
    return task


async def _discard_response(task: asyncio.Task[httpx.Response]) -> None:
    if task.cancelled() or task.exception() is not None:
        return
    await task.result().aclose()


class StreamingCompletionEngine:
    def __init__(
        self,
        api_url: str = DEFAULT_API_URL,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 120.0,
        referer: str | None = None,
        app_title: str | None = None,
        max_attempts: int = 3,
    ):
        self._api_url = api_url
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(connect=10.0, read=timeout, write=10.0, pool=10.0)
        )
        self._referer = referer
        self._app_title = app_title
        self._max_attempts = max(1, max_attempts)
        self._handle: AbortHandle | None = None

    @property
    def is_streaming(self) -> bool:
        return self._handle is not None

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()

    async def aclose(self) -> None:
        self.cancel()
        if self._owns_client:
            await self._client.aclose()

    async def stream_completion(
        self,
        api_messages: list[dict],
        model: str,
        credential: str,
        *,
        on_delta: DeltaCallback | None = None,
        handle: AbortHandle | None = None,
    ) -> CompletionResult:
        """Stream one completion, surfacing each text delta through ``on_delta``.

        A still-running previous call is cancelled first. Cancellation through
        the handle is not an error: the partial content comes back with
        ``aborted=True``.
        """
        if self._handle is not None:
            logger.debug("Cancelling in-flight completion before starting a new one")
            self._handle.cancel()

        handle = handle or AbortHandle()
        self._handle = handle
        try:
            return await self._run(api_messages, model, credential, on_delta, handle)
        finally:
            if self._handle is handle:
                self._handle = None

    async def _run(
        self,
        api_messages: list[dict],
        model: str,
        credential: str,
        on_delta: DeltaCallback | None,
        handle: AbortHandle,
    ) -> CompletionResult:
        state = _StreamState()
        logger.debug(f"API request: model={model}, messages={len(api_messages)}")

        try:
            await self._stream_into(state, api_messages, model, credential, on_delta, handle)
        except CompletionError as ex:
            if not handle.cancelled:
                raise
            logger.debug(f"Ignoring failure after abort: {ex}")

        aborted = handle.cancelled and not state.done
        content = state.content
        usage = state.usage or estimate_usage(api_messages, content)
        logger.debug(
            f"API response: aborted={aborted}, text_len={len(content)}, "
            f"usage={usage.to_dict()}, cost={state.cost_usd}"
        )
        return CompletionResult(content=content, aborted=aborted, usage=usage, cost_usd=state.cost_usd)

    async def _stream_into(
        self,
        state: _StreamState,
        api_messages: list[dict],
        model: str,
        credential: str,
        on_delta: DeltaCallback | None,
        handle: AbortHandle,
    ) -> None:
        # Waiting for headers and retry backoff both give way to the handle.
        send_task = await _race_abort(self._send(api_messages, model, credential), handle)
        if handle.cancelled:
            logger.debug("Completion aborted before the response arrived")
            await _discard_response(send_task)
            return

        try:
            response = send_task.result()
        except RetryableStatusError as ex:
            raise CompletionError(_error_message(ex.body, ex.status_code), status_code=ex.status_code) from ex
        except httpx.HTTPError as ex:
            raise CompletionError(str(ex) or type(ex).__name__) from ex

        try:
            if response.is_error:
                body = await response.aread()
                raise CompletionError(
                    _error_message(body, response.status_code),
                    status_code=response.status_code,
                )
            await self._read_stream(response.aiter_text(), state, on_delta, handle)
        except httpx.HTTPError as ex:
            raise CompletionError(str(ex) or type(ex).__name__) from ex
        finally:
            await response.aclose()

    async def _send(self, api_messages: list[dict], model: str, credential: str) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {credential}",
            "Content-Type": "application/json",
        }
        if self._referer:
            headers["HTTP-Referer"] = self._referer
        if self._app_title:
            headers["X-Title"] = self._app_title
        body = {"model": model, "stream": True, "messages": api_messages}

        retrying = AsyncRetrying(
            **default_retry_kwargs(
                (httpx.ConnectError, httpx.ConnectTimeout, RetryableStatusError),
                max_attempts=self._max_attempts,
            )
        )
        async for attempt in retrying:
            with attempt:
                request = self._client.build_request("POST", self._api_url, json=body, headers=headers)
                response = await self._client.send(request, stream=True)
                if response.status_code in _RETRYABLE_STATUS_CODES:
                    error_body = await response.aread()
                    await response.aclose()
                    raise RetryableStatusError(response.status_code, error_body)
                return response
        raise AssertionError("unreachable")

    async def _read_stream(
        self,
        chunks: AsyncIterator[str],
        state: _StreamState,
        on_delta: DeltaCallback | None,
        handle: AbortHandle,
    ) -> None:
        buffer = SseLineBuffer()
        while not state.done:
            chunk = await self._next_chunk(chunks, handle)
            if chunk is None:
                break
            for line in buffer.feed(chunk):
                if handle.cancelled:
                    return
                self._consume_line(line, state, on_delta)
                if state.done:
                    return

        if not state.done and not handle.cancelled:
            for line in buffer.flush():
                self._consume_line(line, state, on_delta)

    async def _next_chunk(self, chunks: AsyncIterator[str], handle: AbortHandle) -> str | None:
        # Returns None at end of stream or once the handle is cancelled.
        if handle.cancelled:
            return None
        read_task = await _race_abort(anext(chunks, None), handle)
        if handle.cancelled:
            logger.debug("Completion stream aborted")
            if not read_task.cancelled():
                read_task.exception()
            return None
        return read_task.result()

    def _consume_line(self, line: str, state: _StreamState, on_delta: DeltaCallback | None) -> None:
        stripped = line.strip()
        if not stripped or not stripped.startswith(_DATA_PREFIX):
            return

        data = stripped[len(_DATA_PREFIX):].strip()
        if data == _DONE_SENTINEL:
            state.done = True
            return

        try:
            payload = json.loads(data)
        except ValueError as ex:
            logger.warning(f"Skipping malformed stream line ({ex}): {data[:200]}")
            return
        if not isinstance(payload, dict):
            logger.warning(f"Skipping non-object stream payload: {data[:200]}")
            return

        delta = _extract_delta(payload)
        if delta:
            state.parts.append(delta)
            if on_delta is not None:
                on_delta(delta, state.content)

        usage = normalize_usage(payload.get("usage"))
        if usage is not None:
            state.usage = usage
        cost = extract_cost(payload)
        if cost is not None:
            state.cost_usd = cost
