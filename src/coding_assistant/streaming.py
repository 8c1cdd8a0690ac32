"""One in-flight streamed completion, with cooperative cancellation.

Usage:
    token = CancelToken()
    session = await StreamingSession.open(request, api_key, cancel_token=token)
    async with session:
        async for fragment in session:
            ...

``token.cancel()`` may be called from any thread at any time. A pending open
or read is abandoned as soon as the token fires and the session then behaves
as if the provider had finished.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from collections import deque
from typing import Any, Awaitable, Deque, List, Optional, Tuple

import httpx
import openai

from .errors import StreamConnectionError, StreamError
from .request_builder import CompletionRequest

logger = logging.getLogger(__name__)

_CANCELLED = object()
_EXHAUSTED = object()

# Failures of the provider call or its transport. httpx.StreamError is not an
# httpx.HTTPError subclass.
_TRANSPORT_ERRORS = (openai.OpenAIError, httpx.HTTPError, httpx.StreamError, OSError)


# -----------------------------
# Cancellation
# -----------------------------
class CancelToken:
    """Thread-safe, idempotent cancellation flag that asyncio code can await."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._waiters: List[Tuple[asyncio.AbstractEventLoop, asyncio.Future]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            waiters, self._waiters = self._waiters, []
        for loop, fut in waiters:
            if not loop.is_closed():
                loop.call_soon_threadsafe(_resolve, fut)

    def waiter(self) -> asyncio.Future:
        """Future on the running loop that completes when the token fires."""
        loop = asyncio.get_running_loop()
        fut = loop.create_future()
        with self._lock:
            if self._event.is_set():
                fut.set_result(None)
            else:
                self._waiters.append((loop, fut))
        return fut

    def discard(self, fut: asyncio.Future) -> None:
        with self._lock:
            self._waiters = [(lp, f) for lp, f in self._waiters if f is not fut]


def _resolve(fut: asyncio.Future) -> None:
    if not fut.done():
        fut.set_result(None)


async def _race(aw: Awaitable[Any], token: CancelToken) -> Any:
    """Await ``aw`` unless ``token`` fires first; then return ``_CANCELLED``."""
    if token.cancelled:
        if inspect.iscoroutine(aw):
            aw.close()
        return _CANCELLED

    task = asyncio.ensure_future(aw)
    waiter = token.waiter()
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        token.discard(waiter)
        if not waiter.done():
            waiter.cancel()

    if waiter in done:
        # Drop whatever the read produced, including its exception.
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return _CANCELLED
    return task.result()


async def _anext(it: Any) -> Any:
    try:
        return await it.__anext__()
    except StopAsyncIteration:
        return _EXHAUSTED


def make_client(api_key: str, base_url: Optional[str] = None) -> openai.AsyncOpenAI:
    # No retries anywhere in the turn; a failed open is reported as-is.
    return openai.AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0)


# -----------------------------
# Session
# -----------------------------
class StreamingSession:
    """Incremental text fragments of a single chat-completion stream."""

    def __init__(
        self,
        stream: Any,
        cancel_token: Optional[CancelToken] = None,
        *,
        request: Optional[CompletionRequest] = None,
        client: Any = None,
    ) -> None:
        self._stream = stream
        self._iter = stream.__aiter__() if stream is not None else None
        self._token = cancel_token or CancelToken()
        self._client = client  # closed with the session when set
        self.request = request
        self._pending: Deque[str] = deque()
        self._done = stream is None
        self._closed = False

    @classmethod
    async def open(
        cls,
        request: CompletionRequest,
        api_key: str,
        *,
        cancel_token: Optional[CancelToken] = None,
        client: Any = None,
        base_url: Optional[str] = None,
    ) -> "StreamingSession":
        """Start the streamed completion.

        Raises :class:`StreamConnectionError` when the endpoint is unreachable,
        the key is rejected or the request fails validation. If the token
        fires first, an exhausted session is returned instead.
        """
        token = cancel_token or CancelToken()
        if token.cancelled:
            logger.info("stream cancelled before open")
            return cls(None, token, request=request)

        owned = None
        if client is None:
            client = owned = make_client(api_key, base_url)

        try:
            stream = await _race(client.chat.completions.create(**request.to_kwargs()), token)
        except _TRANSPORT_ERRORS as e:
            await _close_quietly(owned)
            raise StreamConnectionError(f"Failed to start conversation: {e}") from e

        if stream is _CANCELLED:
            logger.info("stream cancelled while opening")
            await _close_quietly(owned)
            return cls(None, token, request=request)

        logger.debug("stream opened: model=%s messages=%d", request.model, len(request.messages))
        return cls(stream, token, request=request, client=owned)

    # --------- state ----------
    @property
    def cancelled(self) -> bool:
        return self._token.cancelled

    def cancel(self) -> None:
        self._token.cancel()

    # --------- reading ----------
    async def next_fragment(self) -> Optional[str]:
        """Return the next fragment, or ``None`` once exhausted or cancelled.

        Raises :class:`StreamError` if the transport or provider fails
        mid-stream; the session is finished afterwards.
        """
        while True:
            if self._token.cancelled:
                await self.close()
                return None
            if self._pending:
                return self._pending.popleft()
            if self._done:
                await self.close()
                return None

            try:
                chunk = await _race(_anext(self._iter), self._token)
            except _TRANSPORT_ERRORS as e:
                self._done = True
                await self.close()
                raise StreamError(str(e) or e.__class__.__name__) from e

            if chunk is _EXHAUSTED:
                self._done = True
                continue
            if chunk is _CANCELLED:
                continue
            self._pending.extend(_chunk_fragments(chunk))

    def __aiter__(self) -> "StreamingSession":
        return self

    async def __anext__(self) -> str:
        fragment = await self.next_fragment()
        if fragment is None:
            raise StopAsyncIteration
        return fragment

    # --------- lifecycle ----------
    async def close(self) -> None:
        """Release the provider stream. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._done = True
        self._pending.clear()
        await _close_quietly(self._stream)
        await _close_quietly(self._client)

    async def __aenter__(self) -> "StreamingSession":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()


def _chunk_fragments(chunk: Any) -> List[str]:
    out: List[str] = []
    for choice in getattr(chunk, "choices", None) or []:
        delta = getattr(choice, "delta", None)
        content = getattr(delta, "content", None)
        if content:
            out.append(content)
    return out


async def _close_quietly(obj: Any) -> None:
    close = getattr(obj, "close", None) or getattr(obj, "aclose", None)
    if close is None:
        return
    try:
        res = close()
        if inspect.isawaitable(res):
            await res
    except _TRANSPORT_ERRORS as e:
        logger.warning("error while closing stream: %s", e)
