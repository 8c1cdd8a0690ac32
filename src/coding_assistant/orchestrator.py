"""Single-flight prompt turns: load history, stream a reply, commit it.

A turn is::

    ACQUIRING_LOCK -> LOADING_HISTORY -> BUILDING_REQUEST -> STREAMING -> COMMITTING -> IDLE

The lock is injected by the caller (one per process in the server, one per
test otherwise) and held for the whole turn, so two turns never interleave
their load/append/save of the history file.

Failures before STREAMING (history unreadable, missing API key, bad message,
connection refused) end the turn without writing anything. Once streaming has
started the assistant reply, complete or partial, is appended and saved
exactly once, whether the stream ended, failed mid-way or was cancelled.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, List, Optional, Protocol

from .config import Settings
from .credentials import read_api_key
from .errors import (
    CredentialError,
    HistoryNotFoundError,
    HistoryReadError,
    HistoryWriteError,
    MessageBuildError,
    StreamConnectionError,
    StreamError,
    TurnPersistError,
    TurnSetupError,
)
from .history import HistoryStore
from .request_builder import CompletionRequest, build_request
from .streaming import CancelToken, StreamingSession
from .structs import Conversation, Role

logger = logging.getLogger(__name__)

CHAT_MESSAGE_EVENT = "chat-message"
STREAM_ERROR_EVENT = "stream-error"


class TurnState(str, Enum):
    IDLE = "idle"
    ACQUIRING_LOCK = "acquiring_lock"
    LOADING_HISTORY = "loading_history"
    BUILDING_REQUEST = "building_request"
    STREAMING = "streaming"
    COMMITTING = "committing"


class FragmentSink(Protocol):
    def emit(self, event: str, payload: str) -> None: ...


class NullSink:
    def emit(self, event: str, payload: str) -> None:
        return None


SessionOpener = Callable[[CompletionRequest, str, CancelToken], Awaitable[Any]]


@dataclass
class Turn:
    """Bookkeeping for one ``run_turn`` call."""

    text: str
    low_cost: bool
    token: CancelToken
    state: TurnState = TurnState.IDLE
    fragments: List[str] = field(default_factory=list)
    stream_error: Optional[str] = None
    states: List[TurnState] = field(default_factory=list)

    def enter(self, state: TurnState) -> None:
        self.state = state
        self.states.append(state)

    @property
    def output(self) -> str:
        return "".join(self.fragments)


class PromptOrchestrator:
    """Drive prompt turns against one stored conversation."""

    def __init__(
        self,
        store: HistoryStore,
        settings: Settings,
        *,
        lock: asyncio.Lock,
        sink: Optional[FragmentSink] = None,
        credential_source: Optional[Callable[[], str]] = None,
        open_session: Optional[SessionOpener] = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._lock = lock
        self._sink: FragmentSink = sink or NullSink()
        self._credentials = credential_source or partial(read_api_key, settings.api_key_path)
        self._open_session = open_session or self._open_provider_session
        self._current: Optional[Turn] = None
        self.last_turn: Optional[Turn] = None

    # --------- status ----------
    @property
    def state(self) -> TurnState:
        turn = self._current
        return turn.state if turn is not None else TurnState.IDLE

    @property
    def lock(self) -> asyncio.Lock:
        return self._lock

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def cancel_stream(self) -> bool:
        """Cancel the turn currently holding the lock. Returns False when idle."""
        turn = self._current
        if turn is None:
            return False
        turn.token.cancel()
        logger.info("cancel requested for running turn")
        return True

    # --------- turn ----------
    async def run_turn(self, text: str, low_cost: bool = False, cancel_token: Optional[CancelToken] = None) -> str:
        """Run one prompt turn and return the assistant text.

        Raises :class:`TurnSetupError` if the turn fails before streaming and
        :class:`TurnPersistError` if the reply could not be saved. A stream
        that fails mid-way is not an error: it is reported on the sink as
        ``stream-error`` and the partial reply is kept.
        """
        turn = Turn(text=text, low_cost=low_cost, token=cancel_token or CancelToken())
        turn.enter(TurnState.ACQUIRING_LOCK)

        async with self._lock:
            self._current = turn
            try:
                return await self._run_locked(turn)
            finally:
                self._current = None
                self.last_turn = turn
                turn.enter(TurnState.IDLE)

    async def _run_locked(self, turn: Turn) -> str:
        s = self._settings

        turn.enter(TurnState.LOADING_HISTORY)
        conv = self._load()
        conv.append(Role.USER, turn.text)
        conv.truncate(s.max_history_length, s.system_prompt)

        try:
            api_key = self._credentials()
        except CredentialError as e:
            raise TurnSetupError(f"Error: {e}") from e

        turn.enter(TurnState.BUILDING_REQUEST)
        try:
            request = build_request(
                conv,
                turn.low_cost,
                economy_model=s.economy_model,
                standard_model=s.standard_model,
                max_tokens=s.max_tokens,
            )
        except MessageBuildError as e:
            raise TurnSetupError(f"Failed to build request: {e}") from e

        try:
            session = await self._open_session(request, api_key, turn.token)
        except StreamConnectionError as e:
            raise TurnSetupError(str(e)) from e

        turn.enter(TurnState.STREAMING)
        logger.info("turn streaming: model=%s history=%d", request.model, len(conv))
        try:
            await self._drain(session, turn)
        except asyncio.CancelledError:
            # The caller's task went away; keep what was streamed.
            logger.info("turn task cancelled; committing %d chars", len(turn.output))
            self._commit(conv, turn)
            raise

        return self._commit(conv, turn)

    def _load(self) -> Conversation:
        try:
            return self._store.load()
        except HistoryNotFoundError:
            logger.info("no stored history; starting a new conversation")
            return self._store.new_conversation()
        except HistoryReadError as e:
            raise TurnSetupError(str(e)) from e

    async def _drain(self, session: Any, turn: Turn) -> None:
        async with session:
            while True:
                try:
                    fragment = await session.next_fragment()
                except StreamError as e:
                    turn.stream_error = str(e)
                    logger.warning("stream failed after %d fragments: %s", len(turn.fragments), e)
                    self._emit(STREAM_ERROR_EVENT, str(e))
                    return
                if fragment is None:
                    if turn.token.cancelled:
                        logger.info("stream cancelled after %d fragments", len(turn.fragments))
                    return
                self._emit(CHAT_MESSAGE_EVENT, fragment)
                turn.fragments.append(fragment)

    def _commit(self, conv: Conversation, turn: Turn) -> str:
        turn.enter(TurnState.COMMITTING)
        output = turn.output
        conv.append(Role.ASSISTANT, output)
        try:
            self._store.save(conv)
        except HistoryWriteError as e:
            raise TurnPersistError(f"Failed to write history: {e}", partial=output) from e
        return output

    def _emit(self, event: str, payload: str) -> None:
        try:
            self._sink.emit(event, payload)
        except Exception:
            logger.exception("fragment sink failed for %s event", event)

    async def _open_provider_session(self, request: CompletionRequest, api_key: str, token: CancelToken) -> StreamingSession:
        return await StreamingSession.open(
            request,
            api_key,
            cancel_token=token,
            base_url=self._settings.base_url,
        )
