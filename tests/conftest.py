"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Iterable, List, Optional

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from coding_assistant.config import Settings  # noqa: E402
from coding_assistant.history import HistoryStore  # noqa: E402

SYSTEM_PROMPT = "You are a test assistant."


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    for var in list(os.environ):
        if var.startswith("CODING_ASSISTANT"):
            monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture(scope="function")
def settings(tmp_path: Path) -> Settings:
    key = tmp_path / "api_key"
    key.write_text("  sk-test  \n", encoding="utf-8")
    return Settings(
        system_prompt=SYSTEM_PROMPT,
        history_path=tmp_path / "hist" / "history.json",
        api_key_path=key,
        max_history_length=6,
    )


@pytest.fixture(scope="function")
def store(settings: Settings) -> HistoryStore:
    return HistoryStore(settings.history_path, settings.system_prompt, max_length=settings.max_history_length)


# -----------------------------
# Fake streaming sessions
# -----------------------------
class FakeSession:
    """Scripted stand-in for StreamingSession.

    ``script`` items are fragments (str) or exceptions to raise. When
    ``cancel_after`` is set the token is cancelled once that many fragments
    have been handed out, mimicking a user pressing stop.
    """

    def __init__(self, script: Iterable[Any], token, *, cancel_after: Optional[int] = None) -> None:
        self.script: List[Any] = list(script)
        self.token = token
        self.cancel_after = cancel_after
        self.served = 0
        self.closed = False

    async def next_fragment(self) -> Optional[str]:
        if self.cancel_after is not None and self.served >= self.cancel_after:
            self.token.cancel()
        if self.token.cancelled or not self.script:
            return None
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            self.script.clear()
            raise item
        self.served += 1
        return item

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.closed = True


class FakeOpener:
    """Records requests and hands out FakeSessions."""

    def __init__(self, script: Iterable[Any] = (), *, cancel_after: Optional[int] = None, error: Optional[Exception] = None) -> None:
        self.script = list(script)
        self.cancel_after = cancel_after
        self.error = error
        self.requests: list = []
        self.api_keys: list = []
        self.sessions: List[FakeSession] = []

    async def __call__(self, request, api_key, token):
        self.requests.append(request)
        self.api_keys.append(api_key)
        if self.error is not None:
            raise self.error
        session = FakeSession(self.script, token, cancel_after=self.cancel_after)
        self.sessions.append(session)
        return session


# -----------------------------
# Fake OpenAI client
# -----------------------------
def chunk(*contents: Optional[str]) -> SimpleNamespace:
    return SimpleNamespace(
        choices=[SimpleNamespace(index=i, delta=SimpleNamespace(content=c)) for i, c in enumerate(contents)]
    )


class FakeStream:
    """Async iterator over scripted chunks; ``None`` items block forever."""

    def __init__(self, items: Iterable[Any]) -> None:
        self.items = list(items)
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self.items:
            raise StopAsyncIteration
        item = self.items.pop(0)
        if item is None:
            await asyncio.Event().wait()
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True


class FakeCompletions:
    def __init__(self, stream: Any = None, error: Optional[Exception] = None, hang: bool = False) -> None:
        self.stream = stream
        self.error = error
        self.hang = hang
        self.calls: list = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.hang:
            await asyncio.Event().wait()
        if self.error is not None:
            raise self.error
        return self.stream


def fake_client(stream: Any = None, error: Optional[Exception] = None, hang: bool = False) -> SimpleNamespace:
    return SimpleNamespace(chat=SimpleNamespace(completions=FakeCompletions(stream, error, hang)))
