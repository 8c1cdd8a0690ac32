"""Exception hierarchy shared by the prompt pipeline."""
from __future__ import annotations

from typing import Optional


class AssistantError(Exception):
    """Base class for every error raised by this package."""


# -----------------------------
# Setup / collaborators
# -----------------------------
class CredentialError(AssistantError):
    """The API key file is missing, unreadable or empty."""


class HistoryNotFoundError(AssistantError):
    """No history file exists yet."""


class HistoryReadError(AssistantError):
    """The history file exists but could not be read or decoded."""


class HistoryWriteError(AssistantError):
    """The history file could not be written."""


# -----------------------------
# Request / stream
# -----------------------------
class MessageBuildError(AssistantError):
    """A history message could not be encoded for its role."""

    def __init__(self, message: str, *, role: Optional[str] = None, index: Optional[int] = None) -> None:
        super().__init__(message)
        self.role = role
        self.index = index


class StreamConnectionError(AssistantError):
    """The completion stream could not be opened."""


class StreamError(AssistantError):
    """The provider stream failed after it was opened."""


# -----------------------------
# Turn boundary
# -----------------------------
class TurnError(AssistantError):
    """A turn ended with a fatal error.

    ``str(err)`` is the message shown to the caller and ``partial`` holds
    whatever assistant text was accumulated before the failure.
    """

    def __init__(self, message: str, *, partial: str = "") -> None:
        super().__init__(message)
        self.partial = partial


class TurnSetupError(TurnError):
    """The turn failed before streaming began; nothing was persisted."""


class TurnPersistError(TurnError):
    """The turn streamed a response but saving the history failed."""
