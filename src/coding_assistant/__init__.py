"""Streaming coding-assistant server with a persisted, bounded chat history.

This package provides a FastAPI application factory named ``create_app``
inside ``coding_assistant/server.py`` (see :func:`create_app`).

Typical usage
-------------
from coding_assistant import create_app
app = create_app()

or, from the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

from .orchestrator import PromptOrchestrator, TurnState
from .streaming import CancelToken, StreamingSession
from .structs import Conversation, Message, Role

__all__ = [
    "create_app",
    "__version__",
    "get_version",
    "CancelToken",
    "Conversation",
    "Message",
    "PromptOrchestrator",
    "Role",
    "StreamingSession",
    "TurnState",
]

# ---------------------------------------------------------------------
# Version handling
# ---------------------------------------------------------------------
__version__ = "0.1.0"

def get_version() -> str:
    """Return the package version."""
    return __version__


def create_app(*args, **kwargs):
    """Return a configured FastAPI application.

    This forwards to :func:`coding_assistant.server.create_app`; FastAPI is
    only imported when an app is actually built.
    """
    from .server import create_app as _create_app

    return _create_app(*args, **kwargs)
