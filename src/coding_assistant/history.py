"""Disk-backed conversation history (single JSON document, atomic writes)."""
from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .errors import HistoryNotFoundError, HistoryReadError, HistoryWriteError
from .structs import Conversation

logger = logging.getLogger(__name__)

BACKUP_TIMESTAMP = "%Y%m%d%H%M%S"


# -----------------------------
# Helpers
# -----------------------------
def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(path.parent)) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)


def backup_path_for(path: Path, now: Optional[datetime] = None) -> Path:
    """``<dir>/<basename>_<YYYYMMDDHHMMSS>.json`` next to ``path``."""
    stamp = (now or datetime.now()).strftime(BACKUP_TIMESTAMP)
    return path.parent / f"{path.stem}_{stamp}.json"


# -----------------------------
# HistoryStore
# -----------------------------
class HistoryStore:
    """Load/save one :class:`Conversation` as ``{"id": ..., "history": [...]}``.

    Loading repairs what the file may have lost: the history is cut to
    ``max_length`` messages and a leading SYSTEM message is restored.

    The store does not serialize turns; callers hold the turn lock around
    load/save. The internal lock only keeps ``clear()`` from racing a write.
    """

    def __init__(self, path: str | Path, system_prompt: str, *, max_length: int = 12) -> None:
        self.path = Path(path).expanduser()
        self.system_prompt = system_prompt
        self.max_length = max_length
        self._lock = threading.RLock()

    def new_conversation(self) -> Conversation:
        return Conversation.new(self.system_prompt)

    def load(self) -> Conversation:
        """Read the stored conversation.

        Raises :class:`HistoryNotFoundError` when nothing has been saved yet and
        :class:`HistoryReadError` when the file is unreadable or malformed.
        """
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise HistoryNotFoundError(f"No history at {self.path}") from e
        except (OSError, UnicodeDecodeError) as e:
            raise HistoryReadError(f"Failed to read history {self.path}: {e}") from e

        try:
            conv = Conversation.from_json(raw)
        except ValidationError as e:
            raise HistoryReadError(f"Invalid history file {self.path}: {e}") from e

        before = len(conv)
        conv.truncate(self.max_length, self.system_prompt)
        if len(conv) != before:
            logger.debug("history %s repaired on load: %d -> %d messages", conv.id, before, len(conv))
        return conv

    def load_or_new(self) -> Conversation:
        try:
            return self.load()
        except HistoryNotFoundError:
            return self.new_conversation()

    def save(self, conversation: Conversation) -> None:
        with self._lock:
            try:
                _atomic_write_text(self.path, conversation.to_json())
            except OSError as e:
                raise HistoryWriteError(f"Failed to write history {self.path}: {e}") from e
        logger.debug("saved history %s (%d messages)", conversation.id, len(conversation))

    def clear(self) -> Conversation:
        """Back up the current file, delete it and write a fresh conversation."""
        with self._lock:
            if self.path.exists():
                backup = backup_path_for(self.path)
                try:
                    shutil.copyfile(self.path, backup)
                    self.path.unlink()
                except OSError as e:
                    raise HistoryWriteError(f"Failed to back up history {self.path}: {e}") from e
                logger.info("history backed up to %s", backup)

            conv = self.new_conversation()
            self.save(conv)
            return conv
