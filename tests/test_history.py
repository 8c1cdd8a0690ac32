from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path

import pytest

from coding_assistant.errors import HistoryNotFoundError, HistoryReadError, HistoryWriteError
from coding_assistant.history import HistoryStore, backup_path_for
from coding_assistant.structs import Conversation, Role


def test_history_roundtrip(tmp_path: Path):
    store = HistoryStore(tmp_path / "history.json", "sys")
    conv = store.new_conversation()
    conv.append(Role.USER, "hi")
    conv.append(Role.ASSISTANT, "hello")
    store.save(conv)

    loaded = store.load()
    assert loaded.id == conv.id
    assert loaded.history == conv.history


def test_file_format(tmp_path: Path):
    path = tmp_path / "history.json"
    store = HistoryStore(path, "sys")
    conv = store.new_conversation()
    store.save(conv)

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data == {"id": str(conv.id), "history": [{"role": "system", "content": "sys"}]}


def test_missing_file_raises_not_found(tmp_path: Path):
    store = HistoryStore(tmp_path / "nope.json", "sys")
    with pytest.raises(HistoryNotFoundError):
        store.load()
    fresh = store.load_or_new()
    assert len(fresh) == 1 and fresh.history[0].content == "sys"


def test_malformed_file_raises_read_error(tmp_path: Path):
    path = tmp_path / "history.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(HistoryReadError):
        HistoryStore(path, "sys").load()


def test_undecodable_file_raises_read_error(tmp_path: Path):
    path = tmp_path / "history.json"
    path.write_bytes(b"\xff\xfe{\"id\": 1}")
    with pytest.raises(HistoryReadError, match="Failed to read"):
        HistoryStore(path, "sys").load()


def test_bad_role_in_file_raises_read_error(tmp_path: Path):
    path = tmp_path / "history.json"
    path.write_text(json.dumps({"id": "0b6c1d9e-63a4-4d3f-9b54-5f0f1f8f7a11",
                                "history": [{"role": "robot", "content": "x"}]}), encoding="utf-8")
    with pytest.raises(HistoryReadError):
        HistoryStore(path, "sys").load()


def test_load_accepts_mixed_case_roles_and_prepends_system(tmp_path: Path):
    path = tmp_path / "history.json"
    path.write_text(json.dumps({
        "id": "0b6c1d9e-63a4-4d3f-9b54-5f0f1f8f7a11",
        "history": [{"role": "User", "content": "q"}, {"role": "Assistant", "content": "a"}],
    }), encoding="utf-8")

    conv = HistoryStore(path, "sys").load()
    assert [m.role for m in conv.history] == [Role.SYSTEM, Role.USER, Role.ASSISTANT]
    assert conv.history[0].content == "sys"


def test_load_truncates_to_max_length(tmp_path: Path):
    path = tmp_path / "history.json"
    store = HistoryStore(path, "sys", max_length=3)
    conv = Conversation.new("sys")
    for i in range(5):
        conv.append(Role.USER, f"u{i}")
        conv.append(Role.ASSISTANT, f"a{i}")
    store.save(conv)

    loaded = store.load()
    assert [m.content for m in loaded.history] == ["sys", "u4", "a4"]


def test_save_leaves_no_temp_files(tmp_path: Path):
    store = HistoryStore(tmp_path / "history.json", "sys")
    store.save(store.new_conversation())
    store.save(store.new_conversation())
    assert sorted(p.name for p in tmp_path.iterdir()) == ["history.json"]


def test_save_failure_raises_write_error(tmp_path: Path):
    blocker = tmp_path / "blocker"
    blocker.write_text("a file, not a directory", encoding="utf-8")
    store = HistoryStore(blocker / "history.json", "sys")
    with pytest.raises(HistoryWriteError):
        store.save(store.new_conversation())


def test_backup_name_uses_basename_and_timestamp(tmp_path: Path):
    path = tmp_path / "history.json"
    got = backup_path_for(path, datetime(2024, 3, 5, 7, 8, 9))
    assert got == tmp_path / "history_20240305070809.json"


def test_clear_backs_up_and_resets(tmp_path: Path):
    path = tmp_path / "history.json"
    store = HistoryStore(path, "sys")
    conv = store.new_conversation()
    conv.append(Role.USER, "remember me")
    store.save(conv)

    fresh = store.clear()

    backups = [p for p in tmp_path.glob("history_*.json")]
    assert len(backups) == 1
    assert "remember me" in backups[0].read_text(encoding="utf-8")

    reloaded = store.load()
    assert reloaded.id == fresh.id != conv.id
    assert len(reloaded) == 1 and reloaded.history[0].role is Role.SYSTEM


def test_clear_without_existing_file_writes_default(tmp_path: Path):
    path = tmp_path / "history.json"
    store = HistoryStore(path, "sys")
    store.clear()
    assert path.exists()
    assert list(tmp_path.glob("history_*.json")) == []
