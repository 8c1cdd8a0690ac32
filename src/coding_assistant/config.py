"""Configuration loading utilities for the assistant server.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable CODING_ASSISTANT_CONFIG
3. Fallback to "config/default.yaml"

It also supports optional overrides from environment variables with prefix
``CODING_ASSISTANT__`` (e.g., CODING_ASSISTANT__CHAT__MAX_HISTORY_LENGTH=20).
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "CODING_ASSISTANT__"

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).with_name("system_message.txt")

DEFAULTS: Dict[str, Any] = {
    "chat": {
        "max_history_length": 12,
        "max_tokens": 1024,
        "economy_model": "gpt-3.5-turbo-1106",
        "standard_model": "gpt-4-1106-preview",
        "system_prompt": None,
        "system_prompt_file": None,
    },
    "history": {
        "path": "~/.coding-assistant-history/history.json",
    },
    "provider": {
        "api_key_path": "~/.openai_api_key",
        "base_url": None,
    },
    "server": {
        "cors_origins": ["*"],
        "log_level": "info",
    },
}


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix CODING_ASSISTANT__."""
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        # e.g., CODING_ASSISTANT__CHAT__MAX_TOKENS -> cfg["chat"]["max_tokens"]
        parts = key[len(ENV_PREFIX):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        leaf = parts[-1]
        # Attempt to parse simple types (bool, int, float)
        if value.lower() in {"true", "false"}:
            sub[leaf] = value.lower() == "true"
        else:
            try:
                if "." in value:
                    sub[leaf] = float(value)
                else:
                    sub[leaf] = int(value)
            except ValueError:
                sub[leaf] = value
    return cfg


def _merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration for the assistant server.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``CODING_ASSISTANT_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Built-in defaults, overlaid with the file contents, with environment
        overrides applied last.
    """
    if path is None:
        path = os.environ.get("CODING_ASSISTANT_CONFIG", "config/default.yaml")

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("config file not found at %s; using defaults", path_obj)
        return _apply_env_overrides(copy.deepcopy(DEFAULTS))

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            cfg = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}")

    if not isinstance(cfg, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_merge(DEFAULTS, cfg))


# -----------------------------
# Typed view
# -----------------------------
@dataclass
class Settings:
    system_prompt: str
    history_path: Path
    api_key_path: Path
    max_history_length: int = 12
    max_tokens: int = 1024
    economy_model: str = "gpt-3.5-turbo-1106"
    standard_model: str = "gpt-4-1106-preview"
    base_url: Optional[str] = None
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "info"

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "Settings":
        chat = cfg.get("chat", {}) or {}
        hist = cfg.get("history", {}) or {}
        prov = cfg.get("provider", {}) or {}
        srv = cfg.get("server", {}) or {}

        max_len = int(chat.get("max_history_length", 12))
        if max_len < 2:
            raise RuntimeError("chat.max_history_length must be at least 2")

        return cls(
            system_prompt=_resolve_system_prompt(chat),
            history_path=Path(str(hist.get("path") or DEFAULTS["history"]["path"])).expanduser(),
            api_key_path=Path(str(prov.get("api_key_path") or DEFAULTS["provider"]["api_key_path"])).expanduser(),
            max_history_length=max_len,
            max_tokens=int(chat.get("max_tokens", 1024)),
            economy_model=str(chat.get("economy_model") or DEFAULTS["chat"]["economy_model"]),
            standard_model=str(chat.get("standard_model") or DEFAULTS["chat"]["standard_model"]),
            base_url=prov.get("base_url") or None,
            cors_origins=list(srv.get("cors_origins") or ["*"]),
            log_level=str(srv.get("log_level", "info")),
        )


def _resolve_system_prompt(chat: Dict[str, Any]) -> str:
    # Inline prompt wins, then an explicit file, then the packaged default.
    inline = chat.get("system_prompt")
    if inline:
        return str(inline).strip()
    prompt_file = chat.get("system_prompt_file")
    path = Path(str(prompt_file)).expanduser() if prompt_file else DEFAULT_SYSTEM_PROMPT_FILE
    try:
        return path.read_text(encoding="utf-8").strip()
    except OSError as e:
        raise RuntimeError(f"Failed to read system prompt file {path}: {e}") from e
