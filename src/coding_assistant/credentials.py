"""Static API key lookup."""
from __future__ import annotations

from pathlib import Path

from .errors import CredentialError

DEFAULT_API_KEY_PATH = Path("~/.openai_api_key")


def read_api_key(path: str | Path = DEFAULT_API_KEY_PATH) -> str:
    """Return the trimmed contents of the key file."""
    p = Path(path).expanduser()
    try:
        key = p.read_text(encoding="utf-8").strip()
    except FileNotFoundError as e:
        raise CredentialError(f"Failed to open API key file {p}.") from e
    except (OSError, UnicodeDecodeError) as e:
        raise CredentialError(f"Failed to read API key file {p}: {e}") from e
    if not key:
        raise CredentialError(f"API key file {p} is empty.")
    return key
