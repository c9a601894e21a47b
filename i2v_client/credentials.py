"""Access-token storage.

The orchestrator never reads the token from global state: it is handed a
store and calls ``get()`` at submit time. Writes are last-write-wins.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

CREDENTIAL_KEY = "a2e_api_token"


class CredentialStore:
    """Key-value boundary for the API token."""

    key: str = CREDENTIAL_KEY

    def get(self) -> str | None:
        raise NotImplementedError

    def set(self, value: str) -> None:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


class MemoryCredentialStore(CredentialStore):
    """Process-local store, used by tests and embedding applications."""

    def __init__(self, value: str | None = None) -> None:
        self._value = value or None

    def get(self) -> str | None:
        return self._value

    def set(self, value: str) -> None:
        self._value = value or None

    def clear(self) -> None:
        self._value = None


class FileCredentialStore(CredentialStore):
    """Token persisted in a small JSON file, under a fixed key."""

    def __init__(self, path: str | Path, key: str = CREDENTIAL_KEY) -> None:
        self.path = Path(path).expanduser()
        self.key = key

    def _load(self) -> dict:
        if not self.path.exists():
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return data if isinstance(data, dict) else {}

    def _save(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)

    def get(self) -> str | None:
        return self._load().get(self.key) or None

    def set(self, value: str) -> None:
        if not value:
            self.clear()
            return
        data = self._load()
        data[self.key] = value
        self._save(data)
        logger.info("Saved API token to %s", self.path)

    def clear(self) -> None:
        data = self._load()
        if data.pop(self.key, None) is not None:
            self._save(data)
            logger.info("Cleared API token from %s", self.path)


def redact(token: str | None, keep: int = 20) -> str:
    """Return a printable form of a token, truncated after ``keep`` characters."""
    if not token:
        return "(not set)"
    if len(token) <= keep:
        return token[: max(1, keep // 4)] + "..."
    return f"{token[:keep]}..."
