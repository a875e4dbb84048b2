from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional, Protocol, runtime_checkable

from cryptography.fernet import Fernet, InvalidToken


logger = logging.getLogger(__name__)


@runtime_checkable
class GrantStore(Protocol):
    """String key/value storage for serialized decryption grants."""

    def load(self, key: str) -> Optional[str]: ...

    def save(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...

    def clear(self) -> None: ...


class InMemoryGrantStore:
    """Process-local store; grants disappear with the process."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    def load(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def save(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        return len(self._data)


def _to_fernet(key: str | bytes) -> Fernet:
    """Build a Fernet from a URL-safe base64 32-byte key (str or bytes)."""
    if isinstance(key, str):
        key = key.encode("utf-8")
    return Fernet(key)


class EncryptedFileGrantStore:
    """
    JSON file of grants, each value encrypted with Fernet.

    - File layout: { storage_key: fernet_token, ... }
    - Grants carry the ephemeral private key, so values are never written in clear.
    - A missing or corrupt file reads as empty; an entry that fails to decrypt
      (e.g. the key was rotated) reads as absent.
    """

    def __init__(self, path: os.PathLike[str] | str, fernet_key: str | bytes) -> None:
        self._path = Path(path)
        self._fernet = _to_fernet(fernet_key)
        self._data: Dict[str, str] = {}
        self._loaded = False

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        if not self._path.exists():
            return
        try:
            with self._path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable grant store %s: %s", self._path, exc)
            return
        if isinstance(raw, dict):
            self._data = {str(k): str(v) for k, v in raw.items() if isinstance(v, str)}

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(self._data, f, indent=2, sort_keys=True)
        os.replace(tmp, self._path)

    def load(self, key: str) -> Optional[str]:
        self._ensure_loaded()
        token = self._data.get(key)
        if token is None:
            return None
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken:
            logger.warning("Discarding grant %s: cannot decrypt with current key", key)
            return None

    def save(self, key: str, value: str) -> None:
        self._ensure_loaded()
        self._data[key] = self._fernet.encrypt(value.encode("utf-8")).decode("ascii")
        self._save()

    def remove(self, key: str) -> None:
        self._ensure_loaded()
        if self._data.pop(key, None) is not None:
            self._save()

    def clear(self) -> None:
        self._ensure_loaded()
        self._data = {}
        self._save()


__all__ = ["GrantStore", "InMemoryGrantStore", "EncryptedFileGrantStore"]
