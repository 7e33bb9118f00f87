from __future__ import annotations

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

from auth.models import AccessToken

LOGGER = logging.getLogger("rentapi.auth")


class StorageError(RuntimeError):
    pass


class KeyValueStorage(ABC):
    """Durable string-keyed storage for JSON-serialisable values."""

    @abstractmethod
    def get_item(self, key: str) -> object | None:
        raise NotImplementedError

    @abstractmethod
    def set_item(self, key: str, value: object) -> None:
        raise NotImplementedError

    @abstractmethod
    def remove_item(self, key: str) -> None:
        raise NotImplementedError


class MemoryStorage(KeyValueStorage):
    def __init__(self) -> None:
        self._items: dict[str, object] = {}

    def get_item(self, key: str) -> object | None:
        return self._items.get(key)

    def set_item(self, key: str, value: object) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)


class FileStorage(KeyValueStorage):
    def __init__(self, path: str | Path = ".token.json") -> None:
        self._path = Path(path)

    def get_item(self, key: str) -> object | None:
        return self._read_all().get(key)

    def set_item(self, key: str, value: object) -> None:
        all_items = self._read_all()
        all_items[key] = value
        self._write_all(all_items)

    def remove_item(self, key: str) -> None:
        all_items = self._read_all()
        if all_items.pop(key, None) is None:
            return
        self._write_all(all_items)

    def _read_all(self) -> dict[str, object]:
        if not self._path.exists():
            return {}

        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as error:
            raise StorageError(f"Token storage file is not valid JSON: {self._path}") from error
        if not isinstance(raw, dict):
            raise StorageError("Token storage file is invalid; expected top-level JSON object.")
        return raw

    def _write_all(self, payload: dict[str, object]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(
            prefix=f"{self._path.name}.",
            suffix=".tmp",
            dir=self._path.parent,
        )
        tmp_path = Path(tmp_name)

        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=True)
            os.replace(tmp_path, self._path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()


class CredentialStore:
    """Owns the current access token and mirrors every change to storage.

    Storage is read once at construction. After that the in-memory value is
    authoritative: storage failures are logged and never raised.
    """

    def __init__(self, storage: KeyValueStorage, *, key: str = "token") -> None:
        self._storage = storage
        self._key = key
        self._token: AccessToken | None = self._load()

    def get(self) -> AccessToken | None:
        return self._token

    def set(self, token: AccessToken) -> None:
        self._token = token
        self._persist(token)

    def clear(self) -> None:
        self._token = None
        self._persist(None)

    def _load(self) -> AccessToken | None:
        try:
            payload = self._storage.get_item(self._key)
        except (OSError, ValueError, StorageError) as error:
            LOGGER.warning("Could not read stored token key=%s: %s", self._key, error)
            return None
        if payload is None:
            return None
        try:
            return AccessToken.from_payload(payload)
        except RuntimeError as error:
            LOGGER.warning("Ignoring stored token key=%s: %s", self._key, error)
            return None

    def _persist(self, token: AccessToken | None) -> None:
        try:
            if token is None:
                self._storage.remove_item(self._key)
            else:
                self._storage.set_item(self._key, token.to_payload())
        except (OSError, ValueError, StorageError) as error:
            LOGGER.warning("Could not persist token key=%s: %s", self._key, error)
