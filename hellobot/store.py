"""Durable storage for the live credential and the sync cursor."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from typing import Any

from .errors import PersistenceError
from .tokens import Credential

log = logging.getLogger(__name__)


class JsonSessionStore:
    """Keeps ``{"credential": ..., "cursor": ...}`` in a single JSON file.

    Each save re-reads the file, changes one key and replaces the file
    through a temporary sibling and ``os.replace``, so readers only ever see
    a complete document.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._data: dict[str, Any] = {}
        self._loaded = False

    # ── reading ──────────────────────────────────────────────────────

    def _read(self) -> dict[str, Any]:
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            data = {}
        except (OSError, ValueError) as exc:
            raise PersistenceError(f"Failed to read session store {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise PersistenceError(f"Session store {self.path} is not a JSON object")
        return data

    def load(self) -> dict[str, Any]:
        self._data = self._read()
        self._loaded = True
        log.debug("Loaded session store from %s", self.path)
        return dict(self._data)

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def load_credential(self) -> Credential | None:
        self._ensure_loaded()
        raw = self._data.get("credential")
        if not raw:
            return None
        try:
            return Credential.from_dict(raw)
        except (KeyError, TypeError, ValueError) as exc:
            raise PersistenceError(f"Stored credential is malformed: {exc}") from exc

    def load_cursor(self) -> str | None:
        self._ensure_loaded()
        cursor = self._data.get("cursor")
        return cursor if isinstance(cursor, str) and cursor else None

    # ── writing ──────────────────────────────────────────────────────

    def save_credential(self, credential: Credential) -> None:
        self._update("credential", credential.to_dict())

    def save_cursor(self, cursor: str | None) -> None:
        self._ensure_loaded()
        if cursor == self._data.get("cursor"):
            return
        self._update("cursor", cursor)

    def flush(self) -> None:
        if self._loaded:
            self._update("cursor", self._data.get("cursor"))

    def _update(self, key: str, value: Any) -> None:
        # Other keys may have been rewritten by another process (the refresh script).
        data = self._read()
        data[key] = value
        self._write(data)
        self._data = data
        self._loaded = True

    def _write(self, data: dict[str, Any]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        tmp_path = None
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                prefix=".session-", suffix=".tmp", dir=directory
            )
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2, sort_keys=True)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self.path)
            tmp_path = None
        except OSError as exc:
            raise PersistenceError(f"Failed to write session store {self.path}: {exc}") from exc
        finally:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)
