"""
Device-local key-value persistence.

Values are JSON documents addressed by a string key, one file per key. This is
the server-side counterpart of the browser's localStorage and backs the last
storage tier of the history cascade, the credit fallback, and admin flags.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any
from urllib.parse import quote

from fixtral.core.errors import StorageUnavailable

logger = logging.getLogger(__name__)

TIER_NAME = "local_storage"


class KeyValueStore(ABC):
    @abstractmethod
    def get(self, key: str) -> Any | None:
        """Return the decoded value for `key`, or None when it was never set."""

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove `key`; removing a missing key is a no-op."""


class JsonFileStore(KeyValueStore):
    def __init__(self, directory: str | os.PathLike[str]):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{quote(key, safe='')}.json"

    def get(self, key: str) -> Any | None:
        path = self._path(key)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageUnavailable(TIER_NAME, f"cannot read {key}: {e}") from e
        try:
            return json.loads(raw)
        except ValueError as e:
            raise StorageUnavailable(TIER_NAME, f"corrupt value under {key}") from e

    def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            encoded = json.dumps(value, default=str)
            # Write then rename so readers never see a half-written document.
            fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=".tmp-", suffix=".json")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(encoded)
                os.replace(tmp, path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except (OSError, TypeError, ValueError) as e:
            raise StorageUnavailable(TIER_NAME, f"cannot write {key}: {e}") from e
        logger.debug("stored %s (%d bytes)", key, len(encoded))

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise StorageUnavailable(TIER_NAME, f"cannot delete {key}: {e}") from e
