"""
Named-record key/value storage.

Holds the tester's own records (CALLS, OUTPUT, relaunch input):
- LocalKeyValueStore: one JSON file per key under a state directory
- RemoteKeyValueStore: a key/value store on the platform

Both expose the same two async operations so the engine never cares
where its state lives.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from jobtester.engine.errors import RemoteInvocationError
from jobtester.platform.client import PlatformClient

logger = logging.getLogger(__name__)

_VALID_KEY = re.compile(r"^[a-zA-Z0-9!\-_.'()]{1,256}$")


def validate_key(key: str) -> str:
    """Record keys are restricted to a filesystem- and URL-safe alphabet."""
    if not _VALID_KEY.match(key or ""):
        raise ValueError(f"Invalid record key: {key!r}")
    return key


class KeyValueStore(ABC):
    """A store of named JSON records."""

    @abstractmethod
    async def get_value(self, key: str) -> Optional[Any]:
        """Return the stored value, or None when the record is absent or unreadable."""

    @abstractmethod
    async def set_value(self, key: str, value: Any) -> None:
        """Replace the record."""


class LocalKeyValueStore(KeyValueStore):
    """
    File-backed store.

    Stored as JSON in {directory}/{key}.json
    """

    def __init__(self, directory: Path | str):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{validate_key(key)}.json"

    async def get_value(self, key: str) -> Optional[Any]:
        path = self._path(key)
        if not path.exists():
            return None

        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"[Storage] Unreadable record {path}: {e}")
            return None

    async def set_value(self, key: str, value: Any) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        tmp_path = path.with_suffix(".json.tmp")

        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(value, f, indent=2, ensure_ascii=False, default=str)

        # Atomic on POSIX: a crash never leaves a half-written record
        tmp_path.replace(path)


class RemoteKeyValueStore(KeyValueStore):
    """Store backed by a platform key/value store."""

    def __init__(self, client: PlatformClient, store_id: str):
        self.client = client
        self.store_id = store_id

    async def get_value(self, key: str) -> Optional[Any]:
        key = validate_key(key)
        try:
            record = await self.client.get_record(self.store_id, key)
        except (RemoteInvocationError, ValueError) as e:
            logger.warning(f"[Storage] Unreadable record {self.store_id}/{key}: {e}")
            return None
        if record is None:
            return None
        return record["value"]

    async def set_value(self, key: str, value: Any) -> None:
        await self.client.set_record(self.store_id, validate_key(key), value)
