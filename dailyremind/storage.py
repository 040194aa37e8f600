"""
storage.py
──────────
Key-value persistence for JSON-ready records.

Two stores share one interface:
  - JsonFileStore  one ``<collection>.json`` file per collection, guarded by a
                   threading.Lock and written atomically via os.replace()
  - MemoryStore    a dict of JSON strings, for tests and throwaway runs

Every collection write also stamps ``last_sync``, best effort.  Any other
read/write problem is raised as StorageFailure so the caller of the
triggering operation sees it.
"""

import json
import os
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Union

from dailyremind.errors import StorageFailure
from dailyremind.logger import logger

REMINDERS = "reminders"
EXECUTIONS = "executions"
STATS = "stats"
PREFERENCES = "preferences"
LAST_SYNC = "last_sync"

COLLECTIONS = (REMINDERS, EXECUTIONS, STATS, PREFERENCES, LAST_SYNC)


class Store(ABC):

    def get(self, collection: str, default: Any = None) -> Any:
        self._check(collection)
        value = self._read(collection)
        return default if value is None else value

    def set(self, collection: str, value: Any) -> None:
        self._check(collection)
        self._write(collection, value)
        if collection == LAST_SYNC:
            return
        # Collection already written; a failed stamp is only logged
        try:
            self._write(LAST_SYNC, datetime.now().isoformat(timespec="milliseconds"))
        except StorageFailure as e:
            logger.warning(f"Could not stamp last_sync after writing {collection}: {e}")

    @staticmethod
    def _check(collection: str) -> None:
        if collection not in COLLECTIONS:
            raise KeyError(f"Unknown collection: {collection}")

    @abstractmethod
    def _read(self, collection: str) -> Any:
        pass

    @abstractmethod
    def _write(self, collection: str, value: Any) -> None:
        pass


class JsonFileStore(Store):

    def __init__(self, data_dir: Union[str, Path]):
        self._data_dir = Path(data_dir)
        # OS-level mutex: prevents concurrent write corruption
        self._lock = threading.Lock()
        try:
            os.makedirs(self._data_dir, exist_ok=True)
        except OSError as e:
            raise StorageFailure(f"Cannot create data directory {self._data_dir}: {e}") from e

    def _path(self, collection: str) -> Path:
        return self._data_dir / f"{collection}.json"

    def _read(self, collection: str) -> Any:
        path = self._path(collection)
        with self._lock:
            if not path.exists():
                return None
            try:
                with open(path, "r", encoding="utf-8") as f:
                    return json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"Reading {path} failed: {e}")
                raise StorageFailure(f"Cannot read {collection}: {e}") from e

    def _write(self, collection: str, value: Any) -> None:
        """Atomic write: write to a tmp file then rename (os.replace)."""
        path = self._path(collection)
        tmp = path.with_suffix(".json.tmp")
        with self._lock:
            try:
                with open(tmp, "w", encoding="utf-8") as f:
                    json.dump(value, f, indent=2, ensure_ascii=False)
                os.replace(tmp, path)   # Atomic on POSIX; near-atomic on Windows
            except (OSError, TypeError, ValueError) as e:
                logger.error(f"Writing {path} failed: {e}")
                raise StorageFailure(f"Cannot write {collection}: {e}") from e


class MemoryStore(Store):
    """Values are kept as JSON text so callers never share mutable state."""

    def __init__(self, initial: Dict[str, Any] = None):
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()
        for collection, value in (initial or {}).items():
            self.set(collection, value)

    def _read(self, collection: str) -> Any:
        with self._lock:
            raw = self._data.get(collection)
        return None if raw is None else json.loads(raw)

    def _write(self, collection: str, value: Any) -> None:
        try:
            raw = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StorageFailure(f"Cannot serialise {collection}: {e}") from e
        with self._lock:
            self._data[collection] = raw
