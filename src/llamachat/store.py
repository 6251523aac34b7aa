"""Concrete implementations of the persistence pillar.

Each store is a durable key-value medium holding two namespaced records: the
full conversation snapshot and the user settings. Loading treats corrupted
data as absent and saving never raises; the in-memory conversation store
stays authoritative for the session either way.
"""

import logging
import os
import sqlite3
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from .models import Settings, Snapshot

logger = logging.getLogger(__name__)

CHATS_KEY = "llama_chats_v1"
SETTINGS_KEY = "llama_settings_v1"

R = TypeVar("R", bound=BaseModel)


class Store(ABC):
    """Interface for saving and loading the conversation set and settings."""

    @abstractmethod
    def read(self, key: str) -> Optional[str]:
        """Returns the raw value stored under ``key``, or None."""
        pass

    @abstractmethod
    def write(self, key: str, value: str) -> None:
        """Stores ``value`` under ``key``, replacing any previous value."""
        pass

    def load_chats(self) -> Optional[Snapshot]:
        return self._load(CHATS_KEY, Snapshot)

    def save_chats(self, snapshot: Snapshot) -> None:
        self._save(CHATS_KEY, snapshot)

    def load_settings(self) -> Optional[Settings]:
        return self._load(SETTINGS_KEY, Settings)

    def save_settings(self, settings: Settings) -> None:
        self._save(SETTINGS_KEY, settings)

    def _load(self, key: str, model: Type[R]) -> Optional[R]:
        try:
            raw = self.read(key)
        except Exception as e:
            logger.warning("Could not read %s: %s", key, e)
            return None
        if not raw:
            return None
        try:
            return model.model_validate_json(raw)
        except (ValidationError, ValueError) as e:
            logger.warning("Ignoring corrupted record %s: %s", key, e)
            return None

    def _save(self, key: str, record: BaseModel) -> None:
        try:
            self.write(key, record.model_dump_json(by_alias=True))
        except Exception as e:
            logger.warning("Could not write %s: %s", key, e)


class InMemory(Store):
    """Keeps records in a dictionary for the lifetime of the process."""

    def __init__(self):
        self._data: Dict[str, str] = {}

    def read(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def write(self, key: str, value: str) -> None:
        self._data[key] = value


class File(Store):
    """Stores each record as a JSON file under a base directory.

    Writes go to a temporary file that is renamed over the target, so a crash
    mid-write never leaves a truncated record behind.
    """

    def __init__(self, base_dir: str):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.base_dir / f"{key}.json"

    def read(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def write(self, key: str, value: str) -> None:
        fd, tmp_path = tempfile.mkstemp(dir=self.base_dir, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
            os.replace(tmp_path, self._path(key))
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise


class SQLite(Store):
    """Stores records in a single key-value table of a SQLite database."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    "CREATE TABLE IF NOT EXISTS kv "
                    "(key TEXT PRIMARY KEY, value TEXT NOT NULL)"
                )
        finally:
            conn.close()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.db_path))

    def read(self, key: str) -> Optional[str]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        finally:
            conn.close()
        return row[0] if row else None

    def write(self, key: str, value: str) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    "INSERT INTO kv (key, value) VALUES (?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    (key, value),
                )
        finally:
            conn.close()
