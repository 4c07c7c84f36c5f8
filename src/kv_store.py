"""
Durable key-value blob stores used by the history ledger.

A store maps string keys to string values (the ledger keeps JSON text in
them). put_many() replaces several keys in one write, so readers never see
one key updated without the others.

JsonFileStore keeps everything in a single JSON file and writes it
atomically (temp file + move) with a .backup copy of the previous version,
so a crash mid-write cannot corrupt the packed order history.
"""

import json
import shutil
import tempfile
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Dict, Mapping, Optional

from exceptions import LedgerError
from logger import get_logger

logger = get_logger(__name__)

STORE_FORMAT_VERSION = '1.0'


class KeyValueStore(ABC):
    """String key -> string value store with atomic multi-key writes."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the value for key, or None when absent."""

    @abstractmethod
    def put_many(self, values: Mapping[str, Optional[str]]) -> None:
        """Atomically set every key; a None value removes the key."""


class MemoryStore(KeyValueStore):
    """In-process store; contents are lost when the process exits."""

    def __init__(self, initial: Optional[Mapping[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def put_many(self, values: Mapping[str, Optional[str]]) -> None:
        with self._lock:
            for key, value in values.items():
                if value is None:
                    self._data.pop(key, None)
                else:
                    self._data[key] = value


class JsonFileStore(KeyValueStore):
    """
    Single JSON file store with atomic replace and one backup generation.

    File layout:
        {"version": "1.0", "timestamp": "<iso>", "data": {"<key>": "<value>", ...}}

    Attributes:
        path (Path): Location of the JSON file
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._data: Dict[str, str] = self._load()
        logger.debug(f"JsonFileStore opened: {self.path} ({len(self._data)} keys)")

    @property
    def backup_path(self) -> Path:
        return self.path.with_suffix(self.path.suffix + '.backup')

    def _read_file(self, path: Path) -> Dict[str, str]:
        with open(path, 'r', encoding='utf-8') as f:
            content = json.load(f)

        data = content.get('data') if isinstance(content, dict) else None
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected store layout in {path}")
        return {k: v for k, v in data.items() if isinstance(v, str)}

    def _load(self) -> Dict[str, str]:
        """Read the store file, falling back to the backup if it is corrupt."""
        if not self.path.exists():
            logger.debug(f"No store file at {self.path}, starting empty")
            return {}

        try:
            return self._read_file(self.path)
        except (json.JSONDecodeError, ValueError, OSError) as e:
            logger.error(f"Error loading store {self.path}: {e}")

        if self.backup_path.exists():
            try:
                data = self._read_file(self.backup_path)
                logger.warning(f"Restored store contents from backup: {self.backup_path}")
                return data
            except (json.JSONDecodeError, ValueError, OSError) as e:
                logger.error(f"Backup is unreadable too: {e}")

        raise LedgerError(f"Store file {self.path} is corrupt and no usable backup exists")

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def put_many(self, values: Mapping[str, Optional[str]]) -> None:
        with self._lock:
            updated = dict(self._data)
            for key, value in values.items():
                if value is None:
                    updated.pop(key, None)
                else:
                    updated[key] = value

            self._write(updated)
            self._data = updated

    def _write(self, data: Dict[str, str]) -> None:
        """
        Write data with the atomic temp-file pattern.

        Raises:
            LedgerError: If the file cannot be written; the previous file is
                         restored from backup when possible
        """
        content = {
            'version': STORE_FORMAT_VERSION,
            'timestamp': datetime.now().isoformat(),
            'data': data,
        }

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)

            if self.path.exists():
                shutil.copy2(self.path, self.backup_path)

            with tempfile.NamedTemporaryFile(
                mode='w',
                dir=self.path.parent,
                prefix='.tmp_store_',
                suffix='.json',
                delete=False,
                encoding='utf-8'
            ) as tmp_file:
                json.dump(content, tmp_file, indent=2, ensure_ascii=False)
                tmp_path = tmp_file.name

            shutil.move(tmp_path, self.path)
            logger.debug(f"Store saved: {self.path}")

        except OSError as e:
            logger.error(f"CRITICAL: Failed to save store {self.path}: {e}", exc_info=True)

            if self.backup_path.exists():
                try:
                    shutil.copy2(self.backup_path, self.path)
                    logger.warning("Restored store file from backup")
                except OSError as restore_error:
                    logger.error(f"Failed to restore from backup: {restore_error}")

            raise LedgerError(f"Could not write {self.path}: {e}") from e
