"""
REFINERY JSON Store — one document per record, one directory per collection.

Concurrency model:
  - Every write takes an exclusive flock on a sidecar `<id>.json.lock`
    so distinct keys never contend and the same key is serialised
    across threads and processes.
  - Files are replaced atomically (temp file → fsync → os.replace),
    so readers never see a half-written document.
  - Each record carries a `version` counter. `replace()` is a
    compare-and-swap on it; `compare_and_set()` is a test-and-set on
    any field.
"""

from __future__ import annotations

import fcntl
import json
import os
import re
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator

from loguru import logger

Record = dict[str, Any]

_LOCK_SUFFIX = ".lock"
_UNSAFE_ID = re.compile(r"[^A-Za-z0-9_-]")


class RecordNotFoundError(LookupError):
    """Raised when a keyed record does not exist."""

    def __init__(self, collection: str, key: str, suggestion: str = ""):
        self.collection = collection
        self.key = key
        self.suggestion = suggestion or f"List the '{collection}' collection to find a valid id."
        super().__init__(f"No {collection} record with id '{key}'. {self.suggestion}")


class DuplicateRecordError(ValueError):
    """Raised when inserting a key that already exists."""


class StaleRecordError(RuntimeError):
    """Raised when a record changed since it was read."""


def sanitize_id(key: str) -> str:
    return _UNSAFE_ID.sub("_", str(key))


@contextmanager
def locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive lock on a `.lock` sidecar of *path*."""
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* via a same-directory temp file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class JsonStore:
    """Keyed JSON-document collection."""

    def __init__(self, base_path: Path | str, collection: str, key_field: str):
        self.collection = collection
        self.key_field = key_field
        self.directory = Path(base_path) / collection
        self.directory.mkdir(parents=True, exist_ok=True)

    # -- paths / io ---------------------------------------------------------

    def _path(self, key: str) -> Path:
        return self.directory / f"{sanitize_id(key)}.json"

    def _read(self, path: Path) -> Record | None:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            logger.warning(f"[STORE] Skipping corrupt record {path.name} in {self.collection}: {e}")
            return None

    def _write(self, path: Path, record: Record) -> None:
        atomic_write_text(path, json.dumps(record, indent=2, default=str))

    def _key_of(self, record: Record) -> str:
        key = record.get(self.key_field)
        if not key:
            raise ValueError(f"{self.collection} record is missing key field '{self.key_field}'")
        return str(key)

    # -- reads --------------------------------------------------------------

    def get(self, key: str) -> Record | None:
        return self._read(self._path(key))

    def require(self, key: str) -> Record:
        record = self.get(key)
        if record is None:
            raise RecordNotFoundError(self.collection, key)
        return record

    def has(self, key: str) -> bool:
        return self._path(key).exists()

    def list(self, predicate: Callable[[Record], bool] | None = None) -> list[Record]:
        records = []
        for path in sorted(self.directory.glob("*.json")):
            record = self._read(path)
            if record is None:
                continue
            if predicate is None or predicate(record):
                records.append(record)
        return records

    def count(self, predicate: Callable[[Record], bool] | None = None) -> int:
        return len(self.list(predicate))

    # -- writes -------------------------------------------------------------

    def insert(self, record: Record) -> Record:
        key = self._key_of(record)
        path = self._path(key)
        with locked_file(path):
            if path.exists():
                raise DuplicateRecordError(f"{self.collection} record '{key}' already exists")
            stored = {**record, "version": 1}
            self._write(path, stored)
        return stored

    def upsert(self, record: Record) -> Record:
        key = self._key_of(record)
        path = self._path(key)
        with locked_file(path):
            current = self._read(path)
            stored = {**record, "version": (current or {}).get("version", 0) + 1}
            self._write(path, stored)
        return stored

    def update(self, key: str, changes: Record) -> Record | None:
        """Merge *changes* into an existing record. Returns None if absent."""
        path = self._path(key)
        with locked_file(path):
            current = self._read(path)
            if current is None:
                return None
            stored = {**current, **changes, "version": current.get("version", 0) + 1}
            self._write(path, stored)
        return stored

    def replace(self, record: Record, expected_version: int) -> Record:
        """Write *record* only if the stored version still equals *expected_version*."""
        key = self._key_of(record)
        path = self._path(key)
        with locked_file(path):
            current = self._read(path)
            found = (current or {}).get("version", 0)
            if found != expected_version:
                raise StaleRecordError(
                    f"{self.collection} record '{key}' is at version {found}, expected {expected_version}"
                )
            stored = {**record, "version": expected_version + 1}
            self._write(path, stored)
        return stored

    def compare_and_set(self, key: str, field: str, expected: Any, changes: Record) -> Record:
        """Apply *changes* only if `record[field] == expected`, atomically."""
        path = self._path(key)
        with locked_file(path):
            current = self._read(path)
            if current is None:
                raise RecordNotFoundError(self.collection, key)
            if current.get(field) != expected:
                raise StaleRecordError(
                    f"{self.collection} record '{key}' has {field}={current.get(field)!r}, expected {expected!r}"
                )
            stored = {**current, **changes, "version": current.get("version", 0) + 1}
            self._write(path, stored)
        return stored

    def remove(self, key: str) -> bool:
        path = self._path(key)
        with locked_file(path):
            if not path.exists():
                return False
            path.unlink()
        return True
