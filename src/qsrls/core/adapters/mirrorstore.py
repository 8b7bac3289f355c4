from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from dataclasses import asdict, fields
from enum import Enum
from pathlib import Path
from typing import Any

from qsrls.core.models import (
    RECORD_TYPES,
    EntityType,
    PrincipalKind,
    RlsStatus,
)

logger = logging.getLogger(__name__)

_ENUM_FIELDS: dict[str, type[Enum]] = {
    "kind": PrincipalKind,
    "rls_enabled": RlsStatus,
}


def _encode(record: Any) -> dict[str, Any]:
    """Return a JSON-serializable dict for a model record."""
    out: dict[str, Any] = {}
    for k, v in asdict(record).items():
        if isinstance(v, Enum):
            v = v.value
        elif isinstance(v, tuple):
            v = list(v)
        out[k] = v
    return out


def _decode(entity: EntityType, data: dict[str, Any]) -> Any:
    """Build a model record from its stored dict, ignoring unknown keys."""
    cls = RECORD_TYPES[entity]
    known = {f.name for f in fields(cls)}
    kwargs: dict[str, Any] = {}
    for k, v in data.items():
        if k not in known:
            continue
        if k in _ENUM_FIELDS and v is not None:
            v = _ENUM_FIELDS[k](v)
        elif k == "fields" and isinstance(v, list):
            v = tuple(v)
        kwargs[k] = v
    return cls(**kwargs)


class MemoryMirrorStore:
    """In-process mirror store with per-record atomic writes."""

    def __init__(self) -> None:
        self._records: dict[EntityType, dict[str, Any]] = {e: {} for e in EntityType}
        self._lock = threading.RLock()

    def get(self, entity: EntityType, key: str) -> Any | None:
        with self._lock:
            return self._records[entity].get(key)

    def list(self, entity: EntityType, **filters: Any) -> list[Any]:
        with self._lock:
            records = list(self._records[entity].values())
        if not filters:
            return records
        return [
            r
            for r in records
            if all(getattr(r, name, None) == want for name, want in filters.items())
        ]

    def create(self, entity: EntityType, record: Any) -> str | None:
        with self._lock:
            bucket = self._records[entity]
            if record.key in bucket:
                logger.warning("%s '%s' already exists; create refused", entity.value, record.key)
                return None
            bucket[record.key] = record
            self._commit()
            return record.key

    def update(self, entity: EntityType, record: Any) -> str | None:
        with self._lock:
            bucket = self._records[entity]
            if record.key not in bucket:
                logger.warning("%s '%s' does not exist; update refused", entity.value, record.key)
                return None
            bucket[record.key] = record
            self._commit()
            return record.key

    def delete(self, entity: EntityType, key: str) -> str | None:
        with self._lock:
            if self._records[entity].pop(key, None) is None:
                return None
            self._commit()
            return key

    def clone(self) -> MemoryMirrorStore:
        """Return an in-memory copy; writes to it never reach this store."""
        copy = MemoryMirrorStore()
        with self._lock:
            for entity, records in self._records.items():
                copy._records[entity] = dict(records)
        return copy

    def _commit(self) -> None:
        """Hook called after every mutation (no-op in memory)."""


class JsonMirrorStore(MemoryMirrorStore):
    """Mirror store persisted to a single JSON document."""

    _STORE_PATH_ENV = "QSRLS_STORE_PATH"
    _FORMAT_VERSION = 1

    def __init__(self, path: Path | None = None) -> None:
        super().__init__()
        self.path = path or self.default_path()
        self._load()

    @classmethod
    def default_path(cls) -> Path:
        """Return the store path, honoring env overrides."""
        explicit = os.getenv(cls._STORE_PATH_ENV)
        if explicit:
            return Path(explicit)
        xdg = os.getenv("XDG_DATA_HOME")
        base = Path(xdg) if xdg else Path.home() / ".local" / "share"
        return base / "qsrls" / "mirror.json"

    def _load(self) -> None:
        """Load records from disk; a missing or corrupt file starts empty."""
        if not self.path.exists():
            return
        try:
            payload = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable mirror store %s: %s", self.path, exc)
            return
        entities = payload.get("entities", {}) if isinstance(payload, dict) else {}
        for entity in EntityType:
            for item in entities.get(entity.value, []):
                try:
                    record = _decode(entity, item)
                except (TypeError, ValueError):
                    logger.warning("Skipping malformed %s record: %r", entity.value, item)
                    continue
                self._records[entity][record.key] = record

    def _commit(self) -> None:
        """Write the whole store atomically (temp file + replace)."""
        payload = {
            "version": self._FORMAT_VERSION,
            "entities": {
                entity.value: [_encode(r) for r in self._records[entity].values()]
                for entity in EntityType
            },
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".mirror-", suffix=".json")
        try:
            with os.fdopen(fd, "w") as fh:
                json.dump(payload, fh, indent=2)
            os.replace(tmp, self.path)
        except OSError:
            Path(tmp).unlink(missing_ok=True)
            raise
