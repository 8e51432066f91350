from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)

SchemaVersion = 1


class DurableStorage(Protocol):
    """
    Key-value persistence behind the cache.

    `set` and `remove` only touch memory. `snapshot` returns the document to
    persist (None when nothing changed since the last snapshot) and clears the
    dirty flag; `write` stores that document and may block, so callers run it
    off the event loop.
    """

    def get(self, key: str) -> Optional[dict]:
        ...

    def set(self, key: str, payload: dict) -> None:
        ...

    def remove(self, key: str) -> None:
        ...

    def items(self) -> Iterable[Tuple[str, dict]]:
        ...

    def snapshot(self) -> Optional[dict]:
        ...

    def write(self, document: dict) -> None:
        ...

    def mark_dirty(self) -> None:
        ...


def atomic_write_json(path: Path, payload: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
    tmp_path.replace(path)


class MemoryStorage:
    """Process-local storage, mostly useful in tests."""

    def __init__(self) -> None:
        self._data: Dict[str, dict] = {}

    def get(self, key: str) -> Optional[dict]:
        return self._data.get(key)

    def set(self, key: str, payload: dict) -> None:
        self._data[key] = payload

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def items(self) -> Iterable[Tuple[str, dict]]:
        return list(self._data.items())

    def snapshot(self) -> Optional[dict]:
        return None

    def write(self, document: dict) -> None:
        pass

    def mark_dirty(self) -> None:
        pass


class JsonFileStorage:
    """
    Key-value storage persisted as a single JSON document.

    Mutations only mark the document dirty. The owning cache snapshots it and
    writes it atomically in a worker thread, so many `set` calls collapse into
    one rewrite. A missing, unreadable or schema-mismatched file starts an
    empty store.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._data: Dict[str, dict] = self._load()
        self._dirty = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def dirty(self) -> bool:
        return self._dirty

    def get(self, key: str) -> Optional[dict]:
        return self._data.get(key)

    def set(self, key: str, payload: dict) -> None:
        self._data[key] = payload
        self._dirty = True

    def remove(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._dirty = True

    def items(self) -> Iterable[Tuple[str, dict]]:
        return list(self._data.items())

    def snapshot(self) -> Optional[dict]:
        if not self._dirty:
            return None
        self._dirty = False
        return {"schema_version": SchemaVersion, "entries": dict(self._data)}

    def write(self, document: dict) -> None:
        atomic_write_json(self._path, document)

    def mark_dirty(self) -> None:
        self._dirty = True

    def _load(self) -> Dict[str, dict]:
        if not self._path.exists():
            return {}
        try:
            payload: Any = json.loads(self._path.read_text(encoding="utf-8"))
        except Exception:
            logger.exception("Failed to read cache storage file, starting fresh. path=%s", self._path)
            return {}
        if not isinstance(payload, dict):
            logger.warning("Cache storage file is not a mapping, starting fresh. path=%s", self._path)
            return {}
        version = payload.get("schema_version")
        if version != SchemaVersion:
            logger.warning(
                "Cache storage schema version mismatch, starting fresh. path=%s expected=%s actual=%s",
                self._path,
                SchemaVersion,
                version,
            )
            return {}
        entries = payload.get("entries", {})
        if not isinstance(entries, dict):
            return {}
        return {str(key): value for key, value in entries.items() if isinstance(value, dict)}
