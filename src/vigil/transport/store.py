# src/vigil/transport/store.py
"""Key-ordered persistence for the offline queue.

A store holds at most max_size requests. Appending to a full store evicts
the oldest entry (FIFO) and returns it so the caller can account for the
drop. Keys are monotonically increasing integers, so key order is age order.
"""

import base64
import itertools
import json
import os
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

import structlog

from vigil.contracts.enums import DataCategory
from vigil.contracts.transport import TransportRequest

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class StoredRequest:
    """A persisted request.

    Attributes:
        key: Store-assigned, strictly increasing
        request: The request as originally sent
        created_at: Epoch seconds when it was first persisted
    """

    key: int
    request: TransportRequest
    created_at: float


@runtime_checkable
class OfflineStore(Protocol):
    """Persistence contract required by OfflineQueue."""

    @property
    def max_size(self) -> int: ...

    def append(self, request: TransportRequest, created_at: float) -> StoredRequest | None:
        """Persist a request.

        Returns:
            The evicted oldest entry if the store was full, else None.
        """
        ...

    def remove(self, key: int) -> bool:
        """Delete an entry; False if it was already gone."""
        ...

    def entries(self) -> list[StoredRequest]:
        """Snapshot of all entries, oldest first."""
        ...

    def __contains__(self, key: object) -> bool:
        """True while the entry with this key is still stored."""
        ...

    def clear(self) -> None: ...

    def __len__(self) -> int: ...


class MemoryStore:
    """In-process ring buffer; contents are lost on exit.

    Example:
        store = MemoryStore(max_size=30)
        evicted = store.append(request, created_at=time.time())
    """

    def __init__(self, max_size: int = 30) -> None:
        if max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {max_size}")
        self._entries: deque[StoredRequest] = deque(maxlen=max_size)
        self._keys = itertools.count(1)

    @property
    def max_size(self) -> int:
        return self._entries.maxlen or 0

    def append(self, request: TransportRequest, created_at: float) -> StoredRequest | None:
        # Check before append: deque evicts silently during append
        evicted = self._entries[0] if len(self._entries) == self._entries.maxlen else None
        self._entries.append(StoredRequest(key=next(self._keys), request=request, created_at=created_at))
        return evicted

    def remove(self, key: int) -> bool:
        for entry in self._entries:
            if entry.key == key:
                self._entries.remove(entry)
                return True
        return False

    def entries(self) -> list[StoredRequest]:
        return list(self._entries)

    def __contains__(self, key: object) -> bool:
        return any(entry.key == key for entry in self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class FileStore:
    """One JSON file per entry in a directory; survives restarts.

    File names are the zero-padded key, so lexical order is age order.
    Writes go through a temporary file and os.replace so a crash never
    leaves a half-written entry. Unreadable entries are logged and deleted.
    """

    _SUFFIX = ".json"
    _KEY_WIDTH = 20

    def __init__(self, directory: Path, max_size: int = 30) -> None:
        if max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {max_size}")
        self._directory = directory
        self._directory.mkdir(parents=True, exist_ok=True)
        self._max_size = max_size
        existing = [self._key_of(path) for path in self._paths()]
        self._next_key = max(existing, default=0) + 1

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def directory(self) -> Path:
        return self._directory

    def _paths(self) -> list[Path]:
        return sorted(p for p in self._directory.glob(f"*{self._SUFFIX}") if p.stem.isdigit())

    @staticmethod
    def _key_of(path: Path) -> int:
        return int(path.stem)

    def _path_for(self, key: int) -> Path:
        return self._directory / f"{key:0{self._KEY_WIDTH}d}{self._SUFFIX}"

    def _read(self, path: Path) -> StoredRequest | None:
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            request = TransportRequest(
                body=base64.b64decode(raw["body"]),
                category=DataCategory(raw["category"]),
                content_type=raw.get("content_type"),
            )
            return StoredRequest(key=self._key_of(path), request=request, created_at=float(raw["created_at"]))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("Discarding unreadable offline entry", path=str(path), error=str(e))
            path.unlink(missing_ok=True)
            return None

    def append(self, request: TransportRequest, created_at: float) -> StoredRequest | None:
        evicted: StoredRequest | None = None
        paths = self._paths()
        while len(paths) >= self._max_size:
            oldest = paths.pop(0)
            entry = self._read(oldest)
            oldest.unlink(missing_ok=True)
            # Report the first readable eviction; unreadable ones were already logged
            if entry is not None and evicted is None:
                evicted = entry

        key = self._next_key
        self._next_key += 1
        record = {
            "body": base64.b64encode(request.body).decode("ascii"),
            "category": str(request.category),
            "content_type": request.content_type,
            "created_at": created_at,
        }
        target = self._path_for(key)
        tmp = target.with_suffix(".tmp")
        tmp.write_text(json.dumps(record), encoding="utf-8")
        os.replace(tmp, target)
        return evicted

    def remove(self, key: int) -> bool:
        path = self._path_for(key)
        if not path.exists():
            return False
        path.unlink(missing_ok=True)
        return True

    def entries(self) -> list[StoredRequest]:
        return [entry for entry in (self._read(path) for path in self._paths()) if entry is not None]

    def __contains__(self, key: object) -> bool:
        return isinstance(key, int) and self._path_for(key).exists()

    def clear(self) -> None:
        for path in self._paths():
            path.unlink(missing_ok=True)

    def __len__(self) -> int:
        return len(self._paths())
