"""File-based storage implementation.

Stores each key as one UTF-8 JSON text file under ``base_dir``:

    base_dir/<key>.json

Writes go to a temp file in the same directory and are renamed into place,
so a reader never sees a half-written document.
"""

from __future__ import annotations

import errno
import os
import re
import tempfile
from pathlib import Path
from typing import Callable

import structlog

from fieldlog.core.errors import QuotaExceeded, StorageUnavailable
from fieldlog.storage.base import ListenerSet, StorageListener

log = structlog.get_logger()

_KEY_RE = re.compile(r"^[A-Za-z0-9_.-]+$")
_QUOTA_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}


class FileKeyValueStorage:
    """KeyValueStorage backed by one file per key on disk."""

    def __init__(self, base_dir: str | Path, quota_bytes: int = 0) -> None:
        self._base_dir = Path(base_dir)
        self._quota_bytes = quota_bytes
        self._listeners = ListenerSet()
        try:
            self._base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageUnavailable(f"cannot open storage directory {self._base_dir}: {exc}") from exc

    def _path(self, key: str) -> Path:
        if not _KEY_RE.match(key):
            raise ValueError(f"invalid storage key: {key!r}")
        return self._base_dir / f"{key}.json"

    def _used_bytes(self, excluding: Path) -> int:
        total = 0
        for path in self._base_dir.glob("*.json"):
            if path != excluding:
                total += path.stat().st_size
        return total

    def get(self, key: str) -> str | None:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageUnavailable(f"cannot read {path}: {exc}") from exc

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        data = value.encode("utf-8")

        if self._quota_bytes and self._used_bytes(excluding=path) + len(data) > self._quota_bytes:
            log.warning("storage_quota_exceeded", key=key, size=len(data),
                        quota=self._quota_bytes)
            raise QuotaExceeded(f"writing {len(data)} bytes to {key!r} exceeds quota")

        fd, tmp_name = tempfile.mkstemp(dir=self._base_dir, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except OSError as exc:
            Path(tmp_name).unlink(missing_ok=True)
            if exc.errno in _QUOTA_ERRNOS:
                raise QuotaExceeded(f"no space left writing {key!r}") from exc
            raise StorageUnavailable(f"cannot write {path}: {exc}") from exc

        log.debug("storage_written", key=key, size=len(data))
        self._listeners.notify(key)

    def remove(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise StorageUnavailable(f"cannot remove {path}: {exc}") from exc
        self._listeners.notify(key)

    def subscribe(self, listener: StorageListener) -> Callable[[], None]:
        return self._listeners.add(listener)
