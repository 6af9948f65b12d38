"""In-process implementation of KeyValueStorage. Zero dependencies."""

from __future__ import annotations

from typing import Callable

from fieldlog.core.errors import QuotaExceeded
from fieldlog.storage.base import ListenerSet, StorageListener


class MemoryKeyValueStorage:
    """KeyValueStorage backed by a dict, with the same quota semantics as the file store."""

    def __init__(self, quota_bytes: int = 0) -> None:
        self._data: dict[str, str] = {}
        self._quota_bytes = quota_bytes
        self._listeners = ListenerSet()

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if self._quota_bytes:
            used = sum(len(v.encode("utf-8")) for k, v in self._data.items() if k != key)
            if used + len(value.encode("utf-8")) > self._quota_bytes:
                raise QuotaExceeded(f"writing {key!r} exceeds quota of {self._quota_bytes} bytes")
        self._data[key] = value
        self._listeners.notify(key)

    def remove(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._listeners.notify(key)

    def subscribe(self, listener: StorageListener) -> Callable[[], None]:
        return self._listeners.add(listener)

    def set_quota(self, quota_bytes: int) -> None:
        self._quota_bytes = quota_bytes
