"""Storage interface (port) for durable key/value state."""

from __future__ import annotations

from typing import Callable, Protocol

import structlog

log = structlog.get_logger()

# Receives the key that changed. No payload: listeners must re-read.
StorageListener = Callable[[str], None]


class KeyValueStorage(Protocol):
    """Port: synchronous durable string storage shared by every open context.

    Every successful ``set``/``remove`` notifies all subscribers with the
    changed key. Writes that would exceed the quota raise ``QuotaExceeded``
    and leave the stored value untouched.
    """

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...

    def subscribe(self, listener: StorageListener) -> Callable[[], None]: ...


class ListenerSet:
    """Subscriber bookkeeping shared by the storage adapters."""

    def __init__(self) -> None:
        self._listeners: list[StorageListener] = []

    def add(self, listener: StorageListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def notify(self, key: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(key)
            except Exception:
                log.error("storage_listener_failed", key=key, exc_info=True)
