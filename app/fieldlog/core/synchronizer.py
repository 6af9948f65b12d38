"""Cross-context synchronizer — keeps one context's RecordStore in step with the others.

Each context listens to two signals:

- the storage-level notification for the records key (no payload), and
- the application-level ChangeEvent broadcast on the ChangeChannel.

Signals are queued and handled together, either on the next event-loop turn
(when a loop is running) or when ``process_pending()`` is called. Handling a
batch re-reads the durable document and replaces the in-memory cache
wholesale if it differs. Reconciliation never writes to storage.

The synchronizer also owns the context's "currently selected" record, since
that is the piece of view state a remote deletion has to reach.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Callable

import structlog

from fieldlog.core.models import ChangeEvent, ChangeType

if TYPE_CHECKING:
    from fieldlog.channel.base import ChangeChannel
    from fieldlog.core.models import ObservationRecord
    from fieldlog.core.record_store import RecordStore
    from fieldlog.storage.base import KeyValueStorage

log = structlog.get_logger()

ViewListener = Callable[[list[ChangeEvent]], None]


class ContextSynchronizer:
    """Reconciles a context's cache against durable storage on every change signal."""

    def __init__(
        self,
        store: RecordStore,
        storage: KeyValueStorage,
        channel: ChangeChannel,
        *,
        auto_process: bool = True,
    ) -> None:
        self._store = store
        self._auto_process = auto_process
        self._inbox: list[ChangeEvent | None] = []
        self._scheduled = False
        self._listeners: list[ViewListener] = []
        self._selection_listeners: list[Callable[[int], None]] = []
        self.selected_id: int | None = None
        self.reconciliations = 0
        self._unsubscribe = [
            storage.subscribe(self._on_storage_change),
            channel.subscribe(self._on_event),
        ]

    # ------------------------------------------------------------------
    # Signal intake

    def _on_storage_change(self, key: str) -> None:
        if key == self._store.key:
            self._enqueue(None)

    def _on_event(self, event: ChangeEvent) -> None:
        self._enqueue(event)

    def _enqueue(self, signal: ChangeEvent | None) -> None:
        self._inbox.append(signal)
        if not self._auto_process or self._scheduled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._scheduled = True
        loop.call_soon(self.process_pending)

    @property
    def pending_signals(self) -> int:
        return len(self._inbox)

    # ------------------------------------------------------------------
    # Reconciliation

    def process_pending(self) -> bool:
        """Handle all queued signals. Returns True if the cache was replaced."""
        self._scheduled = False
        batch, self._inbox = self._inbox, []
        events = [s for s in batch if s is not None]
        return self._reconcile(events, had_signals=bool(batch))

    def reconcile(self) -> bool:
        """Run a reconciliation pass now, including any queued signals."""
        return self.process_pending()

    def _reconcile(self, events: list[ChangeEvent], had_signals: bool) -> bool:
        changed = self._store.reload()
        self.reconciliations += 1
        if changed:
            log.debug("context_cache_replaced", context=self._store.context_id,
                      records=len(self._store.get_all()))

        deleted: set[int] = set()
        for event in events:
            if event.type is ChangeType.DELETION:
                deleted.update(event.affected_ids)
        self._check_selection(deleted)

        if changed or (had_signals and events):
            for listener in list(self._listeners):
                try:
                    listener(events)
                except Exception:
                    log.error("view_listener_failed", context=self._store.context_id, exc_info=True)
        return changed

    def _check_selection(self, deleted: set[int]) -> None:
        if self.selected_id is None:
            return
        if self.selected_id in deleted or self._store.find(self.selected_id) is None:
            cleared = self.selected_id
            self.selected_id = None
            log.info("selection_cleared", context=self._store.context_id, local_id=cleared)
            for listener in list(self._selection_listeners):
                listener(cleared)

    # ------------------------------------------------------------------
    # View state

    def select(self, local_id: int | None) -> ObservationRecord | None:
        if local_id is None:
            self.selected_id = None
            return None
        record = self._store.get(local_id)
        self.selected_id = local_id
        return record

    @property
    def selected_record(self) -> ObservationRecord | None:
        if self.selected_id is None:
            return None
        return self._store.find(self.selected_id)

    def on_change(self, listener: ViewListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def on_selection_cleared(self, listener: Callable[[int], None]) -> None:
        self._selection_listeners.append(listener)

    def close(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []
        self._inbox = []
