"""Offline write queue — replays unconfirmed writes once connectivity returns.

The queue has no storage of its own: an entry is any record whose sync status
is ``pending``, plus the server ids waiting in the document's deletion list.

Per entry:  queued → in-flight → confirmed
                              ↘ failed-retryable → queued

A drain pushes entries one at a time, in insertion order, awaiting each
result before starting the next. A failing entry is logged, stays queued with
an exponential backoff, and does not stop the entries behind it. After
``max_attempts`` failures the record is moved to ``error`` so the user can see
it and retry it explicitly. Only one drain runs at a time; a second trigger
while one is running returns immediately.
"""

from __future__ import annotations

import asyncio
import enum
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

import structlog

from fieldlog.core.errors import FieldLogError, NetworkUnavailable, RemoteRejected
from fieldlog.core.models import ChangeEvent, ChangeType

if TYPE_CHECKING:
    from fieldlog.channel.base import ChangeChannel
    from fieldlog.core.connectivity import ConnectivityMonitor
    from fieldlog.core.models import ObservationRecord
    from fieldlog.core.record_store import RecordStore
    from fieldlog.core.stats import SyncStats
    from fieldlog.remote.base import RemoteService

log = structlog.get_logger()

DEFAULT_REQUEST_TIMEOUT_S = 20.0
LAST_PULL_META = "last_pull_ms"

_TRIGGER_TYPES = {ChangeType.CREATION, ChangeType.EDIT, ChangeType.IMAGE_UPDATE, ChangeType.DELETION}


class EntryState(str, enum.Enum):
    QUEUED = "queued"
    IN_FLIGHT = "in-flight"
    CONFIRMED = "confirmed"
    FAILED_RETRYABLE = "failed-retryable"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay_s: float = 5.0
    max_delay_s: float = 300.0

    def delay_s(self, attempts: int) -> float:
        """Backoff before the next try, after ``attempts`` failures."""
        return min(self.base_delay_s * 2 ** max(attempts - 1, 0), self.max_delay_s)


@dataclass(frozen=True)
class QueueEntry:
    local_id: int
    state: EntryState
    attempts: int
    next_retry_at_ms: int
    last_error: str
    record: ObservationRecord


@dataclass
class DrainResult:
    skipped: bool = False
    reason: str = ""
    confirmed: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    terminal: list[int] = field(default_factory=list)
    deletions_confirmed: list[str] = field(default_factory=list)
    deletions_failed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "skipped": self.skipped,
            "reason": self.reason,
            "confirmed": self.confirmed,
            "failed": self.failed,
            "terminal": self.terminal,
            "deletions_confirmed": self.deletions_confirmed,
            "deletions_failed": self.deletions_failed,
        }


class OfflineWriteQueue:
    """Drains pending records and deletions into the remote service."""

    def __init__(
        self,
        store: RecordStore,
        remote: RemoteService,
        connectivity: ConnectivityMonitor,
        *,
        channel: ChangeChannel | None = None,
        policy: RetryPolicy | None = None,
        timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S,
        stats: SyncStats | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._remote = remote
        self._connectivity = connectivity
        self._policy = policy or RetryPolicy()
        self._timeout_s = timeout_s
        self._stats = stats
        self._clock = clock
        self._draining = False
        self._changed_while_draining = False
        self._in_flight: int | None = None
        # Server ids acknowledged by the remote but not yet persisted locally.
        self._unsaved_acks: dict[int, str] = {}
        self._tasks: set[asyncio.Task] = set()
        connectivity.on_restored(self._on_restored)
        if channel is not None:
            channel.subscribe(self._on_change)

    @property
    def draining(self) -> bool:
        return self._draining

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def entries(self) -> list[QueueEntry]:
        return [
            QueueEntry(
                local_id=r.local_id,
                state=EntryState.IN_FLIGHT if r.local_id == self._in_flight else EntryState.QUEUED,
                attempts=r.sync_attempts,
                next_retry_at_ms=r.next_retry_at_ms,
                last_error=r.last_sync_error,
                record=r,
            )
            for r in self._store.pending_records()
        ]

    # ------------------------------------------------------------------
    # Triggers

    def _on_restored(self):
        # Connection is back: every queued entry gets one try, backoff or not.
        return self.drain(respect_backoff=False)

    def _on_change(self, event: ChangeEvent) -> None:
        if event.origin != self._store.context_id or event.type not in _TRIGGER_TYPES:
            return
        if not self._connectivity.is_online:
            return
        if self._draining:
            # The running drain has already read its entries; go again afterwards.
            self._changed_while_draining = True
            return
        self._schedule_drain()

    def _schedule_drain(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.drain(respect_backoff=True))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def run_retry_loop(self, interval_s: float) -> None:
        """Retry entries whose backoff has elapsed. Runs as a background task."""
        log.info("retry_loop_started", interval_s=interval_s)
        while True:
            await asyncio.sleep(interval_s)
            if self._connectivity.is_online and not self._draining:
                await self.drain(respect_backoff=True)

    async def wait_idle(self) -> None:
        """Wait for drains started by change events to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Drain

    async def drain(self, *, respect_backoff: bool = False) -> DrainResult:
        if self._draining:
            log.info("drain_skipped", reason="in_progress")
            if self._stats is not None:
                self._stats.record_drain(skipped=True)
            return DrainResult(skipped=True, reason="in_progress")
        if not self._connectivity.is_online:
            log.info("drain_skipped", reason="offline")
            return DrainResult(skipped=True, reason="offline")

        self._draining = True
        result = DrainResult()
        try:
            self._store.reload()
            now_ms = self._now_ms()
            pending = self._store.pending_records(now_ms if respect_backoff else None)
            log.info("drain_started", entries=len(pending),
                     deletions=len(self._store.pending_deletions()))

            for record in pending:
                await self._push_one(record, result)

            for server_id in self._store.pending_deletions():
                await self._delete_one(server_id, result)
        finally:
            self._draining = False
            self._in_flight = None

        if self._stats is not None:
            self._stats.record_drain(skipped=False)
        log.info("drain_finished", confirmed=len(result.confirmed), failed=len(result.failed),
                 terminal=len(result.terminal), deletions=len(result.deletions_confirmed))
        if self._changed_while_draining:
            self._changed_while_draining = False
            self._schedule_drain()
        return result

    async def _push_one(self, record: ObservationRecord, result: DrainResult) -> None:
        self._in_flight = record.local_id
        if record.server_id is None and record.local_id in self._unsaved_acks:
            # The server already holds this record; update it instead of creating a duplicate.
            record = record.evolve(server_id=self._unsaved_acks[record.local_id])
        try:
            ack = await asyncio.wait_for(self._remote.push(record), timeout=self._timeout_s)
        except asyncio.TimeoutError:
            self._fail(record, "timed out", result)
            return
        except (NetworkUnavailable, RemoteRejected) as exc:
            self._fail(record, str(exc), result)
            return
        except Exception as exc:
            log.error("push_unexpected_error", local_id=record.local_id, exc_info=True)
            self._fail(record, repr(exc), result)
            return
        finally:
            self._in_flight = None

        try:
            updated = self._store.mark_synced(record.local_id, ack.server_id, record.updated_at_ms)
        except FieldLogError as exc:
            self._unsaved_acks[record.local_id] = ack.server_id
            result.failed.append(record.local_id)
            log.error("confirmation_not_saved", local_id=record.local_id, server_id=ack.server_id,
                      error=str(exc))
            return
        self._unsaved_acks.pop(record.local_id, None)
        if updated is not None and not updated.is_pending:
            result.confirmed.append(record.local_id)
            if self._stats is not None:
                self._stats.record_push_confirmed()
            log.info("entry_confirmed", local_id=record.local_id, server_id=ack.server_id)

    def _fail(self, record: ObservationRecord, error: str, result: DrainResult) -> None:
        attempts = record.sync_attempts + 1
        terminal = attempts >= self._policy.max_attempts
        next_retry_at_ms = self._now_ms() + int(self._policy.delay_s(attempts) * 1000)
        try:
            self._store.record_sync_failure(
                record.local_id,
                error,
                attempts=attempts,
                next_retry_at_ms=next_retry_at_ms,
                terminal=terminal,
            )
        except FieldLogError as exc:
            log.error("sync_failure_not_saved", local_id=record.local_id, error=str(exc))
        if terminal:
            result.terminal.append(record.local_id)
            if self._stats is not None:
                self._stats.record_terminal_error()
            log.error("entry_failed_terminal", local_id=record.local_id, attempts=attempts,
                      error=error)
        else:
            result.failed.append(record.local_id)
            if self._stats is not None:
                self._stats.record_push_failed()
            log.warning("entry_failed_retryable", local_id=record.local_id, attempts=attempts,
                        state=EntryState.FAILED_RETRYABLE.value, error=error,
                        next_retry_at_ms=next_retry_at_ms)

    async def _delete_one(self, server_id: str, result: DrainResult) -> None:
        try:
            await asyncio.wait_for(self._remote.delete(server_id), timeout=self._timeout_s)
        except (asyncio.TimeoutError, NetworkUnavailable, RemoteRejected) as exc:
            result.deletions_failed.append(server_id)
            log.warning("remote_delete_failed", server_id=server_id, error=str(exc) or "timed out")
            return
        try:
            self._store.confirm_deletion(server_id)
        except FieldLogError as exc:
            result.deletions_failed.append(server_id)
            log.error("deletion_confirmation_not_saved", server_id=server_id, error=str(exc))
            return
        result.deletions_confirmed.append(server_id)
        if self._stats is not None:
            self._stats.record_deletion_confirmed()

    # ------------------------------------------------------------------
    # Pull

    async def pull(self) -> dict[str, list[int]]:
        """Fetch server-side changes since the last pull and merge them in."""
        since_ms = int(self._store.get_meta(LAST_PULL_META) or 0)
        try:
            changes = await asyncio.wait_for(self._remote.changes_since(since_ms), timeout=self._timeout_s)
        except asyncio.TimeoutError:
            raise NetworkUnavailable("pull timed out")
        applied = self._store.apply_server_changes(changes.records)
        self._store.set_meta(LAST_PULL_META, str(changes.timestamp_ms or self._now_ms()))
        log.info("pull_finished", since_ms=since_ms, received=len(changes.records),
                 inserted=len(applied["inserted"]), edited=len(applied["edited"]),
                 removed=len(applied["removed"]))
        return applied
