"""Record store — durable local collection of observation records.

One RecordStore instance is one context's view of the shared collection: it
keeps an in-memory list (a cache) and writes the whole document back to
KeyValueStorage on every mutation. The durable copy is the source of truth;
``reload()`` replaces the cache with it when another context has written.

Every user mutation is persisted before it returns and is then announced on
the ChangeChannel. A QuotaExceeded during persistence restores the cache to
its pre-mutation content and propagates to the caller.

Concurrent writers in different contexts are last-writer-wins on the whole
document: a mutation is applied to this context's cache as it stands, without
re-reading storage first.
"""

from __future__ import annotations

import json
import time
import uuid
from datetime import date
from typing import TYPE_CHECKING, Any, Callable, Iterable

import structlog

from fieldlog.core.errors import InvalidTransition, NotFound, QuotaExceeded
from fieldlog.core.migrations import CURRENT_SCHEMA_VERSION, parse_document
from fieldlog.core.models import (
    ChangeEvent,
    ChangeType,
    ImageAttachment,
    ObservationRecord,
    SyncStatus,
)

if TYPE_CHECKING:
    from fieldlog.channel.base import ChangeChannel
    from fieldlog.core.stats import SyncStats
    from fieldlog.storage.base import KeyValueStorage

log = structlog.get_logger()

DEFAULT_RECORDS_KEY = "observations"

# Server-owned fields copied over a local record when a server change is applied.
_SERVER_CONTENT_FIELDS = (
    "species", "position", "accuracy_m", "observed_on", "observed_at",
    "locality", "comment", "images",
)


class RecordStore:
    """Observation records for one context, persisted to shared durable storage."""

    def __init__(
        self,
        storage: KeyValueStorage,
        channel: ChangeChannel,
        *,
        key: str = DEFAULT_RECORDS_KEY,
        context_id: str | None = None,
        clock: Callable[[], float] = time.time,
        stats: SyncStats | None = None,
        user_id: str | None = None,
        device_id: str | None = None,
    ) -> None:
        self._storage = storage
        self._channel = channel
        self._key = key
        self._clock = clock
        self._stats = stats
        self._user_id = user_id
        self._device_id = device_id
        self.context_id = context_id or uuid.uuid4().hex[:8]
        self._last_id = 0
        self._records: list[ObservationRecord] = []
        self._deletions: list[str] = []
        self._open()

    @property
    def key(self) -> str:
        return self._key

    # ------------------------------------------------------------------
    # Durable document

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _read_durable(self) -> tuple[list[ObservationRecord], list[str], bool]:
        document, upgraded = parse_document(self._storage.get(self._key))
        records = []
        for raw in document.get("records", []):
            try:
                records.append(ObservationRecord.from_dict(raw))
            except (ValueError, TypeError, KeyError):
                log.error("stored_record_invalid", local_id=raw.get("local_id"), exc_info=True)
        return records, list(document.get("deletions", [])), upgraded

    def _serialize(self, records: list[ObservationRecord], deletions: list[str]) -> str:
        document = {
            "schema_version": CURRENT_SCHEMA_VERSION,
            "records": [r.to_dict() for r in records],
            "deletions": deletions,
        }
        return json.dumps(document, ensure_ascii=False, separators=(",", ":"))

    def _open(self) -> None:
        records, deletions, upgraded = self._read_durable()
        self._records, self._deletions = records, deletions
        if upgraded:
            # The one write that is not a user mutation: persisting the explicit upgrade.
            self._storage.set(self._key, self._serialize(records, deletions))
        if records:
            self._last_id = max(r.local_id for r in records)
        log.debug("record_store_opened", context=self.context_id, records=len(records))

    def _commit(self, records: list[ObservationRecord], deletions: list[str]) -> None:
        previous = (self._records, self._deletions)
        self._records, self._deletions = records, deletions
        try:
            self._storage.set(self._key, self._serialize(records, deletions))
        except QuotaExceeded:
            self._records, self._deletions = previous
            if self._stats is not None:
                self._stats.record_quota_failure()
            log.warning("record_store_quota_exceeded", context=self.context_id,
                        records=len(records))
            raise
        except Exception:
            self._records, self._deletions = previous
            raise
        if records:
            self._last_id = max(self._last_id, max(r.local_id for r in records))

    def _emit(self, change_type: ChangeType, ids: Iterable[int]) -> None:
        event = ChangeEvent(
            type=change_type,
            affected_ids=tuple(ids),
            timestamp_ms=self._now_ms(),
            origin=self.context_id,
        )
        self._channel.publish(event)

    def reload(self) -> bool:
        """Replace the in-memory cache with the durable copy. Returns True if it differed."""
        records, deletions, _ = self._read_durable()
        if records == self._records and deletions == self._deletions:
            return False
        self._records, self._deletions = records, deletions
        if records:
            self._last_id = max(self._last_id, max(r.local_id for r in records))
        return True

    # ------------------------------------------------------------------
    # Reads

    def get_all(self) -> list[ObservationRecord]:
        return list(self._records)

    def find(self, local_id: int) -> ObservationRecord | None:
        for record in self._records:
            if record.local_id == local_id:
                return record
        return None

    def get(self, local_id: int) -> ObservationRecord:
        record = self.find(local_id)
        if record is None:
            raise NotFound(local_id)
        return record

    def pending_records(self, now_ms: int | None = None) -> list[ObservationRecord]:
        """Records awaiting confirmation, in insertion order.

        With ``now_ms`` set, records still inside their retry backoff are left out.
        """
        return [
            r for r in self._records
            if r.is_pending and (now_ms is None or r.next_retry_at_ms <= now_ms)
        ]

    def pending_deletions(self) -> list[str]:
        return list(self._deletions)

    def get_meta(self, name: str) -> str | None:
        """Bookkeeping values kept beside the document (e.g. the last pull time)."""
        return self._storage.get(f"{self._key}.{name}")

    def set_meta(self, name: str, value: str) -> None:
        self._storage.set(f"{self._key}.{name}", value)

    # ------------------------------------------------------------------
    # User mutations

    def _next_id(self) -> int:
        # Millisecond timestamp, bumped so ids stay increasing within a context.
        self._last_id = max(self._now_ms(), self._last_id + 1)
        return self._last_id

    def create(self, partial: dict[str, Any]) -> ObservationRecord:
        now_ms = self._now_ms()
        local_id = self._next_id()
        blank = ObservationRecord(
            local_id=local_id,
            observed_on=date.fromtimestamp(now_ms / 1000).isoformat(),
            created_at_ms=now_ms,
            updated_at_ms=now_ms,
            user_id=self._user_id,
            device_id=self._device_id,
        )
        record = blank.with_patch(partial)

        self._commit(self._records + [record], self._deletions)
        if self._stats is not None:
            self._stats.record_created()
        log.info("observation_created", local_id=local_id, context=self.context_id,
                 species=record.species.scientific_name, images=len(record.images))
        self._emit(ChangeType.CREATION, [local_id])
        return record

    def _new_revision(self, record: ObservationRecord, **changes: Any) -> ObservationRecord:
        """An edited record is a new write that still has to reach the server."""
        revision = record.evolve(updated_at_ms=max(self._now_ms(), record.updated_at_ms + 1), **changes)
        if revision.sync_status is not SyncStatus.PENDING:
            revision = revision.evolve(
                sync_status=SyncStatus.PENDING,
                sync_attempts=0,
                next_retry_at_ms=0,
                last_sync_error="",
            )
        return revision

    def _replace(self, updated: ObservationRecord) -> list[ObservationRecord]:
        return [updated if r.local_id == updated.local_id else r for r in self._records]

    def update(self, local_id: int, patch: dict[str, Any]) -> ObservationRecord:
        record = self.get(local_id)
        updated = self._new_revision(record.with_patch(patch))

        self._commit(self._replace(updated), self._deletions)
        if self._stats is not None:
            self._stats.record_edited()
        log.info("observation_edited", local_id=local_id, context=self.context_id,
                 fields=sorted(patch))
        self._emit(ChangeType.EDIT, [local_id])
        return updated

    def delete(self, ids: Iterable[int]) -> set[int]:
        """Delete records by local id. Unknown ids fail the whole call with NotFound."""
        ids = set(ids)
        known = {r.local_id for r in self._records}
        missing = ids - known
        if missing:
            raise NotFound(missing)
        if not ids:
            return set()

        removed = [r for r in self._records if r.local_id in ids]
        remaining = [r for r in self._records if r.local_id not in ids]
        server_ids = [r.server_id for r in removed if r.server_id]
        deletions = self._deletions + server_ids

        self._commit(remaining, deletions)
        if self._stats is not None:
            self._stats.record_deleted(len(removed))
        log.info("observations_deleted", ids=sorted(ids), context=self.context_id,
                 server_deletions=len(server_ids))
        self._emit(ChangeType.DELETION, sorted(ids))
        return ids

    def update_images(self, local_id: int, images: Iterable[ImageAttachment | dict | str]) -> ObservationRecord:
        record = self.get(local_id)
        attachments = tuple(
            i if isinstance(i, ImageAttachment) else ImageAttachment.from_dict(i) for i in images
        )
        updated = self._new_revision(record, images=attachments)

        self._commit(self._replace(updated), self._deletions)
        log.info("observation_images_updated", local_id=local_id, context=self.context_id,
                 images=len(attachments))
        self._emit(ChangeType.IMAGE_UPDATE, [local_id])
        return updated

    def retry_failed(self, ids: Iterable[int]) -> list[ObservationRecord]:
        """Put records that reached the terminal ``error`` state back in the queue."""
        ids = set(ids)
        missing = ids - {r.local_id for r in self._records}
        if missing:
            raise NotFound(missing)
        requeued = []
        records = []
        for record in self._records:
            if record.local_id in ids and record.sync_status is SyncStatus.ERROR:
                record = self._new_revision(record)
                requeued.append(record)
            records.append(record)
        if not requeued:
            return []

        self._commit(records, self._deletions)
        log.info("observations_requeued", ids=[r.local_id for r in requeued])
        self._emit(ChangeType.SYNC_STATUS, [r.local_id for r in requeued])
        return requeued

    # ------------------------------------------------------------------
    # Sync machinery. These re-read durable storage first so a confirmation
    # lands on the latest copy rather than on a stale cache.

    def mark_synced(self, local_id: int, server_id: str, revision_ms: int) -> ObservationRecord | None:
        """Record a server confirmation for the revision stamped ``revision_ms``.

        If the record was edited while its push was in flight, it keeps the
        server id but stays pending so the newer revision is pushed next. If it
        was deleted meanwhile, the server copy is queued for deletion.
        """
        self.reload()
        record = self.find(local_id)
        if record is None:
            log.info("confirmed_record_gone", local_id=local_id, server_id=server_id)
            if server_id not in self._deletions:
                self._commit(self._records, self._deletions + [server_id])
            return None
        if record.sync_status is not SyncStatus.PENDING:
            raise InvalidTransition(
                f"record {local_id} is {record.sync_status.value}, only pending records can be confirmed"
            )

        if record.updated_at_ms != revision_ms:
            updated = record.evolve(server_id=server_id, sync_attempts=0, next_retry_at_ms=0)
            log.info("confirmed_stale_revision", local_id=local_id, server_id=server_id)
        else:
            updated = record.evolve(
                server_id=server_id,
                sync_status=SyncStatus.SYNCED,
                sync_attempts=0,
                next_retry_at_ms=0,
                last_sync_error="",
            )

        self._commit(self._replace(updated), self._deletions)
        self._emit(ChangeType.SYNC_STATUS, [local_id])
        return updated

    def record_sync_failure(
        self,
        local_id: int,
        error: str,
        *,
        attempts: int,
        next_retry_at_ms: int,
        terminal: bool = False,
    ) -> ObservationRecord | None:
        self.reload()
        record = self.find(local_id)
        if record is None or record.sync_status is not SyncStatus.PENDING:
            return None
        updated = record.evolve(
            sync_attempts=attempts,
            next_retry_at_ms=next_retry_at_ms,
            last_sync_error=error,
            sync_status=SyncStatus.ERROR if terminal else SyncStatus.PENDING,
        )
        self._commit(self._replace(updated), self._deletions)
        self._emit(ChangeType.SYNC_STATUS, [local_id])
        return updated

    def confirm_deletion(self, server_id: str) -> None:
        self.reload()
        if server_id not in self._deletions:
            return
        self._commit(self._records, [s for s in self._deletions if s != server_id])

    def apply_server_changes(self, changes: list[dict[str, Any]]) -> dict[str, list[int]]:
        """Merge records changed on the server, last-writer-wins per record.

        Local records that are still pending win over the server copy. Server
        records unknown locally are inserted as synced. Entries flagged
        ``deleted`` remove the matching local record unless it is pending.
        """
        self.reload()
        by_server_id = {r.server_id: r for r in self._records if r.server_id}
        records = list(self._records)
        inserted: list[int] = []
        edited: list[int] = []
        removed: list[int] = []

        for change in changes:
            server_id = change.get("server_id")
            if not server_id:
                log.warning("server_change_without_id")
                continue
            local = by_server_id.get(server_id)
            if local is not None and local.is_pending:
                continue

            if change.get("deleted"):
                if local is not None:
                    records = [r for r in records if r.local_id != local.local_id]
                    removed.append(local.local_id)
                continue

            content = {k: change[k] for k in _SERVER_CONTENT_FIELDS if k in change}
            updated_at_ms = int(change.get("updated_at_ms") or self._now_ms())
            if local is None:
                base = ObservationRecord(local_id=self._next_id(), created_at_ms=updated_at_ms)
                record = base.with_patch(content).evolve(
                    server_id=server_id,
                    sync_status=SyncStatus.SYNCED,
                    updated_at_ms=updated_at_ms,
                    user_id=change.get("user_id"),
                    device_id=change.get("device_id"),
                )
                records.append(record)
                inserted.append(record.local_id)
            else:
                record = local.with_patch(content).evolve(
                    sync_status=SyncStatus.SYNCED,
                    updated_at_ms=updated_at_ms,
                )
                if record != local:
                    records = [record if r.local_id == local.local_id else r for r in records]
                    edited.append(local.local_id)

        if not (inserted or edited or removed):
            return {"inserted": [], "edited": [], "removed": []}

        self._commit(records, self._deletions)
        log.info("server_changes_applied", inserted=len(inserted), edited=len(edited),
                 removed=len(removed))
        if inserted:
            self._emit(ChangeType.CREATION, inserted)
        if edited:
            self._emit(ChangeType.EDIT, edited)
        if removed:
            self._emit(ChangeType.DELETION, removed)
        return {"inserted": inserted, "edited": edited, "removed": removed}
