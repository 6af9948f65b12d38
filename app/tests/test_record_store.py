"""Tests for RecordStore mutations, persistence and document upgrades."""

from __future__ import annotations

import json

import pytest

from fieldlog.core.errors import InvalidRecord, InvalidTransition, NotFound, QuotaExceeded
from fieldlog.core.models import ChangeType, SyncStatus
from fieldlog.core.record_store import RecordStore
from fieldlog.core.stats import SyncStats


@pytest.fixture
def events(channel):
    received = []
    channel.subscribe(received.append)
    return received


@pytest.fixture
def store(storage, channel, clock):
    return RecordStore(storage, channel, context_id="ctx-a", clock=clock, stats=SyncStats())


def _observation(**extra):
    data = {
        "species": {"scientific_name": "Betula pubescens", "vernacular_name": "Bjørk"},
        "position": {"lat": 59.9138688, "lon": 10.7522454},
        "accuracy_m": 25,
        "locality": "Frognerparken",
    }
    data.update(extra)
    return data


def test_create_persists_pending_record(store, storage, events):
    record = store.create(_observation())

    assert record.sync_status is SyncStatus.PENDING
    assert record.server_id is None
    assert record.position.lat == 59.913869
    assert record.observed_on is not None

    document = json.loads(storage.get("observations"))
    assert document["schema_version"] == 2
    assert [r["local_id"] for r in document["records"]] == [record.local_id]

    assert [e.type for e in events] == [ChangeType.CREATION]
    assert events[0].affected_ids == (record.local_id,)
    assert events[0].origin == "ctx-a"


def test_local_ids_increase_within_context(store):
    # Same clock reading for all three: ids must still be distinct and ordered.
    ids = [store.create(_observation()).local_id for _ in range(3)]
    assert ids == sorted(ids)
    assert len(set(ids)) == 3


def test_create_rejects_invalid_fields(store, events):
    with pytest.raises(InvalidRecord):
        store.create(_observation(accuracy_m=42))
    with pytest.raises(InvalidRecord):
        store.create({"position": {"lat": 91, "lon": 0}})
    with pytest.raises(InvalidRecord):
        store.create({"sync_status": "synced"})
    assert store.get_all() == []
    assert events == []


def test_update_creates_new_pending_revision(store, clock, events):
    record = store.create(_observation())
    store.mark_synced(record.local_id, "srv-1", record.updated_at_ms)
    assert store.get(record.local_id).sync_status is SyncStatus.SYNCED

    clock.advance(1)
    updated = store.update(record.local_id, {"comment": "two catkins"})

    assert updated.comment == "two catkins"
    assert updated.server_id == "srv-1"
    assert updated.sync_status is SyncStatus.PENDING
    assert updated.updated_at_ms > record.updated_at_ms
    assert events[-1].type is ChangeType.EDIT


def test_update_unknown_id_raises_not_found(store):
    with pytest.raises(NotFound) as exc_info:
        store.update(12345, {"comment": "x"})
    assert exc_info.value.ids == [12345]


def test_update_images(store, events):
    record = store.create(_observation())
    updated = store.update_images(record.local_id, [
        {"data": "data:image/jpeg;base64,AAAA", "rotation": 90},
        "data:image/jpeg;base64,BBBB",
    ])

    assert [i.rotation for i in updated.images] == [90, 0]
    assert events[-1].type is ChangeType.IMAGE_UPDATE
    assert events[-1].affected_ids == (record.local_id,)


def test_delete_removes_records_and_queues_server_copies(store, events):
    a = store.create(_observation())
    b = store.create(_observation())
    c = store.create(_observation())
    store.mark_synced(b.local_id, "srv-b", b.updated_at_ms)

    deleted = store.delete([a.local_id, b.local_id])

    assert deleted == {a.local_id, b.local_id}
    assert [r.local_id for r in store.get_all()] == [c.local_id]
    assert store.pending_deletions() == ["srv-b"]
    assert events[-1].type is ChangeType.DELETION
    assert set(events[-1].affected_ids) == {a.local_id, b.local_id}


def test_delete_with_unknown_id_deletes_nothing(store, events):
    a = store.create(_observation())
    before = len(events)

    with pytest.raises(NotFound) as exc_info:
        store.delete([a.local_id, 999])

    assert exc_info.value.ids == [999]
    assert [r.local_id for r in store.get_all()] == [a.local_id]
    assert len(events) == before


def test_quota_exceeded_rolls_back_cache(store, storage, events):
    first = store.create(_observation())
    storage.set_quota(len(storage.get("observations").encode("utf-8")) + 10)

    with pytest.raises(QuotaExceeded):
        store.create(_observation(comment="x" * 500))

    assert [r.local_id for r in store.get_all()] == [first.local_id]
    assert len(json.loads(storage.get("observations"))["records"]) == 1
    assert [e.type for e in events] == [ChangeType.CREATION]


def test_quota_exceeded_message_for_user():
    assert "deleting some old observations" in QuotaExceeded().user_message


def test_reload_picks_up_other_writer(storage, channel, clock):
    a = RecordStore(storage, channel, context_id="a", clock=clock)
    b = RecordStore(storage, channel, context_id="b", clock=clock)

    record = a.create(_observation())
    assert b.find(record.local_id) is None

    assert b.reload() is True
    assert b.get(record.local_id) == record
    assert b.reload() is False


def test_mark_synced_keeps_newer_revision_pending(store, clock):
    record = store.create(_observation())
    clock.advance(1)
    store.update(record.local_id, {"comment": "edited while in flight"})

    result = store.mark_synced(record.local_id, "srv-1", record.updated_at_ms)

    assert result.server_id == "srv-1"
    assert result.sync_status is SyncStatus.PENDING


def test_mark_synced_for_deleted_record_queues_remote_delete(store):
    record = store.create(_observation())
    store.delete([record.local_id])

    assert store.mark_synced(record.local_id, "srv-9", record.updated_at_ms) is None
    assert store.pending_deletions() == ["srv-9"]


def test_status_never_moves_backwards(store):
    record = store.create(_observation())
    store.mark_synced(record.local_id, "srv-1", record.updated_at_ms)

    with pytest.raises(InvalidTransition):
        store.mark_synced(record.local_id, "srv-1", record.updated_at_ms)
    assert store.record_sync_failure(record.local_id, "boom", attempts=1,
                                     next_retry_at_ms=0) is None
    assert store.get(record.local_id).sync_status is SyncStatus.SYNCED


def test_retry_failed_requeues_error_records(store):
    record = store.create(_observation())
    store.record_sync_failure(record.local_id, "boom", attempts=5, next_retry_at_ms=0,
                              terminal=True)
    assert store.get(record.local_id).sync_status is SyncStatus.ERROR

    requeued = store.retry_failed([record.local_id])

    assert [r.local_id for r in requeued] == [record.local_id]
    again = store.get(record.local_id)
    assert again.sync_status is SyncStatus.PENDING
    assert again.sync_attempts == 0
    assert again.last_sync_error == ""


def test_apply_server_changes(store):
    local = store.create(_observation())
    synced = store.create(_observation())
    gone = store.create(_observation())
    store.mark_synced(synced.local_id, "srv-s", synced.updated_at_ms)
    store.mark_synced(gone.local_id, "srv-g", gone.updated_at_ms)
    store.mark_synced(local.local_id, "srv-l", local.updated_at_ms)
    store.update(local.local_id, {"comment": "local edit"})

    applied = store.apply_server_changes([
        {"server_id": "srv-new", "comment": "from another device", "accuracy_m": 10},
        {"server_id": "srv-s", "comment": "server edit", "updated_at_ms": 1},
        {"server_id": "srv-g", "deleted": True},
        {"server_id": "srv-l", "comment": "server loses"},
    ])

    assert applied["edited"] == [synced.local_id]
    assert applied["removed"] == [gone.local_id]
    assert len(applied["inserted"]) == 1
    inserted = store.get(applied["inserted"][0])
    assert inserted.server_id == "srv-new"
    assert inserted.sync_status is SyncStatus.SYNCED
    assert store.get(synced.local_id).comment == "server edit"
    assert store.get(local.local_id).comment == "local edit"
    assert store.find(gone.local_id) is None


def test_legacy_document_is_upgraded_on_open(storage, channel, clock):
    storage.set("observations", json.dumps([
        {
            "id": 1695900000000,
            "artsNavn": "Betula pubescens",
            "breddegrad": "59,9138",
            "lengdegrad": "10.7522",
            "noyaktighet": "25",
            "kommentar": "old entry",
            "date": "2023-09-28",
            "images": ["data:image/jpeg;base64,AAAA"],
            "imageRotations": {"0": 180},
            "synced": True,
            "_id": "650f00aa",
        },
        {"artsNavn": "no id, dropped"},
    ]))

    store = RecordStore(storage, channel, clock=clock)

    [record] = store.get_all()
    assert record.local_id == 1695900000000
    assert record.server_id == "650f00aa"
    assert record.sync_status is SyncStatus.SYNCED
    assert record.position.lat == 59.9138
    assert record.accuracy_m == 25
    assert record.images[0].rotation == 180
    assert json.loads(storage.get("observations"))["schema_version"] == 2


def test_corrupt_document_reads_as_empty(storage, channel, clock):
    storage.set("observations", "{not json")
    store = RecordStore(storage, channel, clock=clock)
    assert store.get_all() == []


def test_meta_values(store, storage):
    store.set_meta("last_pull_ms", "42")
    assert store.get_meta("last_pull_ms") == "42"
    assert storage.get("observations.last_pull_ms") == "42"
