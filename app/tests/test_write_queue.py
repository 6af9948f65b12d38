"""Tests for the offline write queue drain, retry and deletion replay."""

from __future__ import annotations

import asyncio

import pytest

from fieldlog.core.connectivity import ConnectivityMonitor
from fieldlog.core.errors import QuotaExceeded
from fieldlog.core.models import SyncStatus
from fieldlog.core.record_store import RecordStore
from fieldlog.core.stats import SyncStats
from fieldlog.core.write_queue import EntryState, OfflineWriteQueue, RetryPolicy
from fieldlog.storage.memory_storage import MemoryKeyValueStorage


@pytest.fixture
def store(storage, channel, clock):
    return RecordStore(storage, channel, context_id="ctx", clock=clock)


@pytest.fixture
def connectivity():
    return ConnectivityMonitor(online=True)


@pytest.fixture
def queue(store, remote, connectivity, clock):
    return OfflineWriteQueue(store, remote, connectivity, clock=clock, stats=SyncStats())


def _create(store, n):
    return [store.create({"comment": f"observation {i}"}) for i in range(n)]


def test_retry_policy_backoff():
    policy = RetryPolicy(max_attempts=5, base_delay_s=5.0, max_delay_s=300.0)
    assert [policy.delay_s(n) for n in (1, 2, 3, 4)] == [5.0, 10.0, 20.0, 40.0]
    assert policy.delay_s(20) == 300.0


@pytest.mark.asyncio
async def test_drain_confirms_in_order(store, remote, queue):
    records = _create(store, 3)

    result = await queue.drain()

    assert remote.pushed == [r.local_id for r in records]
    assert result.confirmed == [r.local_id for r in records]
    for record in store.get_all():
        assert record.sync_status is SyncStatus.SYNCED
        assert record.server_id is not None
    assert store.pending_records() == []


@pytest.mark.asyncio
async def test_failing_entry_does_not_block_others(store, remote, queue, clock):
    r1, r2, r3 = _create(store, 3)
    remote.fail_ids = {r2.local_id}

    result = await queue.drain()

    assert remote.pushed == [r1.local_id, r2.local_id, r3.local_id]
    assert result.confirmed == [r1.local_id, r3.local_id]
    assert result.failed == [r2.local_id]

    failed = store.get(r2.local_id)
    assert failed.sync_status is SyncStatus.PENDING
    assert failed.sync_attempts == 1
    assert failed.last_sync_error == "server unreachable"
    assert failed.next_retry_at_ms == int(clock() * 1000) + 5000


@pytest.mark.asyncio
async def test_concurrent_drain_is_a_no_op(store, remote, queue):
    records = _create(store, 3)
    remote.delay_s = 0.01

    first, second = await asyncio.gather(queue.drain(), queue.drain())

    assert first.skipped is False
    assert second.skipped is True
    assert second.reason == "in_progress"
    assert sorted(remote.pushed) == sorted(r.local_id for r in records)


@pytest.mark.asyncio
async def test_drain_skipped_while_offline(store, remote, queue, connectivity):
    _create(store, 2)
    connectivity.set_offline()

    result = await queue.drain()

    assert result.skipped is True
    assert result.reason == "offline"
    assert remote.pushed == []
    assert len(store.pending_records()) == 2


@pytest.mark.asyncio
async def test_backoff_respected_by_retry_drains(store, remote, queue, clock):
    (record,) = _create(store, 1)
    remote.fail_ids = {record.local_id}
    await queue.drain()
    remote.fail_ids = set()

    await queue.drain(respect_backoff=True)
    assert remote.pushed == [record.local_id]

    clock.advance(5)
    result = await queue.drain(respect_backoff=True)
    assert result.confirmed == [record.local_id]


@pytest.mark.asyncio
async def test_terminal_failure_moves_record_to_error(store, remote, connectivity, clock):
    queue = OfflineWriteQueue(store, remote, connectivity, clock=clock,
                              policy=RetryPolicy(max_attempts=2, base_delay_s=1.0))
    (record,) = _create(store, 1)
    remote.fail_ids = {record.local_id}

    await queue.drain()
    result = await queue.drain()

    assert result.terminal == [record.local_id]
    errored = store.get(record.local_id)
    assert errored.sync_status is SyncStatus.ERROR
    assert errored.sync_attempts == 2

    # Error records are left alone until the user retries them.
    await queue.drain()
    assert remote.pushed == [record.local_id, record.local_id]

    remote.fail_ids = set()
    store.retry_failed([record.local_id])
    result = await queue.drain()
    assert result.confirmed == [record.local_id]
    assert store.get(record.local_id).sync_status is SyncStatus.SYNCED


@pytest.mark.asyncio
async def test_rejected_write_is_retryable(store, remote, queue):
    (record,) = _create(store, 1)
    remote.reject_ids = {record.local_id}

    result = await queue.drain()

    assert result.failed == [record.local_id]
    assert "invalid registration" in store.get(record.local_id).last_sync_error


@pytest.mark.asyncio
async def test_push_timeout_counts_as_failure(store, remote, connectivity, clock):
    queue = OfflineWriteQueue(store, remote, connectivity, clock=clock, timeout_s=0.01)
    (record,) = _create(store, 1)
    remote.delay_s = 0.5

    result = await queue.drain()

    assert result.failed == [record.local_id]
    assert store.get(record.local_id).last_sync_error == "timed out"


@pytest.mark.asyncio
async def test_edit_during_push_keeps_record_pending(store, remote, queue, clock):
    (record,) = _create(store, 1)
    remote.delay_s = 0.05

    task = asyncio.create_task(queue.drain())
    await asyncio.sleep(0.01)
    assert [e.state for e in queue.entries()] == [EntryState.IN_FLIGHT]
    clock.advance(1)
    store.update(record.local_id, {"comment": "changed mid-flight"})
    await task

    in_between = store.get(record.local_id)
    assert in_between.server_id == "srv-1"
    assert in_between.sync_status is SyncStatus.PENDING

    remote.delay_s = 0
    result = await queue.drain()
    assert result.confirmed == [record.local_id]
    assert store.get(record.local_id).server_id == "srv-1"


@pytest.mark.asyncio
async def test_deletions_replayed_to_server(store, remote, queue):
    (record,) = _create(store, 1)
    await queue.drain()
    server_id = store.get(record.local_id).server_id

    store.delete([record.local_id])
    remote.fail_deletes = {server_id}
    result = await queue.drain()
    assert result.deletions_failed == [server_id]
    assert store.pending_deletions() == [server_id]

    remote.fail_deletes = set()
    result = await queue.drain()
    assert result.deletions_confirmed == [server_id]
    assert remote.deleted == [server_id]
    assert store.pending_deletions() == []


@pytest.mark.asyncio
async def test_connectivity_restored_triggers_drain(store, remote, queue, connectivity, clock):
    failed, synced = _create(store, 2)
    remote.fail_ids = {failed.local_id}
    await queue.drain()

    connectivity.set_offline()
    offline = store.create({"comment": "recorded offline"})
    remote.fail_ids = set()

    # Restore ignores the backoff of earlier failures.
    tasks = connectivity.set_online()
    results = await asyncio.gather(*tasks)

    assert [r.confirmed for r in results] == [[failed.local_id, offline.local_id]]
    assert synced.local_id not in remote.pushed[2:]


@pytest.mark.asyncio
async def test_local_change_triggers_drain(store, remote, channel, connectivity, clock):
    queue = OfflineWriteQueue(store, remote, connectivity, channel=channel, clock=clock)

    record = store.create({"comment": "pushed straight away"})
    await queue.wait_idle()

    assert remote.pushed == [record.local_id]
    assert store.get(record.local_id).sync_status is SyncStatus.SYNCED


@pytest.mark.asyncio
async def test_pull_merges_server_changes(store, remote, queue):
    remote.changes = [{"server_id": "srv-x", "comment": "from the web form", "accuracy_m": 50}]
    remote.changes_timestamp_ms = 1_700_000_123_000

    applied = await queue.pull()

    [local_id] = applied["inserted"]
    assert store.get(local_id).server_id == "srv-x"
    assert store.get_meta("last_pull_ms") == "1700000123000"


class FlakyStorage(MemoryKeyValueStorage):
    """Memory storage whose next N writes fail as if the disk were full."""

    def __init__(self) -> None:
        super().__init__()
        self.failing_writes = 0

    def set(self, key: str, value: str) -> None:
        if self.failing_writes:
            self.failing_writes -= 1
            raise QuotaExceeded("disk full")
        super().set(key, value)


@pytest.mark.asyncio
async def test_unsaved_confirmation_does_not_block_drain(remote, channel, connectivity, clock):
    storage = FlakyStorage()
    store = RecordStore(storage, channel, context_id="ctx", clock=clock)
    queue = OfflineWriteQueue(store, remote, connectivity, clock=clock)
    r1, r2, r3 = _create(store, 3)

    storage.failing_writes = 1
    result = await queue.drain()

    assert remote.pushed == [r1.local_id, r2.local_id, r3.local_id]
    assert result.confirmed == [r2.local_id, r3.local_id]
    assert result.failed == [r1.local_id]
    assert store.get(r1.local_id).server_id is None
    assert store.get(r1.local_id).is_pending

    # The retry updates the copy the server already holds instead of creating another.
    result = await queue.drain()
    assert result.confirmed == [r1.local_id]
    assert store.get(r1.local_id).server_id == "srv-1"
    assert sorted(r.server_id for r in store.get_all()) == ["srv-1", "srv-2", "srv-3"]


@pytest.mark.asyncio
async def test_unsaved_deletion_confirmation_is_retried(store, remote, queue, storage):
    (record,) = _create(store, 1)
    await queue.drain()
    server_id = store.get(record.local_id).server_id
    store.delete([record.local_id])

    storage.set_quota(1)
    result = await queue.drain()
    assert result.deletions_failed == [server_id]
    assert store.pending_deletions() == [server_id]

    storage.set_quota(0)
    result = await queue.drain()
    assert result.deletions_confirmed == [server_id]
