"""Tests for SyncStats counters."""

from __future__ import annotations

from fieldlog.core.stats import SyncStats


def test_initial_stats():
    snap = SyncStats().snapshot()
    assert snap["records"]["created"] == 0
    assert snap["queue"]["drains_run"] == 0
    assert snap["queue"]["last_drain_at"] is None
    assert snap["reference"]["reloads"] == 0


def test_record_counters():
    stats = SyncStats()
    stats.record_created()
    stats.record_created()
    stats.record_edited()
    stats.record_deleted(3)
    stats.record_quota_failure()

    snap = stats.snapshot()["records"]
    assert snap == {"created": 2, "edited": 1, "deleted": 3, "quota_failures": 1}


def test_queue_counters():
    stats = SyncStats()
    stats.record_push_confirmed()
    stats.record_push_failed()
    stats.record_terminal_error()
    stats.record_deletion_confirmed()
    stats.record_drain(skipped=False)
    stats.record_drain(skipped=True)

    snap = stats.snapshot()["queue"]
    assert snap["pushes_confirmed"] == 1
    assert snap["pushes_failed"] == 1
    assert snap["terminal_errors"] == 1
    assert snap["deletions_confirmed"] == 1
    assert snap["drains_run"] == 1
    assert snap["drains_skipped"] == 1
    assert snap["last_drain_at"] is not None


def test_reference_reload_counts():
    stats = SyncStats()
    stats.record_reference_reload(loaded=120, skipped=2)
    stats.record_reference_reload(loaded=118, skipped=1)

    snap = stats.snapshot()["reference"]
    assert snap == {"reloads": 2, "species_loaded": 118, "rows_skipped": 3}
