"""Sync statistics.

Tracks in-memory counters for the record store, write queue and reference
data. No framework dependencies.
"""

from __future__ import annotations

import threading
import time


class SyncStats:
    """Thread-safe counters exposed by the monitoring endpoint."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._started_at = time.time()

        # Record store
        self.records_created: int = 0
        self.records_edited: int = 0
        self.records_deleted: int = 0
        self.quota_failures: int = 0

        # Write queue
        self.pushes_confirmed: int = 0
        self.pushes_failed: int = 0
        self.terminal_errors: int = 0
        self.deletions_confirmed: int = 0
        self.drains_run: int = 0
        self.drains_skipped: int = 0
        self.last_drain_at: float | None = None

        # Reference data
        self.reference_reloads: int = 0
        self.species_loaded: int = 0
        self.species_rows_skipped: int = 0

    def record_created(self) -> None:
        with self._lock:
            self.records_created += 1

    def record_edited(self) -> None:
        with self._lock:
            self.records_edited += 1

    def record_deleted(self, count: int) -> None:
        with self._lock:
            self.records_deleted += count

    def record_quota_failure(self) -> None:
        with self._lock:
            self.quota_failures += 1

    def record_push_confirmed(self) -> None:
        with self._lock:
            self.pushes_confirmed += 1

    def record_push_failed(self) -> None:
        with self._lock:
            self.pushes_failed += 1

    def record_terminal_error(self) -> None:
        with self._lock:
            self.terminal_errors += 1

    def record_deletion_confirmed(self) -> None:
        with self._lock:
            self.deletions_confirmed += 1

    def record_drain(self, *, skipped: bool) -> None:
        with self._lock:
            if skipped:
                self.drains_skipped += 1
            else:
                self.drains_run += 1
                self.last_drain_at = time.time()

    def record_reference_reload(self, loaded: int, skipped: int) -> None:
        with self._lock:
            self.reference_reloads += 1
            self.species_loaded = loaded
            self.species_rows_skipped += skipped

    def snapshot(self) -> dict:
        """Return a JSON-serializable snapshot of all stats."""
        with self._lock:
            return {
                "uptime_seconds": round(time.time() - self._started_at, 1),
                "records": {
                    "created": self.records_created,
                    "edited": self.records_edited,
                    "deleted": self.records_deleted,
                    "quota_failures": self.quota_failures,
                },
                "queue": {
                    "pushes_confirmed": self.pushes_confirmed,
                    "pushes_failed": self.pushes_failed,
                    "terminal_errors": self.terminal_errors,
                    "deletions_confirmed": self.deletions_confirmed,
                    "drains_run": self.drains_run,
                    "drains_skipped": self.drains_skipped,
                    "last_drain_at": self.last_drain_at,
                },
                "reference": {
                    "reloads": self.reference_reloads,
                    "species_loaded": self.species_loaded,
                    "rows_skipped": self.species_rows_skipped,
                },
            }
