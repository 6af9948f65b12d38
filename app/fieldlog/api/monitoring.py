"""Health check and monitoring endpoints."""

from __future__ import annotations

import json
import shutil
from pathlib import Path

from fastapi import APIRouter, Depends

from fieldlog.api.deps import get_runtime

router = APIRouter(prefix="/api/v1")

# Load build info once at import time.
_BUILD_INFO_PATH = Path(__file__).parent.parent / "build_info.json"
_BUILD_INFO: dict = {}
if _BUILD_INFO_PATH.exists():
    try:
        _BUILD_INFO = json.loads(_BUILD_INFO_PATH.read_text())
    except (json.JSONDecodeError, OSError):
        pass


@router.get("/health")
async def health(runtime=Depends(get_runtime)) -> dict:
    """Basic health check."""
    from fieldlog.main import VERSION

    storage_path = Path(runtime.config.storage.base_dir)
    try:
        disk = shutil.disk_usage(storage_path if storage_path.exists() else ".")
        disk_free_gb = round(disk.free / (1024 ** 3), 1)
    except OSError:
        disk_free_gb = -1

    snapshot = runtime.stats.snapshot()
    result = {
        "status": "ok",
        "version": VERSION,
        "uptime_seconds": snapshot["uptime_seconds"],
        "online": runtime.connectivity.is_online,
        "queue_depth": len(runtime.records.pending_records()),
        "reference_version": runtime.reference.get_version(),
        "disk_free_gb": disk_free_gb,
    }
    result.update(_BUILD_INFO)
    return result


@router.get("/stats")
async def stats(runtime=Depends(get_runtime)) -> dict:
    """Detailed counters for the record store, write queue and reference data.

    The ``queue`` section additionally reports:
    - ``depth``: records still waiting for server confirmation
    - ``pending_deletions``: server copies waiting to be deleted
    - ``online``: current connectivity state
    """
    snapshot = runtime.stats.snapshot()
    snapshot["queue"]["depth"] = len(runtime.records.pending_records())
    snapshot["queue"]["pending_deletions"] = len(runtime.records.pending_deletions())
    snapshot["queue"]["online"] = runtime.connectivity.is_online
    snapshot["reference"]["count"] = runtime.reference.count()
    return snapshot
