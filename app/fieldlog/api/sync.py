"""Connectivity and write-queue endpoints."""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends

from fieldlog.api.deps import get_runtime
from fieldlog.core.models import SyncStatus

router = APIRouter(prefix="/api/v1")


@router.get("/sync/status")
async def sync_status(runtime=Depends(get_runtime)) -> dict:
    """Queue contents and the will-retry / error state shown to the user."""
    entries = runtime.queue.entries()
    errors = [r for r in runtime.records.get_all() if r.sync_status is SyncStatus.ERROR]
    return {
        "online": runtime.connectivity.is_online,
        "draining": runtime.queue.draining,
        "queue": [
            {
                "local_id": e.local_id,
                "state": e.state.value,
                "attempts": e.attempts,
                "next_retry_at_ms": e.next_retry_at_ms,
                "last_error": e.last_error,
            }
            for e in entries
        ],
        "pending_deletions": len(runtime.records.pending_deletions()),
        "errors": [
            {"local_id": r.local_id, "attempts": r.sync_attempts, "last_error": r.last_sync_error}
            for r in errors
        ],
    }


@router.post("/sync/online")
async def go_online(runtime=Depends(get_runtime)) -> dict:
    """Signal that connectivity is back; waits for the resulting drain."""
    tasks = runtime.connectivity.set_online()
    results = await asyncio.gather(*tasks) if tasks else []
    return {"online": True, "drains": [r.to_dict() for r in results]}


@router.post("/sync/offline")
async def go_offline(runtime=Depends(get_runtime)) -> dict:
    runtime.connectivity.set_offline()
    return {"online": False}


@router.post("/sync/drain")
async def drain_queue(runtime=Depends(get_runtime)) -> dict:
    result = await runtime.queue.drain()
    return result.to_dict()


@router.post("/sync/pull")
async def pull_changes(runtime=Depends(get_runtime)) -> dict:
    """Merge records changed on the server since the last pull."""
    return await runtime.queue.pull()
