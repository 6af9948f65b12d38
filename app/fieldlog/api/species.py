"""Species reference data endpoints: search and dataset status."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from fieldlog.api.deps import get_runtime

router = APIRouter(prefix="/api/v1")


@router.get("/species/search")
async def search_species(
    q: str = Query(default=""),
    limit: int = Query(default=20, ge=1, le=20),
    runtime=Depends(get_runtime),
) -> dict:
    """Exact, then substring, then fuzzy matches on vernacular and scientific names.

    Very short queries (under three characters) return broad, low-value lists.
    """
    results = runtime.search.search(q, limit=limit)
    return {"query": q, "results": [e.to_dict() for e in results], "total": len(results)}


@router.get("/species/status")
async def species_status(runtime=Depends(get_runtime)) -> dict:
    reference = runtime.reference
    return {
        "version": reference.get_version(),
        "expected_version": reference.expected_version,
        "count": reference.count(),
        "progress": runtime.reference_progress,
        "ready": runtime.reference_ready,
    }


@router.post("/species/sync")
async def sync_species(runtime=Depends(get_runtime)) -> dict:
    """Reload the reference dataset if its version marker is out of date."""
    reloaded = await runtime.sync_reference_data()
    return {
        "reloaded": reloaded,
        "version": runtime.reference.get_version(),
        "count": runtime.reference.count(),
    }
