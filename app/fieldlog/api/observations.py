"""Observation record API endpoints.

Thin FastAPI adapter over the RecordStore used by the recording UI.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from fieldlog.api.deps import get_runtime, read_json_object
from fieldlog.core.errors import InvalidRecord

router = APIRouter(prefix="/api/v1")


def _ids(body: dict) -> set[int]:
    try:
        return {int(i) for i in body.get("ids", [])}
    except (TypeError, ValueError):
        raise InvalidRecord("ids must be integers")


@router.get("/observations")
async def list_observations(runtime=Depends(get_runtime)) -> dict:
    """All observations in insertion order, with their sync status."""
    records = runtime.records.get_all()
    return {"observations": [r.to_dict() for r in records], "total": len(records)}


@router.get("/observations/{local_id}")
async def get_observation(local_id: int, runtime=Depends(get_runtime)) -> dict:
    return runtime.records.get(local_id).to_dict()


@router.post("/observations")
async def create_observation(request: Request, runtime=Depends(get_runtime)) -> JSONResponse:
    """Create an observation. It is stored as pending until the server confirms it."""
    body = await read_json_object(request)
    record = runtime.records.create(body)
    return JSONResponse(content=record.to_dict(), status_code=201)


@router.patch("/observations/{local_id}")
async def edit_observation(local_id: int, request: Request, runtime=Depends(get_runtime)) -> dict:
    body = await read_json_object(request)
    return runtime.records.update(local_id, body).to_dict()


@router.put("/observations/{local_id}/images")
async def replace_images(local_id: int, request: Request, runtime=Depends(get_runtime)) -> dict:
    """Replace the image list of one observation.

    Body: {"images": [{"data": "...", "rotation": 90}, ...]}
    """
    body = await read_json_object(request)
    images = body.get("images")
    if not isinstance(images, list):
        raise InvalidRecord("images must be a list")
    return runtime.records.update_images(local_id, images).to_dict()


@router.delete("/observations")
async def delete_observations(request: Request, runtime=Depends(get_runtime)) -> dict:
    """Delete observations by local id.

    Body: {"ids": [1701234567890, ...]}
    """
    ids = _ids(await read_json_object(request))
    if not ids:
        return {"deleted": 0}
    deleted = runtime.records.delete(ids)
    return {"deleted": len(deleted)}


@router.post("/observations/retry")
async def retry_observations(request: Request, runtime=Depends(get_runtime)) -> dict:
    """Re-queue observations whose sync ended in the error state."""
    ids = _ids(await read_json_object(request))
    requeued = runtime.records.retry_failed(ids)
    return {"requeued": [r.local_id for r in requeued]}
