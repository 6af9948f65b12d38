"""Request helpers shared by the routers."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from fastapi import HTTPException, Request

if TYPE_CHECKING:
    from fieldlog.main import FieldLogRuntime


def get_runtime(request: Request) -> FieldLogRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    assert runtime is not None, "fieldlog not initialized"
    return runtime


async def read_json_object(request: Request) -> dict[str, Any]:
    """Parse the request body as a JSON object, or fail with 400."""
    body_bytes = await request.body()
    try:
        body = json.loads(body_bytes or b"{}")
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="invalid JSON")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="expected a JSON object")
    return body
