"""Maps core error kinds to HTTP responses."""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from fieldlog.core.errors import (
    FieldLogError,
    InvalidRecord,
    InvalidTransition,
    NetworkUnavailable,
    NotFound,
    QuotaExceeded,
    RemoteRejected,
    StorageUnavailable,
)

_STATUS = {
    NotFound: 404,
    InvalidRecord: 422,
    InvalidTransition: 409,
    QuotaExceeded: 507,
    StorageUnavailable: 503,
    NetworkUnavailable: 503,
    RemoteRejected: 502,
}


def _status_for(exc: FieldLogError) -> int:
    for cls in type(exc).__mro__:
        if cls in _STATUS:
            return _STATUS[cls]
    return 500


async def _handle(request: Request, exc: FieldLogError) -> JSONResponse:
    content = {"error": exc.error_code, "message": str(exc)}
    if isinstance(exc, QuotaExceeded):
        content["message"] = exc.user_message
    if isinstance(exc, NotFound):
        content["ids"] = exc.ids
    if isinstance(exc, NetworkUnavailable):
        content["will_retry"] = True
    return JSONResponse(content=content, status_code=_status_for(exc))


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(FieldLogError, _handle)
