"""HTTP client for the remote observation service.

Endpoints:
- POST   /registrations                 create, returns the stored registration
- PUT    /registrations/{server_id}     replace an existing registration
- DELETE /registrations/{server_id}
- GET    /registrations/changes?since=  registrations changed after a timestamp
- GET    /health
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import httpx
import structlog

from fieldlog.core.errors import NetworkUnavailable, RemoteRejected
from fieldlog.remote.base import ChangeSet, RemoteAck

if TYPE_CHECKING:
    from fieldlog.core.models import ObservationRecord

log = structlog.get_logger()

DEFAULT_TIMEOUT_S = 20.0


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("error") or body.get("detail") or body)
    return str(body)


class HttpRemoteService:
    """RemoteService over httpx with an explicit per-request timeout."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        auth_token: str = "",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if auth_token:
            headers["Authorization"] = f"Bearer {auth_token}"
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_s),
            headers=headers,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise NetworkUnavailable(f"{method} {url} timed out") from exc
        except httpx.TransportError as exc:
            raise NetworkUnavailable(f"{method} {url} failed: {exc}") from exc

        if response.status_code >= 500 or response.status_code in (408, 429):
            raise NetworkUnavailable(f"{method} {url} returned {response.status_code}")
        return response

    def _body(self, record: ObservationRecord) -> dict[str, Any]:
        payload = record.payload()
        position = payload.pop("position")
        if position is not None:
            payload["latitude"] = position["lat"]
            payload["longitude"] = position["lon"]
        payload["client_id"] = payload.pop("local_id")
        payload.pop("server_id", None)
        return payload

    def _ack(self, response: httpx.Response) -> RemoteAck:
        body = response.json()
        server_id = body.get("_id") or body.get("id") or body.get("server_id")
        if not server_id:
            raise RemoteRejected(response.status_code, "response carries no identifier")
        return RemoteAck(server_id=str(server_id),
                         server_updated_at_ms=int(body.get("updated_at_ms") or 0))

    async def push(self, record: ObservationRecord) -> RemoteAck:
        if record.server_id:
            response = await self._request("PUT", f"/registrations/{record.server_id}",
                                           json=self._body(record))
        else:
            response = await self._request("POST", "/registrations", json=self._body(record))

        if response.status_code >= 400:
            raise RemoteRejected(response.status_code, _error_detail(response))
        ack = self._ack(response)
        log.debug("remote_push_confirmed", local_id=record.local_id, server_id=ack.server_id)
        return ack

    async def delete(self, server_id: str) -> None:
        response = await self._request("DELETE", f"/registrations/{server_id}")
        if response.status_code == 404:
            log.info("remote_delete_already_gone", server_id=server_id)
            return
        if response.status_code >= 400:
            raise RemoteRejected(response.status_code, _error_detail(response))

    async def changes_since(self, since_ms: int) -> ChangeSet:
        response = await self._request("GET", "/registrations/changes", params={"since": since_ms})
        if response.status_code >= 400:
            raise RemoteRejected(response.status_code, _error_detail(response))
        body = response.json()
        records = []
        for raw in body.get("serverChanges", body.get("records", [])):
            record = dict(raw)
            record.setdefault("server_id", record.pop("_id", None))
            if "latitude" in record and "longitude" in record:
                record["position"] = {"lat": record.pop("latitude"), "lon": record.pop("longitude")}
            records.append(record)
        return ChangeSet(records=records, timestamp_ms=int(body.get("timestamp_ms") or 0))

    async def ping(self) -> bool:
        try:
            response = await self._client.get("/health")
        except httpx.HTTPError:
            return False
        return response.status_code == 200
