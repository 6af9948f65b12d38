"""Remote boundary interfaces (ports): the observation service and reference-data partitions."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, TYPE_CHECKING

if TYPE_CHECKING:
    from fieldlog.core.models import ObservationRecord


@dataclass(frozen=True)
class RemoteAck:
    """Server confirmation of a pushed record."""

    server_id: str
    server_updated_at_ms: int = 0


@dataclass(frozen=True)
class ChangeSet:
    """Records changed on the server since a point in time."""

    records: list[dict[str, Any]] = field(default_factory=list)
    timestamp_ms: int = 0


class RemoteService(Protocol):
    """Port: the remote datastore that confirms observation writes.

    Implementations raise NetworkUnavailable when the service cannot be
    reached and RemoteRejected when it refuses the write.
    """

    async def push(self, record: ObservationRecord) -> RemoteAck: ...

    async def delete(self, server_id: str) -> None: ...

    async def changes_since(self, since_ms: int) -> ChangeSet: ...

    async def ping(self) -> bool: ...


class PartitionSource(Protocol):
    """Port: supplies the numbered reference-data partition files (1-based)."""

    async def fetch(self, index: int) -> dict[str, Any]: ...
