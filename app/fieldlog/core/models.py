"""fieldlog — core internal data models.

These are plain dataclasses with no framework dependencies.
JSON documents are converted to/from these at the storage and HTTP boundaries.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, fields, replace
from datetime import date, time
from typing import Any

from fieldlog.core.errors import InvalidRecord

# Accuracy radii (meters) offered by the recording form.
ACCURACY_CHOICES_M = (
    1, 5, 10, 25, 50, 75, 100, 125, 150, 200, 250,
    300, 400, 500, 750, 1000, 1500, 2000, 2500, 3000, 5000,
)

# Decimal places kept for latitude/longitude.
COORDINATE_PRECISION = 6

IMAGE_ROTATIONS = (0, 90, 180, 270)

# Fields owned by the sync machinery; a user patch may not touch them.
_SYNC_FIELDS = frozenset({
    "local_id", "server_id", "sync_status", "sync_attempts",
    "next_retry_at_ms", "last_sync_error", "created_at_ms", "updated_at_ms",
})


class SyncStatus(str, enum.Enum):
    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"


class ChangeType(str, enum.Enum):
    CREATION = "creation"
    EDIT = "edit"
    DELETION = "deletion"
    IMAGE_UPDATE = "imageUpdate"
    SYNC_STATUS = "syncStatus"


@dataclass(frozen=True)
class SpeciesRef:
    scientific_name: str = ""
    vernacular_name: str = ""
    category_norway: str = ""
    category_svalbard: str = ""

    @classmethod
    def from_dict(cls, data: dict | None) -> SpeciesRef:
        data = data or {}
        return cls(
            scientific_name=data.get("scientific_name", "") or "",
            vernacular_name=data.get("vernacular_name", "") or "",
            category_norway=data.get("category_norway", "") or "",
            category_svalbard=data.get("category_svalbard", "") or "",
        )

    def to_dict(self) -> dict:
        return {
            "scientific_name": self.scientific_name,
            "vernacular_name": self.vernacular_name,
            "category_norway": self.category_norway,
            "category_svalbard": self.category_svalbard,
        }


@dataclass(frozen=True)
class Position:
    """Latitude/longitude in decimal degrees, rounded to 6 decimals."""

    lat: float
    lon: float

    def __post_init__(self) -> None:
        try:
            lat = round(float(self.lat), COORDINATE_PRECISION)
            lon = round(float(self.lon), COORDINATE_PRECISION)
        except (TypeError, ValueError) as exc:
            raise InvalidRecord(f"invalid coordinates: {self.lat!r}, {self.lon!r}") from exc
        if not -90.0 <= lat <= 90.0:
            raise InvalidRecord(f"latitude out of range: {lat}")
        if not -180.0 <= lon <= 180.0:
            raise InvalidRecord(f"longitude out of range: {lon}")
        object.__setattr__(self, "lat", lat)
        object.__setattr__(self, "lon", lon)

    @classmethod
    def from_dict(cls, data: dict | None) -> Position | None:
        if data is None:
            return None
        lat, lon = data.get("lat"), data.get("lon")
        if lat is None and lon is None:
            return None
        if lat is None or lon is None:
            raise InvalidRecord("latitude and longitude must be given together")
        return cls(lat=lat, lon=lon)

    def to_dict(self) -> dict:
        return {"lat": self.lat, "lon": self.lon}


@dataclass(frozen=True)
class ImageAttachment:
    """A compressed raster (base64 or data URL) plus client-side rotation."""

    data: str
    rotation: int = 0
    content_type: str = "image/jpeg"

    def __post_init__(self) -> None:
        if not isinstance(self.data, str) or not self.data:
            raise InvalidRecord("image data must be a non-empty string")
        rotation = int(self.rotation) % 360
        if rotation not in IMAGE_ROTATIONS:
            raise InvalidRecord(f"unsupported image rotation: {self.rotation}")
        object.__setattr__(self, "rotation", rotation)

    @classmethod
    def from_dict(cls, data: dict | str) -> ImageAttachment:
        # Legacy documents stored bare data-URL strings.
        if isinstance(data, str):
            return cls(data=data)
        return cls(
            data=data.get("data", ""),
            rotation=data.get("rotation", 0),
            content_type=data.get("content_type", "image/jpeg"),
        )

    def to_dict(self) -> dict:
        return {"data": self.data, "rotation": self.rotation, "content_type": self.content_type}


@dataclass(frozen=True)
class ObservationRecord:
    """A user-created field observation.

    ``local_id`` is assigned once on creation and never changes. ``server_id``
    stays ``None`` until the remote service has confirmed the record.
    """

    local_id: int
    species: SpeciesRef = field(default_factory=SpeciesRef)
    position: Position | None = None
    accuracy_m: int | None = None
    observed_on: str | None = None
    observed_at: str | None = None
    locality: str = ""
    comment: str = ""
    images: tuple[ImageAttachment, ...] = ()
    server_id: str | None = None
    sync_status: SyncStatus = SyncStatus.PENDING
    sync_attempts: int = 0
    next_retry_at_ms: int = 0
    last_sync_error: str = ""
    created_at_ms: int = 0
    updated_at_ms: int = 0
    user_id: str | None = None
    device_id: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.local_id, int) or isinstance(self.local_id, bool):
            raise InvalidRecord(f"local_id must be an integer, got {self.local_id!r}")
        if self.accuracy_m is not None:
            try:
                accuracy = int(self.accuracy_m)
            except (TypeError, ValueError) as exc:
                raise InvalidRecord(f"invalid accuracy: {self.accuracy_m!r}") from exc
            if accuracy not in ACCURACY_CHOICES_M:
                raise InvalidRecord(f"accuracy {accuracy} m is not one of {ACCURACY_CHOICES_M}")
            object.__setattr__(self, "accuracy_m", accuracy)
        if self.observed_on:
            try:
                date.fromisoformat(self.observed_on)
            except ValueError as exc:
                raise InvalidRecord(f"invalid observation date: {self.observed_on!r}") from exc
        if self.observed_at:
            try:
                time.fromisoformat(self.observed_at)
            except ValueError as exc:
                raise InvalidRecord(f"invalid observation time: {self.observed_at!r}") from exc
        try:
            object.__setattr__(self, "sync_status", SyncStatus(self.sync_status))
        except ValueError as exc:
            raise InvalidRecord(f"unknown sync status: {self.sync_status!r}") from exc
        object.__setattr__(self, "images", tuple(self.images))

    @property
    def is_pending(self) -> bool:
        return self.sync_status is SyncStatus.PENDING

    @classmethod
    def from_dict(cls, data: dict) -> ObservationRecord:
        if "local_id" not in data:
            raise InvalidRecord("record has no local_id")
        if not isinstance(data.get("images") or (), (list, tuple)):
            raise InvalidRecord("images must be a list")
        return cls(
            local_id=data["local_id"],
            species=SpeciesRef.from_dict(data.get("species")),
            position=Position.from_dict(data.get("position")),
            accuracy_m=data.get("accuracy_m"),
            observed_on=data.get("observed_on") or None,
            observed_at=data.get("observed_at") or None,
            locality=data.get("locality", "") or "",
            comment=data.get("comment", "") or "",
            images=tuple(ImageAttachment.from_dict(i) for i in data.get("images") or ()),
            server_id=data.get("server_id"),
            sync_status=data.get("sync_status", SyncStatus.PENDING.value),
            sync_attempts=int(data.get("sync_attempts", 0)),
            next_retry_at_ms=int(data.get("next_retry_at_ms", 0)),
            last_sync_error=data.get("last_sync_error", "") or "",
            created_at_ms=int(data.get("created_at_ms", 0)),
            updated_at_ms=int(data.get("updated_at_ms", 0)),
            user_id=data.get("user_id"),
            device_id=data.get("device_id"),
        )

    def to_dict(self) -> dict:
        return {
            "local_id": self.local_id,
            "server_id": self.server_id,
            "species": self.species.to_dict(),
            "position": self.position.to_dict() if self.position else None,
            "accuracy_m": self.accuracy_m,
            "observed_on": self.observed_on,
            "observed_at": self.observed_at,
            "locality": self.locality,
            "comment": self.comment,
            "images": [i.to_dict() for i in self.images],
            "sync_status": self.sync_status.value,
            "sync_attempts": self.sync_attempts,
            "next_retry_at_ms": self.next_retry_at_ms,
            "last_sync_error": self.last_sync_error,
            "created_at_ms": self.created_at_ms,
            "updated_at_ms": self.updated_at_ms,
            "user_id": self.user_id,
            "device_id": self.device_id,
        }

    def payload(self) -> dict:
        """The user-visible content sent to the remote service."""
        data = self.to_dict()
        for key in _SYNC_FIELDS - {"local_id", "server_id"}:
            data.pop(key, None)
        return data

    def with_patch(self, patch: dict[str, Any]) -> ObservationRecord:
        """Return a copy with the user-editable fields in ``patch`` merged over."""
        forbidden = _SYNC_FIELDS.intersection(patch)
        if forbidden:
            raise InvalidRecord(f"fields cannot be edited directly: {sorted(forbidden)}")
        known = {f.name for f in fields(self)}
        unknown = set(patch) - known
        if unknown:
            raise InvalidRecord(f"unknown fields: {sorted(unknown)}")
        data = self.to_dict()
        for key, value in patch.items():
            if key == "species" and isinstance(value, dict):
                data["species"] = {**data["species"], **value}
            else:
                data[key] = value
        try:
            return ObservationRecord.from_dict(data)
        except InvalidRecord:
            raise
        except (AttributeError, TypeError, ValueError) as exc:
            raise InvalidRecord(f"malformed observation fields: {exc}") from exc

    def evolve(self, **changes: Any) -> ObservationRecord:
        return replace(self, **changes)


@dataclass(frozen=True)
class SpeciesEntry:
    """One taxon from the reference dataset. Immutable for a data version."""

    id: str
    scientific_name: str
    vernacular_name: str = ""
    vernacular_names: dict[str, str] = field(default_factory=dict)
    ranks: dict[str, str] = field(default_factory=dict)
    category_norway: str = ""
    category_svalbard: str = ""
    raw: dict[str, Any] = field(default_factory=dict)

    def __hash__(self) -> int:
        return hash(self.id)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SpeciesEntry):
            return NotImplemented
        return self.id == other.id

    def to_ref(self) -> SpeciesRef:
        return SpeciesRef(
            scientific_name=self.scientific_name,
            vernacular_name=self.vernacular_name,
            category_norway=self.category_norway,
            category_svalbard=self.category_svalbard,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "scientific_name": self.scientific_name,
            "vernacular_name": self.vernacular_name,
            "vernacular_names": dict(self.vernacular_names),
            "ranks": dict(self.ranks),
            "category_norway": self.category_norway,
            "category_svalbard": self.category_svalbard,
        }


@dataclass(frozen=True)
class ChangeEvent:
    """Application-level broadcast emitted after every record store mutation."""

    type: ChangeType
    affected_ids: tuple[int, ...]
    timestamp_ms: int
    origin: str = ""

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "affected_ids": list(self.affected_ids),
            "timestamp_ms": self.timestamp_ms,
            "origin": self.origin,
        }
