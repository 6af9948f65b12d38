"""Schema versions of the persisted observation document and their upgrade steps.

Version 1 is the legacy shape: a bare JSON list of registrations written by
the first releases of the recording form. Version 2 wraps explicit records:

    {"schema_version": 2, "records": [...], "deletions": [...]}

Each version class knows how to upgrade a document from its predecessor.
``upgrade_document`` walks the chain until the current version is reached.
"""

from __future__ import annotations

import json
from typing import Any, Protocol

import structlog

from fieldlog.core.errors import StorageUnavailable
from fieldlog.core.models import ACCURACY_CHOICES_M

log = structlog.get_logger()

CURRENT_SCHEMA_VERSION = 2


class DocumentVersion(Protocol):
    version: int
    previous_version: int | None

    def upgrade_from_previous(self, document: Any) -> dict[str, Any]: ...


def empty_document() -> dict[str, Any]:
    return {"schema_version": CURRENT_SCHEMA_VERSION, "records": [], "deletions": []}


def _float_or_none(value: Any) -> float | None:
    if value in (None, ""):
        return None
    try:
        return float(str(value).replace(",", "."))
    except ValueError:
        return None


def _legacy_accuracy(value: Any) -> int | None:
    try:
        accuracy = int(value)
    except (TypeError, ValueError):
        return None
    return accuracy if accuracy in ACCURACY_CHOICES_M else None


def _legacy_images(images: Any, rotations: Any) -> list[dict]:
    rotations = rotations if isinstance(rotations, dict) else {}
    out = []
    for index, image in enumerate(images or []):
        data = image.get("data") if isinstance(image, dict) else image
        if not data:
            continue
        rotation = rotations.get(str(index), rotations.get(index, 0)) or 0
        out.append({"data": data, "rotation": int(rotation) % 360, "content_type": "image/jpeg"})
    return out


class DocumentVersion_1:  # noqa: N801
    """Legacy bare list of registrations."""

    version = 1
    previous_version = None

    def upgrade_from_previous(self, document: Any) -> dict[str, Any]:
        return {"schema_version": 1, "records": list(document)}


class DocumentVersion_2:  # noqa: N801
    """Explicit record shape with two-phase identity and a deletion queue."""

    version = 2
    previous_version = 1

    def _upgrade_record(self, legacy: dict[str, Any]) -> dict[str, Any]:
        lat = _float_or_none(legacy.get("breddegrad"))
        lon = _float_or_none(legacy.get("lengdegrad"))
        position = {"lat": lat, "lon": lon} if lat is not None and lon is not None else None
        local_id = int(legacy["id"])
        return {
            "local_id": local_id,
            "server_id": legacy.get("_id"),
            "species": {
                "scientific_name": legacy.get("latinName") or legacy.get("artsNavn") or "",
                "vernacular_name": legacy.get("speciesInput") or "",
                "category_norway": legacy.get("categoryNorway") or "",
                "category_svalbard": legacy.get("categorySvalbard") or "",
            },
            "position": position,
            "accuracy_m": _legacy_accuracy(legacy.get("noyaktighet")),
            "observed_on": legacy.get("date") or None,
            "observed_at": legacy.get("time") or None,
            "locality": legacy.get("navnPaLokalitet") or legacy.get("lokalitet") or "",
            "comment": legacy.get("kommentar") or "",
            "images": _legacy_images(legacy.get("images"), legacy.get("imageRotations")),
            "sync_status": "synced" if legacy.get("synced") is True else "pending",
            "created_at_ms": local_id,
            "updated_at_ms": local_id,
            "user_id": legacy.get("userId"),
        }

    def upgrade_from_previous(self, document: Any) -> dict[str, Any]:
        records = []
        for legacy in document.get("records", []):
            if not isinstance(legacy, dict) or "id" not in legacy:
                log.warning("legacy_record_dropped", reason="no id")
                continue
            try:
                records.append(self._upgrade_record(legacy))
            except (TypeError, ValueError):
                log.warning("legacy_record_dropped", id=legacy.get("id"), exc_info=True)
        return {"schema_version": 2, "records": records, "deletions": []}


_VERSIONS: dict[int, DocumentVersion] = {
    v.version: v for v in (DocumentVersion_1(), DocumentVersion_2())
}


def detect_version(document: Any) -> int:
    if isinstance(document, list):
        return 0
    if isinstance(document, dict) and isinstance(document.get("schema_version"), int):
        return document["schema_version"]
    raise StorageUnavailable("stored observation document has an unrecognised shape")


def upgrade_document(document: Any) -> tuple[dict[str, Any], bool]:
    """Bring ``document`` to CURRENT_SCHEMA_VERSION. Returns (document, upgraded)."""
    version = detect_version(document)
    if version > CURRENT_SCHEMA_VERSION:
        raise StorageUnavailable(
            f"stored observations use schema {version}, newer than supported {CURRENT_SCHEMA_VERSION}"
        )
    upgraded = False
    while version < CURRENT_SCHEMA_VERSION:
        step = _VERSIONS[version + 1]
        document = step.upgrade_from_previous(document)
        version = step.version
        upgraded = True
        log.info("observation_document_upgraded", to_version=version)
    document.setdefault("deletions", [])
    return document, upgraded


def parse_document(raw: str | None) -> tuple[dict[str, Any], bool]:
    """Decode and upgrade the stored text. Corrupt JSON reads as an empty collection."""
    if raw is None:
        return empty_document(), False
    try:
        decoded = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        log.error("observation_document_corrupt", size=len(raw))
        return empty_document(), False
    return upgrade_document(decoded)
