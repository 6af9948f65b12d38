"""Reference data store — local SQLite copy of the species taxonomy.

The dataset is versioned by a single marker in the ``metadata`` table. When
the marker differs from the expected data version, every partition is fetched
in order and the ``species`` table is rebuilt from scratch. Rows missing
Genus or Species are skipped; a partition that cannot be fetched is skipped.
Neither stops the reload.

Two processes upgrading at the same moment are not coordinated: both rebuild
and the last one to commit wins. Upgrades are rare enough that this is accepted.
"""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

import structlog

from fieldlog.core.errors import NetworkUnavailable, StorageUnavailable, ValidationSkipped
from fieldlog.core.models import SpeciesEntry

if TYPE_CHECKING:
    from fieldlog.core.stats import SyncStats
    from fieldlog.remote.base import PartitionSource

log = structlog.get_logger()

# Expected dataset generation. Bump when new partition files are published.
CURRENT_DATA_VERSION = "2023-09-28"
DATA_VERSION_KEY = "dataVersion"
DEFAULT_PARTITION_COUNT = 10
ROWS_KEY = "original csv"

ProgressCallback = Callable[[int], None]

DDL = """
CREATE TABLE IF NOT EXISTS species (
  id TEXT PRIMARY KEY,
  scientific_name TEXT NOT NULL,
  vernacular_name TEXT NOT NULL DEFAULT '',
  category_norway TEXT NOT NULL DEFAULT '',
  category_svalbard TEXT NOT NULL DEFAULT '',
  payload TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS metadata (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL
);
"""

_VERNACULAR_KEYS = {
    "nb": "VernacularNameBokmaal",
    "nn": "VernacularNameNynorsk",
    "se": "VernacularNameSami",
}
_RANK_KEYS = {
    "kingdom": "Kingdom",
    "phylum": "Phylum",
    "class": "Class",
    "order": "Order",
    "family": "Family",
    "genus": "Genus",
    "species": "Species",
}


def species_entry_from_row(row: dict[str, Any]) -> SpeciesEntry:
    """Build a SpeciesEntry from one source row, or raise ValidationSkipped."""
    if not isinstance(row, dict):
        raise ValidationSkipped(f"row is not an object: {row!r}")
    genus = str(row.get("Genus") or "").strip()
    species = str(row.get("Species") or "").strip()
    if not genus or not species:
        raise ValidationSkipped("row lacks Genus or Species")

    vernacular_names = {
        locale: str(row[key]).strip()
        for locale, key in _VERNACULAR_KEYS.items()
        if row.get(key)
    }
    ranks = {rank: str(row[key]).strip() for rank, key in _RANK_KEYS.items() if row.get(key)}
    return SpeciesEntry(
        id=f"{genus}_{species}",
        scientific_name=f"{genus} {species}",
        vernacular_name=vernacular_names.get("nb", ""),
        vernacular_names=vernacular_names,
        ranks=ranks,
        category_norway=str(row.get("CategoryNorway") or ""),
        category_svalbard=str(row.get("CategorySvalbard") or ""),
        raw=dict(row),
    )


def _entry_from_db(row: sqlite3.Row) -> SpeciesEntry:
    payload = json.loads(row["payload"])
    return SpeciesEntry(
        id=row["id"],
        scientific_name=row["scientific_name"],
        vernacular_name=row["vernacular_name"],
        vernacular_names=payload.get("vernacular_names", {}),
        ranks=payload.get("ranks", {}),
        category_norway=row["category_norway"],
        category_svalbard=row["category_svalbard"],
        raw=payload.get("raw", {}),
    )


class ReferenceDataStore:
    """Versioned, bulk-loaded species dataset with name indexes."""

    def __init__(
        self,
        db_path: str | Path,
        source: PartitionSource,
        *,
        data_version: str = CURRENT_DATA_VERSION,
        partition_count: int = DEFAULT_PARTITION_COUNT,
        stats: SyncStats | None = None,
    ) -> None:
        self._db_path = str(db_path)
        self._source = source
        self._data_version = data_version
        self._partition_count = partition_count
        self._stats = stats
        self._conn: sqlite3.Connection | None = None
        self._reload_listeners: list[Callable[[], None]] = []

    @property
    def expected_version(self) -> str:
        return self._data_version

    def initialize(self) -> None:
        """Open (or create) the database and its indexes. Safe to call repeatedly."""
        try:
            if self._conn is None:
                if self._db_path != ":memory:":
                    Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(self._db_path)
                conn.row_factory = sqlite3.Row
                if self._db_path != ":memory:":
                    conn.execute("PRAGMA journal_mode=WAL;")
                self._conn = conn
            cur = self._conn.cursor()
            cur.executescript(DDL)
            cur.execute("CREATE INDEX IF NOT EXISTS idx_species_scientific ON species(scientific_name);")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_species_vernacular ON species(vernacular_name);")
            self._conn.commit()
        except (sqlite3.Error, OSError) as exc:
            raise StorageUnavailable(f"cannot open reference database {self._db_path}: {exc}") from exc
        log.debug("reference_store_initialized", path=self._db_path)

    @property
    def _db(self) -> sqlite3.Connection:
        if self._conn is None:
            self.initialize()
        assert self._conn is not None
        return self._conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def on_reload(self, listener: Callable[[], None]) -> None:
        self._reload_listeners.append(listener)

    def get_version(self) -> str | None:
        row = self._db.execute(
            "SELECT value FROM metadata WHERE key = ?", (DATA_VERSION_KEY,)
        ).fetchone()
        return row["value"] if row else None

    def _set_version(self, version: str) -> None:
        self._db.execute(
            """
            INSERT INTO metadata(key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value;
            """,
            (DATA_VERSION_KEY, version),
        )
        self._db.commit()

    def count(self) -> int:
        return self._db.execute("SELECT COUNT(*) AS n FROM species").fetchone()["n"]

    def all_entries(self) -> list[SpeciesEntry]:
        rows = self._db.execute("SELECT * FROM species ORDER BY rowid").fetchall()
        return [_entry_from_db(r) for r in rows]

    def get(self, species_id: str) -> SpeciesEntry | None:
        row = self._db.execute("SELECT * FROM species WHERE id = ?", (species_id,)).fetchone()
        return _entry_from_db(row) if row else None

    async def check_and_sync(self, progress_callback: ProgressCallback | None = None) -> bool:
        """Reload the dataset if the stored version is not the expected one.

        Returns True when a reload ran. ``progress_callback`` receives
        percentages in [0, 100]; it gets exactly one call with 100 when the
        data is already current.
        """
        stored = self.get_version()
        if stored == self._data_version:
            log.info("reference_data_current", version=stored)
            if progress_callback:
                progress_callback(100)
            return False

        log.info("reference_data_outdated", stored=stored, expected=self._data_version)
        await self._reload(progress_callback)
        self._set_version(self._data_version)
        log.info("reference_data_updated", version=self._data_version, species=self.count())

        for listener in list(self._reload_listeners):
            listener()
        return True

    def _upsert(self, entries: list[SpeciesEntry]) -> None:
        self._db.executemany(
            """
            INSERT INTO species(id, scientific_name, vernacular_name, category_norway,
                                category_svalbard, payload)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              scientific_name=excluded.scientific_name,
              vernacular_name=excluded.vernacular_name,
              category_norway=excluded.category_norway,
              category_svalbard=excluded.category_svalbard,
              payload=excluded.payload;
            """,
            [
                (
                    e.id,
                    e.scientific_name,
                    e.vernacular_name,
                    e.category_norway,
                    e.category_svalbard,
                    json.dumps(
                        {"vernacular_names": e.vernacular_names, "ranks": e.ranks, "raw": e.raw},
                        ensure_ascii=False,
                    ),
                )
                for e in entries
            ],
        )

    async def _reload(self, progress_callback: ProgressCallback | None) -> None:
        if progress_callback:
            progress_callback(0)

        # Entries are replaced wholesale; a failed partition leaves its entries absent.
        self._db.execute("DELETE FROM species")
        self._db.commit()

        loaded = 0
        skipped = 0
        for index in range(1, self._partition_count + 1):
            try:
                data = await self._source.fetch(index)
            except NetworkUnavailable as exc:
                log.error("reference_partition_failed", partition=index, error=str(exc))
                data = {}

            rows = data.get(ROWS_KEY) if isinstance(data, dict) else None
            entries = []
            for row in rows if isinstance(rows, list) else []:
                try:
                    entries.append(species_entry_from_row(row))
                except ValidationSkipped as exc:
                    skipped += 1
                    log.warning("species_row_skipped", partition=index, reason=str(exc))
            if entries:
                self._upsert(entries)
                self._db.commit()
                loaded += len(entries)

            if progress_callback:
                progress_callback(round(index * 100 / self._partition_count))

        if self._stats is not None:
            self._stats.record_reference_reload(loaded, skipped)
        log.info("reference_reload_done", partitions=self._partition_count,
                 loaded=loaded, skipped=skipped)
