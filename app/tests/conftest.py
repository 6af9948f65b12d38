"""Shared test fixtures."""

from __future__ import annotations

import asyncio

import pytest
from httpx import ASGITransport, AsyncClient

from fieldlog.channel.local_channel import LocalChangeChannel
from fieldlog.config import AppConfig
from fieldlog.core.errors import NetworkUnavailable, RemoteRejected
from fieldlog.remote.base import ChangeSet, RemoteAck
from fieldlog.storage.memory_storage import MemoryKeyValueStorage

SPECIES_ROWS = [
    {"Kingdom": "Plantae", "Family": "Betulaceae", "Genus": "Betula", "Species": "pubescens",
     "VernacularNameBokmaal": "Bjørk", "CategoryNorway": "LC"},
    {"Kingdom": "Plantae", "Family": "Rosaceae", "Genus": "Rubus", "Species": "caesius",
     "VernacularNameBokmaal": "Bjørnebær", "CategoryNorway": "LC"},
    {"Kingdom": "Plantae", "Family": "Pinaceae", "Genus": "Picea", "Species": "abies",
     "VernacularNameBokmaal": "Gran", "CategoryNorway": "LC"},
    {"Kingdom": "Animalia", "Family": "Fringillidae", "Genus": "Fringilla", "Species": "coelebs",
     "VernacularNameBokmaal": "Bokfink", "VernacularNameNynorsk": "Bokfink"},
    {"Kingdom": "Animalia", "Family": "Fringillidae", "Genus": "Fringilla", "Species": "montifringilla",
     "VernacularNameBokmaal": "Bjørkefink"},
]


def partitions_for(rows: list[dict], count: int = 10) -> dict[int, dict]:
    """Spread ``rows`` round-robin over ``count`` partition documents."""
    parts: dict[int, dict] = {i: {"original csv": []} for i in range(1, count + 1)}
    for n, row in enumerate(rows):
        parts[n % count + 1]["original csv"].append(row)
    return parts


class FakePartitionSource:
    """PartitionSource serving in-memory partitions and recording every fetch."""

    def __init__(self, partitions: dict[int, dict] | None = None, failing: set[int] | None = None):
        self.partitions = partitions if partitions is not None else partitions_for(SPECIES_ROWS)
        self.failing = failing or set()
        self.fetches: list[int] = []

    async def fetch(self, index: int) -> dict:
        self.fetches.append(index)
        if index in self.failing:
            raise NetworkUnavailable(f"partition {index} unavailable")
        return self.partitions.get(index, {"original csv": []})


class FakeRemote:
    """RemoteService that counts calls and fails on demand."""

    def __init__(self) -> None:
        self.pushed: list[int] = []
        self.deleted: list[str] = []
        self.fail_ids: set[int] = set()
        self.reject_ids: set[int] = set()
        self.fail_deletes: set[str] = set()
        self.changes: list[dict] = []
        self.changes_timestamp_ms = 0
        self.reachable = True
        self.delay_s = 0.0
        self._next_id = 1

    async def push(self, record) -> RemoteAck:
        self.pushed.append(record.local_id)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if record.local_id in self.fail_ids:
            raise NetworkUnavailable("server unreachable")
        if record.local_id in self.reject_ids:
            raise RemoteRejected(400, "invalid registration")
        server_id = record.server_id
        if server_id is None:
            server_id = f"srv-{self._next_id}"
            self._next_id += 1
        return RemoteAck(server_id=server_id)

    async def delete(self, server_id: str) -> None:
        if server_id in self.fail_deletes:
            raise NetworkUnavailable("server unreachable")
        self.deleted.append(server_id)

    async def changes_since(self, since_ms: int) -> ChangeSet:
        return ChangeSet(records=list(self.changes), timestamp_ms=self.changes_timestamp_ms)

    async def ping(self) -> bool:
        return self.reachable


class FakeClock:
    """Deterministic clock (seconds), advanced explicitly by tests."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    return MemoryKeyValueStorage()


@pytest.fixture
def channel():
    return LocalChangeChannel()


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def config(tmp_path):
    config = AppConfig()
    config.storage.backend = "memory"
    config.storage.base_dir = str(tmp_path / "local")
    config.reference.db_path = str(tmp_path / "species.sqlite3")
    config.remote.probe_interval_s = 0
    config.sync.retry_interval_s = 0
    config.logging.level = "warning"
    return config


@pytest.fixture
async def runtime(config, remote):
    from fieldlog.main import FieldLogRuntime

    rt = FieldLogRuntime(
        config,
        storage=MemoryKeyValueStorage(),
        remote=remote,
        partition_source=FakePartitionSource(),
    )
    rt.reference.initialize()
    await rt.sync_reference_data()

    yield rt

    await rt.stop()


@pytest.fixture
async def client(runtime):
    from fieldlog.main import app

    # ASGITransport does not run the lifespan; install the runtime directly.
    app.state.runtime = runtime
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    del app.state.runtime
