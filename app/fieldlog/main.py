"""fieldlog — main entry point.

This is the only file that knows about concrete implementations.
It wires together the core, storage, channel, remote, and API layers.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Callable

import structlog
from fastapi import FastAPI

from fieldlog.api.errors import install_error_handlers
from fieldlog.api.monitoring import router as monitoring_router
from fieldlog.api.observations import router as observations_router
from fieldlog.api.species import router as species_router
from fieldlog.api.sync import router as sync_router
from fieldlog.channel.local_channel import LocalChangeChannel
from fieldlog.config import AppConfig, load_config
from fieldlog.core.connectivity import ConnectivityMonitor
from fieldlog.core.record_store import RecordStore
from fieldlog.core.search import SpeciesSearchIndex
from fieldlog.core.stats import SyncStats
from fieldlog.core.synchronizer import ContextSynchronizer
from fieldlog.core.write_queue import OfflineWriteQueue, RetryPolicy
from fieldlog.remote.base import PartitionSource, RemoteService
from fieldlog.remote.http_remote import HttpRemoteService
from fieldlog.remote.partitions import DirectoryPartitionSource, HttpPartitionSource
from fieldlog.storage.base import KeyValueStorage
from fieldlog.storage.file_storage import FileKeyValueStorage
from fieldlog.storage.memory_storage import MemoryKeyValueStorage
from fieldlog.storage.reference_db import ReferenceDataStore

log = structlog.get_logger()

VERSION = "0.1.0"


def setup_logging(config: AppConfig) -> None:
    """Configure structlog based on the logging config."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if config.logging.format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=not config.logging.file))

    logger_factory = None
    if config.logging.file:
        logger_factory = structlog.WriteLoggerFactory(file=open(config.logging.file, "a"))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(config.logging.level.upper()),
        ),
        logger_factory=logger_factory or structlog.PrintLoggerFactory(),
    )


def _make_storage(config: AppConfig) -> KeyValueStorage:
    if config.storage.backend == "memory":
        return MemoryKeyValueStorage(quota_bytes=config.storage.quota_bytes)
    return FileKeyValueStorage(config.storage.base_dir, quota_bytes=config.storage.quota_bytes)


def _make_partition_source(config: AppConfig) -> PartitionSource:
    if config.reference.data_url:
        return HttpPartitionSource(config.reference.data_url,
                                   timeout_s=config.reference.fetch_timeout_s)
    return DirectoryPartitionSource(config.reference.data_dir)


class FieldLogRuntime:
    """Every long-lived component of one running instance.

    Constructed at startup, torn down at shutdown, and handed to the API
    layer through ``app.state`` rather than module globals.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        storage: KeyValueStorage | None = None,
        remote: RemoteService | None = None,
        partition_source: PartitionSource | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.clock = clock
        self.stats = SyncStats()
        self.storage = storage or _make_storage(config)
        self.channel = LocalChangeChannel()
        self.connectivity = ConnectivityMonitor(online=config.sync.start_online)

        self.records, self.synchronizer = self.open_context()

        self.remote = remote or HttpRemoteService(
            config.remote.base_url,
            timeout_s=config.remote.timeout_s,
            auth_token=config.remote.auth_token,
        )
        self.queue = OfflineWriteQueue(
            self.records,
            self.remote,
            self.connectivity,
            channel=self.channel,
            policy=RetryPolicy(
                max_attempts=config.sync.max_attempts,
                base_delay_s=config.sync.base_delay_s,
                max_delay_s=config.sync.max_delay_s,
            ),
            timeout_s=config.remote.timeout_s,
            stats=self.stats,
            clock=clock,
        )

        self.partition_source = partition_source or _make_partition_source(config)
        self.reference = ReferenceDataStore(
            config.reference.db_path,
            self.partition_source,
            data_version=config.reference.data_version,
            partition_count=config.reference.partition_count,
            stats=self.stats,
        )
        self.search = SpeciesSearchIndex(
            self.reference,
            limit=config.search.limit,
            fuzzy_threshold=config.search.fuzzy_threshold,
        )
        self.reference_progress = 0
        self.reference_ready = False
        self._tasks: list[asyncio.Task] = []

    def open_context(self) -> tuple[RecordStore, ContextSynchronizer]:
        """A further view of the same records, sharing storage and channel."""
        store = RecordStore(
            self.storage,
            self.channel,
            key=self.config.storage.records_key,
            stats=self.stats,
            clock=self.clock,
        )
        return store, ContextSynchronizer(store, self.storage, self.channel)

    def _on_reference_progress(self, percent: int) -> None:
        self.reference_progress = percent
        log.debug("reference_progress", percent=percent)

    async def sync_reference_data(self) -> bool:
        self.reference_ready = False
        try:
            return await self.reference.check_and_sync(self._on_reference_progress)
        finally:
            self.reference_ready = True

    async def start(self) -> None:
        # Opening the reference database is fatal if it fails; loading it is not.
        self.reference.initialize()
        self._tasks.append(asyncio.create_task(self.sync_reference_data()))
        if self.config.remote.probe_interval_s > 0:
            self._tasks.append(asyncio.create_task(
                self.connectivity.run_probe(self.remote, self.config.remote.probe_interval_s)
            ))
        if self.config.sync.retry_interval_s > 0:
            self._tasks.append(asyncio.create_task(
                self.queue.run_retry_loop(self.config.sync.retry_interval_s)
            ))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                log.error("background_task_failed", task=task.get_name(), exc_info=True)
        self._tasks = []
        await self.queue.wait_idle()
        self.synchronizer.close()
        self.reference.close()
        for client in (self.remote, self.partition_source):
            aclose = getattr(client, "aclose", None)
            if aclose is not None:
                await aclose()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    config = load_config()
    setup_logging(config)

    log.info("fieldlog_starting",
             env=config.server.env,
             storage_dir=config.storage.base_dir,
             remote=config.remote.base_url)

    runtime = FieldLogRuntime(config)
    await runtime.start()
    app.state.runtime = runtime

    log.info("fieldlog_started",
             host=config.server.host,
             port=config.server.port,
             records=len(runtime.records.get_all()))

    yield

    await runtime.stop()
    log.info("fieldlog_stopped")


app = FastAPI(
    title="fieldlog",
    description="Offline-first species observation log",
    version=VERSION,
    lifespan=lifespan,
)

install_error_handlers(app)
app.include_router(observations_router)
app.include_router(species_router)
app.include_router(sync_router)
app.include_router(monitoring_router)
