"""Reference-data partition sources.

The species dataset ships as numbered files ``species-data-<i>.json``, each
holding its rows under the key ``"original csv"``. Both sources raise
NetworkUnavailable when a partition cannot be obtained.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import httpx
import structlog

from fieldlog.core.errors import NetworkUnavailable

log = structlog.get_logger()

PARTITION_NAME = "species-data-{index}.json"

# Startup waits on these fetches; keep a ceiling so it can never hang.
DEFAULT_FETCH_TIMEOUT_S = 60.0


class HttpPartitionSource:
    """PartitionSource fetching ``<base_url>/species-data-<i>.json``."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = DEFAULT_FETCH_TIMEOUT_S,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_s))

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch(self, index: int) -> dict[str, Any]:
        url = f"{self._base_url}/{PARTITION_NAME.format(index=index)}"
        try:
            response = await self._client.get(url)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as exc:
            raise NetworkUnavailable(f"cannot fetch {url}: {exc}") from exc
        except ValueError as exc:
            raise NetworkUnavailable(f"invalid JSON in {url}") from exc


class DirectoryPartitionSource:
    """PartitionSource reading the same file names from a local directory."""

    def __init__(self, data_dir: str | Path) -> None:
        self._data_dir = Path(data_dir)

    async def fetch(self, index: int) -> dict[str, Any]:
        path = self._data_dir / PARTITION_NAME.format(index=index)
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as exc:
            # ValueError covers both invalid JSON and non-UTF-8 bytes.
            raise NetworkUnavailable(f"cannot read {path}: {exc}") from exc
