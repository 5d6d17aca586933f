"""Persistence for chains, artists and the benchmark configuration.

The authoritative store is a remote REST backend (:class:`HttpRemoteStore`).
For local use and tests the same protocol is implemented on top of JSON files
(:class:`JsonFileStore`), following the gallery-file approach: one file per
collection, read fully on every call and rewritten in full on every write.

:class:`ArtistCatalog` is the in-memory view of the artist list that the UI
renders and the generation queue reads and writes between store round-trips.
The queue always re-reads an artist from the catalog immediately before
building its update, so edits made elsewhere since the task was enqueued are
preserved.

Artist writes always send the complete record, including the full
``benchmarks`` array.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Protocol

import httpx

from chainlab.core.models import Artist, BenchmarkConfig, PromptChain

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when a store read or write fails."""


class RemoteStore(Protocol):
    """CRUD operations the application needs from its backend."""

    async def list_artists(self) -> list[Artist]: ...

    async def create_artist(self, artist: Artist) -> Artist: ...

    async def update_artist(self, artist: Artist) -> None: ...

    async def get_benchmark_config(self) -> BenchmarkConfig: ...

    async def save_benchmark_config(self, benchmark: BenchmarkConfig) -> None: ...

    async def list_chains(self) -> list[PromptChain]: ...

    async def save_chain(self, chain: PromptChain) -> None: ...


class ArtistCatalog:
    """In-memory, insertion-ordered view of the artist list."""

    def __init__(self, artists: list[Artist] | None = None) -> None:
        self._artists: dict[str, Artist] = {}
        self.replace_all(artists or [])

    def __len__(self) -> int:
        return len(self._artists)

    def __contains__(self, artist_id: str) -> bool:
        return artist_id in self._artists

    def get(self, artist_id: str) -> Artist | None:
        return self._artists.get(artist_id)

    def put(self, artist: Artist) -> None:
        self._artists[artist.id] = artist

    def all(self) -> list[Artist]:
        return list(self._artists.values())

    def replace_all(self, artists: list[Artist]) -> None:
        self._artists = {artist.id: artist for artist in artists}

    async def refresh(self, store: RemoteStore) -> None:
        """Reload every artist from ``store``."""
        self.replace_all(await store.list_artists())
        logger.debug(f"Artist catalog refreshed ({len(self)} artists)")


# ---------------------------------------------------------------------------
# REST backend.
# ---------------------------------------------------------------------------


class HttpRemoteStore:
    """:class:`RemoteStore` backed by the REST API.

    Routes::

        GET  /api/artists            list artists
        POST /api/artists            create artist
        PUT  /api/artists/{id}       replace artist
        GET  /api/config/benchmark   benchmark configuration
        PUT  /api/config/benchmark   replace benchmark configuration
        GET  /api/chains             list chains
        PUT  /api/chains/{id}        replace chain
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, transport=transport
        )
        logger.info(f"HttpRemoteStore initialized: url={self.base_url}")

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, payload=None):
        try:
            response = await self._client.request(method, path, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise StoreError(
                f"{method} {path} failed: {e.response.status_code} {e.response.text}"
            ) from e
        except httpx.HTTPError as e:
            raise StoreError(f"{method} {path} failed: {e}") from e
        if not response.content:
            return None
        return response.json()

    async def list_artists(self) -> list[Artist]:
        data = await self._request("GET", "/api/artists")
        return [Artist.model_validate(item) for item in data or []]

    async def create_artist(self, artist: Artist) -> Artist:
        data = await self._request("POST", "/api/artists", artist.model_dump(by_alias=True))
        return Artist.model_validate(data) if isinstance(data, dict) and "name" in data else artist

    async def update_artist(self, artist: Artist) -> None:
        await self._request(
            "PUT",
            f"/api/artists/{artist.id}",
            artist.model_dump(by_alias=True, exclude_none=True),
        )

    async def get_benchmark_config(self) -> BenchmarkConfig:
        data = await self._request("GET", "/api/config/benchmark")
        return BenchmarkConfig.model_validate(data or {})

    async def save_benchmark_config(self, benchmark: BenchmarkConfig) -> None:
        await self._request("PUT", "/api/config/benchmark", benchmark.model_dump(by_alias=True))

    async def list_chains(self) -> list[PromptChain]:
        data = await self._request("GET", "/api/chains")
        return [PromptChain.model_validate(item) for item in data or []]

    async def save_chain(self, chain: PromptChain) -> None:
        await self._request("PUT", f"/api/chains/{chain.id}", chain.model_dump(by_alias=True))


# ---------------------------------------------------------------------------
# JSON file backend.
# ---------------------------------------------------------------------------


def _load_json(path: Path, default):
    """Load a JSON file, returning *default* if it is missing or invalid."""
    if path.exists():
        try:
            with open(path, encoding="utf-8") as handle:
                return json.load(handle)
        except Exception:
            logger.warning(f"Ignoring unreadable store file: {path}")
            return default
    return default


def _save_json(path: Path, data) -> None:
    try:
        with open(path, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2, ensure_ascii=False)
    except OSError as e:
        raise StoreError(f"Failed to write {path}: {e}") from e


class JsonFileStore:
    """:class:`RemoteStore` persisted as JSON files in one directory.

    Files:
        ``artists.json``   list of artist records
        ``chains.json``    list of chain records
        ``benchmark.json`` benchmark configuration object
    """

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.artists_path = self.directory / "artists.json"
        self.chains_path = self.directory / "chains.json"
        self.benchmark_path = self.directory / "benchmark.json"

    def _read_list(self, path: Path) -> list[dict]:
        data = _load_json(path, [])
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, dict)]

    async def list_artists(self) -> list[Artist]:
        return [Artist.model_validate(item) for item in self._read_list(self.artists_path)]

    async def create_artist(self, artist: Artist) -> Artist:
        records = self._read_list(self.artists_path)
        records.append(artist.model_dump(by_alias=True))
        _save_json(self.artists_path, records)
        return artist

    async def update_artist(self, artist: Artist) -> None:
        records = self._read_list(self.artists_path)
        for i, record in enumerate(records):
            if record.get("id") == artist.id:
                records[i] = artist.model_dump(by_alias=True)
                break
        else:
            raise StoreError(f"Artist not found: {artist.id}")
        _save_json(self.artists_path, records)

    async def get_benchmark_config(self) -> BenchmarkConfig:
        data = _load_json(self.benchmark_path, {})
        return BenchmarkConfig.model_validate(data if isinstance(data, dict) else {})

    async def save_benchmark_config(self, benchmark: BenchmarkConfig) -> None:
        _save_json(self.benchmark_path, benchmark.model_dump(by_alias=True))

    async def list_chains(self) -> list[PromptChain]:
        return [PromptChain.model_validate(item) for item in self._read_list(self.chains_path)]

    async def save_chain(self, chain: PromptChain) -> None:
        records = [r for r in self._read_list(self.chains_path) if r.get("id") != chain.id]
        records.insert(0, chain.model_dump(by_alias=True))
        _save_json(self.chains_path, records)
