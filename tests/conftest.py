"""Shared pytest fixtures for Chainlab tests."""

import asyncio
import io
import shutil
import tempfile
from pathlib import Path
from typing import Generator

import pytest
from PIL import Image
from PIL.PngImagePlugin import PngInfo

from chainlab.core.config import ChainlabConfig
from chainlab.core.generation_client import GeneratedImage, GenerationFailure
from chainlab.core.models import Artist, BenchmarkConfig, PromptChain, Slot
from chainlab.core.store import StoreError


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> ChainlabConfig:
    """Create a test configuration writing into a temporary directory.

    The queue delay is zero so queued work drains immediately.
    """
    return ChainlabConfig(
        _env_file=None,
        nai_api_key="test-key",
        generation_url="https://generation.test/ai/generate-image",
        queue_delay_seconds=0.0,
        store_url=None,
        data_dir=temp_dir / "data",
    )


# ---------------------------------------------------------------------------
# PNG fixtures.
# ---------------------------------------------------------------------------


def make_png(text_chunks: dict[str, str] | None = None, size: tuple[int, int] = (4, 4)) -> bytes:
    """Encode a tiny PNG carrying the given ``tEXt`` chunks."""
    info = PngInfo()
    for keyword, text in (text_chunks or {}).items():
        info.add_text(keyword, text)
    buffer = io.BytesIO()
    Image.new("RGB", size, (200, 40, 40)).save(buffer, format="PNG", pnginfo=info)
    return buffer.getvalue()


@pytest.fixture
def png_factory():
    """Return :func:`make_png` for tests that build their own images."""
    return make_png


# ---------------------------------------------------------------------------
# Fakes for the generation service and the backend.
# ---------------------------------------------------------------------------


class FakeGenerationClient:
    """Generation client returning scripted results.

    ``results`` is consumed in order; once empty every call succeeds with a
    numbered image.  An entry may be a :class:`GeneratedImage`, a
    :class:`GenerationFailure`, an exception to raise, or a callable taking
    the prompt and returning one of those.
    """

    def __init__(self, results=None):
        self.results = list(results or [])
        self.calls: list[dict] = []

    async def generate(self, api_key, prompt, negative_prompt, params):
        self.calls.append(
            {
                "api_key": api_key,
                "prompt": prompt,
                "negative_prompt": negative_prompt,
                "params": params,
            }
        )
        await asyncio.sleep(0)
        result = self.results.pop(0) if self.results else None
        if callable(result):
            result = result(prompt)
        if result is None:
            return GeneratedImage(data=f"image-{len(self.calls)}".encode())
        if isinstance(result, Exception) and not isinstance(result, GenerationFailure):
            raise result
        return result

    @property
    def prompts(self) -> list[str]:
        return [call["prompt"] for call in self.calls]


class MemoryStore:
    """In-memory :class:`~chainlab.core.store.RemoteStore`."""

    def __init__(self, artists=None, benchmark=None):
        self.artists = {artist.id: artist for artist in artists or []}
        self.benchmark = benchmark or BenchmarkConfig()
        self.chains: list[PromptChain] = []
        self.updates: list[Artist] = []
        self.fail_updates = False
        self.failures_left = 0
        self.failing_ids: set[str] = set()

    async def list_artists(self):
        return list(self.artists.values())

    async def create_artist(self, artist):
        self.artists[artist.id] = artist
        return artist

    async def update_artist(self, artist):
        if self.failures_left > 0:
            self.failures_left -= 1
            raise StoreError("backend unavailable")
        if self.fail_updates or artist.id in self.failing_ids:
            raise StoreError("backend unavailable")
        self.updates.append(artist)
        self.artists[artist.id] = artist

    async def get_benchmark_config(self):
        return self.benchmark

    async def save_benchmark_config(self, benchmark):
        self.benchmark = benchmark

    async def list_chains(self):
        return list(self.chains)

    async def save_chain(self, chain):
        self.chains = [c for c in self.chains if c.id != chain.id]
        self.chains.insert(0, chain)


class VirtualScheduler:
    """Scheduler with a virtual clock.

    ``sleep`` advances ``now`` instantly and records the requested delay;
    ``spawn`` starts the coroutine as a task on the running loop.
    """

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []
        self.spawned = 0

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)

    def spawn(self, coro):
        self.spawned += 1
        asyncio.get_running_loop().create_task(coro)


@pytest.fixture
def fake_client() -> FakeGenerationClient:
    return FakeGenerationClient()


@pytest.fixture
def artists() -> list[Artist]:
    return [
        Artist(id="a1", name="Alice"),
        Artist(id="a2", name="Bob"),
    ]


@pytest.fixture
def benchmark() -> BenchmarkConfig:
    return BenchmarkConfig(
        slots=[
            Slot(label="Portrait", prompt="1girl, smile"),
            Slot(label="Action", prompt="running, dynamic pose"),
        ],
        negative="lowres",
        steps=20,
        scale=6.0,
    )


# ---------------------------------------------------------------------------
# API client.
# ---------------------------------------------------------------------------


@pytest.fixture
def test_client(monkeypatch, test_config: ChainlabConfig, fake_client: FakeGenerationClient):
    """FastAPI TestClient running the full lifespan against temp storage.

    The generation service is replaced by :class:`FakeGenerationClient`;
    everything else (JSON file store, SQLite history, queue) is real.
    """
    from fastapi.testclient import TestClient

    from chainlab.api import main as api_main

    real_build = api_main.build_runtime
    monkeypatch.setattr(
        api_main,
        "build_runtime",
        lambda _cfg: real_build(test_config, client=fake_client),
    )
    with TestClient(api_main.app) as client:
        yield client
