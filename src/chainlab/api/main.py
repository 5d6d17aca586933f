"""Chainlab - FastAPI Application.

This module defines the FastAPI ``app`` instance, all REST API routes, and the
``main()`` CLI function that launches the uvicorn server.

Architecture
------------
- **Runtime services** (store, artist catalog, generation client, queue,
  history) are built once in the lifespan handler by :func:`build_runtime`
  and kept on ``app.state.runtime``.  Route handlers never touch module
  globals other than the server configuration.
- **Persistence** goes through a :class:`~chainlab.core.store.RemoteStore`:
  the REST backend when ``CHAINLAB_STORE_URL`` is set, otherwise JSON files
  in ``CHAINLAB_DATA_DIR``.
- **Benchmark generation** runs on the single-worker
  :class:`~chainlab.core.queue.GenerationQueue` in the server's event loop;
  the HTTP routes only enqueue, pause, resume, retry and report.

Endpoints
---------
========  ==============================  ====================================
Method    Path                            Purpose
========  ==============================  ====================================
GET       ``/api/config``                 Version, samplers, presets
POST      ``/api/prompt/compile``         Compile a chain
POST      ``/api/tags/format``            Tags → clipboard string
POST      ``/api/tags/parse``             Pasted string → tags
POST      ``/api/metadata/extract``       PNG body → generation parameters
GET       ``/api/benchmark``              Benchmark configuration
PUT       ``/api/benchmark``              Replace benchmark configuration
DELETE    ``/api/benchmark/slots/{i}``    Remove a slot (``confirm=true``)
GET       ``/api/artists``                Artist catalog
POST      ``/api/artists``                Create an artist
POST      ``/api/queue/tasks``            Queue benchmark tasks
GET       ``/api/queue``                  Queue snapshot + notifications
POST      ``/api/queue/pause``            Stop starting new tasks
POST      ``/api/queue/resume``           Resume draining
POST      ``/api/queue/retry``            Re-queue every failed task
POST      ``/api/generate``               Generate one image from a chain
GET       ``/api/history``                Local generation history
DELETE    ``/api/history/{id}``           Delete a history item
========  ==============================  ====================================

Usage
-----
CLI (installed entry point)::

    chainlab

Direct invocation::

    python -m chainlab.api.main
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from chainlab import __version__
from chainlab.api.models import (
    CompileRequest,
    CompileResponse,
    CreateArtistRequest,
    EnqueueRequest,
    FormatTagsRequest,
    GenerateRequest,
    MetadataResponse,
    ParseTagsRequest,
)
from chainlab.core.config import ChainlabConfig, config
from chainlab.core.generation_client import GenerationClient, GenerationFailure, NovelAIClient
from chainlab.core.history import LocalHistory
from chainlab.core.metadata import read_generation_metadata
from chainlab.core.models import (
    RESOLUTIONS,
    SAMPLERS,
    UC_PRESETS,
    Artist,
    BenchmarkConfig,
)
from chainlab.core.prompt_compiler import collect_variables, compile_prompt
from chainlab.core.queue import GenerationQueue, QueueContext
from chainlab.core.store import ArtistCatalog, HttpRemoteStore, JsonFileStore, RemoteStore, StoreError
from chainlab.core.weights import format_tag_list, parse_tag_list

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Runtime services.
# ---------------------------------------------------------------------------


@dataclass
class Runtime:
    """Services shared by the route handlers."""

    config: ChainlabConfig
    store: RemoteStore
    catalog: ArtistCatalog
    client: GenerationClient
    history: LocalHistory
    benchmark: BenchmarkConfig = field(default_factory=BenchmarkConfig)
    notifications: deque = field(default_factory=lambda: deque(maxlen=50))
    queue: GenerationQueue | None = None

    def notify(self, message: str, level: str = "error") -> None:
        self.notifications.append({"message": message, "level": level})

    def queue_context(self, api_key: str | None = None) -> QueueContext:
        if api_key is None and self.queue is not None:
            api_key = self.queue.context.api_key
        return QueueContext.from_config(self.config, self.benchmark, api_key=api_key)

    async def refresh_catalog(self) -> None:
        await self.catalog.refresh(self.store)
        if self.queue is not None:
            self.queue.restore_unsaved()


def build_runtime(cfg: ChainlabConfig, client: GenerationClient | None = None) -> Runtime:
    """Construct the runtime services for ``cfg``.

    Args:
        cfg: Server configuration.
        client: Generation client; a :class:`NovelAIClient` built from
            ``cfg`` when omitted.
    """
    if cfg.store_url:
        store: RemoteStore = HttpRemoteStore(cfg.store_url)
    else:
        store = JsonFileStore(cfg.data_dir)

    runtime = Runtime(
        config=cfg,
        store=store,
        catalog=ArtistCatalog(),
        client=client or NovelAIClient.from_config(cfg),
        history=LocalHistory(cfg.data_dir / "history.db"),
    )
    runtime.queue = GenerationQueue(
        runtime.client,
        runtime.catalog,
        runtime.store,
        runtime.queue_context(),
        notify=runtime.notify,
        on_refresh=runtime.refresh_catalog,
        log_size=cfg.queue_log_size,
    )
    return runtime


async def _close(resource) -> None:
    aclose = getattr(resource, "aclose", None)
    if aclose is not None:
        await aclose()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build runtime services on startup and close HTTP clients on shutdown."""
    runtime = build_runtime(config)
    try:
        await runtime.refresh_catalog()
        runtime.benchmark = await runtime.store.get_benchmark_config()
        runtime.queue.update_context(runtime.queue_context())
    except StoreError as e:
        logger.error(f"Initial store load failed: {e}")
    app.state.runtime = runtime
    logger.info(f"Runtime ready ({len(runtime.catalog)} artists loaded).")

    yield

    await _close(runtime.client)
    await _close(runtime.store)
    logger.info("Runtime closed on shutdown.")


app = FastAPI(
    title="Chainlab",
    description="Prompt-chain compilation and benchmark generation API.",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _runtime(request: Request) -> Runtime:
    return request.app.state.runtime


# ---------------------------------------------------------------------------
# Configuration and prompt tools.
# ---------------------------------------------------------------------------


@app.get("/api/config")
async def get_config(request: Request) -> dict:
    """Return static options for the frontend."""
    runtime = _runtime(request)
    return {
        "version": __version__,
        "model": runtime.config.model_id,
        "samplers": list(SAMPLERS),
        "uc_presets": UC_PRESETS,
        "resolutions": {name: {"width": w, "height": h} for name, (w, h) in RESOLUTIONS.items()},
        "has_api_key": bool(runtime.config.nai_api_key),
        "tag_prefix": runtime.config.tag_prefix,
    }


@app.post("/api/prompt/compile", response_model=CompileResponse)
async def compile_chain(req: CompileRequest) -> CompileResponse:
    """Compile a chain and list the variables it uses."""
    compiled = compile_prompt(
        req.chain,
        req.subject,
        variables=req.variables,
        active_overrides=req.active_overrides,
    )
    return CompileResponse(
        compiled_prompt=compiled,
        variables=collect_variables(req.chain, req.active_overrides),
    )


@app.post("/api/tags/format")
async def format_tags(req: FormatTagsRequest, request: Request) -> dict:
    prefix = _runtime(request).config.tag_prefix if req.use_prefix else None
    return {"text": format_tag_list(req.tags, prefix)}


@app.post("/api/tags/parse")
async def parse_tags(req: ParseTagsRequest, request: Request) -> dict:
    runtime = _runtime(request)
    known = [artist.name for artist in runtime.catalog.all()] if req.known_only else None
    tags = parse_tag_list(req.text, known_names=known, prefix=runtime.config.tag_prefix)
    return {"tags": [tag.model_dump() for tag in tags]}


@app.post("/api/metadata/extract", response_model=MetadataResponse)
async def extract_image_metadata(request: Request) -> MetadataResponse:
    """Read generation parameters from a PNG sent as the raw request body.

    Never fails on bad input: non-PNG bodies yield ``format="unrecognized"``.
    """
    parsed = read_generation_metadata(await request.body())
    return MetadataResponse(format=parsed.kind, raw=parsed.raw, record=parsed.record)


# ---------------------------------------------------------------------------
# Benchmark configuration and artists.
# ---------------------------------------------------------------------------


@app.get("/api/benchmark")
async def get_benchmark(request: Request) -> dict:
    return _runtime(request).benchmark.model_dump(by_alias=True)


async def _save_benchmark(runtime: Runtime, benchmark: BenchmarkConfig) -> None:
    try:
        await runtime.store.save_benchmark_config(benchmark)
    except StoreError as e:
        raise HTTPException(status_code=502, detail=str(e)) from e
    runtime.benchmark = benchmark
    runtime.queue.update_context(runtime.queue_context())


@app.put("/api/benchmark")
async def put_benchmark(benchmark: BenchmarkConfig, request: Request) -> dict:
    """Replace the benchmark configuration.

    Slot positions are the result-array indices, so reordering or removing
    slots here realigns every artist's existing results.
    """
    runtime = _runtime(request)
    await _save_benchmark(runtime, benchmark)
    return benchmark.model_dump(by_alias=True)


@app.delete("/api/benchmark/slots/{index}")
async def delete_benchmark_slot(index: int, request: Request, confirm: bool = False) -> dict:
    """Remove one slot.

    Raises:
        HTTPException: 409 without ``confirm=true`` (later slots shift and
            existing results no longer match their labels), 404 for an
            unknown index.
    """
    runtime = _runtime(request)
    if index < 0 or index >= len(runtime.benchmark.slots):
        raise HTTPException(status_code=404, detail="Slot not found")
    if not confirm:
        raise HTTPException(
            status_code=409,
            detail="Removing a slot shifts later slots and misaligns generated results; "
            "repeat with confirm=true",
        )
    benchmark = runtime.benchmark.remove_slot(index)
    await _save_benchmark(runtime, benchmark)
    return benchmark.model_dump(by_alias=True)


@app.get("/api/artists")
async def list_artists(request: Request) -> list[dict]:
    return [artist.model_dump(by_alias=True) for artist in _runtime(request).catalog.all()]


@app.post("/api/artists")
async def create_artist(req: CreateArtistRequest, request: Request) -> dict:
    runtime = _runtime(request)
    try:
        artist = await runtime.store.create_artist(Artist(name=req.name, image_url=req.image_url))
    except StoreError as e:
        raise HTTPException(status_code=502, detail=str(e)) from e
    runtime.catalog.put(artist)
    return artist.model_dump(by_alias=True)


# ---------------------------------------------------------------------------
# Queue.
# ---------------------------------------------------------------------------


def _queue_response(runtime: Runtime) -> dict:
    data = runtime.queue.snapshot().model_dump(mode="json", by_alias=True)
    data["notifications"] = list(runtime.notifications)
    return data


@app.post("/api/queue/tasks")
async def enqueue_tasks(req: EnqueueRequest, request: Request) -> dict:
    """Queue benchmark tasks for the given artists.

    Raises:
        HTTPException: 400 if no API key is available or a slot index is
            not configured.
    """
    runtime = _runtime(request)
    api_key = req.api_key or runtime.queue.context.api_key or runtime.config.nai_api_key
    if not api_key:
        raise HTTPException(status_code=400, detail="An API key is required")
    slot_count = len(runtime.benchmark.slots)
    if slot_count == 0:
        raise HTTPException(status_code=400, detail="No benchmark slots configured")
    if req.slots is not None and any(s < 0 or s >= slot_count for s in req.slots):
        raise HTTPException(status_code=400, detail="Unknown slot index")

    runtime.queue.update_context(runtime.queue_context(api_key))
    tasks = runtime.queue.enqueue_entities(req.entity_ids, req.slots)
    data = _queue_response(runtime)
    data["queued"] = [task.model_dump(by_alias=True) for task in tasks]
    return data


@app.get("/api/queue")
async def get_queue(request: Request) -> dict:
    return _queue_response(_runtime(request))


@app.post("/api/queue/pause")
async def pause_queue(request: Request) -> dict:
    runtime = _runtime(request)
    runtime.queue.pause()
    return _queue_response(runtime)


@app.post("/api/queue/resume")
async def resume_queue(request: Request) -> dict:
    runtime = _runtime(request)
    runtime.queue.resume()
    return _queue_response(runtime)


@app.post("/api/queue/retry")
async def retry_queue(request: Request) -> dict:
    runtime = _runtime(request)
    runtime.queue.retry_failed()
    return _queue_response(runtime)


# ---------------------------------------------------------------------------
# Single generation and history.
# ---------------------------------------------------------------------------


@app.post("/api/generate")
async def generate_image(req: GenerateRequest, request: Request) -> dict:
    """Compile a chain, generate one image and record it in the history.

    Raises:
        HTTPException: 400 without an API key, 429 when rate limited,
            502 for other generation failures.
    """
    runtime = _runtime(request)
    api_key = req.api_key or runtime.config.nai_api_key
    if not api_key:
        raise HTTPException(status_code=400, detail="An API key is required")

    prompt = compile_prompt(
        req.chain, req.subject, variables=req.variables, active_overrides=req.active_overrides
    )
    result = await runtime.client.generate(
        api_key, prompt, req.chain.negative_prompt, req.chain.params
    )
    if isinstance(result, GenerationFailure):
        status = 429 if result.is_rate_limited else 502
        raise HTTPException(status_code=status, detail=result.message)

    item = runtime.history.add(result.to_data_url(), prompt, req.chain.params)
    return {
        "success": True,
        "compiled_prompt": prompt,
        "image_url": item.image_url,
        "history_id": item.id,
    }


@app.get("/api/history")
async def get_history(request: Request) -> list[dict]:
    return [item.model_dump(by_alias=True) for item in _runtime(request).history.get_all()]


@app.delete("/api/history/{item_id}")
async def delete_history_item(item_id: str, request: Request) -> dict:
    if not _runtime(request).history.delete(item_id):
        raise HTTPException(status_code=404, detail="History item not found")
    return {"success": True, "deleted": item_id}


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host, port and log level from :data:`~chainlab.core.config.config`.
    This function is registered as the ``chainlab`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(
        "chainlab.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
