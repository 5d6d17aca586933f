"""Rate-limited benchmark generation queue.

The queue turns (artist, slot) tasks into generation requests, one at a time,
and writes each resulting image into the artist's per-slot result array.

State Machine
-------------
Queue states::

    IDLE ──enqueue/resume──▶ PROCESSING ──queue empty──▶ IDLE
      ▲                          │
      └──────resume────── PAUSED ◀──pause (after the running task)

Task states::

    QUEUED ──▶ RUNNING ──▶ DONE
                  └──────▶ FAILED ──retry_failed()──▶ QUEUED (at the tail)

Worker Model
------------
There is exactly one worker, the *pump*.  :meth:`GenerationQueue._kick`
starts it through the :class:`Scheduler` only when it is not already running,
the queue is not paused and there is work, so at most one pump exists at any
time.  The pump has two suspension points per task:

1. ``scheduler.sleep(delay)`` before the task starts (rate limiting), and
2. the ``client.generate(...)`` call.

Pausing only prevents the next task from starting; a running task is never
interrupted.  There is no timeout: a hung generation call stalls the queue.

Failure Routing
---------------
Every failure is caught at the task boundary and the pump keeps draining.
Failed tasks go to the failed bucket and stay there until
:meth:`GenerationQueue.retry_failed`.  Rate-limited failures are logged
quietly; every other failure also triggers the ``notify`` callback.  If the
store write fails after a successful generation, the image stays in the
in-memory catalog and the caller is notified.  Such unsaved results are
retried after the next successful save and laid back over the catalog after
every refresh, so reloading from the store never drops them.

Usage
-----
::

    queue = GenerationQueue(client, catalog, store, context, notify=toast)
    queue.enqueue_entities(["artist-1", "artist-2"])
    await queue.wait_until_idle()
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable, Coroutine, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Protocol

from pydantic import BaseModel

from chainlab.core.config import ChainlabConfig
from chainlab.core.generation_client import (
    FailureKind,
    GenerationClient,
    GenerationFailure,
)
from chainlab.core.models import BenchmarkConfig, GenerationParameters, GenTask
from chainlab.core.prompt_compiler import join_segments
from chainlab.core.store import ArtistCatalog, RemoteStore

logger = logging.getLogger(__name__)

LogLevel = Literal["info", "warning", "error"]

_LOG_LEVELS = {"info": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}


class QueueState(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    PAUSED = "paused"


class TaskStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class QueueLogEntry(BaseModel):
    timestamp: float
    message: str
    level: LogLevel = "info"


class FailedTask(BaseModel):
    task: GenTask
    kind: FailureKind
    message: str


class QueueSnapshot(BaseModel):
    """Point-in-time view of the queue for display."""

    state: QueueState
    pending: list[GenTask]
    current: GenTask | None
    failed: list[FailedTask]
    statuses: dict[str, TaskStatus]
    unsaved: dict[str, list[int]]
    log: list[QueueLogEntry]
    delay_seconds: float


@dataclass
class QueueContext:
    """Caller-owned settings read by the queue at the start of every task.

    Attributes:
        api_key: Bearer token for the generation service.
        benchmark: Slots and shared benchmark parameters.
        params: Base generation parameters (size, sampler, presets).  Steps,
            scale and seed come from ``benchmark``.
        tag_prefix: Prefix placed before the artist name in the prompt.
        fallback_seed: Seed used when ``benchmark.seed`` is random.
        delay_seconds: Delay before each task, unless
            ``benchmark.interval`` is set.
    """

    api_key: str
    benchmark: BenchmarkConfig
    params: GenerationParameters = field(default_factory=GenerationParameters)
    tag_prefix: str = "artist"
    fallback_seed: int = 42
    delay_seconds: float = 2.0

    @classmethod
    def from_config(
        cls,
        cfg: ChainlabConfig,
        benchmark: BenchmarkConfig,
        api_key: str | None = None,
        params: GenerationParameters | None = None,
    ) -> QueueContext:
        return cls(
            api_key=api_key or cfg.nai_api_key or "",
            benchmark=benchmark,
            params=params or GenerationParameters(),
            tag_prefix=cfg.tag_prefix,
            fallback_seed=cfg.benchmark_fallback_seed,
            delay_seconds=cfg.queue_delay_seconds,
        )

    @property
    def effective_delay(self) -> float:
        if self.benchmark.interval is not None:
            return self.benchmark.interval
        return self.delay_seconds

    def build_prompt(self, entity_name: str, slot: int) -> str:
        return join_segments(
            [f"{self.tag_prefix}:{entity_name}", self.benchmark.slots[slot].prompt]
        )

    def build_parameters(self) -> GenerationParameters:
        seed = self.benchmark.seed
        return self.params.model_copy(
            update={
                "steps": self.benchmark.steps,
                "scale": self.benchmark.scale,
                "seed": self.fallback_seed if seed is None else seed,
            }
        )


class Scheduler(Protocol):
    """Timer and task-spawning abstraction used by the pump."""

    async def sleep(self, seconds: float) -> None: ...

    def spawn(self, coro: Coroutine[Any, Any, None]) -> None: ...


class AsyncioScheduler:
    """Scheduler running the pump as an asyncio task on the current loop."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    def spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        # Hold a reference until the task finishes.
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


Notifier = Callable[[str, LogLevel], None]
Refresher = Callable[[], Awaitable[None]]


class GenerationQueue:
    """Single-worker FIFO queue of benchmark generation tasks.

    Args:
        client: Generation client.
        catalog: In-memory artist view; read for lookups and written with
            results.
        store: Backend receiving the updated artist after each success.
        context: Initial run context.
        scheduler: Timer/spawn implementation (asyncio by default).
        notify: Called with ``(message, level)`` for user-facing failures.
        on_refresh: Awaited after a successful, persisted result.
        log_size: Number of log entries kept.
    """

    def __init__(
        self,
        client: GenerationClient,
        catalog: ArtistCatalog,
        store: RemoteStore,
        context: QueueContext,
        *,
        scheduler: Scheduler | None = None,
        notify: Notifier | None = None,
        on_refresh: Refresher | None = None,
        log_size: int = 100,
    ) -> None:
        self._client = client
        self._catalog = catalog
        self._store = store
        self.context = context
        self._scheduler = scheduler or AsyncioScheduler()
        self._notify = notify
        self._on_refresh = on_refresh

        self._queue: deque[GenTask] = deque()
        self._failed: list[FailedTask] = []
        self._status: dict[str, TaskStatus] = {}
        self._unsaved: dict[str, dict[int, str]] = {}
        self._current: GenTask | None = None
        self._paused = False
        self._processing = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._log: deque[QueueLogEntry] = deque(maxlen=log_size)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> QueueState:
        if self._paused:
            return QueueState.PAUSED
        if self._processing:
            return QueueState.PROCESSING
        return QueueState.IDLE

    @property
    def pending(self) -> list[GenTask]:
        return list(self._queue)

    @property
    def failed(self) -> list[FailedTask]:
        return list(self._failed)

    @property
    def current(self) -> GenTask | None:
        return self._current

    @property
    def log(self) -> list[QueueLogEntry]:
        return list(self._log)

    @property
    def unsaved(self) -> dict[str, list[int]]:
        """Slots per artist whose results exist only in the catalog."""
        return {entity_id: sorted(slots) for entity_id, slots in self._unsaved.items()}

    def status(self, task_id: str) -> TaskStatus | None:
        return self._status.get(task_id)

    def snapshot(self) -> QueueSnapshot:
        return QueueSnapshot(
            state=self.state,
            pending=self.pending,
            current=self._current,
            failed=self.failed,
            statuses=dict(self._status),
            unsaved=self.unsaved,
            log=self.log,
            delay_seconds=self.context.effective_delay,
        )

    async def wait_until_idle(self) -> None:
        """Wait until the pump has stopped (queue drained or paused)."""
        await self._idle.wait()

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def update_context(self, context: QueueContext) -> None:
        """Replace the run context; applies from the next task on."""
        self.context = context

    def enqueue(self, tasks: Iterable[GenTask]) -> None:
        """Append tasks to the tail.  Duplicates are allowed."""
        added = 0
        for task in tasks:
            self._queue.append(task)
            self._status[task.id] = TaskStatus.QUEUED
            added += 1
        if added:
            self._record(f"Queued {added} task(s)")
        self._kick()

    def enqueue_entities(
        self, entity_ids: Iterable[str], slots: Iterable[int] | None = None
    ) -> list[GenTask]:
        """Queue one task per (entity, slot).

        Args:
            entity_ids: Artists to generate for, in order.
            slots: Slot indices; all configured slots when ``None``.

        Returns:
            The created tasks.
        """
        slot_indices = (
            list(range(len(self.context.benchmark.slots))) if slots is None else list(slots)
        )
        tasks = [
            GenTask(entity_id=entity_id, slot=slot)
            for entity_id in entity_ids
            for slot in slot_indices
        ]
        self.enqueue(tasks)
        return tasks

    def pause(self) -> None:
        self._paused = True
        self._record("Queue paused")

    def resume(self) -> None:
        self._paused = False
        self._record("Queue resumed")
        self._kick()

    def retry_failed(self) -> list[GenTask]:
        """Move every failed task to the tail of the queue."""
        tasks = [failure.task for failure in self._failed]
        self._failed.clear()
        if tasks:
            self._record(f"Retrying {len(tasks)} failed task(s)")
        self.enqueue(tasks)
        return tasks

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _kick(self) -> None:
        if self._processing or self._paused or not self._queue:
            return
        self._processing = True
        self._idle.clear()
        self._scheduler.spawn(self._pump())

    async def _pump(self) -> None:
        try:
            while not self._paused and self._queue:
                await self._scheduler.sleep(self.context.effective_delay)
                if self._paused or not self._queue:
                    break

                task = self._queue[0]
                self._current = task
                self._status[task.id] = TaskStatus.RUNNING
                try:
                    await self._run(task)
                except Exception as e:
                    logger.error(f"Unexpected error in task {task.id}: {e}", exc_info=True)
                    self._fail(task, GenerationFailure.from_exception(e))
                finally:
                    if self._queue and self._queue[0] is task:
                        self._queue.popleft()
                    self._current = None
        finally:
            self._processing = False
            self._idle.set()

    async def _run(self, task: GenTask) -> None:
        ctx = self.context

        artist = self._catalog.get(task.entity_id)
        if artist is None:
            self._fail(
                task,
                GenerationFailure(f"Artist not found: {task.entity_id}", FailureKind.LOOKUP),
            )
            return
        if task.slot >= len(ctx.benchmark.slots):
            self._fail(
                task,
                GenerationFailure(f"Slot {task.slot + 1} is not configured", FailureKind.LOOKUP),
            )
            return

        label = ctx.benchmark.slots[task.slot].label
        prompt = ctx.build_prompt(artist.name, task.slot)

        try:
            result = await self._client.generate(
                ctx.api_key, prompt, ctx.benchmark.negative, ctx.build_parameters()
            )
        except Exception as e:
            result = GenerationFailure.from_exception(e)

        if isinstance(result, GenerationFailure):
            self._fail(task, result, f"{artist.name} / {label}")
            return

        # Re-read so edits made while the request was in flight are kept.
        image_ref = result.to_data_url()
        latest = self._catalog.get(task.entity_id) or artist
        updated = latest.with_benchmark(task.slot, image_ref)
        self._catalog.put(updated)
        self._status[task.id] = TaskStatus.DONE
        self._record(f"Generated {artist.name} / {label}")

        try:
            await self._store.update_artist(updated)
        except Exception as e:
            self._unsaved.setdefault(task.entity_id, {})[task.slot] = image_ref
            message = f"Saving {artist.name} failed, result kept locally: {e}"
            self._record(message, "error")
            self._alert(message)
            return
        # The saved record carries every locally kept slot of this artist.
        self._unsaved.pop(task.entity_id, None)

        await self._flush_unsaved()
        if self._on_refresh is not None:
            try:
                await self._on_refresh()
            except Exception as e:
                logger.warning(f"Refresh after {task.id} failed: {e}")
        self.restore_unsaved()

    async def _flush_unsaved(self) -> None:
        """Retry the store write for every artist with unsaved results."""
        for entity_id in list(self._unsaved):
            self.restore_unsaved(entity_id)
            artist = self._catalog.get(entity_id)
            if artist is None:
                continue
            try:
                await self._store.update_artist(artist)
            except Exception as e:
                logger.warning(f"Saving {artist.name} still failing: {e}")
                continue
            del self._unsaved[entity_id]
            self._record(f"Saved pending results for {artist.name}")

    def restore_unsaved(self, entity_id: str | None = None) -> None:
        """Lay unsaved results back over the catalog after a reload.

        Args:
            entity_id: Restore only this artist; every artist when ``None``.
        """
        ids = list(self._unsaved) if entity_id is None else [entity_id]
        for artist_id in ids:
            artist = self._catalog.get(artist_id)
            if artist is None:
                continue
            for slot, image_ref in self._unsaved.get(artist_id, {}).items():
                artist = artist.with_benchmark(slot, image_ref)
            self._catalog.put(artist)

    def _fail(self, task: GenTask, failure: GenerationFailure, label: str | None = None) -> None:
        self._failed.append(FailedTask(task=task, kind=failure.kind, message=failure.message))
        self._status[task.id] = TaskStatus.FAILED
        what = label or f"{task.entity_id} / slot {task.slot + 1}"
        if failure.is_rate_limited:
            self._record(f"Rate limited: {what}", "warning")
            return
        message = f"Failed: {what}: {failure.message}"
        self._record(message, "error")
        self._alert(message)

    def _alert(self, message: str) -> None:
        if self._notify is None:
            return
        try:
            self._notify(message, "error")
        except Exception as e:
            logger.warning(f"Notification callback failed: {e}")

    def _record(self, message: str, level: LogLevel = "info") -> None:
        self._log.append(QueueLogEntry(timestamp=time.time(), message=message, level=level))
        logger.log(_LOG_LEVELS[level], message)
