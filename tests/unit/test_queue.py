"""Tests for chainlab.core.queue — the benchmark generation queue.

All tests drive the queue with a virtual-clock scheduler, so delays are
recorded instead of slept.

Tests cover:
- FIFO order, the per-task delay and the single-worker guarantee.
- Failure routing (rate limited vs. other failures) and retry.
- Pause/resume semantics.
- Result writing: padding, concurrent edits, persistence failures.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

from conftest import FakeGenerationClient, MemoryStore, VirtualScheduler

from chainlab.core.generation_client import FailureKind, GenerationFailure
from chainlab.core.models import Artist, BenchmarkConfig, GenTask, Slot
from chainlab.core.queue import GenerationQueue, QueueContext, QueueState, TaskStatus
from chainlab.core.store import ArtistCatalog


def _make_queue(artists, benchmark, client=None, **kwargs):
    """Build a queue plus its collaborators.  Must run inside an event loop."""
    store = MemoryStore(artists, benchmark)
    catalog = ArtistCatalog(artists)
    notifications: list[str] = []
    refreshes: list[int] = []

    async def refresh():
        refreshes.append(1)

    context = QueueContext(api_key="key", benchmark=benchmark, delay_seconds=2.0)
    queue = GenerationQueue(
        client or FakeGenerationClient(),
        catalog,
        store,
        context,
        scheduler=kwargs.pop("scheduler", VirtualScheduler()),
        notify=lambda message, level: notifications.append(message),
        on_refresh=refresh,
        **kwargs,
    )
    return queue, catalog, store, notifications, refreshes


class TestProcessing:
    """Verify ordering, delays and result writing."""

    def test_tasks_run_in_fifo_order(self, artists, benchmark):
        client = FakeGenerationClient()

        async def run():
            queue, catalog, store, _, refreshes = _make_queue(artists, benchmark, client)
            queue.enqueue_entities(["a1", "a2"])
            await queue.wait_until_idle()
            return queue, catalog, store, refreshes

        queue, catalog, store, refreshes = asyncio.run(run())
        assert client.prompts == [
            "artist:Alice, 1girl, smile",
            "artist:Alice, running, dynamic pose",
            "artist:Bob, 1girl, smile",
            "artist:Bob, running, dynamic pose",
        ]
        assert queue.state is QueueState.IDLE
        assert queue.pending == []
        assert len(catalog.get("a1").benchmarks) == 2
        assert all(ref.startswith("data:image/png;base64,") for ref in catalog.get("a2").benchmarks)
        assert len(store.updates) == 4
        assert len(refreshes) == 4

    def test_delay_before_every_task(self, artists, benchmark):
        scheduler = VirtualScheduler()

        async def run():
            queue, *_ = _make_queue(artists, benchmark, scheduler=scheduler)
            queue.enqueue_entities(["a1"])
            await queue.wait_until_idle()

        asyncio.run(run())
        assert scheduler.sleeps == [2.0, 2.0]
        assert scheduler.now == 4.0

    def test_benchmark_interval_overrides_delay(self, artists, benchmark):
        scheduler = VirtualScheduler()
        benchmark = benchmark.model_copy(update={"interval": 0.5})

        async def run():
            queue, *_ = _make_queue(artists, benchmark, scheduler=scheduler)
            queue.enqueue_entities(["a1"], slots=[0])
            await queue.wait_until_idle()

        asyncio.run(run())
        assert scheduler.sleeps == [0.5]

    def test_single_worker(self, artists, benchmark):
        scheduler = VirtualScheduler()

        async def run():
            queue, *_ = _make_queue(artists, benchmark, scheduler=scheduler)
            queue.enqueue_entities(["a1"])
            queue.enqueue_entities(["a2"])
            queue.resume()
            await queue.wait_until_idle()

        asyncio.run(run())
        assert scheduler.spawned == 1

    def test_request_uses_benchmark_parameters(self, artists, benchmark):
        client = FakeGenerationClient()

        async def run():
            queue, *_ = _make_queue(artists, benchmark, client)
            queue.enqueue_entities(["a1"], slots=[0])
            await queue.wait_until_idle()

        asyncio.run(run())
        call = client.calls[0]
        assert call["api_key"] == "key"
        assert call["negative_prompt"] == "lowres"
        assert call["params"].steps == 20
        assert call["params"].scale == 6.0
        assert call["params"].seed == 42

    def test_configured_seed_is_used(self, artists, benchmark):
        client = FakeGenerationClient()
        benchmark = benchmark.model_copy(update={"seed": 0})

        async def run():
            queue, *_ = _make_queue(artists, benchmark, client)
            queue.enqueue_entities(["a1"], slots=[0])
            await queue.wait_until_idle()

        asyncio.run(run())
        assert client.calls[0]["params"].seed == 0

    def test_result_array_is_padded(self, artists, benchmark):
        benchmark = benchmark.add_slot("Third", "sitting")

        async def run():
            queue, catalog, *_ = _make_queue(artists, benchmark)
            queue.enqueue([GenTask(entity_id="a1", slot=2)])
            await queue.wait_until_idle()
            return catalog

        benchmarks = asyncio.run(run()).get("a1").benchmarks
        assert benchmarks[:2] == ["", ""]
        assert benchmarks[2].startswith("data:")

    def test_existing_results_in_other_slots_survive(self, benchmark):
        artist = Artist(id="a1", name="Alice", benchmarks=["old-0", "old-1"])

        async def run():
            queue, catalog, *_ = _make_queue([artist], benchmark)
            queue.enqueue([GenTask(entity_id="a1", slot=1)])
            await queue.wait_until_idle()
            return catalog

        benchmarks = asyncio.run(run()).get("a1").benchmarks
        assert benchmarks[0] == "old-0"
        assert benchmarks[1] != "old-1"

    def test_edits_during_generation_are_preserved(self, artists, benchmark):
        holder = {}

        def edit_while_running(prompt):
            catalog = holder["catalog"]
            edited = catalog.get("a1").model_copy(update={"image_url": "new-avatar.png"})
            catalog.put(edited)
            return None

        client = FakeGenerationClient([edit_while_running])

        async def run():
            queue, catalog, *_ = _make_queue(artists, benchmark, client)
            holder["catalog"] = catalog
            queue.enqueue([GenTask(entity_id="a1", slot=0)])
            await queue.wait_until_idle()
            return catalog

        artist = asyncio.run(run()).get("a1")
        assert artist.image_url == "new-avatar.png"
        assert artist.benchmarks[0].startswith("data:")

    def test_task_status_transitions(self, artists, benchmark):
        task = GenTask(entity_id="a1", slot=0)

        async def run():
            queue, *_ = _make_queue(artists, benchmark)
            queue.pause()
            queue.enqueue([task])
            queued = queue.status(task.id)
            queue.resume()
            await queue.wait_until_idle()
            return queued, queue.status(task.id)

        assert asyncio.run(run()) == (TaskStatus.QUEUED, TaskStatus.DONE)


class TestFailures:
    """Verify failure routing and retry."""

    def test_rate_limited_failure_is_quiet(self, artists, benchmark):
        client = FakeGenerationClient([GenerationFailure("429: Too Many Requests")])

        async def run():
            queue, _, _, notifications, _ = _make_queue(artists, benchmark, client)
            queue.enqueue_entities(["a1"])
            await queue.wait_until_idle()
            return queue, notifications

        queue, notifications = asyncio.run(run())
        assert notifications == []
        assert len(queue.failed) == 1
        assert queue.failed[0].kind is FailureKind.RATE_LIMITED
        assert queue.failed[0].task.slot == 0
        assert any(entry.level == "warning" for entry in queue.log)
        # The second task still ran.
        assert len(client.calls) == 2

    def test_other_failure_notifies(self, artists, benchmark):
        client = FakeGenerationClient([GenerationFailure("500: boom")])

        async def run():
            queue, _, _, notifications, _ = _make_queue(artists, benchmark, client)
            queue.enqueue_entities(["a1"], slots=[0])
            await queue.wait_until_idle()
            return queue, notifications

        queue, notifications = asyncio.run(run())
        assert len(notifications) == 1
        assert "500: boom" in notifications[0]
        assert queue.failed[0].kind is FailureKind.REMOTE

    def test_raised_exception_is_classified(self, artists, benchmark):
        client = FakeGenerationClient([RuntimeError("concurrent generation locked")])

        async def run():
            queue, _, _, notifications, _ = _make_queue(artists, benchmark, client)
            queue.enqueue_entities(["a1"], slots=[0])
            await queue.wait_until_idle()
            return queue, notifications

        queue, notifications = asyncio.run(run())
        assert queue.failed[0].kind is FailureKind.RATE_LIMITED
        assert notifications == []

    def test_unknown_artist_is_lookup_failure(self, artists, benchmark):
        client = FakeGenerationClient()

        async def run():
            queue, _, _, notifications, _ = _make_queue(artists, benchmark, client)
            queue.enqueue([GenTask(entity_id="missing", slot=0)])
            await queue.wait_until_idle()
            return queue, notifications

        queue, notifications = asyncio.run(run())
        assert client.calls == []
        assert queue.failed[0].kind is FailureKind.LOOKUP
        assert len(notifications) == 1

    def test_unconfigured_slot_is_lookup_failure(self, artists, benchmark):
        async def run():
            queue, *_ = _make_queue(artists, benchmark)
            queue.enqueue([GenTask(entity_id="a1", slot=9)])
            await queue.wait_until_idle()
            return queue

        assert asyncio.run(run()).failed[0].kind is FailureKind.LOOKUP

    def test_retry_failed_requeues_at_tail(self, artists, benchmark):
        client = FakeGenerationClient([GenerationFailure("429: busy")])

        async def run():
            queue, catalog, *_ = _make_queue(artists, benchmark, client)
            queue.enqueue_entities(["a1"], slots=[0])
            await queue.wait_until_idle()
            failed_before = len(queue.failed)
            retried = queue.retry_failed()
            await queue.wait_until_idle()
            return queue, catalog, failed_before, retried

        queue, catalog, failed_before, retried = asyncio.run(run())
        assert failed_before == 1
        assert len(retried) == 1
        assert queue.failed == []
        assert queue.status(retried[0].id) is TaskStatus.DONE
        assert catalog.get("a1").benchmarks[0].startswith("data:")

    def test_retry_with_nothing_failed(self, artists, benchmark):
        async def run():
            queue, *_ = _make_queue(artists, benchmark)
            return queue.retry_failed(), queue.state

        assert asyncio.run(run()) == ([], QueueState.IDLE)

    def test_persistence_failure_keeps_result_locally(self, artists, benchmark):
        async def run():
            queue, catalog, store, notifications, refreshes = _make_queue(artists, benchmark)
            store.fail_updates = True
            task = GenTask(entity_id="a1", slot=0)
            queue.enqueue([task])
            await queue.wait_until_idle()
            return queue, catalog, notifications, refreshes, task

        queue, catalog, notifications, refreshes, task = asyncio.run(run())
        assert catalog.get("a1").benchmarks[0].startswith("data:")
        assert queue.status(task.id) is TaskStatus.DONE
        assert queue.failed == []
        assert len(notifications) == 1
        assert "backend unavailable" in notifications[0]
        assert refreshes == []
        assert queue.unsaved == {"a1": [0]}
        assert queue.snapshot().unsaved == {"a1": [0]}

    @staticmethod
    def _reloading_queue(artists, benchmark):
        store = MemoryStore(artists, benchmark)
        catalog = ArtistCatalog(artists)

        async def reload():
            await catalog.refresh(store)

        context = QueueContext(api_key="key", benchmark=benchmark)
        queue = GenerationQueue(
            FakeGenerationClient(),
            catalog,
            store,
            context,
            scheduler=VirtualScheduler(),
            on_refresh=reload,
        )
        return queue, catalog, store

    def test_unsaved_result_survives_later_refresh(self, artists, benchmark):
        async def run():
            queue, catalog, store = self._reloading_queue(artists, benchmark)
            store.failing_ids = {"a1"}
            queue.enqueue_entities(["a1", "a2"], slots=[0])
            await queue.wait_until_idle()
            return queue, catalog, store

        queue, catalog, store = asyncio.run(run())
        assert catalog.get("a1").benchmarks[0].startswith("data:")
        assert catalog.get("a2").benchmarks[0].startswith("data:")
        assert store.artists["a1"].benchmarks == []
        assert queue.unsaved == {"a1": [0]}

    def test_unsaved_result_is_saved_after_next_success(self, artists, benchmark):
        async def run():
            queue, catalog, store = self._reloading_queue(artists, benchmark)
            store.failures_left = 1
            queue.enqueue_entities(["a1", "a2"], slots=[0])
            await queue.wait_until_idle()
            return queue, catalog, store

        queue, catalog, store = asyncio.run(run())
        assert store.artists["a1"].benchmarks[0].startswith("data:")
        assert catalog.get("a1").benchmarks[0].startswith("data:")
        assert queue.unsaved == {}
        assert "Saved pending results for Alice" in [entry.message for entry in queue.log]

    def test_restore_unsaved_after_external_reload(self, artists, benchmark):
        async def run():
            queue, catalog, store = self._reloading_queue(artists, benchmark)
            store.fail_updates = True
            queue.enqueue_entities(["a1"], slots=[1])
            await queue.wait_until_idle()
            await catalog.refresh(store)
            wiped = list(catalog.get("a1").benchmarks)
            queue.restore_unsaved()
            return wiped, catalog

        wiped, catalog = asyncio.run(run())
        assert wiped == []
        restored = catalog.get("a1").benchmarks
        assert restored[0] == ""
        assert restored[1].startswith("data:")


class TestPauseResume:
    def test_pause_before_enqueue_holds_tasks(self, artists, benchmark):
        client = FakeGenerationClient()

        async def run():
            queue, *_ = _make_queue(artists, benchmark, client)
            queue.pause()
            queue.enqueue_entities(["a1"])
            await asyncio.sleep(0)
            return queue.state, len(queue.pending)

        assert asyncio.run(run()) == (QueueState.PAUSED, 2)
        assert client.calls == []

    def test_pause_does_not_interrupt_running_task(self, artists, benchmark):
        holder = {}

        def pause_mid_flight(prompt):
            holder["queue"].pause()
            return None

        client = FakeGenerationClient([pause_mid_flight])

        async def run():
            queue, catalog, *_ = _make_queue(artists, benchmark, client)
            holder["queue"] = queue
            queue.enqueue_entities(["a1"])
            await queue.wait_until_idle()
            return queue, catalog

        queue, catalog = asyncio.run(run())
        assert len(client.calls) == 1
        assert catalog.get("a1").benchmarks[0].startswith("data:")
        assert queue.state is QueueState.PAUSED
        assert len(queue.pending) == 1

    def test_resume_drains_remaining_tasks(self, artists, benchmark):
        client = FakeGenerationClient()

        async def run():
            queue, *_ = _make_queue(artists, benchmark, client)
            queue.pause()
            queue.enqueue_entities(["a1", "a2"])
            queue.resume()
            await queue.wait_until_idle()
            return queue

        queue = asyncio.run(run())
        assert len(client.calls) == 4
        assert queue.state is QueueState.IDLE


class TestLogAndSnapshot:
    def test_log_is_bounded(self, artists, benchmark):
        async def run():
            queue, *_ = _make_queue(artists, benchmark, log_size=3)
            queue.enqueue_entities(["a1", "a2"])
            await queue.wait_until_idle()
            return queue

        log = asyncio.run(run()).log
        assert len(log) == 3
        assert log[-1].message == "Generated Bob / Action"

    def test_snapshot(self, artists, benchmark):
        async def run():
            queue, *_ = _make_queue(artists, benchmark)
            queue.pause()
            queue.enqueue_entities(["a1"], slots=[1])
            return queue.snapshot()

        snapshot = asyncio.run(run())
        assert snapshot.state is QueueState.PAUSED
        assert [t.slot for t in snapshot.pending] == [1]
        assert snapshot.current is None
        assert snapshot.delay_seconds == 2.0
        assert list(snapshot.statuses.values()) == [TaskStatus.QUEUED]


class TestQueueContext:
    def test_from_config(self, test_config):
        benchmark = BenchmarkConfig(slots=[Slot(label="One")])
        ctx = QueueContext.from_config(test_config, benchmark)
        assert ctx.api_key == "test-key"
        assert ctx.fallback_seed == 42
        assert ctx.delay_seconds == 0.0

    def test_build_prompt_without_slot_prompt(self):
        ctx = QueueContext(api_key="k", benchmark=BenchmarkConfig(slots=[Slot(label="Empty")]))
        assert ctx.build_prompt("Alice", 0) == "artist:Alice"


class TestCollaborators:
    """Verify calls made to the injected store and refresh callback."""

    def test_store_receives_full_record(self, benchmark):
        artist = Artist(id="a1", name="Alice", image_url="avatar.png")
        store = AsyncMock()

        async def run():
            queue = GenerationQueue(
                FakeGenerationClient(),
                ArtistCatalog([artist]),
                store,
                QueueContext(api_key="k", benchmark=benchmark),
                scheduler=VirtualScheduler(),
            )
            queue.enqueue([GenTask(entity_id="a1", slot=1)])
            await queue.wait_until_idle()

        asyncio.run(run())
        store.update_artist.assert_awaited_once()
        saved = store.update_artist.await_args.args[0]
        assert saved.image_url == "avatar.png"
        assert saved.benchmarks[0] == ""
        assert saved.benchmarks[1].startswith("data:")

    def test_refresh_failure_does_not_fail_task(self, artists, benchmark):
        on_refresh = AsyncMock(side_effect=RuntimeError("refresh broke"))

        async def run():
            queue = GenerationQueue(
                FakeGenerationClient(),
                ArtistCatalog(artists),
                MemoryStore(artists, benchmark),
                QueueContext(api_key="k", benchmark=benchmark),
                scheduler=VirtualScheduler(),
                on_refresh=on_refresh,
            )
            task = GenTask(entity_id="a1", slot=0)
            queue.enqueue([task])
            await queue.wait_until_idle()
            return queue, task

        queue, task = asyncio.run(run())
        on_refresh.assert_awaited_once()
        assert queue.status(task.id) is TaskStatus.DONE
        assert queue.failed == []
