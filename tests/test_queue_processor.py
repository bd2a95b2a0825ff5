"""Tests for the queue processor.

Tests cover:
- Successful push: current Source values, programmatic channel, costs never sent
- Transient failures retried up to the budget, then FAILED
- Permanent failures (rejected, unmapped) never retried
- Remote call deadline
- Dry-run jobs
- Pause/resume (local and shared through the database), worker lifecycle
- Shutdown: in-flight pushes finish, overdue ones go back to PENDING
- The queue notifier
"""

from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from src.pricesync.core.redis import QueueNotifier
from src.pricesync.sync.adapters.remote import UpdateChannel
from src.pricesync.sync.errors import RemotePermissionError, RemoteRejectedError, RemoteTransientError
from src.pricesync.sync.fields import FieldKey, FieldSet
from src.pricesync.sync.loop_guard import LoopGuard
from src.pricesync.sync.processor import QueueProcessor
from src.pricesync.sync.schemas import FailureKind, JobStatus
from tests.doubles import FakeRemoteAdapter


async def _only_job(services):
    jobs = await services.queue.list_jobs()
    assert len(jobs) == 1
    return jobs[0]


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    for _ in range(int(timeout / 0.01)):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached in time")


def _worker(services, remote, **kwargs) -> QueueProcessor:
    kwargs.setdefault("concurrency", 1)
    kwargs.setdefault("poll_interval", 0.01)
    return QueueProcessor(services.queue, services.store, remote, LoopGuard("pricesync"), **kwargs)


# ── Success ──────────────────────────────────────────────────────────────────


class TestPush:
    async def test_pushes_current_prices_on_programmatic_channel(self, services, remote, catalog):
        job = await services.planner.trigger_entity(catalog.a)

        assert await services.processor.run_once("w1") is True

        assert len(remote.calls) == 1
        call = remote.calls[0]
        assert call.remote_id == "1011"
        assert call.channel == UpdateChannel.PROGRAMMATIC
        assert call.fields == {"price_1_": 75.0, "price_1_5": 60.0}

        done = await services.queue.get(job.id)
        assert done.status == JobStatus.COMPLETED
        assert done.processing_result["remote_id"] == "1011"
        assert done.processing_result["channel"] == "programmatic"
        assert services.stats.jobs["completed"] == 1

    async def test_remote_owned_fields_never_sent(self, services, remote, catalog):
        await services.store.apply_fields(
            catalog.oak, FieldSet({FieldKey.COST_CUT: "55.00", FieldKey.COST_ROLL: "44.00"})
        )
        await services.planner.trigger_entity(catalog.a)
        await services.processor.drain()

        sent = set(remote.calls[0].fields)
        assert sent == {"price_1_", "price_1_5"}

    async def test_reads_latest_values_at_push_time(self, services, remote, catalog):
        await services.planner.trigger_entity(catalog.a)
        await services.store.apply_fields(catalog.oak, FieldSet({FieldKey.PRICE_CUT: "80.00"}))

        await services.processor.drain()
        assert remote.calls[0].fields["price_1_"] == 80.0

    async def test_idle_queue(self, services, remote):
        assert await services.processor.run_once("w1") is False
        assert remote.calls == []

    async def test_drain_processes_cascade(self, services, remote, catalog):
        await services.planner.trigger_family(catalog.oak)
        assert await services.processor.drain() == 3
        assert sorted(call.remote_id for call in remote.calls) == ["1011", "1012", "1013"]

    async def test_drain_max_jobs(self, services, catalog):
        await services.planner.trigger_family(catalog.oak)
        assert await services.processor.drain(max_jobs=2) == 2


# ── Failures ─────────────────────────────────────────────────────────────────


class TestFailures:
    async def test_transient_failure_retried_then_failed(self, services, remote, catalog):
        remote.failures = [RemoteTransientError("HTTP 503", status_code=503) for _ in range(4)]
        job = await services.planner.trigger_entity(catalog.a)

        processed = await services.processor.drain()

        assert processed == 4
        assert len(remote.calls) == 4
        failed = await services.queue.get(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.failure_kind == FailureKind.EXHAUSTED
        assert failed.retry_count == 3
        assert failed.error_message.startswith("Max retries exceeded")
        assert services.stats.jobs == {"completed": 0, "retried": 3, "failed": 1}

    async def test_transient_failure_then_success(self, services, remote, catalog):
        remote.failures = [RemoteTransientError("timeout")]
        job = await services.planner.trigger_entity(catalog.a)

        await services.processor.drain()

        done = await services.queue.get(job.id)
        assert done.status == JobStatus.COMPLETED
        assert done.retry_count == 1
        assert len(remote.calls) == 2

    async def test_rejection_is_permanent(self, services, remote, catalog):
        remote.failures = [RemoteRejectedError("Invalid field price_1_", status_code=400)]
        job = await services.planner.trigger_entity(catalog.a)

        assert await services.processor.drain() == 1

        failed = await services.queue.get(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.failure_kind == FailureKind.REJECTED
        assert failed.retry_count == 0
        assert len(remote.calls) == 1

    async def test_permission_error_is_permanent(self, services, remote, catalog):
        remote.failures = [RemotePermissionError("HTTP 403", status_code=403)]
        job = await services.planner.trigger_entity(catalog.a)
        await services.processor.drain()
        assert (await services.queue.get(job.id)).status == JobStatus.FAILED

    async def test_unmapped_entity_fails_without_remote_call(self, services, remote, catalog):
        job = await services.planner.trigger_entity(catalog.unmapped)

        await services.processor.drain()

        failed = await services.queue.get(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.failure_kind == FailureKind.UNMAPPED
        assert remote.calls == []
        issues = await services.queue.list_issues()
        assert [issue.id for issue in issues] == [job.id]

    async def test_unexpected_error_is_retryable(self, services, remote, catalog):
        remote.failures = [ValueError("boom")]
        job = await services.planner.trigger_entity(catalog.a)

        await services.processor.run_once("w1")

        retried = await services.queue.get(job.id)
        assert retried.status == JobStatus.PENDING
        assert retried.retry_count == 1
        assert "boom" in retried.error_message

    async def test_remote_deadline(self, services, catalog):
        slow = FakeRemoteAdapter(delay=1.0)
        processor = QueueProcessor(
            services.queue, services.store, slow, LoopGuard("pricesync"), remote_timeout=0.05
        )
        job = await services.planner.trigger_entity(catalog.a)

        await processor.run_once("w1")

        retried = await services.queue.get(job.id)
        assert retried.status == JobStatus.PENDING
        assert retried.failure_kind == FailureKind.TRANSIENT
        assert "exceeded" in retried.error_message


# ── Dry run ──────────────────────────────────────────────────────────────────


class TestDryRun:
    async def test_dry_run_skips_remote_call(self, services, remote, catalog):
        job = await services.planner.trigger_entity(catalog.a, payload={"live_sync": False})
        assert job.dry_run is True

        await services.processor.drain()

        done = await services.queue.get(job.id)
        assert done.status == JobStatus.COMPLETED
        assert done.processing_result["dry_run"] is True
        assert done.processing_result["fields"] == {"price_1_": 75.0, "price_1_5": 60.0}
        assert remote.calls == []


# ── Lifecycle ────────────────────────────────────────────────────────────────


class TestLifecycle:
    async def test_workers_drain_queue_in_background(self, services, remote, catalog):
        await services.planner.trigger_family(catalog.oak)
        services.processor.start()
        try:
            for _ in range(200):
                counts = await services.queue.counts()
                if counts.by_status["COMPLETED"] == 3:
                    break
                await asyncio.sleep(0.01)
        finally:
            await services.processor.stop()

        assert counts.by_status["COMPLETED"] == 3
        assert services.processor.running is False

    async def test_pause_and_resume(self, services):
        processor = services.processor
        processor.pause()
        assert processor.paused is True
        assert processor.status()["paused"] is True
        processor.resume()
        assert processor.paused is False

    async def test_paused_workers_do_not_claim(self, services, remote, catalog):
        await services.planner.trigger_entity(catalog.a)
        services.processor.pause()
        services.processor.start()
        try:
            await asyncio.sleep(0.1)
            assert remote.calls == []
            assert (await _only_job(services)).status == JobStatus.PENDING
        finally:
            await services.processor.stop()
            services.processor.resume()


class TestShutdown:
    async def test_stop_lets_in_flight_push_finish(self, services, catalog):
        slow = FakeRemoteAdapter(delay=0.3)
        processor = _worker(services, slow)
        job = await services.planner.trigger_entity(catalog.a)

        processor.start()
        await _wait_until(lambda: slow.started)
        await processor.stop()

        done = await services.queue.get(job.id)
        assert done.status == JobStatus.COMPLETED
        assert [call.remote_id for call in slow.calls] == ["1011"]
        assert await services.queue.entity_locks() == {}

    async def test_push_past_grace_goes_back_to_pending(self, services, catalog):
        slow = FakeRemoteAdapter(delay=5.0)
        processor = _worker(services, slow, shutdown_grace=0.05)
        job = await services.planner.trigger_entity(catalog.a)

        processor.start()
        await _wait_until(lambda: slow.started)
        await processor.stop()

        released = await services.queue.get(job.id)
        assert released.status == JobStatus.PENDING
        assert released.retry_count == 1
        assert "shut down" in released.error_message
        assert await services.queue.entity_locks() == {}

        reclaimed = await services.queue.claim_next("next-deploy")
        assert reclaimed is not None
        assert reclaimed.id == job.id

    async def test_idle_workers_stop_without_waiting_for_poll(self, services, remote):
        processor = _worker(services, remote, concurrency=3, poll_interval=30.0)
        processor.start()
        await asyncio.sleep(0.05)
        await asyncio.wait_for(processor.stop(), timeout=1.0)
        assert processor.running is False


class TestSharedPause:
    async def test_pause_all_stops_other_processors(self, services, remote, catalog):
        worker = _worker(services, remote)
        await services.processor.pause_all("price freeze")
        assert services.processor.status()["paused_globally"] is True
        assert await services.queue.processing_paused() is True
        job = await services.planner.trigger_entity(catalog.a)

        worker.start()
        try:
            await asyncio.sleep(0.1)
            assert remote.calls == []
            assert worker.paused is True
            assert (await services.queue.get(job.id)).status == JobStatus.PENDING

            await services.processor.resume_all()
            await _wait_until(lambda: remote.calls)
        finally:
            await worker.stop()

        assert (await services.queue.get(job.id)).status == JobStatus.COMPLETED
        assert services.processor.paused is False

    async def test_drain_ignores_shared_pause(self, services, remote, catalog):
        await services.processor.pause_all()
        await services.planner.trigger_entity(catalog.a)
        assert await services.processor.drain() == 1


class TestQueueNotifier:
    async def test_local_wake_up_without_redis(self):
        notifier = QueueNotifier(None, "pricesync:test")
        assert notifier.enabled is False
        await notifier.notify(3)
        assert await notifier.wait(0.1) is True
        assert await notifier.wait(0.01) is False

    async def test_start_and_stop_without_redis(self):
        notifier = QueueNotifier(None, "pricesync:test")
        notifier.start()
        await notifier.stop()


@pytest.mark.parametrize("price", ["0.00", "999999.99"])
async def test_boundary_prices_are_pushed(services, remote, catalog, price):
    await services.store.apply_fields(catalog.oak, FieldSet({FieldKey.PRICE_CUT: price}))
    await services.planner.trigger_entity(catalog.a)
    await services.processor.drain()
    assert remote.calls[0].fields["price_1_"] == float(Decimal(price))
