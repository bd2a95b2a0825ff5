"""End-to-end scenarios: webhook in, cascade, queue drain, Remote push.

Family Oak = {A, B, C} priced at 75.00, all linked. Item X in Walnut has
no Remote link.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal

from src.pricesync.sync.adapters.remote import UpdateChannel
from src.pricesync.sync.fields import FieldKey, FieldSet
from src.pricesync.sync.schemas import FailureKind, IngressOutcome, JobStatus
from src.pricesync.sync.service import build_sync_services
from tests.doubles import FakeRemoteAdapter, bearer, make_settings, webhook_body


class TestRemoteChangeCascade:
    async def test_price_change_reaches_every_sibling(self, services, remote, catalog):
        result = await services.ingress.receive(bearer(), webhook_body("OAK-B", "1012", price_1_="89.99"))
        assert result.result == IngressOutcome.UPDATED

        await services.processor.drain()

        pushed = {call.remote_id: call.fields["price_1_"] for call in remote.calls}
        assert pushed == {"1011": 89.99, "1012": 89.99, "1013": 89.99}
        assert all(call.channel == UpdateChannel.PROGRAMMATIC for call in remote.calls)
        counts = await services.queue.counts()
        assert counts.by_status["COMPLETED"] == 3

    async def test_cost_change_lands_in_source_but_is_not_pushed(self, services, remote, catalog):
        await services.ingress.receive(bearer(), webhook_body(cost="50.00", custitem_f3_rollprice="35"))
        await services.processor.drain()

        fields = await services.store.read_entity_fields(catalog.c)
        assert fields[FieldKey.COST_CUT] == Decimal("50.00")
        assert fields[FieldKey.COST_ROLL] == Decimal("35.00")
        assert all(set(call.fields) == {"price_1_", "price_1_5"} for call in remote.calls)

    async def test_two_changes_produce_two_serialized_job_sets(self, session_factory, catalog):
        slow_remote = FakeRemoteAdapter(delay=0.02)
        bundle = build_sync_services(
            make_settings(SYNC_WORKER_CONCURRENCY=4), session_factory, remote=slow_remote
        )
        try:
            await bundle.ingress.receive(bearer(), webhook_body(price_1_="80.00"))
            await bundle.ingress.receive(bearer(), webhook_body(price_1_="85.00"))
            assert len(await bundle.queue.list_jobs()) == 6

            bundle.processor.start()
            for _ in range(500):
                counts = await bundle.queue.counts()
                if counts.by_status["COMPLETED"] == 6:
                    break
                await asyncio.sleep(0.01)
        finally:
            await bundle.close()

        assert counts.by_status["COMPLETED"] == 6
        assert slow_remote.max_concurrent_per_record == 1
        for remote_id in ("1011", "1012", "1013"):
            calls = slow_remote.calls_for(remote_id)
            assert len(calls) == 2
            assert calls[-1].fields["price_1_"] == 85.0

    async def test_skip_flagged_change_is_a_noop(self, services, remote, catalog):
        result = await services.ingress.receive(
            bearer(), webhook_body(price_1_="1.00", custitemf3_lisa_item="T")
        )
        assert result.result == IngressOutcome.SKIPPED
        assert await services.processor.drain() == 0
        assert remote.calls == []
        fields = await services.store.read_entity_fields(catalog.a)
        assert fields[FieldKey.PRICE_CUT] == Decimal("75.00")


class TestSourceChangePush:
    async def test_operator_push_after_source_edit(self, services, remote, catalog):
        await services.store.apply_fields(catalog.oak, FieldSet({FieldKey.PRICE_ROLL: "65.00"}))
        jobs = await services.planner.trigger_family(catalog.oak, "catalog edit")
        assert len(jobs) == 3

        await services.processor.drain()
        assert {call.fields["price_1_5"] for call in remote.calls} == {65.0}


class TestUnmappedItem:
    async def test_unmapped_sibling_fails_without_affecting_others(self, services, remote, catalog):
        result = await services.ingress.receive(bearer(), webhook_body("WAL-X", None, price_1_="95.00"))
        assert len(result.job_ids) == 1

        await services.processor.drain()

        job = await services.queue.get(result.job_ids[0])
        assert job.status == JobStatus.FAILED
        assert job.failure_kind == FailureKind.UNMAPPED
        assert job.retry_count == 0
        assert remote.calls == []

        await services.store.upsert_link(catalog.unmapped, "2021")
        assert await services.queue.reset_failed(error_pattern="no linked Remote record") == 1
        await services.processor.drain()
        assert [call.remote_id for call in remote.calls] == ["2021"]
        assert remote.calls[0].fields == {"price_1_": 95.0}
