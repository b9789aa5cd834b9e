from __future__ import annotations

import asyncio
from datetime import date

import pytest

from propsearch.schemas.bulk_search import (
    BulkSearchRequest,
    OwnershipRecord,
    PricePaidRecord,
    PropertyRecord,
)
from propsearch.services.store import (
    InMemoryJobStore,
    ItemOutcome,
    JobNotFoundError,
    JobStateError,
    new_job,
)


def _request(**overrides) -> BulkSearchRequest:
    payload = {"search_type": "both", "postcodes": ["SW1A 1AA"], "max_results": 1000}
    payload.update(overrides)
    return BulkSearchRequest(**payload)


def test_create_and_get_returns_independent_snapshots() -> None:
    async def run() -> None:
        store = InMemoryJobStore()
        job = await store.create(new_job(_request(), total_records=2))

        snapshot = await store.get(job.request_id)
        assert snapshot is not None
        assert snapshot.status == "pending"
        assert snapshot.results.ownership_records == []
        assert snapshot.results.price_paid_records == []

        snapshot.errors.append("mutated by reader")
        again = await store.get(job.request_id)
        assert again is not None
        assert again.errors == []

    asyncio.run(run())


def test_get_unknown_job_returns_none() -> None:
    assert asyncio.run(InMemoryJobStore().get("missing")) is None


def test_mutating_unknown_job_raises_not_found() -> None:
    with pytest.raises(JobNotFoundError):
        asyncio.run(InMemoryJobStore().update_progress("missing"))


def test_concurrent_progress_updates_are_lossless_and_clamped() -> None:
    async def run() -> int:
        store = InMemoryJobStore()
        job = await store.create(new_job(_request(), total_records=50))
        await store.mark_processing(job.request_id)

        async def bump() -> None:
            await asyncio.sleep(0)
            await store.update_progress(job.request_id, 1)

        await asyncio.gather(*(bump() for _ in range(60)))
        snapshot = await store.get(job.request_id)
        assert snapshot is not None
        return snapshot.processed_records

    assert asyncio.run(run()) == 50


def test_concurrent_record_item_counts_every_outcome_once() -> None:
    async def run() -> None:
        store = InMemoryJobStore()
        job = await store.create(new_job(_request(), total_records=20))
        await store.mark_processing(job.request_id)

        outcomes = [
            ItemOutcome(
                ownership_records=[OwnershipRecord(title_number=f"T{index}", owner_name=f"Owner {index}")],
            )
            if index % 2
            else ItemOutcome(error=f"item {index} failed")
            for index in range(20)
        ]
        await asyncio.gather(*(store.record_item(job.request_id, outcome) for outcome in outcomes))

        snapshot = await store.get(job.request_id)
        assert snapshot is not None
        assert snapshot.processed_records == 20
        assert len(snapshot.results.ownership_records or []) == 10
        assert len(snapshot.errors) == 10

    asyncio.run(run())


def test_record_item_respects_bucket_caps_and_last_write_wins() -> None:
    async def run() -> None:
        store = InMemoryJobStore()
        job = await store.create(new_job(_request(max_results=2), total_records=3))
        await store.mark_processing(job.request_id)

        price = PricePaidRecord(transaction_id="a", price=100, transfer_date=date(2020, 1, 1))
        await store.record_item(
            job.request_id,
            ItemOutcome(
                properties=[
                    PropertyRecord(property_key="title:A", address="old"),
                    PropertyRecord(property_key="title:B"),
                ],
                price_paid_records=[price, price.model_copy(update={"transaction_id": "b"})],
            ),
        )
        await store.record_item(
            job.request_id,
            ItemOutcome(
                properties=[
                    PropertyRecord(property_key="title:A", address="new"),
                    PropertyRecord(property_key="title:C"),
                ],
                price_paid_records=[price.model_copy(update={"transaction_id": "c"})],
            ),
        )

        snapshot = await store.get(job.request_id)
        assert snapshot is not None
        properties = snapshot.results.properties or []
        assert [record.property_key for record in properties] == ["title:A", "title:B"]
        assert properties[0].address == "new"
        assert [record.transaction_id for record in snapshot.results.price_paid_records or []] == ["a", "b"]

    asyncio.run(run())


def test_buckets_follow_search_type() -> None:
    async def run() -> None:
        store = InMemoryJobStore()
        job = await store.create(new_job(_request(search_type="ownership"), total_records=1))
        await store.mark_processing(job.request_id)
        await store.record_item(
            job.request_id,
            ItemOutcome(price_paid_records=[PricePaidRecord(transaction_id="x", price=1, transfer_date=date(2020, 1, 1))]),
        )
        snapshot = await store.get(job.request_id)
        assert snapshot is not None
        assert snapshot.results.price_paid_records is None
        assert snapshot.results.ownership_records == []
        assert snapshot.processed_records == 1

    asyncio.run(run())


def test_finalize_happens_exactly_once() -> None:
    async def run() -> None:
        store = InMemoryJobStore()
        job = await store.create(new_job(_request(), total_records=1))
        await store.mark_processing(job.request_id)
        finished = await store.finalize(job.request_id, "completed")
        assert finished.status == "completed"
        assert finished.completed_at is not None

        with pytest.raises(JobStateError):
            await store.finalize(job.request_id, "failed")
        with pytest.raises(JobStateError):
            await store.record_item(job.request_id, ItemOutcome())

    asyncio.run(run())


def test_finalize_rejects_non_terminal_status() -> None:
    async def run() -> None:
        store = InMemoryJobStore()
        job = await store.create(new_job(_request(), total_records=1))
        with pytest.raises(JobStateError):
            await store.finalize(job.request_id, "processing")

    asyncio.run(run())


def test_finalize_appends_error_message() -> None:
    async def run() -> None:
        store = InMemoryJobStore()
        job = await store.create(new_job(_request(), total_records=1))
        finished = await store.finalize(job.request_id, "failed", "Bulk search cancelled")
        assert finished.errors == ["Bulk search cancelled"]

    asyncio.run(run())
