from __future__ import annotations

import asyncio
from datetime import date
from typing import Any

from propsearch.jobs.engine import CANCELLED_ERROR, BulkSearchEngine
from propsearch.schemas.bulk_search import BulkSearchJob, OwnershipRecord, PricePaidRecord
from propsearch.services.lookups import LookupUnavailableError
from propsearch.services.store import InMemoryJobStore, ItemOutcome, JobStoreUnavailableError


class FakeRegistry:
    def __init__(
        self,
        *,
        fail_ownership: bool = False,
        fail_price_paid: bool = False,
        delay_seconds: float = 0.0,
    ) -> None:
        self.fail_ownership = fail_ownership
        self.fail_price_paid = fail_price_paid
        self.delay_seconds = delay_seconds
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def _enter(self) -> None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay_seconds)
        finally:
            self.in_flight -= 1

    async def lookup_ownership(self, *, postcode: str | None = None, title_number: str | None = None):
        self.calls.append(("ownership", {"postcode": postcode, "title_number": title_number}))
        await self._enter()
        if self.fail_ownership:
            raise LookupUnavailableError("land registry returned 503")
        return OwnershipRecord(
            title_number=title_number or f"T-{postcode.replace(' ', '')}",
            postcode=postcode,
            address=f"1 Example Road, {postcode}",
            tenure="F",
            owner_name="Example Owner",
            ownership_type="individual",
        )

    async def lookup_price_paid(
        self,
        *,
        postcode: str | None = None,
        title_number: str | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
        limit: int = 1000,
    ):
        self.calls.append(
            ("price_paid", {"postcode": postcode, "title_number": title_number, "limit": limit})
        )
        await self._enter()
        if self.fail_price_paid:
            raise LookupUnavailableError("price paid service unavailable")
        return [
            PricePaidRecord(
                transaction_id=f"tx-{postcode or title_number}",
                price=250000,
                transfer_date=date(2021, 3, 1),
                property_type="S",
                paon="1",
                street="Example Road",
                town="London",
                postcode=postcode,
            ),
            PricePaidRecord(
                transaction_id=f"old-{postcode or title_number}",
                price=90000,
                transfer_date=date(1999, 3, 1),
                postcode=postcode,
            ),
        ]


class FailingRecordStore(InMemoryJobStore):
    async def record_item(self, request_id: str, outcome: ItemOutcome) -> BulkSearchJob:
        raise JobStoreUnavailableError("database connection lost")


def _run_job(engine: BulkSearchEngine, payload: dict[str, Any]) -> BulkSearchJob:
    async def run() -> BulkSearchJob:
        request_id = await engine.submit(payload)
        await engine.wait(request_id)
        job = await engine.get_status(request_id)
        assert job is not None
        return job

    return asyncio.run(run())


def test_both_search_over_two_postcodes_completes() -> None:
    registry = FakeRegistry()
    engine = BulkSearchEngine(InMemoryJobStore(), registry)

    job = _run_job(engine, {"search_type": "both", "postcodes": ["SW1A 1AA", "EC1A 1BB"]})

    assert job.status == "completed"
    assert job.total_records == 4
    assert job.processed_records == 4
    assert job.errors == []
    assert job.completed_at is not None
    assert len(job.results.ownership_records or []) == 2
    assert len(job.results.price_paid_records or []) == 4
    assert len(registry.calls) == 4


class OneRecordPerBranchRegistry:
    def __init__(self) -> None:
        self.price_paid_limits: list[int] = []

    async def lookup_ownership(self, *, postcode: str | None = None, title_number: str | None = None):
        return OwnershipRecord(title_number=f"T-{postcode.replace(' ', '')}", postcode=postcode, owner_name="Owner")

    async def lookup_price_paid(self, *, postcode=None, title_number=None, date_from=None, date_to=None, limit=1000):
        self.price_paid_limits.append(limit)
        return [PricePaidRecord(transaction_id=f"tx-{postcode}", price=300000, transfer_date=date(2022, 1, 1))]


def test_one_record_per_branch_for_two_postcodes() -> None:
    registry = OneRecordPerBranchRegistry()
    engine = BulkSearchEngine(InMemoryJobStore(), registry)

    job = _run_job(
        engine,
        {"search_type": "both", "postcodes": ["SW1A 1AA", "EC1A 1BB"], "max_results": 1000},
    )

    assert job.status == "completed"
    assert job.total_records == 4
    assert job.processed_records == 4
    assert len(job.results.ownership_records or []) == 2
    assert len(job.results.price_paid_records or []) == 2
    assert job.errors == []
    assert job.max_results == 1000
    assert registry.price_paid_limits == [1000, 1000]


def test_date_bounds_filter_price_paid_rows() -> None:
    engine = BulkSearchEngine(InMemoryJobStore(), FakeRegistry())

    job = _run_job(
        engine,
        {"search_type": "price_paid", "postcodes": ["SW1A 1AA"], "date_from": "2020-01-01"},
    )

    assert job.status == "completed"
    assert [record.transaction_id for record in job.results.price_paid_records or []] == ["tx-SW1A 1AA"]
    assert job.results.ownership_records is None


def test_failed_items_are_recorded_without_failing_the_job() -> None:
    engine = BulkSearchEngine(InMemoryJobStore(), FakeRegistry(fail_ownership=True))

    job = _run_job(engine, {"search_type": "both", "postcodes": ["SW1A 1AA"], "title_numbers": ["AGL1"]})

    assert job.status == "completed"
    assert job.processed_records == job.total_records == 4
    assert sorted(job.errors) == [
        "ownership lookup failed for postcode SW1A 1AA: land registry returned 503",
        "ownership lookup failed for title number AGL1: land registry returned 503",
    ]
    assert job.results.ownership_records == []
    assert len(job.results.price_paid_records or []) == 4


def test_every_item_failing_still_reaches_a_terminal_state() -> None:
    engine = BulkSearchEngine(InMemoryJobStore(), FakeRegistry(fail_ownership=True, fail_price_paid=True))

    job = _run_job(engine, {"search_type": "both", "postcodes": ["SW1A 1AA", "EC1A 1BB"]})

    assert job.is_terminal
    assert job.processed_records == 4
    assert len(job.errors) == 4


def test_item_timeout_is_reported_per_item() -> None:
    engine = BulkSearchEngine(InMemoryJobStore(), FakeRegistry(delay_seconds=1.0), item_timeout_seconds=0.05)

    job = _run_job(engine, {"search_type": "ownership", "postcodes": ["SW1A 1AA"]})

    assert job.status == "completed"
    assert job.processed_records == 1
    assert job.errors == ["ownership lookup failed for postcode SW1A 1AA: timed out after 0.05s"]


def test_worker_pool_bounds_concurrent_lookups() -> None:
    registry = FakeRegistry(delay_seconds=0.01)
    engine = BulkSearchEngine(InMemoryJobStore(), registry, pool_size=2)

    job = _run_job(engine, {"search_type": "ownership", "title_numbers": [f"T{index}" for index in range(10)]})

    assert job.processed_records == 10
    assert 1 <= registry.max_in_flight <= 2


def test_cancel_marks_job_failed() -> None:
    async def run() -> tuple[bool, BulkSearchJob]:
        engine = BulkSearchEngine(InMemoryJobStore(), FakeRegistry(delay_seconds=0.05), pool_size=1)
        request_id = await engine.submit(
            {"search_type": "ownership", "title_numbers": [f"T{index}" for index in range(20)]}
        )
        await asyncio.sleep(0.01)
        cancelled = await engine.cancel(request_id)
        await engine.wait(request_id)
        job = await engine.get_status(request_id)
        assert job is not None
        return cancelled, job

    cancelled, job = asyncio.run(run())

    assert cancelled is True
    assert job.status == "failed"
    assert job.errors[-1] == CANCELLED_ERROR
    assert job.processed_records < job.total_records


def test_cancel_unknown_or_finished_job_returns_false() -> None:
    async def run() -> tuple[bool, bool]:
        engine = BulkSearchEngine(InMemoryJobStore(), FakeRegistry())
        request_id = await engine.submit({"search_type": "ownership", "postcodes": ["SW1A 1AA"]})
        await engine.wait(request_id)
        return await engine.cancel("missing"), await engine.cancel(request_id)

    assert asyncio.run(run()) == (False, False)


def test_store_failure_during_processing_fails_the_job() -> None:
    engine = BulkSearchEngine(FailingRecordStore(), FakeRegistry())

    job = _run_job(engine, {"search_type": "ownership", "postcodes": ["SW1A 1AA", "EC1A 1BB"]})

    assert job.status == "failed"
    assert job.errors == ["Job store failure: database connection lost"]


def test_close_cancels_running_jobs() -> None:
    async def run() -> BulkSearchJob:
        store = InMemoryJobStore()
        engine = BulkSearchEngine(store, FakeRegistry(delay_seconds=0.05), pool_size=1)
        request_id = await engine.submit({"search_type": "ownership", "title_numbers": ["T1", "T2", "T3", "T4"]})
        await asyncio.sleep(0)
        await engine.close()
        job = await store.get(request_id)
        assert job is not None
        return job

    job = asyncio.run(run())

    assert job.status == "failed"
    assert job.errors == [CANCELLED_ERROR]


class TimingOutRecordStore(InMemoryJobStore):
    async def record_item(self, request_id: str, outcome: ItemOutcome) -> BulkSearchJob:
        raise asyncio.TimeoutError()


class BrokenStartStore(InMemoryJobStore):
    async def mark_processing(self, request_id: str) -> BulkSearchJob:
        raise RuntimeError("pool closed")


def test_unexpected_store_exception_still_finalizes_the_job() -> None:
    engine = BulkSearchEngine(TimingOutRecordStore(), FakeRegistry())

    job = _run_job(engine, {"search_type": "ownership", "postcodes": ["SW1A 1AA"]})

    assert job.is_terminal
    assert job.status == "failed"
    assert job.completed_at is not None
    assert job.errors == ["Job store failure: TimeoutError"]


def test_failure_to_start_still_finalizes_the_job() -> None:
    engine = BulkSearchEngine(BrokenStartStore(), FakeRegistry())

    job = _run_job(engine, {"search_type": "ownership", "postcodes": ["SW1A 1AA"]})

    assert job.status == "failed"
    assert job.processed_records == 0
    assert job.errors == ["Job store failure: pool closed"]
