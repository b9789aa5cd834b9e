from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Protocol
from uuid import uuid4

from propsearch.core.config import get_settings
from propsearch.schemas.bulk_search import (
    BulkSearchJob,
    BulkSearchRequest,
    BulkSearchResults,
    JobStatus,
    OwnershipRecord,
    PricePaidRecord,
    PropertyRecord,
)


class JobStoreError(Exception):
    """Base job store error."""


class JobStoreUnavailableError(JobStoreError):
    """Raised when the backing store cannot be reached."""


class JobNotFoundError(JobStoreError):
    """Raised when a mutation targets an unknown job."""


class JobStateError(JobStoreError):
    """Raised when a mutation violates the job lifecycle."""


@dataclass(slots=True)
class ItemOutcome:
    properties: list[PropertyRecord] = field(default_factory=list)
    ownership_records: list[OwnershipRecord] = field(default_factory=list)
    price_paid_records: list[PricePaidRecord] = field(default_factory=list)
    error: str | None = None


class JobStore(Protocol):
    async def create(self, job: BulkSearchJob) -> BulkSearchJob: ...

    async def get(self, request_id: str) -> BulkSearchJob | None: ...

    async def mark_processing(self, request_id: str) -> BulkSearchJob: ...

    async def update_progress(self, request_id: str, delta: int = 1) -> BulkSearchJob: ...

    async def record_item(self, request_id: str, outcome: ItemOutcome) -> BulkSearchJob: ...

    async def finalize(self, request_id: str, status: JobStatus, error: str | None = None) -> BulkSearchJob: ...

    async def close(self) -> None: ...


def new_job(request: BulkSearchRequest, total_records: int, *, now: datetime | None = None) -> BulkSearchJob:
    return BulkSearchJob(
        request_id=str(uuid4()),
        status="pending",
        search_type=request.search_type,
        total_records=total_records,
        max_results=request.max_results,
        results=BulkSearchResults.for_search_type(request.search_type),
        created_at=now or datetime.now(timezone.utc),
    )


def apply_mark_processing(job: BulkSearchJob) -> None:
    if job.status == "processing":
        return
    if job.status != "pending":
        raise JobStateError(f"job {job.request_id} cannot start from status={job.status}")
    job.status = "processing"


def apply_progress(job: BulkSearchJob, delta: int) -> None:
    _require_open(job)
    if delta < 0:
        raise JobStateError("progress delta must be non-negative")
    job.processed_records = min(job.total_records, job.processed_records + delta)


def apply_item_outcome(job: BulkSearchJob, outcome: ItemOutcome) -> None:
    """Merge one work item's records and error into the job and count it as processed."""
    _require_open(job)
    results = job.results
    if results.properties is not None:
        _upsert_properties(results.properties, outcome.properties, job.max_results)
    if results.ownership_records is not None:
        _extend_capped(results.ownership_records, outcome.ownership_records, job.max_results)
    if results.price_paid_records is not None:
        _extend_capped(results.price_paid_records, outcome.price_paid_records, job.max_results)
    if outcome.error:
        job.errors.append(outcome.error)
    job.processed_records = min(job.total_records, job.processed_records + 1)


def apply_finalize(job: BulkSearchJob, status: JobStatus, error: str | None, *, now: datetime | None = None) -> None:
    if status not in {"completed", "failed"}:
        raise JobStateError(f"finalize requires a terminal status, got {status}")
    _require_open(job)
    if error:
        job.errors.append(error)
    job.status = status
    job.completed_at = now or datetime.now(timezone.utc)


def _require_open(job: BulkSearchJob) -> None:
    if job.is_terminal:
        raise JobStateError(f"job {job.request_id} is already {job.status}")


def _upsert_properties(bucket: list[PropertyRecord], incoming: list[PropertyRecord], cap: int) -> None:
    # Duplicate keys resolve last-write-wins.
    positions = {record.property_key: index for index, record in enumerate(bucket)}
    for record in incoming:
        index = positions.get(record.property_key)
        if index is not None:
            bucket[index] = record
        elif len(bucket) < cap:
            positions[record.property_key] = len(bucket)
            bucket.append(record)


def _extend_capped(bucket: list, incoming: list, cap: int) -> None:
    room = cap - len(bucket)
    if room > 0:
        bucket.extend(incoming[:room])


@dataclass(slots=True)
class _Entry:
    job: BulkSearchJob
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class InMemoryJobStore:
    """Process-local job store; every mutation of one job runs under that job's lock."""

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}

    async def create(self, job: BulkSearchJob) -> BulkSearchJob:
        if job.request_id in self._entries:
            raise JobStateError(f"job {job.request_id} already exists")
        self._entries[job.request_id] = _Entry(job=job.model_copy(deep=True))
        return job.model_copy(deep=True)

    async def get(self, request_id: str) -> BulkSearchJob | None:
        entry = self._entries.get(request_id)
        if entry is None:
            return None
        async with entry.lock:
            return entry.job.model_copy(deep=True)

    async def mark_processing(self, request_id: str) -> BulkSearchJob:
        entry = self._entry(request_id)
        async with entry.lock:
            apply_mark_processing(entry.job)
            return entry.job.model_copy(deep=True)

    async def update_progress(self, request_id: str, delta: int = 1) -> BulkSearchJob:
        entry = self._entry(request_id)
        async with entry.lock:
            apply_progress(entry.job, delta)
            return entry.job.model_copy(deep=True)

    async def record_item(self, request_id: str, outcome: ItemOutcome) -> BulkSearchJob:
        entry = self._entry(request_id)
        async with entry.lock:
            apply_item_outcome(entry.job, outcome)
            return entry.job.model_copy(deep=True)

    async def finalize(self, request_id: str, status: JobStatus, error: str | None = None) -> BulkSearchJob:
        entry = self._entry(request_id)
        async with entry.lock:
            apply_finalize(entry.job, status, error)
            return entry.job.model_copy(deep=True)

    async def close(self) -> None:
        return None

    def __len__(self) -> int:
        return len(self._entries)

    def _entry(self, request_id: str) -> _Entry:
        entry = self._entries.get(request_id)
        if entry is None:
            raise JobNotFoundError(f"job {request_id} not found")
        return entry


@lru_cache
def get_job_store() -> JobStore:
    settings = get_settings()
    if settings.database_url:
        from propsearch.services.repository import PostgresJobStore

        return PostgresJobStore(
            database_url=settings.database_url,
            min_pool_size=settings.database_pool_min_size,
            max_pool_size=settings.database_pool_max_size,
        )
    return InMemoryJobStore()
