from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import date
from functools import lru_cache
import logging
from typing import Any

from opentelemetry import trace

from propsearch.core.config import get_settings
from propsearch.jobs.planner import (
    WorkItem,
    plan_work_items,
    property_from_ownership,
    property_from_price_paid,
)
from propsearch.schemas.bulk_search import (
    BulkSearchJob,
    BulkSearchRequest,
    OwnershipRecord,
    PricePaidRecord,
)
from propsearch.services.lookups import LandRegistryLookup, call_lookup, get_land_registry
from propsearch.services.store import ItemOutcome, JobStore, get_job_store, new_job

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

CANCELLED_ERROR = "Bulk search cancelled"


@dataclass(slots=True)
class _RunningJob:
    request_id: str
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task[None] | None = None


class BulkSearchEngine:
    """Accepts bulk searches and processes them out-of-band with a bounded worker pool."""

    def __init__(
        self,
        store: JobStore,
        registry: LandRegistryLookup,
        *,
        pool_size: int = 8,
        item_timeout_seconds: float | None = 30.0,
    ) -> None:
        self.store = store
        self.registry = registry
        self.pool_size = max(1, pool_size)
        self.item_timeout_seconds = item_timeout_seconds
        self._running: dict[str, _RunningJob] = {}

    async def submit(self, request: BulkSearchRequest | dict[str, Any]) -> str:
        if not isinstance(request, BulkSearchRequest):
            request = BulkSearchRequest.model_validate(request)

        items = plan_work_items(request)
        job = await self.store.create(new_job(request, total_records=len(items)))
        running = _RunningJob(request_id=job.request_id)
        self._running[job.request_id] = running
        running.task = asyncio.create_task(
            self._run(job.request_id, request, items, running.cancel_event),
            name=f"bulk-search-{job.request_id}",
        )
        running.task.add_done_callback(lambda _: self._running.pop(job.request_id, None))
        logger.info(
            "bulk search accepted request_id=%s search_type=%s total_records=%s",
            job.request_id,
            request.search_type,
            job.total_records,
        )
        return job.request_id

    async def get_status(self, request_id: str) -> BulkSearchJob | None:
        return await self.store.get(request_id)

    async def cancel(self, request_id: str) -> bool:
        running = self._running.get(request_id)
        if running is None or running.cancel_event.is_set():
            return False
        running.cancel_event.set()
        logger.info("bulk search cancel requested request_id=%s", request_id)
        return True

    async def wait(self, request_id: str) -> None:
        running = self._running.get(request_id)
        if running is not None and running.task is not None:
            await asyncio.shield(running.task)

    async def close(self) -> None:
        running = list(self._running.values())
        for job in running:
            job.cancel_event.set()
        tasks = [job.task for job in running if job.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(
        self,
        request_id: str,
        request: BulkSearchRequest,
        items: list[WorkItem],
        cancel_event: asyncio.Event,
    ) -> None:
        with tracer.start_as_current_span("bulk_search.process_job") as span:
            span.set_attribute("bulk_search.request_id", request_id)
            span.set_attribute("bulk_search.total_records", len(items))
            fatal_errors: list[str] = []

            try:
                await self.store.mark_processing(request_id)
            except Exception as exc:
                logger.exception("bulk search could not start request_id=%s", request_id)
                fatal_errors.append(_store_failure_message(exc))
            else:
                queue: asyncio.Queue[WorkItem] = asyncio.Queue()
                for item in items:
                    queue.put_nowait(item)
                workers = [
                    asyncio.create_task(
                        self._worker(request_id, request, queue, cancel_event, fatal_errors),
                        name=f"bulk-search-{request_id}-worker-{index}",
                    )
                    for index in range(min(self.pool_size, len(items)))
                ]
                outcomes = await asyncio.gather(*workers, return_exceptions=True)
                for outcome in outcomes:
                    if isinstance(outcome, BaseException):
                        logger.error(
                            "bulk search worker crashed request_id=%s error=%r",
                            request_id,
                            outcome,
                            exc_info=outcome,
                        )
                        fatal_errors.append(f"Bulk search worker failure: {outcome!r}")

            if fatal_errors:
                status, error = "failed", fatal_errors[0]
            elif cancel_event.is_set():
                status, error = "failed", CANCELLED_ERROR
            else:
                status, error = "completed", None

            try:
                job = await self.store.finalize(request_id, status, error)
            except Exception:
                logger.exception("bulk search finalize failed request_id=%s status=%s", request_id, status)
                return

            span.set_attribute("bulk_search.status", job.status)
            logger.info(
                "bulk search finished request_id=%s status=%s processed=%s/%s errors=%s",
                request_id,
                job.status,
                job.processed_records,
                job.total_records,
                len(job.errors),
            )

    async def _worker(
        self,
        request_id: str,
        request: BulkSearchRequest,
        queue: asyncio.Queue[WorkItem],
        cancel_event: asyncio.Event,
        fatal_errors: list[str],
    ) -> None:
        while not cancel_event.is_set():
            try:
                item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return

            outcome = await self._process_item(request, item)
            try:
                await self.store.record_item(request_id, outcome)
            except Exception as exc:
                # Losing the store means progress can no longer be tracked; stop the whole job.
                logger.exception("bulk search store failure request_id=%s item=%s", request_id, item.index)
                fatal_errors.append(_store_failure_message(exc))
                cancel_event.set()
                return

    async def _process_item(self, request: BulkSearchRequest, item: WorkItem) -> ItemOutcome:
        with tracer.start_as_current_span("bulk_search.process_item") as span:
            span.set_attribute("bulk_search.item.kind", item.kind)
            span.set_attribute("bulk_search.item.branch", item.branch)
            try:
                if item.branch == "ownership":
                    lookup = self._lookup_ownership(item)
                else:
                    lookup = self._lookup_price_paid(item, request)
                if self.item_timeout_seconds:
                    return await asyncio.wait_for(lookup, timeout=self.item_timeout_seconds)
                return await lookup
            except asyncio.TimeoutError:
                message = f"{item.branch} lookup failed for {item.describe()}: timed out after {self.item_timeout_seconds}s"
            except Exception as exc:
                message = f"{item.branch} lookup failed for {item.describe()}: {exc}"
            logger.warning("bulk search item failed index=%s %s", item.index, message)
            span.set_attribute("bulk_search.item.failed", True)
            return ItemOutcome(error=message)

    async def _lookup_ownership(self, item: WorkItem) -> ItemOutcome:
        record = await call_lookup(self.registry.lookup_ownership, **item.query())
        if record is None:
            return ItemOutcome()
        if not isinstance(record, OwnershipRecord):
            record = OwnershipRecord.model_validate(record)
        return ItemOutcome(properties=[property_from_ownership(record)], ownership_records=[record])

    async def _lookup_price_paid(self, item: WorkItem, request: BulkSearchRequest) -> ItemOutcome:
        rows = await call_lookup(
            self.registry.lookup_price_paid,
            **item.query(),
            date_from=request.date_from,
            date_to=request.date_to,
            limit=request.max_results,
        )
        records = [
            row if isinstance(row, PricePaidRecord) else PricePaidRecord.model_validate(row)
            for row in rows or []
        ]
        records = [
            record
            for record in records
            if _within_bounds(record.transfer_date, request.date_from, request.date_to)
        ]
        return ItemOutcome(
            properties=[property_from_price_paid(record) for record in records],
            price_paid_records=records,
        )


def _within_bounds(value: date, date_from: date | None, date_to: date | None) -> bool:
    if date_from and value < date_from:
        return False
    if date_to and value > date_to:
        return False
    return True


def _store_failure_message(exc: BaseException) -> str:
    return f"Job store failure: {str(exc) or type(exc).__name__}"


@lru_cache
def get_engine() -> BulkSearchEngine:
    settings = get_settings()
    return BulkSearchEngine(
        store=get_job_store(),
        registry=get_land_registry(),
        pool_size=settings.bulk_search_worker_pool_size,
        item_timeout_seconds=settings.bulk_search_item_timeout_seconds,
    )
