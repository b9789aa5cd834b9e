from __future__ import annotations

import asyncio
from collections.abc import Callable
import logging

import asyncpg  # type: ignore[import-untyped]

from propsearch.schemas.bulk_search import BulkSearchJob, JobStatus
from propsearch.services.store import (
    ItemOutcome,
    JobNotFoundError,
    JobStateError,
    JobStoreUnavailableError,
    apply_finalize,
    apply_item_outcome,
    apply_mark_processing,
    apply_progress,
)

logger = logging.getLogger(__name__)

# asyncpg raises TimeoutError on command_timeout and pool acquire timeouts.
_UNAVAILABLE_ERRORS = (OSError, asyncio.TimeoutError, asyncpg.PostgresError, asyncpg.InterfaceError)

_SCHEMA_SQL = """
create table if not exists bulk_search_jobs (
  request_id text primary key,
  status text not null,
  job_json jsonb not null,
  created_at timestamptz not null,
  completed_at timestamptz,
  updated_at timestamptz not null default now()
)
"""


class PostgresJobStore:
    """Durable job store; each mutation locks the job row for the length of its transaction."""

    def __init__(self, database_url: str | None, min_pool_size: int = 1, max_pool_size: int = 10) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def create(self, job: BulkSearchJob) -> BulkSearchJob:
        pool = await self._get_pool()
        try:
            await pool.execute(
                """
                insert into bulk_search_jobs (request_id, status, job_json, created_at)
                values ($1, $2, $3::jsonb, $4)
                """,
                job.request_id,
                job.status,
                job.model_dump_json(),
                job.created_at,
            )
        except asyncpg.UniqueViolationError as exc:
            raise JobStateError(f"job {job.request_id} already exists") from exc
        except _UNAVAILABLE_ERRORS as exc:
            raise JobStoreUnavailableError("database unavailable") from exc
        return job.model_copy(deep=True)

    async def get(self, request_id: str) -> BulkSearchJob | None:
        pool = await self._get_pool()
        try:
            raw = await pool.fetchval("select job_json from bulk_search_jobs where request_id = $1", request_id)
        except _UNAVAILABLE_ERRORS as exc:
            raise JobStoreUnavailableError("database unavailable") from exc
        if raw is None:
            return None
        return self._job_from_json(raw)

    async def mark_processing(self, request_id: str) -> BulkSearchJob:
        return await self._mutate(request_id, apply_mark_processing)

    async def update_progress(self, request_id: str, delta: int = 1) -> BulkSearchJob:
        return await self._mutate(request_id, lambda job: apply_progress(job, delta))

    async def record_item(self, request_id: str, outcome: ItemOutcome) -> BulkSearchJob:
        return await self._mutate(request_id, lambda job: apply_item_outcome(job, outcome))

    async def finalize(self, request_id: str, status: JobStatus, error: str | None = None) -> BulkSearchJob:
        return await self._mutate(request_id, lambda job: apply_finalize(job, status, error))

    async def _mutate(self, request_id: str, mutation: Callable[[BulkSearchJob], None]) -> BulkSearchJob:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    raw = await conn.fetchval(
                        """
                        select job_json
                        from bulk_search_jobs
                        where request_id = $1
                        for update
                        """,
                        request_id,
                    )
                    if raw is None:
                        raise JobNotFoundError(f"job {request_id} not found")

                    job = self._job_from_json(raw)
                    mutation(job)
                    await conn.execute(
                        """
                        update bulk_search_jobs
                        set
                          status = $2,
                          job_json = $3::jsonb,
                          completed_at = $4,
                          updated_at = now()
                        where request_id = $1
                        """,
                        request_id,
                        job.status,
                        job.model_dump_json(),
                        job.completed_at,
                    )
                    return job
        except _UNAVAILABLE_ERRORS as exc:
            raise JobStoreUnavailableError("database unavailable") from exc

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise JobStoreUnavailableError("PS_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            await pool.execute(_SCHEMA_SQL)
        except Exception as exc:  # pragma: no cover - depends on environment
            raise JobStoreUnavailableError("database unavailable") from exc
        self._pool = pool
        logger.info("bulk search job store ready pool_min=%s pool_max=%s", self.min_pool_size, self.max_pool_size)
        return self._pool

    @staticmethod
    def _job_from_json(raw: str | dict) -> BulkSearchJob:
        if isinstance(raw, str):
            return BulkSearchJob.model_validate_json(raw)
        return BulkSearchJob.model_validate(raw)
