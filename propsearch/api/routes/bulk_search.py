from fastapi import APIRouter, Depends, HTTPException, status

from propsearch.jobs.engine import BulkSearchEngine, get_engine
from propsearch.schemas.bulk_search import BulkSearchAccepted, BulkSearchJob, BulkSearchRequest
from propsearch.services.store import JobStoreError

router = APIRouter()


@router.post("", response_model=BulkSearchAccepted, status_code=status.HTTP_202_ACCEPTED)
async def start_bulk_search(
    payload: BulkSearchRequest,
    engine: BulkSearchEngine = Depends(get_engine),
) -> BulkSearchAccepted:
    try:
        request_id = await engine.submit(payload)
        job = await engine.get_status(request_id)
    except JobStoreError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if job is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="job store lost the request")

    return BulkSearchAccepted(
        request_id=job.request_id,
        status=job.status,
        total_records=job.total_records,
        processed_records=job.processed_records,
        created_at=job.created_at,
    )


@router.get("/{request_id}", response_model=BulkSearchJob)
async def get_bulk_search(request_id: str, engine: BulkSearchEngine = Depends(get_engine)) -> BulkSearchJob:
    return await _load_job(engine, request_id)


@router.delete("/{request_id}", response_model=BulkSearchJob, status_code=status.HTTP_202_ACCEPTED)
async def cancel_bulk_search(request_id: str, engine: BulkSearchEngine = Depends(get_engine)) -> BulkSearchJob:
    job = await _load_job(engine, request_id)
    if job.is_terminal:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"bulk search is already {job.status}")

    if not await engine.cancel(request_id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="bulk search is not cancellable")
    return await _load_job(engine, request_id)


async def _load_job(engine: BulkSearchEngine, request_id: str) -> BulkSearchJob:
    try:
        job = await engine.get_status(request_id)
    except JobStoreError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="bulk search not found")
    return job
