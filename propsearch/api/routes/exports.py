from fastapi import APIRouter, Depends, HTTPException, Response, status

from propsearch.jobs.engine import BulkSearchEngine, get_engine
from propsearch.services.export import ExportNotReadyError, export_filename, export_job
from propsearch.services.store import JobNotFoundError, JobStoreError

router = APIRouter()


@router.get("/{request_id}")
async def download_bulk_export(request_id: str, engine: BulkSearchEngine = Depends(get_engine)) -> Response:
    try:
        content = await export_job(engine.store, request_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="bulk search not found") from exc
    except ExportNotReadyError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except JobStoreError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{export_filename(request_id)}"'},
    )
