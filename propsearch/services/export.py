from __future__ import annotations

import csv
from datetime import date, datetime
import io
from typing import Any

from propsearch.schemas.bulk_search import BulkSearchJob
from propsearch.services.store import JobNotFoundError, JobStore

EXPORT_FIELDNAMES = [
    "record_type",
    "title_number",
    "uprn",
    "address",
    "postcode",
    "tenure",
    "property_type",
    "owner_name",
    "owner_address",
    "company_number",
    "ownership_type",
    "registration_date",
    "is_current",
    "transaction_id",
    "price",
    "transfer_date",
    "new_build",
    "duration",
]


class ExportNotReadyError(Exception):
    """Raised when an export is requested before the job has completed."""


async def export_job(store: JobStore, request_id: str) -> bytes:
    job = await store.get(request_id)
    if job is None:
        raise JobNotFoundError(f"job {request_id} not found")
    return render_job_csv(job)


def render_job_csv(job: BulkSearchJob) -> bytes:
    """Flatten every populated result bucket into one CSV, discriminated by ``record_type``."""
    if job.status != "completed":
        raise ExportNotReadyError(f"job {job.request_id} is {job.status}; export requires completed")

    handle = io.StringIO()
    writer = csv.DictWriter(handle, fieldnames=EXPORT_FIELDNAMES, extrasaction="ignore")
    writer.writeheader()

    results = job.results
    for record in results.properties or []:
        writer.writerow(_row("property", record.model_dump()))
    for record in results.ownership_records or []:
        writer.writerow(_row("ownership", record.model_dump()))
    for record in results.price_paid_records or []:
        fields = record.model_dump()
        fields["address"] = ", ".join(
            part
            for part in (record.saon, record.paon, record.street, record.locality, record.town)
            if part
        )
        writer.writerow(_row("price_paid", fields))

    return handle.getvalue().encode("utf-8")


def export_filename(request_id: str) -> str:
    return f"bulk-search-{request_id}.csv"


def _row(record_type: str, fields: dict[str, Any]) -> dict[str, str]:
    row = {name: _cell(fields.get(name)) for name in EXPORT_FIELDNAMES}
    row["record_type"] = record_type
    return row


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)
