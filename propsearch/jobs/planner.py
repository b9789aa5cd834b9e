from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Literal

from propsearch.core.postcodes import clean_postcode
from propsearch.schemas.bulk_search import (
    BulkSearchRequest,
    OwnershipRecord,
    PricePaidRecord,
    PropertyRecord,
    SearchBranch,
)

QueryKind = Literal["postcode", "title_number"]

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True, slots=True)
class WorkItem:
    index: int
    kind: QueryKind
    value: str
    branch: SearchBranch

    def query(self) -> dict[str, str]:
        return {self.kind: self.value}

    def describe(self) -> str:
        return f"{self.kind.replace('_', ' ')} {self.value}"


def plan_work_items(request: BulkSearchRequest) -> list[WorkItem]:
    """Expand a request into one item per (postcode | title number) x branch, postcodes first."""
    items: list[WorkItem] = []
    branches = request.branches()
    for kind, values in (("postcode", request.postcodes), ("title_number", request.title_numbers)):
        for value in values:
            for branch in branches:
                items.append(WorkItem(index=len(items), kind=kind, value=value, branch=branch))
    return items


def property_from_ownership(record: OwnershipRecord) -> PropertyRecord:
    return PropertyRecord(
        property_key=property_key(
            uprn=record.uprn,
            title_number=record.title_number,
            address=record.address,
            postcode=record.postcode,
        ),
        uprn=record.uprn,
        title_number=record.title_number,
        address=record.address,
        postcode=record.postcode,
        tenure=record.tenure,
    )


def property_from_price_paid(record: PricePaidRecord) -> PropertyRecord:
    address = ", ".join(
        part
        for part in (record.saon, record.paon, record.street, record.locality, record.town)
        if part
    )
    return PropertyRecord(
        property_key=property_key(address=address, postcode=record.postcode),
        address=address or None,
        postcode=record.postcode,
        tenure=record.duration,
        property_type=record.property_type,
    )


def property_key(
    *,
    uprn: str | None = None,
    title_number: str | None = None,
    address: str | None = None,
    postcode: str | None = None,
) -> str:
    if uprn:
        return f"uprn:{uprn}"
    if title_number:
        return f"title:{title_number.upper()}"
    normalized_address = _NON_ALNUM_RE.sub(" ", (address or "").lower()).strip()
    normalized_postcode = clean_postcode(postcode or "")
    return f"address:{normalized_address}|{normalized_postcode}"
