from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from propsearch.core.config import get_settings
from propsearch.core.postcodes import format_postcode, is_valid_postcode

SearchType = Literal["ownership", "price_paid", "both"]
SearchBranch = Literal["ownership", "price_paid"]
JobStatus = Literal["pending", "processing", "completed", "failed"]
OwnershipType = Literal["individual", "company", "trust", "other"]
PropertyType = Literal["D", "S", "T", "F", "O"]
TenureType = Literal["F", "L"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed"})


class BulkSearchRequest(BaseModel):
    search_type: SearchType
    postcodes: list[str] = Field(default_factory=list)
    title_numbers: list[str] = Field(default_factory=list)
    date_from: date | None = None
    date_to: date | None = None
    max_results: int = Field(default=1000, ge=1, le=10000)

    @field_validator("postcodes")
    @classmethod
    def _normalize_postcodes(cls, value: list[str]) -> list[str]:
        normalized: list[str] = []
        for raw in value:
            if not is_valid_postcode(raw):
                raise ValueError(f"invalid postcode: {raw!r}")
            formatted = format_postcode(raw)
            if formatted not in normalized:
                normalized.append(formatted)
        return normalized

    @field_validator("title_numbers")
    @classmethod
    def _normalize_title_numbers(cls, value: list[str]) -> list[str]:
        normalized: list[str] = []
        for raw in value:
            cleaned = raw.strip().upper()
            if not cleaned or not cleaned.isalnum():
                raise ValueError(f"invalid title number: {raw!r}")
            if cleaned not in normalized:
                normalized.append(cleaned)
        return normalized

    @model_validator(mode="after")
    def _check_bounds(self) -> "BulkSearchRequest":
        item_count = len(self.postcodes) + len(self.title_numbers)
        if item_count == 0:
            raise ValueError("at least one postcode or title number is required")
        max_items = get_settings().bulk_search_max_items
        if item_count > max_items:
            raise ValueError(f"at most {max_items} postcodes and title numbers combined are allowed")
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from must not be after date_to")
        return self

    def branches(self) -> list[SearchBranch]:
        if self.search_type == "both":
            return ["ownership", "price_paid"]
        return [self.search_type]


class PropertyRecord(BaseModel):
    property_key: str
    uprn: str | None = None
    title_number: str | None = None
    address: str | None = None
    postcode: str | None = None
    tenure: TenureType | None = None
    property_type: PropertyType | None = None


class OwnershipRecord(BaseModel):
    title_number: str | None = None
    uprn: str | None = None
    address: str | None = None
    postcode: str | None = None
    tenure: TenureType | None = None
    owner_name: str
    owner_address: str | None = None
    company_number: str | None = None
    ownership_type: OwnershipType = "other"
    registration_date: date | None = None
    is_current: bool = True


class PricePaidRecord(BaseModel):
    transaction_id: str
    price: int = Field(ge=0)
    transfer_date: date
    property_type: PropertyType = "O"
    new_build: bool = False
    duration: TenureType | None = None
    paon: str | None = None
    saon: str | None = None
    street: str | None = None
    locality: str | None = None
    town: str | None = None
    district: str | None = None
    county: str | None = None
    postcode: str | None = None


class BulkSearchResults(BaseModel):
    properties: list[PropertyRecord] | None = None
    ownership_records: list[OwnershipRecord] | None = None
    price_paid_records: list[PricePaidRecord] | None = None

    @classmethod
    def for_search_type(cls, search_type: SearchType) -> "BulkSearchResults":
        return cls(
            properties=[],
            ownership_records=[] if search_type in {"ownership", "both"} else None,
            price_paid_records=[] if search_type in {"price_paid", "both"} else None,
        )


class BulkSearchJob(BaseModel):
    request_id: str
    status: JobStatus = "pending"
    search_type: SearchType
    total_records: int = Field(ge=0)
    processed_records: int = Field(default=0, ge=0)
    max_results: int = 1000
    results: BulkSearchResults
    errors: list[str] = Field(default_factory=list)
    created_at: datetime
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class BulkSearchAccepted(BaseModel):
    request_id: str
    status: JobStatus
    total_records: int
    processed_records: int
    created_at: datetime
