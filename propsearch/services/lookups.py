from __future__ import annotations

import asyncio
from datetime import date
from functools import lru_cache
import inspect
import logging
from typing import Any, Protocol

import httpx

from propsearch.core.config import get_settings
from propsearch.core.postcodes import clean_postcode, format_postcode
from propsearch.schemas.address import AddressCandidate
from propsearch.schemas.bulk_search import OwnershipRecord, PricePaidRecord

logger = logging.getLogger(__name__)

_OWNERSHIP_TYPES = {"individual", "company", "trust", "other"}
_PROPERTY_TYPES = {"D", "S", "T", "F", "O"}
_TENURE_TYPES = {"F", "L"}


class LookupServiceError(Exception):
    """Base error for external lookup collaborators."""


class LookupUnavailableError(LookupServiceError):
    """Raised when an upstream registry or postal service cannot be reached."""


class PostalLookup(Protocol):
    async def lookup_by_postcode(self, postcode: str) -> list[AddressCandidate]: ...

    async def search_addresses(self, query: str, max_results: int = 20) -> list[AddressCandidate]: ...

    async def lookup_by_uprn(self, uprn: str) -> AddressCandidate | None: ...


class LandRegistryLookup(Protocol):
    async def lookup_ownership(
        self,
        *,
        postcode: str | None = None,
        title_number: str | None = None,
    ) -> OwnershipRecord | None: ...

    async def lookup_price_paid(
        self,
        *,
        postcode: str | None = None,
        title_number: str | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
        limit: int = 100,
    ) -> list[PricePaidRecord]: ...


async def call_lookup(method: Any, /, *args: Any, **kwargs: Any) -> Any:
    """Invoke a collaborator method, offloading synchronous implementations to a thread."""
    if inspect.iscoroutinefunction(method):
        return await method(*args, **kwargs)
    result = await asyncio.to_thread(method, *args, **kwargs)
    if inspect.isawaitable(result):
        return await result
    return result


class _JsonApiClient:
    service_name = "upstream"

    def __init__(
        self,
        base_url: str,
        api_key: str | None,
        *,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {"Accept": "application/json"}
        if api_key:
            self.headers["Authorization"] = f"Bearer {api_key}"
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def _get_json(self, url: str, params: dict[str, Any] | None = None) -> Any:
        """GET a JSON document; 404 yields ``None``, anything else non-2xx is unavailability."""
        try:
            if self._client is not None:
                response = await self._client.get(url, params=params, headers=self.headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.get(url, params=params, headers=self.headers)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("%s lookup failed url=%s error=%s", self.service_name, url, exc)
            raise LookupUnavailableError(f"{self.service_name} API error: {exc}") from exc


class RoyalMailPafClient(_JsonApiClient):
    service_name = "Royal Mail PAF"

    async def lookup_by_postcode(self, postcode: str) -> list[AddressCandidate]:
        payload = await self._get_json(f"{self.base_url}/v2/lookup/{clean_postcode(postcode)}")
        return _addresses_from_payload(payload)

    async def search_addresses(self, query: str, max_results: int = 20) -> list[AddressCandidate]:
        payload = await self._get_json(
            f"{self.base_url}/v2/search",
            params={"query": query, "maxresults": max_results},
        )
        return _addresses_from_payload(payload)[:max_results]

    async def lookup_by_uprn(self, uprn: str) -> AddressCandidate | None:
        payload = await self._get_json(f"{self.base_url}/v2/uprn/{uprn}")
        row = payload.get("address") if isinstance(payload, dict) else None
        if not isinstance(row, dict):
            return None
        return _address_from_paf(row)


class LandRegistryClient(_JsonApiClient):
    service_name = "Land Registry"

    async def lookup_ownership(
        self,
        *,
        postcode: str | None = None,
        title_number: str | None = None,
    ) -> OwnershipRecord | None:
        if title_number:
            payload = await self._get_json(f"{self.base_url}/def/ccod/{title_number}")
        elif postcode:
            payload = await self._get_json(f"{self.base_url}/def/ccod", params={"postcode": clean_postcode(postcode)})
        else:
            raise ValueError("postcode or title_number is required")

        if payload is None:
            return None
        if isinstance(payload, dict) and isinstance(payload.get("result"), dict):
            items = payload["result"].get("items") or []
            payload = items[0] if items else None
        if not isinstance(payload, dict):
            return None
        return _ownership_from_ccod(payload)

    async def lookup_price_paid(
        self,
        *,
        postcode: str | None = None,
        title_number: str | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
        limit: int = 100,
    ) -> list[PricePaidRecord]:
        params: dict[str, Any] = {"limit": limit}
        if postcode:
            params["postcode"] = clean_postcode(postcode)
        elif title_number:
            params["title_number"] = title_number
        else:
            raise ValueError("postcode or title_number is required")
        if date_from:
            params["min_date"] = date_from.isoformat()
        if date_to:
            params["max_date"] = date_to.isoformat()

        payload = await self._get_json(f"{self.base_url}/def/ppi", params=params)
        if not isinstance(payload, dict):
            return []
        result = payload.get("result")
        items = result.get("items") if isinstance(result, dict) else None
        records = [_price_paid_from_ppi(row) for row in items or [] if isinstance(row, dict)]
        return [record for record in records if record is not None]


def _addresses_from_payload(payload: Any) -> list[AddressCandidate]:
    rows = payload.get("addresses") if isinstance(payload, dict) else None
    return [_address_from_paf(row) for row in rows or [] if isinstance(row, dict)]


def _address_from_paf(row: dict[str, Any]) -> AddressCandidate:
    postcode = _as_text(row.get("postcode"))
    return AddressCandidate(
        address_line1=_as_text(row.get("address_line_1")),
        address_line2=_as_text(row.get("address_line_2")),
        locality=_as_text(row.get("locality")),
        town_or_city=_as_text(row.get("town_or_city")),
        county=_as_text(row.get("county")),
        postcode=_format_postcode_or_raw(postcode),
        uprn=_as_text(row.get("uprn")),
        udprn=_as_text(row.get("udprn")),
    )


def _ownership_from_ccod(row: dict[str, Any]) -> OwnershipRecord | None:
    proprietors = row.get("proprietors")
    proprietor = proprietors[0] if isinstance(proprietors, list) and proprietors else {}
    if not isinstance(proprietor, dict):
        proprietor = {}
    owner_name = _as_text(proprietor.get("name")) or _as_text(row.get("owner_name"))
    if not owner_name:
        return None

    ownership_type = _as_text(proprietor.get("ownership_type")) or (
        "company" if _as_text(proprietor.get("company_number")) else "individual"
    )
    return OwnershipRecord(
        title_number=_as_text(row.get("title_number")) or _as_text(row.get("titleNumber")),
        uprn=_as_text(row.get("uprn")),
        address=_as_text(row.get("address")),
        postcode=_format_postcode_or_raw(_as_text(row.get("postcode"))),
        tenure=_pick(_as_text(row.get("tenure")), _TENURE_TYPES),
        owner_name=owner_name,
        owner_address=_as_text(proprietor.get("address")),
        company_number=_as_text(proprietor.get("company_number")),
        ownership_type=ownership_type if ownership_type in _OWNERSHIP_TYPES else "other",
        registration_date=_as_date(row.get("registration_date")),
        is_current=bool(row.get("is_current", True)),
    )


def _price_paid_from_ppi(row: dict[str, Any]) -> PricePaidRecord | None:
    transfer_date = _as_date(row.get("date") or row.get("transfer_date"))
    if transfer_date is None:
        return None
    return PricePaidRecord(
        transaction_id=str(row.get("transaction_id") or row.get("transactionId") or ""),
        price=int(row.get("price") or 0),
        transfer_date=transfer_date,
        property_type=_pick(_as_text(row.get("property_type") or row.get("propertyType")), _PROPERTY_TYPES) or "O",
        new_build=_as_text(row.get("old_new")) == "Y" or row.get("new_build") is True,
        duration=_pick(_as_text(row.get("duration")), _TENURE_TYPES),
        paon=_as_text(row.get("paon")),
        saon=_as_text(row.get("saon")),
        street=_as_text(row.get("street")),
        locality=_as_text(row.get("locality")),
        town=_as_text(row.get("town")),
        district=_as_text(row.get("district")),
        county=_as_text(row.get("county")),
        postcode=_format_postcode_or_raw(_as_text(row.get("postcode"))),
    )


def _as_text(value: Any) -> str | None:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def _as_date(value: Any) -> date | None:
    text = _as_text(value)
    if not text:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def _pick(value: str | None, allowed: set[str]) -> Any:
    if value is None:
        return None
    upper = value.upper()
    return upper if upper in allowed else None


def _format_postcode_or_raw(value: str | None) -> str | None:
    if value is None:
        return None
    try:
        return format_postcode(value)
    except ValueError:
        return value


@lru_cache
def get_postal_lookup() -> PostalLookup:
    settings = get_settings()
    return RoyalMailPafClient(
        base_url=settings.royal_mail_base_url,
        api_key=settings.royal_mail_api_key,
        timeout_seconds=settings.http_timeout_seconds,
    )


@lru_cache
def get_land_registry() -> LandRegistryLookup:
    settings = get_settings()
    return LandRegistryClient(
        base_url=settings.land_registry_base_url,
        api_key=settings.land_registry_api_key,
        timeout_seconds=settings.http_timeout_seconds,
    )
