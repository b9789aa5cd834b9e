from fastapi import APIRouter, Depends, HTTPException, Query, status

from propsearch.core.postcodes import is_valid_postcode
from propsearch.schemas.address import AddressCandidate, MatchResult
from propsearch.services.lookups import LookupServiceError, PostalLookup, call_lookup, get_postal_lookup
from propsearch.services.matcher import AddressMatcher, get_address_matcher

router = APIRouter()


@router.post("/validate", response_model=MatchResult)
async def validate_address(
    payload: AddressCandidate,
    matcher: AddressMatcher = Depends(get_address_matcher),
) -> MatchResult:
    return await matcher.validate_address(payload)


@router.get("/postcode/{postcode}", response_model=list[AddressCandidate])
async def lookup_postcode(
    postcode: str,
    postal_lookup: PostalLookup = Depends(get_postal_lookup),
) -> list[AddressCandidate]:
    if not is_valid_postcode(postcode):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="invalid UK postcode")

    try:
        return await call_lookup(postal_lookup.lookup_by_postcode, postcode)
    except LookupServiceError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.get("/search", response_model=list[AddressCandidate])
async def search_addresses(
    q: str = Query(min_length=1, max_length=200),
    max_results: int = Query(default=20, ge=1, le=100),
    postal_lookup: PostalLookup = Depends(get_postal_lookup),
) -> list[AddressCandidate]:
    query = q.strip()
    if not query:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="search query is empty")

    try:
        return await call_lookup(postal_lookup.search_addresses, query, max_results)
    except LookupServiceError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.get("/uprn/{uprn}", response_model=AddressCandidate)
async def lookup_uprn(
    uprn: str,
    postal_lookup: PostalLookup = Depends(get_postal_lookup),
) -> AddressCandidate:
    if not uprn.isdigit() or len(uprn) > 12:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="UPRN must be up to 12 digits")

    try:
        address = await call_lookup(postal_lookup.lookup_by_uprn, uprn)
    except LookupServiceError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if address is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="address not found")
    return address
