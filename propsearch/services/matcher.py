from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
import logging
from typing import Any

from fastapi import Depends

from propsearch.core.config import get_settings
from propsearch.core.postcodes import clean_postcode, is_valid_postcode
from propsearch.schemas.address import AddressCandidate, MatchResult
from propsearch.services.lookups import PostalLookup, call_lookup, get_postal_lookup
from propsearch.services.similarity import score as similarity

logger = logging.getLogger(__name__)

INVALID_POSTCODE_ISSUE = "Invalid postcode"
SERVICE_UNAVAILABLE_ISSUE = "Address validation service unavailable"
NOT_FOUND_ISSUE = "Address not found in Royal Mail database"


@dataclass(frozen=True, slots=True)
class MatchWeights:
    # Uncalibrated defaults; override through PS_ADDRESS_* settings.
    line1: float = 0.4
    town: float = 0.3
    postcode: float = 0.3
    threshold: float = 0.8


def address_match_score(
    candidate: AddressCandidate,
    reference: AddressCandidate,
    weights: MatchWeights = MatchWeights(),
) -> float:
    """Weighted similarity of a caller-supplied address against a reference address.

    Terms where either side lacks the field drop out of both the numerator and the
    weight total. With nothing comparable the score is 0.
    """
    total = 0.0
    weight_total = 0.0

    if candidate.address_line1 and reference.address_line1:
        total += weights.line1 * similarity(candidate.address_line1.lower(), reference.address_line1.lower())
        weight_total += weights.line1

    if candidate.town_or_city and reference.town_or_city:
        total += weights.town * similarity(candidate.town_or_city.lower(), reference.town_or_city.lower())
        weight_total += weights.town

    if candidate.postcode and reference.postcode:
        matched = clean_postcode(candidate.postcode) == clean_postcode(reference.postcode)
        total += weights.postcode if matched else 0.0
        weight_total += weights.postcode

    if weight_total <= 0:
        return 0.0
    return total / weight_total


class AddressMatcher:
    def __init__(self, postal_lookup: PostalLookup, weights: MatchWeights | None = None) -> None:
        self.postal_lookup = postal_lookup
        self.weights = weights or MatchWeights()

    async def validate_address(self, candidate: AddressCandidate | dict[str, Any]) -> MatchResult:
        if not isinstance(candidate, AddressCandidate):
            candidate = AddressCandidate.model_validate(candidate)

        if not is_valid_postcode(candidate.postcode):
            return MatchResult(is_valid=False, confidence=0.0, issues=[INVALID_POSTCODE_ISSUE])

        try:
            raw_references = await call_lookup(self.postal_lookup.lookup_by_postcode, candidate.postcode)
            references = [
                row if isinstance(row, AddressCandidate) else AddressCandidate.model_validate(row)
                for row in raw_references or []
            ]
        except Exception as exc:
            logger.warning("postal lookup failed postcode=%s error=%s", candidate.postcode, exc)
            return MatchResult(is_valid=False, confidence=0.0, issues=[SERVICE_UNAVAILABLE_ISSUE])

        best_match: AddressCandidate | None = None
        best_score = 0.0
        for reference in references:
            current = address_match_score(candidate, reference, self.weights)
            # Strict comparison keeps the first-seen candidate on ties.
            if best_match is None or current > best_score:
                best_match = reference
                best_score = current

        confidence = round(min(1.0, max(0.0, best_score)), 4)
        is_valid = best_match is not None and confidence >= self.weights.threshold
        issues = [] if is_valid else [NOT_FOUND_ISSUE]
        return MatchResult(
            is_valid=is_valid,
            confidence=confidence,
            suggested_address=best_match,
            issues=issues,
        )


@lru_cache
def get_match_weights() -> MatchWeights:
    settings = get_settings()
    return MatchWeights(
        line1=settings.address_weight_line1,
        town=settings.address_weight_town,
        postcode=settings.address_weight_postcode,
        threshold=settings.address_match_threshold,
    )


def get_address_matcher(postal_lookup: PostalLookup = Depends(get_postal_lookup)) -> AddressMatcher:
    return AddressMatcher(postal_lookup, get_match_weights())
