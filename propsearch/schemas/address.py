from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class AddressCandidate(BaseModel):
    model_config = ConfigDict(frozen=True)

    address_line1: str | None = Field(
        default=None,
        validation_alias=AliasChoices("address_line1", "addressLine1", "line1"),
    )
    address_line2: str | None = Field(
        default=None,
        validation_alias=AliasChoices("address_line2", "addressLine2", "line2"),
    )
    locality: str | None = None
    town_or_city: str | None = Field(
        default=None,
        validation_alias=AliasChoices("town_or_city", "townOrCity", "town", "post_town"),
    )
    county: str | None = None
    postcode: str | None = None
    uprn: str | None = None
    udprn: str | None = None


class MatchResult(BaseModel):
    is_valid: bool
    confidence: float = Field(ge=0.0, le=1.0)
    suggested_address: AddressCandidate | None = None
    issues: list[str] = Field(default_factory=list)
