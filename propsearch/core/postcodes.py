import re

_POSTCODE_RE = re.compile(r"^[A-Z]{1,2}[0-9][A-Z0-9]?[0-9][A-Z]{2}$")
_WHITESPACE_RE = re.compile(r"\s+")


def clean_postcode(raw: str) -> str:
    """Strip all whitespace and upper-case; the comparison form of a postcode."""
    return _WHITESPACE_RE.sub("", raw).upper()


def is_valid_postcode(raw: str | None) -> bool:
    if not raw:
        return False
    return _POSTCODE_RE.match(clean_postcode(raw)) is not None


def format_postcode(raw: str) -> str:
    """Render the canonical outward/inward form, e.g. ``sw1a1aa`` -> ``SW1A 1AA``."""
    cleaned = clean_postcode(raw)
    if not _POSTCODE_RE.match(cleaned):
        raise ValueError(f"invalid UK postcode: {raw!r}")
    return f"{cleaned[:-3]} {cleaned[-3:]}"
