import math
import re

from rapidfuzz.distance import Levenshtein

from bizrank.models.claim import LocationAddress

_STREET_TYPES_REGEX = re.compile(
    r"\b(street|st|avenue|ave|road|rd|drive|dr|lane|ln|boulevard|blvd|court|ct|place|pl|way|wy|circle|cir|trail|trl)\b"
)
_PUNCTUATION_REGEX = re.compile(r"[^\w\s]")
_WHITESPACE_REGEX = re.compile(r"\s+")
_NON_DIGIT_REGEX = re.compile(r"\D")


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def string_similarity(a: str | None, b: str | None) -> int:
    """Edit-distance similarity on a 0-100 scale.

    Inputs are lower-cased and trimmed. Missing or blank input on either side
    scores 0, including blank against blank.
    """
    left = (a or "").strip().lower()
    right = (b or "").strip().lower()
    if not left or not right:
        return 0
    if left == right:
        return 100

    max_len = max(len(left), len(right))
    distance = Levenshtein.distance(left, right)
    return round_half_up(100 * (max_len - distance) / max_len)


def normalize_address(value: str | None) -> str:
    text = (value or "").lower()
    text = _STREET_TYPES_REGEX.sub("", text)
    text = _PUNCTUATION_REGEX.sub(" ", text)
    return _WHITESPACE_REGEX.sub(" ", text).strip()


def flatten_location_address(address: LocationAddress | None) -> str:
    if address is None:
        return ""
    parts = [*address.address_lines, address.locality, address.administrative_area, address.postal_code]
    return " ".join(part for part in parts if part)


def address_similarity(freeform: str | None, structured: LocationAddress | None) -> int:
    left = normalize_address(freeform)
    right = normalize_address(flatten_location_address(structured))
    return string_similarity(left, right)


def digits_only(value: str | None) -> str:
    return _NON_DIGIT_REGEX.sub("", value or "")


def phone_match(a: str | None, b: str | None) -> bool:
    left = digits_only(a)
    right = digits_only(b)
    if not left or not right:
        return False
    return left == right or left in right or right in left


def normalize_business_name(value: str | None) -> str:
    text = _PUNCTUATION_REGEX.sub("", (value or "").lower())
    return _WHITESPACE_REGEX.sub(" ", text).strip()


def normalize_text(value: str | None) -> str:
    text = _PUNCTUATION_REGEX.sub(" ", (value or "").lower())
    return _WHITESPACE_REGEX.sub(" ", text).strip()
