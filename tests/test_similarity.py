from bizrank.models.claim import LocationAddress
from bizrank.pipeline.similarity import (
    address_similarity,
    digits_only,
    flatten_location_address,
    normalize_address,
    normalize_business_name,
    phone_match,
    round_half_up,
    string_similarity,
)


def test_string_similarity_blank_inputs_score_zero() -> None:
    assert string_similarity("", "") == 0
    assert string_similarity("   ", "abc") == 0
    assert string_similarity(None, "abc") == 0


def test_string_similarity_is_case_and_whitespace_insensitive() -> None:
    assert string_similarity("Joe's Plumbing", "  joe's plumbing ") == 100


def test_string_similarity_uses_edit_distance_over_longest_length() -> None:
    # kitten -> sitting needs 3 edits over 7 characters
    assert string_similarity("kitten", "sitting") == 57
    assert string_similarity("ace rooter", "ace router") == 90


def test_round_half_up() -> None:
    assert round_half_up(0.5) == 1
    assert round_half_up(2.5) == 3
    assert round_half_up(74.49) == 74


def test_normalize_address_drops_street_types_and_punctuation() -> None:
    assert normalize_address("123 Main Street, Suite 4") == "123 main suite 4"
    assert normalize_address(None) == ""


def test_address_similarity_against_structured_location() -> None:
    location_address = LocationAddress(
        address_lines=["123 Main St"],
        locality="Austin",
        administrative_area="TX",
        postal_code="78701",
    )

    assert flatten_location_address(location_address) == "123 Main St Austin TX 78701"
    assert address_similarity("123 Main St, Austin, TX 78701", location_address) == 100
    assert address_similarity("123 Main St", None) == 0


def test_phone_match_compares_digits_with_containment() -> None:
    assert digits_only("(512) 555-0100") == "5125550100"
    assert phone_match("(512) 555-0100", "+1 512-555-0100") is True
    assert phone_match("512-555-0100", "512-555-0199") is False
    assert phone_match(None, "512-555-0100") is False


def test_normalize_business_name_strips_punctuation() -> None:
    assert normalize_business_name("Joe's Plumbing & Heating!") == "joes plumbing heating"
