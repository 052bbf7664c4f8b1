import pytest

from services.phone import (
    format_for_display, is_valid_phone, lookup_variants, normalize_for_storage,
    phone_validation_error, phones_match, to_e164,
)


@pytest.mark.parametrize("raw", [
    "+16692456363", "16692456363", "6692456363", "(669) 245-6363", "669-245-6363", "+1 (669) 245 6363",
])
def test_storage_format_is_ten_digits(raw):
    assert normalize_for_storage(raw) == "6692456363"


def test_storage_keeps_other_lengths_as_digits():
    assert normalize_for_storage("+44 20 7946 0958") == "442079460958"
    assert normalize_for_storage(None) == ""


def test_e164():
    assert to_e164("6692456363") == "+16692456363"
    assert to_e164("16692456363") == "+16692456363"
    assert to_e164("(669) 245-6363") == "+16692456363"


def test_lookup_variants_cover_stored_formats():
    variants = lookup_variants("+16692456363")
    assert variants[:5] == [
        "6692456363",
        "+16692456363",
        "16692456363",
        "(669) 245-6363",
        "669-245-6363",
    ]
    assert len(variants) == len(set(variants))


def test_display_format():
    assert format_for_display("+16692456363") == "(669) 245-6363"
    assert format_for_display("12345") == "12345"


def test_validation():
    assert is_valid_phone("6692456363")
    assert not is_valid_phone("0692456363")
    assert not is_valid_phone("6691456363")
    assert not is_valid_phone("12345")
    assert phone_validation_error("6692456363") is None
    assert "missing" in phone_validation_error(None)


def test_phones_match_ignores_formatting():
    assert phones_match("+1 (669) 245-6363", "669.245.6363")
    assert not phones_match("6692456363", "6692456364")
    assert not phones_match("", "")
