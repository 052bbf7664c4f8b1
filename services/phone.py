"""
Phone number normalization.

Storage format is 10 national digits (no +1). Provider calls use E.164.
Inbound payloads and legacy deal rows use all sorts of formats, so lookups go
through `lookup_variants`.
"""

import re
from typing import List, Optional

_NON_DIGITS = re.compile(r"\D")


def digits_only(phone: Optional[str]) -> str:
    return _NON_DIGITS.sub("", phone or "")


def normalize_for_storage(phone: Optional[str]) -> str:
    digits = digits_only(phone)
    if len(digits) == 11 and digits.startswith("1"):
        return digits[1:]
    return digits


def to_e164(phone: Optional[str]) -> str:
    digits = digits_only(phone)
    if len(digits) == 10:
        return f"+1{digits}"
    return f"+{digits}"


def format_for_display(phone: Optional[str]) -> str:
    """(669) 245-6363 for US numbers, digits otherwise."""
    national = normalize_for_storage(phone)
    if len(national) != 10:
        return national
    return f"({national[:3]}) {national[3:6]}-{national[6:]}"


def lookup_variants(phone: Optional[str]) -> List[str]:
    """All formats a stored number might plausibly be saved in."""
    national = normalize_for_storage(phone)
    if not national:
        return []

    variants = [national, f"+1{national}", f"1{national}"]
    if len(national) == 10:
        variants.append(f"({national[:3]}) {national[3:6]}-{national[6:]}")
        variants.append(f"{national[:3]}-{national[3:6]}-{national[6:]}")
    if phone and phone not in variants:
        variants.append(phone)

    seen = set()
    return [v for v in variants if not (v in seen or seen.add(v))]


def is_valid_phone(phone: Optional[str]) -> bool:
    """NANP check: 10 digits, area code and exchange don't start with 0/1."""
    national = normalize_for_storage(phone)
    if len(national) != 10:
        return False
    return national[0] not in "01" and national[3] not in "01"


def phone_validation_error(phone: Optional[str]) -> Optional[str]:
    if not phone:
        return "Client phone number is missing."
    national = normalize_for_storage(phone)
    if len(national) != 10:
        return f"Phone number {phone} must have 10 digits."
    if national[0] in "01":
        return f"Phone number {phone} has an invalid area code."
    if national[3] in "01":
        return f"Phone number {phone} has an invalid exchange."
    return None


def phones_match(a: Optional[str], b: Optional[str]) -> bool:
    left, right = normalize_for_storage(a), normalize_for_storage(b)
    return bool(left) and left == right
