"""
Phone number normalization to E.164.

The phone number is the customer identity key, so every entry point must
normalize through here before touching the datastore.
"""
from typing import Optional

import phonenumbers


DEFAULT_REGION = "US"


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    """
    Normalize a user-supplied phone number to E.164.

    `+`-prefixed input is parsed as international, a bare 10-digit
    number is assumed to be North American. Returns None when the input
    cannot be a phone number.

    Examples:
        >>> normalize_phone("(555) 123-4567")
        '+15551234567'
        >>> normalize_phone("+44 20 7946 0958")
        '+442079460958'
    """
    if not raw:
        return None
    trimmed = raw.strip()
    if not trimmed:
        return None

    if not trimmed.startswith("+"):
        digits = "".join(ch for ch in trimmed if ch.isdigit())
        if len(digits) != 10:
            return None
        trimmed = f"+1{digits}"

    try:
        parsed = phonenumbers.parse(trimmed, DEFAULT_REGION)
    except phonenumbers.NumberParseException:
        return None

    if not phonenumbers.is_possible_number(parsed):
        return None

    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)
