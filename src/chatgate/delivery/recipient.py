"""
Recipient identifier normalization.

Turns user-supplied phone numbers into the canonical chat id accepted by the
transport's send call, e.g. "098765 43210" -> "919876543210@c.us".

The rules are lossy and assume one default country code for bare local
numbers. Group ids are passed through untouched.
"""

from __future__ import annotations

import re

from chatgate.errors import InvalidInputError

INDIVIDUAL_SUFFIX = "@c.us"
GROUP_SUFFIX = "@g.us"

DEFAULT_COUNTRY_CODE = "91"
LOCAL_NUMBER_LENGTH = 10

_NON_DIGITS = re.compile(r"\D")


def normalize_recipient(raw: str, default_country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """
    Normalize a recipient into a canonical chat id.

    Steps:
    1. Group ids (ending in @g.us) are returned trimmed, unchanged.
    2. Ids already ending in @c.us only lose stray non-digit characters and,
       when exactly 10 digits remain, gain the default country code.
    3. Otherwise strip all non-digit characters.
    4. Drop exactly one leading zero.
    5. Exactly 10 digits left: prepend the default country code.
    6. Append the individual-chat suffix.

    Normalizing a canonical id returns it unchanged.

    Raises:
        InvalidInputError: If no digits remain.
    """
    value = str(raw).strip()
    if value.endswith(GROUP_SUFFIX):
        if value == GROUP_SUFFIX:
            raise InvalidInputError("Recipient group id is empty")
        return value

    if value.endswith(INDIVIDUAL_SUFFIX):
        digits = _NON_DIGITS.sub("", value[: -len(INDIVIDUAL_SUFFIX)])
        if not digits:
            raise InvalidInputError("Recipient must contain a phone number")
        # Canonical ids never carry exactly 10 digits, so this stays idempotent
        if len(digits) == LOCAL_NUMBER_LENGTH:
            digits = default_country_code + digits
        return digits + INDIVIDUAL_SUFFIX

    digits = _NON_DIGITS.sub("", value)
    if digits.startswith("0"):
        digits = digits[1:]
    if not digits:
        raise InvalidInputError("Recipient must contain a phone number")

    if len(digits) == LOCAL_NUMBER_LENGTH:
        digits = default_country_code + digits

    return digits + INDIVIDUAL_SUFFIX

