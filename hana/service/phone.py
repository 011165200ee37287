from __future__ import annotations

import re
from typing import Optional

from hana.service.errors import InvalidPhoneError

_NON_DIGITS = re.compile(r"\D")
# E.164 caps a full number at 15 digits
MAX_PHONE_DIGITS = 15


def normalize_phone(
    raw: Optional[str], *, country_code: str = "1", min_digits: int = 10
) -> str:
    """Return the canonical ``+<country><digits>`` form of ``raw``.

    Ten-digit national numbers get ``country_code`` prefixed. Longer numbers
    are taken to carry their own country code already.
    """
    if not raw or not isinstance(raw, str):
        raise InvalidPhoneError("Invalid phone number")
    digits = _NON_DIGITS.sub("", raw)
    if len(digits) < min_digits or len(digits) > MAX_PHONE_DIGITS:
        raise InvalidPhoneError("Invalid phone number")
    national_length = 10
    if len(digits) == national_length:
        digits = f"{country_code}{digits}"
    return f"+{digits}"
