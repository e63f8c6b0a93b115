"""
Identity keys for matching CRM contacts against internal leads.

Phone keys keep only the last 10 digits so country-code prefixes do not
prevent a match. Two different international numbers that share their last
10 digits will therefore collide; this is accepted.
"""
from __future__ import annotations

import re
from typing import Optional

PHONE_KEY_DIGITS = 10

_NON_DIGIT_RE = re.compile(r"\D")


def normalize_email(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    key = raw.strip().lower()
    return key or None


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    digits = _NON_DIGIT_RE.sub("", raw)
    if not digits:
        return None
    if len(digits) < PHONE_KEY_DIGITS:
        return digits
    return digits[-PHONE_KEY_DIGITS:]
