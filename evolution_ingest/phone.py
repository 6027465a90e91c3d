"""
Phone number normalization.

Single source of truth for contact identity: every component normalizes
before comparing, storing or querying by phone.
"""

import re
from typing import Optional

_NON_DIGITS = re.compile(r"\D")

LID_SUFFIX = "@lid"
GROUP_SUFFIX = "@g.us"
USER_SUFFIX = "@s.whatsapp.net"

MIN_PHONE_DIGITS = 8
MAX_PHONE_DIGITS = 15


def normalize_phone(raw: Optional[str]) -> str:
    """
    Normalize any contact identifier to a canonical digit string.

    "33612345678@s.whatsapp.net" -> "33612345678"
    "+33 6 12-34-56-78"          -> "33612345678"
    None / ""                    -> ""
    """
    if not raw:
        return ""
    without_suffix = raw.split("@", 1)[0]
    return _NON_DIGITS.sub("", without_suffix)


def phones_equal(a: Optional[str], b: Optional[str]) -> bool:
    """True when both identifiers normalize to the same non-empty phone."""
    left = normalize_phone(a)
    right = normalize_phone(b)
    if not left or not right:
        return False
    return left == right


def is_lid(jid: Optional[str]) -> bool:
    return bool(jid) and jid.lower().endswith(LID_SUFFIX)


def is_group(jid: Optional[str]) -> bool:
    return bool(jid) and jid.lower().endswith(GROUP_SUFFIX)


def is_plausible_phone(digits: str) -> bool:
    """E.164-plausible length check on an already normalized phone."""
    return digits.isdigit() and MIN_PHONE_DIGITS <= len(digits) <= MAX_PHONE_DIGITS


def to_jid(phone: str) -> str:
    return f"{normalize_phone(phone)}{USER_SUFFIX}"
