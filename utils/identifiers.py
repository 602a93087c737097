# utils/identifiers.py
from __future__ import annotations

import re
from email.utils import parseaddr
from enum import Enum

from services.errors import InvalidIdentifier

__all__ = [
    "Channel",
    "is_valid_phone",
    "is_valid_email",
    "validate_identifier",
    "mask_identifier",
]

# E.164-ish: '+', then 2-15 digits, no leading zero
_PHONE_RE = re.compile(r"\+[1-9][0-9]{1,14}")
_EMAIL_RE = re.compile(r"[^\s@]+@[^\s@]+\.[^\s@]+")


class Channel(str, Enum):
    SMS = "sms"
    EMAIL = "email"

    @property
    def label(self) -> str:
        return "SMS" if self is Channel.SMS else "email"


def is_valid_phone(value: str) -> bool:
    return bool(_PHONE_RE.fullmatch(value or ""))


def is_valid_email(value: str) -> bool:
    if not _EMAIL_RE.fullmatch(value or ""):
        return False
    # one bare mailbox only; "a,b@c.org" would become two recipients
    return parseaddr(value)[1] == value


def validate_identifier(identifier: str, channel: Channel) -> None:
    if channel is Channel.SMS and not is_valid_phone(identifier):
        raise InvalidIdentifier(
            "Invalid phone number format. Please include country code (e.g., +27821234567)"
        )
    if channel is Channel.EMAIL and not is_valid_email(identifier):
        raise InvalidIdentifier("Invalid email address format")


def mask_identifier(addr: str) -> str:
    """Log-safe form: 'a***@g***.com' for emails, '+2782*****67' for phones."""
    if not addr:
        return ""
    if "@" in addr:
        local, domain = addr.split("@", 1)
        local_mask = local[0] + "***" if len(local) > 1 else "*"
        # keep domain TLD visible
        dot = domain.rfind(".")
        if dot > 0:
            dom_mask = domain[0] + "***" + domain[dot:]
        else:
            dom_mask = domain[0] + "***" if domain else ""
        return f"{local_mask}@{dom_mask}"
    if len(addr) <= 6:
        return "*" * len(addr)
    return addr[:5] + "*" * (len(addr) - 7) + addr[-2:]
