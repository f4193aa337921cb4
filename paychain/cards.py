"""
Card Data Model

Immutable card value passed by value across every hop of the chain.
The PAN is the routing key; outside the issuer it is only ever logged or
persisted through mask_pan().
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Tuple

from .errors import ValidationError

BIN_LENGTH = 4

_PAN_RE = re.compile(r"^\d{12,19}$")
_EXPIRY_RE = re.compile(r"^(0[1-9]|1[0-2])/(\d{2})$")
_SECURITY_CODE_RE = re.compile(r"^\d{3,4}$")


def mask_pan(pan: str) -> str:
    """Return masked PAN for display and logs"""
    if len(pan) <= 10:
        return "*" * max(len(pan) - 4, 0) + pan[-4:]
    return f"{pan[:6]}{'*' * (len(pan) - 10)}{pan[-4:]}"


def bin_of(pan: str) -> str:
    return pan[:BIN_LENGTH]


def parse_expiry(expiry_date: str) -> Tuple[int, int]:
    """Parse "MM/YY" into (month, four digit year)."""
    match = _EXPIRY_RE.match(expiry_date or "")
    if not match:
        raise ValidationError("Expiry date must be in MM/YY format")
    return int(match.group(1)), 2000 + int(match.group(2))


def is_expired(expiry_date: str, now: Optional[datetime] = None) -> bool:
    """A card is valid through the last day of its expiry month."""
    month, year = parse_expiry(expiry_date)
    now = now or datetime.now(timezone.utc)
    return (now.year, now.month) > (year, month)


@dataclass(frozen=True, repr=False)
class CardData:
    pan: str
    card_holder_name: str
    expiry_date: str
    security_code: str

    def __post_init__(self):
        if not _PAN_RE.match(self.pan or ""):
            raise ValidationError("Card number must be 12 to 19 digits")
        if not (self.card_holder_name or "").strip():
            raise ValidationError("Card holder name is required")
        parse_expiry(self.expiry_date)
        if not _SECURITY_CODE_RE.match(self.security_code or ""):
            raise ValidationError("Security code must be 3 or 4 digits")

    @property
    def bin(self) -> str:
        return bin_of(self.pan)

    @property
    def masked_pan(self) -> str:
        return mask_pan(self.pan)

    def __repr__(self) -> str:
        return f"CardData(pan={self.masked_pan!r}, expiry_date={self.expiry_date!r})"
