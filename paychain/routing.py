"""
Bank Router

Maps the BIN (first four PAN digits) to the issuer bank that owns the
card. The table is static configuration and is never reloaded at runtime.

Two policies for an unknown BIN:
- reject (default): no issuer is returned and the PCC fails the payment
- fallback: the first configured bank is returned, kept for older fixtures
  that relied on every card being routable
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional

import structlog

from .cards import bin_of, mask_pan
from .errors import RoutingError

logger = structlog.get_logger(__name__)


class UnknownBinPolicy(str, Enum):
    REJECT = "reject"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class BankEndpoint:
    name: str
    url: str


class BankRouter:
    """BIN prefix to issuer bank lookup."""

    def __init__(
        self,
        routes: Mapping[str, BankEndpoint],
        policy: UnknownBinPolicy = UnknownBinPolicy.REJECT,
    ):
        if policy == UnknownBinPolicy.FALLBACK and not routes:
            raise ValueError("Fallback routing needs at least one configured bank")
        self._routes: Mapping[str, BankEndpoint] = MappingProxyType(dict(routes))
        self.policy = policy

    @property
    def routes(self) -> Mapping[str, BankEndpoint]:
        return self._routes

    def lookup(self, pan: str) -> Optional[BankEndpoint]:
        """Return the issuer for this PAN, or None when the BIN is unknown and rejected."""
        bank = self._routes.get(bin_of(pan))
        if bank is not None:
            return bank

        if self.policy == UnknownBinPolicy.FALLBACK:
            fallback = next(iter(self._routes.values()))
            logger.warning(
                "Unknown BIN routed to fallback bank",
                pan=mask_pan(pan),
                bank=fallback.name
            )
            return fallback

        return None

    def resolve(self, pan: str) -> str:
        """Return the issuer bank URL for this PAN."""
        bank = self.lookup(pan)
        if bank is None:
            raise RoutingError(details={"bin": bin_of(pan)})
        return bank.url

    def describe(self) -> List[Dict[str, str]]:
        return [
            {"bin": bin_code, "name": bank.name, "url": bank.url}
            for bin_code, bank in self._routes.items()
        ]
