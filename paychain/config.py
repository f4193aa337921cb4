from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from .routing import BankEndpoint, UnknownBinPolicy

DEFAULT_BANK_ROUTES = {
    "4111": {"name": "Bank 1", "url": "http://localhost:7001"},
    "5555": {"name": "Bank 2", "url": "http://localhost:7002"},
}


def parse_bank_routes(raw: Optional[str]) -> Dict[str, BankEndpoint]:
    """Parse BANK_ROUTES, a JSON object of BIN -> {"name", "url"}."""
    data = json.loads(raw) if raw else DEFAULT_BANK_ROUTES
    routes = {}
    for bin_code, bank in data.items():
        if len(bin_code) != 4 or not bin_code.isdigit():
            raise ValueError(f"BIN must be four digits: {bin_code!r}")
        routes[bin_code] = BankEndpoint(name=bank["name"], url=bank["url"].rstrip("/"))
    return routes


def _optional(name: str) -> Optional[str]:
    value = os.getenv(name)
    return value.rstrip("/") if value else None


@dataclass
class Settings:
    database_url: str = "sqlite+aiosqlite:///./paychain.db"
    ledger_backend: str = "sql"
    redis_url: str = "redis://redis:6379/0"

    bank_routes: Dict[str, BankEndpoint] = field(default_factory=lambda: parse_bank_routes(None))
    unknown_bin_policy: UnknownBinPolicy = UnknownBinPolicy.REJECT

    pcc_url: str = "http://localhost:8000"
    pcc_timeout_seconds: float = 30.0
    issuer_timeout_seconds: float = 15.0
    psp_timeout_seconds: float = 10.0

    bank_url: str = "http://localhost:8000"
    bank_frontend_url: str = "http://localhost:3002"
    paypal_service_url: Optional[str] = None
    bitcoin_service_url: Optional[str] = None
    qr_service_url: Optional[str] = None
    psp_callback_url: Optional[str] = None

    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def from_env(cls) -> Settings:
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            ledger_backend=os.getenv("LEDGER_BACKEND", cls.ledger_backend).lower(),
            redis_url=os.getenv("REDIS_URL", cls.redis_url),
            bank_routes=parse_bank_routes(os.getenv("BANK_ROUTES")),
            unknown_bin_policy=UnknownBinPolicy(os.getenv("UNKNOWN_BIN_POLICY", "reject").lower()),
            pcc_url=os.getenv("PCC_URL", cls.pcc_url).rstrip("/"),
            pcc_timeout_seconds=float(os.getenv("PCC_TIMEOUT_SECONDS", "30")),
            issuer_timeout_seconds=float(os.getenv("ISSUER_TIMEOUT_SECONDS", "15")),
            psp_timeout_seconds=float(os.getenv("PSP_TIMEOUT_SECONDS", "10")),
            bank_url=os.getenv("BANK_URL", cls.bank_url).rstrip("/"),
            bank_frontend_url=os.getenv("BANK_FRONTEND_URL", cls.bank_frontend_url).rstrip("/"),
            paypal_service_url=_optional("PAYPAL_SERVICE_URL"),
            bitcoin_service_url=_optional("BITCOIN_SERVICE_URL"),
            qr_service_url=_optional("QR_SERVICE_URL"),
            psp_callback_url=_optional("PSP_CALLBACK_URL"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_json=os.getenv("LOG_JSON", "false").lower() == "true",
        )
