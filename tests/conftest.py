"""
Test configuration and fixtures for the payment chain tests.

Every hop is a real application wired in-process: outbound httpx calls go
through HostRouter, which dispatches on the request host to the matching
ASGI app, so acquirer -> PCC -> issuer runs end to end without sockets.
"""

from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace
from typing import Dict, List

import httpx
import pytest
from faker import Faker

from paychain.config import Settings
from paychain.database import create_engine, create_session_maker, create_tables
from paychain.main import create_app
from paychain.routing import BankEndpoint
from paychain.schemas import IssuerCardCreate

fake = Faker()

PCC_URL = "http://pcc.test"
BANK_A_URL = "http://bank-a.test"
BANK_B_URL = "http://bank-b.test"
PSP_URL = "http://psp.test"

TEST_BANK_ROUTES = {
    "4111": BankEndpoint(name="Bank A", url=BANK_A_URL),
    "5555": BankEndpoint(name="Bank B", url=BANK_B_URL),
}

VISA_PAN = "4111111111111111"
MASTERCARD_PAN = "5555555555554444"
UNKNOWN_BIN_PAN = "9999000011112222"


def future_expiry(years: int = 3) -> str:
    return f"12/{(datetime.now(timezone.utc).year + years) % 100:02d}"


class HostRouter(httpx.AsyncBaseTransport):
    """Dispatches outbound requests to in-process ASGI apps by host name."""

    def __init__(self):
        self.apps: Dict[str, httpx.ASGITransport] = {}
        self.requests: List[httpx.Request] = []

    def mount(self, base_url: str, app) -> None:
        self.apps[httpx.URL(base_url).host] = httpx.ASGITransport(app=app)

    def hosts_called(self) -> List[str]:
        return [request.url.host for request in self.requests]

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        transport = self.apps.get(request.url.host)
        if transport is None:
            raise httpx.ConnectError(f"No route to {request.url.host}", request=request)
        return await transport.handle_async_request(request)


def make_settings(tmp_path, name: str, **overrides) -> Settings:
    values = dict(
        database_url=f"sqlite+aiosqlite:///{tmp_path / name}.db",
        ledger_backend="sql",
        bank_routes=dict(TEST_BANK_ROUTES),
        pcc_url=PCC_URL,
        bank_url=BANK_A_URL,
        bank_frontend_url="http://bank-a-frontend.test",
        issuer_timeout_seconds=2.0,
        pcc_timeout_seconds=5.0,
        psp_timeout_seconds=2.0,
        log_level="WARNING",
    )
    values.update(overrides)
    return Settings(**values)


def card_payload(card: Dict[str, str], **overrides) -> Dict[str, str]:
    payload = {
        "pan": card["pan"],
        "securityCode": card["security_code"],
        "cardHolderName": card["card_holder_name"],
        "expiryDate": card["expiry_date"],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def card_holder() -> str:
    return fake.name()


@pytest.fixture
def visa_card(card_holder) -> Dict[str, str]:
    return {
        "pan": VISA_PAN,
        "card_holder_name": card_holder,
        "expiry_date": future_expiry(),
        "security_code": "123",
    }


@pytest.fixture
def mastercard_card() -> Dict[str, str]:
    return {
        "pan": MASTERCARD_PAN,
        "card_holder_name": fake.name(),
        "expiry_date": future_expiry(),
        "security_code": "456",
    }


@pytest.fixture
async def session_maker(tmp_path):
    """File-backed SQLite with every table created."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'unit'}.db")
    await create_tables(engine)
    yield create_session_maker(engine)
    await engine.dispose()


@pytest.fixture
def host_router() -> HostRouter:
    return HostRouter()


@pytest.fixture
async def chain(tmp_path, host_router, visa_card, mastercard_card):
    """
    PSP, PCC and two banks as separate applications. Bank A issues the
    4111 cards and acts as the acquirer; Bank B issues the 5555 cards.
    """
    apps = {
        "pcc": create_app(make_settings(tmp_path, "pcc"), transport=host_router),
        "bank_a": create_app(make_settings(tmp_path, "bank_a"), transport=host_router),
        "bank_b": create_app(make_settings(tmp_path, "bank_b"), transport=host_router),
        "psp": create_app(
            make_settings(tmp_path, "psp", psp_callback_url=f"{PSP_URL}/api/psp/callback"),
            transport=host_router,
        ),
    }
    for app in apps.values():
        await create_tables(app.state.engine)

    host_router.mount(PCC_URL, apps["pcc"])
    host_router.mount(BANK_A_URL, apps["bank_a"])
    host_router.mount(BANK_B_URL, apps["bank_b"])
    host_router.mount(PSP_URL, apps["psp"])

    await apps["bank_a"].state.issuer_service.register_card(
        IssuerCardCreate(**visa_card, balance=Decimal("5000.00"))
    )
    await apps["bank_b"].state.issuer_service.register_card(
        IssuerCardCreate(**mastercard_card, balance=Decimal("5000.00"))
    )

    yield SimpleNamespace(router=host_router, **apps)

    for app in apps.values():
        await app.state.engine.dispose()


@pytest.fixture
async def client(chain):
    """HTTP client whose requests reach whichever app owns the host."""
    async with httpx.AsyncClient(transport=chain.router, timeout=10.0) as client:
        yield client
