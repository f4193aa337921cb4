"""
PSP Facade Tests

Persistence ordering around plugin calls, callback handling with final
statuses left untouched, plugin registry and the built-in plugins over a
mocked HTTP transport.
"""

import json
import re
import uuid
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import func, select

from paychain.db_models import PSPTransactionTable
from paychain.errors import NotFoundError, TransportError, ValidationError
from paychain.psp import (
    PAYMENT_NOT_INITIATED_MESSAGE,
    BankPaymentClient,
    CardPaymentPlugin,
    ExternalProviderPlugin,
    HttpPaymentProviderAdapter,
    PaymentPlugin,
    PluginResult,
    PSPService,
    QRPaymentPlugin,
    build_plugins,
    new_psp_transaction_id,
)
from paychain.schemas import PaymentCallback, PSPPaymentRequest
from paychain.status import TransactionStatus

from conftest import BANK_A_URL, make_settings

PSP_ID_PATTERN = re.compile(r"^PSP_\d{14}_[0-9A-F]{8}$")


class RecordingPlugin(PaymentPlugin):
    """Captures what the PSP had stored at the moment the plugin ran."""

    type = "card"
    name = "Recording"

    def __init__(self, service_ref, fail=False):
        self.service_ref = service_ref
        self.fail = fail
        self.seen = None

    async def create_payment(self, context):
        self.seen = await self.service_ref[0].get_transaction(context.psp_transaction_id)
        if self.fail:
            raise TransportError("Payment provider unreachable")
        return PluginResult(external_transaction_id="bank-payment-1", payment_url="http://bank.test/pay")


def payment_request(payment_type="card", **overrides):
    values = dict(
        web_shop_client_id="shop-1",
        payment_type=payment_type,
        amount=Decimal("1000.00"),
        currency="RSD",
        merchant_order_id=uuid.uuid4(),
        return_url="http://shop.test/success",
        cancel_url="http://shop.test/cancel",
    )
    values.update(overrides)
    return PSPPaymentRequest(**values)


def build_psp(session_maker, fail=False):
    holder = []
    plugin = RecordingPlugin(holder, fail=fail)
    service = PSPService(session_maker, [plugin])
    holder.append(service)
    return service, plugin


async def count_psp_rows(session_maker):
    async with session_maker() as session:
        return await session.scalar(select(func.count()).select_from(PSPTransactionTable))


class TestInitiate:

    @pytest.mark.psp
    @pytest.mark.unit
    def test_transaction_id_format(self):
        assert PSP_ID_PATTERN.match(new_psp_transaction_id())

    @pytest.mark.psp
    @pytest.mark.unit
    async def test_pending_record_exists_before_plugin_runs(self, session_maker):
        service, plugin = build_psp(session_maker)

        response = await service.initiate(payment_request())

        assert plugin.seen is not None
        assert plugin.seen.psp_transaction_id == response.psp_transaction_id
        assert plugin.seen.status == TransactionStatus.PENDING
        assert plugin.seen.external_transaction_id is None

    @pytest.mark.psp
    @pytest.mark.unit
    async def test_external_id_stored_after_plugin(self, session_maker):
        service, _ = build_psp(session_maker)

        response = await service.initiate(payment_request())
        stored = await service.get_transaction(response.psp_transaction_id)

        assert response.success
        assert PSP_ID_PATTERN.match(response.psp_transaction_id)
        assert response.status == TransactionStatus.PROCESSING
        assert response.payment_url == "http://bank.test/pay"
        assert stored.external_transaction_id == "bank-payment-1"
        assert stored.status == TransactionStatus.PROCESSING

    @pytest.mark.psp
    @pytest.mark.unit
    async def test_plugin_failure_leaves_failed_record(self, session_maker):
        service, _ = build_psp(session_maker, fail=True)

        response = await service.initiate(payment_request())
        stored = await service.get_transaction(response.psp_transaction_id)

        assert not response.success
        assert response.status == TransactionStatus.FAILED
        assert response.message == PAYMENT_NOT_INITIATED_MESSAGE
        assert stored.status == TransactionStatus.FAILED
        assert stored.external_transaction_id is None

    @pytest.mark.psp
    @pytest.mark.unit
    async def test_unknown_type_rejected_before_any_record(self, session_maker):
        service, _ = build_psp(session_maker)

        with pytest.raises(ValidationError):
            await service.initiate(payment_request(payment_type="cheque"))

        assert await count_psp_rows(session_maker) == 0

    @pytest.mark.psp
    @pytest.mark.unit
    async def test_disabled_plugin_rejected(self, session_maker):
        service = PSPService(session_maker, [ExternalProviderPlugin("paypal", "PayPal", None)])

        with pytest.raises(ValidationError):
            await service.initiate(payment_request(payment_type="paypal"))

        assert await count_psp_rows(session_maker) == 0


class TestCallback:

    @pytest.fixture
    async def psp_transaction_id(self, session_maker):
        service, _ = build_psp(session_maker)
        return (await service.initiate(payment_request())).psp_transaction_id

    @pytest.mark.psp
    @pytest.mark.unit
    async def test_completed_callback_stamps_completion(self, session_maker, psp_transaction_id):
        service, _ = build_psp(session_maker)

        updated = await service.handle_callback(PaymentCallback(
            psp_transaction_id=psp_transaction_id,
            external_transaction_id="acquirer-order-1",
            status=TransactionStatus.COMPLETED,
            status_message="Payment completed successfully",
        ))

        assert updated.status == TransactionStatus.COMPLETED
        assert updated.external_transaction_id == "acquirer-order-1"
        assert updated.completed_at is not None

    @pytest.mark.psp
    @pytest.mark.unit
    async def test_final_status_never_overwritten(self, session_maker, psp_transaction_id):
        service, _ = build_psp(session_maker)
        first = await service.handle_callback(PaymentCallback(
            psp_transaction_id=psp_transaction_id,
            external_transaction_id="acquirer-order-1",
            status=TransactionStatus.COMPLETED,
        ))

        second = await service.handle_callback(PaymentCallback(
            psp_transaction_id=psp_transaction_id,
            external_transaction_id="acquirer-order-2",
            status=TransactionStatus.FAILED,
            status_message="late failure",
        ))

        assert second == first
        assert second.external_transaction_id == "acquirer-order-1"

    @pytest.mark.psp
    @pytest.mark.unit
    async def test_failed_callback_has_no_completion_time(self, session_maker, psp_transaction_id):
        service, _ = build_psp(session_maker)

        updated = await service.handle_callback(PaymentCallback(
            psp_transaction_id=psp_transaction_id, status=TransactionStatus.FAILED
        ))

        assert updated.status == TransactionStatus.FAILED
        assert updated.completed_at is None
        assert updated.external_transaction_id == "bank-payment-1"

    @pytest.mark.psp
    @pytest.mark.unit
    async def test_unknown_transaction(self, session_maker):
        service, _ = build_psp(session_maker)

        with pytest.raises(NotFoundError):
            await service.handle_callback(PaymentCallback(psp_transaction_id="PSP_missing", status=2))


class TestPluginRegistry:

    @pytest.mark.psp
    @pytest.mark.unit
    def test_plugins_enabled_by_configuration(self, tmp_path):
        settings = make_settings(tmp_path, "psp", paypal_service_url="http://paypal.test")
        service = PSPService(None, build_plugins(settings))

        methods = {m.type: m.enabled for m in service.payment_methods()}

        assert methods == {"card": True, "qr": False, "paypal": True, "bitcoin": False}


class TestBuiltInPlugins:

    @pytest.mark.psp
    @pytest.mark.unit
    async def test_card_plugin_initiates_at_bank(self, session_maker):
        sent = []

        def handler(request):
            sent.append(json.loads(request.content))
            return httpx.Response(200, json={
                "success": True, "paymentId": "pay-1", "paymentUrl": "http://bank.test/card-payment?paymentId=pay-1"
            })

        bank = BankPaymentClient(
            BANK_A_URL, callback_url="http://psp.test/api/psp/callback", transport=httpx.MockTransport(handler)
        )
        service = PSPService(session_maker, [CardPaymentPlugin(bank)])

        response = await service.initiate(payment_request())

        assert response.payment_url == "http://bank.test/card-payment?paymentId=pay-1"
        assert sent[0]["pspTransactionId"] == response.psp_transaction_id
        assert sent[0]["merchantId"] == "shop-1"
        assert sent[0]["successUrl"] == "http://shop.test/success"
        assert sent[0]["callbackUrl"] == "http://psp.test/api/psp/callback"
        assert (await service.get_transaction(response.psp_transaction_id)).external_transaction_id == "pay-1"

    @pytest.mark.psp
    @pytest.mark.unit
    async def test_qr_plugin_returns_rendered_code(self, session_maker):
        def handler(request):
            if request.url.path == "/api/qr/generate":
                return httpx.Response(200, json={"qrCode": "iVBORw0KGgo="})
            return httpx.Response(200, json={"success": True, "paymentId": "pay-2", "paymentUrl": "http://bank.test/p"})

        transport = httpx.MockTransport(handler)
        plugin = QRPaymentPlugin(BankPaymentClient(BANK_A_URL, transport=transport), "http://qr.test", transport=transport)
        service = PSPService(session_maker, [plugin])

        response = await service.initiate(payment_request(payment_type="qr"))

        assert response.success
        assert response.qr_code == "iVBORw0KGgo="

    @pytest.mark.psp
    @pytest.mark.unit
    async def test_external_provider_plugin(self, session_maker):
        def handler(request):
            body = json.loads(request.content)
            assert request.url.path == "/api/payments/create"
            assert body["currency"] == "RSD"
            return httpx.Response(200, json={"providerRef": "PAYPAL-123", "approvalUrl": "http://paypal.test/approve"})

        adapter = HttpPaymentProviderAdapter("http://paypal.test", transport=httpx.MockTransport(handler))
        service = PSPService(session_maker, [ExternalProviderPlugin("paypal", "PayPal", adapter)])

        response = await service.initiate(payment_request(payment_type="PayPal"))
        stored = await service.get_transaction(response.psp_transaction_id)

        assert response.payment_url == "http://paypal.test/approve"
        assert stored.external_transaction_id == "PAYPAL-123"
        assert stored.payment_type == "paypal"

    @pytest.mark.psp
    @pytest.mark.unit
    async def test_provider_error_fails_payment(self, session_maker):
        adapter = HttpPaymentProviderAdapter(
            "http://bitcoin.test", transport=httpx.MockTransport(lambda request: httpx.Response(502))
        )
        service = PSPService(session_maker, [ExternalProviderPlugin("bitcoin", "Bitcoin", adapter)])

        response = await service.initiate(payment_request(payment_type="bitcoin"))

        assert response.status == TransactionStatus.FAILED
        assert response.message == PAYMENT_NOT_INITIATED_MESSAGE
