"""
PSP Facade

Entry point for merchants. Picks a payment plugin by type and owns the
outward-facing correlation id, the PSPTransactionId. The PSP record is
persisted Pending before any plugin runs, so a crash mid-call still leaves
a discoverable record; the plugin's external id and the new status are
written only after the plugin returns.

Plugins:
- card: registers the payment at the acquirer bank, shopper is redirected
  to the bank card-entry page
- qr: same bank registration, plus a QR image from the external renderer
- paypal / bitcoin: generic external payment provider over HTTP
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

import httpx
import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker

from .config import Settings
from .db_models import PSPTransactionTable, as_utc, utcnow
from .errors import NotFoundError, PaymentChainError, TransportError, ValidationError
from .schemas import (
    BankPaymentInitiateRequest,
    PaymentCallback,
    PaymentMethodView,
    PSPPaymentRequest,
    PSPPaymentResponse,
    PSPTransactionView,
)
from .status import TERMINAL_STATUSES, TransactionStatus

logger = structlog.get_logger(__name__)

PAYMENT_INITIATED_MESSAGE = "Payment initiated"
PAYMENT_NOT_INITIATED_MESSAGE = "Payment could not be initiated"


def new_psp_transaction_id(now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    return f"PSP_{now:%Y%m%d%H%M%S}_{uuid.uuid4().hex[:8].upper()}"


@dataclass(frozen=True)
class PaymentContext:
    """What a plugin needs to start a payment."""
    psp_transaction_id: str
    web_shop_client_id: str
    amount: Decimal
    currency: str
    merchant_order_id: str
    description: Optional[str] = None
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None


@dataclass(frozen=True)
class PluginResult:
    external_transaction_id: Optional[str] = None
    payment_url: Optional[str] = None
    qr_code: Optional[str] = None


@dataclass(frozen=True)
class ExternalPayment:
    provider_ref: str
    approval_url: Optional[str] = None


class PaymentPlugin(ABC):
    type: str = ""
    name: str = ""

    @property
    def enabled(self) -> bool:
        return True

    @abstractmethod
    async def create_payment(self, context: PaymentContext) -> PluginResult:
        """Start the payment downstream. Raises PaymentChainError on failure."""


class BankPaymentClient:
    """Registers a payment at the acquirer bank."""

    def __init__(
        self,
        bank_url: str,
        timeout: float = 10.0,
        callback_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.bank_url = bank_url.rstrip("/")
        self.timeout = timeout
        self.callback_url = callback_url
        self.transport = transport

    async def initiate(self, context: PaymentContext) -> Dict[str, Any]:
        request = BankPaymentInitiateRequest(
            merchant_id=context.web_shop_client_id,
            amount=context.amount,
            currency=context.currency,
            merchant_order_id=context.merchant_order_id,
            merchant_timestamp=utcnow(),
            psp_transaction_id=context.psp_transaction_id,
            success_url=context.return_url,
            failed_url=context.cancel_url,
            error_url=context.cancel_url,
            callback_url=self.callback_url,
        )
        body = await _post_json(
            f"{self.bank_url}/api/bank/payment/initiate",
            request.model_dump(mode="json", by_alias=True),
            self.timeout,
            self.transport,
        )
        if not body.get("success") or not body.get("paymentId"):
            raise TransportError("Bank rejected payment initiation")
        return body


class CardPaymentPlugin(PaymentPlugin):
    type = "card"
    name = "Card Payment"

    def __init__(self, bank: BankPaymentClient):
        self.bank = bank

    async def create_payment(self, context: PaymentContext) -> PluginResult:
        body = await self.bank.initiate(context)
        return PluginResult(external_transaction_id=body["paymentId"], payment_url=body.get("paymentUrl"))


class QRPaymentPlugin(PaymentPlugin):
    type = "qr"
    name = "QR Code Payment"

    def __init__(
        self,
        bank: BankPaymentClient,
        qr_service_url: Optional[str],
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.bank = bank
        self.qr_service_url = qr_service_url.rstrip("/") if qr_service_url else None
        self.timeout = timeout
        self.transport = transport

    @property
    def enabled(self) -> bool:
        return self.qr_service_url is not None

    async def create_payment(self, context: PaymentContext) -> PluginResult:
        body = await self.bank.initiate(context)
        payment_url = body.get("paymentUrl")

        # The renderer is opaque: payment reference in, base64 PNG out.
        rendered = await _post_json(
            f"{self.qr_service_url}/api/qr/generate",
            {
                "data": payment_url,
                "paymentId": body["paymentId"],
                "amount": str(context.amount),
                "currency": context.currency,
            },
            self.timeout,
            self.transport,
        )
        if not rendered.get("qrCode"):
            raise TransportError("QR service returned no image")
        return PluginResult(
            external_transaction_id=body["paymentId"],
            payment_url=payment_url,
            qr_code=rendered["qrCode"],
        )


class HttpPaymentProviderAdapter:
    """Generic external provider: create_external_payment -> (providerRef, approvalUrl)."""

    def __init__(self, base_url: str, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def create_external_payment(
        self, amount: Decimal, currency: str, metadata: Mapping[str, Any]
    ) -> ExternalPayment:
        body = await _post_json(
            f"{self.base_url}/api/payments/create",
            {"amount": str(amount), "currency": currency, "metadata": dict(metadata)},
            self.timeout,
            self.transport,
        )
        if not body.get("providerRef"):
            raise TransportError("Payment provider returned no reference")
        return ExternalPayment(provider_ref=body["providerRef"], approval_url=body.get("approvalUrl"))


class ExternalProviderPlugin(PaymentPlugin):
    def __init__(self, payment_type: str, name: str, adapter: Optional[HttpPaymentProviderAdapter]):
        self.type = payment_type
        self.name = name
        self.adapter = adapter

    @property
    def enabled(self) -> bool:
        return self.adapter is not None

    async def create_payment(self, context: PaymentContext) -> PluginResult:
        external = await self.adapter.create_external_payment(
            context.amount,
            context.currency,
            {
                "pspTransactionId": context.psp_transaction_id,
                "merchantOrderId": context.merchant_order_id,
                "description": context.description,
                "returnUrl": context.return_url,
                "cancelUrl": context.cancel_url,
            },
        )
        return PluginResult(external_transaction_id=external.provider_ref, payment_url=external.approval_url)


async def _post_json(
    url: str,
    payload: Dict[str, Any],
    timeout: float,
    transport: Optional[httpx.AsyncBaseTransport],
) -> Dict[str, Any]:
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        try:
            response = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            raise TransportError("Payment provider unreachable", details={"cause": type(e).__name__})

    if not response.is_success:
        raise TransportError("Payment provider error", details={"http_status": response.status_code})
    try:
        body = response.json()
    except ValueError:
        raise TransportError("Invalid response from payment provider")
    if not isinstance(body, dict):
        raise TransportError("Invalid response from payment provider")
    return body


def build_plugins(settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> List[PaymentPlugin]:
    timeout = settings.psp_timeout_seconds
    bank = BankPaymentClient(
        settings.bank_url, timeout=timeout, callback_url=settings.psp_callback_url, transport=transport
    )

    def provider(url: Optional[str]) -> Optional[HttpPaymentProviderAdapter]:
        return HttpPaymentProviderAdapter(url, timeout=timeout, transport=transport) if url else None

    return [
        CardPaymentPlugin(bank),
        QRPaymentPlugin(bank, settings.qr_service_url, timeout=timeout, transport=transport),
        ExternalProviderPlugin("paypal", "PayPal", provider(settings.paypal_service_url)),
        ExternalProviderPlugin("bitcoin", "Bitcoin", provider(settings.bitcoin_service_url)),
    ]


class PSPService:
    def __init__(self, session_maker: async_sessionmaker, plugins: List[PaymentPlugin]):
        self._session_maker = session_maker
        self.plugins: Dict[str, PaymentPlugin] = {plugin.type: plugin for plugin in plugins}

    def payment_methods(self) -> List[PaymentMethodView]:
        return [
            PaymentMethodView(type=plugin.type, name=plugin.name, enabled=plugin.enabled)
            for plugin in self.plugins.values()
        ]

    async def initiate(self, request: PSPPaymentRequest) -> PSPPaymentResponse:
        payment_type = request.payment_type.lower()
        plugin = self.plugins.get(payment_type)
        if plugin is None or not plugin.enabled:
            raise ValidationError("Unsupported payment type", details={"payment_type": request.payment_type})

        psp_transaction_id = new_psp_transaction_id()
        context = PaymentContext(
            psp_transaction_id=psp_transaction_id,
            web_shop_client_id=request.web_shop_client_id,
            amount=request.amount,
            currency=request.currency.upper(),
            merchant_order_id=str(request.merchant_order_id),
            description=request.description,
            return_url=request.return_url,
            cancel_url=request.cancel_url,
        )

        async with self._session_maker() as session:
            session.add(PSPTransactionTable(
                psp_transaction_id=psp_transaction_id,
                web_shop_client_id=context.web_shop_client_id,
                payment_type=payment_type,
                amount=context.amount,
                currency=context.currency,
                merchant_order_id=context.merchant_order_id,
                external_transaction_id=None,
                status=int(TransactionStatus.PENDING),
            ))
            await session.commit()

        logger.info(
            "PSP transaction created",
            psp_transaction_id=psp_transaction_id,
            payment_type=payment_type,
            web_shop_client_id=request.web_shop_client_id,
        )

        try:
            result = await plugin.create_payment(context)
        except PaymentChainError as e:
            logger.warning(
                "Payment plugin failed",
                psp_transaction_id=psp_transaction_id,
                payment_type=payment_type,
                reason=e.message,
            )
            result = None
        except Exception:
            logger.exception("Payment plugin error", psp_transaction_id=psp_transaction_id, payment_type=payment_type)
            result = None

        status = TransactionStatus.PROCESSING if result is not None else TransactionStatus.FAILED
        message = PAYMENT_INITIATED_MESSAGE if result is not None else PAYMENT_NOT_INITIATED_MESSAGE

        async with self._session_maker() as session:
            await session.execute(
                update(PSPTransactionTable)
                .where(PSPTransactionTable.psp_transaction_id == psp_transaction_id)
                .where(PSPTransactionTable.status == int(TransactionStatus.PENDING))
                .values(
                    external_transaction_id=result.external_transaction_id if result else None,
                    payment_url=result.payment_url if result else None,
                    status=int(status),
                    status_message=message,
                    updated_at=utcnow(),
                )
            )
            await session.commit()

        return PSPPaymentResponse(
            success=result is not None,
            psp_transaction_id=psp_transaction_id,
            status=status,
            message=message,
            payment_url=result.payment_url if result else None,
            qr_code=result.qr_code if result else None,
        )

    async def handle_callback(self, callback: PaymentCallback) -> PSPTransactionView:
        """Apply a downstream status update. Terminal records are never changed."""
        values: Dict[str, Any] = {
            "status": int(callback.status),
            "status_message": callback.status_message,
            "updated_at": utcnow(),
        }
        if callback.external_transaction_id:
            values["external_transaction_id"] = callback.external_transaction_id
        if callback.status == TransactionStatus.COMPLETED:
            values["completed_at"] = utcnow()

        async with self._session_maker() as session:
            result = await session.execute(
                update(PSPTransactionTable)
                .where(PSPTransactionTable.psp_transaction_id == callback.psp_transaction_id)
                .where(PSPTransactionTable.status.not_in([int(s) for s in TERMINAL_STATUSES]))
                .values(**values)
            )
            await session.commit()

        transaction = await self.get_transaction(callback.psp_transaction_id)
        if transaction is None:
            raise NotFoundError("PSP transaction not found", details={"psp_transaction_id": callback.psp_transaction_id})

        if result.rowcount == 1:
            logger.info(
                "PSP transaction updated",
                psp_transaction_id=callback.psp_transaction_id,
                external_transaction_id=callback.external_transaction_id,
                status=callback.status.name,
            )
        else:
            logger.warning(
                "Ignoring callback for final PSP transaction",
                psp_transaction_id=callback.psp_transaction_id,
                status=transaction.status.name,
            )
        return transaction

    async def get_transaction(self, psp_transaction_id: str) -> Optional[PSPTransactionView]:
        async with self._session_maker() as session:
            row = await session.get(PSPTransactionTable, psp_transaction_id)
        if row is None:
            return None
        return PSPTransactionView(
            psp_transaction_id=row.psp_transaction_id,
            web_shop_client_id=row.web_shop_client_id,
            payment_type=row.payment_type,
            amount=row.amount,
            currency=row.currency,
            merchant_order_id=row.merchant_order_id,
            external_transaction_id=row.external_transaction_id,
            status=TransactionStatus(row.status),
            status_message=row.status_message,
            created_at=as_utc(row.created_at),
            completed_at=as_utc(row.completed_at),
        )
