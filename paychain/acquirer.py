"""
Acquirer Bank Adapter

The merchant's bank. A payment is first initiated (the PSP registers the
amount and redirect URLs and receives a card-entry URL), then processed
once with the shopper's card data:

    initiate_payment -> bank_payment_requests (Pending)
    process_payment  -> claim Pending -> Processing
                     -> submit_card_payment: acquirer order -> PCC -> resolved
                     -> redirect by final status, notify the PSP

submit_card_payment never raises: PCC timeouts, transport failures and
unexpected errors all come back as a Failed AcquirerResult.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import httpx
import structlog
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker

from .cards import CardData
from .db_models import AcquirerOrderTable, BankPaymentRequestTable, as_utc, utcnow
from .errors import NotFoundError, TransportError
from .schemas import (
    AcquirerOrderView,
    BankCardPaymentResponse,
    BankPaymentInitiateRequest,
    BankPaymentInitiateResponse,
    BankPaymentView,
    CardDataPayload,
    PaymentCallback,
    PCCPaymentRequest,
    PCCPaymentResponse,
    PCCStatusView,
    PCCTransactionView,
)
from .status import TERMINAL_STATUSES, TransactionStatus

logger = structlog.get_logger(__name__)

PCC_FAILURE_MESSAGE = "PCC communication failed/timeout"
INVALID_PCC_RESPONSE_MESSAGE = "Invalid response from PCC"
INTERNAL_ERROR_MESSAGE = "Internal error"

PAYMENT_COMPLETED_MESSAGE = "Payment completed successfully"
PAYMENT_FAILED_MESSAGE = "Payment could not be processed"
PAYMENT_IN_PROGRESS_MESSAGE = "Payment is being processed"

DEFAULT_REDIRECTS = {
    "success": "/payment/success",
    "failed": "/payment/failed",
    "error": "/payment/error",
}


@dataclass(frozen=True)
class AcquirerResult:
    """Outcome of one card payment attempt as seen by the acquirer."""
    success: bool
    status: TransactionStatus
    acquirer_order_id: str
    acquirer_timestamp: datetime
    status_message: Optional[str] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    issuer_order_id: Optional[str] = None
    issuer_timestamp: Optional[datetime] = None
    pcc_transaction_id: Optional[str] = None

    @classmethod
    def failed(cls, acquirer_order_id: str, acquirer_timestamp: datetime, message: str) -> AcquirerResult:
        return cls(
            success=False,
            status=TransactionStatus.FAILED,
            acquirer_order_id=acquirer_order_id,
            acquirer_timestamp=acquirer_timestamp,
            status_message=message,
            error_message=message,
        )

    @classmethod
    def from_pcc(cls, response: PCCPaymentResponse) -> AcquirerResult:
        return cls(
            success=response.success,
            status=response.status,
            acquirer_order_id=response.acquirer_order_id,
            acquirer_timestamp=response.acquirer_timestamp,
            status_message=response.status_message,
            error_message=response.error_message,
            error_code=response.error_code,
            issuer_order_id=response.issuer_order_id,
            issuer_timestamp=response.issuer_timestamp,
            pcc_transaction_id=response.transaction_id,
        )


def select_redirect(payment: BankPaymentRequestTable, status: TransactionStatus) -> str:
    if status == TransactionStatus.COMPLETED:
        return payment.success_url or DEFAULT_REDIRECTS["success"]
    if status == TransactionStatus.FAILED:
        return payment.failed_url or DEFAULT_REDIRECTS["failed"]
    return payment.error_url or DEFAULT_REDIRECTS["error"]


def customer_message(result: AcquirerResult) -> str:
    """What the shopper sees. Only an issuer decline reason is passed through."""
    if result.success:
        return PAYMENT_COMPLETED_MESSAGE
    if result.error_code == "IssuerRejected" and result.status_message:
        return result.status_message
    return PAYMENT_FAILED_MESSAGE


class PCCClient:
    """HTTP client for the PCC relay."""

    def __init__(self, base_url: str, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def process_payment(self, request: PCCPaymentRequest) -> PCCPaymentResponse:
        payload = request.model_dump(mode="json", by_alias=True)
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await asyncio.wait_for(
                    client.post(f"{self.base_url}/api/pcc/process-payment", json=payload), timeout=self.timeout
                )
            except (httpx.HTTPError, asyncio.TimeoutError) as e:
                raise TransportError(PCC_FAILURE_MESSAGE, details={"cause": type(e).__name__})

        if not response.is_success:
            raise TransportError(PCC_FAILURE_MESSAGE, details={"http_status": response.status_code})
        try:
            return PCCPaymentResponse.model_validate(response.json())
        except (ValueError, PydanticValidationError):
            raise TransportError(INVALID_PCC_RESPONSE_MESSAGE)

    async def transaction_status(self, acquirer_order_id: str) -> Optional[PCCTransactionView]:
        """None when the PCC has no record of the order."""
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await asyncio.wait_for(
                    client.get(f"{self.base_url}/api/pcc/transaction/{acquirer_order_id}/status"),
                    timeout=self.timeout,
                )
            except (httpx.HTTPError, asyncio.TimeoutError) as e:
                raise TransportError(PCC_FAILURE_MESSAGE, details={"cause": type(e).__name__})

        if response.status_code == 404:
            return None
        if not response.is_success:
            raise TransportError(PCC_FAILURE_MESSAGE, details={"http_status": response.status_code})
        try:
            return PCCTransactionView.model_validate(response.json())
        except (ValueError, PydanticValidationError):
            raise TransportError(INVALID_PCC_RESPONSE_MESSAGE)


class AcquirerService:
    def __init__(
        self,
        session_maker: async_sessionmaker,
        pcc_client: PCCClient,
        bank_frontend_url: str = "http://localhost:3002",
        psp_callback_url: Optional[str] = None,
        notify_timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._session_maker = session_maker
        self.pcc_client = pcc_client
        self.bank_frontend_url = bank_frontend_url.rstrip("/")
        self.psp_callback_url = psp_callback_url
        self.notify_timeout = notify_timeout
        self.transport = transport

    async def initiate_payment(self, request: BankPaymentInitiateRequest) -> BankPaymentInitiateResponse:
        payment_id = str(uuid.uuid4())
        async with self._session_maker() as session:
            session.add(BankPaymentRequestTable(
                payment_id=payment_id,
                merchant_id=request.merchant_id,
                amount=request.amount,
                currency=request.currency.upper(),
                merchant_order_id=request.merchant_order_id,
                merchant_timestamp=request.merchant_timestamp or utcnow(),
                psp_transaction_id=request.psp_transaction_id,
                success_url=request.success_url,
                failed_url=request.failed_url,
                error_url=request.error_url,
                callback_url=request.callback_url,
                status=int(TransactionStatus.PENDING),
            ))
            await session.commit()

        logger.info(
            "Bank payment initiated",
            payment_id=payment_id,
            merchant_id=request.merchant_id,
            psp_transaction_id=request.psp_transaction_id,
        )
        return BankPaymentInitiateResponse(
            success=True,
            payment_id=payment_id,
            payment_url=f"{self.bank_frontend_url}/card-payment?paymentId={payment_id}",
            message="Payment initiated",
        )

    async def process_payment(self, payment_id: str, card: CardData) -> BankCardPaymentResponse:
        payment = await self._load_payment(payment_id)

        async with self._session_maker() as session:
            claim = await session.execute(
                update(BankPaymentRequestTable)
                .where(BankPaymentRequestTable.payment_id == payment_id)
                .where(BankPaymentRequestTable.status == int(TransactionStatus.PENDING))
                .values(status=int(TransactionStatus.PROCESSING), updated_at=utcnow())
            )
            await session.commit()

        if claim.rowcount != 1:
            logger.info("Payment already processed", payment_id=payment_id)
            return self._to_response(await self._load_payment(payment_id))

        result = await self.submit_card_payment(
            merchant_id=payment.merchant_id,
            amount=payment.amount,
            currency=payment.currency,
            card=card,
            payment_id=payment_id,
        )

        async with self._session_maker() as session:
            await session.execute(
                update(BankPaymentRequestTable)
                .where(BankPaymentRequestTable.payment_id == payment_id)
                .values(
                    status=int(result.status),
                    status_message=customer_message(result),
                    acquirer_order_id=result.acquirer_order_id,
                    updated_at=utcnow(),
                )
            )
            await session.commit()

        payment = await self._load_payment(payment_id)
        await self._notify_psp(payment, result)
        return self._to_response(payment)

    async def submit_card_payment(
        self,
        merchant_id: str,
        amount: Decimal,
        currency: str,
        card: CardData,
        payment_id: Optional[str] = None,
    ) -> AcquirerResult:
        acquirer_order_id = str(uuid.uuid4())
        acquirer_timestamp = datetime.now(timezone.utc)

        try:
            await self._open_order(acquirer_order_id, acquirer_timestamp, merchant_id, amount, currency, card, payment_id)
            result = await self._forward_to_pcc(acquirer_order_id, acquirer_timestamp, merchant_id, amount, currency, card)
        except Exception:
            logger.exception("Acquirer processing failed", acquirer_order_id=acquirer_order_id)
            result = AcquirerResult.failed(acquirer_order_id, acquirer_timestamp, INTERNAL_ERROR_MESSAGE)

        try:
            await self._close_order(result)
        except Exception:
            logger.exception("Could not record acquirer order outcome", acquirer_order_id=acquirer_order_id)

        logger.info(
            "Acquirer order resolved",
            acquirer_order_id=acquirer_order_id,
            payment_id=payment_id,
            issuer_order_id=result.issuer_order_id,
            status=result.status.name,
        )
        return result

    async def _open_order(
        self,
        acquirer_order_id: str,
        acquirer_timestamp: datetime,
        merchant_id: str,
        amount: Decimal,
        currency: str,
        card: CardData,
        payment_id: Optional[str],
    ) -> None:
        async with self._session_maker() as session:
            session.add(AcquirerOrderTable(
                acquirer_order_id=acquirer_order_id,
                acquirer_timestamp=acquirer_timestamp,
                payment_id=payment_id,
                merchant_id=merchant_id,
                amount=amount,
                currency=currency,
                masked_pan=card.masked_pan,
                status=int(TransactionStatus.PENDING),
            ))
            await session.commit()

            await session.execute(
                update(AcquirerOrderTable)
                .where(AcquirerOrderTable.acquirer_order_id == acquirer_order_id)
                .values(status=int(TransactionStatus.PROCESSING), updated_at=utcnow())
            )
            await session.commit()

    async def _forward_to_pcc(
        self,
        acquirer_order_id: str,
        acquirer_timestamp: datetime,
        merchant_id: str,
        amount: Decimal,
        currency: str,
        card: CardData,
    ) -> AcquirerResult:
        pcc_request = PCCPaymentRequest(
            acquirer_order_id=acquirer_order_id,
            acquirer_timestamp=acquirer_timestamp,
            card_data=CardDataPayload(
                pan=card.pan,
                security_code=card.security_code,
                card_holder_name=card.card_holder_name,
                expiry_date=card.expiry_date,
            ),
            amount=amount,
            currency=currency,
            merchant_id=merchant_id,
        )

        logger.info("Forwarding to PCC", acquirer_order_id=acquirer_order_id, pan=card.masked_pan)
        try:
            response = await self.pcc_client.process_payment(pcc_request)
        except TransportError as e:
            logger.warning("PCC call failed", acquirer_order_id=acquirer_order_id, reason=e.message, **e.details)
            return AcquirerResult.failed(acquirer_order_id, acquirer_timestamp, PCC_FAILURE_MESSAGE)

        if response.acquirer_order_id != acquirer_order_id:
            logger.error(
                "PCC response does not match order",
                acquirer_order_id=acquirer_order_id,
                response_order_id=response.acquirer_order_id,
            )
            return AcquirerResult.failed(acquirer_order_id, acquirer_timestamp, INVALID_PCC_RESPONSE_MESSAGE)

        return AcquirerResult.from_pcc(response)

    async def _close_order(self, result: AcquirerResult) -> None:
        async with self._session_maker() as session:
            await session.execute(
                update(AcquirerOrderTable)
                .where(AcquirerOrderTable.acquirer_order_id == result.acquirer_order_id)
                .where(AcquirerOrderTable.status.not_in([int(s) for s in TERMINAL_STATUSES]))
                .values(
                    status=int(result.status),
                    status_message=result.status_message,
                    issuer_order_id=result.issuer_order_id,
                    issuer_timestamp=result.issuer_timestamp,
                    pcc_transaction_id=result.pcc_transaction_id,
                    updated_at=utcnow(),
                )
            )
            await session.commit()

    async def _notify_psp(self, payment: BankPaymentRequestTable, result: AcquirerResult) -> None:
        callback_url = payment.callback_url or self.psp_callback_url
        if not payment.psp_transaction_id or not callback_url:
            return

        callback = PaymentCallback(
            psp_transaction_id=payment.psp_transaction_id,
            external_transaction_id=result.acquirer_order_id,
            status=result.status,
            status_message=customer_message(result),
        )
        async with httpx.AsyncClient(timeout=self.notify_timeout, transport=self.transport) as client:
            try:
                response = await client.post(callback_url, json=callback.model_dump(mode="json", by_alias=True))
            except httpx.HTTPError as e:
                logger.warning(
                    "PSP notification failed",
                    psp_transaction_id=payment.psp_transaction_id,
                    error=str(e),
                )
                return

        if not response.is_success:
            logger.warning(
                "PSP notification rejected",
                psp_transaction_id=payment.psp_transaction_id,
                http_status=response.status_code,
            )

    async def _load_payment(self, payment_id: str) -> BankPaymentRequestTable:
        async with self._session_maker() as session:
            payment = await session.get(BankPaymentRequestTable, payment_id)
        if payment is None:
            raise NotFoundError("Payment not found", details={"payment_id": payment_id})
        return payment

    def _to_response(self, payment: BankPaymentRequestTable) -> BankCardPaymentResponse:
        status = TransactionStatus(payment.status)
        return BankCardPaymentResponse(
            success=status == TransactionStatus.COMPLETED,
            status=status,
            message=payment.status_message or PAYMENT_IN_PROGRESS_MESSAGE,
            redirect_url=select_redirect(payment, status),
            payment_id=payment.payment_id,
            acquirer_order_id=payment.acquirer_order_id,
        )

    async def get_payment(self, payment_id: str) -> BankPaymentView:
        payment = await self._load_payment(payment_id)
        status = TransactionStatus(payment.status)
        return BankPaymentView(
            payment_id=payment.payment_id,
            merchant_id=payment.merchant_id,
            merchant_order_id=payment.merchant_order_id,
            amount=payment.amount,
            currency=payment.currency,
            status=status,
            message=payment.status_message or PAYMENT_IN_PROGRESS_MESSAGE,
            redirect_url=select_redirect(payment, status) if status.is_terminal else None,
            psp_transaction_id=payment.psp_transaction_id,
            acquirer_order_id=payment.acquirer_order_id,
        )

    async def get_order(self, acquirer_order_id: str) -> Optional[AcquirerOrderView]:
        async with self._session_maker() as session:
            row = await session.get(AcquirerOrderTable, acquirer_order_id)
        if row is None:
            return None
        return AcquirerOrderView(
            acquirer_order_id=row.acquirer_order_id,
            acquirer_timestamp=as_utc(row.acquirer_timestamp),
            payment_id=row.payment_id,
            merchant_id=row.merchant_id,
            amount=row.amount,
            currency=row.currency,
            pan=row.masked_pan,
            status=TransactionStatus(row.status),
            status_message=row.status_message,
            issuer_order_id=row.issuer_order_id,
            issuer_timestamp=as_utc(row.issuer_timestamp),
            pcc_transaction_id=row.pcc_transaction_id,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )

    async def pcc_status(self, acquirer_order_id: str) -> PCCStatusView:
        """Compare the local order with the PCC's record of it."""
        local = await self.get_order(acquirer_order_id)
        if local is None:
            raise NotFoundError("Acquirer order not found", details={"acquirer_order_id": acquirer_order_id})

        try:
            remote = await self.pcc_client.transaction_status(acquirer_order_id)
        except TransportError as e:
            logger.warning("PCC status query failed", acquirer_order_id=acquirer_order_id, reason=e.message)
            return PCCStatusView(acquirer_order_id=acquirer_order_id, reachable=False, found=False)

        if remote is None:
            return PCCStatusView(acquirer_order_id=acquirer_order_id, reachable=True, found=False)

        return PCCStatusView(
            acquirer_order_id=acquirer_order_id,
            reachable=True,
            found=True,
            status=remote.status,
            status_message=remote.status_message,
            issuer_order_id=remote.issuer_order_id,
            matches_local=remote.status == local.status and remote.issuer_order_id == local.issuer_order_id,
        )
