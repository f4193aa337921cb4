"""
Payment Card Center (PCC) Router/Relay

Central hub between acquirer and issuer banks. For every acquirer order:

1. Record: open a Pending transaction keyed by acquirerOrderId. A duplicate
   id replays the stored result instead of being processed again.
2. Route: resolve the issuer bank from the card BIN.
3. Forward: POST the issuer request with a bounded deadline.
4. Resolve: write the issuer outcome onto the transaction in one atomic
   update and answer from the stored record.

Duplicates of the same acquirerOrderId are serialized in-process with a
per-order lock; a duplicate that finds a Pending record owned by another
process polls until it is terminal or the issuer deadline has passed.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator, Dict, List, Optional

import httpx
import structlog
from pydantic import ValidationError as PydanticValidationError

from .cards import CardData
from .db_models import utcnow
from .errors import IssuerUnavailableError, RoutingError, TransportError
from .ledger import PCCTransaction, Resolution, TransactionStore
from .routing import BankEndpoint, BankRouter
from .schemas import (
    IssuerBankRequest,
    IssuerBankResponse,
    PCCPaymentRequest,
    PCCPaymentResponse,
    PCCTransactionView,
)
from .status import TransactionStatus

logger = structlog.get_logger(__name__)

ISSUER_UNAVAILABLE_MESSAGE = "Issuer bank service unavailable"
INVALID_ISSUER_RESPONSE_MESSAGE = "Invalid response from issuer bank"
ISSUER_TIMEOUT_MESSAGE = "Transaction timed out awaiting issuer response"
INTERNAL_ERROR_MESSAGE = "Internal error"

PENDING_GRACE_SECONDS = 1.0
PENDING_POLL_INTERVAL = 0.1


class IssuerClient:
    """HTTP client for the issuer bank's process endpoint."""

    PROCESS_PATH = "/api/bank/issuer/process"

    def __init__(self, timeout: float = 15.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout
        self.transport = transport

    async def process(self, issuer_url: str, request: IssuerBankRequest) -> IssuerBankResponse:
        """Raises IssuerUnavailableError for anything other than a well-formed issuer answer."""
        url = f"{issuer_url}{self.PROCESS_PATH}"
        payload = request.model_dump(mode="json", by_alias=True)

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await asyncio.wait_for(client.post(url, json=payload), timeout=self.timeout)
            except (httpx.HTTPError, asyncio.TimeoutError) as e:
                raise IssuerUnavailableError(ISSUER_UNAVAILABLE_MESSAGE, details={"cause": type(e).__name__})

        if not response.is_success:
            raise IssuerUnavailableError(ISSUER_UNAVAILABLE_MESSAGE, details={"http_status": response.status_code})

        try:
            issuer_response = IssuerBankResponse.model_validate(response.json())
        except (ValueError, PydanticValidationError):
            raise IssuerUnavailableError(INVALID_ISSUER_RESPONSE_MESSAGE)

        # An answer that is not final, or whose flag contradicts its status, is unusable.
        if not issuer_response.status.is_terminal or issuer_response.success != (
            issuer_response.status == TransactionStatus.COMPLETED
        ):
            raise IssuerUnavailableError(INVALID_ISSUER_RESPONSE_MESSAGE)
        return issuer_response


class PCCService:
    def __init__(
        self,
        store: TransactionStore,
        router: BankRouter,
        issuer_client: IssuerClient,
        issuer_timeout: float = 15.0,
    ):
        self.store = store
        self.router = router
        self.issuer_client = issuer_client
        self.issuer_timeout = issuer_timeout
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def _order_lock(self, acquirer_order_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(acquirer_order_id, asyncio.Lock())
        self._lock_waiters[acquirer_order_id] = self._lock_waiters.get(acquirer_order_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_waiters[acquirer_order_id] -= 1
            if not self._lock_waiters[acquirer_order_id]:
                del self._lock_waiters[acquirer_order_id]
                del self._locks[acquirer_order_id]

    async def process_payment(self, request: PCCPaymentRequest) -> PCCPaymentResponse:
        # Card validation happens before anything is recorded.
        card = request.card_data.to_card()
        order_id = request.acquirer_order_id

        async with self._order_lock(order_id):
            transaction, created = await self.store.create_if_absent(PCCTransaction.open(
                acquirer_order_id=order_id,
                acquirer_timestamp=request.acquirer_timestamp,
                masked_pan=card.masked_pan,
                amount=request.amount,
                currency=request.currency.upper(),
                merchant_id=request.merchant_id,
            ))

            if not created:
                if not transaction.is_resolved:
                    transaction = await self._await_resolution(transaction)
                logger.info(
                    "Replaying PCC transaction",
                    acquirer_order_id=order_id,
                    status=transaction.status.name,
                )
                return self._to_response(transaction)

            logger.info(
                "PCC transaction recorded",
                acquirer_order_id=order_id,
                transaction_id=transaction.id,
                pan=card.masked_pan,
                amount=str(request.amount),
            )

            try:
                resolution = await self._route_and_forward(card, request)
            except Exception:
                logger.exception("PCC processing failed", acquirer_order_id=order_id)
                resolution = Resolution(
                    status=TransactionStatus.FAILED,
                    status_message=INTERNAL_ERROR_MESSAGE,
                    error_code="InternalError",
                )

            transaction, applied = await self.store.resolve(order_id, resolution)
            logger.info(
                "PCC transaction resolved",
                acquirer_order_id=order_id,
                issuer_order_id=transaction.issuer_order_id,
                status=transaction.status.name,
                applied=applied,
            )
            return self._to_response(transaction)

    async def _route_and_forward(self, card: CardData, request: PCCPaymentRequest) -> Resolution:
        try:
            issuer_url = self.router.resolve(card.pan)
        except RoutingError as e:
            logger.warning("Issuer bank not found", acquirer_order_id=request.acquirer_order_id, bin=card.bin)
            return Resolution(status=TransactionStatus.FAILED, status_message=e.message, error_code=e.error_code)

        issuer_request = IssuerBankRequest(
            acquirer_order_id=request.acquirer_order_id,
            acquirer_timestamp=request.acquirer_timestamp,
            pan=card.pan,
            security_code=card.security_code,
            card_holder_name=card.card_holder_name,
            expiry_date=card.expiry_date,
            amount=request.amount,
            currency=request.currency.upper(),
            merchant_id=request.merchant_id,
        )

        logger.info("Forwarding to issuer", acquirer_order_id=request.acquirer_order_id, issuer_url=issuer_url)
        try:
            issuer_response = await self.issuer_client.process(issuer_url, issuer_request)
        except TransportError as e:
            logger.warning(
                "Issuer call failed",
                acquirer_order_id=request.acquirer_order_id,
                issuer_url=issuer_url,
                reason=e.message,
                **e.details,
            )
            return Resolution(status=TransactionStatus.FAILED, status_message=e.message, error_code=e.error_code)

        return Resolution(
            status=issuer_response.status,
            status_message=issuer_response.status_message,
            issuer_order_id=issuer_response.issuer_order_id,
            issuer_timestamp=issuer_response.issuer_timestamp,
            error_code=None if issuer_response.success else "IssuerRejected",
        )

    async def _await_resolution(self, transaction: PCCTransaction) -> PCCTransaction:
        """Wait out a Pending record owned elsewhere; finalize it Failed once its deadline passes."""
        deadline = transaction.created_at + timedelta(seconds=self.issuer_timeout + PENDING_GRACE_SECONDS)

        while utcnow() < deadline:
            await asyncio.sleep(PENDING_POLL_INTERVAL)
            current = await self.store.get(transaction.acquirer_order_id)
            if current is not None and current.is_resolved:
                return current

        logger.warning("Finalizing stale pending transaction", acquirer_order_id=transaction.acquirer_order_id)
        resolved, _ = await self.store.resolve(
            transaction.acquirer_order_id,
            Resolution(
                status=TransactionStatus.FAILED,
                status_message=ISSUER_TIMEOUT_MESSAGE,
                error_code="IssuerUnavailable",
            ),
        )
        return resolved

    @staticmethod
    def _to_response(transaction: PCCTransaction) -> PCCPaymentResponse:
        return PCCPaymentResponse(
            success=transaction.success,
            transaction_id=transaction.id,
            issuer_order_id=transaction.issuer_order_id,
            issuer_timestamp=transaction.issuer_timestamp,
            error_message=None if transaction.success else transaction.status_message,
            error_code=transaction.error_code,
            status_message=transaction.status_message,
            status=transaction.status,
            acquirer_order_id=transaction.acquirer_order_id,
            acquirer_timestamp=transaction.acquirer_timestamp,
        )

    async def get_transaction(self, acquirer_order_id: str) -> Optional[PCCTransactionView]:
        transaction = await self.store.get(acquirer_order_id)
        return to_view(transaction) if transaction else None

    async def list_transactions(self, limit: int = 100) -> List[PCCTransactionView]:
        return [to_view(t) for t in await self.store.list(limit)]

    def lookup_bank(self, bin_code: str) -> Optional[BankEndpoint]:
        # Padded so a bare BIN goes through the same lookup as a full PAN.
        return self.router.lookup(bin_code.ljust(16, "0"))


def to_view(transaction: PCCTransaction) -> PCCTransactionView:
    return PCCTransactionView(
        id=transaction.id,
        acquirer_order_id=transaction.acquirer_order_id,
        acquirer_timestamp=transaction.acquirer_timestamp,
        issuer_order_id=transaction.issuer_order_id,
        issuer_timestamp=transaction.issuer_timestamp,
        pan=transaction.masked_pan,
        amount=transaction.amount,
        currency=transaction.currency,
        merchant_id=transaction.merchant_id,
        status=transaction.status,
        status_message=transaction.status_message,
        created_at=transaction.created_at,
        updated_at=transaction.updated_at,
    )
