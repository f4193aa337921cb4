"""
Issuer Bank Adapter

The cardholder's bank. Validates the card against its own records,
decides accept/decline, and mints an issuer order for every request it
receives, approved or declined, so each attempt is auditable.

Validation order, first failure wins:
1. Card match: PAN, holder name, expiry and security code must all match
   a stored, active, unexpired card. Every mismatch produces the same
   generic decline so the endpoint cannot be used to enumerate cards.
2. Authorization: pluggable decision on the matched card and amount,
   followed by an atomic balance reservation.
"""

from __future__ import annotations

import hashlib
import hmac
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .cards import is_expired, mask_pan
from .db_models import IssuerCardTable, IssuerOrderTable, as_utc
from .errors import BusinessDecline, ValidationError
from .schemas import (
    IssuerBankRequest,
    IssuerBankResponse,
    IssuerCardCreate,
    IssuerCardView,
    IssuerOrderView,
)
from .status import TransactionStatus

logger = structlog.get_logger(__name__)

CARD_DECLINED_MESSAGE = "Card not found or invalid"
INSUFFICIENT_FUNDS_MESSAGE = "Insufficient funds"
APPROVED_MESSAGE = "Payment processed successfully"
ISSUER_ERROR_MESSAGE = "Issuer processing error"

# Compared against when no card matches, so a miss costs the same as a hit.
_DUMMY_DIGEST = hashlib.sha256(b"no-card").hexdigest()


def hash_security_code(pan: str, security_code: str) -> str:
    return hashlib.sha256(f"{pan}:{security_code}".encode()).hexdigest()


@dataclass(frozen=True)
class AuthorizationDecision:
    approved: bool
    reason: Optional[str] = None
    status: TransactionStatus = TransactionStatus.FAILED


Authorizer = Callable[[IssuerCardTable, Decimal], AuthorizationDecision]


def balance_authorizer(card: IssuerCardTable, amount: Decimal) -> AuthorizationDecision:
    """Default decision: approve while the available balance covers the amount."""
    if card.balance < amount:
        return AuthorizationDecision(approved=False, reason=INSUFFICIENT_FUNDS_MESSAGE)
    return AuthorizationDecision(approved=True)


class IssuerService:
    def __init__(self, session_maker: async_sessionmaker, authorizer: Authorizer = balance_authorizer):
        self._session_maker = session_maker
        self.authorizer = authorizer

    async def register_card(self, card: IssuerCardCreate) -> IssuerCardView:
        if is_expired(card.expiry_date):
            raise ValidationError("Card is already expired")

        row = IssuerCardTable(
            pan=card.pan,
            card_holder_name=card.card_holder_name.strip(),
            expiry_date=card.expiry_date,
            security_code_hash=hash_security_code(card.pan, card.security_code),
            balance=card.balance,
            currency=card.currency.upper(),
            active=True,
        )
        async with self._session_maker() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise ValidationError("Card already registered")
            await session.refresh(row)

        logger.info("Issuer card registered", pan=mask_pan(card.pan))
        return IssuerCardView(
            id=row.id,
            pan=mask_pan(row.pan),
            card_holder_name=row.card_holder_name,
            expiry_date=row.expiry_date,
            balance=row.balance,
            currency=row.currency,
            active=row.active,
        )

    async def process_issuer_request(self, request: IssuerBankRequest) -> IssuerBankResponse:
        """Decide on a PCC request. Never raises; every outcome is a response."""
        async with self._session_maker() as session:
            try:
                await self._authorize(session, request)
                success, status, message = True, TransactionStatus.COMPLETED, APPROVED_MESSAGE
            except BusinessDecline as decline:
                await session.rollback()
                success, status, message = False, decline.status, decline.message
            except Exception:
                logger.exception("Issuer processing failed", acquirer_order_id=request.acquirer_order_id)
                await session.rollback()
                success, status, message = False, TransactionStatus.FAILED, ISSUER_ERROR_MESSAGE

            order = IssuerOrderTable(
                issuer_order_id=str(uuid.uuid4()),
                issuer_timestamp=datetime.now(timezone.utc),
                acquirer_order_id=request.acquirer_order_id,
                acquirer_timestamp=request.acquirer_timestamp,
                masked_pan=mask_pan(request.pan),
                amount=request.amount,
                merchant_id=request.merchant_id,
                success=success,
                status=int(status),
                status_message=message,
            )
            session.add(order)
            await session.commit()

        logger.info(
            "Issuer decision",
            acquirer_order_id=request.acquirer_order_id,
            issuer_order_id=order.issuer_order_id,
            pan=mask_pan(request.pan),
            success=success,
            status=status.name,
        )
        return IssuerBankResponse(
            success=success,
            issuer_order_id=order.issuer_order_id,
            issuer_timestamp=order.issuer_timestamp,
            status=status,
            status_message=message,
        )

    async def _authorize(self, session: AsyncSession, request: IssuerBankRequest) -> None:
        card = await self._match_card(session, request)

        decision = self.authorizer(card, request.amount)
        if not decision.approved:
            raise BusinessDecline(decision.reason or CARD_DECLINED_MESSAGE, status=decision.status)

        # Reserve funds; the guard keeps concurrent requests from overdrawing.
        result = await session.execute(
            update(IssuerCardTable)
            .where(IssuerCardTable.id == card.id)
            .where(IssuerCardTable.balance >= request.amount)
            .values(balance=IssuerCardTable.balance - request.amount)
        )
        if result.rowcount != 1:
            raise BusinessDecline(INSUFFICIENT_FUNDS_MESSAGE)

    async def _match_card(self, session: AsyncSession, request: IssuerBankRequest) -> IssuerCardTable:
        result = await session.execute(select(IssuerCardTable).where(IssuerCardTable.pan == request.pan))
        card = result.scalar_one_or_none()

        expected = card.security_code_hash if card else _DUMMY_DIGEST
        code_matches = hmac.compare_digest(expected, hash_security_code(request.pan, request.security_code))

        if (
            card is None
            or not code_matches
            or not card.active
            or card.card_holder_name != request.card_holder_name.strip()
            or card.expiry_date != request.expiry_date
            or is_expired(card.expiry_date)
        ):
            raise BusinessDecline(CARD_DECLINED_MESSAGE)
        return card

    async def get_order(self, issuer_order_id: str) -> Optional[IssuerOrderView]:
        async with self._session_maker() as session:
            row = await session.get(IssuerOrderTable, issuer_order_id)
            if row is None:
                return None
            return IssuerOrderView(
                issuer_order_id=row.issuer_order_id,
                issuer_timestamp=as_utc(row.issuer_timestamp),
                acquirer_order_id=row.acquirer_order_id,
                acquirer_timestamp=as_utc(row.acquirer_timestamp),
                pan=row.masked_pan,
                amount=row.amount,
                merchant_id=row.merchant_id,
                success=row.success,
                status=TransactionStatus(row.status),
                status_message=row.status_message,
            )
