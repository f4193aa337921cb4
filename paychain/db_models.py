from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, DateTime, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base
from .status import TransactionStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize to UTC. Naive values are taken as UTC: every timestamp is
    stored in UTC and SQLite drops tzinfo on the way back.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


Money = Numeric(18, 2, asdecimal=True)


class PCCTransactionTable(Base):
    __tablename__ = "pcc_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    acquirer_order_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    acquirer_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    issuer_order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    issuer_timestamp: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    masked_pan: Mapped[str] = mapped_column(String(19))
    amount: Mapped[Decimal] = mapped_column(Money)
    currency: Mapped[str] = mapped_column(String(3))
    merchant_id: Mapped[str] = mapped_column(String(64))
    status: Mapped[int] = mapped_column(Integer, default=int(TransactionStatus.PENDING))
    status_message: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class BankPaymentRequestTable(Base):
    __tablename__ = "bank_payment_requests"

    payment_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    merchant_id: Mapped[str] = mapped_column(String(64))
    amount: Mapped[Decimal] = mapped_column(Money)
    currency: Mapped[str] = mapped_column(String(3))
    merchant_order_id: Mapped[str] = mapped_column(String(64))
    merchant_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    psp_transaction_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    success_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    failed_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    error_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    callback_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    status: Mapped[int] = mapped_column(Integer, default=int(TransactionStatus.PENDING))
    status_message: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    acquirer_order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class AcquirerOrderTable(Base):
    __tablename__ = "acquirer_orders"

    acquirer_order_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    acquirer_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    payment_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    merchant_id: Mapped[str] = mapped_column(String(64))
    amount: Mapped[Decimal] = mapped_column(Money)
    currency: Mapped[str] = mapped_column(String(3))
    masked_pan: Mapped[str] = mapped_column(String(19))
    status: Mapped[int] = mapped_column(Integer, default=int(TransactionStatus.PENDING))
    status_message: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    issuer_order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    issuer_timestamp: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    pcc_transaction_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class IssuerCardTable(Base):
    __tablename__ = "issuer_cards"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pan: Mapped[str] = mapped_column(String(19), unique=True, index=True)
    card_holder_name: Mapped[str] = mapped_column(String(100))
    expiry_date: Mapped[str] = mapped_column(String(5))
    security_code_hash: Mapped[str] = mapped_column(String(64))
    balance: Mapped[Decimal] = mapped_column(Money)
    currency: Mapped[str] = mapped_column(String(3), default="RSD")
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class IssuerOrderTable(Base):
    __tablename__ = "issuer_orders"

    issuer_order_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    issuer_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    acquirer_order_id: Mapped[str] = mapped_column(String(64), index=True)
    acquirer_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    masked_pan: Mapped[str] = mapped_column(String(19))
    amount: Mapped[Decimal] = mapped_column(Money)
    merchant_id: Mapped[str] = mapped_column(String(64))
    success: Mapped[bool] = mapped_column(Boolean)
    status: Mapped[int] = mapped_column(Integer)
    status_message: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)


class PSPTransactionTable(Base):
    __tablename__ = "psp_transactions"

    psp_transaction_id: Mapped[str] = mapped_column(String(40), primary_key=True)
    web_shop_client_id: Mapped[str] = mapped_column(String(64))
    payment_type: Mapped[str] = mapped_column(String(20))
    amount: Mapped[Decimal] = mapped_column(Money)
    currency: Mapped[str] = mapped_column(String(3))
    merchant_order_id: Mapped[str] = mapped_column(String(36))
    external_transaction_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    status: Mapped[int] = mapped_column(Integer, default=int(TransactionStatus.PENDING))
    status_message: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payment_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
