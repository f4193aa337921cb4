"""
Payment Chain API Models

Pydantic models for every request/response crossing a service boundary.
JSON field names are camelCase, statuses travel as their integer value.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Optional
from uuid import UUID

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .cards import CardData
from .db_models import as_utc
from .status import TransactionStatus

PAN_PATTERN = r"^\d{12,19}$"
EXPIRY_PATTERN = r"^(0[1-9]|1[0-2])/\d{2}$"
SECURITY_CODE_PATTERN = r"^\d{3,4}$"

# Offsets are folded into UTC on the way in so stored and echoed timestamps agree.
UtcDateTime = Annotated[datetime, AfterValidator(as_utc)]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class APIError(BaseModel):
    """Standard API error response"""
    error: str = Field(..., description="Error code")
    message: str = Field(..., description="Human readable error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")


class HealthResponse(CamelModel):
    status: str = "healthy"
    timestamp: UtcDateTime
    version: str = "0.1.0"
    banks_count: int = 0


# ---------------------------------------------------------------- card data

class CardDataPayload(CamelModel):
    pan: str = Field(..., pattern=PAN_PATTERN)
    security_code: str = Field(..., pattern=SECURITY_CODE_PATTERN)
    card_holder_name: str = Field(..., min_length=1, max_length=100)
    expiry_date: str = Field(..., pattern=EXPIRY_PATTERN, description="MM/YY")

    def to_card(self) -> CardData:
        return CardData(
            pan=self.pan,
            card_holder_name=self.card_holder_name,
            expiry_date=self.expiry_date,
            security_code=self.security_code,
        )


# ---------------------------------------------------------------- PCC

class PCCPaymentRequest(CamelModel):
    acquirer_order_id: str = Field(..., min_length=1, max_length=64)
    acquirer_timestamp: UtcDateTime
    card_data: CardDataPayload
    amount: Decimal = Field(..., gt=0, max_digits=18, decimal_places=2)
    currency: str = Field(default="RSD", min_length=3, max_length=3)
    merchant_id: str = Field(..., min_length=1, max_length=64)


class PCCPaymentResponse(CamelModel):
    success: bool
    transaction_id: Optional[str] = None
    issuer_order_id: Optional[str] = None
    issuer_timestamp: Optional[UtcDateTime] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    status_message: Optional[str] = None
    status: TransactionStatus
    acquirer_order_id: str
    acquirer_timestamp: UtcDateTime


class PCCTransactionView(CamelModel):
    id: str
    acquirer_order_id: str
    acquirer_timestamp: UtcDateTime
    issuer_order_id: Optional[str] = None
    issuer_timestamp: Optional[UtcDateTime] = None
    pan: str = Field(..., description="Masked PAN")
    amount: Decimal
    currency: str
    merchant_id: str
    status: TransactionStatus
    status_message: Optional[str] = None
    created_at: UtcDateTime
    updated_at: Optional[UtcDateTime] = None


class BankRouteView(CamelModel):
    bin: str
    name: str
    url: str


# ---------------------------------------------------------------- issuer

class IssuerBankRequest(CamelModel):
    acquirer_order_id: str = Field(..., min_length=1, max_length=64)
    acquirer_timestamp: UtcDateTime
    pan: str = Field(..., pattern=PAN_PATTERN)
    security_code: str = Field(..., pattern=SECURITY_CODE_PATTERN)
    card_holder_name: str = Field(..., min_length=1, max_length=100)
    expiry_date: str = Field(..., pattern=EXPIRY_PATTERN)
    amount: Decimal = Field(..., gt=0, max_digits=18, decimal_places=2)
    currency: str = Field(default="RSD", min_length=3, max_length=3)
    merchant_id: str = Field(..., min_length=1, max_length=64)


class IssuerBankResponse(CamelModel):
    success: bool
    issuer_order_id: Optional[str] = None
    issuer_timestamp: Optional[UtcDateTime] = None
    status: TransactionStatus
    status_message: Optional[str] = None


class IssuerCardCreate(CamelModel):
    pan: str = Field(..., pattern=PAN_PATTERN)
    card_holder_name: str = Field(..., min_length=1, max_length=100)
    expiry_date: str = Field(..., pattern=EXPIRY_PATTERN)
    security_code: str = Field(..., pattern=SECURITY_CODE_PATTERN)
    balance: Decimal = Field(default=Decimal("0"), ge=0)
    currency: str = Field(default="RSD", min_length=3, max_length=3)


class IssuerCardView(CamelModel):
    id: int
    pan: str = Field(..., description="Masked PAN")
    card_holder_name: str
    expiry_date: str
    balance: Decimal
    currency: str
    active: bool


class IssuerOrderView(CamelModel):
    issuer_order_id: str
    issuer_timestamp: UtcDateTime
    acquirer_order_id: str
    acquirer_timestamp: UtcDateTime
    pan: str = Field(..., description="Masked PAN")
    amount: Decimal
    merchant_id: str
    success: bool
    status: TransactionStatus
    status_message: Optional[str] = None


# ---------------------------------------------------------------- acquirer

class BankPaymentInitiateRequest(CamelModel):
    merchant_id: str = Field(..., min_length=1, max_length=64)
    amount: Decimal = Field(..., gt=0, max_digits=18, decimal_places=2)
    currency: str = Field(default="RSD", min_length=3, max_length=3)
    merchant_order_id: str = Field(..., min_length=1, max_length=64)
    merchant_timestamp: Optional[UtcDateTime] = None
    psp_transaction_id: Optional[str] = None
    success_url: Optional[str] = None
    failed_url: Optional[str] = None
    error_url: Optional[str] = None
    callback_url: Optional[str] = None


class BankPaymentInitiateResponse(CamelModel):
    success: bool
    payment_id: Optional[str] = None
    payment_url: Optional[str] = None
    message: Optional[str] = None


class BankCardPaymentRequest(CamelModel):
    payment_id: str = Field(..., min_length=1)
    card_data: CardDataPayload


class BankCardPaymentResponse(CamelModel):
    success: bool
    status: TransactionStatus
    message: str
    redirect_url: str
    payment_id: str
    acquirer_order_id: Optional[str] = None


class BankPaymentView(CamelModel):
    """A merchant payment as the card-entry page sees it. No redirect until it settles."""

    payment_id: str
    merchant_id: str
    merchant_order_id: str
    amount: Decimal
    currency: str
    status: TransactionStatus
    message: str
    redirect_url: Optional[str] = None
    psp_transaction_id: Optional[str] = None
    acquirer_order_id: Optional[str] = None


class AcquirerOrderView(CamelModel):
    acquirer_order_id: str
    acquirer_timestamp: UtcDateTime
    payment_id: Optional[str] = None
    merchant_id: str
    amount: Decimal
    currency: str
    pan: str = Field(..., description="Masked PAN")
    status: TransactionStatus
    status_message: Optional[str] = None
    issuer_order_id: Optional[str] = None
    issuer_timestamp: Optional[UtcDateTime] = None
    pcc_transaction_id: Optional[str] = None
    created_at: UtcDateTime
    updated_at: Optional[UtcDateTime] = None


class PCCStatusView(CamelModel):
    acquirer_order_id: str
    reachable: bool
    found: bool
    status: Optional[TransactionStatus] = None
    status_message: Optional[str] = None
    issuer_order_id: Optional[str] = None
    matches_local: Optional[bool] = None


# ---------------------------------------------------------------- PSP

class PSPPaymentRequest(CamelModel):
    web_shop_client_id: str = Field(..., min_length=1, max_length=64)
    payment_type: str = Field(..., min_length=1, max_length=20)
    amount: Decimal = Field(..., gt=0, max_digits=18, decimal_places=2)
    currency: str = Field(default="RSD", min_length=3, max_length=3)
    merchant_order_id: UUID
    description: Optional[str] = Field(None, max_length=255)
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None


class PSPPaymentResponse(CamelModel):
    success: bool
    psp_transaction_id: str
    status: TransactionStatus
    message: str
    payment_url: Optional[str] = None
    qr_code: Optional[str] = None


class PSPTransactionView(CamelModel):
    psp_transaction_id: str
    web_shop_client_id: str
    payment_type: str
    amount: Decimal
    currency: str
    merchant_order_id: str
    external_transaction_id: Optional[str] = None
    status: TransactionStatus
    status_message: Optional[str] = None
    created_at: UtcDateTime
    completed_at: Optional[UtcDateTime] = None


class PaymentCallback(CamelModel):
    psp_transaction_id: str = Field(..., min_length=1)
    external_transaction_id: Optional[str] = None
    status: TransactionStatus
    status_message: Optional[str] = None


class PaymentMethodView(CamelModel):
    type: str
    name: str
    enabled: bool


class PaymentMethodList(CamelModel):
    methods: List[PaymentMethodView]
