"""
Acquirer Bank Payment Endpoints
"""

from fastapi import APIRouter, Depends, HTTPException, status

from ..acquirer import AcquirerService
from ..dependencies import get_acquirer_service
from ..schemas import (
    AcquirerOrderView,
    BankCardPaymentRequest,
    BankCardPaymentResponse,
    BankPaymentInitiateRequest,
    BankPaymentInitiateResponse,
    BankPaymentView,
    PCCStatusView,
)

router = APIRouter(prefix="/api/bank/payment", tags=["acquirer"])


@router.post("/initiate", response_model=BankPaymentInitiateResponse)
async def initiate_payment(
    request: BankPaymentInitiateRequest,
    service: AcquirerService = Depends(get_acquirer_service),
):
    """Register a merchant payment and return the card-entry URL."""
    return await service.initiate_payment(request)


@router.post("/process", response_model=BankCardPaymentResponse)
async def process_payment(
    request: BankCardPaymentRequest,
    service: AcquirerService = Depends(get_acquirer_service),
):
    """Charge the card for an initiated payment and return where to redirect the shopper."""
    return await service.process_payment(request.payment_id, request.card_data.to_card())


@router.get("/orders/{acquirer_order_id}", response_model=AcquirerOrderView)
async def get_order(acquirer_order_id: str, service: AcquirerService = Depends(get_acquirer_service)):
    order = await service.get_order(acquirer_order_id)
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Acquirer order not found")
    return order


@router.get("/orders/{acquirer_order_id}/pcc-status", response_model=PCCStatusView)
async def pcc_status(acquirer_order_id: str, service: AcquirerService = Depends(get_acquirer_service)):
    return await service.pcc_status(acquirer_order_id)


@router.get("/{payment_id}", response_model=BankPaymentView)
async def get_payment(payment_id: str, service: AcquirerService = Depends(get_acquirer_service)):
    """Payment details for the card-entry page; 404 when the payment id is unknown."""
    return await service.get_payment(payment_id)
