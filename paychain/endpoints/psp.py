"""
PSP Endpoints
"""

from fastapi import APIRouter, Depends, HTTPException, status

from ..dependencies import get_psp_service
from ..psp import PSPService
from ..schemas import PaymentCallback, PaymentMethodList, PSPPaymentRequest, PSPPaymentResponse, PSPTransactionView

router = APIRouter(prefix="/api/psp", tags=["psp"])


@router.post("/payments", response_model=PSPPaymentResponse)
async def initiate_payment(request: PSPPaymentRequest, service: PSPService = Depends(get_psp_service)):
    return await service.initiate(request)


@router.get("/payments/{psp_transaction_id}", response_model=PSPTransactionView)
async def get_payment(psp_transaction_id: str, service: PSPService = Depends(get_psp_service)):
    transaction = await service.get_transaction(psp_transaction_id)
    if transaction is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="PSP transaction not found")
    return transaction


@router.post("/callback", response_model=PSPTransactionView)
async def payment_callback(callback: PaymentCallback, service: PSPService = Depends(get_psp_service)):
    """Status update from a downstream provider. Final statuses are never overwritten."""
    return await service.handle_callback(callback)


@router.get("/payment-methods", response_model=PaymentMethodList)
async def payment_methods(service: PSPService = Depends(get_psp_service)):
    return PaymentMethodList(methods=service.payment_methods())
