"""
Payment Card Center Endpoints
"""

from datetime import datetime, timezone
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..dependencies import get_pcc_service
from ..pcc import PCCService
from ..schemas import BankRouteView, HealthResponse, PCCPaymentRequest, PCCPaymentResponse, PCCTransactionView

router = APIRouter(prefix="/api/pcc", tags=["pcc"])


@router.post("/process-payment", response_model=PCCPaymentResponse)
async def process_payment(request: PCCPaymentRequest, service: PCCService = Depends(get_pcc_service)):
    """Route a card payment to its issuer and return the resolved outcome."""
    return await service.process_payment(request)


@router.get("/transaction/{acquirer_order_id}/status", response_model=PCCTransactionView)
async def transaction_status(acquirer_order_id: str, service: PCCService = Depends(get_pcc_service)):
    transaction = await service.get_transaction(acquirer_order_id)
    if transaction is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Transaction not found")
    return transaction


@router.get("/transactions", response_model=List[PCCTransactionView])
async def list_transactions(
    limit: int = Query(100, ge=1, le=1000),
    service: PCCService = Depends(get_pcc_service),
):
    """Newest first, PANs masked."""
    return await service.list_transactions(limit)


@router.get("/banks", response_model=List[BankRouteView])
async def list_banks(service: PCCService = Depends(get_pcc_service)):
    return [BankRouteView(**route) for route in service.router.describe()]


@router.get("/bin-lookup/{bin_code}", response_model=BankRouteView)
async def bin_lookup(bin_code: str, service: PCCService = Depends(get_pcc_service)):
    if len(bin_code) != 4 or not bin_code.isdigit():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="BIN must be four digits")

    bank = service.lookup_bank(bin_code)
    if bank is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Issuer bank not found for this card")
    return BankRouteView(bin=bin_code, name=bank.name, url=bank.url)


@router.get("/health", response_model=HealthResponse)
async def health(service: PCCService = Depends(get_pcc_service)):
    return HealthResponse(timestamp=datetime.now(timezone.utc), banks_count=len(service.router.routes))
