"""
Issuer Bank Endpoints
"""

from fastapi import APIRouter, Depends, HTTPException, status

from ..dependencies import get_issuer_service
from ..issuer import IssuerService
from ..schemas import IssuerBankRequest, IssuerBankResponse, IssuerCardCreate, IssuerCardView, IssuerOrderView

router = APIRouter(prefix="/api/bank/issuer", tags=["issuer"])


@router.post("/process", response_model=IssuerBankResponse)
async def process_issuer_request(request: IssuerBankRequest, service: IssuerService = Depends(get_issuer_service)):
    """Authorize a PCC request against the issuer's cards."""
    return await service.process_issuer_request(request)


@router.post("/cards", response_model=IssuerCardView, status_code=status.HTTP_201_CREATED)
async def register_card(card: IssuerCardCreate, service: IssuerService = Depends(get_issuer_service)):
    return await service.register_card(card)


@router.get("/orders/{issuer_order_id}", response_model=IssuerOrderView)
async def get_order(issuer_order_id: str, service: IssuerService = Depends(get_issuer_service)):
    order = await service.get_order(issuer_order_id)
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Issuer order not found")
    return order
