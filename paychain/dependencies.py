"""FastAPI dependencies resolving the services built by create_app."""

from fastapi import Request

from .acquirer import AcquirerService
from .issuer import IssuerService
from .pcc import PCCService
from .psp import PSPService


def get_pcc_service(request: Request) -> PCCService:
    return request.app.state.pcc_service


def get_issuer_service(request: Request) -> IssuerService:
    return request.app.state.issuer_service


def get_acquirer_service(request: Request) -> AcquirerService:
    return request.app.state.acquirer_service


def get_psp_service(request: Request) -> PSPService:
    return request.app.state.psp_service
