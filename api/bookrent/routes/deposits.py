"""Security deposit routes: request a hold, capture it, release it."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from bookrent.core.config import Settings
from bookrent.core.database import get_db
from bookrent.core.dependencies import get_gateway, get_settings, require_staff
from bookrent.core.errors import PaymentError
from bookrent.models.user import User
from bookrent.schemas import DepositAuthorizationOut, DepositAuthorizeOut, DepositAuthorizeRequest, DepositCapture
from bookrent.services.deposits import (
    authorize_security_deposit,
    capture_security_deposit,
    release_security_deposit,
)
from bookrent.services.gateway import PaymentLinkGateway

router = APIRouter(prefix="/deposits", tags=["deposits"])


@router.post("/authorize", response_model=DepositAuthorizeOut)
async def authorize(
    body: DepositAuthorizeRequest,
    user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentLinkGateway = Depends(get_gateway),
    app_settings: Settings = Depends(get_settings),
):
    try:
        request = await authorize_security_deposit(
            db, gateway, app_settings, body.booking_id, body.amount, body.payment_method_type
        )
    except PaymentError as exc:
        raise exc.to_http() from exc

    return DepositAuthorizeOut(
        authorization_id=request.authorization.id,
        external_authorization_id=request.authorization.authorization_id,
        authorization_url=request.authorization_url,
        expires_at=request.authorization.expires_at,
        reused_existing=request.reused_existing,
    )


@router.post("/{authorization_id}/capture", response_model=DepositAuthorizationOut)
async def capture(
    authorization_id: int,
    body: DepositCapture,
    user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentLinkGateway = Depends(get_gateway),
    app_settings: Settings = Depends(get_settings),
):
    try:
        return await capture_security_deposit(db, gateway, app_settings, authorization_id, body.amount, body.reason)
    except PaymentError as exc:
        raise exc.to_http() from exc


@router.post("/{authorization_id}/release", response_model=DepositAuthorizationOut)
async def release(
    authorization_id: int,
    user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentLinkGateway = Depends(get_gateway),
    app_settings: Settings = Depends(get_settings),
):
    try:
        return await release_security_deposit(db, gateway, app_settings, authorization_id)
    except PaymentError as exc:
        raise exc.to_http() from exc
