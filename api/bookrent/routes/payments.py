"""Payment routes: fee quotes, card links, bank transfers and their confirmation."""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from bookrent.core.config import Settings
from bookrent.core.database import get_db
from bookrent.core.dependencies import get_current_user, get_gateway, get_settings, require_staff
from bookrent.core.errors import PaymentError
from bookrent.models.user import User
from bookrent.schemas import (
    BankTransferConfirm,
    BankTransferConfirmOut,
    BankTransferCreate,
    PaymentCalculateOut,
    PaymentCalculateRequest,
    PaymentLinkCreate,
    PaymentOut,
)
from bookrent.services.bank_transfer import confirm_bank_transfer
from bookrent.services.gateway import PaymentLinkGateway
from bookrent.services.payment_links import (
    calculate_payment_amount,
    create_bank_transfer_payment,
    create_card_payment_link,
    notify_bank_transfer_client,
)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/calculate", response_model=PaymentCalculateOut)
async def calculate(
    body: PaymentCalculateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        quote = await calculate_payment_amount(
            db, body.booking_id, body.payment_intent, body.payment_method_type, body.amount_override
        )
    except PaymentError as exc:
        raise exc.to_http() from exc
    return PaymentCalculateOut(
        original_amount=quote.original_amount,
        fee_percentage=quote.fee_percentage,
        fee_amount=quote.fee_amount,
        total_amount=quote.total_amount,
    )


@router.post("/links", response_model=PaymentOut, status_code=status.HTTP_201_CREATED)
async def create_link(
    body: PaymentLinkCreate,
    user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentLinkGateway = Depends(get_gateway),
    app_settings: Settings = Depends(get_settings),
):
    try:
        return await create_card_payment_link(
            db,
            gateway,
            app_settings,
            body.booking_id,
            body.payment_intent,
            body.payment_method_type,
            amount=body.amount,
            expiry_hours=body.expiry_hours,
            description=body.description,
        )
    except PaymentError as exc:
        raise exc.to_http() from exc


@router.post("/bank-transfer", response_model=PaymentOut, status_code=status.HTTP_201_CREATED)
async def create_bank_transfer(
    body: BankTransferCreate,
    user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
    app_settings: Settings = Depends(get_settings),
):
    """Record a pending transfer and email the client the account details."""
    try:
        payment = await create_bank_transfer_payment(
            db, app_settings, body.booking_id, body.payment_intent, body.amount
        )
    except PaymentError as exc:
        raise exc.to_http() from exc
    await db.commit()
    await notify_bank_transfer_client(db, app_settings, payment)
    return payment


@router.post("/bank-transfer/confirm", response_model=BankTransferConfirmOut)
async def confirm_bank_transfer_payment(
    body: BankTransferConfirm,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentLinkGateway = Depends(get_gateway),
    app_settings: Settings = Depends(get_settings),
):
    """Staff marks a bank transfer as received. Confirming twice is a 409."""
    try:
        receipt_url = await confirm_bank_transfer(db, gateway, app_settings, body.payment_id, user)
    except PaymentError as exc:
        raise exc.to_http() from exc
    return BankTransferConfirmOut(success=True, message="Payment confirmed successfully", receipt_url=receipt_url)
