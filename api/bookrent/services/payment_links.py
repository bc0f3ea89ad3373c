"""Payment link creation and fee calculation.

Card links are opened at the gateway first and persisted only once the
gateway call has succeeded, so a failed call never leaves a half-made Payment
behind. Bank transfers need no gateway call: they are recorded as pending and
settled later by staff.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bookrent.core.config import Settings
from bookrent.core.errors import BookingNotFound, PaymentRequestInvalid
from bookrent.models.booking import Booking, BookingStatus
from bookrent.models.payment import (
    BALANCE_INTENTS,
    CARD_METHODS,
    Payment,
    PaymentIntent,
    PaymentLinkStatus,
    PaymentMethodType,
    is_initial_intent,
)
from bookrent.models.payment_method import PaymentMethod
from bookrent.services.audit import record_audit
from bookrent.services.balance import CENT, down_payment_amount
from bookrent.services.email import send_bank_transfer_instructions_email
from bookrent.services.gateway import PaymentLink, PaymentLinkGateway
from bookrent.services.payment_state import transition_payment
from bookrent.services.transitions import check_booking_transition, payment_sources

logger = logging.getLogger(__name__)


@dataclass
class PaymentQuote:
    original_amount: Decimal
    fee_percentage: Decimal
    fee_amount: Decimal
    total_amount: Decimal


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

async def get_booking(db: AsyncSession, booking_id: int, *, for_update: bool = False) -> Booking:
    query = select(Booking).where(Booking.id == booking_id)
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query)
    booking = result.scalar_one_or_none()
    if booking is None:
        raise BookingNotFound(f"Booking {booking_id} not found")
    return booking


async def get_payment_method(db: AsyncSession, method_type: PaymentMethodType) -> PaymentMethod:
    result = await db.execute(select(PaymentMethod).where(PaymentMethod.method_type == method_type))
    method = result.scalar_one_or_none()
    if method is None or not method.is_enabled:
        raise PaymentRequestInvalid(f"Payment method {method_type.value} is not available")
    return method


def ensure_payable(booking: Booking) -> None:
    if booking.is_deleted:
        raise PaymentRequestInvalid("Booking has been deleted")
    if booking.status == BookingStatus.CANCELLED:
        raise PaymentRequestInvalid("Booking is cancelled")


# ---------------------------------------------------------------------------
# Amounts
# ---------------------------------------------------------------------------

def quote_payment(
    booking: Booking,
    intent: PaymentIntent,
    fee_percentage: Decimal,
    amount_override: Decimal | None = None,
) -> PaymentQuote:
    """Work out what a payment of `intent` is for, and what the method fee adds on top.

    Security deposits are holds, not charges, so they never carry a fee and
    always need an explicit amount.
    """
    if amount_override is not None:
        amount = amount_override
    elif intent == PaymentIntent.SECURITY_DEPOSIT:
        raise PaymentRequestInvalid("Security deposit amount is required")
    elif intent in (PaymentIntent.CLIENT_PAYMENT, PaymentIntent.DOWN_PAYMENT):
        amount = down_payment_amount(booking) if booking.payment_amount_percent > 0 else booking.amount_total
    elif intent in BALANCE_INTENTS:
        amount = booking.amount_total - booking.amount_paid
    else:
        amount = booking.amount_total

    amount = Decimal(amount).quantize(CENT)
    if amount <= 0:
        raise PaymentRequestInvalid("Nothing to pay for this booking")

    if intent == PaymentIntent.SECURITY_DEPOSIT:
        fee_percentage = Decimal("0")
    fee_amount = (amount * fee_percentage / 100).quantize(CENT)

    return PaymentQuote(
        original_amount=amount,
        fee_percentage=fee_percentage,
        fee_amount=fee_amount,
        total_amount=amount + fee_amount,
    )


async def calculate_payment_amount(
    db: AsyncSession,
    booking_id: int,
    intent: PaymentIntent,
    method_type: PaymentMethodType,
    amount_override: Decimal | None = None,
) -> PaymentQuote:
    booking = await get_booking(db, booking_id)
    method = await get_payment_method(db, method_type)
    return quote_payment(booking, intent, method.fee_percentage, amount_override)


# ---------------------------------------------------------------------------
# Link creation
# ---------------------------------------------------------------------------

def link_description(booking: Booking, intent: PaymentIntent) -> str:
    if intent == PaymentIntent.SECURITY_DEPOSIT:
        return f"Security deposit authorization for booking {booking.reference_code}"
    label = intent.value.replace("_", " ").capitalize()
    if booking.car_model:
        return f"{label} - {booking.car_model} ({booking.reference_code})"
    return f"{label} - booking {booking.reference_code}"


def open_gateway_link(
    gateway: PaymentLinkGateway,
    booking: Booking,
    intent: PaymentIntent,
    method_type: PaymentMethodType,
    quote: PaymentQuote,
    expiry_hours: int,
    description: str | None = None,
) -> PaymentLink:
    """The one external call of a card flow. Nothing is written before it returns."""
    return gateway.create_payment_link(
        booking_id=booking.id,
        amount=quote.total_amount,
        currency=booking.currency,
        intent=intent,
        payment_method_type=method_type,
        expiry_hours=expiry_hours,
        description=description or link_description(booking, intent),
    )


def close_gateway_sessions(gateway: PaymentLinkGateway, payments: list[Payment]) -> None:
    """Expire the hosted pages of links already closed locally. Call after the commit."""
    for payment in payments:
        if payment.gateway_session_id and payment.payment_method_type in CARD_METHODS:
            gateway.expire_session(payment.gateway_session_id)


async def record_payment_link(
    db: AsyncSession,
    booking: Booking,
    intent: PaymentIntent,
    method_type: PaymentMethodType,
    quote: PaymentQuote,
    link: PaymentLink,
    deposit_authorization_id: int | None = None,
) -> Payment:
    """Persist an active Payment for a link the gateway has already created."""
    payment = Payment(
        booking_id=booking.id,
        payment_intent=intent,
        payment_method_type=method_type,
        amount=quote.original_amount,
        fee_percentage=quote.fee_percentage,
        fee_amount=quote.fee_amount,
        total_amount=quote.total_amount,
        currency=booking.currency,
        gateway_session_id=link.payment_id,
        payment_link_status=PaymentLinkStatus.ACTIVE,
        payment_link_url=link.redirect_url,
        payment_link_expires_at=link.expires_at,
        deposit_authorization_id=deposit_authorization_id,
    )
    db.add(payment)
    await db.flush()
    await record_audit(
        db,
        "payment",
        payment.id,
        "payment_link_created",
        {
            "booking_id": booking.id,
            "payment_intent": intent,
            "payment_method_type": method_type,
            "amount": quote.original_amount,
            "total_amount": quote.total_amount,
            "gateway_session_id": link.payment_id,
        },
    )
    return payment


async def create_card_payment_link(
    db: AsyncSession,
    gateway: PaymentLinkGateway,
    settings: Settings,
    booking_id: int,
    intent: PaymentIntent,
    method_type: PaymentMethodType,
    amount: Decimal | None = None,
    expiry_hours: int | None = None,
    description: str | None = None,
) -> Payment:
    """Create a hosted card payment link for a booking."""
    if method_type not in CARD_METHODS:
        raise PaymentRequestInvalid(f"{method_type.value} is not a card payment method")
    if intent == PaymentIntent.SECURITY_DEPOSIT:
        raise PaymentRequestInvalid("Security deposits are requested through the deposit authorization flow")

    booking = await get_booking(db, booking_id)
    ensure_payable(booking)
    method = await get_payment_method(db, method_type)
    quote = quote_payment(booking, intent, method.fee_percentage, amount)

    link = open_gateway_link(
        gateway,
        booking,
        intent,
        method_type,
        quote,
        expiry_hours or settings.payment_link_expiry_hours,
        description,
    )
    payment = await record_payment_link(db, booking, intent, method_type, quote, link)
    logger.info(
        "Payment link %s created for booking %s (%s, %s)",
        link.payment_id,
        booking.reference_code,
        intent.value,
        quote.total_amount,
    )
    return payment


async def create_bank_transfer_payment(
    db: AsyncSession,
    settings: Settings,
    booking_id: int,
    intent: PaymentIntent,
    amount: Decimal | None = None,
) -> Payment:
    """Record a pending bank transfer. Choosing to pay by transfer confirms a draft booking."""
    if intent == PaymentIntent.SECURITY_DEPOSIT:
        raise PaymentRequestInvalid("Security deposits cannot be paid by bank transfer")

    booking = await get_booking(db, booking_id)
    ensure_payable(booking)
    method = await get_payment_method(db, PaymentMethodType.BANK_TRANSFER)
    quote = quote_payment(booking, intent, method.fee_percentage, amount)

    payment = Payment(
        booking_id=booking.id,
        payment_intent=intent,
        payment_method_type=PaymentMethodType.BANK_TRANSFER,
        amount=quote.original_amount,
        fee_percentage=quote.fee_percentage,
        fee_amount=quote.fee_amount,
        total_amount=quote.total_amount,
        currency=booking.currency,
        payment_link_status=PaymentLinkStatus.PENDING,
    )
    db.add(payment)
    await db.flush()
    payment.payment_link_url = f"{settings.app_domain.rstrip('/')}/payment/bank-transfer?payment_id={payment.id}"

    await record_audit(
        db,
        "payment",
        payment.id,
        "bank_transfer_requested",
        {"booking_id": booking.id, "payment_intent": intent, "amount": quote.original_amount},
    )

    if is_initial_intent(intent) and booking.status == BookingStatus.DRAFT:
        check_booking_transition(booking.status, BookingStatus.CONFIRMED)
        booking.status = BookingStatus.CONFIRMED
        await record_audit(db, "booking", booking.id, "confirmed_by_bank_transfer", {"payment_id": payment.id})
        logger.info("Booking %s confirmed on bank transfer selection", booking.reference_code)

    await db.flush()
    return payment


async def notify_bank_transfer_client(db: AsyncSession, settings: Settings, payment: Payment) -> bool:
    """Best-effort instructions email for a bank transfer request already committed."""
    try:
        booking = await get_booking(db, payment.booking_id)
        return await send_bank_transfer_instructions_email(booking, payment, settings)
    except Exception:
        logger.exception("Bank transfer instructions failed for payment %s", payment.id)
        return False


async def expire_stale_payment_links(db: AsyncSession, now: datetime | None = None) -> int:
    """Expire card links whose hosted page has timed out without a webhook saying so."""
    now = now or datetime.now(UTC)
    result = await db.execute(
        select(Payment).where(
            Payment.payment_link_status.in_(payment_sources(PaymentLinkStatus.EXPIRED)),
            Payment.payment_method_type != PaymentMethodType.BANK_TRANSFER,
            Payment.payment_link_expires_at.is_not(None),
            Payment.payment_link_expires_at < now,
        )
    )
    expired = 0
    for payment in result.scalars().all():
        if await transition_payment(db, payment, PaymentLinkStatus.EXPIRED):
            await record_audit(db, "payment", payment.id, "expired", {"expired_at": now})
            expired += 1
    if expired:
        logger.info("Expired %d stale payment links", expired)
    return expired
