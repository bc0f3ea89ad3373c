"""Follow-up links after an initial payment clears.

Creates the balance payment link and requests the security deposit hold for
a booking, each only if it does not exist yet. The booking row is locked for
the duration, and the partial unique indexes on payments and authorizations
catch anything the lock misses: an insert that trips one is treated as
"already exists".
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from bookrent.core.config import Settings
from bookrent.models.booking import BookingStatus
from bookrent.models.payment import BALANCE_INTENTS, Payment, PaymentIntent, PaymentLinkStatus, PaymentMethodType
from bookrent.services.balance import balance_amount
from bookrent.services.deposits import request_authorization
from bookrent.services.gateway import PaymentLinkGateway
from bookrent.services.payment_links import (
    get_booking,
    get_payment_method,
    open_gateway_link,
    quote_payment,
    record_payment_link,
)

logger = logging.getLogger(__name__)

# A balance payment in any of these states means the link is already taken care of
BALANCE_BLOCKING_STATUSES = (PaymentLinkStatus.PENDING, PaymentLinkStatus.ACTIVE, PaymentLinkStatus.PAID)


@dataclass
class FollowupResult:
    balance_amount: Decimal
    security_deposit_amount: Decimal
    created_links: list[int] = field(default_factory=list)
    authorization_id: int | None = None
    reused_authorization: bool = False


async def _has_balance_payment(db: AsyncSession, booking_id: int) -> bool:
    result = await db.execute(
        select(Payment.id)
        .where(
            Payment.booking_id == booking_id,
            Payment.payment_intent.in_(BALANCE_INTENTS),
            Payment.payment_link_status.in_(BALANCE_BLOCKING_STATUSES),
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def _create_balance_link(
    db: AsyncSession, gateway: PaymentLinkGateway, settings: Settings, booking_id: int, result: FollowupResult
) -> None:
    booking = await get_booking(db, booking_id, for_update=True)
    if await _has_balance_payment(db, booking.id):
        logger.info("Balance link already exists for booking %s", booking.reference_code)
        return

    method_type = PaymentMethodType(settings.default_balance_method)
    method = await get_payment_method(db, method_type)
    quote = quote_payment(booking, PaymentIntent.BALANCE_PAYMENT, method.fee_percentage, result.balance_amount)
    link = open_gateway_link(
        gateway,
        booking,
        PaymentIntent.BALANCE_PAYMENT,
        method_type,
        quote,
        settings.payment_link_expiry_hours,
    )
    try:
        payment = await record_payment_link(db, booking, PaymentIntent.BALANCE_PAYMENT, method_type, quote, link)
        await db.commit()
    except IntegrityError:
        # Another worker inserted the balance link between our check and insert
        await db.rollback()
        logger.info("Balance link for booking %s created concurrently, skipping", booking_id)
        return

    result.created_links.append(payment.id)
    logger.info("Balance link %s created for booking %s (%s)", payment.id, booking.reference_code, quote.total_amount)


async def _request_deposit(
    db: AsyncSession, gateway: PaymentLinkGateway, settings: Settings, booking_id: int, result: FollowupResult
) -> None:
    booking = await get_booking(db, booking_id, for_update=True)
    try:
        request = await request_authorization(
            db,
            gateway,
            settings,
            booking,
            booking.security_deposit_amount,
            PaymentMethodType(settings.default_deposit_method),
        )
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info("Deposit authorization for booking %s created concurrently, skipping", booking_id)
        return

    result.authorization_id = request.authorization.id
    result.reused_authorization = request.reused_existing
    if request.link is not None and not request.reused_existing:
        result.created_links.append(request.link.id)


async def generate_followup_links(
    db: AsyncSession,
    gateway: PaymentLinkGateway,
    settings: Settings,
    booking_id: int,
) -> FollowupResult:
    """Create whichever of the balance link and deposit hold the booking still lacks."""
    booking = await get_booking(db, booking_id, for_update=True)
    result = FollowupResult(
        balance_amount=balance_amount(booking),
        security_deposit_amount=booking.security_deposit_amount,
    )

    if booking.is_deleted or booking.status == BookingStatus.CANCELLED:
        logger.info("Booking %s is closed, no follow-up links", booking.reference_code)
        await db.commit()
        return result

    if booking.payment_amount_percent < 100 and result.balance_amount > 0:
        await _create_balance_link(db, gateway, settings, booking_id, result)
    else:
        logger.info("Booking %s is paid in full up front, no balance link", booking.reference_code)

    if result.security_deposit_amount > 0:
        await _request_deposit(db, gateway, settings, booking_id, result)

    await db.commit()
    return result
