"""Booking balance aggregation.

`Booking.amount_paid` is a cache of the settled rental payments for the
booking. The authoritative record is the payments table; every payment state
change calls `recalculate_booking_balance` in the same transaction to keep
the cache in sync.
"""

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from bookrent.core.config import Settings
from bookrent.models.booking import Booking, BookingStatus
from bookrent.models.payment import RENTAL_INTENTS, Payment, PaymentLinkStatus
from bookrent.services.audit import record_audit

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


@dataclass
class PaymentRequirements:
    required_down_payment: Decimal
    amount_paid: Decimal
    down_payment_met: bool
    fully_paid: bool
    can_confirm: bool
    payment_progress_percent: int
    remaining_amount: Decimal


def down_payment_amount(booking: Booking) -> Decimal:
    """Amount the client owes up front: the configured share of the total."""
    return (booking.amount_total * Decimal(booking.payment_amount_percent) / 100).quantize(CENT)


def balance_amount(booking: Booking) -> Decimal:
    """What is left after the down payment share, independent of what has been paid."""
    return (booking.amount_total - down_payment_amount(booking)).quantize(CENT)


def payment_requirements(booking: Booking) -> PaymentRequirements:
    """Where the booking stands against its down payment and its total."""
    required = down_payment_amount(booking) if booking.payment_amount_percent > 0 else Decimal("0")
    paid = booking.amount_paid
    down_payment_met = paid >= required
    if booking.amount_total > 0:
        progress = int((paid / booking.amount_total * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    else:
        progress = 0
    return PaymentRequirements(
        required_down_payment=required,
        amount_paid=paid,
        down_payment_met=down_payment_met,
        fully_paid=paid >= booking.amount_total,
        can_confirm=booking.status == BookingStatus.DRAFT and down_payment_met,
        payment_progress_percent=progress,
        remaining_amount=(booking.amount_total - paid).quantize(CENT),
    )


async def settled_rental_total(db: AsyncSession, booking_id: int) -> Decimal:
    """Sum of settled payments that count towards the rental. Deposits never do."""
    result = await db.execute(
        select(func.coalesce(func.sum(Payment.amount), 0)).where(
            Payment.booking_id == booking_id,
            Payment.payment_link_status == PaymentLinkStatus.PAID,
            Payment.paid_at.is_not(None),
            Payment.payment_intent.in_(RENTAL_INTENTS),
        )
    )
    return Decimal(str(result.scalar_one())).quantize(CENT)


async def recalculate_booking_balance(db: AsyncSession, booking_id: int, settings: Settings) -> Booking:
    """Recompute amount_paid and auto-confirm a draft booking once the down payment is met."""
    result = await db.execute(
        select(Booking).where(Booking.id == booking_id).execution_options(populate_existing=True)
    )
    booking = result.scalar_one()

    total_paid = await settled_rental_total(db, booking_id)
    booking.amount_paid = total_paid

    if booking.status == BookingStatus.DRAFT and booking.deleted_at is None:
        required = down_payment_amount(booking) if booking.payment_amount_percent > 0 else None
        if required is None or required <= 0:
            required = settings.min_confirmation_amount
        if total_paid >= required:
            booking.status = BookingStatus.CONFIRMED
            await record_audit(
                db,
                "booking",
                booking.id,
                "auto_confirmed",
                {"amount_paid": total_paid, "required": required},
            )
            logger.info("Booking %s confirmed after payment (paid %s)", booking.reference_code, total_paid)

    await db.flush()
    return booking
