"""Client reminders for open balances and missing security deposits.

The hourly sweep reminds clients ahead of delivery: a week out for the
balance, three days out for the deposit, then again closer to the date if
the earlier reminder was sent long enough ago. Staff can also trigger an
immediate round for one booking, which skips the schedule but still never
sends the same reminder twice within the cooldown.
"""

import logging
import math
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bookrent.core.config import Settings
from bookrent.models.booking import Booking, BookingStatus
from bookrent.models.deposit import SecurityDepositAuthorization
from bookrent.models.payment import BALANCE_INTENTS, Payment, PaymentIntent, PaymentLinkStatus
from bookrent.services.audit import record_audit
from bookrent.services.email import send_balance_reminder_email, send_deposit_reminder_email
from bookrent.services.payment_links import get_booking

logger = logging.getLogger(__name__)

OPEN_LINK_STATUSES = (PaymentLinkStatus.PENDING, PaymentLinkStatus.ACTIVE)


@dataclass
class ReminderResult:
    booking_id: int
    kind: str
    sent: bool


def _aware(value: datetime | None) -> datetime | None:
    # Some drivers hand timestamps back without a zone; they are stored as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def days_until(delivery: datetime, now: datetime) -> int:
    return math.ceil((_aware(delivery) - now).total_seconds() / 86400)


def should_send_balance_reminder(
    balance: Decimal,
    last_sent: datetime | None,
    days_until_delivery: int,
    now: datetime,
    immediate: bool = False,
    cooldown: timedelta = timedelta(hours=2),
) -> bool:
    if balance <= 0:
        return False
    last_sent = _aware(last_sent)
    if immediate:
        return last_sent is None or now - last_sent > cooldown
    if last_sent is None:
        return days_until_delivery <= 7
    since = now - last_sent
    if days_until_delivery <= 3 and since > timedelta(days=4):
        return True
    return days_until_delivery <= 1 and since > timedelta(days=2)


def should_send_deposit_reminder(
    deposit_amount: Decimal,
    deposit_authorized: bool,
    last_sent: datetime | None,
    days_until_delivery: int,
    now: datetime,
    immediate: bool = False,
    cooldown: timedelta = timedelta(hours=2),
) -> bool:
    if deposit_amount <= 0 or deposit_authorized:
        return False
    last_sent = _aware(last_sent)
    if immediate:
        return last_sent is None or now - last_sent > cooldown
    if last_sent is None:
        return days_until_delivery <= 3
    return days_until_delivery <= 1 and now - last_sent > timedelta(days=2)


async def _balance_link_url(db: AsyncSession, booking_id: int) -> str | None:
    result = await db.execute(
        select(Payment.payment_link_url)
        .where(
            Payment.booking_id == booking_id,
            Payment.payment_intent.in_(BALANCE_INTENTS),
            Payment.payment_link_status.in_(OPEN_LINK_STATUSES),
        )
        .order_by(Payment.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _deposit_state(db: AsyncSession, booking_id: int) -> tuple[bool, str | None]:
    """Whether a hold was ever placed for the booking, and the link of the open one if not."""
    result = await db.execute(
        select(SecurityDepositAuthorization.id).where(
            SecurityDepositAuthorization.booking_id == booking_id,
            SecurityDepositAuthorization.authorized_at.is_not(None),
        )
    )
    if result.first() is not None:
        return True, None

    result = await db.execute(
        select(Payment.payment_link_url)
        .where(
            Payment.booking_id == booking_id,
            Payment.payment_intent == PaymentIntent.SECURITY_DEPOSIT,
            Payment.payment_link_status.in_(OPEN_LINK_STATUSES),
        )
        .order_by(Payment.id.desc())
        .limit(1)
    )
    return False, result.scalar_one_or_none()


async def _remind_booking(
    db: AsyncSession,
    settings: Settings,
    booking: Booking,
    now: datetime,
    immediate: bool,
) -> list[ReminderResult]:
    results = []
    days = days_until(booking.delivery_datetime, now)
    cooldown = timedelta(hours=settings.immediate_reminder_cooldown_hours)

    balance = (booking.amount_total - booking.amount_paid).quantize(Decimal("0.01"))
    if should_send_balance_reminder(balance, booking.balance_payment_reminder_sent_at, days, now, immediate, cooldown):
        url = await _balance_link_url(db, booking.id)
        try:
            sent = await send_balance_reminder_email(booking, balance, url, days, settings)
        except Exception:
            logger.exception("Balance reminder failed for booking %s", booking.reference_code)
            sent = False
        if sent:
            booking.balance_payment_reminder_sent_at = now
            await record_audit(
                db,
                "booking",
                booking.id,
                "balance_reminder_sent",
                {"balance_amount": balance, "days_until_delivery": days, "immediate": immediate},
            )
        results.append(ReminderResult(booking.id, "balance_payment", sent))

    authorized, authorization_url = await _deposit_state(db, booking.id)
    if should_send_deposit_reminder(
        booking.security_deposit_amount,
        authorized,
        booking.security_deposit_reminder_sent_at,
        days,
        now,
        immediate,
        cooldown,
    ):
        try:
            sent = await send_deposit_reminder_email(booking, authorization_url, days, settings)
        except Exception:
            logger.exception("Deposit reminder failed for booking %s", booking.reference_code)
            sent = False
        if sent:
            booking.security_deposit_reminder_sent_at = now
            await record_audit(
                db,
                "booking",
                booking.id,
                "deposit_reminder_sent",
                {"amount": booking.security_deposit_amount, "days_until_delivery": days, "immediate": immediate},
            )
        results.append(ReminderResult(booking.id, "security_deposit", sent))

    return results


async def send_payment_reminders(
    db: AsyncSession,
    settings: Settings,
    booking_id: int | None = None,
    immediate: bool = False,
    now: datetime | None = None,
) -> list[ReminderResult]:
    """Remind clients of confirmed bookings with an upcoming delivery. Commits per booking."""
    now = now or datetime.now(UTC)
    query = select(Booking).where(
        Booking.status == BookingStatus.CONFIRMED,
        Booking.deleted_at.is_(None),
        Booking.client_email.is_not(None),
        Booking.delivery_datetime.is_not(None),
        Booking.delivery_datetime > now,
    )
    if booking_id is not None:
        query = query.where(Booking.id == booking_id)
    result = await db.execute(query.order_by(Booking.id))

    results = []
    for booking in result.scalars().all():
        results += await _remind_booking(db, settings, booking, now, immediate)
        await db.commit()

    sent = sum(1 for item in results if item.sent)
    if sent:
        logger.info("Sent %d payment reminders", sent)
    return results


def hours_until_delivery(booking: Booking, now: datetime) -> float | None:
    if booking.delivery_datetime is None:
        return None
    return (_aware(booking.delivery_datetime) - now).total_seconds() / 3600


def within_immediate_window(booking: Booking, settings: Settings, now: datetime) -> bool:
    hours = hours_until_delivery(booking, now)
    return hours is not None and 0 < hours <= settings.immediate_reminder_window_hours


async def send_immediate_reminders(
    db: AsyncSession,
    settings: Settings,
    booking_id: int,
    now: datetime | None = None,
) -> list[ReminderResult]:
    """One off-schedule reminder round for a booking whose delivery is close."""
    now = now or datetime.now(UTC)
    booking = await get_booking(db, booking_id)
    if not within_immediate_window(booking, settings, now):
        logger.info(
            "Booking %s is not due within %dh, no immediate reminders",
            booking.reference_code,
            settings.immediate_reminder_window_hours,
        )
        return []

    hours = hours_until_delivery(booking, now)
    results = await send_payment_reminders(db, settings, booking_id=booking_id, immediate=True, now=now)
    await record_audit(
        db,
        "booking",
        booking_id,
        "immediate_reminders_triggered",
        {
            "hours_until_delivery": round(hours, 1),
            "reminder_sent_at": now,
            "reminders": [item.kind for item in results if item.sent],
        },
    )
    await db.commit()
    return results
