"""Booking administration routes: create, list, cancel, restore, soft delete, follow-up links, reminders."""

import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from bookrent.core.config import Settings
from bookrent.core.database import get_db
from bookrent.core.dependencies import get_current_user, get_gateway, get_settings, require_staff
from bookrent.core.errors import PaymentError
from bookrent.models.booking import Booking, BookingStatus
from bookrent.models.deposit import SecurityDepositAuthorization
from bookrent.models.payment import RENTAL_INTENTS, Payment, PaymentLinkStatus
from bookrent.models.user import User
from bookrent.schemas import (
    BookingCreate,
    BookingOut,
    DepositAuthorizationOut,
    FollowupLinksOut,
    PaymentOut,
    PaymentRequirementsOut,
    ReminderTriggerOut,
)
from bookrent.services.audit import record_audit
from bookrent.services.balance import payment_requirements
from bookrent.services.followup_links import generate_followup_links
from bookrent.services.gateway import PaymentLinkGateway
from bookrent.services.payment_links import close_gateway_sessions
from bookrent.services.payment_state import transition_payment
from bookrent.services.reminders import hours_until_delivery, within_immediate_window
from bookrent.services.transitions import check_booking_transition, payment_sources
from bookrent.worker import send_immediate_reminders

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["bookings"])


async def _get_booking(db: AsyncSession, booking_id: int) -> Booking:
    result = await db.execute(select(Booking).where(Booking.id == booking_id))
    booking = result.scalar_one_or_none()
    if not booking:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found")
    return booking


def _move(booking: Booking, target: BookingStatus) -> None:
    try:
        check_booking_transition(booking.status, target)
    except PaymentError as exc:
        raise exc.to_http() from exc
    booking.status = target


@router.post("", response_model=BookingOut, status_code=status.HTTP_201_CREATED)
async def create_booking(
    body: BookingCreate,
    user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
    app_settings: Settings = Depends(get_settings),
):
    booking = Booking(
        reference_code=body.reference_code,
        client_name=body.client_name,
        client_email=body.client_email,
        car_model=body.car_model,
        delivery_datetime=body.delivery_datetime,
        currency=(body.currency or app_settings.default_currency).upper(),
        amount_total=body.amount_total,
        payment_amount_percent=body.payment_amount_percent,
        security_deposit_amount=body.security_deposit_amount,
        notes=body.notes,
    )
    db.add(booking)
    try:
        await db.flush()
    except IntegrityError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Reference code already in use") from None

    await record_audit(db, "booking", booking.id, "created", {"created_by": user.id})
    await db.refresh(booking)
    return booking


@router.get("", response_model=list[BookingOut])
async def list_bookings(
    booking_status: BookingStatus | None = None,
    include_deleted: bool = False,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    query = select(Booking).order_by(Booking.created_at.desc(), Booking.id.desc()).limit(100)
    if booking_status is not None:
        query = query.where(Booking.status == booking_status)
    if not include_deleted:
        query = query.where(Booking.deleted_at.is_(None))
    result = await db.execute(query)
    return result.scalars().all()


@router.get("/{booking_id}", response_model=BookingOut)
async def get_booking(
    booking_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await _get_booking(db, booking_id)


@router.post("/{booking_id}/cancel", response_model=BookingOut)
async def cancel_booking(
    booking_id: int,
    user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentLinkGateway = Depends(get_gateway),
):
    booking = await _get_booking(db, booking_id)
    _move(booking, BookingStatus.CANCELLED)
    booking.cancelled_at = datetime.now(UTC)

    # Outstanding rental links can no longer be paid
    result = await db.execute(
        select(Payment).where(
            Payment.booking_id == booking.id,
            Payment.payment_intent.in_(RENTAL_INTENTS),
            Payment.payment_link_status.in_(payment_sources(PaymentLinkStatus.CANCELLED)),
        )
    )
    cancelled_links = []
    for payment in result.scalars().all():
        if await transition_payment(db, payment, PaymentLinkStatus.CANCELLED):
            cancelled_links.append(payment)

    await record_audit(
        db,
        "booking",
        booking.id,
        "cancelled",
        {"cancelled_by": user.id, "cancelled_links": [payment.id for payment in cancelled_links]},
    )
    await db.commit()
    close_gateway_sessions(gateway, cancelled_links)
    await db.refresh(booking)
    return booking


@router.post("/{booking_id}/restore", response_model=BookingOut)
async def restore_booking(
    booking_id: int,
    user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    booking = await _get_booking(db, booking_id)
    _move(booking, BookingStatus.DRAFT)
    booking.cancelled_at = None
    await record_audit(db, "booking", booking.id, "restored", {"restored_by": user.id})
    await db.refresh(booking)
    return booking


@router.delete("/{booking_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_booking(
    booking_id: int,
    user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    booking = await _get_booking(db, booking_id)
    if booking.is_deleted:
        return
    booking.deleted_at = datetime.now(UTC)
    await record_audit(db, "booking", booking.id, "deleted", {"deleted_by": user.id})


@router.get("/{booking_id}/payments", response_model=list[PaymentOut])
async def list_booking_payments(
    booking_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await _get_booking(db, booking_id)
    result = await db.execute(select(Payment).where(Payment.booking_id == booking_id).order_by(Payment.id))
    return result.scalars().all()


@router.get("/{booking_id}/authorizations", response_model=list[DepositAuthorizationOut])
async def list_booking_authorizations(
    booking_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await _get_booking(db, booking_id)
    result = await db.execute(
        select(SecurityDepositAuthorization)
        .where(SecurityDepositAuthorization.booking_id == booking_id)
        .order_by(SecurityDepositAuthorization.id)
    )
    return result.scalars().all()


@router.post("/{booking_id}/followup-links", response_model=FollowupLinksOut)
async def create_followup_links(
    booking_id: int,
    user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentLinkGateway = Depends(get_gateway),
    app_settings: Settings = Depends(get_settings),
):
    """Create the balance link and deposit hold if the booking still lacks them."""
    try:
        result = await generate_followup_links(db, gateway, app_settings, booking_id)
    except PaymentError as exc:
        raise exc.to_http() from exc

    return FollowupLinksOut(
        created_links=result.created_links,
        balance_amount=result.balance_amount,
        security_deposit_amount=result.security_deposit_amount,
        authorization_id=result.authorization_id,
        reused_authorization=result.reused_authorization,
    )


@router.get("/{booking_id}/payment-requirements", response_model=PaymentRequirementsOut)
async def get_payment_requirements(
    booking_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    booking = await _get_booking(db, booking_id)
    requirements = payment_requirements(booking)
    return PaymentRequirementsOut(
        required_down_payment=requirements.required_down_payment,
        amount_paid=requirements.amount_paid,
        down_payment_met=requirements.down_payment_met,
        fully_paid=requirements.fully_paid,
        can_confirm=requirements.can_confirm,
        payment_progress_percent=requirements.payment_progress_percent,
        remaining_amount=requirements.remaining_amount,
    )


@router.post("/{booking_id}/reminders", response_model=ReminderTriggerOut, status_code=status.HTTP_202_ACCEPTED)
async def trigger_immediate_reminders(
    booking_id: int,
    user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
    app_settings: Settings = Depends(get_settings),
):
    """Queue an off-schedule reminder round for a booking delivered within the next two days."""
    booking = await _get_booking(db, booking_id)
    now = datetime.now(UTC)
    hours = hours_until_delivery(booking, now)
    if not within_immediate_window(booking, app_settings, now):
        return ReminderTriggerOut(booking_id=booking.id, scheduled=False, hours_until_delivery=hours)

    # Give staff time to finish editing the booking before the client is emailed
    send_immediate_reminders.apply_async(
        args=[booking.id], countdown=app_settings.immediate_reminder_delay_minutes * 60
    )
    logger.info("Immediate reminders queued for booking %s", booking.reference_code)
    return ReminderTriggerOut(
        booking_id=booking.id,
        scheduled=True,
        scheduled_in_minutes=app_settings.immediate_reminder_delay_minutes,
        hours_until_delivery=round(hours, 1),
    )
