"""Security deposit holds: request, reuse, capture, release and expiry.

A booking has at most one open (pending or authorized) hold. Asking again
while one is open reuses it; if it is still pending and the client picked a
different card method, a fresh hold link for that method is attached to the
same authorization.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bookrent.core.config import Settings
from bookrent.core.errors import AuthorizationNotFound, GatewayUnavailable, InvalidTransition, PaymentRequestInvalid
from bookrent.models.booking import Booking
from bookrent.models.deposit import (
    OPEN_AUTHORIZATION_STATUSES,
    AuthorizationStatus,
    SecurityDepositAuthorization,
)
from bookrent.models.payment import CARD_METHODS, Payment, PaymentIntent, PaymentLinkStatus, PaymentMethodType
from bookrent.services.audit import record_audit
from bookrent.services.email import send_deposit_notice_email
from bookrent.services.gateway import PaymentLinkGateway
from bookrent.services.payment_links import (
    ensure_payable,
    get_booking,
    open_gateway_link,
    quote_payment,
    record_payment_link,
)
from bookrent.services.payment_state import transition_authorization, transition_payment
from bookrent.services.transitions import check_authorization_transition, payment_sources

logger = logging.getLogger(__name__)

OPEN_LINK_STATUSES = (PaymentLinkStatus.PENDING, PaymentLinkStatus.ACTIVE)


@dataclass
class DepositRequest:
    authorization: SecurityDepositAuthorization
    link: Payment | None
    reused_existing: bool

    @property
    def authorization_url(self) -> str | None:
        return self.link.payment_link_url if self.link else None


async def get_authorization(db: AsyncSession, authorization_id: int) -> SecurityDepositAuthorization:
    result = await db.execute(
        select(SecurityDepositAuthorization).where(SecurityDepositAuthorization.id == authorization_id)
    )
    authorization = result.scalar_one_or_none()
    if authorization is None:
        raise AuthorizationNotFound(f"Security deposit authorization {authorization_id} not found")
    return authorization


async def get_open_authorization(db: AsyncSession, booking_id: int) -> SecurityDepositAuthorization | None:
    result = await db.execute(
        select(SecurityDepositAuthorization).where(
            SecurityDepositAuthorization.booking_id == booking_id,
            SecurityDepositAuthorization.status.in_(OPEN_AUTHORIZATION_STATUSES),
        )
    )
    return result.scalar_one_or_none()


async def _open_link_for_method(
    db: AsyncSession, authorization: SecurityDepositAuthorization, method_type: PaymentMethodType
) -> Payment | None:
    result = await db.execute(
        select(Payment)
        .where(
            Payment.deposit_authorization_id == authorization.id,
            Payment.payment_method_type == method_type,
            Payment.payment_link_status.in_(OPEN_LINK_STATUSES),
        )
        .order_by(Payment.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Request / reuse
# ---------------------------------------------------------------------------

async def request_authorization(
    db: AsyncSession,
    gateway: PaymentLinkGateway,
    settings: Settings,
    booking: Booking,
    amount: Decimal,
    method_type: PaymentMethodType,
) -> DepositRequest:
    """Open a hold for `booking`, or reuse the open one. The booking row should be locked by the caller."""
    if method_type not in CARD_METHODS:
        raise PaymentRequestInvalid("Security deposits need a card payment method")

    existing = await get_open_authorization(db, booking.id)
    if existing is not None:
        if existing.status == AuthorizationStatus.AUTHORIZED:
            return DepositRequest(authorization=existing, link=None, reused_existing=True)

        link = await _open_link_for_method(db, existing, method_type)
        if link is None:
            quote = quote_payment(booking, PaymentIntent.SECURITY_DEPOSIT, Decimal("0"), existing.amount)
            gateway_link = open_gateway_link(
                gateway,
                booking,
                PaymentIntent.SECURITY_DEPOSIT,
                method_type,
                quote,
                settings.deposit_link_expiry_hours,
            )
            link = await record_payment_link(
                db,
                booking,
                PaymentIntent.SECURITY_DEPOSIT,
                method_type,
                quote,
                gateway_link,
                deposit_authorization_id=existing.id,
            )
            await record_audit(
                db,
                "security_deposit_authorization",
                existing.id,
                "authorization_link_added",
                {"payment_id": link.id, "payment_method_type": method_type},
            )
        logger.info("Reusing open deposit authorization %s for booking %s", existing.id, booking.reference_code)
        return DepositRequest(authorization=existing, link=link, reused_existing=True)

    quote = quote_payment(booking, PaymentIntent.SECURITY_DEPOSIT, Decimal("0"), amount)
    gateway_link = open_gateway_link(
        gateway,
        booking,
        PaymentIntent.SECURITY_DEPOSIT,
        method_type,
        quote,
        settings.deposit_link_expiry_hours,
    )

    authorization = SecurityDepositAuthorization(
        booking_id=booking.id,
        amount=quote.original_amount,
        currency=booking.currency,
        authorization_id=gateway_link.payment_id,
        status=AuthorizationStatus.PENDING,
        expires_at=datetime.now(UTC) + timedelta(days=settings.deposit_hold_days),
    )
    db.add(authorization)
    await db.flush()

    link = await record_payment_link(
        db,
        booking,
        PaymentIntent.SECURITY_DEPOSIT,
        method_type,
        quote,
        gateway_link,
        deposit_authorization_id=authorization.id,
    )
    await record_audit(
        db,
        "security_deposit_authorization",
        authorization.id,
        "authorization_requested",
        {
            "booking_id": booking.id,
            "amount": authorization.amount,
            "authorization_id": authorization.authorization_id,
            "payment_method_type": method_type,
        },
    )
    logger.info(
        "Deposit authorization %s requested for booking %s (%s %s)",
        authorization.id,
        booking.reference_code,
        authorization.currency,
        authorization.amount,
    )
    return DepositRequest(authorization=authorization, link=link, reused_existing=False)


async def authorize_security_deposit(
    db: AsyncSession,
    gateway: PaymentLinkGateway,
    settings: Settings,
    booking_id: int,
    amount: Decimal | None = None,
    method_type: PaymentMethodType | None = None,
) -> DepositRequest:
    booking = await get_booking(db, booking_id, for_update=True)
    ensure_payable(booking)

    amount = amount if amount is not None else booking.security_deposit_amount
    if amount is None or amount <= 0:
        raise PaymentRequestInvalid("Booking has no security deposit to authorize")

    method_type = method_type or PaymentMethodType(settings.default_deposit_method)
    request = await request_authorization(db, gateway, settings, booking, amount, method_type)
    await db.commit()
    return request


# ---------------------------------------------------------------------------
# Capture / release
# ---------------------------------------------------------------------------

async def notify_deposit_client(
    db: AsyncSession,
    authorization: SecurityDepositAuthorization,
    settings: Settings,
    send=send_deposit_notice_email,
) -> None:
    """Best-effort client email once a hold change is committed."""
    try:
        booking = await get_booking(db, authorization.booking_id)
        await send(booking, authorization, settings)
    except Exception:
        logger.exception("Deposit notice failed for authorization %s", authorization.id)


async def capture_security_deposit(
    db: AsyncSession,
    gateway: PaymentLinkGateway,
    settings: Settings,
    authorization_id: int,
    amount: Decimal,
    reason: str,
) -> SecurityDepositAuthorization:
    """Charge part or all of an authorized hold."""
    authorization = await get_authorization(db, authorization_id)
    check_authorization_transition(authorization.status, AuthorizationStatus.CAPTURED)

    if amount <= 0:
        raise PaymentRequestInvalid("Capture amount must be positive")
    if amount > authorization.amount:
        raise PaymentRequestInvalid(
            f"Capture amount {amount} exceeds the authorized amount {authorization.amount}"
        )
    if not authorization.gateway_transaction_id:
        raise PaymentRequestInvalid("Authorization has no gateway transaction to capture")

    won = await transition_authorization(
        db,
        authorization,
        AuthorizationStatus.CAPTURED,
        captured_amount=amount,
        capture_reason=reason,
        captured_at=datetime.now(UTC),
    )
    if not won:
        raise InvalidTransition(f"Authorization {authorization.id} is no longer authorized")

    try:
        gateway.capture_authorization(authorization.gateway_transaction_id, amount)
    except GatewayUnavailable:
        await db.rollback()
        raise

    await record_audit(
        db,
        "security_deposit_authorization",
        authorization.id,
        "captured",
        {
            "amount": amount,
            "reason": reason,
            "authorized_amount": authorization.amount,
            "gateway_transaction_id": authorization.gateway_transaction_id,
        },
    )
    await db.commit()
    logger.info("Captured %s of deposit authorization %s", amount, authorization.id)

    await notify_deposit_client(db, authorization, settings)
    return authorization


async def release_security_deposit(
    db: AsyncSession,
    gateway: PaymentLinkGateway,
    settings: Settings,
    authorization_id: int,
) -> SecurityDepositAuthorization:
    """Let an authorized hold go without charging it."""
    authorization = await get_authorization(db, authorization_id)
    check_authorization_transition(authorization.status, AuthorizationStatus.RELEASED)

    won = await transition_authorization(
        db, authorization, AuthorizationStatus.RELEASED, released_at=datetime.now(UTC)
    )
    if not won:
        raise InvalidTransition(f"Authorization {authorization.id} is no longer authorized")

    if authorization.gateway_transaction_id:
        try:
            gateway.release_authorization(authorization.gateway_transaction_id)
        except GatewayUnavailable:
            await db.rollback()
            raise

    await record_audit(
        db,
        "security_deposit_authorization",
        authorization.id,
        "released",
        {"amount": authorization.amount, "gateway_transaction_id": authorization.gateway_transaction_id},
    )
    await db.commit()
    logger.info("Released deposit authorization %s", authorization.id)

    await notify_deposit_client(db, authorization, settings)
    return authorization


# ---------------------------------------------------------------------------
# Expiry
# ---------------------------------------------------------------------------

async def close_open_deposit_links(
    db: AsyncSession,
    authorization: SecurityDepositAuthorization,
    target: PaymentLinkStatus,
    keep_payment_id: int | None = None,
) -> list[Payment]:
    """Move the hold's still-open links to `target`, except `keep_payment_id`. Returns the moved links."""
    query = select(Payment).where(
        Payment.deposit_authorization_id == authorization.id,
        Payment.payment_link_status.in_(payment_sources(target)),
    )
    if keep_payment_id is not None:
        query = query.where(Payment.id != keep_payment_id)
    result = await db.execute(query)

    closed = []
    for link in result.scalars().all():
        if await transition_payment(db, link, target):
            closed.append(link)
    return closed


async def expire_overdue_authorizations(db: AsyncSession, now: datetime | None = None) -> int:
    """Expire holds past their validity. The caller commits."""
    now = now or datetime.now(UTC)
    result = await db.execute(
        select(SecurityDepositAuthorization).where(
            SecurityDepositAuthorization.status.in_(OPEN_AUTHORIZATION_STATUSES),
            SecurityDepositAuthorization.expires_at < now,
        )
    )

    expired = 0
    for authorization in result.scalars().all():
        if not await transition_authorization(db, authorization, AuthorizationStatus.EXPIRED):
            continue
        await close_open_deposit_links(db, authorization, PaymentLinkStatus.EXPIRED)
        await record_audit(db, "security_deposit_authorization", authorization.id, "expired", {"expired_at": now})
        expired += 1

    if expired:
        logger.info("Expired %d security deposit authorizations", expired)
    return expired
