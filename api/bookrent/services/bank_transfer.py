"""Staff confirmation of bank transfers.

Unlike webhooks, confirming a transfer twice is a staff error and is reported
as such (`AlreadyConfirmed`), not silently ignored.
"""

import logging
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bookrent.core.config import Settings
from bookrent.core.errors import AlreadyConfirmed, Forbidden, PaymentNotFound
from bookrent.models.payment import Payment, PaymentLinkStatus
from bookrent.models.user import User
from bookrent.services.audit import record_audit
from bookrent.services.balance import recalculate_booking_balance
from bookrent.services.gateway import PaymentLinkGateway
from bookrent.services.payment_state import transition_payment
from bookrent.services.settlement import run_settlement_effects
from bookrent.services.transitions import check_payment_transition

logger = logging.getLogger(__name__)


def bank_transfer_reference(now: datetime) -> str:
    return f"BANK_TRANSFER_{now.strftime('%Y%m%d%H%M%S')}"


async def confirm_bank_transfer(
    db: AsyncSession,
    gateway: PaymentLinkGateway,
    settings: Settings,
    payment_id: int,
    actor: User,
) -> str | None:
    """Mark a bank-transfer payment paid and run the settlement side effects. Returns the receipt URL."""
    if not actor.can_operate_payments:
        raise Forbidden("Only admin or staff can confirm bank transfers")

    result = await db.execute(select(Payment).where(Payment.id == payment_id))
    payment = result.scalar_one_or_none()
    if payment is None:
        raise PaymentNotFound(f"Payment {payment_id} not found")

    if payment.payment_link_status == PaymentLinkStatus.PAID:
        raise AlreadyConfirmed(f"Payment {payment_id} is already confirmed")
    check_payment_transition(payment.payment_link_status, PaymentLinkStatus.PAID)

    now = datetime.now(UTC)
    won = await transition_payment(
        db,
        payment,
        PaymentLinkStatus.PAID,
        paid_at=now,
        gateway_transaction_id=bank_transfer_reference(now),
    )
    if not won:
        # Another confirmation committed between our read and the update
        raise AlreadyConfirmed(f"Payment {payment_id} is already confirmed")

    await record_audit(
        db,
        "payment",
        payment.id,
        "bank_transfer_confirmed",
        {"confirmed_by": actor.id, "amount": payment.amount, "gateway_transaction_id": payment.gateway_transaction_id},
    )
    await recalculate_booking_balance(db, payment.booking_id, settings)
    await db.commit()
    logger.info("Bank transfer payment %s confirmed by %s", payment.id, actor.email)

    effects = await run_settlement_effects(db, gateway, settings, payment)
    return effects.receipt_url
