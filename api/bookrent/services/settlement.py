"""Side effects that follow a committed payment settlement.

Both settlement paths (gateway webhook and staff bank-transfer confirmation)
run these after the payment is committed as paid. Each step is best-effort:
a failure is logged and audited, and never undoes the settlement or blocks
the steps after it.
"""

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from bookrent.core.config import Settings
from bookrent.models.payment import Payment, is_initial_intent
from bookrent.services.audit import record_audit
from bookrent.services.email import send_payment_confirmation_email
from bookrent.services.followup_links import FollowupResult, generate_followup_links
from bookrent.services.gateway import PaymentLinkGateway
from bookrent.services.payment_links import get_booking
from bookrent.services.receipts import generate_receipt

logger = logging.getLogger(__name__)


@dataclass
class SettlementEffects:
    followup: FollowupResult | None = None
    receipt_url: str | None = None
    email_sent: bool = False


async def _record_failure(db: AsyncSession, payment_id: int, step: str, exc: Exception) -> None:
    await db.rollback()
    try:
        await record_audit(db, "payment", payment_id, f"{step}_failed", {"error": str(exc)})
        await db.commit()
    except Exception:
        logger.exception("Could not audit %s failure for payment %s", step, payment_id)
        await db.rollback()


async def run_settlement_effects(
    db: AsyncSession,
    gateway: PaymentLinkGateway,
    settings: Settings,
    payment: Payment,
) -> SettlementEffects:
    """Follow-up links (initial payments only), then the receipt, then the client email."""
    effects = SettlementEffects()
    # A failed step rolls the session back and expires `payment`, so keep plain ids
    payment_id, booking_id = payment.id, payment.booking_id

    if is_initial_intent(payment.payment_intent):
        try:
            effects.followup = await generate_followup_links(db, gateway, settings, booking_id)
        except Exception as exc:
            logger.exception("Follow-up link generation failed for booking %s", booking_id)
            await _record_failure(db, payment_id, "followup_links", exc)

    try:
        await db.refresh(payment)
        booking = await get_booking(db, booking_id)
        effects.receipt_url = await generate_receipt(db, payment, booking, settings)
        await db.commit()
    except Exception as exc:
        logger.exception("Receipt generation failed for payment %s", payment_id)
        await _record_failure(db, payment_id, "receipt_generation", exc)

    try:
        await db.refresh(payment)
        booking = await get_booking(db, booking_id)
        effects.email_sent = await send_payment_confirmation_email(booking, payment, effects.receipt_url, settings)
    except Exception as exc:
        logger.exception("Payment confirmation email failed for payment %s", payment_id)
        await _record_failure(db, payment_id, "confirmation_email", exc)

    return effects
