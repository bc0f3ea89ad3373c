"""Payment receipts.

Renders a plain-text receipt for a settled payment into the receipt
directory and records its public URL on the payment. Layout beyond the
essentials is left to the document service that consumes these files.
"""

import logging
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncSession

from bookrent.core.config import Settings
from bookrent.models.booking import Booking
from bookrent.models.payment import Payment
from bookrent.services.audit import record_audit

logger = logging.getLogger(__name__)


def render_receipt(payment: Payment, booking: Booking, company_name: str) -> str:
    paid_at = payment.paid_at.strftime("%Y-%m-%d %H:%M") if payment.paid_at else "-"
    rows = [
        f"{company_name} - Payment Receipt",
        "",
        f"Booking reference: {booking.reference_code}",
        f"Client: {booking.client_name}",
        f"Receipt for payment #{payment.id} ({payment.payment_intent.value.replace('_', ' ')})",
        f"Payment method: {payment.payment_method_type.value.replace('_', ' ')}",
        f"Paid at: {paid_at}",
        f"Transaction: {payment.gateway_transaction_id or '-'}",
        "",
        f"Amount: {payment.currency} {payment.amount:,.2f}",
        f"Fee ({payment.fee_percentage}%): {payment.currency} {payment.fee_amount:,.2f}",
        f"Total charged: {payment.currency} {payment.total_amount:,.2f}",
    ]
    return "\n".join(rows) + "\n"


async def generate_receipt(db: AsyncSession, payment: Payment, booking: Booking, settings: Settings) -> str:
    """Write the receipt file, store its URL on the payment and audit the generation."""
    relative = Path(str(booking.id)) / f"receipt_{payment.id}_{int(datetime.now(UTC).timestamp())}.txt"
    target = Path(settings.receipt_dir) / relative
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(render_receipt(payment, booking, settings.company_name), encoding="utf-8")

    url = f"{settings.receipt_base_url.rstrip('/')}/{relative.as_posix()}"
    payment.receipt_url = url
    await record_audit(db, "payment", payment.id, "receipt_generation", {"receipt_url": url})
    logger.info("Receipt generated for payment %s: %s", payment.id, url)
    return url
