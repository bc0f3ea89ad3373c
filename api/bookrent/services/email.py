"""Email sending via SMTP."""

import logging
from decimal import Decimal
from email.message import EmailMessage

import aiosmtplib

from bookrent.core.config import Settings
from bookrent.models.booking import Booking
from bookrent.models.deposit import SecurityDepositAuthorization
from bookrent.models.payment import Payment


logger = logging.getLogger(__name__)


async def send_email(to: str, subject: str, body: str, settings: Settings) -> None:
    """Send a plain-text email via SMTP."""
    message = EmailMessage()
    message["From"] = settings.smtp_from
    message["To"] = to
    message["Subject"] = subject
    message.set_content(body)

    await aiosmtplib.send(message, hostname=settings.smtp_host, port=settings.smtp_port)


def _money(currency: str, amount: Decimal) -> str:
    return f"{currency} {amount:,.2f}"


async def send_payment_confirmation_email(
    booking: Booking,
    payment: Payment,
    receipt_url: str | None,
    settings: Settings,
) -> bool:
    """Tell the client a payment was received. Returns False when there is nobody to email."""
    if not booking.client_email:
        logger.info("Booking %s has no client email, skipping payment confirmation", booking.reference_code)
        return False

    remaining = max(booking.amount_total - booking.amount_paid, Decimal("0"))
    lines = [
        f"Dear {booking.client_name},",
        "",
        f"We have received your payment for booking {booking.reference_code}.",
        "",
        f"Amount paid: {_money(payment.currency, payment.total_amount)}",
        f"Total paid so far: {_money(booking.currency, booking.amount_paid)}",
        f"Remaining balance: {_money(booking.currency, remaining)}",
    ]
    if receipt_url:
        lines += ["", f"Your receipt: {receipt_url}"]
    lines += ["", settings.company_name]

    await send_email(
        booking.client_email,
        f"Payment Received - {booking.reference_code}",
        "\n".join(lines),
        settings,
    )
    logger.info("Payment confirmation sent for payment %s to %s", payment.id, booking.client_email)
    return True


async def send_deposit_notice_email(
    booking: Booking,
    authorization: SecurityDepositAuthorization,
    settings: Settings,
) -> bool:
    """Tell the client their security deposit hold was captured or released."""
    if not booking.client_email:
        return False

    if authorization.captured_amount is not None:
        remaining = authorization.amount - authorization.captured_amount
        subject = f"Security Deposit Deduction - {booking.reference_code}"
        body = (
            f"Dear {booking.client_name},\n\n"
            f"A deduction has been made from your security deposit.\n\n"
            f"Reason: {authorization.capture_reason}\n"
            f"Original deposit: {_money(authorization.currency, authorization.amount)}\n"
            f"Amount deducted: {_money(authorization.currency, authorization.captured_amount)}\n"
            f"Remaining balance: {_money(authorization.currency, remaining)}\n\n"
            f"{settings.company_name}"
        )
    else:
        subject = f"Security Deposit Released - {booking.reference_code}"
        body = (
            f"Dear {booking.client_name},\n\n"
            f"Your security deposit of {_money(authorization.currency, authorization.amount)} "
            f"has been released and will appear back in your account within 5-7 business days.\n\n"
            f"{settings.company_name}"
        )

    await send_email(booking.client_email, subject, body, settings)
    return True


async def send_deposit_authorized_email(
    booking: Booking,
    authorization: SecurityDepositAuthorization,
    settings: Settings,
) -> bool:
    """Tell the client the security deposit hold is in place."""
    if not booking.client_email:
        return False

    body = (
        f"Dear {booking.client_name},\n\n"
        f"Your security deposit of {_money(authorization.currency, authorization.amount)} "
        f"for booking {booking.reference_code} has been authorized on your card.\n\n"
        f"This is a hold, not a charge. It will be released after your rental is complete "
        f"and the vehicle is returned in good condition.\n\n"
        f"{settings.company_name}"
    )
    await send_email(booking.client_email, f"Security Deposit Authorized - {booking.reference_code}", body, settings)
    logger.info("Deposit authorization notice sent for booking %s", booking.reference_code)
    return True


async def send_bank_transfer_instructions_email(booking: Booking, payment: Payment, settings: Settings) -> bool:
    """Send the account details a client needs to pay a pending bank transfer."""
    if not booking.client_email:
        logger.info("Booking %s has no client email, skipping transfer instructions", booking.reference_code)
        return False

    lines = [
        f"Dear {booking.client_name},",
        "",
        f"Please transfer {_money(payment.currency, payment.total_amount)} for booking {booking.reference_code}.",
        "",
        f"Account holder: {settings.bank_account_holder}",
        f"IBAN: {settings.bank_account_iban}",
        f"BIC: {settings.bank_account_bic}",
    ]
    if settings.bank_account_bank_name:
        lines.append(f"Bank: {settings.bank_account_bank_name}")
    lines += [
        f"Reference: {booking.reference_code}",
        "",
        "Your booking is confirmed. We will send a receipt once the transfer arrives.",
        "",
        settings.company_name,
    ]

    await send_email(
        booking.client_email,
        f"Bank Transfer Instructions - {booking.reference_code}",
        "\n".join(lines),
        settings,
    )
    logger.info("Bank transfer instructions sent for payment %s", payment.id)
    return True


async def send_balance_reminder_email(
    booking: Booking,
    balance: Decimal,
    payment_url: str | None,
    days_until_delivery: int,
    settings: Settings,
) -> bool:
    if not booking.client_email:
        return False

    lines = [
        f"Dear {booking.client_name},",
        "",
        f"Your {booking.car_model or 'rental'} is due in {days_until_delivery} day(s). "
        f"A balance of {_money(booking.currency, balance)} is still open on booking {booking.reference_code}.",
    ]
    if payment_url:
        lines += ["", f"Pay online: {payment_url}"]
    lines += ["", settings.company_name]

    await send_email(
        booking.client_email,
        f"Balance Payment Reminder - {booking.reference_code}",
        "\n".join(lines),
        settings,
    )
    return True


async def send_deposit_reminder_email(
    booking: Booking,
    authorization_url: str | None,
    days_until_delivery: int,
    settings: Settings,
) -> bool:
    if not booking.client_email:
        return False

    lines = [
        f"Dear {booking.client_name},",
        "",
        f"Your rental starts in {days_until_delivery} day(s). Please authorize the security deposit of "
        f"{_money(booking.currency, booking.security_deposit_amount)} for booking {booking.reference_code}.",
        "The amount is held on your card, not charged.",
    ]
    if authorization_url:
        lines += ["", f"Authorize online: {authorization_url}"]
    lines += ["", settings.company_name]

    await send_email(
        booking.client_email,
        f"Security Deposit Reminder - {booking.reference_code}",
        "\n".join(lines),
        settings,
    )
    return True
