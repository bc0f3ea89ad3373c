"""Fee calculation, balance aggregation, payment links and bank transfers."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from bookrent.core.database import async_session_factory
from bookrent.core.errors import AlreadyConfirmed, Forbidden, GatewayUnavailable, PaymentRequestInvalid
from bookrent.models import (
    Booking,
    BookingStatus,
    Payment,
    PaymentIntent,
    PaymentLinkStatus,
    PaymentMethodType,
    UserRole,
)
from bookrent.services.audit import list_audit
from bookrent.services.balance import (
    balance_amount,
    down_payment_amount,
    payment_requirements,
    recalculate_booking_balance,
)
from bookrent.services.bank_transfer import confirm_bank_transfer
from bookrent.services.payment_links import (
    create_bank_transfer_payment,
    create_card_payment_link,
    expire_stale_payment_links,
    quote_payment,
)
from bookrent.services.payment_state import transition_payment

PAID_AT = datetime(2026, 5, 1, 12, 0, tzinfo=UTC)


def _booking(total="1000.00", percent=30, paid="0"):
    return SimpleNamespace(
        amount_total=Decimal(total),
        amount_paid=Decimal(paid),
        payment_amount_percent=percent,
    )


# ---------------------------------------------------------------------------
# Amounts and fees
# ---------------------------------------------------------------------------


def test_down_payment_and_balance_split():
    booking = _booking(percent=30)
    assert down_payment_amount(booking) == Decimal("300.00")
    assert balance_amount(booking) == Decimal("700.00")


def test_quote_client_payment_adds_fee():
    quote = quote_payment(_booking(percent=30), PaymentIntent.CLIENT_PAYMENT, Decimal("2.50"))
    assert quote.original_amount == Decimal("300.00")
    assert quote.fee_amount == Decimal("7.50")
    assert quote.total_amount == Decimal("307.50")


def test_quote_zero_percent_charges_full_total():
    quote = quote_payment(_booking(percent=0), PaymentIntent.DOWN_PAYMENT, Decimal("0"))
    assert quote.original_amount == Decimal("1000.00")


def test_quote_balance_is_what_is_left_to_pay():
    quote = quote_payment(_booking(paid="300.00"), PaymentIntent.BALANCE_PAYMENT, Decimal("0"))
    assert quote.original_amount == Decimal("700.00")


def test_quote_security_deposit_never_carries_a_fee():
    quote = quote_payment(_booking(), PaymentIntent.SECURITY_DEPOSIT, Decimal("3.50"), Decimal("500"))
    assert quote.fee_percentage == Decimal("0")
    assert quote.total_amount == Decimal("500.00")


def test_quote_security_deposit_needs_an_amount():
    with pytest.raises(PaymentRequestInvalid):
        quote_payment(_booking(), PaymentIntent.SECURITY_DEPOSIT, Decimal("0"))


def test_quote_nothing_left_to_pay():
    with pytest.raises(PaymentRequestInvalid):
        quote_payment(_booking(paid="1000.00"), PaymentIntent.BALANCE_PAYMENT, Decimal("0"))


@pytest.mark.asyncio
async def test_calculate_endpoint(client, staff_headers, make_booking):
    booking = await make_booking()
    resp = await client.post(
        "/api/v1/payments/calculate",
        json={"booking_id": booking.id, "payment_intent": "client_payment", "payment_method_type": "amex"},
        headers=staff_headers,
    )
    assert resp.status_code == 200
    data = resp.json()
    assert Decimal(data["original_amount"]) == Decimal("300.00")
    assert Decimal(data["fee_amount"]) == Decimal("10.50")
    assert Decimal(data["total_amount"]) == Decimal("310.50")


# ---------------------------------------------------------------------------
# Balance aggregation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_amount_paid_counts_only_settled_rental_payments(make_booking, make_payment, app_settings):
    booking = await make_booking(security_deposit_amount=Decimal("500"))
    await make_payment(booking, amount=Decimal("300.00"), payment_link_status=PaymentLinkStatus.PAID, paid_at=PAID_AT)
    # Paid status without paid_at is a half-written record and does not count
    await make_payment(booking, amount=Decimal("50.00"), payment_link_status=PaymentLinkStatus.PAID)
    # Still open
    await make_payment(booking, amount=Decimal("700.00"), payment_intent=PaymentIntent.BALANCE_PAYMENT)
    # Deposits never count
    await make_payment(
        booking,
        amount=Decimal("500.00"),
        payment_intent=PaymentIntent.SECURITY_DEPOSIT,
        payment_link_status=PaymentLinkStatus.PAID,
        paid_at=PAID_AT,
    )

    async with async_session_factory() as db:
        refreshed = await recalculate_booking_balance(db, booking.id, app_settings)
        await db.commit()

    assert refreshed.amount_paid == Decimal("300.00")
    assert refreshed.status == BookingStatus.CONFIRMED


@pytest.mark.asyncio
async def test_booking_stays_draft_below_down_payment(make_booking, make_payment, app_settings):
    booking = await make_booking()
    await make_payment(booking, amount=Decimal("100.00"), payment_link_status=PaymentLinkStatus.PAID, paid_at=PAID_AT)

    async with async_session_factory() as db:
        refreshed = await recalculate_booking_balance(db, booking.id, app_settings)

    assert refreshed.amount_paid == Decimal("100.00")
    assert refreshed.status == BookingStatus.DRAFT


@pytest.mark.asyncio
async def test_zero_percent_booking_confirms_on_any_payment(make_booking, make_payment, app_settings):
    booking = await make_booking(payment_amount_percent=0)
    await make_payment(booking, amount=Decimal("0.01"), payment_link_status=PaymentLinkStatus.PAID, paid_at=PAID_AT)

    async with async_session_factory() as db:
        refreshed = await recalculate_booking_balance(db, booking.id, app_settings)

    assert refreshed.status == BookingStatus.CONFIRMED


@pytest.mark.asyncio
async def test_cancelled_booking_is_not_auto_confirmed(make_booking, make_payment, app_settings):
    booking = await make_booking(status=BookingStatus.CANCELLED)
    await make_payment(booking, amount=Decimal("300.00"), payment_link_status=PaymentLinkStatus.PAID, paid_at=PAID_AT)

    async with async_session_factory() as db:
        refreshed = await recalculate_booking_balance(db, booking.id, app_settings)

    assert refreshed.amount_paid == Decimal("300.00")
    assert refreshed.status == BookingStatus.CANCELLED


# ---------------------------------------------------------------------------
# Card payment links
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_card_link_persists_active_payment(make_booking, gateway, app_settings):
    booking = await make_booking()

    async with async_session_factory() as db:
        payment = await create_card_payment_link(
            db, gateway, app_settings, booking.id, PaymentIntent.CLIENT_PAYMENT, PaymentMethodType.VISA_MASTERCARD
        )
        await db.commit()
        audit = await list_audit(db, "payment", payment.id)

    assert payment.payment_link_status == PaymentLinkStatus.ACTIVE
    assert payment.gateway_session_id.startswith("cs_test_")
    assert payment.amount == Decimal("300.00")
    assert payment.total_amount == Decimal("307.50")
    assert [a.action for a in audit] == ["payment_link_created"]


@pytest.mark.asyncio
async def test_create_card_link_rejects_bank_transfer_method(make_booking, gateway, app_settings):
    booking = await make_booking()

    async with async_session_factory() as db:
        with pytest.raises(PaymentRequestInvalid):
            await create_card_payment_link(
                db, gateway, app_settings, booking.id, PaymentIntent.CLIENT_PAYMENT, PaymentMethodType.BANK_TRANSFER
            )


@pytest.mark.asyncio
async def test_gateway_failure_leaves_no_payment(make_booking, app_settings):
    booking = await make_booking()

    class BrokenGateway:
        def create_payment_link(self, **kwargs):
            raise GatewayUnavailable("gateway down")

    async with async_session_factory() as db:
        with pytest.raises(GatewayUnavailable) as exc_info:
            await create_card_payment_link(
                db,
                BrokenGateway(),
                app_settings,
                booking.id,
                PaymentIntent.CLIENT_PAYMENT,
                PaymentMethodType.VISA_MASTERCARD,
            )
        assert exc_info.value.status_code == 502
        result = await db.execute(select(Payment).where(Payment.booking_id == booking.id))
        assert result.scalars().all() == []


@pytest.mark.asyncio
async def test_create_link_endpoint_rejects_cancelled_booking(client, staff_headers, make_booking):
    booking = await make_booking(status=BookingStatus.CANCELLED)
    resp = await client.post("/api/v1/payments/links", json={"booking_id": booking.id}, headers=staff_headers)
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_create_link_endpoint_requires_staff(client, viewer_headers, make_booking):
    booking = await make_booking()
    resp = await client.post("/api/v1/payments/links", json={"booking_id": booking.id}, headers=viewer_headers)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_expire_stale_payment_links(make_booking, make_payment):
    booking = await make_booking()
    stale = await make_payment(booking, payment_link_expires_at=datetime.now(UTC) - timedelta(hours=1))
    fresh = await make_payment(booking, payment_link_expires_at=datetime.now(UTC) + timedelta(hours=1))

    async with async_session_factory() as db:
        count = await expire_stale_payment_links(db)
        await db.commit()

    assert count == 1
    async with async_session_factory() as db:
        assert (await db.get(Payment, stale.id)).payment_link_status == PaymentLinkStatus.EXPIRED
        assert (await db.get(Payment, fresh.id)).payment_link_status == PaymentLinkStatus.ACTIVE


# ---------------------------------------------------------------------------
# Bank transfers
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_bank_transfer_selection_confirms_draft_booking(make_booking, app_settings):
    booking = await make_booking()

    async with async_session_factory() as db:
        payment = await create_bank_transfer_payment(db, app_settings, booking.id, PaymentIntent.CLIENT_PAYMENT)
        await db.commit()

    assert payment.payment_link_status == PaymentLinkStatus.PENDING
    assert payment.payment_method_type == PaymentMethodType.BANK_TRANSFER
    assert payment.payment_link_url.endswith(f"/payment/bank-transfer?payment_id={payment.id}")

    async with async_session_factory() as db:
        stored = await db.get(Booking, booking.id)
        assert stored.status == BookingStatus.CONFIRMED
        # Choosing bank transfer confirms the booking, it does not pay it
        assert stored.amount_paid == Decimal("0")


@pytest.mark.asyncio
async def test_confirm_bank_transfer_twice_is_already_confirmed(
    client, staff_headers, make_booking, make_payment, smtp_send
):
    booking = await make_booking()
    payment = await make_payment(
        booking,
        payment_method_type=PaymentMethodType.BANK_TRANSFER,
        payment_link_status=PaymentLinkStatus.PENDING,
        gateway_session_id=None,
    )

    resp = await client.post(
        "/api/v1/payments/bank-transfer/confirm", json={"payment_id": payment.id}, headers=staff_headers
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert data["receipt_url"].startswith(f"http://localhost:8000/receipts/{booking.id}/receipt_{payment.id}_")

    resp = await client.post(
        "/api/v1/payments/bank-transfer/confirm", json={"payment_id": payment.id}, headers=staff_headers
    )
    assert resp.status_code == 409

    async with async_session_factory() as db:
        stored = await db.get(Payment, payment.id)
        assert stored.gateway_transaction_id.startswith("BANK_TRANSFER_")
        stored_booking = await db.get(Booking, booking.id)
        assert stored_booking.amount_paid == Decimal("300.00")
        assert stored_booking.status == BookingStatus.CONFIRMED
        # Down payment of 30% leaves a balance link behind
        result = await db.execute(
            select(Payment).where(
                Payment.booking_id == booking.id, Payment.payment_intent == PaymentIntent.BALANCE_PAYMENT
            )
        )
        assert len(result.scalars().all()) == 1

    smtp_send.assert_awaited_once()


@pytest.mark.asyncio
async def test_confirm_bank_transfer_service_raises_already_confirmed(
    make_booking, make_payment, gateway, app_settings
):
    booking = await make_booking()
    payment = await make_payment(
        booking,
        payment_method_type=PaymentMethodType.BANK_TRANSFER,
        payment_link_status=PaymentLinkStatus.PAID,
        paid_at=PAID_AT,
    )
    actor = SimpleNamespace(id=1, email="staff@test.example", can_operate_payments=True)

    async with async_session_factory() as db:
        with pytest.raises(AlreadyConfirmed):
            await confirm_bank_transfer(db, gateway, app_settings, payment.id, actor)


@pytest.mark.asyncio
async def test_confirm_bank_transfer_forbidden_for_viewer(client, viewer_headers, make_booking, make_payment):
    booking = await make_booking()
    payment = await make_payment(booking, payment_method_type=PaymentMethodType.BANK_TRANSFER)

    resp = await client.post(
        "/api/v1/payments/bank-transfer/confirm", json={"payment_id": payment.id}, headers=viewer_headers
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_confirm_bank_transfer_forbidden_checked_before_lookup(gateway, app_settings):
    actor = SimpleNamespace(id=1, email="viewer@test.example", role=UserRole.VIEWER, can_operate_payments=False)
    async with async_session_factory() as db:
        with pytest.raises(Forbidden):
            await confirm_bank_transfer(db, gateway, app_settings, 9999, actor)


@pytest.mark.asyncio
async def test_confirm_unknown_payment_is_404(client, staff_headers):
    resp = await client.post("/api/v1/payments/bank-transfer/confirm", json={"payment_id": 9999}, headers=staff_headers)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_confirm_bank_transfer_losing_the_update_is_already_confirmed(
    make_booking, make_payment, gateway, app_settings
):
    booking = await make_booking()
    payment = await make_payment(
        booking,
        payment_method_type=PaymentMethodType.BANK_TRANSFER,
        payment_link_status=PaymentLinkStatus.PENDING,
        gateway_session_id=None,
    )
    actor = SimpleNamespace(id=1, email="staff@test.example", can_operate_payments=True)

    async def confirmed_elsewhere_first(db, stale, target, **values):
        # A second staff member confirms between our status check and our update
        async with async_session_factory() as other:
            await transition_payment(other, await other.get(Payment, stale.id), target, **values)
            await other.commit()
        return await transition_payment(db, stale, target, **values)

    with (
        patch("bookrent.services.bank_transfer.transition_payment", side_effect=confirmed_elsewhere_first),
        patch("bookrent.services.bank_transfer.run_settlement_effects", new_callable=AsyncMock) as effects,
    ):
        async with async_session_factory() as db:
            with pytest.raises(AlreadyConfirmed):
                await confirm_bank_transfer(db, gateway, app_settings, payment.id, actor)

    effects.assert_not_awaited()
    async with async_session_factory() as db:
        stored = await db.get(Payment, payment.id)
        actions = [entry.action for entry in await list_audit(db, "payment", payment.id)]
    assert stored.payment_link_status == PaymentLinkStatus.PAID
    assert "bank_transfer_confirmed" not in actions


@pytest.mark.asyncio
async def test_bank_transfer_endpoint_emails_instructions(
    client, staff_headers, make_booking, app_settings, smtp_send, monkeypatch
):
    booking = await make_booking()
    monkeypatch.setattr(app_settings, "bank_account_iban", "PT50000201231234567890154")
    monkeypatch.setattr(app_settings, "bank_account_bic", "CGDIPTPL")

    resp = await client.post(
        "/api/v1/payments/bank-transfer",
        json={"booking_id": booking.id, "payment_intent": "client_payment"},
        headers=staff_headers,
    )
    assert resp.status_code == 201
    assert resp.json()["payment_link_status"] == "pending"

    smtp_send.assert_awaited_once()
    message = smtp_send.await_args.args[0]
    assert message["Subject"] == f"Bank Transfer Instructions - {booking.reference_code}"
    body = message.get_content()
    assert "PT50000201231234567890154" in body
    assert "CGDIPTPL" in body
    assert f"Reference: {booking.reference_code}" in body


@pytest.mark.asyncio
async def test_bank_transfer_survives_instructions_email_failure(
    client, staff_headers, make_booking, smtp_send
):
    booking = await make_booking()
    smtp_send.side_effect = OSError("connection refused")

    resp = await client.post(
        "/api/v1/payments/bank-transfer",
        json={"booking_id": booking.id, "payment_intent": "client_payment"},
        headers=staff_headers,
    )
    assert resp.status_code == 201

    async with async_session_factory() as db:
        stored = await db.get(Payment, resp.json()["id"])
    assert stored.payment_link_status == PaymentLinkStatus.PENDING


# ---------------------------------------------------------------------------
# Payment requirements
# ---------------------------------------------------------------------------


def test_requirements_for_draft_with_down_payment_met():
    booking = SimpleNamespace(**vars(_booking(paid="300.00")), status=BookingStatus.DRAFT)
    requirements = payment_requirements(booking)
    assert requirements.required_down_payment == Decimal("300.00")
    assert requirements.down_payment_met is True
    assert requirements.can_confirm is True
    assert requirements.fully_paid is False
    assert requirements.payment_progress_percent == 30
    assert requirements.remaining_amount == Decimal("700.00")


def test_requirements_progress_rounds_half_up():
    booking = SimpleNamespace(**vars(_booking(total="200.00", paid="1.00")), status=BookingStatus.CONFIRMED)
    requirements = payment_requirements(booking)
    assert requirements.payment_progress_percent == 1
    assert requirements.can_confirm is False


def test_requirements_zero_percent_and_zero_total():
    booking = SimpleNamespace(**vars(_booking(total="0", percent=0)), status=BookingStatus.DRAFT)
    requirements = payment_requirements(booking)
    assert requirements.required_down_payment == Decimal("0")
    assert requirements.down_payment_met is True
    assert requirements.fully_paid is True
    assert requirements.payment_progress_percent == 0


@pytest.mark.asyncio
async def test_payment_requirements_endpoint(client, viewer_headers, make_booking):
    booking = await make_booking(amount_paid=Decimal("1000.00"), status=BookingStatus.CONFIRMED)

    resp = await client.get(f"/api/v1/bookings/{booking.id}/payment-requirements", headers=viewer_headers)
    assert resp.status_code == 200
    data = resp.json()
    assert Decimal(data["required_down_payment"]) == Decimal("300.00")
    assert data["down_payment_met"] is True
    assert data["fully_paid"] is True
    assert data["can_confirm"] is False
    assert data["payment_progress_percent"] == 100
    assert Decimal(data["remaining_amount"]) == Decimal("0")


@pytest.mark.asyncio
async def test_payment_requirements_unknown_booking_is_404(client, viewer_headers):
    resp = await client.get("/api/v1/bookings/9999/payment-requirements", headers=viewer_headers)
    assert resp.status_code == 404
