"""Payment model.

A Payment is one payment attempt for a booking: a hosted card link, a bank
transfer awaiting confirmation, or a security-deposit hold link. A payment is
settled only when `paid_at` is set AND `payment_link_status` is exactly
``paid``; either alone means a partially-updated record.
"""

import enum
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, Enum, ForeignKey, Index, Numeric, String, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bookrent.models.base import Base, TimestampMixin, enum_values

if TYPE_CHECKING:
    from bookrent.models.booking import Booking
    from bookrent.models.deposit import SecurityDepositAuthorization


class PaymentIntent(enum.StrEnum):
    CLIENT_PAYMENT = "client_payment"
    DOWN_PAYMENT = "down_payment"
    FULL_PAYMENT = "full_payment"
    BALANCE_PAYMENT = "balance_payment"
    FINAL_PAYMENT = "final_payment"
    SECURITY_DEPOSIT = "security_deposit"


# Intents whose settlement counts towards Booking.amount_paid
RENTAL_INTENTS = (
    PaymentIntent.CLIENT_PAYMENT,
    PaymentIntent.DOWN_PAYMENT,
    PaymentIntent.FULL_PAYMENT,
    PaymentIntent.BALANCE_PAYMENT,
    PaymentIntent.FINAL_PAYMENT,
)
BALANCE_INTENTS = (PaymentIntent.BALANCE_PAYMENT, PaymentIntent.FINAL_PAYMENT)


def is_initial_intent(intent: PaymentIntent) -> bool:
    """Initial payments are everything except balance payments and deposits."""
    return intent not in BALANCE_INTENTS and intent != PaymentIntent.SECURITY_DEPOSIT


class PaymentLinkStatus(enum.StrEnum):
    PENDING = "pending"
    ACTIVE = "active"
    PAID = "paid"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class PaymentMethodType(enum.StrEnum):
    VISA_MASTERCARD = "visa_mastercard"
    AMEX = "amex"
    BANK_TRANSFER = "bank_transfer"


CARD_METHODS = (PaymentMethodType.VISA_MASTERCARD, PaymentMethodType.AMEX)


class Payment(TimestampMixin, Base):
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(primary_key=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id"), nullable=False, index=True)

    payment_intent: Mapped[PaymentIntent] = mapped_column(
        Enum(PaymentIntent, name="payment_intent", values_callable=enum_values), nullable=False
    )
    payment_method_type: Mapped[PaymentMethodType] = mapped_column(
        Enum(PaymentMethodType, name="payment_method_type", values_callable=enum_values), nullable=False
    )

    # Amounts: amount is what counts towards the booking, total_amount adds the method fee
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    fee_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0"), nullable=False)
    fee_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    # Gateway references
    gateway_session_id: Mapped[str | None] = mapped_column(String(200), index=True)
    gateway_transaction_id: Mapped[str | None] = mapped_column(String(200), index=True)

    # Link state
    payment_link_status: Mapped[PaymentLinkStatus] = mapped_column(
        Enum(PaymentLinkStatus, name="payment_link_status", values_callable=enum_values),
        default=PaymentLinkStatus.PENDING,
        nullable=False,
    )
    payment_link_url: Mapped[str | None] = mapped_column(String(1000))
    payment_link_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    receipt_url: Mapped[str | None] = mapped_column(String(1000))

    # Security-deposit links belong to one authorization
    deposit_authorization_id: Mapped[int | None] = mapped_column(
        ForeignKey("security_deposit_authorizations.id")
    )

    # Relationships
    booking: Mapped["Booking"] = relationship(back_populates="payments", lazy="raise")
    deposit_authorization: Mapped["SecurityDepositAuthorization | None"] = relationship(
        back_populates="payment_links", lazy="raise"
    )

    __table_args__ = (
        # One outstanding balance link per booking
        Index(
            "ix_payments_one_open_balance",
            "booking_id",
            unique=True,
            postgresql_where=text(
                "payment_intent IN ('balance_payment', 'final_payment') "
                "AND payment_link_status IN ('pending', 'active')"
            ),
            sqlite_where=text(
                "payment_intent IN ('balance_payment', 'final_payment') "
                "AND payment_link_status IN ('pending', 'active')"
            ),
        ),
    )

    @property
    def is_settled(self) -> bool:
        return self.paid_at is not None and self.payment_link_status == PaymentLinkStatus.PAID

    def __repr__(self) -> str:
        return f"<Payment {self.id} {self.payment_intent.value} {self.payment_link_status.value}>"
