"""Booking model.

A booking is a car rental sold to a client. It carries the agreed total and
the split between the initial (down) payment and the balance. `amount_paid`
is never written directly by callers: it is recomputed from settled payments
by `bookrent.services.balance`.
"""

import enum
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, Enum, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bookrent.models.base import Base, TimestampMixin, enum_values

if TYPE_CHECKING:
    from bookrent.models.deposit import SecurityDepositAuthorization
    from bookrent.models.payment import Payment


class BookingStatus(enum.StrEnum):
    DRAFT = "draft"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class Booking(TimestampMixin, Base):
    __tablename__ = "bookings"

    id: Mapped[int] = mapped_column(primary_key=True)
    reference_code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)

    # Client
    client_name: Mapped[str] = mapped_column(String(200), nullable=False)
    client_email: Mapped[str | None] = mapped_column(String(254))
    car_model: Mapped[str | None] = mapped_column(String(200))
    delivery_datetime: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Money
    currency: Mapped[str] = mapped_column(String(3), default="EUR", nullable=False)
    amount_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    payment_amount_percent: Mapped[int] = mapped_column(Integer, default=100, nullable=False)
    security_deposit_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0"), nullable=False
    )

    # Status
    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus, name="booking_status", values_callable=enum_values),
        default=BookingStatus.DRAFT,
        nullable=False,
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    notes: Mapped[str | None] = mapped_column(Text)

    # Reminders
    balance_payment_reminder_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    security_deposit_reminder_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Relationships
    payments: Mapped[list["Payment"]] = relationship(back_populates="booking", lazy="raise")
    deposit_authorizations: Mapped[list["SecurityDepositAuthorization"]] = relationship(
        back_populates="booking", lazy="raise"
    )

    __table_args__ = (Index("ix_bookings_status", "status"),)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def __repr__(self) -> str:
        return f"<Booking {self.reference_code} {self.status.value}>"
