"""Security deposit authorization model.

An authorization is a hold on the client's card, not a charge. It is tracked
apart from payments and never counts towards the booking balance.
"""

import enum
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, Enum, ForeignKey, Index, Numeric, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bookrent.models.base import Base, TimestampMixin, enum_values

if TYPE_CHECKING:
    from bookrent.models.booking import Booking
    from bookrent.models.payment import Payment


class AuthorizationStatus(enum.StrEnum):
    PENDING = "pending"
    AUTHORIZED = "authorized"
    RELEASED = "released"
    CAPTURED = "captured"
    EXPIRED = "expired"


OPEN_AUTHORIZATION_STATUSES = (AuthorizationStatus.PENDING, AuthorizationStatus.AUTHORIZED)


class SecurityDepositAuthorization(TimestampMixin, Base):
    __tablename__ = "security_deposit_authorizations"

    id: Mapped[int] = mapped_column(primary_key=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id"), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    # External reference of the first hold link; webhooks resolve on it
    authorization_id: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    # Gateway transaction holding the funds, known once authorized
    gateway_transaction_id: Mapped[str | None] = mapped_column(String(200))

    status: Mapped[AuthorizationStatus] = mapped_column(
        Enum(AuthorizationStatus, name="authorization_status", values_callable=enum_values),
        default=AuthorizationStatus.PENDING,
        nullable=False,
    )
    authorized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    captured_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    capture_reason: Mapped[str | None] = mapped_column(Text)
    captured_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Relationships
    booking: Mapped["Booking"] = relationship(back_populates="deposit_authorizations", lazy="raise")
    payment_links: Mapped[list["Payment"]] = relationship(back_populates="deposit_authorization", lazy="raise")

    __table_args__ = (
        # At most one open hold per booking
        Index(
            "ix_deposit_auth_one_open",
            "booking_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'authorized')"),
            sqlite_where=text("status IN ('pending', 'authorized')"),
        ),
    )

    def __repr__(self) -> str:
        return f"<SecurityDepositAuthorization {self.id} booking={self.booking_id} {self.status.value}>"
