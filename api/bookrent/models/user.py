"""Back-office user model.

Users are staff who log in to the admin API. Clients never log in; they reach
their booking through payment links.
"""

import enum

from sqlalchemy import Boolean, Enum, String
from sqlalchemy.orm import Mapped, mapped_column

from bookrent.models.base import Base, TimestampMixin, enum_values


class UserRole(enum.StrEnum):
    VIEWER = "viewer"
    STAFF = "staff"
    ADMIN = "admin"


# Roles allowed to change payment state by hand
PAYMENT_OPERATOR_ROLES = (UserRole.ADMIN, UserRole.STAFF)


class User(TimestampMixin, Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str] = mapped_column(String(254), unique=True, nullable=False, index=True)
    hashed_password: Mapped[str | None] = mapped_column(String(200))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole, name="user_role", values_callable=enum_values),
        default=UserRole.VIEWER,
        nullable=False,
    )
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @property
    def can_operate_payments(self) -> bool:
        return self.role in PAYMENT_OPERATOR_ROLES

    def __repr__(self) -> str:
        return f"<User {self.email}>"
