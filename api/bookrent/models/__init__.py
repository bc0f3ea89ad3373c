"""All models imported here so Base.metadata knows every table."""

from bookrent.models.audit import AuditLog
from bookrent.models.base import Base
from bookrent.models.booking import Booking, BookingStatus
from bookrent.models.deposit import AuthorizationStatus, SecurityDepositAuthorization
from bookrent.models.payment import Payment, PaymentIntent, PaymentLinkStatus, PaymentMethodType
from bookrent.models.payment_method import PaymentMethod
from bookrent.models.user import User, UserRole

__all__ = [
    "Base",
    "Booking",
    "BookingStatus",
    "Payment",
    "PaymentIntent",
    "PaymentLinkStatus",
    "PaymentMethodType",
    "PaymentMethod",
    "SecurityDepositAuthorization",
    "AuthorizationStatus",
    "AuditLog",
    "User",
    "UserRole",
]
