"""Transition tables for payments, deposit authorizations and bookings.

Every status change goes through `check_*_transition`; services never assign a
status string without asking the table first. The `*_sources` helpers give
the set of states a target may be entered from, which the services feed into
conditional UPDATEs.
"""

from bookrent.core.errors import InvalidTransition
from bookrent.models.booking import BookingStatus
from bookrent.models.deposit import AuthorizationStatus
from bookrent.models.payment import PaymentLinkStatus

PAYMENT_TRANSITIONS: dict[PaymentLinkStatus, frozenset[PaymentLinkStatus]] = {
    PaymentLinkStatus.PENDING: frozenset(
        {
            PaymentLinkStatus.ACTIVE,
            PaymentLinkStatus.PAID,
            PaymentLinkStatus.CANCELLED,
            PaymentLinkStatus.EXPIRED,
        }
    ),
    PaymentLinkStatus.ACTIVE: frozenset(
        {PaymentLinkStatus.PAID, PaymentLinkStatus.CANCELLED, PaymentLinkStatus.EXPIRED}
    ),
    PaymentLinkStatus.PAID: frozenset(),
    PaymentLinkStatus.CANCELLED: frozenset(),
    PaymentLinkStatus.EXPIRED: frozenset(),
}

AUTHORIZATION_TRANSITIONS: dict[AuthorizationStatus, frozenset[AuthorizationStatus]] = {
    AuthorizationStatus.PENDING: frozenset({AuthorizationStatus.AUTHORIZED, AuthorizationStatus.EXPIRED}),
    AuthorizationStatus.AUTHORIZED: frozenset(
        {AuthorizationStatus.RELEASED, AuthorizationStatus.CAPTURED, AuthorizationStatus.EXPIRED}
    ),
    AuthorizationStatus.RELEASED: frozenset(),
    AuthorizationStatus.CAPTURED: frozenset(),
    AuthorizationStatus.EXPIRED: frozenset(),
}

BOOKING_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.DRAFT: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.CANCELLED}),
    BookingStatus.CANCELLED: frozenset({BookingStatus.DRAFT}),
}


def _check(table: dict, kind: str, current, target) -> None:
    if target not in table[current]:
        raise InvalidTransition(f"Cannot move {kind} from {current.value} to {target.value}")


def check_payment_transition(current: PaymentLinkStatus, target: PaymentLinkStatus) -> None:
    _check(PAYMENT_TRANSITIONS, "payment", current, target)


def check_authorization_transition(current: AuthorizationStatus, target: AuthorizationStatus) -> None:
    _check(AUTHORIZATION_TRANSITIONS, "authorization", current, target)


def check_booking_transition(current: BookingStatus, target: BookingStatus) -> None:
    _check(BOOKING_TRANSITIONS, "booking", current, target)


def payment_sources(target: PaymentLinkStatus) -> tuple[PaymentLinkStatus, ...]:
    return tuple(s for s, targets in PAYMENT_TRANSITIONS.items() if target in targets)


def authorization_sources(target: AuthorizationStatus) -> tuple[AuthorizationStatus, ...]:
    return tuple(s for s, targets in AUTHORIZATION_TRANSITIONS.items() if target in targets)


def is_terminal_payment_status(status: PaymentLinkStatus) -> bool:
    return not PAYMENT_TRANSITIONS[status]
