"""Webhook body parsing.

The gateway has delivered two shapes of the same event over time:

* legacy flat: ``{"type": ..., "data": {"session_id", "transaction_id", "status"}}``
* nested object: ``{"type": ..., "data": {"object": {"id", "payment_intent", "status"}}}``

Both are normalised into one `WebhookEvent` here, before any business logic
looks at them. Stripe's native event names are mapped onto the event kinds
this service models; anything else parses with ``kind=None`` and is
acknowledged without a state change.
"""

import enum
from dataclasses import dataclass

from bookrent.core.errors import MalformedEvent


class EventKind(enum.StrEnum):
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    SESSION_EXPIRED = "session.expired"
    AUTHORIZATION_SUCCEEDED = "authorization.succeeded"
    AUTHORIZATION_EXPIRED = "authorization.expired"
    CAPTURE_SUCCEEDED = "capture.succeeded"


EVENT_ALIASES: dict[str, EventKind] = {
    "checkout.session.completed": EventKind.PAYMENT_SUCCEEDED,
    "checkout.session.async_payment_succeeded": EventKind.PAYMENT_SUCCEEDED,
    "checkout.session.async_payment_failed": EventKind.PAYMENT_FAILED,
    "checkout.session.expired": EventKind.SESSION_EXPIRED,
}

AUTHORIZATION_KINDS = frozenset(
    {EventKind.AUTHORIZATION_SUCCEEDED, EventKind.AUTHORIZATION_EXPIRED, EventKind.CAPTURE_SUCCEEDED}
)


@dataclass(frozen=True)
class WebhookEvent:
    event_type: str
    kind: EventKind | None
    session_id: str | None
    transaction_id: str | None
    status: str | None

    @property
    def identifiers(self) -> tuple[str, ...]:
        return tuple(i for i in (self.session_id, self.transaction_id) if i)


def _as_id(value) -> str | None:
    if value is None or value == "":
        return None
    if isinstance(value, dict):
        # Expanded objects carry their id inside
        return _as_id(value.get("id"))
    return str(value)


def resolve_kind(event_type: str) -> EventKind | None:
    try:
        return EventKind(event_type)
    except ValueError:
        return EVENT_ALIASES.get(event_type)


def parse_webhook_event(body: dict) -> WebhookEvent:
    event_type = body.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedEvent("Missing event type in webhook")

    data = body.get("data")
    if not isinstance(data, dict):
        raise MalformedEvent("Missing data in webhook")

    obj = data.get("object")
    if isinstance(obj, dict):
        session_id = _as_id(obj.get("id"))
        transaction_id = _as_id(obj.get("payment_intent") or obj.get("transaction_id"))
        status = obj.get("status") or obj.get("payment_status")
    else:
        session_id = _as_id(data.get("session_id"))
        transaction_id = _as_id(data.get("transaction_id"))
        status = data.get("status")

    kind = resolve_kind(event_type)
    if kind is not None and not (session_id or transaction_id):
        raise MalformedEvent("Missing session_id in webhook")

    return WebhookEvent(
        event_type=event_type,
        kind=kind,
        session_id=session_id,
        transaction_id=transaction_id,
        status=status if isinstance(status, str) else None,
    )
