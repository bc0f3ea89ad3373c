"""Gateway webhook processing.

Turns a parsed `WebhookEvent` into at most one state transition on a Payment
or a SecurityDepositAuthorization. Re-delivered events are no-ops: the
transition is a conditional UPDATE and only the delivery that wins it runs
the side effects.
"""

import logging
from datetime import UTC, datetime

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from bookrent.core.config import Settings
from bookrent.core.errors import PaymentNotFound
from bookrent.models.deposit import AuthorizationStatus, SecurityDepositAuthorization
from bookrent.models.payment import Payment, PaymentIntent, PaymentLinkStatus
from bookrent.services.audit import record_audit
from bookrent.services.balance import recalculate_booking_balance
from bookrent.services.deposits import close_open_deposit_links, notify_deposit_client
from bookrent.services.email import send_deposit_authorized_email
from bookrent.services.gateway import PaymentLinkGateway
from bookrent.services.payment_links import close_gateway_sessions
from bookrent.services.payment_state import transition_authorization, transition_payment
from bookrent.services.settlement import run_settlement_effects
from bookrent.services.transitions import is_terminal_payment_status
from bookrent.services.webhook_events import AUTHORIZATION_KINDS, EventKind, WebhookEvent

logger = logging.getLogger(__name__)

PAYMENT_TARGETS = {
    EventKind.PAYMENT_SUCCEEDED: PaymentLinkStatus.PAID,
    EventKind.PAYMENT_FAILED: PaymentLinkStatus.CANCELLED,
    EventKind.SESSION_EXPIRED: PaymentLinkStatus.EXPIRED,
}

AUTHORIZATION_TARGETS = {
    EventKind.AUTHORIZATION_SUCCEEDED: AuthorizationStatus.AUTHORIZED,
    EventKind.AUTHORIZATION_EXPIRED: AuthorizationStatus.EXPIRED,
    EventKind.CAPTURE_SUCCEEDED: AuthorizationStatus.CAPTURED,
}


class WebhookHandler:
    def __init__(self, db: AsyncSession, gateway: PaymentLinkGateway, settings: Settings):
        self.db = db
        self.gateway = gateway
        self.settings = settings

    async def handle(self, event: WebhookEvent) -> None:
        if event.kind is None:
            logger.info("Ignoring unhandled webhook event type %s", event.event_type)
            return

        if event.kind in AUTHORIZATION_KINDS:
            await self._handle_authorization_event(event)
            return

        payment = await self._resolve_payment(event)

        # Checkout completes for deposit links too; for those it means the hold is in place
        if event.kind == EventKind.PAYMENT_SUCCEEDED and payment.payment_intent == PaymentIntent.SECURITY_DEPOSIT:
            await self._authorize_from_deposit_link(event, payment)
            return

        await self._handle_payment_event(event, payment)

    # ---------------------------------------------------------------------------
    # Resolution
    # ---------------------------------------------------------------------------

    async def _resolve_payment(self, event: WebhookEvent) -> Payment:
        """Find the one Payment the event's identifiers point at."""
        ids = event.identifiers
        result = await self.db.execute(
            select(Payment).where(
                or_(Payment.gateway_session_id.in_(ids), Payment.gateway_transaction_id.in_(ids))
            )
        )
        payments = list(result.scalars().all())
        if len(payments) != 1:
            logger.warning("Webhook %s resolved to %d payments for %s", event.event_type, len(payments), ids)
            raise PaymentNotFound(f"Payment not found for session {event.session_id or event.transaction_id}")
        return payments[0]

    async def _resolve_authorization(self, event: WebhookEvent) -> SecurityDepositAuthorization:
        ids = event.identifiers
        result = await self.db.execute(
            select(SecurityDepositAuthorization).where(
                or_(
                    SecurityDepositAuthorization.authorization_id.in_(ids),
                    SecurityDepositAuthorization.gateway_transaction_id.in_(ids),
                )
            )
        )
        authorization = result.scalars().first()
        if authorization is not None:
            return authorization

        # Holds requested again with another card method are known by their link's session id
        payment = await self._resolve_payment(event)
        if payment.deposit_authorization_id is None:
            raise PaymentNotFound(f"Payment {payment.id} is not a security deposit link")
        result = await self.db.execute(
            select(SecurityDepositAuthorization).where(
                SecurityDepositAuthorization.id == payment.deposit_authorization_id
            )
        )
        return result.scalar_one()

    # ---------------------------------------------------------------------------
    # Payments
    # ---------------------------------------------------------------------------

    async def _handle_payment_event(self, event: WebhookEvent, payment: Payment) -> None:
        target = PAYMENT_TARGETS[event.kind]

        if payment.payment_link_status == target:
            logger.info("Payment %s already %s, ignoring duplicate %s", payment.id, target.value, event.event_type)
            return

        values = {}
        if target == PaymentLinkStatus.PAID:
            values["paid_at"] = datetime.now(UTC)
            if event.transaction_id:
                values["gateway_transaction_id"] = event.transaction_id

        won = await transition_payment(self.db, payment, target, **values)
        if not won:
            await self._reject(event, "payment", payment.id, payment.payment_link_status.value, target.value)
            return

        await record_audit(
            self.db,
            "payment",
            payment.id,
            target.value,
            {"event_type": event.event_type, "session_id": event.session_id, "transaction_id": event.transaction_id},
        )

        if target != PaymentLinkStatus.PAID:
            await self.db.commit()
            logger.info("Payment %s marked %s by %s", payment.id, target.value, event.event_type)
            return

        await recalculate_booking_balance(self.db, payment.booking_id, self.settings)
        await self.db.commit()
        logger.info("Payment %s settled for booking %s", payment.id, payment.booking_id)

        await run_settlement_effects(self.db, self.gateway, self.settings, payment)

    async def _reject(self, event: WebhookEvent, entity: str, entity_id: int, current: str, target: str) -> None:
        """A delivery lost the race or asked for an illegal move. Acknowledge it, but keep a trace."""
        if current == target:
            return
        logger.warning("Rejected %s for %s %s: %s -> %s", event.event_type, entity, entity_id, current, target)
        await record_audit(
            self.db,
            entity,
            entity_id,
            "transition_rejected",
            {"event_type": event.event_type, "from": current, "to": target},
        )
        await self.db.commit()

    # ---------------------------------------------------------------------------
    # Security deposit holds
    # ---------------------------------------------------------------------------

    async def _handle_authorization_event(self, event: WebhookEvent) -> None:
        authorization = await self._resolve_authorization(event)
        target = AUTHORIZATION_TARGETS[event.kind]
        if target != AuthorizationStatus.AUTHORIZED:
            await self._transition_authorization(event, authorization, target)
            return

        link = None
        if event.session_id:
            result = await self.db.execute(
                select(Payment).where(
                    Payment.deposit_authorization_id == authorization.id,
                    Payment.gateway_session_id == event.session_id,
                )
            )
            link = result.scalar_one_or_none()
        await self._authorize_hold(event, authorization, link)

    async def _authorize_from_deposit_link(self, event: WebhookEvent, payment: Payment) -> None:
        if payment.deposit_authorization_id is None:
            raise PaymentNotFound(f"Deposit payment {payment.id} has no authorization")
        result = await self.db.execute(
            select(SecurityDepositAuthorization).where(
                SecurityDepositAuthorization.id == payment.deposit_authorization_id
            )
        )
        authorization = result.scalar_one()
        await self._authorize_hold(event, authorization, payment)

    async def _authorize_hold(
        self,
        event: WebhookEvent,
        authorization: SecurityDepositAuthorization,
        link: Payment | None,
    ) -> None:
        if authorization.status != AuthorizationStatus.PENDING:
            await self._settle_extra_hold(event, authorization, link)
            return
        await self._transition_authorization(event, authorization, AuthorizationStatus.AUTHORIZED, link)

    async def _settle_extra_hold(
        self,
        event: WebhookEvent,
        authorization: SecurityDepositAuthorization,
        link: Payment | None,
    ) -> None:
        """A hold arrived for an authorization that is no longer pending.

        The same hold again is a duplicate delivery. Any other hold was placed
        through a sibling link that the client still had open; the booking keeps
        only one, so the extra one is released at the gateway.
        """
        transaction_id = event.transaction_id
        if not transaction_id:
            await self._reject(
                event,
                "security_deposit_authorization",
                authorization.id,
                authorization.status.value,
                AuthorizationStatus.AUTHORIZED.value,
            )
            return
        if transaction_id == authorization.gateway_transaction_id:
            logger.info("Authorization %s already holds %s, ignoring duplicate", authorization.id, transaction_id)
            return
        if link is not None and link.gateway_transaction_id == transaction_id:
            logger.info("Extra hold %s on authorization %s already released", transaction_id, authorization.id)
            return

        self.gateway.release_authorization(transaction_id)

        if link is not None:
            if is_terminal_payment_status(link.payment_link_status):
                link.gateway_transaction_id = transaction_id
            else:
                await transition_payment(
                    self.db, link, PaymentLinkStatus.CANCELLED, gateway_transaction_id=transaction_id
                )
        await record_audit(
            self.db,
            "security_deposit_authorization",
            authorization.id,
            "extra_hold_released",
            {
                "event_type": event.event_type,
                "session_id": event.session_id,
                "transaction_id": transaction_id,
                "kept_transaction_id": authorization.gateway_transaction_id,
                "payment_id": link.id if link is not None else None,
                "authorization_status": authorization.status.value,
            },
        )
        await self.db.commit()
        logger.warning(
            "Released extra hold %s for authorization %s (%s)",
            transaction_id,
            authorization.id,
            authorization.status.value,
        )

    async def _transition_authorization(
        self,
        event: WebhookEvent,
        authorization: SecurityDepositAuthorization,
        target: AuthorizationStatus,
        link: Payment | None = None,
    ) -> None:
        if authorization.status == target and target != AuthorizationStatus.AUTHORIZED:
            logger.info("Authorization %s already %s, ignoring duplicate", authorization.id, target.value)
            return

        now = datetime.now(UTC)
        values = {}
        if target == AuthorizationStatus.AUTHORIZED:
            values["authorized_at"] = now
            if event.transaction_id:
                values["gateway_transaction_id"] = event.transaction_id
        elif target == AuthorizationStatus.CAPTURED:
            values["captured_at"] = now
            if authorization.captured_amount is None:
                values["captured_amount"] = authorization.amount

        won = await transition_authorization(self.db, authorization, target, **values)
        if not won:
            if target == AuthorizationStatus.AUTHORIZED:
                # Another delivery authorized the hold first; this one may carry a second hold
                await self._settle_extra_hold(event, authorization, link)
            else:
                await self._reject(
                    event,
                    "security_deposit_authorization",
                    authorization.id,
                    authorization.status.value,
                    target.value,
                )
            return

        closed_links = []
        if target == AuthorizationStatus.AUTHORIZED:
            if link is not None:
                await transition_payment(
                    self.db,
                    link,
                    PaymentLinkStatus.PAID,
                    paid_at=now,
                    gateway_transaction_id=event.transaction_id,
                )
            # The hold is placed; links for other card methods are no longer needed
            closed_links = await close_open_deposit_links(
                self.db,
                authorization,
                PaymentLinkStatus.CANCELLED,
                keep_payment_id=link.id if link is not None else None,
            )
        elif target == AuthorizationStatus.EXPIRED:
            await close_open_deposit_links(self.db, authorization, PaymentLinkStatus.EXPIRED)

        await record_audit(
            self.db,
            "security_deposit_authorization",
            authorization.id,
            target.value,
            {"event_type": event.event_type, "session_id": event.session_id, "transaction_id": event.transaction_id},
        )
        await self.db.commit()
        logger.info("Authorization %s marked %s by %s", authorization.id, target.value, event.event_type)

        if target == AuthorizationStatus.AUTHORIZED:
            close_gateway_sessions(self.gateway, closed_links)
            await notify_deposit_client(self.db, authorization, self.settings, send=send_deposit_authorized_email)
