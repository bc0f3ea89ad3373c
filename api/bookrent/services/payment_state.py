"""Atomic status updates for payments and deposit authorizations.

A transition is written as ``UPDATE ... WHERE id = :id AND status IN (:sources)``
so that, of two concurrent deliveries for the same record, exactly one sees a
matched row. Callers run side effects only when the update reports a match.
"""

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from bookrent.models.deposit import AuthorizationStatus, SecurityDepositAuthorization
from bookrent.models.payment import Payment, PaymentLinkStatus
from bookrent.services.transitions import authorization_sources, payment_sources


async def transition_payment(
    db: AsyncSession,
    payment: Payment,
    target: PaymentLinkStatus,
    **values,
) -> bool:
    """Move a payment to `target` if its stored status still allows it. Returns True if this call won."""
    result = await db.execute(
        update(Payment)
        .where(Payment.id == payment.id, Payment.payment_link_status.in_(payment_sources(target)))
        .values(payment_link_status=target, **values)
        .execution_options(synchronize_session=False)
    )
    await db.refresh(payment)
    return result.rowcount == 1


async def transition_authorization(
    db: AsyncSession,
    authorization: SecurityDepositAuthorization,
    target: AuthorizationStatus,
    **values,
) -> bool:
    """Authorization counterpart of `transition_payment`."""
    result = await db.execute(
        update(SecurityDepositAuthorization)
        .where(
            SecurityDepositAuthorization.id == authorization.id,
            SecurityDepositAuthorization.status.in_(authorization_sources(target)),
        )
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    await db.refresh(authorization)
    return result.rowcount == 1
