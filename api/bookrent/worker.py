"""Celery worker: expiry sweeps for payment links and deposit holds, and client reminders."""

import asyncio
import logging

from celery import Celery
from celery.schedules import crontab

from bookrent.core.config import settings
from bookrent.core.database import async_session_factory, engine
from bookrent.services.deposits import expire_overdue_authorizations
from bookrent.services.payment_links import expire_stale_payment_links
from bookrent.services.reminders import send_immediate_reminders as run_immediate_reminders
from bookrent.services.reminders import send_payment_reminders

logger = logging.getLogger(__name__)

celery_app = Celery(
    "bookrent",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="Europe/Lisbon",
    enable_utc=True,
    beat_schedule={
        "expire-stale-payment-links": {
            "task": "bookrent.worker.expire_payment_links",
            "schedule": crontab(minute="*/15"),
        },
        "expire-overdue-deposit-holds": {
            "task": "bookrent.worker.expire_deposit_authorizations",
            "schedule": crontab(minute=5),
        },
        "send-payment-reminders": {
            "task": "bookrent.worker.send_payment_reminders",
            "schedule": crontab(minute=30),
        },
    },
)


async def _expire_payment_links() -> int:
    try:
        async with async_session_factory() as db:
            count = await expire_stale_payment_links(db)
            await db.commit()
            return count
    finally:
        # Each task runs in a fresh event loop; pooled connections must not outlive it
        await engine.dispose()


async def _expire_deposit_authorizations() -> int:
    try:
        async with async_session_factory() as db:
            count = await expire_overdue_authorizations(db)
            await db.commit()
            return count
    finally:
        await engine.dispose()


@celery_app.task(name="bookrent.worker.expire_payment_links")
def expire_payment_links() -> int:
    count = asyncio.run(_expire_payment_links())
    logger.info("Payment link sweep expired %d links", count)
    return count


@celery_app.task(name="bookrent.worker.expire_deposit_authorizations")
def expire_deposit_authorizations() -> int:
    count = asyncio.run(_expire_deposit_authorizations())
    logger.info("Deposit sweep expired %d authorizations", count)
    return count


async def _send_payment_reminders() -> int:
    try:
        async with async_session_factory() as db:
            results = await send_payment_reminders(db, settings)
            return sum(1 for item in results if item.sent)
    finally:
        await engine.dispose()


async def _send_immediate_reminders(booking_id: int) -> int:
    try:
        async with async_session_factory() as db:
            results = await run_immediate_reminders(db, settings, booking_id)
            return sum(1 for item in results if item.sent)
    finally:
        await engine.dispose()


@celery_app.task(name="bookrent.worker.send_payment_reminders")
def send_reminders() -> int:
    count = asyncio.run(_send_payment_reminders())
    logger.info("Reminder sweep sent %d reminders", count)
    return count


@celery_app.task(name="bookrent.worker.send_immediate_reminders")
def send_immediate_reminders(booking_id: int) -> int:
    count = asyncio.run(_send_immediate_reminders(booking_id))
    logger.info("Immediate reminders for booking %s: %d sent", booking_id, count)
    return count
