"""Audit trail writes. Every state-changing payment action appends one row."""

import enum
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bookrent.models.audit import AuditLog


def _jsonable(value):
    """Snapshot payloads hold money and timestamps; store them as strings."""
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [_jsonable(item) for item in value]
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime | date):
        return value.isoformat()
    return value


async def record_audit(
    db: AsyncSession,
    entity: str,
    entity_id: int | str,
    action: str,
    payload: dict | None = None,
) -> AuditLog:
    """Append an audit row to the current session. The caller owns the commit."""
    entry = AuditLog(
        entity=entity,
        entity_id=str(entity_id),
        action=action,
        payload_snapshot=_jsonable(payload or {}),
    )
    db.add(entry)
    await db.flush()
    return entry


async def list_audit(db: AsyncSession, entity: str, entity_id: int | str) -> list[AuditLog]:
    result = await db.execute(
        select(AuditLog)
        .where(AuditLog.entity == entity, AuditLog.entity_id == str(entity_id))
        .order_by(AuditLog.id)
    )
    return list(result.scalars().all())
