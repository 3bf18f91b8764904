from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from docsign.domain.models import Notification, NotificationAttempt


_READY_STATUSES = ("queued", "retrying")


async def get_notification(session: AsyncSession, notification_id: str) -> Notification | None:
    return await session.get(Notification, notification_id)


async def get_by_key(session: AsyncSession, idempotency_key: str) -> Notification | None:
    result = await session.execute(select(Notification).where(Notification.idempotency_key == idempotency_key))
    return result.scalar_one_or_none()


async def claim_ready(session: AsyncSession, notification_id: str, *, now: datetime | None) -> Notification | None:
    # Row lock on Postgres so a single worker moves a ready row into "delivering".
    stmt = select(Notification).where(
        Notification.id == notification_id,
        Notification.status.in_(_READY_STATUSES),
    )
    if now is not None:
        stmt = stmt.where(Notification.next_attempt_at <= now)
    result = await session.execute(stmt.with_for_update(skip_locked=True))
    return result.scalar_one_or_none()


async def list_due(session: AsyncSession, *, now: datetime, limit: int) -> list[Notification]:
    result = await session.execute(
        select(Notification)
        .where(Notification.status.in_(_READY_STATUSES), Notification.next_attempt_at <= now)
        .order_by(Notification.next_attempt_at, Notification.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_for_document(session: AsyncSession, document_id: str) -> list[Notification]:
    result = await session.execute(
        select(Notification)
        .where(Notification.document_id == document_id)
        .order_by(Notification.created_at, Notification.id)
    )
    return list(result.scalars().all())


async def list_attempts(session: AsyncSession, notification_id: str) -> list[NotificationAttempt]:
    result = await session.execute(
        select(NotificationAttempt)
        .where(NotificationAttempt.notification_id == notification_id)
        .order_by(NotificationAttempt.attempt_no)
    )
    return list(result.scalars().all())
