from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from docsign.domain.models import AuditEntry


async def get_last_entry(session: AsyncSession, document_id: str) -> AuditEntry | None:
    result = await session.execute(
        select(AuditEntry)
        .where(AuditEntry.document_id == document_id)
        .order_by(AuditEntry.sequence.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_entries(
    session: AsyncSession,
    document_id: str,
    *,
    from_sequence: int | None = None,
    to_sequence: int | None = None,
    action: str | None = None,
) -> list[AuditEntry]:
    # Bounds are inclusive so callers can page with the last seen sequence + 1.
    stmt = select(AuditEntry).where(AuditEntry.document_id == document_id)
    if from_sequence is not None:
        stmt = stmt.where(AuditEntry.sequence >= from_sequence)
    if to_sequence is not None:
        stmt = stmt.where(AuditEntry.sequence <= to_sequence)
    if action is not None:
        stmt = stmt.where(AuditEntry.action == action)
    result = await session.execute(stmt.order_by(AuditEntry.sequence.asc()))
    return list(result.scalars().all())
