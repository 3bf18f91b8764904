from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from docsign.domain.models import TrustListSnapshot, TrustListSyncReport


async def list_snapshots(session: AsyncSession) -> list[TrustListSnapshot]:
    result = await session.execute(select(TrustListSnapshot).order_by(TrustListSnapshot.territory))
    return list(result.scalars().all())


async def upsert_snapshot(
    session: AsyncSession,
    *,
    territory: str,
    sequence_number: int,
    issued_at: datetime | None,
    next_update: datetime | None,
    source_url: str | None,
    providers: list[dict[str, Any]],
    fetched_at: datetime,
) -> TrustListSnapshot:
    row = await session.get(TrustListSnapshot, territory)
    if row is None:
        row = TrustListSnapshot(territory=territory)
        session.add(row)
    row.sequence_number = sequence_number
    row.issued_at = issued_at
    row.next_update = next_update
    row.source_url = source_url
    row.providers_json = providers
    row.fetched_at = fetched_at
    return row


async def add_sync_report(
    session: AsyncSession, *, started_at: datetime, finished_at: datetime, results: list[dict[str, Any]]
) -> TrustListSyncReport:
    row = TrustListSyncReport(started_at=started_at, finished_at=finished_at, results_json=results)
    session.add(row)
    await session.flush()
    return row


async def latest_sync_report(session: AsyncSession) -> TrustListSyncReport | None:
    result = await session.execute(
        select(TrustListSyncReport).order_by(TrustListSyncReport.id.desc()).limit(1)
    )
    return result.scalar_one_or_none()
