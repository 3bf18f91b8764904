from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from docsign.domain.models import AccessPredicate, ObjectAttribute, RelationshipTuple


def _live(now: datetime):
    return or_(RelationshipTuple.expires_at.is_(None), RelationshipTuple.expires_at > now)


async def find_tuples(
    session: AsyncSession,
    *,
    object_type: str,
    object_id: str,
    relation: str,
    now: datetime,
) -> list[RelationshipTuple]:
    result = await session.execute(
        select(RelationshipTuple).where(
            RelationshipTuple.object_type == object_type,
            RelationshipTuple.object_id == object_id,
            RelationshipTuple.relation == relation,
            _live(now),
        )
    )
    return list(result.scalars().all())


async def list_tuples_for_subject(
    session: AsyncSession,
    *,
    subject: str,
    now: datetime,
    object_type: str | None = None,
) -> list[RelationshipTuple]:
    stmt = select(RelationshipTuple).where(RelationshipTuple.subject == subject, _live(now))
    if object_type is not None:
        stmt = stmt.where(RelationshipTuple.object_type == object_type)
    result = await session.execute(stmt.order_by(RelationshipTuple.object_type, RelationshipTuple.object_id))
    return list(result.scalars().all())


async def list_tuples_for_subjects(
    session: AsyncSession,
    *,
    subjects: list[str],
    now: datetime,
) -> list[RelationshipTuple]:
    if not subjects:
        return []
    result = await session.execute(
        select(RelationshipTuple).where(RelationshipTuple.subject.in_(subjects), _live(now))
    )
    return list(result.scalars().all())


async def get_tuple(
    session: AsyncSession,
    *,
    subject: str,
    relation: str,
    object_type: str,
    object_id: str,
) -> RelationshipTuple | None:
    result = await session.execute(
        select(RelationshipTuple).where(
            and_(
                RelationshipTuple.subject == subject,
                RelationshipTuple.relation == relation,
                RelationshipTuple.object_type == object_type,
                RelationshipTuple.object_id == object_id,
            )
        )
    )
    return result.scalar_one_or_none()


async def delete_tuple(
    session: AsyncSession,
    *,
    subject: str,
    relation: str,
    object_type: str,
    object_id: str,
) -> int:
    result = await session.execute(
        delete(RelationshipTuple).where(
            RelationshipTuple.subject == subject,
            RelationshipTuple.relation == relation,
            RelationshipTuple.object_type == object_type,
            RelationshipTuple.object_id == object_id,
        )
    )
    return int(result.rowcount or 0)


async def get_attributes(session: AsyncSession, *, object_type: str, object_id: str) -> dict[str, Any]:
    result = await session.execute(
        select(ObjectAttribute).where(
            ObjectAttribute.object_type == object_type, ObjectAttribute.object_id == object_id
        )
    )
    return {row.key: row.value for row in result.scalars().all()}


async def list_predicates(session: AsyncSession, *, permission: str, object_type: str) -> list[AccessPredicate]:
    result = await session.execute(
        select(AccessPredicate)
        .where(
            AccessPredicate.permission == permission,
            AccessPredicate.object_type == object_type,
            AccessPredicate.enabled.is_(True),
        )
        .order_by(AccessPredicate.id)
    )
    return list(result.scalars().all())
