from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from docsign.core.errors import ConflictingUpdate
from docsign.domain.models import Document, DocumentField, SignatureRecord, Signer


async def get_document(session: AsyncSession, document_id: str) -> Document | None:
    result = await session.execute(select(Document).where(Document.id == document_id))
    return result.scalar_one_or_none()


async def list_documents(session: AsyncSession, document_ids: Iterable[str]) -> list[Document]:
    ids = list(document_ids)
    if not ids:
        return []
    result = await session.execute(
        select(Document).where(Document.id.in_(ids)).order_by(Document.created_at, Document.id)
    )
    return list(result.scalars().all())


async def list_signers(session: AsyncSession, document_id: str) -> list[Signer]:
    # Order by signing order so callers can read the ordered-signing frontier directly.
    result = await session.execute(
        select(Signer)
        .where(Signer.document_id == document_id)
        .order_by(Signer.order, Signer.created_at, Signer.id)
    )
    return list(result.scalars().all())


async def get_signer(session: AsyncSession, document_id: str, signer_id: str) -> Signer | None:
    result = await session.execute(
        select(Signer).where(Signer.document_id == document_id, Signer.id == signer_id)
    )
    return result.scalar_one_or_none()


async def list_fields(session: AsyncSession, document_id: str) -> list[DocumentField]:
    result = await session.execute(
        select(DocumentField)
        .where(DocumentField.document_id == document_id)
        .order_by(DocumentField.page, DocumentField.id)
    )
    return list(result.scalars().all())


async def delete_signer(session: AsyncSession, document_id: str, signer_id: str) -> None:
    # Fields belong to their signer; remove them together.
    await session.execute(
        delete(DocumentField).where(
            DocumentField.document_id == document_id, DocumentField.signer_id == signer_id
        )
    )
    await session.execute(
        delete(Signer).where(Signer.document_id == document_id, Signer.id == signer_id)
    )


async def delete_field(session: AsyncSession, document_id: str, field_id: str) -> None:
    await session.execute(
        delete(DocumentField).where(
            DocumentField.document_id == document_id, DocumentField.id == field_id
        )
    )


async def bump_version(
    session: AsyncSession,
    *,
    document_id: str,
    expected_version: int,
    now: datetime,
    changes: dict[str, Any] | None = None,
) -> int:
    # Guarded UPDATE; a stale version matches zero rows and the caller must retry.
    values: dict[str, Any] = dict(changes or {})
    values["version"] = expected_version + 1
    values["updated_at"] = now
    result = await session.execute(
        update(Document)
        .where(Document.id == document_id, Document.version == expected_version)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictingUpdate(
            f"document {document_id} changed since version {expected_version}",
            reason="version_mismatch",
        )
    return expected_version + 1


async def list_expirable_documents(session: AsyncSession, *, now: datetime, limit: int) -> list[Document]:
    result = await session.execute(
        select(Document)
        .where(
            Document.status == "out_for_signature",
            Document.expires_at.is_not(None),
            Document.expires_at < now,
        )
        .order_by(Document.expires_at)
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_documents_out_for_signature(session: AsyncSession, *, limit: int) -> list[Document]:
    result = await session.execute(
        select(Document)
        .where(Document.status == "out_for_signature")
        .order_by(Document.sent_at, Document.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_signature_records(
    session: AsyncSession, document_id: str, *, signer_id: str | None = None
) -> list[SignatureRecord]:
    stmt = select(SignatureRecord).where(SignatureRecord.document_id == document_id)
    if signer_id is not None:
        stmt = stmt.where(SignatureRecord.signer_id == signer_id)
    result = await session.execute(stmt.order_by(SignatureRecord.created_at, SignatureRecord.id))
    return list(result.scalars().all())


async def get_signature_record(session: AsyncSession, record_id: str) -> SignatureRecord | None:
    result = await session.execute(select(SignatureRecord).where(SignatureRecord.id == record_id))
    return result.scalar_one_or_none()


async def get_signature_record_by_hash(session: AsyncSession, content_hash: str) -> SignatureRecord | None:
    result = await session.execute(
        select(SignatureRecord).where(SignatureRecord.content_hash == content_hash)
    )
    return result.scalar_one_or_none()
