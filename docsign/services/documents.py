from __future__ import annotations

from datetime import datetime, timedelta
import logging
from typing import Any, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.attributes import set_committed_value

from docsign.core.config import get_settings
from docsign.core.errors import AuditAppendFailed, ConflictingUpdate, InvalidState, NotFound, ValidationFailed
from docsign.domain.models import Document, DocumentField, Signer, utc_now
from docsign.domain.state import (
    ACTIVE_SIGNER_STATUSES,
    FIELD_TYPES,
    AuditAction,
)
from docsign.persistence.db import SessionLocal
from docsign.persistence.repos import documents as documents_repo
from docsign.services import audit
from docsign.services.authz.engine import AuthorizationEngine, get_authorization_engine
from docsign.services.authz.model import slot_id
from docsign.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_EXPIRY_BATCH = 100

# Reason strings surfaced with InvalidState.
REASON_NOT_DRAFT = "document_not_draft"
REASON_NOT_OUT_FOR_SIGNATURE = "document_not_out_for_signature"
REASON_EXPIRED = "document_expired"
REASON_OUT_OF_ORDER = "ordered_signing_predecessors_unsigned"
REASON_ALREADY_SIGNED = "signer_already_signed"
REASON_SIGNER_INACTIVE = "signer_not_active"


async def load_document(session: AsyncSession, document_id: str) -> Document:
    document = await documents_repo.get_document(session, document_id)
    if document is None:
        raise NotFound(f"document {document_id} not found", reason="document_not_found")
    return document


async def load_signer(session: AsyncSession, document_id: str, signer_id: str) -> Signer:
    signer = await documents_repo.get_signer(session, document_id, signer_id)
    if signer is None:
        raise NotFound(f"signer {signer_id} not found on document {document_id}", reason="signer_not_found")
    return signer


def require_draft(document: Document) -> None:
    # Metadata, signers and fields are frozen once the document leaves draft.
    if document.status != "draft":
        raise InvalidState(f"document is {document.status}", reason=REASON_NOT_DRAFT)


def is_overdue(document: Document, now: datetime) -> bool:
    return document.expires_at is not None and now > document.expires_at


def require_signable(document: Document, now: datetime) -> None:
    if document.status != "out_for_signature":
        raise InvalidState(f"document is {document.status}", reason=REASON_NOT_OUT_FOR_SIGNATURE)
    if is_overdue(document, now):
        raise InvalidState("document expired before completion", reason=REASON_EXPIRED)


def validate_for_send(signers: list[Signer], fields: list[DocumentField]) -> None:
    if not signers:
        raise ValidationFailed("a document needs at least one signer before sending", reason="signers_missing")
    with_signature_field = {field.signer_id for field in fields if field.type == "signature"}
    missing = [signer.id for signer in signers if signer.id not in with_signature_field]
    if missing:
        raise ValidationFailed(
            f"signers without a signature field: {', '.join(missing)}", reason="signature_field_missing"
        )


def validate_field_type(field_type: str) -> None:
    if field_type not in FIELD_TYPES:
        raise ValidationFailed(f"unsupported field type: {field_type}", reason="field_type_invalid")


def signing_frontier(document: Document, signers: list[Signer]) -> list[Signer]:
    """Signers allowed to sign right now.

    With ordered signing only the active signers whose every predecessor (by
    strictly smaller order) is signed; otherwise every active signer.
    """
    active = [signer for signer in signers if signer.status in ACTIVE_SIGNER_STATUSES]
    if not document.ordered_signing:
        return active
    return [
        signer
        for signer in active
        if all(other.status == "signed" for other in signers if other.order < signer.order)
    ]


def check_can_sign(document: Document, signers: list[Signer], signer: Signer, now: datetime) -> None:
    require_signable(document, now)
    if signer.status == "signed":
        raise InvalidState("signer already signed", reason=REASON_ALREADY_SIGNED)
    if signer.status not in ACTIVE_SIGNER_STATUSES:
        raise InvalidState(f"signer is {signer.status}", reason=REASON_SIGNER_INACTIVE)
    if document.ordered_signing:
        blocking = [other.id for other in signers if other.order < signer.order and other.status != "signed"]
        if blocking:
            raise InvalidState(
                f"ordered signing: waiting for {', '.join(blocking)}",
                reason=REASON_OUT_OF_ORDER,
            )


def all_signed(signers: Iterable[Signer]) -> bool:
    signers = list(signers)
    return bool(signers) and all(signer.status == "signed" for signer in signers)


def default_expiry(now: datetime) -> datetime | None:
    days = get_settings().default_expiration_days
    return now + timedelta(days=days) if days > 0 else None


async def commit_document(
    session: AsyncSession,
    document: Document,
    *,
    now: datetime,
    **changes: Any,
) -> int:
    """Bump the version (the per-document write lock) and apply ``changes``.

    Stale writers fail with ConflictingUpdate. The loaded instance is updated
    in place without marking it dirty so the ORM does not write it again.
    """
    version = await documents_repo.bump_version(
        session, document_id=document.id, expected_version=document.version, now=now, changes=changes
    )
    set_committed_value(document, "version", version)
    set_committed_value(document, "updated_at", now)
    for key, value in changes.items():
        set_committed_value(document, key, value)
    return version


async def sync_attributes(
    session: AsyncSession,
    document: Document,
    signers: Iterable[Signer] = (),
    *,
    authz: AuthorizationEngine | None = None,
) -> None:
    # Attribute predicates read these rows; they move with the aggregate.
    authz = authz or get_authorization_engine()
    await authz.set_attributes(
        session,
        object_type="document",
        object_id=document.id,
        attributes={
            "status": document.status,
            "expires_at": document.expires_at,
            "sensitivity": document.sensitivity,
            "type": document.content_type,
            "size": document.size_bytes,
            "owner_id": document.owner_id,
        },
    )
    for signer in signers:
        await authz.set_attributes(
            session,
            object_type="signer-slot",
            object_id=slot_id(document.id, signer.id),
            attributes={"status": signer.status, "order": signer.order},
        )
    authz.invalidate("document", document.id)


async def expire_document(
    session: AsyncSession,
    document: Document,
    *,
    now: datetime,
    authz: AuthorizationEngine | None = None,
) -> list[Signer]:
    """Move an overdue document to ``expired`` inside the caller's transaction."""
    if document.status != "out_for_signature":
        raise InvalidState(f"document is {document.status}", reason=REASON_NOT_OUT_FOR_SIGNATURE)
    signers = await documents_repo.list_signers(session, document.id)
    await commit_document(session, document, now=now, status="expired")
    expired: list[Signer] = []
    for signer in signers:
        if signer.status in ACTIVE_SIGNER_STATUSES:
            signer.status = "expired"
            expired.append(signer)
    await audit.append(
        session,
        document_id=document.id,
        action=AuditAction.DOCUMENT_EXPIRED,
        actor_id=None,
        details={"expires_at": document.expires_at, "signers_expired": [signer.id for signer in expired]},
        now=now,
    )
    for signer in expired:
        await audit.append(
            session,
            document_id=document.id,
            action=AuditAction.SIGNER_EXPIRED,
            actor_id=None,
            details={"signer_id": signer.id},
            now=now,
        )
    await sync_attributes(session, document, signers, authz=authz)
    return expired


async def expire_due_documents(
    now: datetime | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    limit: int = _EXPIRY_BATCH,
) -> list[str]:
    """Expire every out-for-signature document past ``expires_at``.

    Each document commits in its own transaction; a concurrent writer wins
    and the document is picked up again on the next sweep if still overdue.
    """
    now = now or utc_now()
    factory = session_factory or SessionLocal
    async with factory() as session:
        due = [document.id for document in await documents_repo.list_expirable_documents(session, now=now, limit=limit)]
    expired: list[str] = []
    for document_id in due:
        async with factory() as session:
            try:
                document = await load_document(session, document_id)
                if document.status != "out_for_signature" or not is_overdue(document, now):
                    continue
                await expire_document(session, document, now=now)
                await session.commit()
                expired.append(document_id)
            except (ConflictingUpdate, InvalidState):
                await session.rollback()
                logger.info("document_expiry_skipped document_id=%s", document_id)
            except (AuditAppendFailed, SQLAlchemyError) as exc:
                await session.rollback()
                logger.warning("document_expiry_failed document_id=%s", document_id, exc_info=exc)
    if expired:
        increment_counter("documents_expired_total", len(expired))
        logger.info("document_expiry_sweep expired=%s", len(expired))
    return expired
