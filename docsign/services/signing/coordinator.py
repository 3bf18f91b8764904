from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
import logging
from typing import Any, Awaitable, Callable, TypeVar
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docsign.core.config import get_settings
from docsign.core.errors import (
    AuditAppendFailed,
    AuthorizationUnavailable,
    ConflictingUpdate,
    IntegrityFailure,
    InvalidState,
    NotFound,
    Unauthorized,
    ValidationFailed,
)
from docsign.domain.models import AuditEntry, Document, DocumentField, SignatureRecord, Signer, utc_now
from docsign.domain.state import (
    ACTIVE_SIGNER_STATUSES,
    ENVELOPE_FORMATS,
    PROFILE_LEVEL_FOR_SIGNATURE_PROFILE,
    SIGNATURE_PROFILES,
    AuditAction,
)
from docsign.persistence.db import SessionLocal
from docsign.persistence.repos import documents as documents_repo
from docsign.services import audit
from docsign.services import documents as state
from docsign.services.authz.engine import (
    REASON_UNAVAILABLE,
    AuthorizationEngine,
    AuthzDecision,
    get_authorization_engine,
)
from docsign.services.authz.model import slot_id
from docsign.services.crypto.utils import sha256_hex
from docsign.services.notifications.dispatcher import (
    NotificationDispatcher,
    NotificationEvent,
    NotificationRequest,
    get_dispatcher,
    reminder_bucket,
)
from docsign.services.signatures.engine import SignatureEngine, get_signature_engine
from docsign.services.signatures.report import ValidationPolicy
from docsign.services.signing import links
from docsign.services.storage import ObjectStore, get_object_store
from docsign.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

T = TypeVar("T")

_CONFLICT_RETRIES = 5
_REMINDER_BATCH = 200
_UNSET: Any = object()

# Link validation reasons that map to each caller-facing error.
_LINK_UNAUTHORIZED = {links.REASON_INTEGRITY, links.REASON_EXPIRED}
_LINK_NOT_FOUND = {"document_not_found", "signer_not_found"}


@dataclass(frozen=True)
class SignatureSubmission:
    # Signature-creation device; defaults to settings.default_signing_key_ref.
    key_ref: str | None = None
    # Values for the signer's non-signature fields, keyed by field id or field type.
    field_values: dict[str, str] = field(default_factory=dict)
    digest_algorithm: str | None = None


@dataclass(frozen=True)
class SubmissionResult:
    record_id: str
    signer_status: str
    document_status: str
    completed: bool


@dataclass(frozen=True)
class DocumentView:
    document: Document
    signers: list[Signer]
    fields: list[DocumentField]


@dataclass(frozen=True)
class SigningSession:
    document: Document
    signer: Signer
    fields: list[DocumentField]
    document_url: str


def _context(context: dict[str, str | None] | None) -> dict[str, str | None]:
    return dict(context or {"request_id": None, "ip_address": None, "user_agent": None})


def _resolve_field_values(
    fields: list[DocumentField],
    signer_id: str,
    values: dict[str, str],
    *,
    artifact_ref: str,
    today: date,
) -> dict[str, str | None]:
    resolved: dict[str, str | None] = {}
    for item in fields:
        if item.signer_id != signer_id:
            continue
        if item.type == "signature":
            value: str | None = artifact_ref
        else:
            value = values.get(item.id, values.get(item.type))
            if value is None and item.type == "date":
                value = today.isoformat()
        if value is None and item.required:
            raise ValidationFailed(f"field {item.id} requires a value", reason="required_field_missing")
        resolved[item.id] = value
    return resolved


class SigningCoordinator:
    """Outward API for owners and signers.

    Every mutation runs in one transaction: the guarded version bump first,
    then the aggregate writes, the attribute sync for authorization and the
    audit entry. Notifications go out after commit.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        authz: AuthorizationEngine | None = None,
        store: ObjectStore | None = None,
        engine: SignatureEngine | None = None,
        dispatcher: NotificationDispatcher | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._authz = authz or get_authorization_engine()
        self._store = store
        self._engine = engine
        self._dispatcher = dispatcher
        self._clock = clock or utc_now

    @property
    def store(self) -> ObjectStore:
        return self._store or get_object_store()

    @property
    def engine(self) -> SignatureEngine:
        return self._engine or get_signature_engine()

    @property
    def dispatcher(self) -> NotificationDispatcher:
        return self._dispatcher or get_dispatcher()

    # -- plumbing ---------------------------------------------------------

    async def _authorize(
        self,
        subject: str,
        permission: str,
        object_id: str,
        object_type: str = "document",
        *,
        session: AsyncSession | None = None,
        context: dict[str, str | None] | None = None,
    ) -> AuthzDecision:
        environment = {"ip_address": (context or {}).get("ip_address")}
        decision = await self._authz.authorize(
            subject, permission, object_id, object_type, environment=environment, session=session
        )
        if decision.allowed:
            return decision
        logger.info(
            "authz_denied subject=%s permission=%s object=%s:%s reason=%s",
            subject,
            permission,
            object_type,
            object_id,
            decision.reason,
        )
        if decision.reason == REASON_UNAVAILABLE:
            raise AuthorizationUnavailable("authorization store unavailable", reason=decision.reason)
        if decision.failed_kind == "state":
            raise InvalidState(f"{permission} not allowed in the current state", reason=decision.reason)
        raise Unauthorized(f"{permission} denied", reason=decision.reason)

    async def _retry_conflicts(self, operation: Callable[[], Awaitable[T]]) -> T:
        # Signer-side writes commute; a lost version race re-reads and re-checks every guard.
        attempt = 1
        while True:
            try:
                return await operation()
            except ConflictingUpdate:
                increment_counter("document_version_conflicts_total")
                if attempt >= _CONFLICT_RETRIES:
                    raise
                logger.info("document_version_conflict attempt=%s", attempt)
                attempt += 1

    async def _notify(self, request: NotificationRequest) -> None:
        # Delivery is best-effort; the audit log records what happened.
        try:
            await self.dispatcher.enqueue(request)
        except SQLAlchemyError as exc:
            logger.warning(
                "notification_enqueue_failed document_id=%s event=%s", request.document_id, request.event, exc_info=exc
            )

    async def _notify_signing_request(self, document: Document, signer: Signer, event: str, *, bucket: str | None = None) -> str:
        token = links.issue_token(document.id, signer.id, now=self._clock())
        url = links.signing_url(document.id, signer.id, token)
        await self._notify(
            NotificationRequest(
                document_id=document.id,
                signer_id=signer.id,
                event=event,
                recipient=signer.email,
                payload={
                    "title": document.title,
                    "message": document.message,
                    "signerName": signer.name,
                    "signingUrl": url,
                    "expiresAt": document.expires_at.isoformat() if document.expires_at else None,
                },
                bucket=bucket,
            )
        )
        return url

    async def _load_for_owner(
        self, session: AsyncSession, actor_id: str, document_id: str, permission: str
    ) -> Document:
        document = await state.load_document(session, document_id)
        await self._authorize(actor_id, permission, document_id, session=session)
        return document

    async def _original_bytes(self, document: Document) -> bytes:
        data = await self.store.get(document.original_file_ref, namespace=document.id)
        if sha256_hex(data) != document.content_digest:
            raise IntegrityFailure("stored document differs from its recorded digest", reason="document_digest_mismatch")
        return data

    # -- owner operations -------------------------------------------------

    async def create_document(
        self,
        owner_id: str,
        *,
        title: str,
        file_bytes: bytes,
        content_type: str = "application/octet-stream",
        message: str | None = None,
        organization_id: str | None = None,
        ordered_signing: bool | None = None,
        signature_profile: str | None = None,
        envelope_format: str | None = None,
        sensitivity: str = "normal",
        expires_at: datetime | None = None,
        context: dict[str, str | None] | None = None,
    ) -> Document:
        settings = get_settings()
        if not title or not title.strip():
            raise ValidationFailed("title is required", reason="title_missing")
        if not file_bytes:
            raise ValidationFailed("document content is empty", reason="file_empty")
        profile = signature_profile or settings.default_signature_profile
        if profile not in SIGNATURE_PROFILES:
            raise ValidationFailed(f"unsupported signature profile: {profile}", reason="signature_profile_invalid")
        fmt = envelope_format or settings.default_envelope_format
        if fmt not in ENVELOPE_FORMATS:
            raise ValidationFailed(f"unsupported envelope format: {fmt}", reason="envelope_format_unsupported")
        if organization_id:
            await self._authorize(owner_id, "document:create", organization_id, "organization", context=context)
        else:
            await self._authorize(owner_id, "document:create", owner_id, "user", context=context)

        document_id = str(uuid4())
        ref = await self.store.put(document_id, file_bytes)
        now = self._clock()
        async with self._session_factory() as session:
            document = Document(
                id=document_id,
                title=title.strip(),
                message=message,
                owner_id=owner_id,
                organization_id=organization_id,
                original_file_ref=ref,
                content_digest=sha256_hex(file_bytes),
                content_type=content_type,
                size_bytes=len(file_bytes),
                status="draft",
                ordered_signing=settings.ordered_signing_default if ordered_signing is None else ordered_signing,
                signature_profile=profile,
                envelope_format=fmt,
                sensitivity=sensitivity,
                version=1,
                expires_at=expires_at,
                created_at=now,
                updated_at=now,
            )
            session.add(document)
            await session.flush()
            await self._authz.write_tuple(
                session, subject=owner_id, relation="owner", object_type="document", object_id=document_id
            )
            if organization_id:
                await self._authz.write_tuple(
                    session,
                    subject=f"organization:{organization_id}",
                    relation="parent",
                    object_type="document",
                    object_id=document_id,
                )
            await state.sync_attributes(session, document, authz=self._authz)
            await audit.append(
                session,
                document_id=document_id,
                action=AuditAction.DOCUMENT_CREATED,
                actor_id=owner_id,
                details={
                    "title": document.title,
                    "content_digest": document.content_digest,
                    "size_bytes": document.size_bytes,
                    "signature_profile": profile,
                    "envelope_format": fmt,
                    "request_id": _context(context).get("request_id"),
                },
                now=now,
            )
            await session.commit()
        increment_counter("documents_created_total")
        logger.info("document_created document_id=%s owner_id=%s format=%s", document_id, owner_id, fmt)
        return document

    async def get_document(self, actor_id: str, document_id: str) -> DocumentView:
        async with self._session_factory() as session:
            document = await self._load_for_owner(session, actor_id, document_id, "document:read")
            signers = await documents_repo.list_signers(session, document_id)
            fields = await documents_repo.list_fields(session, document_id)
        return DocumentView(document=document, signers=signers, fields=fields)

    async def list_documents(self, subject: str) -> list[Document]:
        document_ids = await self._authz.list_objects_of_type(subject, "document:read", "document")
        async with self._session_factory() as session:
            return await documents_repo.list_documents(session, document_ids)

    async def add_signer(
        self,
        actor_id: str,
        document_id: str,
        *,
        email: str,
        name: str,
        order: int | None = None,
        subject_id: str | None = None,
        signer_id: str | None = None,
    ) -> Signer:
        if not email or "@" not in email:
            raise ValidationFailed("signer email is invalid", reason="signer_email_invalid")
        if not name or not name.strip():
            raise ValidationFailed("signer name is required", reason="signer_name_missing")
        if order is not None and order < 0:
            raise ValidationFailed("signer order must be non-negative", reason="signer_order_invalid")
        now = self._clock()
        async with self._session_factory() as session:
            document = await self._load_for_owner(session, actor_id, document_id, "document:update")
            state.require_draft(document)
            signers = await documents_repo.list_signers(session, document_id)
            signer_id = signer_id or uuid4().hex[:12]
            if any(existing.id == signer_id for existing in signers):
                raise ValidationFailed(f"signer {signer_id} already exists", reason="signer_id_duplicate")
            await state.commit_document(session, document, now=now)
            signer = Signer(
                document_id=document_id,
                id=signer_id,
                email=email.strip(),
                name=name.strip(),
                subject_id=subject_id or email.strip().lower(),
                order=len(signers) if order is None else order,
                status="pending",
                created_at=now,
            )
            session.add(signer)
            await session.flush()
            await self._authz.write_tuple(
                session, subject=signer.subject_id, relation="signer", object_type="document", object_id=document_id
            )
            await self._authz.write_tuple(
                session,
                subject=signer.subject_id,
                relation="assignee",
                object_type="signer-slot",
                object_id=slot_id(document_id, signer_id),
            )
            await state.sync_attributes(session, document, [signer], authz=self._authz)
            await audit.append(
                session,
                document_id=document_id,
                action=AuditAction.SIGNER_ADDED,
                actor_id=actor_id,
                details={"signer_id": signer_id, "email": signer.email, "order": signer.order},
                now=now,
            )
            await session.commit()
        logger.info("signer_added document_id=%s signer_id=%s", document_id, signer_id)
        return signer

    async def remove_signer(self, actor_id: str, document_id: str, signer_id: str) -> None:
        now = self._clock()
        async with self._session_factory() as session:
            document = await self._load_for_owner(session, actor_id, document_id, "document:update")
            state.require_draft(document)
            signer = await state.load_signer(session, document_id, signer_id)
            await state.commit_document(session, document, now=now)
            await self._authz.delete_tuple(
                session, subject=signer.subject_id, relation="signer", object_type="document", object_id=document_id
            )
            await self._authz.delete_tuple(
                session,
                subject=signer.subject_id,
                relation="assignee",
                object_type="signer-slot",
                object_id=slot_id(document_id, signer_id),
            )
            await documents_repo.delete_signer(session, document_id, signer_id)
            await audit.append(
                session,
                document_id=document_id,
                action=AuditAction.SIGNER_REMOVED,
                actor_id=actor_id,
                details={"signer_id": signer_id},
                now=now,
            )
            await session.commit()

    async def add_field(
        self,
        actor_id: str,
        document_id: str,
        *,
        signer_id: str,
        field_type: str,
        page: int = 1,
        x: float = 0.0,
        y: float = 0.0,
        width: float = 0.0,
        height: float = 0.0,
        required: bool = True,
        label: str | None = None,
        field_id: str | None = None,
    ) -> DocumentField:
        state.validate_field_type(field_type)
        if page < 1:
            raise ValidationFailed("page numbers start at 1", reason="field_page_invalid")
        if min(x, y, width, height) < 0:
            raise ValidationFailed("field position must be non-negative", reason="field_position_invalid")
        now = self._clock()
        async with self._session_factory() as session:
            document = await self._load_for_owner(session, actor_id, document_id, "document:update")
            state.require_draft(document)
            await state.load_signer(session, document_id, signer_id)
            field_id = field_id or uuid4().hex[:12]
            if any(existing.id == field_id for existing in await documents_repo.list_fields(session, document_id)):
                raise ValidationFailed(f"field {field_id} already exists", reason="field_id_duplicate")
            await state.commit_document(session, document, now=now)
            item = DocumentField(
                document_id=document_id,
                id=field_id,
                signer_id=signer_id,
                type=field_type,
                page=page,
                x=x,
                y=y,
                width=width,
                height=height,
                required=required,
                label=label,
            )
            session.add(item)
            await session.flush()
            await audit.append(
                session,
                document_id=document_id,
                action=AuditAction.FIELD_ADDED,
                actor_id=actor_id,
                details={"field_id": field_id, "signer_id": signer_id, "type": field_type, "page": page},
                now=now,
            )
            await session.commit()
        return item

    async def remove_field(self, actor_id: str, document_id: str, field_id: str) -> None:
        now = self._clock()
        async with self._session_factory() as session:
            document = await self._load_for_owner(session, actor_id, document_id, "document:update")
            state.require_draft(document)
            fields = await documents_repo.list_fields(session, document_id)
            if not any(item.id == field_id for item in fields):
                raise NotFound(f"field {field_id} not found", reason="field_not_found")
            await state.commit_document(session, document, now=now)
            await documents_repo.delete_field(session, document_id, field_id)
            await audit.append(
                session,
                document_id=document_id,
                action=AuditAction.FIELD_REMOVED,
                actor_id=actor_id,
                details={"field_id": field_id},
                now=now,
            )
            await session.commit()

    async def update_metadata(
        self,
        actor_id: str,
        document_id: str,
        *,
        title: str | None = None,
        message: Any = _UNSET,
        ordered_signing: bool | None = None,
        signature_profile: str | None = None,
        envelope_format: str | None = None,
        expires_at: Any = _UNSET,
    ) -> Document:
        changes: dict[str, Any] = {}
        if title is not None:
            if not title.strip():
                raise ValidationFailed("title is required", reason="title_missing")
            changes["title"] = title.strip()
        if message is not _UNSET:
            changes["message"] = message
        if ordered_signing is not None:
            changes["ordered_signing"] = ordered_signing
        if signature_profile is not None:
            if signature_profile not in SIGNATURE_PROFILES:
                raise ValidationFailed(
                    f"unsupported signature profile: {signature_profile}", reason="signature_profile_invalid"
                )
            changes["signature_profile"] = signature_profile
        if envelope_format is not None:
            if envelope_format not in ENVELOPE_FORMATS:
                raise ValidationFailed(
                    f"unsupported envelope format: {envelope_format}", reason="envelope_format_unsupported"
                )
            changes["envelope_format"] = envelope_format
        if expires_at is not _UNSET:
            changes["expires_at"] = expires_at
        now = self._clock()
        async with self._session_factory() as session:
            document = await self._load_for_owner(session, actor_id, document_id, "document:update")
            state.require_draft(document)
            if not changes:
                return document
            await state.commit_document(session, document, now=now, **changes)
            await state.sync_attributes(session, document, authz=self._authz)
            await audit.append(
                session,
                document_id=document_id,
                action=AuditAction.DOCUMENT_UPDATED,
                actor_id=actor_id,
                details={"changes": changes},
                now=now,
            )
            await session.commit()
        return document

    async def send(self, actor_id: str, document_id: str) -> dict[str, str]:
        """Move a draft out for signature; returns signing URLs for the signers notified now."""
        now = self._clock()
        async with self._session_factory() as session:
            document = await self._load_for_owner(session, actor_id, document_id, "document:send")
            state.require_draft(document)
            signers = await documents_repo.list_signers(session, document_id)
            fields = await documents_repo.list_fields(session, document_id)
            state.validate_for_send(signers, fields)
            expires_at = document.expires_at or state.default_expiry(now)
            if expires_at is not None and expires_at <= now:
                raise ValidationFailed("expiration must be in the future", reason="expiration_in_past")
            await state.commit_document(
                session, document, now=now, status="out_for_signature", sent_at=now, expires_at=expires_at
            )
            await state.sync_attributes(session, document, signers, authz=self._authz)
            await audit.append(
                session,
                document_id=document_id,
                action=AuditAction.DOCUMENT_SENT,
                actor_id=actor_id,
                details={
                    "signers": [signer.id for signer in signers],
                    "ordered_signing": document.ordered_signing,
                    "expires_at": expires_at,
                },
                now=now,
            )
            await session.commit()
        urls: dict[str, str] = {}
        # With ordered signing only the current frontier is invited; later signers follow as it advances.
        for signer in state.signing_frontier(document, signers):
            urls[signer.id] = await self._notify_signing_request(document, signer, NotificationEvent.SIGNATURE_REQUEST)
        increment_counter("documents_sent_total")
        logger.info("document_sent document_id=%s signers=%s", document_id, len(signers))
        return urls

    async def void_document(self, actor_id: str, document_id: str, reason: str | None = None) -> Document:
        now = self._clock()
        async with self._session_factory() as session:
            document = await self._load_for_owner(session, actor_id, document_id, "document:void")
            if document.status not in ("draft", "out_for_signature"):
                raise InvalidState(f"document is {document.status}", reason="document_terminal")
            was_out = document.status == "out_for_signature"
            signers = await documents_repo.list_signers(session, document_id)
            await state.commit_document(
                session, document, now=now, status="voided", voided_at=now, void_reason=reason or "voided_by_owner"
            )
            await state.sync_attributes(session, document, authz=self._authz)
            await audit.append(
                session,
                document_id=document_id,
                action=AuditAction.DOCUMENT_VOIDED,
                actor_id=actor_id,
                details={"reason": document.void_reason},
                now=now,
            )
            await session.commit()
        if was_out:
            for signer in signers:
                if signer.status in ACTIVE_SIGNER_STATUSES:
                    await self._notify(
                        NotificationRequest(
                            document_id=document_id,
                            signer_id=signer.id,
                            event=NotificationEvent.DOCUMENT_VOIDED,
                            recipient=signer.email,
                            payload={"title": document.title, "reason": document.void_reason},
                        )
                    )
        logger.info("document_voided document_id=%s", document_id)
        return document

    async def resend_signing_link(self, actor_id: str, document_id: str, signer_id: str) -> str:
        now = self._clock()
        async with self._session_factory() as session:
            document = await self._load_for_owner(session, actor_id, document_id, "document:send")
            state.require_signable(document, now)
            signer = await state.load_signer(session, document_id, signer_id)
            if signer.status not in ACTIVE_SIGNER_STATUSES:
                raise InvalidState(f"signer is {signer.status}", reason=state.REASON_SIGNER_INACTIVE)
            await state.commit_document(session, document, now=now)
            await audit.append(
                session,
                document_id=document_id,
                action=AuditAction.SIGNING_LINK_RESENT,
                actor_id=actor_id,
                details={"signer_id": signer_id},
                now=now,
            )
            await session.commit()
        return await self._notify_signing_request(
            document, signer, NotificationEvent.SIGNATURE_REQUEST, bucket=f"resend-{int(now.timestamp())}"
        )

    async def read_audit(
        self,
        actor_id: str,
        document_id: str,
        *,
        from_sequence: int | None = None,
        to_sequence: int | None = None,
    ) -> list[AuditEntry]:
        async with self._session_factory() as session:
            await self._load_for_owner(session, actor_id, document_id, "document:audit")
            return await audit.read(session, document_id, from_sequence=from_sequence, to_sequence=to_sequence)

    async def download_url(self, actor_id: str, document_id: str, *, signer_id: str | None = None) -> str:
        """Time-bounded URL for the original, or for a signer's signature artifact."""
        async with self._session_factory() as session:
            document = await self._load_for_owner(session, actor_id, document_id, "document:download")
            ref = document.original_file_ref
            if signer_id is not None:
                signer = await state.load_signer(session, document_id, signer_id)
                if signer.signature_artifact_ref is None:
                    raise NotFound("signer has no signature artifact", reason="artifact_not_found")
                ref = signer.signature_artifact_ref
        url = self.store.url(ref)
        await audit.append_best_effort(
            document_id=document_id,
            action=AuditAction.DOCUMENT_DOWNLOADED,
            actor_id=actor_id,
            details={"object_ref": ref, "signer_id": signer_id},
        )
        return url

    # -- signer operations ------------------------------------------------

    async def validate_signing_link(
        self, document_id: str, signer_id: str, token: str | None, *, now: datetime | None = None
    ) -> links.LinkValidation:
        now = now or self._clock()
        result = links.verify_token(document_id, signer_id, token, now=now)
        if not result.valid:
            return result
        async with self._session_factory() as session:
            document = await documents_repo.get_document(session, document_id)
            if document is None:
                return links.LinkValidation(False, "document_not_found")
            signer = await documents_repo.get_signer(session, document_id, signer_id)
        if signer is None:
            return links.LinkValidation(False, "signer_not_found")
        if document.status != "out_for_signature":
            return links.LinkValidation(False, state.REASON_NOT_OUT_FOR_SIGNATURE)
        if state.is_overdue(document, now):
            return links.LinkValidation(False, state.REASON_EXPIRED)
        if signer.status not in ACTIVE_SIGNER_STATUSES and signer.status != "signed":
            return links.LinkValidation(False, state.REASON_SIGNER_INACTIVE)
        return links.LinkValidation(True)

    async def _require_link(self, document_id: str, signer_id: str, token: str | None) -> None:
        result = await self.validate_signing_link(document_id, signer_id, token)
        if result.valid:
            return
        if result.reason in _LINK_UNAUTHORIZED:
            raise Unauthorized("signing link rejected", reason=result.reason)
        if result.reason in _LINK_NOT_FOUND:
            raise NotFound("signing link target not found", reason=result.reason)
        raise InvalidState("document cannot be signed", reason=result.reason)

    async def _authorize_signer(
        self, session: AsyncSession, document_id: str, signer: Signer, context: dict[str, str | None] | None
    ) -> None:
        await self._authorize(signer.subject_id, "document:sign", document_id, session=session, context=context)
        await self._authorize(
            signer.subject_id,
            "document:sign",
            slot_id(document_id, signer.id),
            "signer-slot",
            session=session,
            context=context,
        )

    async def _record_rejection(
        self, document_id: str, signer_id: str, actor_id: str | None, error: InvalidState, attempted: str
    ) -> None:
        # The rejected attempt is evidence too; recorded in its own transaction.
        async def write() -> None:
            async with self._session_factory() as session:
                document = await documents_repo.get_document(session, document_id)
                if document is None:
                    return
                now = self._clock()
                await state.commit_document(session, document, now=now)
                await audit.append(
                    session,
                    document_id=document_id,
                    action=AuditAction.SIGNATURE_REJECTED,
                    actor_id=actor_id,
                    details={"signer_id": signer_id, "attempted": attempted, "reason": error.reason},
                    now=now,
                )
                await session.commit()

        try:
            await self._retry_conflicts(write)
        except (ConflictingUpdate, AuditAppendFailed, SQLAlchemyError) as exc:
            logger.warning(
                "signature_rejection_not_audited document_id=%s signer_id=%s", document_id, signer_id, exc_info=exc
            )

    async def open_for_signing(
        self,
        document_id: str,
        signer_id: str,
        token: str | None,
        context: dict[str, str | None] | None = None,
    ) -> SigningSession:
        await self._require_link(document_id, signer_id, token)
        ctx = _context(context)

        async def write() -> SigningSession:
            now = self._clock()
            async with self._session_factory() as session:
                document = await state.load_document(session, document_id)
                signer = await state.load_signer(session, document_id, signer_id)
                await self._authorize_signer(session, document_id, signer, context)
                state.require_signable(document, now)
                previous = signer.status
                await state.commit_document(session, document, now=now)
                if signer.status == "pending":
                    signer.status = "viewed"
                    signer.viewed_at = now
                # Evidence captured at signing time stays as recorded.
                if signer.status in ACTIVE_SIGNER_STATUSES:
                    signer.ip_address = ctx.get("ip_address")
                    signer.user_agent = ctx.get("user_agent")
                await state.sync_attributes(session, document, [signer], authz=self._authz)
                await audit.append(
                    session,
                    document_id=document_id,
                    action=AuditAction.DOCUMENT_VIEWED,
                    actor_id=signer.subject_id,
                    details={
                        "signer_id": signer_id,
                        "previous_status": previous,
                        "ip_address": ctx.get("ip_address"),
                        "user_agent": ctx.get("user_agent"),
                    },
                    now=now,
                )
                await session.commit()
                fields = [item for item in await documents_repo.list_fields(session, document_id) if item.signer_id == signer_id]
            return SigningSession(
                document=document,
                signer=signer,
                fields=fields,
                document_url=self.store.url(document.original_file_ref),
            )

        return await self._retry_conflicts(write)

    async def submit_signature(
        self,
        document_id: str,
        signer_id: str,
        token: str | None,
        submission: SignatureSubmission | None = None,
        context: dict[str, str | None] | None = None,
    ) -> SubmissionResult:
        submission = submission or SignatureSubmission()
        ctx = _context(context)
        subject: str | None = None
        try:
            await self._require_link(document_id, signer_id, token)
            # Read phase: every guard runs before any cryptographic work.
            async with self._session_factory() as session:
                document = await state.load_document(session, document_id)
                signers = await documents_repo.list_signers(session, document_id)
                signer = next((item for item in signers if item.id == signer_id), None)
                if signer is None:
                    raise NotFound(f"signer {signer_id} not found", reason="signer_not_found")
                subject = signer.subject_id
                await self._authorize_signer(session, document_id, signer, context)
                state.check_can_sign(document, signers, signer, self._clock())
                fields = await documents_repo.list_fields(session, document_id)
            _resolve_field_values(
                fields, signer_id, submission.field_values, artifact_ref="pending", today=self._clock().date()
            )
            record = await self.engine.sign(
                await self._original_bytes(document),
                submission.key_ref or get_settings().default_signing_key_ref,
                document_id=document_id,
                signer_id=signer_id,
                envelope_format=document.envelope_format,
                profile_level=PROFILE_LEVEL_FOR_SIGNATURE_PROFILE[document.signature_profile],
                digest_algorithm=submission.digest_algorithm,
            )
            artifact_ref = await self.store.put(document_id, record.signature_bytes)
            result, document, newly_active = await self._retry_conflicts(
                lambda: self._commit_signature(document_id, signer_id, record, artifact_ref, submission, ctx)
            )
        except InvalidState as exc:
            increment_counter("signature_rejected_total")
            await self._record_rejection(document_id, signer_id, subject, exc, "submit_signature")
            raise

        await self._after_signature(document, signer_id, result, newly_active)
        return result

    async def _commit_signature(
        self,
        document_id: str,
        signer_id: str,
        record: SignatureRecord,
        artifact_ref: str,
        submission: SignatureSubmission,
        ctx: dict[str, str | None],
    ) -> tuple[SubmissionResult, Document, list[Signer]]:
        # Record, signer transition, field values and audit commit together or not at all.
        now = self._clock()
        async with self._session_factory() as session:
            document = await state.load_document(session, document_id)
            existing = await documents_repo.get_signature_record_by_hash(session, record.content_hash)
            if existing is not None:
                # Replay of an already committed submission.
                return (
                    SubmissionResult(existing.id, "signed", document.status, document.status == "completed"),
                    document,
                    [],
                )
            signers = await documents_repo.list_signers(session, document_id)
            signer = next(item for item in signers if item.id == signer_id)
            state.check_can_sign(document, signers, signer, now)
            frontier_before = {item.id for item in state.signing_frontier(document, signers)}
            completing = all(item.status == "signed" for item in signers if item.id != signer_id)
            changes: dict[str, Any] = {"status": "completed", "completed_at": now} if completing else {}
            await state.commit_document(session, document, now=now, **changes)

            session.add(record)
            signer.status = "signed"
            signer.signed_at = now
            signer.signature_artifact_ref = artifact_ref
            signer.ip_address = ctx.get("ip_address")
            signer.user_agent = ctx.get("user_agent")
            fields = await documents_repo.list_fields(session, document_id)
            values = _resolve_field_values(
                fields, signer_id, submission.field_values, artifact_ref=artifact_ref, today=now.date()
            )
            for item in fields:
                if item.id in values:
                    item.value = values[item.id]
                    item.signed_at = now
            await state.sync_attributes(session, document, [signer], authz=self._authz)
            await audit.append(
                session,
                document_id=document_id,
                action=AuditAction.DOCUMENT_SIGNED,
                actor_id=signer.subject_id,
                details={
                    "signer_id": signer_id,
                    "record_id": record.id,
                    "envelope_format": record.envelope_format,
                    "profile_level": record.profile_level,
                    "content_hash": record.content_hash,
                    "ip_address": ctx.get("ip_address"),
                    "user_agent": ctx.get("user_agent"),
                },
                now=now,
            )
            if completing:
                await audit.append(
                    session,
                    document_id=document_id,
                    action=AuditAction.DOCUMENT_COMPLETED,
                    actor_id=None,
                    details={"signers": [item.id for item in signers]},
                    now=now,
                )
            await session.commit()
        newly_active = [
            item for item in state.signing_frontier(document, signers) if item.id not in frontier_before
        ]
        increment_counter("signatures_submitted_total")
        if completing:
            increment_counter("documents_completed_total")
            logger.info("document_completed document_id=%s signers=%s", document_id, len(signers))
        logger.info("document_signed document_id=%s signer_id=%s record_id=%s", document_id, signer_id, record.id)
        return (
            SubmissionResult(record.id, "signed", document.status, completing),
            document,
            newly_active,
        )

    async def _after_signature(
        self, document: Document, signer_id: str, result: SubmissionResult, newly_active: list[Signer]
    ) -> None:
        await self._notify(
            NotificationRequest(
                document_id=document.id,
                signer_id=signer_id,
                event=NotificationEvent.DOCUMENT_SIGNED,
                recipient=document.owner_id,
                payload={"title": document.title, "signerId": signer_id},
            )
        )
        if result.completed:
            async with self._session_factory() as session:
                signers = await documents_repo.list_signers(session, document.id)
            recipients = [(None, document.owner_id)] + [(item.id, item.email) for item in signers]
            for recipient_signer, recipient in recipients:
                await self._notify(
                    NotificationRequest(
                        document_id=document.id,
                        signer_id=recipient_signer,
                        event=NotificationEvent.DOCUMENT_COMPLETED,
                        recipient=recipient,
                        payload={"title": document.title},
                    )
                )
            return
        for signer in newly_active:
            await self._notify_signing_request(document, signer, NotificationEvent.SIGNATURE_REQUEST)

    async def decline_signature(
        self,
        document_id: str,
        signer_id: str,
        token: str | None,
        reason: str | None = None,
        context: dict[str, str | None] | None = None,
    ) -> Document:
        await self._require_link(document_id, signer_id, token)
        policy = get_settings().decline_policy

        async def write() -> Document:
            now = self._clock()
            async with self._session_factory() as session:
                document = await state.load_document(session, document_id)
                signer = await state.load_signer(session, document_id, signer_id)
                await self._authorize_signer(session, document_id, signer, context)
                state.require_signable(document, now)
                if signer.status not in ACTIVE_SIGNER_STATUSES:
                    raise InvalidState(f"signer is {signer.status}", reason=state.REASON_SIGNER_INACTIVE)
                voiding = policy == "void_document"
                changes: dict[str, Any] = (
                    {"status": "voided", "voided_at": now, "void_reason": "signer_declined"} if voiding else {}
                )
                await state.commit_document(session, document, now=now, **changes)
                signer.status = "declined"
                signer.declined_at = now
                signer.decline_reason = reason
                await state.sync_attributes(session, document, [signer], authz=self._authz)
                await audit.append(
                    session,
                    document_id=document_id,
                    action=AuditAction.SIGNER_DECLINED,
                    actor_id=signer.subject_id,
                    details={"signer_id": signer_id, "reason": reason, "policy": policy},
                    now=now,
                )
                if voiding:
                    await audit.append(
                        session,
                        document_id=document_id,
                        action=AuditAction.DOCUMENT_VOIDED,
                        actor_id=signer.subject_id,
                        details={"reason": "signer_declined", "signer_id": signer_id},
                        now=now,
                    )
                await session.commit()
            return document

        document = await self._retry_conflicts(write)
        await self._notify(
            NotificationRequest(
                document_id=document_id,
                signer_id=signer_id,
                event=NotificationEvent.DOCUMENT_DECLINED,
                recipient=document.owner_id,
                payload={"title": document.title, "reason": reason, "voided": document.status == "voided"},
            )
        )
        logger.info("signer_declined document_id=%s signer_id=%s policy=%s", document_id, signer_id, policy)
        return document

    async def resign(
        self,
        document_id: str,
        signer_id: str,
        token: str | None,
        submission: SignatureSubmission | None = None,
        context: dict[str, str | None] | None = None,
    ) -> SubmissionResult:
        """Replace an already-signed signer's signature while the document is still out."""
        submission = submission or SignatureSubmission()
        ctx = _context(context)
        await self._require_link(document_id, signer_id, token)
        async with self._session_factory() as session:
            document = await state.load_document(session, document_id)
            signer = await state.load_signer(session, document_id, signer_id)
            await self._authorize_signer(session, document_id, signer, context)
            state.require_signable(document, self._clock())
            if signer.status != "signed":
                raise InvalidState("only signed signers can re-sign", reason="signer_not_signed")
            previous_records = await documents_repo.list_signature_records(session, document_id, signer_id=signer_id)
        previous = _current_record(previous_records)
        if previous is None:
            raise NotFound("no signature to supersede", reason="signature_record_not_found")
        record = await self.engine.sign(
            await self._original_bytes(document),
            submission.key_ref or get_settings().default_signing_key_ref,
            document_id=document_id,
            signer_id=signer_id,
            envelope_format=document.envelope_format,
            profile_level=PROFILE_LEVEL_FOR_SIGNATURE_PROFILE[document.signature_profile],
            digest_algorithm=submission.digest_algorithm,
            supersedes_id=previous.id,
        )
        artifact_ref = await self.store.put(document_id, record.signature_bytes)

        async def write() -> SubmissionResult:
            now = self._clock()
            async with self._session_factory() as session:
                current = await state.load_document(session, document_id)
                state.require_signable(current, now)
                current_signer = await state.load_signer(session, document_id, signer_id)
                if current_signer.status != "signed":
                    raise InvalidState("only signed signers can re-sign", reason="signer_not_signed")
                await state.commit_document(session, current, now=now)
                session.add(record)
                current_signer.signature_artifact_ref = artifact_ref
                current_signer.signed_at = now
                current_signer.ip_address = ctx.get("ip_address")
                current_signer.user_agent = ctx.get("user_agent")
                fields = await documents_repo.list_fields(session, document_id)
                values = _resolve_field_values(
                    fields, signer_id, submission.field_values, artifact_ref=artifact_ref, today=now.date()
                )
                for item in fields:
                    if item.id in values:
                        item.value = values[item.id]
                        item.signed_at = now
                await audit.append(
                    session,
                    document_id=document_id,
                    action=AuditAction.SIGNATURE_SUPERSEDED,
                    actor_id=current_signer.subject_id,
                    details={
                        "signer_id": signer_id,
                        "record_id": record.id,
                        "supersedes_id": previous.id,
                        "content_hash": record.content_hash,
                    },
                    now=now,
                )
                await session.commit()
                return SubmissionResult(record.id, "signed", current.status, False)

        result = await self._retry_conflicts(write)
        logger.info("signature_superseded document_id=%s signer_id=%s record_id=%s", document_id, signer_id, record.id)
        return result

    # -- evidence ---------------------------------------------------------

    async def list_signature_records(self, actor_id: str, document_id: str) -> list[SignatureRecord]:
        async with self._session_factory() as session:
            await self._load_for_owner(session, actor_id, document_id, "document:read")
            return await documents_repo.list_signature_records(session, document_id)

    async def validate_document_signatures(
        self,
        actor_id: str,
        document_id: str,
        *,
        at_time: datetime | None = None,
        policy: ValidationPolicy | None = None,
    ) -> list[dict[str, Any]]:
        async with self._session_factory() as session:
            document = await self._load_for_owner(session, actor_id, document_id, "document:validate")
            records = await documents_repo.list_signature_records(session, document_id)
        original = await self._original_bytes(document)
        superseded = {record.supersedes_id for record in records if record.supersedes_id}
        results: list[dict[str, Any]] = []
        for record in records:
            report = await self.engine.verify(record, original, at_time=at_time, policy=policy)
            results.append(
                {
                    "recordId": record.id,
                    "signerId": record.signer_id,
                    "superseded": record.id in superseded,
                    "report": report.to_dict(),
                }
            )
        await audit.append_best_effort(
            document_id=document_id,
            action=AuditAction.SIGNATURES_VALIDATED,
            actor_id=actor_id,
            details={
                "results": [
                    {"record_id": item["recordId"], "indication": item["report"]["indication"]} for item in results
                ]
            },
        )
        return results

    async def renew_archival_timestamp(self, actor_id: str, document_id: str, record_id: str) -> SignatureRecord:
        async with self._session_factory() as session:
            await self._load_for_owner(session, actor_id, document_id, "document:update")
            record = await documents_repo.get_signature_record(session, record_id)
            if record is None or record.document_id != document_id:
                raise NotFound(f"signature record {record_id} not found", reason="signature_record_not_found")
        renewed = await self.engine.renew_archival_timestamp(record)
        artifact_ref = await self.store.put(document_id, renewed.signature_bytes)
        now = self._clock()
        async with self._session_factory() as session:
            document = await state.load_document(session, document_id)
            signer = await state.load_signer(session, document_id, record.signer_id)
            await state.commit_document(session, document, now=now)
            session.add(renewed)
            if signer.status == "signed":
                signer.signature_artifact_ref = artifact_ref
            await audit.append(
                session,
                document_id=document_id,
                action=AuditAction.ARCHIVE_TIMESTAMP_RENEWED,
                actor_id=actor_id,
                details={"record_id": renewed.id, "supersedes_id": record.id, "content_hash": renewed.content_hash},
                now=now,
            )
            await session.commit()
        return renewed

    # -- scheduled work ---------------------------------------------------

    async def send_reminders(self, now: datetime | None = None) -> int:
        """Remind frontier signers at most once per reminder interval."""
        now = now or self._clock()
        interval = timedelta(seconds=get_settings().reminder_interval_s)
        bucket = reminder_bucket(now, int(interval.total_seconds()))
        due: list[tuple[Document, Signer]] = []
        async with self._session_factory() as session:
            for document in await documents_repo.list_documents_out_for_signature(session, limit=_REMINDER_BATCH):
                if state.is_overdue(document, now) or (document.sent_at and now - document.sent_at < interval):
                    continue
                signers = await documents_repo.list_signers(session, document.id)
                for signer in state.signing_frontier(document, signers):
                    if signer.last_reminded_at is None or now - signer.last_reminded_at >= interval:
                        # Operational column only; no version bump so signer writes never conflict with reminders.
                        signer.last_reminded_at = now
                        due.append((document, signer))
            await session.commit()
        for document, signer in due:
            await self._notify_signing_request(document, signer, NotificationEvent.SIGNATURE_REMINDER, bucket=bucket)
        if due:
            logger.info("signature_reminders_sent count=%s", len(due))
        return len(due)

    async def expire_due_documents(self, now: datetime | None = None) -> list[str]:
        now = now or self._clock()
        expired = await state.expire_due_documents(now, session_factory=self._session_factory)
        if not expired:
            return expired
        async with self._session_factory() as session:
            documents = await documents_repo.list_documents(session, expired)
        for document in documents:
            await self._notify(
                NotificationRequest(
                    document_id=document.id,
                    event=NotificationEvent.DOCUMENT_EXPIRED,
                    recipient=document.owner_id,
                    payload={"title": document.title, "expiresAt": document.expires_at.isoformat() if document.expires_at else None},
                )
            )
        return expired


def _current_record(records: list[SignatureRecord]) -> SignatureRecord | None:
    superseded = {record.supersedes_id for record in records if record.supersedes_id}
    current = [record for record in records if record.id not in superseded]
    return current[-1] if current else None


_coordinator: SigningCoordinator | None = None


def get_signing_coordinator() -> SigningCoordinator:
    global _coordinator
    if _coordinator is None:
        _coordinator = SigningCoordinator()
    return _coordinator


def set_signing_coordinator(coordinator: SigningCoordinator | None) -> None:
    global _coordinator
    _coordinator = coordinator
