from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    ForeignKeyConstraint,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


# JSONB on Postgres, plain JSON elsewhere (SQLite test databases).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator):
    # SQLite drops tzinfo on round-trip; normalize every value to aware UTC.
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Document(Base):
    __tablename__ = "documents"
    __table_args__ = (Index("ix_documents_status_expires", "status", "expires_at"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    title: Mapped[str] = mapped_column(String)
    # Optional message carried into signature-request notifications.
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    owner_id: Mapped[str] = mapped_column(String, index=True)
    organization_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    original_file_ref: Mapped[str] = mapped_column(String)
    # Hex digest of the original bytes, checked before every signature.
    content_digest: Mapped[str] = mapped_column(String)
    content_type: Mapped[str] = mapped_column(String, default="application/octet-stream")
    size_bytes: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String, default="draft")
    ordered_signing: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    signature_profile: Mapped[str] = mapped_column(String, default="advanced")
    envelope_format: Mapped[str] = mapped_column(String, default="cms")
    sensitivity: Mapped[str] = mapped_column(String, default="normal")
    # Optimistic concurrency counter; every aggregate write bumps it.
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    # Set when a compensating audit entry could not restore consistency.
    needs_review: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    void_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    voided_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class Signer(Base):
    __tablename__ = "signers"

    document_id: Mapped[str] = mapped_column(
        String, ForeignKey("documents.id", ondelete="CASCADE"), primary_key=True
    )
    id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str] = mapped_column(String)
    name: Mapped[str] = mapped_column(String)
    # Subject id used for relationship tuples; defaults to the signer email.
    subject_id: Mapped[str] = mapped_column(String, index=True)
    order: Mapped[int] = mapped_column("signing_order", Integer, default=0)
    status: Mapped[str] = mapped_column(String, default="pending")
    viewed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    signed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    declined_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    decline_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    signature_artifact_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    last_reminded_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class DocumentField(Base):
    __tablename__ = "fields"
    __table_args__ = (
        ForeignKeyConstraint(
            ["document_id", "signer_id"],
            ["signers.document_id", "signers.id"],
            ondelete="CASCADE",
        ),
    )

    document_id: Mapped[str] = mapped_column(
        String, ForeignKey("documents.id", ondelete="CASCADE"), primary_key=True
    )
    id: Mapped[str] = mapped_column(String, primary_key=True)
    signer_id: Mapped[str] = mapped_column(String)
    type: Mapped[str] = mapped_column("field_type", String)
    page: Mapped[int] = mapped_column(Integer, default=1)
    x: Mapped[float] = mapped_column(Float, default=0.0)
    y: Mapped[float] = mapped_column(Float, default=0.0)
    width: Mapped[float] = mapped_column(Float, default=0.0)
    height: Mapped[float] = mapped_column(Float, default=0.0)
    required: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    label: Mapped[str | None] = mapped_column(String, nullable=True)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)
    signed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class AuditEntry(Base):
    __tablename__ = "audit_entries"

    # Per-document ordered log; the composite key rejects duplicate sequences.
    document_id: Mapped[str] = mapped_column(String, primary_key=True)
    sequence: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    action: Mapped[str] = mapped_column(String, index=True)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime)
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    # Retention category drives pruning; signature evidence is kept longest.
    retention: Mapped[str] = mapped_column(String, default="legal")


class SignatureRecord(Base):
    __tablename__ = "signature_records"
    __table_args__ = (Index("ix_signature_records_document_signer", "document_id", "signer_id"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    document_id: Mapped[str] = mapped_column(String, ForeignKey("documents.id"))
    signer_id: Mapped[str] = mapped_column(String)
    envelope_format: Mapped[str] = mapped_column(String)
    profile_level: Mapped[str] = mapped_column(String)
    signer_certificate: Mapped[bytes] = mapped_column(LargeBinary)
    signature_bytes: Mapped[bytes] = mapped_column(LargeBinary)
    digest_algorithm: Mapped[str] = mapped_column(String)
    signing_time: Mapped[datetime] = mapped_column(UTCDateTime)
    timestamp_token: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    # Base64 DER certificates, OCSP responses and CRLs captured for LT/LTA.
    validation_data: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    content_hash: Mapped[str] = mapped_column(String, unique=True)
    supersedes_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class RelationshipTuple(Base):
    __tablename__ = "relationship_tuples"
    __table_args__ = (
        UniqueConstraint("subject", "relation", "object_type", "object_id", name="uq_relationship_tuple"),
        Index("ix_relationship_tuples_object", "object_type", "object_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject: Mapped[str] = mapped_column(String, index=True)
    relation: Mapped[str] = mapped_column(String)
    object_type: Mapped[str] = mapped_column(String)
    object_id: Mapped[str] = mapped_column(String)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class ObjectAttribute(Base):
    __tablename__ = "object_attributes"

    object_type: Mapped[str] = mapped_column(String, primary_key=True)
    object_id: Mapped[str] = mapped_column(String, primary_key=True)
    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[Any] = mapped_column(JSONType, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class AccessPredicate(Base):
    __tablename__ = "access_predicates"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    permission: Mapped[str] = mapped_column(String, index=True)
    object_type: Mapped[str] = mapped_column(String, default="document")
    # Condition DSL evaluated against {object, environment, subject}.
    condition_json: Mapped[dict[str, Any]] = mapped_column(JSONType)
    # User-safe reason returned when the predicate fails.
    reason: Mapped[str] = mapped_column(String, default="attribute_predicate_failed")
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    # (document_id, signer_id, event) plus an optional bucket for reminders.
    idempotency_key: Mapped[str] = mapped_column(String, unique=True)
    document_id: Mapped[str] = mapped_column(String, index=True)
    signer_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event: Mapped[str] = mapped_column(String)
    recipient: Mapped[str] = mapped_column(String)
    payload_json: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    status: Mapped[str] = mapped_column(String, default="queued")
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    next_attempt_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class NotificationAttempt(Base):
    __tablename__ = "notification_attempts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    notification_id: Mapped[str] = mapped_column(String, ForeignKey("notifications.id"), index=True)
    attempt_no: Mapped[int] = mapped_column(Integer)
    outcome: Mapped[str] = mapped_column(String)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class TrustListSnapshot(Base):
    __tablename__ = "trust_lists"

    territory: Mapped[str] = mapped_column(String, primary_key=True)
    sequence_number: Mapped[int] = mapped_column(Integer)
    issued_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    next_update: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    source_url: Mapped[str | None] = mapped_column(String, nullable=True)
    providers_json: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    fetched_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class TrustListSyncReport(Base):
    __tablename__ = "trust_list_sync_reports"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime)
    finished_at: Mapped[datetime] = mapped_column(UTCDateTime)
    results_json: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
