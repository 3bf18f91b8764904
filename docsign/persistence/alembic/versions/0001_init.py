"""init

Revision ID: 0001_init
Revises: 
Create Date: 2026-10-18 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "documents",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("organization_id", sa.String(), nullable=True),
        sa.Column("original_file_ref", sa.String(), nullable=False),
        sa.Column("content_digest", sa.String(), nullable=False),
        sa.Column("content_type", sa.String(), nullable=False),
        sa.Column("size_bytes", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("ordered_signing", sa.Boolean(), nullable=False),
        sa.Column("signature_profile", sa.String(), nullable=False),
        sa.Column("envelope_format", sa.String(), nullable=False),
        sa.Column("sensitivity", sa.String(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("needs_review", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("void_reason", sa.Text(), nullable=True),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
        _ts("sent_at"),
        _ts("completed_at"),
        _ts("voided_at"),
        _ts("expires_at"),
    )
    op.create_index("ix_documents_owner_id", "documents", ["owner_id"])
    op.create_index("ix_documents_organization_id", "documents", ["organization_id"])
    # Expiry sweeps scan out-for-signature documents by deadline.
    op.create_index("ix_documents_status_expires", "documents", ["status", "expires_at"])

    op.create_table(
        "signers",
        sa.Column("document_id", sa.String(), sa.ForeignKey("documents.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("subject_id", sa.String(), nullable=False),
        sa.Column("signing_order", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        _ts("viewed_at"),
        _ts("signed_at"),
        _ts("declined_at"),
        sa.Column("decline_reason", sa.Text(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("signature_artifact_ref", sa.String(), nullable=True),
        _ts("last_reminded_at"),
        _ts("created_at", nullable=False),
    )
    op.create_index("ix_signers_subject_id", "signers", ["subject_id"])

    op.create_table(
        "fields",
        sa.Column("document_id", sa.String(), sa.ForeignKey("documents.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("signer_id", sa.String(), nullable=False),
        sa.Column("field_type", sa.String(), nullable=False),
        sa.Column("page", sa.Integer(), nullable=False),
        sa.Column("x", sa.Float(), nullable=False),
        sa.Column("y", sa.Float(), nullable=False),
        sa.Column("width", sa.Float(), nullable=False),
        sa.Column("height", sa.Float(), nullable=False),
        sa.Column("required", sa.Boolean(), nullable=False),
        sa.Column("label", sa.String(), nullable=True),
        sa.Column("value", sa.Text(), nullable=True),
        _ts("signed_at"),
        sa.ForeignKeyConstraint(
            ["document_id", "signer_id"], ["signers.document_id", "signers.id"], ondelete="CASCADE"
        ),
    )

    # Audit rows outlive their document, so no foreign key.
    op.create_table(
        "audit_entries",
        sa.Column("document_id", sa.String(), primary_key=True),
        sa.Column("sequence", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        _ts("timestamp", nullable=False),
        sa.Column("details", postgresql.JSONB(), nullable=False),
        sa.Column("retention", sa.String(), nullable=False, server_default="legal"),
    )
    op.create_index("ix_audit_entries_action", "audit_entries", ["action"])

    op.create_table(
        "signature_records",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("document_id", sa.String(), sa.ForeignKey("documents.id"), nullable=False),
        sa.Column("signer_id", sa.String(), nullable=False),
        sa.Column("envelope_format", sa.String(), nullable=False),
        sa.Column("profile_level", sa.String(), nullable=False),
        sa.Column("signer_certificate", sa.LargeBinary(), nullable=False),
        sa.Column("signature_bytes", sa.LargeBinary(), nullable=False),
        sa.Column("digest_algorithm", sa.String(), nullable=False),
        _ts("signing_time", nullable=False),
        sa.Column("timestamp_token", sa.LargeBinary(), nullable=True),
        sa.Column("validation_data", postgresql.JSONB(), nullable=True),
        sa.Column("content_hash", sa.String(), nullable=False, unique=True),
        sa.Column("supersedes_id", sa.String(), nullable=True),
        _ts("created_at", nullable=False),
    )
    op.create_index("ix_signature_records_document_signer", "signature_records", ["document_id", "signer_id"])

    op.create_table(
        "relationship_tuples",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("subject", sa.String(), nullable=False),
        sa.Column("relation", sa.String(), nullable=False),
        sa.Column("object_type", sa.String(), nullable=False),
        sa.Column("object_id", sa.String(), nullable=False),
        _ts("expires_at"),
        _ts("created_at", nullable=False),
        sa.UniqueConstraint("subject", "relation", "object_type", "object_id", name="uq_relationship_tuple"),
    )
    op.create_index("ix_relationship_tuples_subject", "relationship_tuples", ["subject"])
    op.create_index("ix_relationship_tuples_object", "relationship_tuples", ["object_type", "object_id"])

    op.create_table(
        "object_attributes",
        sa.Column("object_type", sa.String(), primary_key=True),
        sa.Column("object_id", sa.String(), primary_key=True),
        sa.Column("key", sa.String(), primary_key=True),
        sa.Column("value", postgresql.JSONB(), nullable=True),
        _ts("updated_at", nullable=False),
    )

    op.create_table(
        "access_predicates",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("permission", sa.String(), nullable=False),
        sa.Column("object_type", sa.String(), nullable=False),
        sa.Column("condition_json", postgresql.JSONB(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at", nullable=False),
    )
    op.create_index("ix_access_predicates_permission", "access_predicates", ["permission"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("idempotency_key", sa.String(), nullable=False, unique=True),
        sa.Column("document_id", sa.String(), nullable=False),
        sa.Column("signer_id", sa.String(), nullable=True),
        sa.Column("event", sa.String(), nullable=False),
        sa.Column("recipient", sa.String(), nullable=False),
        sa.Column("payload_json", postgresql.JSONB(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        _ts("next_attempt_at", nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        _ts("delivered_at"),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
    )
    op.create_index("ix_notifications_document_id", "notifications", ["document_id"])

    op.create_table(
        "notification_attempts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("notification_id", sa.String(), sa.ForeignKey("notifications.id"), nullable=False),
        sa.Column("attempt_no", sa.Integer(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        _ts("created_at", nullable=False),
    )
    op.create_index("ix_notification_attempts_notification_id", "notification_attempts", ["notification_id"])

    op.create_table(
        "trust_lists",
        sa.Column("territory", sa.String(), primary_key=True),
        sa.Column("sequence_number", sa.Integer(), nullable=False),
        _ts("issued_at"),
        _ts("next_update"),
        sa.Column("source_url", sa.String(), nullable=True),
        sa.Column("providers_json", postgresql.JSONB(), nullable=False),
        _ts("fetched_at", nullable=False),
    )

    op.create_table(
        "trust_list_sync_reports",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        _ts("started_at", nullable=False),
        _ts("finished_at", nullable=False),
        sa.Column("results_json", postgresql.JSONB(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("trust_list_sync_reports")
    op.drop_table("trust_lists")
    op.drop_index("ix_notification_attempts_notification_id", table_name="notification_attempts")
    op.drop_table("notification_attempts")
    op.drop_index("ix_notifications_document_id", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_access_predicates_permission", table_name="access_predicates")
    op.drop_table("access_predicates")
    op.drop_table("object_attributes")
    op.drop_index("ix_relationship_tuples_object", table_name="relationship_tuples")
    op.drop_index("ix_relationship_tuples_subject", table_name="relationship_tuples")
    op.drop_table("relationship_tuples")
    op.drop_index("ix_signature_records_document_signer", table_name="signature_records")
    op.drop_table("signature_records")
    op.drop_index("ix_audit_entries_action", table_name="audit_entries")
    op.drop_table("audit_entries")
    op.drop_table("fields")
    op.drop_index("ix_signers_subject_id", table_name="signers")
    op.drop_table("signers")
    op.drop_index("ix_documents_status_expires", table_name="documents")
    op.drop_index("ix_documents_organization_id", table_name="documents")
    op.drop_index("ix_documents_owner_id", table_name="documents")
    op.drop_table("documents")
