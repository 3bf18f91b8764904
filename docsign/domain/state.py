from __future__ import annotations

from typing import Literal


DocumentStatus = Literal["draft", "out_for_signature", "completed", "voided", "expired"]
SignerStatus = Literal["pending", "viewed", "signed", "declined", "expired"]
FieldType = Literal["signature", "initial", "date", "text", "checkbox"]
SignatureProfile = Literal["basic", "advanced", "qualified"]
EnvelopeFormat = Literal["cms", "xml", "pdf"]
ProfileLevel = Literal["B", "T", "LT", "LTA"]
Indication = Literal["TOTAL-PASSED", "TOTAL-FAILED", "INDETERMINATE"]
LegalEffect = Literal[
    "equivalent_to_handwritten",
    "presumption_of_integrity",
    "admissible_as_evidence",
    "no_legal_effect",
]

DOCUMENT_STATUSES = frozenset({"draft", "out_for_signature", "completed", "voided", "expired"})
TERMINAL_DOCUMENT_STATUSES = frozenset({"completed", "voided", "expired"})
SIGNER_STATUSES = frozenset({"pending", "viewed", "signed", "declined", "expired"})
# Signers that can still act on a document out for signature.
ACTIVE_SIGNER_STATUSES = frozenset({"pending", "viewed"})
FIELD_TYPES = frozenset({"signature", "initial", "date", "text", "checkbox"})
SIGNATURE_PROFILES = frozenset({"basic", "advanced", "qualified"})
ENVELOPE_FORMATS = frozenset({"cms", "xml", "pdf"})
PROFILE_LEVELS = ("B", "T", "LT", "LTA")

# Default profile level produced for each document signature profile.
PROFILE_LEVEL_FOR_SIGNATURE_PROFILE: dict[str, str] = {
    "basic": "B",
    "advanced": "T",
    "qualified": "LTA",
}


class AuditAction:
    DOCUMENT_CREATED = "document_created"
    DOCUMENT_UPDATED = "document_updated"
    SIGNER_ADDED = "signer_added"
    SIGNER_REMOVED = "signer_removed"
    FIELD_ADDED = "field_added"
    FIELD_REMOVED = "field_removed"
    DOCUMENT_SENT = "document_sent"
    DOCUMENT_VIEWED = "document_viewed"
    DOCUMENT_SIGNED = "document_signed"
    DOCUMENT_COMPLETED = "document_completed"
    DOCUMENT_VOIDED = "document_voided"
    DOCUMENT_EXPIRED = "document_expired"
    SIGNER_DECLINED = "signer_declined"
    SIGNER_EXPIRED = "signer_expired"
    SIGNATURE_REJECTED = "signature_rejected"
    SIGNATURE_SUPERSEDED = "signature_superseded"
    SIGNING_LINK_RESENT = "signing_link_resent"
    DOCUMENT_DOWNLOADED = "document_downloaded"
    SIGNATURES_VALIDATED = "signatures_validated"
    ARCHIVE_TIMESTAMP_RENEWED = "archive_timestamp_renewed"
