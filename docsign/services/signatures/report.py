from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


TOTAL_PASSED = "TOTAL-PASSED"
TOTAL_FAILED = "TOTAL-FAILED"
INDETERMINATE = "INDETERMINATE"

_SEVERITY = {TOTAL_PASSED: 0, INDETERMINATE: 1, TOTAL_FAILED: 2}

# Sub-indications (ETSI EN 319 102-1 vocabulary).
FORMAT_FAILURE = "FORMAT_FAILURE"
HASH_FAILURE = "HASH_FAILURE"
SIG_CRYPTO_FAILURE = "SIG_CRYPTO_FAILURE"
REVOKED_NO_POE = "REVOKED_NO_POE"
EXPIRED = "EXPIRED"
NOT_YET_VALID = "NOT_YET_VALID"
NO_CERTIFICATE_CHAIN_FOUND = "NO_CERTIFICATE_CHAIN_FOUND"
TRY_LATER = "TRY_LATER"
TIMESTAMP_ORDER_FAILURE = "TIMESTAMP_ORDER_FAILURE"
NO_POE = "NO_POE"
CRYPTO_CONSTRAINTS_FAILURE_NO_POE = "CRYPTO_CONSTRAINTS_FAILURE_NO_POE"
SIG_CONSTRAINTS_FAILURE = "SIG_CONSTRAINTS_FAILURE"


@dataclass(frozen=True)
class ValidationPolicy:
    # Territory relying on the signature; defaults to settings.consuming_territory.
    consuming_territory: str | None = None
    # Query OCSP/CRL endpoints when the envelope carries no usable evidence.
    live_revocation: bool = True


def signature_level(qualified: bool, profile_level: str) -> str:
    if qualified:
        return "qualified"
    if profile_level in ("T", "LT", "LTA"):
        return "advanced"
    return "basic"


def derive_legal_effect(indication: str, level: str, recognized: bool) -> str:
    if indication != TOTAL_PASSED:
        return "no_legal_effect"
    if level == "qualified" and recognized:
        return "equivalent_to_handwritten"
    if level in ("advanced", "qualified"):
        return "presumption_of_integrity"
    return "admissible_as_evidence"


class ReportBuilder:
    """Accumulates findings; the worst indication seen wins."""

    def __init__(self) -> None:
        self.indication = TOTAL_PASSED
        self.sub_indication: str | None = None
        self.warnings: list[str] = []
        self.errors: list[str] = []

    def degrade(self, indication: str, sub_indication: str, error: str | None = None) -> None:
        if error:
            self.errors.append(error)
        if _SEVERITY[indication] > _SEVERITY[self.indication]:
            self.indication = indication
            self.sub_indication = sub_indication

    def warn(self, warning: str) -> None:
        if warning not in self.warnings:
            self.warnings.append(warning)

    @property
    def failed(self) -> bool:
        return self.indication == TOTAL_FAILED


@dataclass(frozen=True)
class ValidationReport:
    indication: str
    sub_indication: str | None
    envelope_format: str
    profile_level: str
    digest_algorithm: str
    signer_subject: str | None
    signing_time: datetime | None
    # genTime of the earliest valid signature timestamp (proof of existence).
    timestamp_time: datetime | None
    qualified: bool
    qtsp_status: str | None
    qc_statements: list[str]
    territory: str | None
    recognition: dict[str, Any] | None
    signature_level: str
    legal_effect: str
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    validated_at: datetime | None = None

    @property
    def passed(self) -> bool:
        return self.indication == TOTAL_PASSED

    def to_dict(self) -> dict[str, Any]:
        return {
            "indication": self.indication,
            "subIndication": self.sub_indication,
            "envelopeFormat": self.envelope_format,
            "profileLevel": self.profile_level,
            "digestAlgorithm": self.digest_algorithm,
            "signer": self.signer_subject,
            "signingTime": self.signing_time.isoformat() if self.signing_time else None,
            "timestampTime": self.timestamp_time.isoformat() if self.timestamp_time else None,
            "qualification": {
                "qualified": self.qualified,
                "qtspStatus": self.qtsp_status,
                "qcStatements": list(self.qc_statements),
                "territory": self.territory,
                "signatureLevel": self.signature_level,
            },
            "recognition": self.recognition,
            "legalEffect": self.legal_effect,
            "warnings": list(self.warnings),
            "errors": list(self.errors),
            "validatedAt": self.validated_at.isoformat() if self.validated_at else None,
        }
