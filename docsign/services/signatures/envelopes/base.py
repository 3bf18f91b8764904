from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from docsign.services.signatures.keys import KeyHandle


@dataclass(frozen=True)
class ParsedEnvelope:
    """Format-neutral view of a signature envelope."""

    envelope_format: str
    signer_certificate_der: bytes
    digest_algorithm: str
    signing_time: datetime | None
    # Bytes whose digest a signature timestamp must cover.
    signature_material: bytes
    signature_timestamps: list[bytes] = field(default_factory=list)
    # Archive timestamp tokens in the order they were applied.
    archive_timestamps: list[bytes] = field(default_factory=list)
    # archive_materials[i] is what archive_timestamps[i] covers.
    archive_materials: list[bytes] = field(default_factory=list)
    # Archive tokens that do not extend the chain of earlier ones.
    unmatched_archive_timestamps: list[bytes] = field(default_factory=list)
    # False when validation data was added after the latest archive timestamp.
    archive_covers_validation_data: bool = True
    certificates: list[bytes] = field(default_factory=list)
    ocsp_responses: list[bytes] = field(default_factory=list)
    crls: list[bytes] = field(default_factory=list)


@dataclass(frozen=True)
class IntegrityCheck:
    # The document digest matches the signed digest.
    digest_matches: bool
    # The signature value verifies under the signer certificate.
    signature_valid: bool
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.digest_matches and self.signature_valid


class Envelope(Protocol):
    envelope_format: str

    def digest(self, document: bytes, digest_algorithm: str) -> bytes:
        ...

    async def sign(
        self, document: bytes, key: KeyHandle, *, digest_algorithm: str, signing_time: datetime
    ) -> bytes:
        ...

    def add_signature_timestamp(self, envelope: bytes, token_der: bytes) -> bytes:
        ...

    def add_validation_data(
        self, envelope: bytes, *, certificates: list[bytes], ocsp_responses: list[bytes], crls: list[bytes]
    ) -> bytes:
        ...

    def archive_material(self, envelope: bytes) -> bytes:
        ...

    def add_archive_timestamp(self, envelope: bytes, token_der: bytes) -> bytes:
        ...

    def parse(self, envelope: bytes) -> ParsedEnvelope:
        ...

    def verify_bytes(self, parsed: ParsedEnvelope, envelope: bytes, document: bytes) -> IntegrityCheck:
        ...


class MaterialFn(Protocol):
    def __call__(self, prior: list[bytes]) -> bytes:
        ...


class ImprintFn(Protocol):
    def __call__(self, token_der: bytes, material: bytes) -> bool:
        ...


def order_archive_chain(
    tokens: list[bytes],
    material_for: MaterialFn,
    imprint_of: ImprintFn,
) -> tuple[list[bytes], list[bytes], list[bytes]]:
    """Recover application order of archive timestamps.

    Each archive timestamp covers the base material plus every archive token
    applied before it, so the order is rebuilt by repeatedly picking the
    token whose imprint matches the material accumulated so far. Returns
    (ordered tokens, their materials, tokens that fit nowhere).
    """
    remaining = list(tokens)
    ordered: list[bytes] = []
    materials: list[bytes] = []
    while remaining:
        material = material_for(ordered)
        for token in remaining:
            if imprint_of(token, material):
                ordered.append(token)
                materials.append(material)
                remaining.remove(token)
                break
        else:
            break
    return ordered, materials, remaining
