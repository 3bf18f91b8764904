from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from io import BytesIO
import logging
import re

from asn1crypto import cms, x509 as asn1_x509
from pyhanko.pdf_utils.incremental_writer import IncrementalPdfFileWriter
from pyhanko.pdf_utils.misc import PdfError
from pyhanko.sign.fields import SigSeedSubFilter
from pyhanko.sign.signers import ExternalSigner, PdfSignatureMetadata, PdfSigner
from pyhanko.sign.signers.pdf_signer import PdfTBSDocument
from pyhanko_certvalidator.registry import SimpleCertificateStore

from docsign.core.config import get_settings
from docsign.core.errors import CryptoFailure, ValidationFailed
from docsign.services.crypto import digests
from docsign.services.signatures.envelopes.base import IntegrityCheck, ParsedEnvelope
from docsign.services.signatures.envelopes.cms import CmsEnvelope
from docsign.services.signatures.keys import KeyHandle


logger = logging.getLogger(__name__)

_BYTE_RANGE = re.compile(rb"/ByteRange\s*\[\s*(\d+)\s+(\d+)\s+(\d+)\s+(\d+)\s*\]")


def _byte_range(data: bytes) -> tuple[int, int, int, int]:
    matches = list(_BYTE_RANGE.finditer(data))
    if not matches:
        raise CryptoFailure("PDF carries no signature dictionary", reason="pdf_signature_missing")
    start1, len1, start2, len2 = (int(value) for value in matches[-1].groups())
    return start1, len1, start2, len2


def _contents_region(data: bytes) -> tuple[int, int]:
    # The hex string between the two byte ranges, delimiters included.
    _, len1, start2, _ = _byte_range(data)
    if data[len1:len1 + 1] != b"<" or data[start2 - 1:start2] != b">":
        raise CryptoFailure("PDF signature contents are not where ByteRange says", reason="pdf_byte_range_invalid")
    return len1, start2


def extract_cms(data: bytes) -> bytes:
    start, end = _contents_region(data)
    try:
        raw = bytes.fromhex(data[start + 1:end - 1].decode("ascii"))
        # Trailing zero padding is not part of the DER structure.
        return cms.ContentInfo.load(raw).dump()
    except (ValueError, UnicodeDecodeError) as exc:
        raise CryptoFailure("PDF signature contents malformed", reason="cms_malformed") from exc


def replace_cms(data: bytes, cms_der: bytes) -> bytes:
    # /Contents sits outside the ByteRange, so rewriting it in place keeps the digest.
    start, end = _contents_region(data)
    capacity = end - start - 2
    encoded = cms_der.hex().upper().encode("ascii")
    if len(encoded) > capacity:
        raise CryptoFailure(
            f"signature container needs {len(encoded)} hex bytes, {capacity} reserved",
            reason="pdf_signature_space_exhausted",
        )
    return data[:start + 1] + encoded + b"0" * (capacity - len(encoded)) + data[end - 1:]


def signed_ranges(data: bytes) -> bytes:
    start1, len1, start2, len2 = _byte_range(data)
    return data[start1:start1 + len1] + data[start2:start2 + len2]


class PdfEnvelope:
    """ISO 32000 signature dictionary with /SubFilter /adbe.pkcs7.detached.

    The document gets an incremental update with an invisible signature
    field; the CMS container lives in /Contents and carries the same
    timestamp, validation-data and archive attributes as the CMS envelope.
    """

    envelope_format = "pdf"

    def __init__(self, *, reserved_bytes: int | None = None) -> None:
        self._cms = CmsEnvelope()
        self._reserved = reserved_bytes or get_settings().pdf_signature_reserved_bytes

    def digest(self, document: bytes, digest_algorithm: str) -> bytes:
        return digests.digest(document, digest_algorithm)

    async def sign(
        self, document: bytes, key: KeyHandle, *, digest_algorithm: str, signing_time: datetime
    ) -> bytes:
        name = digests.normalize(digest_algorithm)
        try:
            writer = IncrementalPdfFileWriter(BytesIO(document))
        except (PdfError, ValueError) as exc:
            raise ValidationFailed("document is not a readable PDF", reason="pdf_required") from exc
        signing_cert = asn1_x509.Certificate.load(key.certificate_der)
        # Only reserves space and computes the ByteRange digest; the CMS is built here.
        placeholder = ExternalSigner(
            signing_cert=signing_cert,
            cert_registry=SimpleCertificateStore.from_certs(
                [signing_cert] + [asn1_x509.Certificate.load(der) for der in key.chain]
            ),
            signature_value=bytes(256),
        )
        pdf_signer = PdfSigner(
            PdfSignatureMetadata(
                field_name=f"Signature{signing_time:%Y%m%d%H%M%S}",
                md_algorithm=name,
                subfilter=SigSeedSubFilter.ADOBE_PKCS7_DETACHED,
            ),
            signer=placeholder,
        )
        try:
            prepared, _, output = await pdf_signer.async_digest_doc_for_signing(
                writer, bytes_reserved=self._reserved * 2
            )
        except PdfError as exc:
            raise ValidationFailed(f"PDF cannot take a signature: {exc}", reason="pdf_unsupported") from exc
        cms_der = await self._cms.sign_digest(
            prepared.document_digest, key, digest_algorithm=name, signing_time=signing_time
        )
        await PdfTBSDocument.async_finish_signing(output, prepared, cms_der)
        output.seek(0)
        signed = output.read()
        logger.debug("pdf_signed bytes=%s reserved=%s", len(signed), self._reserved)
        return signed

    def add_signature_timestamp(self, envelope: bytes, token_der: bytes) -> bytes:
        return replace_cms(envelope, self._cms.add_signature_timestamp(extract_cms(envelope), token_der))

    def add_validation_data(
        self, envelope: bytes, *, certificates: list[bytes], ocsp_responses: list[bytes], crls: list[bytes]
    ) -> bytes:
        updated = self._cms.add_validation_data(
            extract_cms(envelope), certificates=certificates, ocsp_responses=ocsp_responses, crls=crls
        )
        return replace_cms(envelope, updated)

    def archive_material(self, envelope: bytes) -> bytes:
        return self._cms.archive_material(extract_cms(envelope))

    def add_archive_timestamp(self, envelope: bytes, token_der: bytes) -> bytes:
        return replace_cms(envelope, self._cms.add_archive_timestamp(extract_cms(envelope), token_der))

    def parse(self, envelope: bytes) -> ParsedEnvelope:
        return replace(self._cms.parse(extract_cms(envelope)), envelope_format=self.envelope_format)

    def verify_bytes(self, parsed: ParsedEnvelope, envelope: bytes, document: bytes) -> IntegrityCheck:
        try:
            start1, len1, start2, len2 = _byte_range(envelope)
            _contents_region(envelope)
            cms_der = extract_cms(envelope)
        except CryptoFailure as exc:
            return IntegrityCheck(False, False, [exc.reason or "pdf_byte_range_invalid"])
        errors: list[str] = []
        if start1 != 0 or start2 + len2 != len(envelope):
            errors.append("byte_range_incomplete")
        # The incremental update must leave the original document untouched.
        if not envelope.startswith(document) or len(document) > len1:
            errors.append("document_mismatch")
        check = self._cms.check_digest(cms_der, digests.digest(signed_ranges(envelope), parsed.digest_algorithm))
        if errors:
            return IntegrityCheck(False, check.signature_valid, errors + check.errors)
        return check
