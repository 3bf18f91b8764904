from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Callable
from uuid import uuid4

from docsign.core.config import get_settings
from docsign.core.errors import (
    CryptoFailure,
    DependencyUnavailable,
    InvalidState,
    InvalidTimestampResponse,
    ValidationFailed,
)
from docsign.domain.models import SignatureRecord, utc_now
from docsign.domain.state import ENVELOPE_FORMATS, PROFILE_LEVELS
from docsign.services.crypto import cms as cms_utils
from docsign.services.crypto import digests
from docsign.services.crypto.utils import b64decode_str, sha256_hex
from docsign.services.signatures.envelopes.base import Envelope, ParsedEnvelope
from docsign.services.signatures.envelopes.cms import CmsEnvelope
from docsign.services.signatures.envelopes.pdf import PdfEnvelope
from docsign.services.signatures.envelopes.xml import XmlEnvelope
from docsign.services.signatures.keys import resolve_key
from docsign.services.signatures.report import (
    CRYPTO_CONSTRAINTS_FAILURE_NO_POE,
    EXPIRED,
    FORMAT_FAILURE,
    HASH_FAILURE,
    INDETERMINATE,
    NO_CERTIFICATE_CHAIN_FOUND,
    NO_POE,
    NOT_YET_VALID,
    REVOKED_NO_POE,
    SIG_CONSTRAINTS_FAILURE,
    SIG_CRYPTO_FAILURE,
    TIMESTAMP_ORDER_FAILURE,
    TOTAL_FAILED,
    TRY_LATER,
    ReportBuilder,
    ValidationPolicy,
    ValidationReport,
    derive_legal_effect,
    signature_level,
)
from docsign.services.telemetry import increment_counter
from docsign.services.timestamps.client import TimestampClient, get_timestamp_client
from docsign.services.timestamps.rfc3161 import parse_token
from docsign.services.trust.revocation import RevocationResult, evaluate_embedded
from docsign.services.trust.service import TrustService, get_trust_service


logger = logging.getLogger(__name__)

_TIMESTAMPED_LEVELS = frozenset({"T", "LT", "LTA"})
_LONG_TERM_LEVELS = frozenset({"LT", "LTA"})


def _merge_validation_data(*items: dict[str, list[str]]) -> dict[str, list[str]]:
    merged: dict[str, list[str]] = {"certificates": [], "ocsp": [], "crls": []}
    for item in items:
        for key in merged:
            for value in item.get(key, []):
                if value not in merged[key]:
                    merged[key].append(value)
    return merged


def _decode_all(values: list[str]) -> list[bytes]:
    return [b64decode_str(value) for value in values]


class SignatureEngine:
    """Creates and validates signatures in CMS, XML and PDF envelopes.

    Profile levels build on each other: T stamps the signature value, LT
    embeds the chain and revocation evidence, LTA stamps the whole structure
    and can be re-stamped later.
    """

    def __init__(
        self,
        *,
        trust: TrustService | None = None,
        timestamps: TimestampClient | None = None,
        envelopes: dict[str, Envelope] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._trust = trust or get_trust_service()
        self._timestamps = timestamps or get_timestamp_client()
        self._envelopes: dict[str, Envelope] = envelopes or {
            "cms": CmsEnvelope(),
            "xml": XmlEnvelope(),
            "pdf": PdfEnvelope(),
        }
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock() if self._clock is not None else utc_now()

    def envelope_for(self, envelope_format: str) -> Envelope:
        envelope = self._envelopes.get(envelope_format)
        if envelope is None or envelope_format not in ENVELOPE_FORMATS:
            raise ValidationFailed(f"unsupported envelope format: {envelope_format}", reason="envelope_format_unsupported")
        return envelope

    async def _stamp(self, material: bytes, digest_algorithm: str) -> bytes:
        token = await self._timestamps.stamp(digests.digest(material, digest_algorithm), digest_algorithm)
        return token.der

    async def _validation_data(
        self, signer_der: bytes, chain: tuple[bytes, ...], token_der: bytes | None, at_time: datetime
    ) -> dict[str, list[str]]:
        signer_data = await self._trust.snapshot_validation_data(signer_der, at_time, intermediates=chain)
        certificates = _decode_all(signer_data["certificates"])
        if len(certificates) > 1:
            status = evaluate_embedded(
                signer_der,
                certificates[1],
                ocsp_responses=_decode_all(signer_data["ocsp"]),
                crls=_decode_all(signer_data["crls"]),
                at_time=at_time,
            )
            if status is not None and status.revoked:
                raise CryptoFailure("signer certificate is revoked", reason="signer_certificate_revoked")
        if token_der is None:
            return signer_data
        token, view, _ = parse_token(token_der)
        authority_data = await self._trust.snapshot_validation_data(
            token.tsa_certificate_der, token.gen_time, intermediates=cms_utils.embedded_certificates(view.signed_data)
        )
        return _merge_validation_data(signer_data, authority_data)

    async def sign(
        self,
        document: bytes,
        key_ref: str | None,
        *,
        document_id: str,
        signer_id: str,
        envelope_format: str | None = None,
        profile_level: str = "B",
        digest_algorithm: str | None = None,
        signing_time: datetime | None = None,
        supersedes_id: str | None = None,
    ) -> SignatureRecord:
        # Returns a transient record; the caller persists it with the signer transition.
        settings = get_settings()
        name = digests.require_signing_algorithm(digest_algorithm or settings.default_digest_algorithm)
        if profile_level not in PROFILE_LEVELS:
            raise ValidationFailed(f"unsupported profile level: {profile_level}", reason="profile_level_unsupported")
        fmt = envelope_format or settings.default_envelope_format
        envelope = self.envelope_for(fmt)
        key = resolve_key(key_ref)
        # Signing time is carried at second precision by every envelope format.
        signing_time = (signing_time or self._now()).replace(microsecond=0)
        cert = cms_utils.load_certificate(key.certificate_der)
        if not (cert.not_valid_before_utc <= signing_time <= cert.not_valid_after_utc):
            raise CryptoFailure("signer certificate not valid at signing time", reason="signer_certificate_expired")

        signed = await envelope.sign(document, key, digest_algorithm=name, signing_time=signing_time)
        token_der: bytes | None = None
        validation_data: dict[str, list[str]] | None = None
        if profile_level in _TIMESTAMPED_LEVELS:
            parsed = envelope.parse(signed)
            token_der = await self._stamp(parsed.signature_material, name)
            signed = envelope.add_signature_timestamp(signed, token_der)
        if profile_level in _LONG_TERM_LEVELS:
            validation_data = await self._validation_data(key.certificate_der, key.chain, token_der, signing_time)
            signed = envelope.add_validation_data(
                signed,
                certificates=_decode_all(validation_data["certificates"]),
                ocsp_responses=_decode_all(validation_data["ocsp"]),
                crls=_decode_all(validation_data["crls"]),
            )
        if profile_level == "LTA":
            signed = envelope.add_archive_timestamp(signed, await self._stamp(envelope.archive_material(signed), name))

        increment_counter(f"signatures_created_total.{fmt}.{profile_level}")
        logger.info(
            "signature_created document_id=%s signer_id=%s format=%s level=%s key_ref=%s",
            document_id,
            signer_id,
            fmt,
            profile_level,
            key.key_ref,
        )
        return SignatureRecord(
            id=str(uuid4()),
            document_id=document_id,
            signer_id=signer_id,
            envelope_format=fmt,
            profile_level=profile_level,
            signer_certificate=key.certificate_der,
            signature_bytes=signed,
            digest_algorithm=name,
            signing_time=signing_time,
            timestamp_token=token_der,
            validation_data=validation_data,
            content_hash=sha256_hex(signed),
            supersedes_id=supersedes_id,
        )

    async def renew_archival_timestamp(
        self, record: SignatureRecord, *, digest_algorithm: str | None = None
    ) -> SignatureRecord:
        """Add one more archive timestamp; returns a new record superseding ``record``."""
        if record.profile_level != "LTA":
            raise InvalidState("only LTA signatures carry archive timestamps", reason="not_archival")
        name = digests.require_signing_algorithm(digest_algorithm or get_settings().default_digest_algorithm)
        envelope = self.envelope_for(record.envelope_format)
        parsed = envelope.parse(record.signature_bytes)
        if parsed.unmatched_archive_timestamps:
            raise CryptoFailure("archive timestamp chain is broken", reason="archive_chain_broken")
        renewed = envelope.add_archive_timestamp(
            record.signature_bytes, await self._stamp(envelope.archive_material(record.signature_bytes), name)
        )
        logger.info("archive_timestamp_renewed record_id=%s digest=%s", record.id, name)
        return SignatureRecord(
            id=str(uuid4()),
            document_id=record.document_id,
            signer_id=record.signer_id,
            envelope_format=record.envelope_format,
            profile_level=record.profile_level,
            signer_certificate=record.signer_certificate,
            signature_bytes=renewed,
            digest_algorithm=record.digest_algorithm,
            signing_time=record.signing_time,
            timestamp_token=record.timestamp_token,
            validation_data=record.validation_data,
            content_hash=sha256_hex(renewed),
            supersedes_id=record.id,
        )

    async def _signature_timestamps(
        self, parsed: ParsedEnvelope, signing_time: datetime | None, builder: ReportBuilder
    ) -> list[datetime]:
        # Step 4: every signature timestamp covers the signature value and follows the signing time.
        times: list[datetime] = []
        for token_der in parsed.signature_timestamps:
            try:
                token, _, _ = parse_token(token_der)
            except InvalidTimestampResponse as exc:
                builder.degrade(INDETERMINATE, NO_POE, f"signature_timestamp_malformed:{exc.reason}")
                continue
            result = await self._timestamps.verify(
                token_der, digests.digest(parsed.signature_material, token.hash_algorithm)
            )
            for warning in result.warnings:
                builder.warn(warning)
            if not result.valid or result.gen_time is None:
                builder.degrade(INDETERMINATE, NO_POE, "signature_timestamp_invalid:" + ",".join(result.errors))
                continue
            if signing_time is not None and result.gen_time < signing_time:
                builder.degrade(INDETERMINATE, TIMESTAMP_ORDER_FAILURE, "timestamp_before_signing_time")
                continue
            times.append(result.gen_time)
        return sorted(times)

    async def _archive_timestamps(
        self, parsed: ParsedEnvelope, previous: datetime | None, builder: ReportBuilder
    ) -> datetime | None:
        if parsed.unmatched_archive_timestamps:
            builder.degrade(INDETERMINATE, TIMESTAMP_ORDER_FAILURE, "archive_timestamp_chain_broken")
        latest = previous
        for token_der, material in zip(parsed.archive_timestamps, parsed.archive_materials):
            try:
                token, _, _ = parse_token(token_der)
            except InvalidTimestampResponse as exc:
                builder.degrade(INDETERMINATE, NO_POE, f"archive_timestamp_malformed:{exc.reason}")
                continue
            result = await self._timestamps.verify(token_der, digests.digest(material, token.hash_algorithm))
            if not result.valid or result.gen_time is None:
                builder.degrade(INDETERMINATE, NO_POE, "archive_timestamp_invalid:" + ",".join(result.errors))
                continue
            if latest is not None and result.gen_time < latest:
                builder.degrade(INDETERMINATE, TIMESTAMP_ORDER_FAILURE, "archive_timestamp_out_of_order")
            latest = result.gen_time
        return latest

    def _apply_revocation(
        self,
        result: RevocationResult,
        *,
        signing_time: datetime | None,
        poe: datetime | None,
        builder: ReportBuilder,
    ) -> None:
        if result.revoked:
            revoked_at = result.revocation_time
            if poe is not None and revoked_at is not None and poe < revoked_at:
                builder.warn("revoked_after_poe")
            elif not result.fresh:
                # Stale evidence cannot settle the outcome either way.
                builder.degrade(INDETERMINATE, TRY_LATER, "revocation_info_not_fresh")
            elif signing_time is not None and revoked_at is not None and signing_time < revoked_at:
                builder.degrade(INDETERMINATE, REVOKED_NO_POE, "certificate_revoked")
            else:
                builder.degrade(TOTAL_FAILED, REVOKED_NO_POE, "certificate_revoked")
            return
        if result.status == "not_applicable":
            return
        if result.status == "unknown" or result.evidence is None:
            builder.warn("revocation_status_unknown")
        elif not result.fresh:
            builder.warn("revocation_info_not_fresh")

    async def _check_path(
        self,
        parsed: ParsedEnvelope,
        record: Any,
        *,
        at_time: datetime,
        signing_time: datetime | None,
        poe: datetime | None,
        policy: ValidationPolicy,
        builder: ReportBuilder,
    ) -> list[bytes]:
        # Step 2: validity period, chain and revocation.
        signer_der = parsed.signer_certificate_der
        cert = cms_utils.load_certificate(signer_der)
        embedded = record.profile_level in _LONG_TERM_LEVELS
        stored = record.validation_data or {}
        intermediates = parsed.certificates + [
            der for der in _decode_all(stored.get("certificates", [])) if der not in parsed.certificates
        ]
        if at_time < cert.not_valid_before_utc:
            builder.degrade(INDETERMINATE, NOT_YET_VALID, "certificate_not_yet_valid")
        elif at_time > cert.not_valid_after_utc:
            if poe is not None and poe <= cert.not_valid_after_utc:
                builder.warn("certificate_expired_after_poe")
            else:
                builder.degrade(INDETERMINATE, EXPIRED, "certificate_expired")
        # Long-term and expired signatures are validated at their proof of existence.
        path_time = poe if poe is not None and (embedded or at_time > cert.not_valid_after_utc) else at_time
        path = self._trust.build_path(signer_der, path_time, intermediates=intermediates)
        if not path.ok:
            if "ca_certificate_expired" in path.errors:
                builder.degrade(INDETERMINATE, EXPIRED, "ca_certificate_expired")
            else:
                builder.degrade(INDETERMINATE, NO_CERTIFICATE_CHAIN_FOUND, ",".join(path.errors) or "no_path")
            return path.path
        ocsps = parsed.ocsp_responses + [
            der for der in _decode_all(stored.get("ocsp", [])) if der not in parsed.ocsp_responses
        ]
        crls = parsed.crls + [der for der in _decode_all(stored.get("crls", [])) if der not in parsed.crls]
        for index in range(len(path.path) - 1):
            cert_der, issuer_der = path.path[index], path.path[index + 1]
            result = None
            if embedded:
                result = evaluate_embedded(
                    cert_der, issuer_der, ocsp_responses=ocsps, crls=crls, at_time=poe or signing_time or at_time
                )
            if result is None:
                if not policy.live_revocation:
                    builder.warn("revocation_not_checked")
                    continue
                try:
                    result = await self._trust.check_revocation(cert_der, at_time, issuer_der=issuer_der)
                except DependencyUnavailable as exc:
                    builder.degrade(INDETERMINATE, TRY_LATER, exc.reason or "revocation_unavailable")
                    continue
            self._apply_revocation(result, signing_time=signing_time, poe=poe, builder=builder)
        return path.path

    def _check_long_term(self, parsed: ParsedEnvelope, record: Any, path: list[bytes], builder: ReportBuilder) -> None:
        # Step 5: embedded evidence is complete and covered by the latest timestamp.
        if record.profile_level not in _LONG_TERM_LEVELS:
            return
        if not parsed.certificates or not (parsed.ocsp_responses or parsed.crls):
            builder.degrade(INDETERMINATE, SIG_CONSTRAINTS_FAILURE, "validation_data_missing")
            return
        missing = [der for der in path[:-1] if der not in parsed.certificates]
        if missing:
            builder.degrade(INDETERMINATE, SIG_CONSTRAINTS_FAILURE, "validation_data_inconsistent")
        if record.profile_level == "LTA":
            if not parsed.archive_timestamps:
                builder.degrade(INDETERMINATE, SIG_CONSTRAINTS_FAILURE, "archive_timestamp_missing")
            elif not parsed.archive_covers_validation_data:
                builder.degrade(INDETERMINATE, TIMESTAMP_ORDER_FAILURE, "validation_data_not_archived")

    async def verify(
        self,
        record: Any,
        document: bytes,
        at_time: datetime | None = None,
        policy: ValidationPolicy | None = None,
    ) -> ValidationReport:
        at_time = at_time or self._now()
        policy = policy or ValidationPolicy()
        builder = ReportBuilder()
        envelope = self.envelope_for(record.envelope_format)
        try:
            parsed = envelope.parse(record.signature_bytes)
        except (CryptoFailure, ValidationFailed) as exc:
            builder.degrade(TOTAL_FAILED, FORMAT_FAILURE, exc.reason or "envelope_malformed")
            return self._report(record, None, builder, at_time)

        # Step 1: digest and signature value.
        check = envelope.verify_bytes(parsed, record.signature_bytes, document)
        builder.errors.extend(check.errors)
        if not check.digest_matches:
            builder.degrade(TOTAL_FAILED, HASH_FAILURE)
        elif not check.signature_valid:
            builder.degrade(TOTAL_FAILED, SIG_CRYPTO_FAILURE)
        if parsed.signer_certificate_der != record.signer_certificate:
            builder.degrade(TOTAL_FAILED, SIG_CRYPTO_FAILURE, "signer_certificate_mismatch")
        if builder.failed:
            increment_counter("signature_validation_failed_total")
            return self._report(record, parsed, builder, at_time)
        if digests.is_deprecated(parsed.digest_algorithm):
            builder.warn("deprecated_digest_algorithm")
            builder.degrade(INDETERMINATE, CRYPTO_CONSTRAINTS_FAILURE_NO_POE, "deprecated_digest_algorithm")

        signing_time = parsed.signing_time or record.signing_time
        timestamp_times = await self._signature_timestamps(parsed, signing_time, builder)
        poe = timestamp_times[0] if timestamp_times else None
        if record.profile_level in _TIMESTAMPED_LEVELS and not parsed.signature_timestamps:
            builder.degrade(INDETERMINATE, NO_POE, "signature_timestamp_missing")
        await self._archive_timestamps(parsed, timestamp_times[-1] if timestamp_times else None, builder)

        path = await self._check_path(
            parsed, record, at_time=at_time, signing_time=signing_time, poe=poe, policy=policy, builder=builder
        )
        self._check_long_term(parsed, record, path, builder)
        return self._report(record, parsed, builder, at_time, poe=poe, policy=policy, intermediates=path)

    def _report(
        self,
        record: Any,
        parsed: ParsedEnvelope | None,
        builder: ReportBuilder,
        at_time: datetime,
        *,
        poe: datetime | None = None,
        policy: ValidationPolicy | None = None,
        intermediates: list[bytes] | None = None,
    ) -> ValidationReport:
        subject = None
        qualified = False
        qtsp_status = None
        qc_statements: list[str] = []
        territory = None
        recognition = None
        if parsed is not None and not builder.failed:
            # Step 3: qualification is reported, never a reason to fail.
            cert = cms_utils.load_certificate(parsed.signer_certificate_der)
            subject = cert.subject.rfc4514_string()
            qualification = self._trust.qualification_of(
                parsed.signer_certificate_der,
                poe or parsed.signing_time or at_time,
                intermediates=intermediates or parsed.certificates,
            )
            for warning in qualification.warnings:
                builder.warn(warning)
            qualified = qualification.qualified
            qtsp_status = qualification.qtsp_status
            qc_statements = qualification.qc_statements
            territory = qualification.territory
        level = signature_level(qualified, record.profile_level)
        if territory is not None:
            result = self._trust.recognize_cross_border(
                territory, policy.consuming_territory if policy else None, level
            )
            recognition = {"recognized": result.recognized, "basis": result.basis, "limitations": result.limitations}
        recognized = bool(recognition and recognition["recognized"])
        report = ValidationReport(
            indication=builder.indication,
            sub_indication=builder.sub_indication,
            envelope_format=record.envelope_format,
            profile_level=record.profile_level,
            digest_algorithm=parsed.digest_algorithm if parsed else record.digest_algorithm,
            signer_subject=subject,
            signing_time=parsed.signing_time if parsed and parsed.signing_time else record.signing_time,
            timestamp_time=poe,
            qualified=qualified,
            qtsp_status=qtsp_status,
            qc_statements=qc_statements,
            territory=territory,
            recognition=recognition,
            signature_level=level,
            legal_effect=derive_legal_effect(builder.indication, level, recognized),
            warnings=list(builder.warnings),
            errors=list(builder.errors),
            validated_at=at_time,
        )
        logger.info(
            "signature_validated record_id=%s indication=%s sub=%s",
            getattr(record, "id", None),
            report.indication,
            report.sub_indication,
        )
        return report


_engine: SignatureEngine | None = None


def get_signature_engine() -> SignatureEngine:
    global _engine
    if _engine is None:
        trust = get_trust_service()
        timestamps = get_timestamp_client()
        timestamps.set_chain_validator(trust.validate_timestamp_authority)
        _engine = SignatureEngine(trust=trust, timestamps=timestamps)
    return _engine


def set_signature_engine(engine: SignatureEngine | None) -> None:
    global _engine
    _engine = engine
