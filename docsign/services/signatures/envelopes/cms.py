from __future__ import annotations

from datetime import datetime
import hashlib
import logging

from asn1crypto import cms, crl as asn1_crl, ocsp as asn1_ocsp, x509 as asn1_x509

from docsign.core.errors import CryptoFailure, InvalidTimestampResponse, ValidationFailed
from docsign.services.crypto import cms as cms_utils
from docsign.services.crypto import digests
from docsign.services.signatures.envelopes.base import IntegrityCheck, ParsedEnvelope, order_archive_chain
from docsign.services.signatures.keys import KeyHandle
from docsign.services.timestamps.rfc3161 import parse_token


logger = logging.getLogger(__name__)


def timestamp_covers(token_der: bytes, material: bytes) -> bool:
    # True when the token's message imprint is the digest of ``material``.
    try:
        token, _, _ = parse_token(token_der)
        return digests.digest(material, token.hash_algorithm) == token.hashed_message
    except (InvalidTimestampResponse, ValidationFailed):
        return False


def _signer_core(signer_info: cms.SignerInfo) -> bytes:
    # Everything the signer committed to, without the unsigned attributes.
    return b"".join(
        signer_info[name].dump()
        for name in ("sid", "digest_algorithm", "signed_attrs", "signature_algorithm", "signature")
    )


def _signing_certificate_matches(view: cms_utils.SignerView) -> bool:
    value = cms_utils.signed_attribute(view, "signing_certificate_v2")
    if value is None:
        # Plain CMS without the ESS binding; nothing further to compare.
        return True
    for cert_id in value["certs"]:
        name = cert_id["hash_algorithm"]["algorithm"].native
        if hashlib.new(name, view.certificate_der).digest() == cert_id["cert_hash"].native:
            return True
    return False


class CmsEnvelope:
    """RFC 5652 SignedData with detached content (CAdES baseline levels).

    T adds signature-time-stamp-token, LT adds the chain and revocation data
    to the certificate and revocation-info sets, LTA adds archive time-stamp
    attributes that each cover the signer's committed fields, the signature
    timestamps, the validation data and every earlier archive timestamp.
    """

    envelope_format = "cms"

    def digest(self, document: bytes, digest_algorithm: str) -> bytes:
        return digests.digest(document, digest_algorithm)

    async def sign(
        self, document: bytes, key: KeyHandle, *, digest_algorithm: str, signing_time: datetime
    ) -> bytes:
        return await self.sign_digest(
            self.digest(document, digest_algorithm),
            key,
            digest_algorithm=digest_algorithm,
            signing_time=signing_time,
        )

    async def sign_digest(
        self, message_digest: bytes, key: KeyHandle, *, digest_algorithm: str, signing_time: datetime
    ) -> bytes:
        signed_attrs = cms_utils.build_signed_attributes(
            message_digest=message_digest,
            digest_algorithm=digest_algorithm,
            signing_time=signing_time,
            signer_certificate_der=key.certificate_der,
        )
        signature = await key.sign(b"\x31" + signed_attrs.dump()[1:], digest_algorithm)
        content_info = cms_utils.assemble_signed_data(
            signed_attrs=signed_attrs,
            signature=signature,
            signer_certificate_der=key.certificate_der,
            digest_algorithm=digest_algorithm,
            extra_certificates=key.chain,
        )
        return content_info.dump()

    def _rebuild(
        self,
        envelope: bytes,
        *,
        unsigned: list[cms.CMSAttribute] | None = None,
        certificates: list[bytes] | None = None,
        crls: list[bytes] | None = None,
        ocsp_responses: list[bytes] | None = None,
    ) -> bytes:
        content_info = cms_utils.load_content_info(envelope)
        # Drop the explicit [0] wrapper from ContentInfo before re-loading.
        signed_data = cms.SignedData.load(content_info["content"].untag().dump())
        signer_info = cms.SignerInfo.load(signed_data["signer_infos"][0].dump())
        if unsigned:
            existing = [cms.CMSAttribute.load(attr.dump()) for attr in signer_info["unsigned_attrs"] or []]
            signer_info["unsigned_attrs"] = cms.CMSAttributes(existing + unsigned)
        signed_data["signer_infos"] = cms.SignerInfos([signer_info])
        if certificates:
            known = set(cms_utils.embedded_certificates(signed_data))
            choices = [choice for choice in signed_data["certificates"] or []]
            for der in certificates:
                if der not in known:
                    known.add(der)
                    choices.append(cms.CertificateChoices({"certificate": asn1_x509.Certificate.load(der)}))
            signed_data["certificates"] = cms.CertificateSet(choices)
        if crls or ocsp_responses:
            known_crls, known_ocsps = cms_utils.embedded_revocation(signed_data)
            revocation = [choice for choice in signed_data["crls"] or []]
            for der in crls or []:
                if der not in known_crls:
                    revocation.append(cms.RevocationInfoChoice({"crl": asn1_crl.CertificateList.load(der)}))
            for der in ocsp_responses or []:
                if der not in known_ocsps:
                    revocation.append(
                        cms.RevocationInfoChoice(
                            {
                                "other": cms.OtherRevocationInfoFormat(
                                    {
                                        "other_rev_info_format": "ocsp_response",
                                        "other_rev_info": asn1_ocsp.OCSPResponse.load(der),
                                    }
                                )
                            }
                        )
                    )
            signed_data["crls"] = cms.RevocationInfoChoices(revocation)
            if any(choice.name == "other" for choice in revocation):
                signed_data["version"] = "v5"
        return cms.ContentInfo({"content_type": "signed_data", "content": signed_data}).dump()

    def add_signature_timestamp(self, envelope: bytes, token_der: bytes) -> bytes:
        token = cms.ContentInfo.load(token_der)
        return self._rebuild(envelope, unsigned=[cms_utils.timestamp_attribute(token)])

    def add_validation_data(
        self, envelope: bytes, *, certificates: list[bytes], ocsp_responses: list[bytes], crls: list[bytes]
    ) -> bytes:
        return self._rebuild(envelope, certificates=certificates, crls=crls, ocsp_responses=ocsp_responses)

    def _material_fn(self, envelope: bytes):
        view = cms_utils.signer_view(cms_utils.load_content_info(envelope))
        crls, ocsps = cms_utils.embedded_revocation(view.signed_data)
        base = [view.signed_data["encap_content_info"].dump(), _signer_core(view.signer_info)]
        base.extend(
            sorted(token.dump() for token in cms_utils.unsigned_attributes(view.signer_info, "signature_time_stamp_token"))
        )
        base.extend(sorted(cms_utils.embedded_certificates(view.signed_data)))
        base.extend(sorted(crls))
        base.extend(sorted(ocsps))

        def material_for(prior: list[bytes]) -> bytes:
            return b"".join(base + prior)

        return view, material_for

    def archive_material(self, envelope: bytes) -> bytes:
        parsed = self.parse(envelope)
        _, material_for = self._material_fn(envelope)
        return material_for(parsed.archive_timestamps)

    def add_archive_timestamp(self, envelope: bytes, token_der: bytes) -> bytes:
        token = cms.ContentInfo.load(token_der)
        return self._rebuild(envelope, unsigned=[cms_utils.archive_timestamp_attribute(token)])

    def parse(self, envelope: bytes) -> ParsedEnvelope:
        view, material_for = self._material_fn(envelope)
        crls, ocsps = cms_utils.embedded_revocation(view.signed_data)
        archive_tokens = [
            token.dump() for token in cms_utils.unsigned_attributes(view.signer_info, "archive_time_stamp_v3")
        ]
        ordered, materials, unmatched = order_archive_chain(archive_tokens, material_for, timestamp_covers)
        return ParsedEnvelope(
            envelope_format=self.envelope_format,
            signer_certificate_der=view.certificate_der,
            digest_algorithm=digests.normalize(view.digest_algorithm),
            signing_time=view.signing_time,
            signature_material=view.signature,
            signature_timestamps=[
                token.dump()
                for token in cms_utils.unsigned_attributes(view.signer_info, "signature_time_stamp_token")
            ],
            archive_timestamps=ordered,
            archive_materials=materials,
            unmatched_archive_timestamps=unmatched,
            archive_covers_validation_data=not unmatched,
            certificates=cms_utils.embedded_certificates(view.signed_data),
            ocsp_responses=ocsps,
            crls=crls,
        )

    def check_digest(self, envelope: bytes, message_digest: bytes) -> IntegrityCheck:
        view = cms_utils.signer_view(cms_utils.load_content_info(envelope))
        errors: list[str] = []
        digest_matches = view.message_digest is not None and view.message_digest == message_digest
        if not digest_matches:
            errors.append("message_digest_mismatch")
        signature_valid = cms_utils.verify_signer(view)
        if not signature_valid:
            errors.append("signature_value_invalid")
        if not _signing_certificate_matches(view):
            signature_valid = False
            errors.append("signing_certificate_mismatch")
        return IntegrityCheck(digest_matches=digest_matches, signature_valid=signature_valid, errors=errors)

    def verify_bytes(self, parsed: ParsedEnvelope, envelope: bytes, document: bytes) -> IntegrityCheck:
        try:
            return self.check_digest(envelope, self.digest(document, parsed.digest_algorithm))
        except CryptoFailure as exc:
            logger.info("cms_verify_failed reason=%s", exc.reason)
            return IntegrityCheck(False, False, [exc.reason or "cms_malformed"])
