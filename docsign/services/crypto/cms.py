from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import hashlib
from typing import Any, Iterable

from asn1crypto import algos, cms, core, crl as asn1_crl, ocsp as asn1_ocsp, tsp, x509 as asn1_x509
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa

from docsign.core.errors import CryptoFailure
from docsign.services.crypto import digests


SIGNING_CERTIFICATE_V2_OID = "1.2.840.113549.1.9.16.2.47"
# ETSI EN 319 122-1 archive timestamp (CAdES-LTA).
ARCHIVE_TIME_STAMP_V3_OID = "0.4.0.1733.2.4"

cms.CMSAttributeType._map.setdefault(SIGNING_CERTIFICATE_V2_OID, "signing_certificate_v2")
cms.CMSAttribute._oid_specs.setdefault("signing_certificate_v2", tsp.SetOfSigningCertificatesV2)
cms.CMSAttributeType._map.setdefault(ARCHIVE_TIME_STAMP_V3_OID, "archive_time_stamp_v3")
cms.CMSAttribute._oid_specs.setdefault("archive_time_stamp_v3", cms.SetOfContentInfo)


@dataclass(frozen=True)
class SignerView:
    """Flattened view of the first SignerInfo of a SignedData structure."""

    content_info: cms.ContentInfo
    signed_data: cms.SignedData
    signer_info: cms.SignerInfo
    certificate_der: bytes
    digest_algorithm: str
    signature: bytes
    signed_attrs_der: bytes | None
    message_digest: bytes | None
    signing_time: datetime | None
    content_type: str | None


def load_certificate(der: bytes) -> x509.Certificate:
    try:
        return x509.load_der_x509_certificate(der)
    except ValueError as exc:
        raise CryptoFailure("certificate is not valid DER", reason="certificate_malformed") from exc


def certificate_der(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.DER)


def signature_algorithm_name(public_key: Any, digest_algorithm: str) -> str:
    name = digests.normalize(digest_algorithm)
    if isinstance(public_key, rsa.RSAPublicKey):
        return f"{name}_rsa"
    if isinstance(public_key, ec.EllipticCurvePublicKey):
        return f"{name}_ecdsa"
    raise CryptoFailure("unsupported signer key type", reason="unsupported_key_type")


def sign_bytes(private_key: Any, data: bytes, digest_algorithm: str) -> bytes:
    hash_alg = digests.hash_algorithm(digest_algorithm)
    if isinstance(private_key, rsa.RSAPrivateKey):
        return private_key.sign(data, padding.PKCS1v15(), hash_alg)
    if isinstance(private_key, ec.EllipticCurvePrivateKey):
        return private_key.sign(data, ec.ECDSA(hash_alg))
    raise CryptoFailure("unsupported signer key type", reason="unsupported_key_type")


def verify_bytes(public_key: Any, signature: bytes, data: bytes, digest_algorithm: str) -> bool:
    hash_alg = digests.hash_algorithm(digest_algorithm)
    try:
        if isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(signature, data, padding.PKCS1v15(), hash_alg)
        elif isinstance(public_key, ec.EllipticCurvePublicKey):
            public_key.verify(signature, data, ec.ECDSA(hash_alg))
        else:
            return False
    except InvalidSignature:
        return False
    return True


def _attribute(oid_or_name: str, value: Any) -> cms.CMSAttribute:
    return cms.CMSAttribute({"type": cms.CMSAttributeType(oid_or_name), "values": [value]})


def build_signed_attributes(
    *,
    message_digest: bytes,
    digest_algorithm: str,
    signing_time: datetime,
    signer_certificate_der: bytes,
    content_type: str = "data",
) -> cms.CMSAttributes:
    # contentType, signingTime, messageDigest and the ESS signing-certificate binding.
    cert = asn1_x509.Certificate.load(signer_certificate_der)
    name = digests.normalize(digest_algorithm)
    ess_cert_id = tsp.ESSCertIDv2(
        {
            "hash_algorithm": algos.DigestAlgorithm({"algorithm": name}),
            "cert_hash": hashlib.new(name, signer_certificate_der).digest(),
            "issuer_serial": tsp.IssuerSerial(
                {
                    "issuer": [asn1_x509.GeneralName({"directory_name": cert.issuer})],
                    "serial_number": cert.serial_number,
                }
            ),
        }
    )
    return cms.CMSAttributes(
        [
            _attribute("content_type", cms.ContentType(content_type)),
            _attribute("signing_time", cms.Time({"utc_time": core.UTCTime(signing_time)})),
            _attribute("message_digest", core.OctetString(message_digest)),
            _attribute(SIGNING_CERTIFICATE_V2_OID, tsp.SigningCertificateV2({"certs": [ess_cert_id]})),
        ]
    )


def timestamp_attribute(token: cms.ContentInfo) -> cms.CMSAttribute:
    return _attribute("signature_time_stamp_token", token)


def archive_timestamp_attribute(token: cms.ContentInfo) -> cms.CMSAttribute:
    return _attribute(ARCHIVE_TIME_STAMP_V3_OID, token)


def assemble_signed_data(
    *,
    signed_attrs: cms.CMSAttributes,
    signature: bytes,
    signer_certificate_der: bytes,
    digest_algorithm: str,
    extra_certificates: Iterable[bytes] = (),
    crls: Iterable[bytes] = (),
    ocsp_responses: Iterable[bytes] = (),
    unsigned_attrs: list[cms.CMSAttribute] | None = None,
    content_type: str = "data",
    content: Any = None,
) -> cms.ContentInfo:
    """Wrap a computed signature value into RFC 5652 SignedData.

    Content is detached unless ``content`` is given (timestamp tokens embed
    their TSTInfo). Validation material for long-term profiles travels in the
    certificates and revocation-info sets.
    """
    name = digests.normalize(digest_algorithm)
    signer_cert = asn1_x509.Certificate.load(signer_certificate_der)
    public_key = load_certificate(signer_certificate_der).public_key()
    signer_info: dict[str, Any] = {
        "version": "v1",
        "sid": cms.SignerIdentifier(
            {
                "issuer_and_serial_number": cms.IssuerAndSerialNumber(
                    {"issuer": signer_cert.issuer, "serial_number": signer_cert.serial_number}
                )
            }
        ),
        "digest_algorithm": algos.DigestAlgorithm({"algorithm": name}),
        "signed_attrs": signed_attrs,
        "signature_algorithm": algos.SignedDigestAlgorithm(
            {"algorithm": signature_algorithm_name(public_key, name)}
        ),
        "signature": signature,
    }
    if unsigned_attrs:
        signer_info["unsigned_attrs"] = cms.CMSAttributes(unsigned_attrs)

    certificates = [signer_cert]
    seen = {signer_certificate_der}
    for der in extra_certificates:
        if der not in seen:
            seen.add(der)
            certificates.append(asn1_x509.Certificate.load(der))

    revocation: list[cms.RevocationInfoChoice] = [
        cms.RevocationInfoChoice({"crl": asn1_crl.CertificateList.load(der)}) for der in crls
    ]
    revocation.extend(
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
        for der in ocsp_responses
    )

    encap: dict[str, Any] = {"content_type": content_type}
    if content is not None:
        encap["content"] = content
    version = "v1"
    if any(choice.name == "other" for choice in revocation):
        version = "v5"
    elif content_type != "data":
        version = "v3"
    # asn1crypto picks the encap type from the version: ContentInfo for v1, EncapsulatedContentInfo otherwise.
    signed_data: dict[str, Any] = {
        "version": version,
        "digest_algorithms": [algos.DigestAlgorithm({"algorithm": name})],
        "encap_content_info": encap,
        "certificates": certificates,
        "signer_infos": [cms.SignerInfo(signer_info)],
    }
    if revocation:
        signed_data["crls"] = revocation
    try:
        return cms.ContentInfo({"content_type": "signed_data", "content": cms.SignedData(signed_data)})
    except (ValueError, TypeError) as exc:
        raise CryptoFailure("could not encode CMS SignedData", reason="cms_encoding_failed") from exc


def load_content_info(data: bytes) -> cms.ContentInfo:
    try:
        content_info = cms.ContentInfo.load(data)
        if content_info["content_type"].native != "signed_data":
            raise CryptoFailure("structure is not CMS SignedData", reason="not_signed_data")
        # Force a full parse so malformed input fails here rather than later.
        content_info.native
    except (ValueError, TypeError) as exc:
        raise CryptoFailure("malformed CMS structure", reason="cms_malformed") from exc
    return content_info


def _attr_value(attrs: Any, name: str) -> Any:
    if not attrs:
        return None
    for attr in attrs:
        if attr["type"].native == name:
            return attr["values"][0]
    return None


def signed_attribute(view: SignerView, name: str) -> Any:
    return _attr_value(view.signer_info["signed_attrs"], name)


def unsigned_attributes(signer_info: cms.SignerInfo, name: str) -> list[Any]:
    # Every value of every unsigned attribute of the given type, in order.
    attrs = signer_info["unsigned_attrs"]
    values: list[Any] = []
    if not attrs:
        return values
    for attr in attrs:
        if attr["type"].native == name:
            values.extend(attr["values"])
    return values


def _find_signer_certificate(signed_data: cms.SignedData, signer_info: cms.SignerInfo) -> bytes:
    sid = signer_info["sid"]
    if sid.name != "issuer_and_serial_number":
        raise CryptoFailure("unsupported signer identifier", reason="unsupported_sid")
    issuer = sid.chosen["issuer"]
    serial = sid.chosen["serial_number"].native
    for choice in signed_data["certificates"] or []:
        if choice.name != "certificate":
            continue
        cert = choice.chosen
        if cert.serial_number == serial and cert.issuer == issuer:
            return cert.dump()
    raise CryptoFailure("signer certificate missing from CMS structure", reason="signer_certificate_missing")


def signer_view(content_info: cms.ContentInfo) -> SignerView:
    signed_data = content_info["content"]
    signer_infos = signed_data["signer_infos"]
    if len(signer_infos) < 1:
        raise CryptoFailure("CMS structure carries no signer", reason="no_signer_info")
    signer_info = signer_infos[0]
    signed_attrs = signer_info["signed_attrs"]
    signed_attrs_der = None
    message_digest = None
    signing_time = None
    content_type = None
    if signed_attrs:
        # Signed attributes are signed as an explicit SET OF, not under the [0] tag.
        signed_attrs_der = b"\x31" + signed_attrs.dump()[1:]
        md = _attr_value(signed_attrs, "message_digest")
        message_digest = md.native if md is not None else None
        st = _attr_value(signed_attrs, "signing_time")
        signing_time = st.native if st is not None else None
        ct = _attr_value(signed_attrs, "content_type")
        content_type = ct.native if ct is not None else None
    return SignerView(
        content_info=content_info,
        signed_data=signed_data,
        signer_info=signer_info,
        certificate_der=_find_signer_certificate(signed_data, signer_info),
        digest_algorithm=signer_info["digest_algorithm"]["algorithm"].native,
        signature=signer_info["signature"].native,
        signed_attrs_der=signed_attrs_der,
        message_digest=message_digest,
        signing_time=signing_time,
        content_type=content_type,
    )


def verify_signer(view: SignerView) -> bool:
    # Checks the signature value only; callers compare message_digest themselves.
    if view.signed_attrs_der is None:
        return False
    public_key = load_certificate(view.certificate_der).public_key()
    return verify_bytes(public_key, view.signature, view.signed_attrs_der, view.digest_algorithm)


def embedded_certificates(signed_data: cms.SignedData) -> list[bytes]:
    return [choice.chosen.dump() for choice in signed_data["certificates"] or [] if choice.name == "certificate"]


def embedded_revocation(signed_data: cms.SignedData) -> tuple[list[bytes], list[bytes]]:
    # (CRL DERs, OCSP response DERs) carried in the revocation-info set.
    crls: list[bytes] = []
    ocsps: list[bytes] = []
    for choice in signed_data["crls"] or []:
        if choice.name == "crl":
            crls.append(choice.chosen.dump())
        elif choice.name == "other" and choice.chosen["other_rev_info_format"].native == "ocsp_response":
            ocsps.append(choice.chosen["other_rev_info"].dump())
    return crls, ocsps
