from __future__ import annotations

import asyncio
import copy
from datetime import datetime, timezone
import logging
from typing import Any

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from lxml import etree
from signxml import CanonicalizationMethod, DigestAlgorithm, SignatureConstructionMethod, SignatureMethod
from signxml.exceptions import SignXMLException
from signxml.xades import XAdESDataObjectFormat, XAdESSignatureConfiguration, XAdESSigner, XAdESVerifier

from docsign.core.errors import CryptoFailure
from docsign.services.crypto import cms as cms_utils
from docsign.services.crypto import digests
from docsign.services.crypto.utils import b64decode_str, b64encode_bytes
from docsign.services.signatures.envelopes.base import IntegrityCheck, ParsedEnvelope
from docsign.services.signatures.keys import KeyHandle


logger = logging.getLogger(__name__)

DS_NS = "http://www.w3.org/2000/09/xmldsig#"
XADES_NS = "http://uri.etsi.org/01903/v1.3.2#"
XADES141_NS = "http://uri.etsi.org/01903/v1.4.1#"
MANIFEST_NS = "urn:docsign:manifest"
_NS = {"ds": DS_NS, "xades": XADES_NS, "xades141": XADES141_NS, "dm": MANIFEST_NS}

_EXC_C14N = CanonicalizationMethod.EXCLUSIVE_XML_CANONICALIZATION_1_0
# SignedInfo and the XAdES SignedProperties reference; exclusive C14N breaks the latter.
_SIGNED_INFO_C14N = CanonicalizationMethod.CANONICAL_XML_1_1
_DIGEST_METHODS = {
    "sha256": DigestAlgorithm.SHA256,
    "sha384": DigestAlgorithm.SHA384,
    "sha512": DigestAlgorithm.SHA512,
}
_SIGNATURE_METHODS = {
    ("rsa", "sha256"): SignatureMethod.RSA_SHA256,
    ("rsa", "sha384"): SignatureMethod.RSA_SHA384,
    ("rsa", "sha512"): SignatureMethod.RSA_SHA512,
    ("ecdsa", "sha256"): SignatureMethod.ECDSA_SHA256,
    ("ecdsa", "sha384"): SignatureMethod.ECDSA_SHA384,
    ("ecdsa", "sha512"): SignatureMethod.ECDSA_SHA512,
}
_URI_TO_DIGEST = {uri: name for name, uri in digests.XML_DIGEST_URIS.items()}


def _parser() -> etree.XMLParser:
    return etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=False)


def _q(prefix: str, local: str) -> str:
    return f"{{{_NS[prefix]}}}{local}"


def _c14n(node: etree._Element) -> bytes:
    return etree.tostring(node, method="c14n", exclusive=True, with_comments=False)


def canonical_document(document: bytes) -> tuple[bytes, str]:
    # XML input is digested in canonical form; anything else as raw bytes.
    try:
        root = etree.fromstring(document, parser=_parser())
    except (etree.XMLSyntaxError, ValueError):
        return document, "raw"
    return etree.tostring(root.getroottree(), method="c14n", exclusive=True), "c14n"


class _DeviceKey:
    """Synchronous private-key facade that signxml can call from a worker thread.

    Each ``sign`` call is handed back to the event loop that owns the
    KeyHandle, so remote devices keep using their async client.
    """

    def __init__(self, handle: KeyHandle, digest_algorithm: str, loop: asyncio.AbstractEventLoop) -> None:
        self._handle = handle
        self._digest_algorithm = digest_algorithm
        self._loop = loop

    def public_key(self) -> Any:
        return self._handle.public_key()

    @property
    def key_size(self) -> int:
        return self.public_key().key_size

    @property
    def curve(self) -> Any:
        return self.public_key().curve

    def sign(self, data: bytes, *args: Any, **kwargs: Any) -> bytes:
        future = asyncio.run_coroutine_threadsafe(self._handle.sign(data, self._digest_algorithm), self._loop)
        return future.result()


class _RecordSigner(XAdESSigner):
    def __init__(self, signing_time: datetime, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._signing_time = signing_time

    def add_signing_time(self, signed_signature_properties, sig_root, signing_settings):
        node = etree.SubElement(signed_signature_properties, _q("xades", "SigningTime"))
        node.text = self._signing_time.astimezone(timezone.utc).replace(microsecond=0).isoformat()


def _signature_method(public_key: Any, digest_algorithm: str) -> SignatureMethod:
    if isinstance(public_key, rsa.RSAPublicKey):
        family = "rsa"
    elif isinstance(public_key, ec.EllipticCurvePublicKey):
        family = "ecdsa"
    else:
        raise CryptoFailure("unsupported signer key type", reason="unsupported_key_type")
    return _SIGNATURE_METHODS[(family, digest_algorithm)]


def _load(envelope: bytes) -> etree._Element:
    try:
        root = etree.fromstring(envelope, parser=_parser())
    except (etree.XMLSyntaxError, ValueError) as exc:
        raise CryptoFailure("XML signature is not well-formed", reason="xml_malformed") from exc
    if root.tag != _q("ds", "Signature"):
        raise CryptoFailure("XML envelope root is not ds:Signature", reason="xml_malformed")
    return root


def _require(node: etree._Element, path: str) -> etree._Element:
    found = node.find(path, _NS)
    if found is None:
        raise CryptoFailure(f"XML signature lacks {path}", reason="xml_malformed")
    return found


def _unsigned_container(root: etree._Element, *, create: bool) -> etree._Element | None:
    qualifying = _require(root, "ds:Object/xades:QualifyingProperties")
    unsigned = qualifying.find("xades:UnsignedProperties", _NS)
    if unsigned is None:
        if not create:
            return None
        unsigned = etree.SubElement(qualifying, _q("xades", "UnsignedProperties"))
    container = unsigned.find("xades:UnsignedSignatureProperties", _NS)
    if container is None and create:
        container = etree.SubElement(unsigned, _q("xades", "UnsignedSignatureProperties"))
    return container


def _encapsulated_timestamp(parent: etree._Element, tag: str, token_der: bytes) -> None:
    node = etree.SubElement(parent, tag)
    etree.SubElement(node, _q("ds", "CanonicalizationMethod"), Algorithm=_EXC_C14N.value)
    encapsulated = etree.SubElement(node, _q("xades", "EncapsulatedTimeStamp"))
    encapsulated.text = b64encode_bytes(token_der)


def _texts(node: etree._Element | None, path: str) -> list[bytes]:
    if node is None:
        return []
    return [b64decode_str("".join((item.text or "").split())) for item in node.findall(path, _NS)]


def _archive_base(root: etree._Element) -> list[bytes]:
    parts = [_c14n(_require(root, "ds:SignedInfo")), _c14n(_require(root, "ds:SignatureValue"))]
    parts.append(_c14n(_require(root, "ds:KeyInfo")))
    for obj in root.findall("ds:Object", _NS):
        if obj.find("xades:QualifyingProperties", _NS) is None:
            parts.append(_c14n(obj))
    return parts


class XmlEnvelope:
    """Enveloping XAdES signature over a digest manifest.

    The signed ds:Object holds ``dm:DocumentDigest``: the digest of the
    canonical form of the document (or of its raw bytes when it is not XML).
    Timestamps and validation data go into xades:UnsignedSignatureProperties
    in application order.
    """

    envelope_format = "xml"

    def digest(self, document: bytes, digest_algorithm: str) -> bytes:
        material, _ = canonical_document(document)
        return digests.digest(material, digest_algorithm)

    async def sign(
        self, document: bytes, key: KeyHandle, *, digest_algorithm: str, signing_time: datetime
    ) -> bytes:
        name = digests.normalize(digest_algorithm)
        material, mode = canonical_document(document)
        manifest = etree.Element(
            _q("dm", "DocumentDigest"),
            nsmap={"dm": MANIFEST_NS},
            Algorithm=digests.XML_DIGEST_URIS[name],
            Canonicalization=mode,
        )
        manifest.text = b64encode_bytes(digests.digest(material, name))
        signer = _RecordSigner(
            signing_time,
            method=SignatureConstructionMethod.enveloping,
            signature_algorithm=_signature_method(key.public_key(), name),
            digest_algorithm=_DIGEST_METHODS[name],
            c14n_algorithm=_SIGNED_INFO_C14N,
            data_object_format=XAdESDataObjectFormat(Description="Document digest manifest", MimeType="text/xml"),
        )
        cert_pem = cms_utils.load_certificate(key.certificate_der).public_bytes(serialization.Encoding.PEM)
        device = _DeviceKey(key, name, asyncio.get_running_loop())
        try:
            signed = await asyncio.to_thread(signer.sign, manifest, key=device, cert=cert_pem.decode("ascii"))
        except SignXMLException as exc:
            raise CryptoFailure(f"XML signature creation failed: {exc}", reason="xml_sign_failed") from exc
        logger.debug("xades_signed key_ref=%s digest=%s mode=%s", key.key_ref, name, mode)
        return etree.tostring(signed)

    def _append(self, envelope: bytes, build) -> bytes:
        root = _load(envelope)
        container = _unsigned_container(root, create=True)
        build(container)
        return etree.tostring(root)

    def add_signature_timestamp(self, envelope: bytes, token_der: bytes) -> bytes:
        return self._append(
            envelope, lambda container: _encapsulated_timestamp(container, _q("xades", "SignatureTimeStamp"), token_der)
        )

    def add_validation_data(
        self, envelope: bytes, *, certificates: list[bytes], ocsp_responses: list[bytes], crls: list[bytes]
    ) -> bytes:
        def build(container: etree._Element) -> None:
            if certificates:
                values = etree.SubElement(container, _q("xades", "CertificateValues"))
                for der in certificates:
                    etree.SubElement(values, _q("xades", "EncapsulatedX509Certificate")).text = b64encode_bytes(der)
            if crls or ocsp_responses:
                revocation = etree.SubElement(container, _q("xades", "RevocationValues"))
                # Schema order: CRLValues before OCSPValues, neither may be empty.
                if crls:
                    crl_values = etree.SubElement(revocation, _q("xades", "CRLValues"))
                    for der in crls:
                        etree.SubElement(crl_values, _q("xades", "EncapsulatedCRLValue")).text = b64encode_bytes(der)
                if ocsp_responses:
                    ocsp_values = etree.SubElement(revocation, _q("xades", "OCSPValues"))
                    for der in ocsp_responses:
                        etree.SubElement(ocsp_values, _q("xades", "EncapsulatedOCSPValue")).text = b64encode_bytes(
                            der
                        )

        return self._append(envelope, build)

    def archive_material(self, envelope: bytes) -> bytes:
        root = _load(envelope)
        container = _unsigned_container(root, create=False)
        parts = _archive_base(root)
        if container is not None:
            parts.extend(_c14n(child) for child in container)
        return b"".join(parts)

    def add_archive_timestamp(self, envelope: bytes, token_der: bytes) -> bytes:
        return self._append(
            envelope,
            lambda container: _encapsulated_timestamp(container, _q("xades141", "ArchiveTimeStamp"), token_der),
        )

    def parse(self, envelope: bytes) -> ParsedEnvelope:
        root = _load(envelope)
        cert_text = _require(root, "ds:KeyInfo/ds:X509Data/ds:X509Certificate").text or ""
        signer_der = b64decode_str("".join(cert_text.split()))
        manifest = _require(root, "ds:Object/dm:DocumentDigest")
        digest_algorithm = _URI_TO_DIGEST.get(manifest.get("Algorithm") or "")
        if digest_algorithm is None:
            raise CryptoFailure("manifest digest algorithm unknown", reason="xml_malformed")
        signing_time = None
        time_node = root.find(
            "ds:Object/xades:QualifyingProperties/xades:SignedProperties/"
            "xades:SignedSignatureProperties/xades:SigningTime",
            _NS,
        )
        if time_node is not None and time_node.text:
            try:
                signing_time = datetime.fromisoformat(time_node.text.strip().replace("Z", "+00:00"))
            except ValueError as exc:
                raise CryptoFailure("SigningTime is not a valid dateTime", reason="xml_malformed") from exc
        container = _unsigned_container(root, create=False)
        base = _archive_base(root)
        signature_timestamps: list[bytes] = []
        archive_timestamps: list[bytes] = []
        archive_materials: list[bytes] = []
        preceding: list[bytes] = []
        covered = True
        for child in container if container is not None else []:
            if child.tag == _q("xades", "SignatureTimeStamp"):
                signature_timestamps.extend(_texts(child, "xades:EncapsulatedTimeStamp"))
            elif child.tag == _q("xades141", "ArchiveTimeStamp"):
                archive_timestamps.extend(_texts(child, "xades:EncapsulatedTimeStamp"))
                archive_materials.append(b"".join(base + preceding))
                covered = True
            elif child.tag in (_q("xades", "CertificateValues"), _q("xades", "RevocationValues")):
                covered = not archive_timestamps
            preceding.append(_c14n(child))
        return ParsedEnvelope(
            envelope_format=self.envelope_format,
            signer_certificate_der=signer_der,
            digest_algorithm=digest_algorithm,
            signing_time=signing_time,
            signature_material=_c14n(_require(root, "ds:SignatureValue")),
            signature_timestamps=signature_timestamps,
            archive_timestamps=archive_timestamps,
            archive_materials=archive_materials,
            archive_covers_validation_data=covered,
            certificates=_texts(container, "xades:CertificateValues/xades:EncapsulatedX509Certificate"),
            ocsp_responses=_texts(
                container, "xades:RevocationValues/xades:OCSPValues/xades:EncapsulatedOCSPValue"
            ),
            crls=_texts(container, "xades:RevocationValues/xades:CRLValues/xades:EncapsulatedCRLValue"),
        )

    def verify_bytes(self, parsed: ParsedEnvelope, envelope: bytes, document: bytes) -> IntegrityCheck:
        try:
            signed_copy = copy.deepcopy(_load(envelope))
        except CryptoFailure as exc:
            return IntegrityCheck(False, False, [exc.reason or "xml_malformed"])
        # SignedInfo does not reference the unsigned properties; parse() covers them.
        qualifying = signed_copy.find("ds:Object/xades:QualifyingProperties", _NS)
        unsigned = qualifying.find("xades:UnsignedProperties", _NS) if qualifying is not None else None
        if unsigned is not None:
            qualifying.remove(unsigned)
        cert_pem = cms_utils.load_certificate(parsed.signer_certificate_der).public_bytes(serialization.Encoding.PEM)
        try:
            results = XAdESVerifier().verify(
                signed_copy,
                x509_cert=cert_pem.decode("ascii"),
                expect_config=XAdESSignatureConfiguration(),
            )
        except (SignXMLException, ValueError) as exc:
            logger.info("xades_verify_failed error=%s", exc)
            return IntegrityCheck(False, False, ["signature_value_invalid"])
        manifest = None
        for result in results:
            if result.signed_xml is not None:
                manifest = next(result.signed_xml.iter(_q("dm", "DocumentDigest")), None)
                if manifest is not None:
                    break
        if manifest is None:
            return IntegrityCheck(False, True, ["manifest_missing"])
        algorithm = _URI_TO_DIGEST.get(manifest.get("Algorithm") or "", parsed.digest_algorithm)
        material, mode = canonical_document(document)
        expected = b64decode_str("".join((manifest.text or "").split()))
        if mode != manifest.get("Canonicalization") or digests.digest(material, algorithm) != expected:
            return IntegrityCheck(False, True, ["message_digest_mismatch"])
        return IntegrityCheck(True, True, [])
