from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Iterable

from asn1crypto import core
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from docsign.core.errors import DependencyUnavailable
from docsign.services.signatures.keys import LocalKeyHandle
from docsign.services.trust.qualification import (
    QC_COMPLIANCE,
    QC_STATEMENTS_OID,
    QC_TYPE,
    QcStatement,
    QcStatements,
    QcTypes,
)


ROOT_CRL_URL = "http://crl.test/root.crl"
ESIGN_QC_TYPE = "0.4.0.1862.1.6.1"


def _utc_now() -> datetime:
    # Second precision keeps certificate validity aligned with signing times.
    return datetime.now(timezone.utc).replace(microsecond=0)


@dataclass(frozen=True)
class Issued:
    key: ec.EllipticCurvePrivateKey
    cert: x509.Certificate

    @property
    def der(self) -> bytes:
        return self.cert.public_bytes(serialization.Encoding.DER)

    @property
    def pem(self) -> str:
        return self.cert.public_bytes(serialization.Encoding.PEM).decode("ascii")

    @property
    def serial(self) -> int:
        return self.cert.serial_number

    def handle(self, key_ref: str = "platform", chain: Iterable[bytes] = ()) -> LocalKeyHandle:
        return LocalKeyHandle(key_ref=key_ref, private_key=self.key, certificate_der=self.der, chain=tuple(chain))


def _name(common_name: str, country: str) -> x509.Name:
    return x509.Name(
        [
            x509.NameAttribute(NameOID.COUNTRY_NAME, country),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Docsign Test"),
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ]
    )


def qc_statements_der(*, compliant: bool = True, qc_types: Iterable[str] = ()) -> bytes:
    statements = []
    if compliant:
        statements.append(QcStatement({"statement_id": QC_COMPLIANCE}))
    types = list(qc_types)
    if types:
        statements.append(
            QcStatement({"statement_id": QC_TYPE, "statement_info": core.Any.load(QcTypes(types).dump())})
        )
    return QcStatements(statements).dump()


def make_ca(
    common_name: str = "Docsign Test Root CA",
    *,
    country: str = "DE",
    issuer: Issued | None = None,
    path_length: int | None = None,
    not_before: datetime | None = None,
    not_after: datetime | None = None,
    crl_url: str | None = None,
    key: ec.EllipticCurvePrivateKey | None = None,
) -> Issued:
    # Self-signed unless an issuer is given.
    key = key or ec.generate_private_key(ec.SECP256R1())
    now = _utc_now()
    subject = _name(common_name, country)
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer.cert.subject if issuer else subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or now - timedelta(days=30))
        .not_valid_after(not_after or now + timedelta(days=3650))
        .add_extension(x509.BasicConstraints(ca=True, path_length=path_length), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=False,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
    )
    if crl_url:
        builder = builder.add_extension(_crl_points(crl_url), critical=False)
    signing_key = issuer.key if issuer else key
    return Issued(key, builder.sign(signing_key, hashes.SHA256()))


def _crl_points(url: str) -> x509.CRLDistributionPoints:
    return x509.CRLDistributionPoints(
        [
            x509.DistributionPoint(
                full_name=[x509.UniformResourceIdentifier(url)], relative_name=None, reasons=None, crl_issuer=None
            )
        ]
    )


def make_leaf(
    issuer: Issued,
    common_name: str,
    *,
    country: str = "DE",
    timestamping: bool = False,
    crl_url: str | None = ROOT_CRL_URL,
    qc_statements: bytes | None = None,
    not_before: datetime | None = None,
    not_after: datetime | None = None,
) -> Issued:
    key = ec.generate_private_key(ec.SECP256R1())
    now = _utc_now()
    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(common_name, country))
        .issuer_name(issuer.cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or now - timedelta(days=1))
        .not_valid_after(not_after or now + timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=not timestamping,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
    )
    if timestamping:
        builder = builder.add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.TIME_STAMPING]), critical=True)
    if crl_url:
        builder = builder.add_extension(_crl_points(crl_url), critical=False)
    if qc_statements is not None:
        builder = builder.add_extension(x509.UnrecognizedExtension(QC_STATEMENTS_OID, qc_statements), critical=False)
    return Issued(key, builder.sign(issuer.key, hashes.SHA256()))


def make_crl(
    issuer: Issued,
    *,
    revoked: Iterable[tuple[int, datetime]] = (),
    last_update: datetime | None = None,
    next_update: datetime | None = None,
) -> bytes:
    now = _utc_now()
    builder = (
        x509.CertificateRevocationListBuilder()
        .issuer_name(issuer.cert.subject)
        .last_update(last_update or now - timedelta(days=1))
        .next_update(next_update or now + timedelta(days=7))
    )
    for serial, when in revoked:
        builder = builder.add_revoked_certificate(
            x509.RevokedCertificateBuilder().serial_number(serial).revocation_date(when).build()
        )
    return builder.sign(issuer.key, hashes.SHA256()).public_bytes(serialization.Encoding.DER)


class StaticRevocationSource:
    """Serves canned CRLs by URL; OCSP is never offered."""

    def __init__(self, crls: dict[str, bytes] | None = None, *, unavailable: bool = False) -> None:
        self.crls = dict(crls or {})
        self.unavailable = unavailable
        self.crl_fetches: list[str] = []

    async def fetch_ocsp(self, url: str, request_der: bytes) -> bytes:
        raise DependencyUnavailable(f"no OCSP responder at {url}", reason="revocation_unavailable")

    async def fetch_crl(self, url: str) -> bytes:
        self.crl_fetches.append(url)
        if self.unavailable or url not in self.crls:
            raise DependencyUnavailable(f"crl unavailable at {url}", reason="revocation_unavailable")
        return self.crls[url]


@dataclass(frozen=True)
class TestPki:
    __test__ = False

    root: Issued
    signer: Issued
    tsa: Issued
    qualified_signer: Issued
    crl_der: bytes

    def revocation_source(self) -> StaticRevocationSource:
        return StaticRevocationSource({ROOT_CRL_URL: self.crl_der})


@lru_cache(maxsize=1)
def default_pki() -> TestPki:
    # Built once per test session; every certificate chains to the same root.
    root = make_ca()
    return TestPki(
        root=root,
        signer=make_leaf(root, "Alice Signer"),
        tsa=make_leaf(root, "Docsign Test TSA", timestamping=True),
        qualified_signer=make_leaf(
            root, "Quentin Qualified", qc_statements=qc_statements_der(qc_types=[ESIGN_QC_TYPE])
        ),
        crl_der=make_crl(root),
    )
