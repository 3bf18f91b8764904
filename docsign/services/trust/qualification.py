from __future__ import annotations

from dataclasses import dataclass, field

from asn1crypto import core
from cryptography import x509
from cryptography.x509.oid import NameOID, ObjectIdentifier


QC_STATEMENTS_OID = ObjectIdentifier("1.3.6.1.5.5.7.1.3")

# ETSI EN 319 412-5 statement identifiers.
QC_COMPLIANCE = "0.4.0.1862.1.1"
QC_SSCD = "0.4.0.1862.1.4"
QC_TYPE = "0.4.0.1862.1.6"
QC_TYPE_NAMES = {
    "0.4.0.1862.1.6.1": "esign",
    "0.4.0.1862.1.6.2": "eseal",
    "0.4.0.1862.1.6.3": "web",
}
QC_STATEMENT_NAMES = {
    QC_COMPLIANCE: "QcCompliance",
    QC_SSCD: "QcSSCD",
    QC_TYPE: "QcType",
    "0.4.0.1862.1.5": "QcPDS",
    "0.4.0.1862.1.2": "QcLimitValue",
    "0.4.0.1862.1.3": "QcRetentionPeriod",
}


class QcStatement(core.Sequence):
    _fields = [
        ("statement_id", core.ObjectIdentifier),
        ("statement_info", core.Any, {"optional": True}),
    ]


class QcStatements(core.SequenceOf):
    _child_spec = QcStatement


class QcTypes(core.SequenceOf):
    _child_spec = core.ObjectIdentifier


@dataclass(frozen=True)
class QcProfile:
    statements: list[str] = field(default_factory=list)
    qc_types: list[str] = field(default_factory=list)

    @property
    def compliant(self) -> bool:
        return "QcCompliance" in self.statements

    @property
    def sscd(self) -> bool:
        return "QcSSCD" in self.statements


def parse_qc_statements(cert: x509.Certificate) -> QcProfile:
    # cryptography leaves qcStatements unparsed; decode the raw extension value.
    try:
        extension = cert.extensions.get_extension_for_oid(QC_STATEMENTS_OID)
    except x509.ExtensionNotFound:
        return QcProfile()
    raw = getattr(extension.value, "value", None)
    if not isinstance(raw, bytes):
        return QcProfile()
    statements: list[str] = []
    qc_types: list[str] = []
    try:
        parsed = QcStatements.load(raw)
        for statement in parsed:
            oid = statement["statement_id"].dotted
            statements.append(QC_STATEMENT_NAMES.get(oid, oid))
            info = statement["statement_info"]
            if oid == QC_TYPE and info.native is not None:
                for type_oid in QcTypes.load(info.dump()):
                    qc_types.append(QC_TYPE_NAMES.get(type_oid.dotted, type_oid.dotted))
    except (ValueError, TypeError):
        return QcProfile(statements=["malformed"])
    return QcProfile(statements=statements, qc_types=qc_types)


def issuer_territory(cert: x509.Certificate) -> str | None:
    countries = cert.issuer.get_attributes_for_oid(NameOID.COUNTRY_NAME)
    if not countries:
        return None
    value = countries[0].value
    return value.upper() if isinstance(value, str) else None
