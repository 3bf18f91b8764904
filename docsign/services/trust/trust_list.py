from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any

from cryptography import x509
from lxml import etree
from signxml import XMLVerifier
from signxml.exceptions import SignXMLException

from docsign.core.errors import ValidationFailed


logger = logging.getLogger(__name__)

TSL_NS = "http://uri.etsi.org/02231/v2#"
_NS = {"tsl": TSL_NS}

SERVICE_TYPE_PREFIX = "http://uri.etsi.org/TrstSvc/Svctype/"
SERVICE_STATUS_PREFIX = "http://uri.etsi.org/TrstSvc/TrustedList/Svcstatus/"
SERVICE_INFO_EXT_PREFIX = "http://uri.etsi.org/TrstSvc/TrustedList/SvcInfoExt/"

# Statuses under which a service counts as active at a point in time.
ACTIVE_STATUSES = frozenset({"granted", "undersupervision", "accredited", "supervisionincessation"})

QC_CA_TYPE = "CA/QC"
QTST_TYPE = "TSA/QTST"


def _short(uri: str | None, prefix: str) -> str:
    if not uri:
        return ""
    uri = uri.strip()
    return uri[len(prefix):] if uri.startswith(prefix) else uri


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class QualifiedService:
    service_type: str
    name: str
    status: str
    status_starting_time: datetime | None
    certificates: tuple[bytes, ...] = ()
    # Older (status, starting time) pairs, newest first.
    history: tuple[tuple[str, datetime | None], ...] = ()
    additional_info: tuple[str, ...] = ()

    def status_at(self, at_time: datetime) -> str | None:
        if self.status_starting_time is None or self.status_starting_time <= at_time:
            return self.status
        for status, starting in self.history:
            if starting is None or starting <= at_time:
                return status
        return None

    def active_at(self, at_time: datetime) -> bool:
        return self.status_at(at_time) in ACTIVE_STATUSES

    @property
    def offered_types(self) -> list[str]:
        if self.service_type == QTST_TYPE:
            return ["qualified-timestamp"]
        if self.service_type.startswith("PSES/Q"):
            return ["qualified-preservation"]
        if self.service_type != QC_CA_TYPE:
            return [self.service_type]
        offered = []
        if "ForeSignatures" in self.additional_info or not self.additional_info:
            offered.append("qualified-cert-for-signatures")
        if "ForeSeals" in self.additional_info or not self.additional_info:
            offered.append("qualified-cert-for-seals")
        return offered

    def to_dict(self) -> dict[str, Any]:
        return {
            "service_type": self.service_type,
            "name": self.name,
            "status": self.status,
            "status_starting_time": _iso(self.status_starting_time),
            "certificates": [base64.b64encode(der).decode("ascii") for der in self.certificates],
            "history": [[status, _iso(starting)] for status, starting in self.history],
            "additional_info": list(self.additional_info),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "QualifiedService":
        return cls(
            service_type=str(raw.get("service_type") or ""),
            name=str(raw.get("name") or ""),
            status=str(raw.get("status") or ""),
            status_starting_time=_parse_time(raw.get("status_starting_time")),
            certificates=tuple(base64.b64decode(item) for item in raw.get("certificates") or []),
            history=tuple((str(item[0]), _parse_time(item[1])) for item in raw.get("history") or []),
            additional_info=tuple(raw.get("additional_info") or []),
        )


@dataclass(frozen=True)
class QualifiedProvider:
    territory: str
    provider_id: str
    trade_name: str | None = None
    services: tuple[QualifiedService, ...] = ()

    @property
    def service_types(self) -> list[str]:
        offered: list[str] = []
        for service in self.services:
            for name in service.offered_types:
                if name not in offered:
                    offered.append(name)
        return offered

    def supervision_status(self, at_time: datetime) -> str:
        statuses = {service.status_at(at_time) for service in self.services}
        return "active" if statuses & ACTIVE_STATUSES else "inactive"

    def to_dict(self) -> dict[str, Any]:
        return {
            "territory": self.territory,
            "provider_id": self.provider_id,
            "trade_name": self.trade_name,
            "services": [service.to_dict() for service in self.services],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "QualifiedProvider":
        return cls(
            territory=str(raw.get("territory") or "").upper(),
            provider_id=str(raw.get("provider_id") or ""),
            trade_name=raw.get("trade_name"),
            services=tuple(QualifiedService.from_dict(item) for item in raw.get("services") or []),
        )


@dataclass(frozen=True)
class TrustList:
    territory: str
    sequence_number: int
    issued_at: datetime | None
    next_update: datetime | None
    providers: tuple[QualifiedProvider, ...] = field(default_factory=tuple)
    source_url: str | None = None

    def is_stale(self, now: datetime) -> bool:
        return self.next_update is not None and now > self.next_update

    def certificates_for(self, service_type: str) -> list[bytes]:
        found: list[bytes] = []
        for provider in self.providers:
            for service in provider.services:
                if service.service_type == service_type:
                    found.extend(service.certificates)
        return found


def _text(node: etree._Element, path: str) -> str | None:
    found = node.find(path, _NS)
    if found is None or found.text is None:
        return None
    return found.text.strip()


def _first_name(node: etree._Element, path: str) -> str | None:
    # Multilingual names; take the first one listed.
    return _text(node, f"{path}/tsl:Name")


def _certificates(node: etree._Element) -> tuple[bytes, ...]:
    ders: list[bytes] = []
    for element in node.iterfind("tsl:ServiceDigitalIdentity/tsl:DigitalId/tsl:X509Certificate", _NS):
        if not element.text:
            continue
        der = base64.b64decode("".join(element.text.split()))
        x509.load_der_x509_certificate(der)
        ders.append(der)
    return tuple(ders)


def _additional_info(info: etree._Element) -> tuple[str, ...]:
    uris = []
    for element in info.iterfind(
        "tsl:ServiceInformationExtensions/tsl:Extension/tsl:AdditionalServiceInformation/tsl:URI", _NS
    ):
        if element.text:
            uris.append(_short(element.text, SERVICE_INFO_EXT_PREFIX))
    return tuple(uris)


def _parse_service(node: etree._Element) -> QualifiedService:
    info = node.find("tsl:ServiceInformation", _NS)
    if info is None:
        raise ValidationFailed("trust service without ServiceInformation", reason="trust_list_malformed")
    history = []
    for instance in node.iterfind("tsl:ServiceHistory/tsl:ServiceHistoryInstance", _NS):
        history.append(
            (
                _short(_text(instance, "tsl:ServiceStatus"), SERVICE_STATUS_PREFIX),
                _parse_time(_text(instance, "tsl:StatusStartingTime")),
            )
        )
    history.sort(key=lambda item: item[1] or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
    return QualifiedService(
        service_type=_short(_text(info, "tsl:ServiceTypeIdentifier"), SERVICE_TYPE_PREFIX),
        name=_first_name(info, "tsl:ServiceName") or "",
        status=_short(_text(info, "tsl:ServiceStatus"), SERVICE_STATUS_PREFIX),
        status_starting_time=_parse_time(_text(info, "tsl:StatusStartingTime")),
        certificates=_certificates(info),
        history=tuple(history),
        additional_info=_additional_info(info),
    )


def parse_trust_list(
    data: bytes,
    *,
    territory: str | None = None,
    source_url: str | None = None,
    signing_cert_pem: str | None = None,
) -> TrustList:
    """Parse an ETSI TS 119 612 trusted list.

    When ``signing_cert_pem`` is given the enveloped XML signature must verify
    against it and only the signed content is read.
    """
    parser = etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=False)
    try:
        root = etree.fromstring(data, parser=parser)
        if signing_cert_pem:
            result = XMLVerifier().verify(root, x509_cert=signing_cert_pem)
            if result.signed_xml is None:
                raise ValidationFailed("trust list signature covers no XML", reason="trust_list_signature_invalid")
            root = result.signed_xml
    except etree.XMLSyntaxError as exc:
        raise ValidationFailed(f"trust list is not well-formed XML: {exc}", reason="trust_list_malformed") from exc
    except SignXMLException as exc:
        raise ValidationFailed(f"trust list signature invalid: {exc}", reason="trust_list_signature_invalid") from exc

    if etree.QName(root).localname != "TrustServiceStatusList" or etree.QName(root).namespace != TSL_NS:
        raise ValidationFailed("not a TrustServiceStatusList document", reason="trust_list_malformed")
    scheme = root.find("tsl:SchemeInformation", _NS)
    if scheme is None:
        raise ValidationFailed("trust list without SchemeInformation", reason="trust_list_malformed")
    listed_territory = (_text(scheme, "tsl:SchemeTerritory") or territory or "").upper()
    if territory and listed_territory != territory.upper():
        raise ValidationFailed(
            f"trust list territory {listed_territory} does not match {territory}", reason="trust_list_territory"
        )
    try:
        sequence = int(_text(scheme, "tsl:TSLSequenceNumber") or "0")
        issued_at = _parse_time(_text(scheme, "tsl:ListIssueDateTime"))
        next_update = _parse_time(_text(scheme, "tsl:NextUpdate/tsl:dateTime"))
        providers = []
        for node in root.iterfind("tsl:TrustServiceProviderList/tsl:TrustServiceProvider", _NS):
            provider_id = _first_name(node, "tsl:TSPInformation/tsl:TSPName")
            if not provider_id:
                raise ValidationFailed("trust service provider without name", reason="trust_list_malformed")
            providers.append(
                QualifiedProvider(
                    territory=listed_territory,
                    provider_id=provider_id,
                    trade_name=_first_name(node, "tsl:TSPInformation/tsl:TSPTradeName"),
                    services=tuple(
                        _parse_service(service) for service in node.iterfind("tsl:TSPServices/tsl:TSPService", _NS)
                    ),
                )
            )
    except ValueError as exc:
        raise ValidationFailed(f"trust list field invalid: {exc}", reason="trust_list_malformed") from exc
    logger.info(
        "trust_list_parsed territory=%s sequence=%s providers=%s", listed_territory, sequence, len(providers)
    )
    return TrustList(
        territory=listed_territory,
        sequence_number=sequence,
        issued_at=issued_at,
        next_update=next_update,
        providers=tuple(providers),
        source_url=source_url,
    )
