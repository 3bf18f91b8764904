from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from lxml import etree
from signxml import SignatureMethod, XMLSigner, methods

from docsign.services.trust.trust_list import SERVICE_STATUS_PREFIX, SERVICE_TYPE_PREFIX, TSL_NS
from docsign.tests.utils.pki import Issued


@dataclass
class ServiceSpec:
    certificates: list[bytes]
    service_type: str = "CA/QC"
    name: str = "Qualified certificates for signatures"
    status: str = "granted"
    starting: datetime | None = None
    # (status, starting time) pairs for ServiceHistory.
    history: list[tuple[str, datetime]] = field(default_factory=list)


@dataclass
class ProviderSpec:
    name: str
    services: list[ServiceSpec]


def _el(parent: etree._Element, tag: str, text: str | None = None) -> etree._Element:
    node = etree.SubElement(parent, f"{{{TSL_NS}}}{tag}")
    if text is not None:
        node.text = text
    return node


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _named(parent: etree._Element, tag: str, name: str) -> None:
    holder = _el(parent, tag)
    node = _el(holder, "Name", name)
    node.set("{http://www.w3.org/XML/1998/namespace}lang", "en")


def build_trust_list_tree(
    territory: str,
    providers: list[ProviderSpec],
    *,
    sequence: int = 1,
    issued_at: datetime | None = None,
    next_update: datetime | None = None,
) -> etree._Element:
    now = datetime.now(timezone.utc)
    root = etree.Element(f"{{{TSL_NS}}}TrustServiceStatusList", nsmap={None: TSL_NS})
    root.set("Id", "TrustServiceStatusList")
    scheme = _el(root, "SchemeInformation")
    _el(scheme, "TSLVersionIdentifier", "5")
    _el(scheme, "TSLSequenceNumber", str(sequence))
    _el(scheme, "SchemeTerritory", territory)
    _el(scheme, "ListIssueDateTime", _iso(issued_at or now - timedelta(days=1)))
    _el(_el(scheme, "NextUpdate"), "dateTime", _iso(next_update or now + timedelta(days=180)))
    provider_list = _el(root, "TrustServiceProviderList")
    for provider in providers:
        node = _el(provider_list, "TrustServiceProvider")
        _named(_el(node, "TSPInformation"), "TSPName", provider.name)
        services = _el(node, "TSPServices")
        for entry in provider.services:
            service_node = _el(services, "TSPService")
            info = _el(service_node, "ServiceInformation")
            _el(info, "ServiceTypeIdentifier", SERVICE_TYPE_PREFIX + entry.service_type)
            _named(info, "ServiceName", entry.name)
            identity = _el(info, "ServiceDigitalIdentity")
            for der in entry.certificates:
                _el(_el(identity, "DigitalId"), "X509Certificate", base64.b64encode(der).decode("ascii"))
            _el(info, "ServiceStatus", SERVICE_STATUS_PREFIX + entry.status)
            _el(info, "StatusStartingTime", _iso(entry.starting or now - timedelta(days=365)))
            if entry.history:
                history = _el(service_node, "ServiceHistory")
                for status, starting in entry.history:
                    instance = _el(history, "ServiceHistoryInstance")
                    _el(instance, "ServiceStatus", SERVICE_STATUS_PREFIX + status)
                    _el(instance, "StatusStartingTime", _iso(starting))
    return root


def build_trust_list(territory: str, providers: list[ProviderSpec], **kwargs) -> bytes:
    return etree.tostring(build_trust_list_tree(territory, providers, **kwargs), xml_declaration=True, encoding="UTF-8")


def sign_trust_list(tree: etree._Element, operator: Issued) -> bytes:
    # Enveloped XMLDSig by the scheme operator, as published lists carry.
    signer = XMLSigner(
        method=methods.enveloped,
        signature_algorithm=SignatureMethod.ECDSA_SHA256,
        digest_algorithm="sha256",
    )
    signed = signer.sign(tree, key=operator.key, cert=operator.pem)
    return etree.tostring(signed, xml_declaration=True, encoding="UTF-8")
