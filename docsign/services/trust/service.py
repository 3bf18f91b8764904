from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
import time
from typing import Any, Callable, Iterable

from cryptography import x509
from cryptography.exceptions import InvalidSignature
import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from docsign.core.config import get_settings
from docsign.core.errors import DependencyUnavailable, ValidationFailed
from docsign.domain.models import utc_now
from docsign.persistence.repos import trust as trust_repo
from docsign.services.crypto import cms as cms_utils
from docsign.services.crypto.utils import b64encode_bytes
from docsign.services.resilience import RetryPolicy, retry_async
from docsign.services.telemetry import increment_counter, record_external_call, set_gauge
from docsign.services.trust.paths import PathResult, build_path, fingerprint
from docsign.services.trust.qualification import QcProfile, issuer_territory, parse_qc_statements
from docsign.services.trust.recognition import Recognition, recognize_cross_border
from docsign.services.trust.revocation import RevocationChecker, RevocationEvidence, RevocationResult
from docsign.services.trust.trust_list import (
    QC_CA_TYPE,
    QTST_TYPE,
    QualifiedProvider,
    QualifiedService,
    TrustList,
    parse_trust_list,
)


logger = logging.getLogger(__name__)

# Service type offered by a CA/QC service for each QcType.
_QC_TYPE_SERVICE = {
    "esign": "qualified-cert-for-signatures",
    "eseal": "qualified-cert-for-seals",
}


@dataclass(frozen=True)
class Qualification:
    qualified: bool
    qc_statements: list[str]
    qc_types: list[str]
    # "active" | "inactive" | "not_listed"
    qtsp_status: str
    territory: str | None
    provider: str | None = None
    warnings: list[str] = field(default_factory=list)


def load_anchor_ders(pem: str | None) -> list[bytes]:
    if not pem or not pem.strip():
        return []
    return [cms_utils.certificate_der(cert) for cert in x509.load_pem_x509_certificates(pem.encode("utf-8"))]


def _issued_by(child: x509.Certificate, issuer_der: bytes) -> bool:
    issuer = cms_utils.load_certificate(issuer_der)
    if child.issuer != issuer.subject:
        return False
    try:
        child.verify_directly_issued_by(issuer)
    except (ValueError, TypeError, InvalidSignature):
        return False
    return True


class TrustService:
    """Certificate paths, revocation, qualification and trust-list state.

    Trust lists are held in memory and replaced wholesale on refresh, so
    readers always see one complete version per territory.
    """

    def __init__(
        self,
        *,
        revocation: RevocationChecker | None = None,
        anchors: Iterable[bytes] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        settings = get_settings()
        self._revocation = revocation or RevocationChecker(clock=clock)
        self._anchors = list(anchors) if anchors is not None else load_anchor_ders(settings.trust_anchors_pem)
        self._transport = transport
        self._clock = clock
        self._lists: dict[str, TrustList] = {}
        self._refresh_lock = asyncio.Lock()

    def _now(self) -> datetime:
        return self._clock() if self._clock is not None else utc_now()

    @property
    def revocation(self) -> RevocationChecker:
        return self._revocation

    @property
    def trust_lists(self) -> dict[str, TrustList]:
        return dict(self._lists)

    def install(self, trust_list: TrustList) -> None:
        lists = dict(self._lists)
        lists[trust_list.territory] = trust_list
        self._lists = lists

    def add_anchor(self, der: bytes) -> None:
        if der not in self._anchors:
            self._anchors = [*self._anchors, der]

    def anchors(self) -> list[bytes]:
        # Configured roots plus every certificate of listed CA/QC and QTST services.
        found = list(self._anchors)
        for trust_list in self._lists.values():
            for der in trust_list.certificates_for(QC_CA_TYPE) + trust_list.certificates_for(QTST_TYPE):
                if der not in found:
                    found.append(der)
        return found

    def build_path(self, end_entity: bytes, at_time: datetime, *, intermediates: Iterable[bytes] = ()) -> PathResult:
        result = build_path(end_entity, anchors=self.anchors(), intermediates=intermediates)
        if not result.ok:
            increment_counter("trust_path_failures_total")
            return result
        errors: list[str] = []
        for der in result.path[1:]:
            cert = cms_utils.load_certificate(der)
            if not (cert.not_valid_before_utc <= at_time <= cert.not_valid_after_utc):
                errors.append("ca_certificate_expired")
                break
        if errors:
            return PathResult(result.path, result.anchor, errors)
        return result

    async def check_revocation(
        self,
        cert_der: bytes,
        at_time: datetime,
        *,
        issuer_der: bytes | None = None,
        intermediates: Iterable[bytes] = (),
    ) -> RevocationResult:
        if issuer_der is None:
            path = build_path(cert_der, anchors=self.anchors(), intermediates=intermediates)
            if not path.ok:
                return RevocationResult(False, False, "unknown", errors=list(path.errors))
            if len(path.path) < 2:
                # Trust anchors are accepted a priori and carry no revocation status.
                return RevocationResult(False, True, "not_applicable")
            issuer_der = path.path[1]
        return await self._revocation.check(cert_der, issuer_der, at_time)

    def _matching_services(
        self, cert: x509.Certificate, path: list[bytes]
    ) -> list[tuple[TrustList, QualifiedProvider, QualifiedService]]:
        issuers = {fingerprint(der) for der in path[1:]}
        matches = []
        for trust_list in self._lists.values():
            for provider in trust_list.providers:
                for service in provider.services:
                    if service.service_type != QC_CA_TYPE:
                        continue
                    for der in service.certificates:
                        if fingerprint(der) in issuers or _issued_by(cert, der):
                            matches.append((trust_list, provider, service))
                            break
        return matches

    def qualification_of(
        self,
        cert_der: bytes,
        at_time: datetime | None = None,
        *,
        intermediates: Iterable[bytes] = (),
    ) -> Qualification:
        at_time = at_time or self._now()
        now = self._now()
        cert = cms_utils.load_certificate(cert_der)
        profile: QcProfile = parse_qc_statements(cert)
        path = build_path(cert_der, anchors=self.anchors(), intermediates=intermediates)
        matches = self._matching_services(cert, path.path)
        warnings: list[str] = []
        if any(trust_list.is_stale(now) for trust_list, _, _ in matches) or (
            not matches and any(trust_list.is_stale(now) for trust_list in self._lists.values())
        ):
            warnings.append("staleTrustList")
        if not matches:
            return Qualification(
                qualified=False,
                qc_statements=profile.statements,
                qc_types=profile.qc_types,
                qtsp_status="not_listed",
                territory=issuer_territory(cert),
                warnings=warnings,
            )
        wanted = {_QC_TYPE_SERVICE[name] for name in profile.qc_types if name in _QC_TYPE_SERVICE}
        active = None
        for trust_list, provider, service in matches:
            if not service.active_at(at_time):
                continue
            if wanted and not wanted & set(service.offered_types):
                continue
            active = (trust_list, provider, service)
            break
        trust_list, provider, _ = active or matches[0]
        return Qualification(
            qualified=profile.compliant and active is not None,
            qc_statements=profile.statements,
            qc_types=profile.qc_types,
            qtsp_status="active" if active is not None else "inactive",
            territory=trust_list.territory,
            provider=provider.provider_id,
            warnings=warnings,
        )

    def recognize_cross_border(
        self, issuing_territory: str | None, consuming_territory: str | None = None, level: str = "qualified"
    ) -> Recognition:
        consuming = consuming_territory or get_settings().consuming_territory
        return recognize_cross_border(issuing_territory, consuming, level)

    async def validate_timestamp_authority(self, cert_der: bytes, at_time: datetime) -> list[str]:
        path = self.build_path(cert_der, at_time)
        return list(path.errors)

    async def snapshot_validation_data(
        self, cert_der: bytes, at_time: datetime, *, intermediates: Iterable[bytes] = ()
    ) -> dict[str, list[str]]:
        """Chain plus one revocation response per non-anchor certificate.

        Used for LT/LTA envelopes; a missing response leaves the signature
        without long-term evidence, so lookup failures propagate.
        """
        path = self.build_path(cert_der, at_time, intermediates=intermediates)
        if not path.ok:
            raise ValidationFailed(
                f"no certificate chain for signer: {','.join(path.errors)}", reason="no_certificate_chain_found"
            )
        ocsps: list[bytes] = []
        crls: list[bytes] = []
        for index in range(len(path.path) - 1):
            evidence: RevocationEvidence | None = await self._revocation.fetch_evidence(
                path.path[index], path.path[index + 1]
            )
            if evidence is None:
                continue
            (ocsps if evidence.source == "ocsp" else crls).append(evidence.der)
        return {
            "certificates": [b64encode_bytes(der) for der in path.path],
            "ocsp": [b64encode_bytes(der) for der in ocsps],
            "crls": [b64encode_bytes(der) for der in crls],
        }

    async def _fetch(self, url: str) -> bytes:
        settings = get_settings()
        timeout_s = settings.revocation_timeout_s

        async def call() -> bytes:
            started = time.monotonic()
            success = False
            try:
                async with httpx.AsyncClient(transport=self._transport, timeout=timeout_s) as client:
                    response = await client.get(url)
                response.raise_for_status()
                success = True
                return response.content
            finally:
                record_external_call(
                    integration="trust_list", latency_ms=(time.monotonic() - started) * 1000.0, success=success
                )

        try:
            return await retry_async(call, policy=RetryPolicy(timeout_s=timeout_s, max_attempts=2, backoff_s=1.0))
        except (httpx.HTTPError, TimeoutError) as exc:
            raise DependencyUnavailable(f"trust list fetch failed for {url}", reason="trust_list_unavailable") from exc

    async def refresh(self, session: AsyncSession | None = None) -> list[dict[str, Any]]:
        # One report row per territory; a failed territory keeps its previous list.
        settings = get_settings()
        signing_certs = settings.trust_list_signing_certs()
        started = self._now()
        results: list[dict[str, Any]] = []
        async with self._refresh_lock:
            for territory, url in settings.trust_list_urls().items():
                try:
                    data = await self._fetch(url)
                    trust_list = parse_trust_list(
                        data, territory=territory, source_url=url, signing_cert_pem=signing_certs.get(territory)
                    )
                    previous = self._lists.get(territory)
                    if previous is not None and trust_list.sequence_number < previous.sequence_number:
                        raise ValidationFailed(
                            f"trust list sequence went back from {previous.sequence_number}",
                            reason="sequence_regression",
                        )
                except (DependencyUnavailable, ValidationFailed) as exc:
                    logger.warning("trust_list_refresh_failed territory=%s error=%s", territory, exc.reason)
                    increment_counter("trust_list_refresh_failures_total")
                    results.append(
                        {
                            "territory": territory,
                            "ok": False,
                            "providers": len(self._lists[territory].providers) if territory in self._lists else 0,
                            "sequence": self._lists[territory].sequence_number if territory in self._lists else None,
                            "nextUpdate": None,
                            "error": exc.reason,
                        }
                    )
                    continue
                self.install(trust_list)
                if session is not None:
                    await trust_repo.upsert_snapshot(
                        session,
                        territory=territory,
                        sequence_number=trust_list.sequence_number,
                        issued_at=trust_list.issued_at,
                        next_update=trust_list.next_update,
                        source_url=url,
                        providers=[provider.to_dict() for provider in trust_list.providers],
                        fetched_at=self._now(),
                    )
                results.append(
                    {
                        "territory": territory,
                        "ok": True,
                        "providers": len(trust_list.providers),
                        "sequence": trust_list.sequence_number,
                        "nextUpdate": trust_list.next_update.isoformat() if trust_list.next_update else None,
                        "error": None,
                    }
                )
        if session is not None:
            await trust_repo.add_sync_report(session, started_at=started, finished_at=self._now(), results=results)
            await session.commit()
        set_gauge("trust_lists_loaded", float(len(self._lists)))
        logger.info(
            "trust_lists_refreshed ok=%s failed=%s",
            sum(1 for item in results if item["ok"]),
            sum(1 for item in results if not item["ok"]),
        )
        return results

    async def load_snapshots(self, session: AsyncSession) -> int:
        rows = await trust_repo.list_snapshots(session)
        for row in rows:
            self.install(
                TrustList(
                    territory=row.territory,
                    sequence_number=row.sequence_number,
                    issued_at=row.issued_at,
                    next_update=row.next_update,
                    providers=tuple(QualifiedProvider.from_dict(item) for item in row.providers_json or []),
                    source_url=row.source_url,
                )
            )
        return len(rows)

    def next_refresh_delay_s(self) -> float:
        # Refresh on the earliest nextUpdate or every interval, whichever is sooner.
        interval = float(get_settings().trust_list_refresh_interval_s)
        now = self._now()
        delay = interval
        for trust_list in self._lists.values():
            if trust_list.next_update is None:
                continue
            delay = min(delay, max(0.0, (trust_list.next_update - now).total_seconds()))
        return delay

    def refresh_due(self, last_refresh: datetime | None) -> bool:
        if last_refresh is None:
            return True
        return self._now() >= last_refresh + timedelta(seconds=self.next_refresh_delay_s())


_service: TrustService | None = None


def get_trust_service() -> TrustService:
    global _service
    if _service is None:
        _service = TrustService()
    return _service


def set_trust_service(service: TrustService | None) -> None:
    global _service
    _service = service
