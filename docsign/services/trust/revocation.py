from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
import logging
import time
from typing import Any, Callable, Protocol

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509 import ocsp
from cryptography.x509.oid import AuthorityInformationAccessOID, ExtendedKeyUsageOID
import httpx

from docsign.core.config import get_settings
from docsign.core.errors import DependencyUnavailable
from docsign.domain.models import utc_now
from docsign.services.crypto import cms as cms_utils
from docsign.services.resilience import RetryPolicy, retry_async
from docsign.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RevocationEvidence:
    source: str  # "ocsp" | "crl"
    der: bytes
    this_update: datetime
    next_update: datetime | None
    status: str  # "good" | "revoked" | "unknown"
    revocation_time: datetime | None = None


@dataclass(frozen=True)
class RevocationResult:
    # revoked: the certificate was revoked at or before the validation time.
    revoked: bool
    # fresh: the validation time lies inside the evidence validity window.
    fresh: bool
    status: str
    evidence: RevocationEvidence | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def revocation_time(self) -> datetime | None:
        return self.evidence.revocation_time if self.evidence else None


class RevocationSource(Protocol):
    async def fetch_ocsp(self, url: str, request_der: bytes) -> bytes: ...

    async def fetch_crl(self, url: str) -> bytes: ...


class HttpRevocationSource:
    """Fetches OCSP responses and CRLs over HTTP with bounded retries."""

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None, timeout_s: float | None = None) -> None:
        settings = get_settings()
        self._transport = transport
        self._timeout_s = settings.revocation_timeout_s if timeout_s is None else timeout_s
        self._policy = RetryPolicy(timeout_s=self._timeout_s, max_attempts=2, backoff_s=0.5)

    async def _get(self, integration: str, method: str, url: str, **kwargs: Any) -> bytes:
        async def call() -> bytes:
            started = time.monotonic()
            success = False
            try:
                async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout_s) as client:
                    response = await client.request(method, url, **kwargs)
                response.raise_for_status()
                success = True
                return response.content
            finally:
                record_external_call(
                    integration=integration, latency_ms=(time.monotonic() - started) * 1000.0, success=success
                )

        try:
            return await retry_async(call, policy=self._policy, retryable=_transient_http)
        except (httpx.HTTPError, TimeoutError) as exc:
            raise DependencyUnavailable(f"{integration} fetch failed for {url}", reason="revocation_unavailable") from exc

    async def fetch_ocsp(self, url: str, request_der: bytes) -> bytes:
        return await self._get(
            "ocsp", "POST", url, content=request_der, headers={"Content-Type": "application/ocsp-request"}
        )

    async def fetch_crl(self, url: str) -> bytes:
        return await self._get("crl", "GET", url)


def _transient_http(exc: Exception) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, (httpx.TransportError, TimeoutError))


def ocsp_urls(cert: x509.Certificate) -> list[str]:
    try:
        aia = cert.extensions.get_extension_for_class(x509.AuthorityInformationAccess).value
    except x509.ExtensionNotFound:
        return []
    return [
        desc.access_location.value
        for desc in aia
        if desc.access_method == AuthorityInformationAccessOID.OCSP
        and isinstance(desc.access_location, x509.UniformResourceIdentifier)
    ]


def crl_urls(cert: x509.Certificate) -> list[str]:
    try:
        points = cert.extensions.get_extension_for_class(x509.CRLDistributionPoints).value
    except x509.ExtensionNotFound:
        return []
    urls: list[str] = []
    for point in points:
        for name in point.full_name or []:
            if isinstance(name, x509.UniformResourceIdentifier):
                urls.append(name.value)
    return urls


def _fresh(at_time: datetime, this_update: datetime, next_update: datetime | None, max_age_s: int) -> bool:
    if at_time < this_update:
        return False
    if next_update is not None:
        return at_time <= next_update
    return (at_time - this_update).total_seconds() <= max_age_s


def _ocsp_signer_valid(response: ocsp.OCSPResponse, issuer: x509.Certificate) -> bool:
    # Signed by the issuing CA itself or by a delegated responder it certified.
    candidates = [issuer]
    for responder in response.certificates:
        try:
            responder.verify_directly_issued_by(issuer)
            usage = responder.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
        except (ValueError, TypeError, InvalidSignature, x509.ExtensionNotFound) as exc:
            logger.debug("ocsp_responder_rejected error=%s", type(exc).__name__)
            continue
        if ExtendedKeyUsageOID.OCSP_SIGNING in usage:
            candidates.append(responder)
    hash_alg = response.signature_hash_algorithm
    if hash_alg is None:
        return False
    for candidate in candidates:
        if cms_utils.verify_bytes(candidate.public_key(), response.signature, response.tbs_response_bytes, hash_alg.name):
            return True
    return False


def parse_ocsp_evidence(der: bytes, cert: x509.Certificate, issuer: x509.Certificate) -> RevocationEvidence:
    response = ocsp.load_der_ocsp_response(der)
    if response.response_status != ocsp.OCSPResponseStatus.SUCCESSFUL:
        raise ValueError(f"ocsp status {response.response_status.name}")
    if response.serial_number != cert.serial_number:
        raise ValueError("ocsp response is for another certificate")
    if not _ocsp_signer_valid(response, issuer):
        raise ValueError("ocsp response signature invalid")
    status = {
        ocsp.OCSPCertStatus.GOOD: "good",
        ocsp.OCSPCertStatus.REVOKED: "revoked",
    }.get(response.certificate_status, "unknown")
    return RevocationEvidence(
        source="ocsp",
        der=der,
        this_update=response.this_update_utc,
        next_update=response.next_update_utc,
        status=status,
        revocation_time=response.revocation_time_utc if status == "revoked" else None,
    )


def parse_crl_evidence(der: bytes, cert: x509.Certificate, issuer: x509.Certificate) -> RevocationEvidence:
    crl = x509.load_der_x509_crl(der)
    if crl.issuer != issuer.subject or not crl.is_signature_valid(issuer.public_key()):
        raise ValueError("crl signature invalid")
    entry = crl.get_revoked_certificate_by_serial_number(cert.serial_number)
    return RevocationEvidence(
        source="crl",
        der=der,
        this_update=crl.last_update_utc,
        next_update=crl.next_update_utc,
        status="revoked" if entry is not None else "good",
        revocation_time=entry.revocation_date_utc if entry is not None else None,
    )


def evaluate(evidence: RevocationEvidence, at_time: datetime, *, max_age_s: int) -> RevocationResult:
    revoked = (
        evidence.status == "revoked"
        and evidence.revocation_time is not None
        and evidence.revocation_time <= at_time
    )
    return RevocationResult(
        revoked=revoked,
        fresh=_fresh(at_time, evidence.this_update, evidence.next_update, max_age_s),
        status=evidence.status,
        evidence=evidence,
    )


class RevocationChecker:
    """OCSP first, CRL as fallback, each behind a process-wide cache.

    OCSP responses are cached for min(nextUpdate, ocsp_cache_max_s) and CRLs
    for min(nextUpdate, crl_cache_max_s). Concurrent lookups for the same key
    share one fetch.
    """

    def __init__(
        self,
        source: RevocationSource | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
        monotonic: Callable[[], float] | None = None,
    ) -> None:
        settings = get_settings()
        self._source = source or HttpRevocationSource()
        self._ocsp_max_s = settings.ocsp_cache_max_s
        self._crl_max_s = settings.crl_cache_max_s
        self._clock = clock
        self._monotonic = monotonic or time.monotonic
        self._cache: dict[tuple[str, str], tuple[float, bytes]] = {}
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def _now(self) -> datetime:
        return self._clock() if self._clock is not None else utc_now()

    def _ttl(self, next_update: datetime | None, cap_s: int) -> float:
        if next_update is None:
            return float(cap_s)
        remaining = (next_update - self._now()).total_seconds()
        return max(0.0, min(remaining, float(cap_s)))

    def clear(self) -> None:
        self._cache.clear()

    async def _cached(self, key: tuple[str, str], fetch: Callable[[], Any]) -> tuple[bytes, bool]:
        entry = self._cache.get(key)
        if entry is not None and self._monotonic() < entry[0]:
            increment_counter(f"revocation_cache_hits_total.{key[0]}")
            return entry[1], True
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            entry = self._cache.get(key)
            if entry is not None and self._monotonic() < entry[0]:
                return entry[1], True
            der = await fetch()
            return der, False

    def _store(self, key: tuple[str, str], der: bytes, ttl_s: float) -> None:
        if ttl_s > 0:
            self._cache[key] = (self._monotonic() + ttl_s, der)

    async def fetch_evidence(self, cert_der: bytes, issuer_der: bytes) -> RevocationEvidence | None:
        cert = cms_utils.load_certificate(cert_der)
        issuer = cms_utils.load_certificate(issuer_der)
        failures: list[Exception] = []
        for url in ocsp_urls(cert):
            key = ("ocsp", f"{url}|{cert.serial_number}")
            request = ocsp.OCSPRequestBuilder().add_certificate(cert, issuer, hashes.SHA256()).build()
            request_der = request.public_bytes(serialization.Encoding.DER)
            try:
                der, _ = await self._cached(key, lambda url=url: self._source.fetch_ocsp(url, request_der))
                evidence = parse_ocsp_evidence(der, cert, issuer)
            except (DependencyUnavailable, ValueError) as exc:
                logger.warning("ocsp_lookup_failed url=%s error=%s", url, exc)
                failures.append(exc)
                continue
            self._store(key, der, self._ttl(evidence.next_update, self._ocsp_max_s))
            if evidence.status != "unknown":
                return evidence
        for url in crl_urls(cert):
            key = ("crl", url)
            try:
                der, _ = await self._cached(key, lambda url=url: self._source.fetch_crl(url))
                evidence = parse_crl_evidence(der, cert, issuer)
            except (DependencyUnavailable, ValueError) as exc:
                logger.warning("crl_lookup_failed url=%s error=%s", url, exc)
                failures.append(exc)
                continue
            self._store(key, der, self._ttl(evidence.next_update, self._crl_max_s))
            return evidence
        if failures and all(isinstance(exc, DependencyUnavailable) for exc in failures):
            raise DependencyUnavailable("revocation status unavailable", reason="revocation_unavailable")
        return None

    async def check(self, cert_der: bytes, issuer_der: bytes, at_time: datetime) -> RevocationResult:
        evidence = await self.fetch_evidence(cert_der, issuer_der)
        if evidence is None:
            return RevocationResult(revoked=False, fresh=False, status="unknown", errors=["no_revocation_info"])
        max_age = self._ocsp_max_s if evidence.source == "ocsp" else self._crl_max_s
        return evaluate(evidence, at_time, max_age_s=max_age)


def evaluate_embedded(
    cert_der: bytes,
    issuer_der: bytes,
    *,
    ocsp_responses: list[bytes],
    crls: list[bytes],
    at_time: datetime,
) -> RevocationResult | None:
    # Use validation data captured at signing time (LT/LTA) instead of a live lookup.
    settings = get_settings()
    cert = cms_utils.load_certificate(cert_der)
    issuer = cms_utils.load_certificate(issuer_der)
    for der in ocsp_responses:
        try:
            evidence = parse_ocsp_evidence(der, cert, issuer)
        except ValueError:
            continue
        return evaluate(evidence, at_time, max_age_s=settings.ocsp_cache_max_s)
    for der in crls:
        try:
            evidence = parse_crl_evidence(der, cert, issuer)
        except ValueError:
            continue
        return evaluate(evidence, at_time, max_age_s=settings.crl_cache_max_s)
    return None
