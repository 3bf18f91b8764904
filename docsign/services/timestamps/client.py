from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime
import hashlib
import logging
import secrets
import time
from typing import Awaitable, Callable

from cryptography import x509
from cryptography.x509.oid import ExtendedKeyUsageOID
import httpx

from docsign.core.config import get_settings
from docsign.core.errors import (
    CryptoFailure,
    DependencyUnavailable,
    DocsignError,
    InvalidTimestampResponse,
    RateLimited,
    TimestampCertInvalid,
    TimestampUnreachable,
)
from docsign.services.crypto import cms as cms_utils
from docsign.services.crypto import digests
from docsign.services.resilience import CircuitBreaker, RetryPolicy, SleepFn, get_resilience_redis, retry_async
from docsign.services.telemetry import increment_counter, record_external_call
from docsign.services.timestamps.authorities import TimestampAuthority, load_authorities, rank_authorities
from docsign.services.timestamps.rfc3161 import (
    CONTENT_TYPE_QUERY,
    CONTENT_TYPE_REPLY,
    TimestampToken,
    build_request,
    parse_response,
    parse_token,
    token_signature_valid,
)


logger = logging.getLogger(__name__)

# Returns chain errors for an authority certificate at a point in time (empty when valid).
ChainValidator = Callable[[bytes, datetime], Awaitable[list[str]]]


@dataclass(frozen=True)
class TimestampVerification:
    valid: bool
    issuing_authority: str | None
    gen_time: datetime | None
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def _fingerprint(der: bytes) -> str:
    return hashlib.sha256(der).hexdigest()


def _certificate_errors(cert_der: bytes, at_time: datetime) -> list[str]:
    # Authority certificates must be time-stamping certificates valid at genTime.
    errors: list[str] = []
    cert = cms_utils.load_certificate(cert_der)
    try:
        usage = cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
        if ExtendedKeyUsageOID.TIME_STAMPING not in usage:
            errors.append("tsa_certificate_not_timestamping")
    except x509.ExtensionNotFound:
        errors.append("tsa_certificate_not_timestamping")
    if not (cert.not_valid_before_utc <= at_time <= cert.not_valid_after_utc):
        errors.append("tsa_certificate_expired")
    return errors


class TimestampClient:
    """RFC 3161 client over a ranked set of authorities.

    Each authority gets bounded retries with exponential backoff, then the
    client fails over to the next one. The whole call runs under a single
    deadline.
    """

    def __init__(
        self,
        authorities: list[TimestampAuthority] | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFn | None = None,
        chain_validator: ChainValidator | None = None,
        timeout_s: float | None = None,
        max_attempts: int | None = None,
        backoff_s: float | None = None,
        drift_tolerance_s: int | None = None,
        cert_cache_ttl_s: int | None = None,
        preferred_region: str | None = None,
        monotonic: Callable[[], float] | None = None,
    ) -> None:
        settings = get_settings()
        self._authorities = list(authorities) if authorities is not None else load_authorities(settings)
        self._transport = transport
        self._sleep = sleep or asyncio.sleep
        self._chain_validator = chain_validator
        self._timeout_s = settings.tsa_timeout_s if timeout_s is None else timeout_s
        self._max_attempts = settings.tsa_max_attempts if max_attempts is None else max_attempts
        self._backoff_s = settings.tsa_backoff_s if backoff_s is None else backoff_s
        self._drift_tolerance_s = settings.tsa_drift_tolerance_s if drift_tolerance_s is None else drift_tolerance_s
        self._cert_cache_ttl_s = settings.tsa_cert_cache_ttl_s if cert_cache_ttl_s is None else cert_cache_ttl_s
        self._preferred_region = preferred_region or settings.tsa_preferred_region
        self._monotonic = monotonic or time.monotonic
        self._breakers: dict[str, CircuitBreaker] = {}
        # authority name -> (cached_at, certificate DER)
        self._cert_cache: dict[str, tuple[float, bytes]] = {}

    @property
    def authorities(self) -> list[TimestampAuthority]:
        return list(self._authorities)

    def set_chain_validator(self, chain_validator: ChainValidator | None) -> None:
        self._chain_validator = chain_validator

    async def _breaker(self, authority: TimestampAuthority) -> CircuitBreaker:
        breaker = self._breakers.get(authority.name)
        if breaker is None:
            breaker = CircuitBreaker(f"tsa.{authority.name}", redis=await get_resilience_redis())
            self._breakers[authority.name] = breaker
        return breaker

    async def ranked_authorities(self) -> list[TimestampAuthority]:
        healthy = {}
        for authority in self._authorities:
            healthy[authority.name] = await (await self._breaker(authority)).is_available()
        return rank_authorities(self._authorities, healthy=healthy, preferred_region=self._preferred_region)

    async def stamp(self, digest: bytes, hash_algorithm: str = "sha256") -> TimestampToken:
        name = digests.require_signing_algorithm(hash_algorithm)
        if len(digest) != hashlib.new(name).digest_size:
            raise InvalidTimestampResponse("digest length does not match algorithm", reason="imprint_length")
        try:
            return await asyncio.wait_for(self._stamp(digest, name), timeout=self._timeout_s)
        except asyncio.TimeoutError as exc:
            increment_counter("tsa_timeouts_total")
            raise TimestampUnreachable(
                f"no timestamp within {self._timeout_s}s", reason="timestamp_timeout"
            ) from exc

    async def _stamp(self, digest: bytes, hash_algorithm: str) -> TimestampToken:
        authorities = await self.ranked_authorities()
        if not authorities:
            raise TimestampUnreachable("no timestamp authority configured", reason="no_authority")
        policy = RetryPolicy(
            timeout_s=self._timeout_s,
            max_attempts=max(1, self._max_attempts),
            backoff_s=self._backoff_s,
            jitter=False,
        )
        last_error: DocsignError | None = None
        for authority in authorities:
            breaker = await self._breaker(authority)
            try:
                await breaker.before_call()
            except DependencyUnavailable as exc:
                last_error = exc
                continue
            try:
                token = await retry_async(
                    lambda authority=authority: self._request(authority, digest, hash_algorithm),
                    policy=policy,
                    retryable=_transient,
                    sleep=self._sleep,
                    on_retry=lambda attempt, exc, authority=authority: logger.info(
                        "tsa_retry authority=%s attempt=%s error=%s", authority.name, attempt + 1, type(exc).__name__
                    ),
                )
            except (RateLimited, InvalidTimestampResponse, TimestampCertInvalid) as exc:
                await breaker.record_failure()
                last_error = exc
            except (httpx.TransportError, TimeoutError, TimestampUnreachable) as exc:
                await breaker.record_failure()
                last_error = TimestampUnreachable(f"{authority.name} unreachable", reason="timestamp_unreachable")
                last_error.__cause__ = exc
            else:
                await breaker.record_success()
                return token
            increment_counter("tsa_failover_total")
            logger.warning(
                "tsa_failover authority=%s error=%s", authority.name, type(last_error).__name__
            )
        assert last_error is not None
        if isinstance(last_error, (RateLimited, CryptoFailure)):
            raise last_error
        raise TimestampUnreachable("all timestamp authorities failed", reason="timestamp_unreachable") from last_error

    async def _request(self, authority: TimestampAuthority, digest: bytes, hash_algorithm: str) -> TimestampToken:
        nonce = secrets.randbits(63)
        body = build_request(digest, hash_algorithm, nonce)
        auth = httpx.BasicAuth(authority.username, authority.password or "") if authority.username else None
        started = time.monotonic()
        success = False
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout_s) as client:
                response = await client.post(
                    authority.url,
                    content=body,
                    headers={"Content-Type": CONTENT_TYPE_QUERY, "Accept": CONTENT_TYPE_REPLY},
                    auth=auth,
                )
            if response.status_code == 429:
                raise RateLimited(f"{authority.name} rate limited the request", reason="rate_limited")
            if response.status_code >= 500:
                raise TimestampUnreachable(
                    f"{authority.name} returned {response.status_code}", reason="timestamp_unreachable"
                )
            if response.status_code != 200:
                raise InvalidTimestampResponse(
                    f"{authority.name} returned {response.status_code}", reason="http_status"
                )
            token = parse_response(
                response.content, expected_digest=digest, expected_nonce=nonce, hash_algorithm=hash_algorithm
            )
            await self._check_authority_certificate(authority, token)
            success = True
        finally:
            record_external_call(
                integration=f"tsa.{authority.name}",
                latency_ms=(time.monotonic() - started) * 1000.0,
                success=success,
            )
        logger.info("tsa_stamped authority=%s serial=%s", authority.name, token.serial_number)
        return replace(token, authority=authority.name)

    async def _check_authority_certificate(self, authority: TimestampAuthority, token: TimestampToken) -> None:
        cert_der = token.tsa_certificate_der
        if authority.certificate_pem:
            pinned = x509.load_pem_x509_certificate(authority.certificate_pem.encode("utf-8"))
            if cms_utils.certificate_der(pinned) != cert_der:
                raise TimestampCertInvalid(f"{authority.name} certificate does not match pin", reason="pin_mismatch")
        cached = self._cert_cache.get(authority.name)
        if cached is not None and self._monotonic() - cached[0] < self._cert_cache_ttl_s and cached[1] == cert_der:
            return
        errors = _certificate_errors(cert_der, token.gen_time)
        if not errors and self._chain_validator is not None:
            errors = await self._chain_validator(cert_der, token.gen_time)
        if errors:
            raise TimestampCertInvalid(
                f"{authority.name} certificate rejected: {','.join(errors)}", reason="tsa_certificate_invalid"
            )
        self._cert_cache[authority.name] = (self._monotonic(), cert_der)

    def _authority_for(self, cert_der: bytes) -> str | None:
        fingerprint = _fingerprint(cert_der)
        for name, (_, cached) in self._cert_cache.items():
            if _fingerprint(cached) == fingerprint:
                return name
        for authority in self._authorities:
            if authority.certificate_pem:
                pinned = x509.load_pem_x509_certificate(authority.certificate_pem.encode("utf-8"))
                if _fingerprint(cms_utils.certificate_der(pinned)) == fingerprint:
                    return authority.name
        return None

    async def verify(
        self,
        token_der: bytes,
        expected_hash: bytes,
        at_time: datetime | None = None,
        *,
        expected_nonce: int | None = None,
    ) -> TimestampVerification:
        # Offline verification: imprint, signature, authority certificate, nonce, drift.
        try:
            token, view, tst_der = parse_token(token_der)
        except InvalidTimestampResponse as exc:
            return TimestampVerification(False, None, None, errors=[exc.reason or "token_malformed"])
        errors: list[str] = []
        warnings: list[str] = []
        if token.hashed_message != expected_hash:
            errors.append("imprint_mismatch")
        if not token_signature_valid(view, tst_der):
            errors.append("signature_invalid")
        cert_errors = _certificate_errors(token.tsa_certificate_der, token.gen_time)
        if not cert_errors:
            if self._chain_validator is not None:
                cert_errors = await self._chain_validator(token.tsa_certificate_der, token.gen_time)
            else:
                warnings.append("tsa_chain_not_checked")
        errors.extend(cert_errors)
        if expected_nonce is not None and token.nonce != expected_nonce:
            errors.append("nonce_mismatch")
        if digests.normalize(token.hash_algorithm) in digests.DEPRECATED_ALGORITHMS:
            warnings.append("deprecated_digest_algorithm")
        if at_time is not None:
            drift = abs((token.gen_time - at_time).total_seconds())
            if drift > self._drift_tolerance_s:
                errors.append("gen_time_drift")
        issuer = self._authority_for(token.tsa_certificate_der)
        if issuer is None:
            cert = cms_utils.load_certificate(token.tsa_certificate_der)
            issuer = cert.subject.rfc4514_string()
        return TimestampVerification(
            valid=not errors,
            issuing_authority=issuer,
            gen_time=token.gen_time,
            warnings=warnings,
            errors=errors,
        )


def _transient(exc: Exception) -> bool:
    # RateLimited and malformed replies fail over immediately instead of retrying.
    return isinstance(exc, (httpx.TransportError, TimeoutError, TimestampUnreachable))


_client: TimestampClient | None = None


def get_timestamp_client() -> TimestampClient:
    global _client
    if _client is None:
        _client = TimestampClient()
    return _client


def set_timestamp_client(client: TimestampClient | None) -> None:
    global _client
    _client = client
