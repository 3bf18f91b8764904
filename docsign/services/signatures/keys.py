from __future__ import annotations

from dataclasses import dataclass, field
import logging
import time
from typing import Any, Callable, Protocol

from cryptography import x509
from cryptography.hazmat.primitives.serialization import load_pem_private_key
import httpx

from docsign.core.config import get_settings
from docsign.core.errors import CryptoFailure, DependencyUnavailable, ValidationFailed
from docsign.services.crypto import cms as cms_utils
from docsign.services.crypto import digests
from docsign.services.crypto.utils import b64decode_str, b64encode_bytes
from docsign.services.resilience import RetryPolicy, retry_async
from docsign.services.telemetry import record_external_call


logger = logging.getLogger(__name__)


class KeyHandle(Protocol):
    key_ref: str
    certificate_der: bytes
    # Intermediate certificates up to (not including) the trust anchor.
    chain: tuple[bytes, ...]

    def public_key(self) -> Any:
        ...

    async def sign(self, data: bytes, digest_algorithm: str) -> bytes:
        ...


@dataclass
class LocalKeyHandle:
    key_ref: str
    private_key: Any
    certificate_der: bytes
    chain: tuple[bytes, ...] = field(default_factory=tuple)

    def public_key(self) -> Any:
        return self.private_key.public_key()

    async def sign(self, data: bytes, digest_algorithm: str) -> bytes:
        return cms_utils.sign_bytes(self.private_key, data, digest_algorithm)


class RemoteKeyHandle:
    """Signature-creation device reached over HTTP.

    The device receives only the digest: POST ``{key_id, digest_algorithm,
    digest}`` and answers ``{signature}`` (base64). Returned values are
    checked against the certificate before use.
    """

    def __init__(
        self,
        key_ref: str,
        *,
        url: str,
        key_id: str,
        certificate_der: bytes,
        chain: tuple[bytes, ...] = (),
        credential: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout_s: float | None = None,
    ) -> None:
        self.key_ref = key_ref
        self.certificate_der = certificate_der
        self.chain = tuple(chain)
        self._url = url
        self._key_id = key_id
        self._credential = credential
        self._transport = transport
        self._timeout_s = get_settings().remote_signing_timeout_s if timeout_s is None else timeout_s

    def public_key(self) -> Any:
        return cms_utils.load_certificate(self.certificate_der).public_key()

    async def sign(self, data: bytes, digest_algorithm: str) -> bytes:
        name = digests.normalize(digest_algorithm)
        payload = {"key_id": self._key_id, "digest_algorithm": name, "digest": b64encode_bytes(digests.digest(data, name))}
        headers = {"Authorization": f"Bearer {self._credential}"} if self._credential else {}

        async def call() -> httpx.Response:
            started = time.monotonic()
            success = False
            try:
                async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout_s) as client:
                    response = await client.post(self._url, json=payload, headers=headers)
                success = response.status_code < 500
                if response.status_code >= 500:
                    response.raise_for_status()
                return response
            finally:
                record_external_call(
                    integration="remote_signing", latency_ms=(time.monotonic() - started) * 1000.0, success=success
                )

        try:
            response = await retry_async(
                call, policy=RetryPolicy(timeout_s=self._timeout_s, max_attempts=2, backoff_s=0.5)
            )
        except (httpx.HTTPError, TimeoutError) as exc:
            raise DependencyUnavailable(
                f"signature device {self.key_ref} unavailable", reason="remote_signing_unavailable"
            ) from exc
        if response.status_code != 200:
            raise CryptoFailure(
                f"signature device {self.key_ref} refused: {response.status_code}", reason="remote_signing_rejected"
            )
        try:
            signature = b64decode_str(str(response.json()["signature"]))
        except (ValueError, KeyError, TypeError) as exc:
            raise CryptoFailure("signature device reply malformed", reason="remote_signing_malformed") from exc
        if not cms_utils.verify_bytes(self.public_key(), signature, data, name):
            raise CryptoFailure("signature device returned an invalid value", reason="remote_signature_invalid")
        logger.info("remote_signature_created key_ref=%s", self.key_ref)
        return signature


def _pem_chain(raw: str | None) -> tuple[bytes, ...]:
    if not raw:
        return ()
    return tuple(cms_utils.certificate_der(cert) for cert in x509.load_pem_x509_certificates(raw.encode("utf-8")))


def _certificate(raw: dict[str, Any], key_ref: str) -> bytes:
    pem = raw.get("certificate_pem")
    if not pem:
        raise ValidationFailed(f"signing key {key_ref} has no certificate", reason="signing_key_config_invalid")
    return cms_utils.certificate_der(x509.load_pem_x509_certificate(str(pem).encode("utf-8")))


def _local_from_config(key_ref: str, raw: dict[str, Any]) -> KeyHandle:
    password = raw.get("key_password")
    private_key = load_pem_private_key(
        str(raw.get("key_pem") or "").encode("utf-8"),
        password=password.encode("utf-8") if password else None,
    )
    return LocalKeyHandle(
        key_ref=key_ref,
        private_key=private_key,
        certificate_der=_certificate(raw, key_ref),
        chain=_pem_chain(raw.get("chain_pem")),
    )


def _remote_from_config(key_ref: str, raw: dict[str, Any]) -> KeyHandle:
    return RemoteKeyHandle(
        key_ref,
        url=str(raw.get("url") or ""),
        key_id=str(raw.get("key_id") or key_ref),
        certificate_der=_certificate(raw, key_ref),
        chain=_pem_chain(raw.get("chain_pem")),
        credential=raw.get("credential"),
    )


_KEY_HANDLE_TYPES: dict[str, Callable[[str, dict[str, Any]], KeyHandle]] = {
    "local": _local_from_config,
    "remote": _remote_from_config,
}

_registered: dict[str, KeyHandle] = {}


def register_key(handle: KeyHandle) -> None:
    _registered[handle.key_ref] = handle


def unregister_key(key_ref: str) -> None:
    _registered.pop(key_ref, None)


def resolve_key(key_ref: str | None) -> KeyHandle:
    # Configured keys are loaded per call so private material is not kept around.
    ref = key_ref or get_settings().default_signing_key_ref
    if ref in _registered:
        return _registered[ref]
    raw = get_settings().signing_keys().get(ref)
    if raw is None:
        raise ValidationFailed(f"unknown signing key {ref}", reason="signing_key_unknown")
    factory = _KEY_HANDLE_TYPES.get(str(raw.get("type") or "local"))
    if factory is None:
        raise ValidationFailed(f"unsupported signing key type for {ref}", reason="signing_key_config_invalid")
    try:
        return factory(ref, raw)
    except (ValueError, TypeError) as exc:
        raise ValidationFailed(f"signing key {ref} is misconfigured", reason="signing_key_config_invalid") from exc
