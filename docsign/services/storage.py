from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import logging
import os
from pathlib import Path
import re
import time
from typing import Protocol
from urllib.parse import quote, urlencode
from uuid import uuid4

from docsign.core.config import get_settings
from docsign.core.errors import NotFound, StorageForbidden, StorageIOFailure
from docsign.services.resilience import RetryPolicy, retry_async


logger = logging.getLogger(__name__)

# "<namespace>/sha256-<hex>" where namespace is usually a document id.
_REF_PATTERN = re.compile(r"^(?P<namespace>[A-Za-z0-9_.-]{1,128})/sha256-(?P<digest>[0-9a-f]{64})$")


class ObjectStore(Protocol):
    async def put(self, namespace: str, data: bytes) -> str: ...

    async def get(self, ref: str, *, namespace: str | None = None) -> bytes: ...

    def url(self, ref: str, ttl_s: int | None = None) -> str: ...


def make_ref(namespace: str, data: bytes) -> str:
    digest = hashlib.sha256(data).hexdigest()
    ref = f"{namespace}/sha256-{digest}"
    if not _REF_PATTERN.match(ref):
        raise StorageForbidden(f"invalid object namespace: {namespace}", reason="invalid_namespace")
    return ref


def parse_ref(ref: str) -> tuple[str, str]:
    match = _REF_PATTERN.match(ref or "")
    if match is None:
        raise NotFound(f"unknown object ref: {ref}")
    return match.group("namespace"), match.group("digest")


def _url_signature(secret: str, ref: str, expires: int) -> str:
    mac = hmac.new(secret.encode("utf-8"), f"{ref}|{expires}".encode("utf-8"), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(mac).decode("ascii").rstrip("=")


def verify_url_signature(ref: str, expires: int, signature: str, *, now: float | None = None) -> bool:
    # Validate a download URL minted by LocalObjectStore.url.
    settings = get_settings()
    current = time.time() if now is None else now
    if expires < current:
        return False
    expected = _url_signature(settings.object_store_url_secret, ref, expires)
    return hmac.compare_digest(expected, signature)


class LocalObjectStore:
    """Content-addressed file store rooted at ``object_store_root``.

    Writes go through a temp file and an atomic rename, so concurrent writers
    of the same content converge on one identical file.
    """

    def __init__(self, root: str | Path | None = None) -> None:
        settings = get_settings()
        self._root = Path(root or settings.object_store_root)
        self._policy = RetryPolicy(
            timeout_s=30.0,
            max_attempts=max(1, settings.object_store_max_attempts),
            backoff_s=0.05,
        )

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, ref: str) -> Path:
        namespace, digest = parse_ref(ref)
        return self._root / namespace / f"sha256-{digest}"

    def _write(self, path: Path, data: bytes) -> None:
        if path.exists():
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f".{path.name}.{uuid4().hex}.tmp")
        tmp.write_bytes(data)
        os.replace(tmp, path)

    async def put(self, namespace: str, data: bytes) -> str:
        ref = make_ref(namespace, data)
        path = self._path(ref)
        try:
            await retry_async(
                lambda: asyncio.to_thread(self._write, path, data),
                policy=self._policy,
                retryable=lambda exc: isinstance(exc, OSError),
            )
        except OSError as exc:
            logger.error("object_store_put_failed ref=%s", ref, exc_info=exc)
            raise StorageIOFailure(f"failed to store {ref}") from exc
        logger.debug("object_store_put ref=%s size=%s", ref, len(data))
        return ref

    async def get(self, ref: str, *, namespace: str | None = None) -> bytes:
        ref_namespace, digest = parse_ref(ref)
        if namespace is not None and ref_namespace != namespace:
            raise StorageForbidden(f"object {ref} is outside namespace {namespace}", reason="namespace_mismatch")
        path = self._path(ref)
        if not path.exists():
            raise NotFound(f"object not found: {ref}")
        try:
            data = await retry_async(
                lambda: asyncio.to_thread(path.read_bytes),
                policy=self._policy,
                retryable=lambda exc: isinstance(exc, OSError) and not isinstance(exc, FileNotFoundError),
            )
        except FileNotFoundError as exc:
            raise NotFound(f"object not found: {ref}") from exc
        except OSError as exc:
            logger.error("object_store_get_failed ref=%s", ref, exc_info=exc)
            raise StorageIOFailure(f"failed to read {ref}") from exc
        if hashlib.sha256(data).hexdigest() != digest:
            raise StorageIOFailure(f"stored object {ref} is corrupt")
        return data

    def url(self, ref: str, ttl_s: int | None = None) -> str:
        settings = get_settings()
        parse_ref(ref)
        ttl = settings.object_store_url_ttl_s if ttl_s is None else int(ttl_s)
        expires = int(time.time()) + max(1, ttl)
        query = urlencode({"exp": expires, "sig": _url_signature(settings.object_store_url_secret, ref, expires)})
        return f"{settings.object_store_public_base.rstrip('/')}/{quote(ref)}?{query}"


_store: ObjectStore | None = None


def get_object_store() -> ObjectStore:
    global _store
    if _store is None:
        _store = LocalObjectStore()
    return _store


def set_object_store(store: ObjectStore | None) -> None:
    # Tests swap in stores rooted in a temp directory.
    global _store
    _store = store
