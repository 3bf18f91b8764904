from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from datetime import datetime, timedelta
import hashlib
import hmac
import json
import secrets
from urllib.parse import quote

from docsign.core.config import get_settings
from docsign.domain.models import utc_now


REASON_INTEGRITY = "link_integrity"
REASON_EXPIRED = "link_expired"


@dataclass(frozen=True)
class LinkValidation:
    valid: bool
    reason: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {"valid": self.valid, "reason": self.reason}


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _mac(secret: str, document_id: str, signer_id: str, exp: int, nonce: str) -> bytes:
    message = f"{document_id}|{signer_id}|{exp}|{nonce}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()


def issue_token(
    document_id: str,
    signer_id: str,
    *,
    now: datetime | None = None,
    ttl: timedelta | None = None,
    nonce: str | None = None,
) -> str:
    # "<b64url({exp, nonce})>.<b64url(hmac)>"; the MAC binds the document and signer ids from the URL path.
    settings = get_settings()
    now = now or utc_now()
    ttl = ttl if ttl is not None else timedelta(hours=settings.signing_link_ttl_hours)
    exp = int((now + ttl).timestamp())
    nonce = nonce or secrets.token_urlsafe(16)
    payload = json.dumps({"exp": exp, "nonce": nonce}, separators=(",", ":"), sort_keys=True).encode("utf-8")
    mac = _mac(settings.signing_link_secret, document_id, signer_id, exp, nonce)
    return f"{_b64encode(payload)}.{_b64encode(mac)}"


def verify_token(document_id: str, signer_id: str, token: str | None, *, now: datetime | None = None) -> LinkValidation:
    """Check link authenticity and TTL. Pure: no storage is touched."""
    settings = get_settings()
    if not token or token.count(".") != 1:
        return LinkValidation(False, REASON_INTEGRITY)
    encoded_payload, encoded_mac = token.split(".", 1)
    try:
        payload = json.loads(_b64decode(encoded_payload))
        presented = _b64decode(encoded_mac)
        exp = int(payload["exp"])
        nonce = str(payload["nonce"])
    except (binascii.Error, ValueError, KeyError, TypeError):
        return LinkValidation(False, REASON_INTEGRITY)
    expected = _mac(settings.signing_link_secret, document_id, signer_id, exp, nonce)
    if not hmac.compare_digest(expected, presented):
        return LinkValidation(False, REASON_INTEGRITY)
    current = now or utc_now()
    if exp < int(current.timestamp()):
        return LinkValidation(False, REASON_EXPIRED)
    return LinkValidation(True)


def signing_path(document_id: str, signer_id: str) -> str:
    route_base = get_settings().signing_link_route_base.strip("/")
    return f"/{route_base}/{quote(document_id, safe='')}/{quote(signer_id, safe='')}"


def signing_url(document_id: str, signer_id: str, token: str) -> str:
    base = get_settings().signing_link_public_base.rstrip("/")
    return f"{base}{signing_path(document_id, signer_id)}?t={quote(token, safe='')}"
