from __future__ import annotations

from datetime import datetime, timedelta, timezone
import time

import pytest

from docsign.core.errors import (
    CryptoConstraintFailure,
    InvalidState,
    NotFound,
    StorageForbidden,
    ValidationFailed,
)
from docsign.domain.models import Document, DocumentField, Signer
from docsign.services import documents as state
from docsign.services.audit import retention_for, sanitize_details
from docsign.services.crypto import digests
from docsign.services.signing import links
from docsign.services.storage import LocalObjectStore, parse_ref, verify_url_signature


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _document(**overrides) -> Document:
    values = {
        "id": "doc-1",
        "status": "out_for_signature",
        "ordered_signing": False,
        "expires_at": NOW + timedelta(days=1),
        "version": 1,
    }
    values.update(overrides)
    return Document(**values)


def _signer(signer_id: str, order: int, status: str = "pending") -> Signer:
    return Signer(document_id="doc-1", id=signer_id, email=f"{signer_id}@example.test", name=signer_id, order=order, status=status)


def test_signing_link_round_trip_and_tamper() -> None:
    token = links.issue_token("doc-1", "s1", now=NOW)
    assert links.verify_token("doc-1", "s1", token, now=NOW).valid

    # The MAC binds both path ids.
    assert links.verify_token("doc-1", "s2", token, now=NOW).reason == links.REASON_INTEGRITY
    assert links.verify_token("doc-2", "s1", token, now=NOW).reason == links.REASON_INTEGRITY
    payload, mac = token.split(".")
    flipped = ("A" if mac[0] != "A" else "B") + mac[1:]
    assert links.verify_token("doc-1", "s1", f"{payload}.{flipped}", now=NOW).reason == links.REASON_INTEGRITY
    assert links.verify_token("doc-1", "s1", None, now=NOW).reason == links.REASON_INTEGRITY
    assert links.verify_token("doc-1", "s1", "not-a-token", now=NOW).reason == links.REASON_INTEGRITY


def test_signing_link_expires_after_ttl() -> None:
    token = links.issue_token("doc-1", "s1", now=NOW, ttl=timedelta(hours=1))
    assert links.verify_token("doc-1", "s1", token, now=NOW + timedelta(minutes=59)).valid
    expired = links.verify_token("doc-1", "s1", token, now=NOW + timedelta(hours=2))
    assert expired.to_dict() == {"valid": False, "reason": links.REASON_EXPIRED}


def test_signing_url_carries_token_query() -> None:
    url = links.signing_url("doc-1", "s1", "abc.def")
    assert url == "http://localhost:3000/sign/doc-1/s1?t=abc.def"


def test_digest_algorithm_policy() -> None:
    assert digests.normalize("SHA-256") == "sha256"
    assert digests.require_signing_algorithm("sha_384") == "sha384"
    with pytest.raises(CryptoConstraintFailure) as exc_info:
        digests.require_signing_algorithm("sha1")
    assert exc_info.value.reason == "deprecated_digest_algorithm"
    with pytest.raises(ValidationFailed):
        digests.normalize("whirlpool")
    # Deprecated digests stay computable for validating old signatures.
    assert len(digests.digest(b"payload", "sha1")) == 20
    assert digests.is_deprecated("MD5")


def test_audit_details_redact_credentials() -> None:
    details = {
        "signer_id": "s1",
        "token": "abc",
        "nested": {"client_secret": "x", "items": [{"password": "p", "ok": 1}]},
        "at": NOW,
    }
    assert sanitize_details(details) == {
        "signer_id": "s1",
        "token": "[REDACTED]",
        "nested": {"client_secret": "[REDACTED]", "items": [{"password": "[REDACTED]", "ok": 1}]},
        "at": NOW.isoformat(),
    }
    assert retention_for("document_downloaded") == "operational"
    assert retention_for("document_signed") == "legal"


@pytest.mark.asyncio
async def test_object_store_is_content_addressed_and_namespaced(tmp_path) -> None:
    store = LocalObjectStore(tmp_path)
    ref = await store.put("doc-1", b"hello")
    assert ref.startswith("doc-1/sha256-")
    assert await store.put("doc-1", b"hello") == ref
    assert await store.get(ref, namespace="doc-1") == b"hello"

    with pytest.raises(StorageForbidden) as exc_info:
        await store.get(ref, namespace="doc-2")
    assert exc_info.value.reason == "namespace_mismatch"
    with pytest.raises(NotFound):
        await store.get("doc-1/sha256-" + "0" * 64)
    with pytest.raises(NotFound):
        parse_ref("../etc/passwd")


def test_object_url_signature_is_time_bounded(tmp_path) -> None:
    store = LocalObjectStore(tmp_path)
    ref = "doc-1/sha256-" + "a" * 64
    url = store.url(ref, ttl_s=60)
    query = dict(part.split("=", 1) for part in url.split("?", 1)[1].split("&"))
    expires, signature = int(query["exp"]), query["sig"]
    assert verify_url_signature(ref, expires, signature)
    assert not verify_url_signature(ref, expires, signature, now=time.time() + 120)
    assert not verify_url_signature("doc-2/sha256-" + "a" * 64, expires, signature)


def test_draft_and_signable_guards() -> None:
    with pytest.raises(InvalidState) as exc_info:
        state.require_draft(_document())
    assert exc_info.value.reason == state.REASON_NOT_DRAFT

    state.require_signable(_document(), NOW)
    with pytest.raises(InvalidState) as exc_info:
        state.require_signable(_document(status="draft"), NOW)
    assert exc_info.value.reason == state.REASON_NOT_OUT_FOR_SIGNATURE
    with pytest.raises(InvalidState) as exc_info:
        state.require_signable(_document(expires_at=NOW - timedelta(seconds=1)), NOW)
    assert exc_info.value.reason == state.REASON_EXPIRED


def test_send_requires_signature_field_per_signer() -> None:
    signers = [_signer("s1", 0), _signer("s2", 1)]
    fields = [DocumentField(document_id="doc-1", id="f1", signer_id="s1", type="signature")]
    with pytest.raises(ValidationFailed) as exc_info:
        state.validate_for_send([], fields)
    assert exc_info.value.reason == "signers_missing"
    with pytest.raises(ValidationFailed) as exc_info:
        state.validate_for_send(signers, fields)
    assert exc_info.value.reason == "signature_field_missing"
    with pytest.raises(ValidationFailed):
        state.validate_field_type("stamp")


def test_ordered_signing_frontier_and_guards() -> None:
    document = _document(ordered_signing=True)
    signers = [_signer("s1", 0, "signed"), _signer("s2", 1), _signer("s3", 1, "viewed"), _signer("s4", 2)]
    # Equal orders sign in parallel once every lower order is signed.
    assert [signer.id for signer in state.signing_frontier(document, signers)] == ["s2", "s3"]

    with pytest.raises(InvalidState) as exc_info:
        state.check_can_sign(document, signers, signers[3], NOW)
    assert exc_info.value.reason == state.REASON_OUT_OF_ORDER
    with pytest.raises(InvalidState) as exc_info:
        state.check_can_sign(document, signers, signers[0], NOW)
    assert exc_info.value.reason == state.REASON_ALREADY_SIGNED
    state.check_can_sign(document, signers, signers[1], NOW)

    parallel = _document(ordered_signing=False)
    assert len(state.signing_frontier(parallel, signers)) == 3
    declined = _signer("s5", 0, "declined")
    with pytest.raises(InvalidState) as exc_info:
        state.check_can_sign(parallel, signers + [declined], declined, NOW)
    assert exc_info.value.reason == state.REASON_SIGNER_INACTIVE
    assert not state.all_signed([])
