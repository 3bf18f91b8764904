from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from docsign.core.config import get_settings
from docsign.core.errors import InvalidState, NotFound, Unauthorized, ValidationFailed
from docsign.domain.models import utc_now
from docsign.domain.state import AuditAction
from docsign.services.notifications import NotificationEvent
from docsign.services.signatures.report import TOTAL_PASSED
from docsign.services.signing import links
from docsign.services.signing.coordinator import SignatureSubmission
from docsign.tests.utils.workflow import OWNER, draft_document, sent_document, token_from_url


async def _actions(coordinator, document_id: str, **bounds) -> list[str]:
    return [entry.action for entry in await coordinator.read_audit(OWNER, document_id, **bounds)]


@pytest.mark.asyncio
async def test_parallel_signing_completes_document(coordinator, notifications) -> None:
    sent = await sent_document(coordinator, signers=2)
    doc_id = sent.document.id
    assert set(sent.tokens) == {"s0", "s1"}
    assert len(notifications.events(NotificationEvent.SIGNATURE_REQUEST)) == 2

    first = await coordinator.submit_signature(doc_id, "s0", sent.tokens["s0"])
    assert first.signer_status == "signed"
    assert first.document_status == "out_for_signature"
    assert not first.completed

    second = await coordinator.submit_signature(doc_id, "s1", sent.tokens["s1"])
    assert second.completed
    assert second.document_status == "completed"

    view = await coordinator.get_document(OWNER, doc_id)
    assert view.document.status == "completed"
    assert view.document.completed_at is not None
    assert {signer.status for signer in view.signers} == {"signed"}
    assert all(item.value and item.signed_at for item in view.fields)

    assert len(notifications.events(NotificationEvent.DOCUMENT_SIGNED)) == 2
    completed = notifications.events(NotificationEvent.DOCUMENT_COMPLETED)
    assert sorted(item.recipient for item in completed) == [OWNER, "signer0@example.test", "signer1@example.test"]

    actions = await _actions(coordinator, doc_id)
    assert actions[0] == AuditAction.DOCUMENT_CREATED
    assert actions[-3:] == [AuditAction.DOCUMENT_SIGNED, AuditAction.DOCUMENT_SIGNED, AuditAction.DOCUMENT_COMPLETED]


@pytest.mark.asyncio
async def test_ordered_signing_invites_next_signer_after_predecessor(coordinator, notifications) -> None:
    sent = await sent_document(coordinator, signers=2, ordered_signing=True)
    doc_id = sent.document.id
    # Both signers default to order 0 and 1 by insertion; only the first is invited.
    assert list(sent.tokens) == ["s0"]

    early_token = links.issue_token(doc_id, "s1")
    with pytest.raises(InvalidState) as exc_info:
        await coordinator.submit_signature(doc_id, "s1", early_token)
    assert exc_info.value.reason == "ordered_signing_predecessors_unsigned"
    rejected = (await coordinator.read_audit(OWNER, doc_id))[-1]
    assert rejected.action == AuditAction.SIGNATURE_REJECTED
    assert rejected.details["reason"] == "ordered_signing_predecessors_unsigned"

    await coordinator.submit_signature(doc_id, "s0", sent.tokens["s0"])
    invites = notifications.events(NotificationEvent.SIGNATURE_REQUEST)
    assert [item.signer_id for item in invites] == ["s0", "s1"]

    next_token = token_from_url(invites[-1].payload_json["signingUrl"])
    result = await coordinator.submit_signature(doc_id, "s1", next_token)
    assert result.completed


@pytest.mark.asyncio
async def test_concurrent_final_signatures_complete_once(coordinator, notifications) -> None:
    sent = await sent_document(coordinator, signers=3)
    doc_id = sent.document.id
    await coordinator.submit_signature(doc_id, "s0", sent.tokens["s0"])

    results = await asyncio.gather(
        coordinator.submit_signature(doc_id, "s1", sent.tokens["s1"]),
        coordinator.submit_signature(doc_id, "s2", sent.tokens["s2"]),
    )
    assert sum(result.completed for result in results) == 1

    actions = await _actions(coordinator, doc_id)
    assert actions.count(AuditAction.DOCUMENT_COMPLETED) == 1
    assert actions.count(AuditAction.DOCUMENT_SIGNED) == 3
    sequences = [entry.sequence for entry in await coordinator.read_audit(OWNER, doc_id)]
    assert sequences == list(range(len(sequences)))
    assert len([item for item in notifications.events(NotificationEvent.DOCUMENT_COMPLETED) if item.signer_id is None]) == 1


@pytest.mark.asyncio
async def test_signing_link_must_match_document_and_signer(coordinator) -> None:
    sent = await sent_document(coordinator, signers=2)
    doc_id = sent.document.id

    with pytest.raises(Unauthorized) as exc_info:
        await coordinator.submit_signature(doc_id, "s1", sent.tokens["s0"])
    assert exc_info.value.reason == "link_integrity"
    with pytest.raises(Unauthorized):
        await coordinator.open_for_signing(doc_id, "s0", None)

    missing = await coordinator.validate_signing_link(doc_id, "s9", links.issue_token(doc_id, "s9"))
    assert missing.reason == "signer_not_found"
    with pytest.raises(NotFound):
        await coordinator.submit_signature(doc_id, "s9", links.issue_token(doc_id, "s9"))


@pytest.mark.asyncio
async def test_open_for_signing_marks_signer_viewed(coordinator) -> None:
    sent = await sent_document(coordinator, signers=1)
    doc_id = sent.document.id
    context = {"request_id": "req-1", "ip_address": "203.0.113.7", "user_agent": "pytest"}

    session = await coordinator.open_for_signing(doc_id, "s0", sent.tokens["s0"], context)
    assert session.signer.status == "viewed"
    assert session.signer.viewed_at is not None
    assert [item.signer_id for item in session.fields] == ["s0"]
    assert "sig=" in session.document_url

    # Viewing again is recorded but leaves the signer viewed.
    again = await coordinator.open_for_signing(doc_id, "s0", sent.tokens["s0"], context)
    assert again.signer.status == "viewed"
    viewed = [entry for entry in await coordinator.read_audit(OWNER, doc_id) if entry.action == AuditAction.DOCUMENT_VIEWED]
    assert viewed[0].details["ip_address"] == "203.0.113.7"
    assert viewed[1].details["previous_status"] == "viewed"


@pytest.mark.asyncio
async def test_already_signed_signer_cannot_sign_again(coordinator) -> None:
    sent = await sent_document(coordinator, signers=2)
    doc_id = sent.document.id
    await coordinator.submit_signature(doc_id, "s0", sent.tokens["s0"])
    with pytest.raises(InvalidState) as exc_info:
        await coordinator.submit_signature(doc_id, "s0", sent.tokens["s0"])
    assert exc_info.value.reason == "signer_already_signed"


@pytest.mark.asyncio
async def test_reopening_after_signing_keeps_signing_evidence(coordinator) -> None:
    sent = await sent_document(coordinator, signers=2)
    doc_id = sent.document.id
    signing_context = {"request_id": "req-sign", "ip_address": "198.51.100.4", "user_agent": "browser/1.0"}
    await coordinator.submit_signature(doc_id, "s0", sent.tokens["s0"], context=signing_context)

    later_context = {"request_id": "req-later", "ip_address": "203.0.113.99", "user_agent": "crawler/2.0"}
    session = await coordinator.open_for_signing(doc_id, "s0", sent.tokens["s0"], later_context)
    assert session.signer.status == "signed"

    view = await coordinator.get_document(OWNER, doc_id)
    signer = next(item for item in view.signers if item.id == "s0")
    assert signer.ip_address == "198.51.100.4"
    assert signer.user_agent == "browser/1.0"
    # The later view still lands in the audit log.
    viewed = [entry for entry in await coordinator.read_audit(OWNER, doc_id) if entry.action == AuditAction.DOCUMENT_VIEWED]
    assert viewed[-1].details["ip_address"] == "203.0.113.99"


@pytest.mark.asyncio
async def test_decline_voids_document_and_blocks_other_signers(coordinator, notifications) -> None:
    sent = await sent_document(coordinator, signers=2)
    doc_id = sent.document.id

    document = await coordinator.decline_signature(doc_id, "s0", sent.tokens["s0"], reason="wrong amount")
    assert document.status == "voided"
    assert document.void_reason == "signer_declined"

    declined = notifications.events(NotificationEvent.DOCUMENT_DECLINED)
    assert [item.recipient for item in declined] == [OWNER]
    assert declined[0].payload_json["voided"] is True

    with pytest.raises(InvalidState) as exc_info:
        await coordinator.submit_signature(doc_id, "s1", sent.tokens["s1"])
    assert exc_info.value.reason == "document_not_out_for_signature"
    assert (await _actions(coordinator, doc_id))[-3:] == [
        AuditAction.SIGNER_DECLINED,
        AuditAction.DOCUMENT_VOIDED,
        AuditAction.SIGNATURE_REJECTED,
    ]


@pytest.mark.asyncio
async def test_expiry_sweep_expires_overdue_documents(coordinator, notifications) -> None:
    now = utc_now()
    sent = await sent_document(coordinator, signers=2, expires_at=now + timedelta(hours=1))
    doc_id = sent.document.id
    later = now + timedelta(hours=2)

    link = await coordinator.validate_signing_link(doc_id, "s0", sent.tokens["s0"], now=later)
    assert link.reason == "document_expired"
    assert await coordinator.expire_due_documents(now) == []

    assert await coordinator.expire_due_documents(later) == [doc_id]
    view = await coordinator.get_document(OWNER, doc_id)
    assert view.document.status == "expired"
    assert {signer.status for signer in view.signers} == {"expired"}
    assert [item.recipient for item in notifications.events(NotificationEvent.DOCUMENT_EXPIRED)] == [OWNER]

    actions = await _actions(coordinator, doc_id)
    assert actions[-3:] == [AuditAction.DOCUMENT_EXPIRED, AuditAction.SIGNER_EXPIRED, AuditAction.SIGNER_EXPIRED]
    assert await coordinator.expire_due_documents(later) == []


@pytest.mark.asyncio
async def test_reminders_go_to_frontier_once_per_interval(coordinator, notifications) -> None:
    now = utc_now()
    sent = await sent_document(coordinator, signers=2, ordered_signing=True)

    # Nothing is due until a full interval has passed since sending.
    assert await coordinator.send_reminders(now) == 0
    later = now + timedelta(days=2)
    assert await coordinator.send_reminders(later) == 1
    assert await coordinator.send_reminders(later + timedelta(hours=1)) == 0

    reminders = notifications.events(NotificationEvent.SIGNATURE_REMINDER)
    assert [(item.document_id, item.signer_id) for item in reminders] == [(sent.document.id, "s0")]
    assert reminders[0].payload_json["signingUrl"].startswith("http")
    assert await coordinator.send_reminders(later + timedelta(days=1)) == 1


@pytest.mark.asyncio
async def test_audit_log_reads_inclusive_ranges(coordinator) -> None:
    document, _ = await draft_document(coordinator, signers=2)
    entries = await coordinator.read_audit(OWNER, document.id)
    assert [entry.sequence for entry in entries] == list(range(len(entries)))
    assert entries[0].action == AuditAction.DOCUMENT_CREATED
    assert all(earlier.timestamp < later.timestamp for earlier, later in zip(entries, entries[1:]))

    window = await coordinator.read_audit(OWNER, document.id, from_sequence=1, to_sequence=2)
    assert [entry.sequence for entry in window] == [1, 2]
    assert [entry.action for entry in window] == [AuditAction.SIGNER_ADDED, AuditAction.FIELD_ADDED]

    with pytest.raises(Unauthorized):
        await coordinator.read_audit("stranger", document.id)


@pytest.mark.asyncio
async def test_resign_supersedes_previous_signature(coordinator) -> None:
    sent = await sent_document(coordinator, signers=2)
    doc_id = sent.document.id
    with pytest.raises(InvalidState) as exc_info:
        await coordinator.resign(doc_id, "s0", sent.tokens["s0"])
    assert exc_info.value.reason == "signer_not_signed"

    first = await coordinator.submit_signature(doc_id, "s0", sent.tokens["s0"])
    second = await coordinator.resign(doc_id, "s0", sent.tokens["s0"])
    assert second.record_id != first.record_id
    assert (await _actions(coordinator, doc_id))[-1] == AuditAction.SIGNATURE_SUPERSEDED

    records = await coordinator.list_signature_records(OWNER, doc_id)
    assert [record.supersedes_id for record in records] == [None, first.record_id]

    results = {item["recordId"]: item for item in await coordinator.validate_document_signatures(OWNER, doc_id)}
    assert results[first.record_id]["superseded"]
    assert not results[second.record_id]["superseded"]
    assert all(item["report"]["indication"] == TOTAL_PASSED for item in results.values())
    assert (await _actions(coordinator, doc_id))[-1] == AuditAction.SIGNATURES_VALIDATED


@pytest.mark.asyncio
async def test_archival_profile_renews_timestamp(coordinator, fake_tsa) -> None:
    sent = await sent_document(coordinator, signers=1, signature_profile="qualified")
    doc_id = sent.document.id
    result = await coordinator.submit_signature(doc_id, "s0", sent.tokens["s0"])
    assert result.completed

    granted = fake_tsa.granted
    renewed = await coordinator.renew_archival_timestamp(OWNER, doc_id, result.record_id)
    assert renewed.supersedes_id == result.record_id
    assert fake_tsa.granted == granted + 1
    assert (await _actions(coordinator, doc_id))[-1] == AuditAction.ARCHIVE_TIMESTAMP_RENEWED

    with pytest.raises(NotFound):
        await coordinator.renew_archival_timestamp(OWNER, doc_id, "missing-record")


@pytest.mark.asyncio
async def test_void_and_terminal_states(coordinator, notifications) -> None:
    draft, _ = await draft_document(coordinator, signers=1)
    voided = await coordinator.void_document(OWNER, draft.id)
    assert voided.status == "voided"
    assert voided.void_reason == "voided_by_owner"
    # Drafts were never sent, so nobody is told.
    assert notifications.events(NotificationEvent.DOCUMENT_VOIDED) == []
    with pytest.raises(InvalidState):
        await coordinator.void_document(OWNER, draft.id)

    sent = await sent_document(coordinator, signers=2)
    with pytest.raises(Unauthorized):
        await coordinator.void_document("stranger", sent.document.id)
    await coordinator.void_document(OWNER, sent.document.id, reason="superseded by v2")
    voided_notices = notifications.events(NotificationEvent.DOCUMENT_VOIDED)
    assert sorted(item.signer_id for item in voided_notices) == ["s0", "s1"]
    assert voided_notices[0].payload_json["reason"] == "superseded by v2"

    with pytest.raises(InvalidState):
        await coordinator.add_signer(OWNER, sent.document.id, email="late@example.test", name="Late")


@pytest.mark.asyncio
async def test_send_requires_signature_fields(coordinator) -> None:
    document = await coordinator.create_document(OWNER, title="Empty", file_bytes=b"content")
    with pytest.raises(ValidationFailed) as exc_info:
        await coordinator.send(OWNER, document.id)
    assert exc_info.value.reason == "signers_missing"

    await coordinator.add_signer(OWNER, document.id, email="solo@example.test", name="Solo", signer_id="solo")
    with pytest.raises(ValidationFailed) as exc_info:
        await coordinator.send(OWNER, document.id)
    assert exc_info.value.reason == "signature_field_missing"

    with pytest.raises(ValidationFailed):
        await coordinator.create_document(OWNER, title=" ", file_bytes=b"content")
    with pytest.raises(ValidationFailed):
        await coordinator.create_document(OWNER, title="No body", file_bytes=b"")


@pytest.mark.asyncio
async def test_download_urls_and_resend(coordinator, notifications) -> None:
    sent = await sent_document(coordinator, signers=2)
    doc_id = sent.document.id

    original = await coordinator.download_url(OWNER, doc_id)
    assert sent.document.original_file_ref in original
    with pytest.raises(NotFound) as exc_info:
        await coordinator.download_url(OWNER, doc_id, signer_id="s0")
    assert exc_info.value.reason == "artifact_not_found"

    await coordinator.submit_signature(doc_id, "s0", sent.tokens["s0"])
    artifact = await coordinator.download_url(OWNER, doc_id, signer_id="s0")
    assert artifact != original
    assert AuditAction.DOCUMENT_DOWNLOADED in await _actions(coordinator, doc_id)

    url = await coordinator.resend_signing_link(OWNER, doc_id, "s1")
    assert (await coordinator.validate_signing_link(doc_id, "s1", token_from_url(url))).valid
    with pytest.raises(InvalidState):
        await coordinator.resend_signing_link(OWNER, doc_id, "s0")
    assert len(notifications.events(NotificationEvent.SIGNATURE_REQUEST)) == 3


@pytest.mark.asyncio
async def test_submission_with_explicit_key_and_fields(coordinator) -> None:
    document, signer_ids = await draft_document(coordinator, signers=1)
    await coordinator.add_field(OWNER, document.id, signer_id="s0", field_type="text", label="Company", field_id="company")
    await coordinator.add_field(OWNER, document.id, signer_id="s0", field_type="date", required=False)
    urls = await coordinator.send(OWNER, document.id)
    token = token_from_url(urls["s0"])

    with pytest.raises(ValidationFailed) as exc_info:
        await coordinator.submit_signature(document.id, "s0", token)
    assert exc_info.value.reason == "required_field_missing"

    result = await coordinator.submit_signature(
        document.id, "s0", token, SignatureSubmission(key_ref="platform", field_values={"company": "Acme"})
    )
    assert result.completed
    fields = {item.type: item.value for item in (await coordinator.get_document(OWNER, document.id)).fields}
    assert fields["text"] == "Acme"
    assert fields["date"] is not None


@pytest.mark.asyncio
async def test_void_after_partial_signing_keeps_signature_valid(coordinator) -> None:
    sent = await sent_document(coordinator, signers=2)
    doc_id = sent.document.id
    first = await coordinator.submit_signature(doc_id, "s0", sent.tokens["s0"])
    await coordinator.void_document(OWNER, doc_id, reason="terms changed")

    with pytest.raises(InvalidState):
        await coordinator.submit_signature(doc_id, "s1", sent.tokens["s1"])
    results = await coordinator.validate_document_signatures(OWNER, doc_id)
    assert [item["recordId"] for item in results] == [first.record_id]
    assert results[0]["report"]["indication"] == TOTAL_PASSED
    view = await coordinator.get_document(OWNER, doc_id)
    assert view.document.status == "voided"
    assert {signer.id: signer.status for signer in view.signers} == {"s0": "signed", "s1": "pending"}


@pytest.mark.asyncio
async def test_block_signer_policy_keeps_document_out(coordinator, monkeypatch) -> None:
    monkeypatch.setenv("DECLINE_POLICY", "block_signer")
    get_settings.cache_clear()
    try:
        sent = await sent_document(coordinator, signers=2)
        doc_id = sent.document.id
        document = await coordinator.decline_signature(doc_id, "s0", sent.tokens["s0"], reason="not my role")
        assert document.status == "out_for_signature"

        # The remaining signer can still sign but the document never completes.
        result = await coordinator.submit_signature(doc_id, "s1", sent.tokens["s1"])
        assert not result.completed
        assert result.document_status == "out_for_signature"
        with pytest.raises(InvalidState) as exc_info:
            await coordinator.submit_signature(doc_id, "s0", sent.tokens["s0"])
        assert exc_info.value.reason == "signer_not_active"

        voided = await coordinator.void_document(OWNER, doc_id, reason="signer declined")
        assert voided.status == "voided"
    finally:
        monkeypatch.delenv("DECLINE_POLICY")
        get_settings.cache_clear()


@pytest.mark.asyncio
async def test_draft_edits_are_versioned_and_audited(coordinator) -> None:
    document, _ = await draft_document(coordinator, signers=2)
    doc_id = document.id

    updated = await coordinator.update_metadata(OWNER, doc_id, title="Renamed", signature_profile="basic", message=None)
    assert updated.title == "Renamed"
    assert updated.signature_profile == "basic"
    assert updated.version > document.version
    with pytest.raises(ValidationFailed):
        await coordinator.update_metadata(OWNER, doc_id, envelope_format="docx")

    view = await coordinator.get_document(OWNER, doc_id)
    s1_field = next(item for item in view.fields if item.signer_id == "s1")
    await coordinator.remove_field(OWNER, doc_id, s1_field.id)
    with pytest.raises(NotFound):
        await coordinator.remove_field(OWNER, doc_id, s1_field.id)
    # Removing a signer also drops the fields assigned to it.
    await coordinator.add_field(OWNER, doc_id, signer_id="s1", field_type="initial")
    await coordinator.remove_signer(OWNER, doc_id, "s1")

    view = await coordinator.get_document(OWNER, doc_id)
    assert [signer.id for signer in view.signers] == ["s0"]
    assert {item.signer_id for item in view.fields} == {"s0"}
    assert (await _actions(coordinator, doc_id))[-4:] == [
        AuditAction.DOCUMENT_UPDATED,
        AuditAction.FIELD_REMOVED,
        AuditAction.FIELD_ADDED,
        AuditAction.SIGNER_REMOVED,
    ]

    await coordinator.send(OWNER, doc_id)
    with pytest.raises(InvalidState) as exc_info:
        await coordinator.update_metadata(OWNER, doc_id, title="Too late")
    assert exc_info.value.reason == "document_not_draft"
