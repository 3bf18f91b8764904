from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from docsign.core.errors import CryptoConstraintFailure, InvalidState, ValidationFailed
from docsign.services.signatures.engine import SignatureEngine
from docsign.services.signatures.keys import register_key, unregister_key
from docsign.services.signatures.report import (
    CRYPTO_CONSTRAINTS_FAILURE_NO_POE,
    HASH_FAILURE,
    INDETERMINATE,
    REVOKED_NO_POE,
    TIMESTAMP_ORDER_FAILURE,
    TOTAL_FAILED,
    TOTAL_PASSED,
    TRY_LATER,
    ValidationPolicy,
)
from docsign.services.trust.revocation import RevocationChecker
from docsign.services.trust.service import TrustService
from docsign.services.trust.trust_list import parse_trust_list
from docsign.tests.utils.pdf import minimal_pdf
from docsign.tests.utils.pki import ROOT_CRL_URL, StaticRevocationSource, make_crl
from docsign.tests.utils.trust_lists import ProviderSpec, ServiceSpec, build_trust_list


CONTRACT = b"Master services agreement between Acme and Globex."
XML_CONTRACT = b"<contract><party>Acme</party>  <party>Globex</party></contract>"

DOCUMENTS = {"cms": CONTRACT, "xml": XML_CONTRACT, "pdf": minimal_pdf("engine")}
ALTERED = {"cms": CONTRACT + b" ", "xml": XML_CONTRACT.replace(b"Acme", b"Acne"), "pdf": minimal_pdf("altered")}


async def _sign(engine: SignatureEngine, document: bytes, **kwargs):
    kwargs.setdefault("document_id", "doc-1")
    kwargs.setdefault("signer_id", "s1")
    return await engine.sign(document, kwargs.pop("key_ref", "platform"), **kwargs)


@pytest.mark.asyncio
async def test_each_profile_level_validates(signature_engine, signing_key, fake_tsa) -> None:
    expected = {"B": ("basic", 0), "T": ("advanced", 1), "LT": ("advanced", 1), "LTA": ("advanced", 2)}
    for level, (signature_level, stamps) in expected.items():
        before = fake_tsa.granted
        record = await _sign(signature_engine, CONTRACT, profile_level=level, envelope_format="cms")
        assert fake_tsa.granted - before == stamps, level
        assert (record.timestamp_token is not None) == (level != "B")
        assert (record.validation_data is not None) == (level in ("LT", "LTA"))

        report = await signature_engine.verify(record, CONTRACT)
        assert report.indication == TOTAL_PASSED, (level, report.errors)
        assert report.signature_level == signature_level
        assert report.profile_level == level
        assert report.recognition["basis"] == "eidas_regulation"
        if level != "B":
            assert report.timestamp_time is not None
            assert report.timestamp_time >= record.signing_time


@pytest.mark.asyncio
@pytest.mark.parametrize("envelope_format", ["cms", "xml", "pdf"])
@pytest.mark.parametrize("level", ["B", "T", "LT", "LTA"])
async def test_every_format_and_level_round_trips(signature_engine, signing_key, envelope_format, level) -> None:
    document = DOCUMENTS[envelope_format]
    record = await _sign(signature_engine, document, profile_level=level, envelope_format=envelope_format)
    parsed = signature_engine.envelope_for(envelope_format).parse(record.signature_bytes)
    assert parsed.signer_certificate_der == signing_key.certificate_der
    assert len(parsed.signature_timestamps) == (0 if level == "B" else 1)
    assert bool(parsed.crls) == (level in ("LT", "LTA"))
    assert len(parsed.archive_timestamps) == (1 if level == "LTA" else 0)

    report = await signature_engine.verify(record, document)
    assert report.indication == TOTAL_PASSED, (envelope_format, level, report.errors)
    assert report.envelope_format == envelope_format
    assert report.profile_level == level
    if envelope_format == "pdf":
        # The original bytes stay the first revision.
        assert record.signature_bytes.startswith(document)


@pytest.mark.asyncio
async def test_xml_documents_are_compared_canonically(signature_engine, signing_key) -> None:
    record = await _sign(signature_engine, XML_CONTRACT, envelope_format="xml")
    reformatted = b'<?xml version="1.0"?>\n<contract><party>Acme</party>  <party>Globex</party></contract>'
    assert (await signature_engine.verify(record, reformatted)).passed
    assert not (await signature_engine.verify(record, XML_CONTRACT.replace(b"Globex", b"Initech"))).passed


@pytest.mark.asyncio
async def test_altered_document_fails_with_hash_failure(signature_engine, signing_key) -> None:
    for envelope_format, document in DOCUMENTS.items():
        record = await _sign(signature_engine, document, envelope_format=envelope_format)
        altered = ALTERED[envelope_format]
        report = await signature_engine.verify(record, altered)
        assert report.indication == TOTAL_FAILED, envelope_format
        assert report.sub_indication == HASH_FAILURE
        assert report.legal_effect == "no_legal_effect"


@pytest.mark.asyncio
async def test_corrupted_envelope_is_a_format_failure(signature_engine, signing_key) -> None:
    record = await _sign(signature_engine, CONTRACT)
    record.signature_bytes = b"garbage"
    report = await signature_engine.verify(record, CONTRACT)
    assert report.indication == TOTAL_FAILED
    assert report.sub_indication == "FORMAT_FAILURE"


@pytest.mark.asyncio
async def test_archive_timestamp_renewal_extends_chain(signature_engine, signing_key) -> None:
    record = await _sign(signature_engine, CONTRACT, profile_level="LTA")
    renewed = await signature_engine.renew_archival_timestamp(record)
    assert renewed.supersedes_id == record.id
    assert renewed.id != record.id

    parsed = signature_engine.envelope_for("cms").parse(renewed.signature_bytes)
    assert len(parsed.archive_timestamps) == 2
    assert parsed.unmatched_archive_timestamps == []
    assert (await signature_engine.verify(renewed, CONTRACT)).passed

    timestamped = await _sign(signature_engine, CONTRACT, profile_level="T")
    with pytest.raises(InvalidState) as exc_info:
        await signature_engine.renew_archival_timestamp(timestamped)
    assert exc_info.value.reason == "not_archival"


@pytest.mark.asyncio
async def test_signing_input_is_checked(signature_engine, signing_key) -> None:
    with pytest.raises(CryptoConstraintFailure):
        await _sign(signature_engine, CONTRACT, digest_algorithm="sha1")
    with pytest.raises(ValidationFailed) as exc_info:
        await _sign(signature_engine, CONTRACT, envelope_format="docx")
    assert exc_info.value.reason == "envelope_format_unsupported"
    with pytest.raises(ValidationFailed) as exc_info:
        await _sign(signature_engine, CONTRACT, envelope_format="pdf")
    assert exc_info.value.reason == "pdf_required"
    with pytest.raises(ValidationFailed):
        await _sign(signature_engine, CONTRACT, profile_level="XL")


@pytest.mark.asyncio
async def test_qualified_signer_reaches_qualified_level(pki, signature_engine, trust_service) -> None:
    provider = ProviderSpec(name="Test QTSP", services=[ServiceSpec(certificates=[pki.root.der])])
    trust_service.install(parse_trust_list(build_trust_list("DE", [provider])))
    register_key(pki.qualified_signer.handle("qualified"))
    try:
        record = await _sign(signature_engine, CONTRACT, key_ref="qualified", profile_level="T")
    finally:
        unregister_key("qualified")

    report = await signature_engine.verify(record, CONTRACT)
    assert report.passed
    assert report.qualified
    assert report.qtsp_status == "active"
    assert report.signature_level == "qualified"
    assert report.legal_effect == "equivalent_to_handwritten"
    assert report.to_dict()["qualification"]["qcStatements"] == ["QcCompliance", "QcType"]

    foreign = await signature_engine.verify(record, CONTRACT, policy=ValidationPolicy(consuming_territory="US"))
    assert foreign.recognition["basis"] == "no_mutual_recognition"
    assert foreign.legal_effect == "presumption_of_integrity"


@pytest.mark.asyncio
async def test_revoked_signer_fails_live_revocation(pki, signature_engine, timestamp_client, signing_key) -> None:
    record = await _sign(signature_engine, CONTRACT)
    crl = make_crl(pki.root, revoked=[(pki.signer.serial, datetime.now(timezone.utc) - timedelta(hours=1))])
    revoked_trust = TrustService(
        revocation=RevocationChecker(StaticRevocationSource({ROOT_CRL_URL: crl})), anchors=[pki.root.der]
    )
    engine = SignatureEngine(trust=revoked_trust, timestamps=timestamp_client)

    report = await engine.verify(record, CONTRACT)
    assert report.indication == TOTAL_FAILED
    assert report.sub_indication == REVOKED_NO_POE
    assert "certificate_revoked" in report.errors

    offline = await signature_engine.verify(record, CONTRACT, policy=ValidationPolicy(live_revocation=False))
    assert offline.passed
    assert "revocation_not_checked" in offline.warnings


@pytest.mark.asyncio
async def test_long_term_signature_survives_later_revocation(pki, signature_engine, timestamp_client, signing_key) -> None:
    record = await _sign(signature_engine, CONTRACT, profile_level="LT")
    crl = make_crl(pki.root, revoked=[(pki.signer.serial, datetime.now(timezone.utc))])
    revoked_trust = TrustService(
        revocation=RevocationChecker(StaticRevocationSource({ROOT_CRL_URL: crl})), anchors=[pki.root.der]
    )
    engine = SignatureEngine(trust=revoked_trust, timestamps=timestamp_client)

    # Validation data captured at signing time still shows the certificate as good.
    report = await engine.verify(record, CONTRACT)
    assert report.indication == TOTAL_PASSED, report.errors


def _engine_with_crl(pki, timestamp_client, crl: bytes) -> SignatureEngine:
    trust = TrustService(revocation=RevocationChecker(StaticRevocationSource({ROOT_CRL_URL: crl})), anchors=[pki.root.der])
    return SignatureEngine(trust=trust, timestamps=timestamp_client)


@pytest.mark.asyncio
async def test_revocation_after_validation_time_is_ignored(pki, signature_engine, timestamp_client, signing_key) -> None:
    record = await _sign(signature_engine, CONTRACT)
    revoked_at = record.signing_time + timedelta(hours=1)
    engine = _engine_with_crl(pki, timestamp_client, make_crl(pki.root, revoked=[(pki.signer.serial, revoked_at)]))

    before = await engine.verify(record, CONTRACT, at_time=revoked_at - timedelta(minutes=30))
    assert before.indication == TOTAL_PASSED, before.errors

    # Signed before the revocation, but a B-level signature cannot prove it.
    after = await engine.verify(record, CONTRACT, at_time=revoked_at + timedelta(minutes=30))
    assert after.indication == INDETERMINATE
    assert after.sub_indication == REVOKED_NO_POE


@pytest.mark.asyncio
async def test_revocation_from_stale_evidence_is_try_later(pki, signature_engine, timestamp_client, signing_key) -> None:
    record = await _sign(signature_engine, CONTRACT)
    now = datetime.now(timezone.utc)
    crl = make_crl(
        pki.root,
        revoked=[(pki.signer.serial, now - timedelta(hours=12))],
        last_update=now - timedelta(hours=6),
        next_update=now - timedelta(hours=1),
    )
    report = await _engine_with_crl(pki, timestamp_client, crl).verify(record, CONTRACT)
    assert report.indication == INDETERMINATE
    assert report.sub_indication == TRY_LATER
    assert "revocation_info_not_fresh" in report.errors


@pytest.mark.asyncio
async def test_timestamp_earlier_than_signing_time_is_an_order_failure(signature_engine, signing_key) -> None:
    # The claimed signing time sits after the moment the authority stamps it.
    claimed = datetime.now(timezone.utc) + timedelta(minutes=20)
    record = await _sign(signature_engine, CONTRACT, profile_level="T", signing_time=claimed)
    report = await signature_engine.verify(record, CONTRACT)
    assert report.indication == INDETERMINATE
    assert report.sub_indication == TIMESTAMP_ORDER_FAILURE
    assert "timestamp_before_signing_time" in report.errors


@pytest.mark.asyncio
async def test_existing_sha1_signature_is_indeterminate(signature_engine, signing_key) -> None:
    record = await _sign(signature_engine, CONTRACT)
    envelope = signature_engine.envelope_for("cms")
    record.signature_bytes = await envelope.sign(
        CONTRACT, signing_key, digest_algorithm="sha1", signing_time=record.signing_time
    )
    record.digest_algorithm = "sha1"

    report = await signature_engine.verify(record, CONTRACT)
    assert report.indication == INDETERMINATE
    assert report.sub_indication == CRYPTO_CONSTRAINTS_FAILURE_NO_POE
    assert "deprecated_digest_algorithm" in report.warnings
