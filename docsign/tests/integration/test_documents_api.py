from __future__ import annotations

from urllib.parse import urlparse

import pytest
from httpx import ASGITransport, AsyncClient

from docsign.apps.api.main import create_app
from docsign.core.config import get_settings
from docsign.services.signatures.report import TOTAL_PASSED
from docsign.tests.utils.workflow import OWNER, token_from_url


OWNER_HEADERS = {"X-Subject-Id": OWNER}


def _build_client() -> AsyncClient:
    get_settings.cache_clear()
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


def _relative(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.path}?{parsed.query}"


async def _upload(client: AsyncClient, **form) -> dict:
    form.setdefault("title", "Consulting agreement")
    response = await client.post(
        "/v1/documents",
        headers=OWNER_HEADERS,
        data=form,
        files={"file": ("agreement.txt", b"The consultant shall deliver the report.", "text/plain")},
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


@pytest.mark.asyncio
async def test_health_and_missing_subject() -> None:
    async with _build_client() as client:
        health = await client.get("/v1/health", headers={"X-Request-Id": "req-health"})
        anonymous = await client.get("/v1/documents")
    assert health.status_code == 200
    assert health.json() == {"data": {"status": "ok"}, "meta": {"request_id": "req-health", "api_version": "v1"}}
    assert health.headers["X-Request-Id"] == "req-health"

    assert anonymous.status_code == 401
    body = anonymous.json()
    assert body["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert body["meta"]["api_version"] == "v1"


@pytest.mark.asyncio
async def test_upload_prepare_send_and_sign(coordinator, notifications) -> None:
    async with _build_client() as client:
        created = await _upload(client, message="Please sign by Friday")
        doc_id = created["documentId"]
        assert created["status"] == "draft"
        assert created["signers"] == []
        assert len(created["contentDigest"]) == 64

        signer = await client.post(
            f"/v1/documents/{doc_id}/signers",
            headers=OWNER_HEADERS,
            json={"email": "Dana@Example.test", "name": "Dana", "signer_id": "dana"},
        )
        assert signer.status_code == 201
        assert signer.json()["data"]["status"] == "pending"

        field = await client.post(
            f"/v1/documents/{doc_id}/fields",
            headers=OWNER_HEADERS,
            json={"signer_id": "dana", "type": "signature", "x": 100, "y": 600, "width": 180, "height": 40},
        )
        assert field.status_code == 201
        assert field.json()["data"]["position"] == {"x": 100.0, "y": 600.0, "w": 180.0, "h": 40.0}

        sent = await client.post(f"/v1/documents/{doc_id}/send", headers=OWNER_HEADERS)
        assert sent.status_code == 200
        token = token_from_url(sent.json()["data"]["signingUrls"]["dana"])

        link = await client.get(f"/v1/sign/{doc_id}/dana/validate", params={"t": token})
        assert link.json()["data"] == {"valid": True, "reason": None}

        opened = await client.get(f"/v1/sign/{doc_id}/dana", params={"t": token})
        assert opened.status_code == 200
        assert opened.json()["data"]["signer"]["status"] == "viewed"

        signed = await client.post(f"/v1/sign/{doc_id}/dana", params={"t": token}, json={})
        assert signed.status_code == 200, signed.text
        assert signed.json()["data"]["completed"] is True

        detail = await client.get(f"/v1/documents/{doc_id}", headers=OWNER_HEADERS)
        records = await client.get(f"/v1/documents/{doc_id}/signatures", headers=OWNER_HEADERS)
        validated = await client.post(f"/v1/documents/{doc_id}/validate", headers=OWNER_HEADERS, json={})
        audit = await client.get(f"/v1/documents/{doc_id}/audit", headers=OWNER_HEADERS, params={"from": 0, "to": 3})

    document = detail.json()["data"]
    assert document["status"] == "completed"
    assert document["fields"][0]["value"] == document["signers"][0]["signatureArtifactRef"]
    assert records.json()["data"][0]["hasTimestamp"] is True
    assert validated.json()["data"][0]["report"]["indication"] == TOTAL_PASSED
    assert [entry["sequence"] for entry in audit.json()["data"]] == [0, 1, 2, 3]
    assert [item.event for item in notifications.sent].count("document_completed") == 2


@pytest.mark.asyncio
async def test_domain_errors_map_to_envelopes(coordinator) -> None:
    async with _build_client() as client:
        doc_id = (await _upload(client))["documentId"]

        stranger = await client.get(f"/v1/documents/{doc_id}", headers={"X-Subject-Id": "mallory"})
        missing = await client.get("/v1/documents/does-not-exist", headers=OWNER_HEADERS)
        unsendable = await client.post(f"/v1/documents/{doc_id}/send", headers=OWNER_HEADERS)
        bad_range = await client.get(f"/v1/documents/{doc_id}/audit", headers=OWNER_HEADERS, params={"from": 5, "to": 1})
        bad_link = await client.post(f"/v1/sign/{doc_id}/nobody", params={"t": "forged.token"})
        bad_body = await client.post(f"/v1/documents/{doc_id}/signers", headers=OWNER_HEADERS, json={"name": "No email"})

    assert stranger.status_code == 403
    assert stranger.json()["error"]["code"] == "UNAUTHORIZED"
    assert missing.status_code == 404
    assert unsendable.status_code == 422
    assert unsendable.json()["error"]["details"] == {"reason": "signers_missing"}
    assert bad_range.json()["error"]["details"]["reason"] == "audit_range_invalid"
    assert bad_link.status_code == 403
    assert bad_link.json()["error"]["details"]["reason"] == "link_integrity"
    assert bad_body.status_code == 422
    assert bad_body.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_void_then_list_documents(coordinator) -> None:
    async with _build_client() as client:
        first = (await _upload(client, title="First"))["documentId"]
        second = (await _upload(client, title="Second", ordered_signing="true"))["documentId"]

        voided = await client.post(f"/v1/documents/{first}/void", headers=OWNER_HEADERS, json={"reason": "duplicate"})
        again = await client.post(f"/v1/documents/{first}/void", headers=OWNER_HEADERS)
        listed = await client.get("/v1/documents", headers=OWNER_HEADERS)
        other = await client.get("/v1/documents", headers={"X-Subject-Id": "someone-else"})

    assert voided.json()["data"]["status"] == "voided"
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "INVALID_STATE"
    by_id = {item["documentId"]: item for item in listed.json()["data"]}
    assert set(by_id) == {first, second}
    assert by_id[second]["orderedSigning"] is True
    assert other.json()["data"] == []


@pytest.mark.asyncio
async def test_signed_object_urls_gate_downloads(coordinator) -> None:
    async with _build_client() as client:
        doc_id = (await _upload(client))["documentId"]
        minted = await client.get(f"/v1/documents/{doc_id}/download", headers=OWNER_HEADERS)
        url = minted.json()["data"]["url"]

        download = await client.get(_relative(url))
        tampered = await client.get(_relative(url).replace("sig=", "sig=0"))

    assert download.status_code == 200
    assert download.content == b"The consultant shall deliver the report."
    assert download.headers["content-disposition"].startswith("attachment;")
    assert tampered.status_code == 403
    assert tampered.json()["error"]["code"] == "URL_SIGNATURE_INVALID"
