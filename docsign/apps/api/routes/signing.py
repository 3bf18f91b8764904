from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from docsign.apps.api.deps import get_coordinator, request_context
from docsign.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from docsign.apps.api.response import success_response
from docsign.apps.api.routes.documents import document_payload, field_payload, signer_payload
from docsign.services.signing.coordinator import SignatureSubmission, SigningCoordinator, SubmissionResult


# Signing links authenticate with the HMAC token; no X-Subject-Id header here.
router = APIRouter(prefix="/sign", tags=["signing"], responses=DEFAULT_ERROR_RESPONSES)


class SubmitRequest(BaseModel):
    key_ref: str | None = None
    field_values: dict[str, str] = Field(default_factory=dict)
    digest_algorithm: str | None = None

    def to_submission(self) -> SignatureSubmission:
        return SignatureSubmission(
            key_ref=self.key_ref,
            field_values=dict(self.field_values),
            digest_algorithm=self.digest_algorithm,
        )


class DeclineRequest(BaseModel):
    reason: str | None = None


def _result_payload(result: SubmissionResult) -> dict:
    return {
        "recordId": result.record_id,
        "signerStatus": result.signer_status,
        "documentStatus": result.document_status,
        "completed": result.completed,
    }


@router.get("/{document_id}/{signer_id}/validate")
async def validate_link(
    document_id: str,
    signer_id: str,
    request: Request,
    t: str | None = Query(default=None),
    coordinator: SigningCoordinator = Depends(get_coordinator),
) -> dict:
    result = await coordinator.validate_signing_link(document_id, signer_id, t)
    return success_response(request=request, data=result.to_dict())


@router.get("/{document_id}/{signer_id}")
async def open_for_signing(
    document_id: str,
    signer_id: str,
    request: Request,
    t: str | None = Query(default=None),
    coordinator: SigningCoordinator = Depends(get_coordinator),
) -> dict:
    session = await coordinator.open_for_signing(document_id, signer_id, t, request_context(request))
    return success_response(
        request=request,
        data={
            "document": document_payload(session.document),
            "signer": signer_payload(session.signer),
            "fields": [field_payload(item) for item in session.fields],
            "documentUrl": session.document_url,
        },
    )


@router.post("/{document_id}/{signer_id}")
async def submit_signature(
    document_id: str,
    signer_id: str,
    request: Request,
    payload: SubmitRequest | None = None,
    t: str | None = Query(default=None),
    coordinator: SigningCoordinator = Depends(get_coordinator),
) -> dict:
    submission = payload.to_submission() if payload else None
    result = await coordinator.submit_signature(document_id, signer_id, t, submission, request_context(request))
    return success_response(request=request, data=_result_payload(result))


@router.post("/{document_id}/{signer_id}/decline")
async def decline_signature(
    document_id: str,
    signer_id: str,
    request: Request,
    payload: DeclineRequest | None = None,
    t: str | None = Query(default=None),
    coordinator: SigningCoordinator = Depends(get_coordinator),
) -> dict:
    document = await coordinator.decline_signature(
        document_id, signer_id, t, payload.reason if payload else None, request_context(request)
    )
    return success_response(request=request, data=document_payload(document))


@router.post("/{document_id}/{signer_id}/resign")
async def resign(
    document_id: str,
    signer_id: str,
    request: Request,
    payload: SubmitRequest | None = None,
    t: str | None = Query(default=None),
    coordinator: SigningCoordinator = Depends(get_coordinator),
) -> dict:
    submission = payload.to_submission() if payload else None
    result = await coordinator.resign(document_id, signer_id, t, submission, request_context(request))
    return success_response(request=request, data=_result_payload(result))
