from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from fastapi import APIRouter, Depends, File, Form, Query, Request, Response, UploadFile
from pydantic import BaseModel, Field

from docsign.apps.api.deps import Principal, get_coordinator, get_principal, request_context
from docsign.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from docsign.apps.api.response import success_response
from docsign.core.errors import ValidationFailed
from docsign.domain.models import AuditEntry, Document, DocumentField, SignatureRecord, Signer
from docsign.services.signatures.report import ValidationPolicy
from docsign.services.signing.coordinator import SigningCoordinator


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/documents", tags=["documents"], responses=DEFAULT_ERROR_RESPONSES)


class SignerCreate(BaseModel):
    email: str
    name: str
    order: int | None = Field(default=None, ge=0)
    subject_id: str | None = None
    signer_id: str | None = None


class FieldCreate(BaseModel):
    signer_id: str
    type: str
    page: int = 1
    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0
    required: bool = True
    label: str | None = None
    field_id: str | None = None


class DocumentPatch(BaseModel):
    title: str | None = None
    message: str | None = None
    ordered_signing: bool | None = None
    signature_profile: str | None = None
    envelope_format: str | None = None
    expires_at: datetime | None = None


class VoidRequest(BaseModel):
    reason: str | None = None


class ValidateRequest(BaseModel):
    at_time: datetime | None = None
    consuming_territory: str | None = None
    live_revocation: bool = True


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def signer_payload(signer: Signer) -> dict[str, Any]:
    return {
        "signerId": signer.id,
        "email": signer.email,
        "name": signer.name,
        "order": signer.order,
        "status": signer.status,
        "viewedAt": _iso(signer.viewed_at),
        "signedAt": _iso(signer.signed_at),
        "declinedAt": _iso(signer.declined_at),
        "signatureArtifactRef": signer.signature_artifact_ref,
    }


def field_payload(item: DocumentField) -> dict[str, Any]:
    return {
        "fieldId": item.id,
        "signerId": item.signer_id,
        "type": item.type,
        "page": item.page,
        "position": {"x": item.x, "y": item.y, "w": item.width, "h": item.height},
        "required": item.required,
        "label": item.label,
        "value": item.value,
        "signedAt": _iso(item.signed_at),
    }


def document_payload(
    document: Document, signers: list[Signer] | None = None, fields: list[DocumentField] | None = None
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "documentId": document.id,
        "title": document.title,
        "message": document.message,
        "ownerId": document.owner_id,
        "organizationId": document.organization_id,
        "status": document.status,
        "orderedSigning": document.ordered_signing,
        "signatureProfile": document.signature_profile,
        "envelopeFormat": document.envelope_format,
        "contentDigest": document.content_digest,
        "version": document.version,
        "createdAt": _iso(document.created_at),
        "updatedAt": _iso(document.updated_at),
        "sentAt": _iso(document.sent_at),
        "completedAt": _iso(document.completed_at),
        "voidedAt": _iso(document.voided_at),
        "expiresAt": _iso(document.expires_at),
    }
    if signers is not None:
        payload["signers"] = [signer_payload(signer) for signer in signers]
    if fields is not None:
        payload["fields"] = [field_payload(item) for item in fields]
    return payload


def audit_payload(entry: AuditEntry) -> dict[str, Any]:
    return {
        "sequence": entry.sequence,
        "action": entry.action,
        "actorId": entry.actor_id,
        "timestamp": _iso(entry.timestamp),
        "details": entry.details,
    }


def record_payload(record: SignatureRecord) -> dict[str, Any]:
    return {
        "recordId": record.id,
        "signerId": record.signer_id,
        "envelopeFormat": record.envelope_format,
        "profileLevel": record.profile_level,
        "digestAlgorithm": record.digest_algorithm,
        "signingTime": _iso(record.signing_time),
        "hasTimestamp": record.timestamp_token is not None,
        "hasValidationData": bool(record.validation_data),
        "contentHash": record.content_hash,
        "supersedesId": record.supersedes_id,
        "createdAt": _iso(record.created_at),
    }


@router.post("", status_code=201)
async def create_document(
    request: Request,
    file: UploadFile = File(...),
    title: str = Form(...),
    message: str | None = Form(default=None),
    organization_id: str | None = Form(default=None),
    ordered_signing: bool | None = Form(default=None),
    signature_profile: str | None = Form(default=None),
    envelope_format: str | None = Form(default=None),
    principal: Principal = Depends(get_principal),
    coordinator: SigningCoordinator = Depends(get_coordinator),
) -> dict:
    body = await file.read()
    document = await coordinator.create_document(
        principal.subject_id,
        title=title,
        file_bytes=body,
        content_type=file.content_type or "application/octet-stream",
        message=message,
        organization_id=organization_id,
        ordered_signing=ordered_signing,
        signature_profile=signature_profile,
        envelope_format=envelope_format,
        context=request_context(request),
    )
    return success_response(request=request, data=document_payload(document, [], []))


@router.get("")
async def list_documents(
    request: Request,
    principal: Principal = Depends(get_principal),
    coordinator: SigningCoordinator = Depends(get_coordinator),
) -> dict:
    documents = await coordinator.list_documents(principal.subject_id)
    return success_response(request=request, data=[document_payload(document) for document in documents])


@router.get("/{document_id}")
async def get_document(
    document_id: str,
    request: Request,
    principal: Principal = Depends(get_principal),
    coordinator: SigningCoordinator = Depends(get_coordinator),
) -> dict:
    view = await coordinator.get_document(principal.subject_id, document_id)
    return success_response(request=request, data=document_payload(view.document, view.signers, view.fields))


@router.patch("/{document_id}")
async def update_document(
    document_id: str,
    payload: DocumentPatch,
    request: Request,
    principal: Principal = Depends(get_principal),
    coordinator: SigningCoordinator = Depends(get_coordinator),
) -> dict:
    changes = payload.model_dump(exclude_unset=True)
    document = await coordinator.update_metadata(principal.subject_id, document_id, **changes)
    return success_response(request=request, data=document_payload(document))


@router.post("/{document_id}/signers", status_code=201)
async def add_signer(
    document_id: str,
    payload: SignerCreate,
    request: Request,
    principal: Principal = Depends(get_principal),
    coordinator: SigningCoordinator = Depends(get_coordinator),
) -> dict:
    signer = await coordinator.add_signer(
        principal.subject_id,
        document_id,
        email=payload.email,
        name=payload.name,
        order=payload.order,
        subject_id=payload.subject_id,
        signer_id=payload.signer_id,
    )
    return success_response(request=request, data=signer_payload(signer))


@router.delete("/{document_id}/signers/{signer_id}", status_code=204)
async def remove_signer(
    document_id: str,
    signer_id: str,
    principal: Principal = Depends(get_principal),
    coordinator: SigningCoordinator = Depends(get_coordinator),
) -> Response:
    await coordinator.remove_signer(principal.subject_id, document_id, signer_id)
    return Response(status_code=204)


@router.post("/{document_id}/fields", status_code=201)
async def add_field(
    document_id: str,
    payload: FieldCreate,
    request: Request,
    principal: Principal = Depends(get_principal),
    coordinator: SigningCoordinator = Depends(get_coordinator),
) -> dict:
    item = await coordinator.add_field(
        principal.subject_id,
        document_id,
        signer_id=payload.signer_id,
        field_type=payload.type,
        page=payload.page,
        x=payload.x,
        y=payload.y,
        width=payload.width,
        height=payload.height,
        required=payload.required,
        label=payload.label,
        field_id=payload.field_id,
    )
    return success_response(request=request, data=field_payload(item))


@router.delete("/{document_id}/fields/{field_id}", status_code=204)
async def remove_field(
    document_id: str,
    field_id: str,
    principal: Principal = Depends(get_principal),
    coordinator: SigningCoordinator = Depends(get_coordinator),
) -> Response:
    await coordinator.remove_field(principal.subject_id, document_id, field_id)
    return Response(status_code=204)


@router.post("/{document_id}/send")
async def send_document(
    document_id: str,
    request: Request,
    principal: Principal = Depends(get_principal),
    coordinator: SigningCoordinator = Depends(get_coordinator),
) -> dict:
    urls = await coordinator.send(principal.subject_id, document_id)
    return success_response(request=request, data={"documentId": document_id, "status": "out_for_signature", "signingUrls": urls})


@router.post("/{document_id}/void")
async def void_document(
    document_id: str,
    request: Request,
    payload: VoidRequest | None = None,
    principal: Principal = Depends(get_principal),
    coordinator: SigningCoordinator = Depends(get_coordinator),
) -> dict:
    document = await coordinator.void_document(principal.subject_id, document_id, payload.reason if payload else None)
    return success_response(request=request, data=document_payload(document))


@router.post("/{document_id}/signers/{signer_id}/resend")
async def resend_signing_link(
    document_id: str,
    signer_id: str,
    request: Request,
    principal: Principal = Depends(get_principal),
    coordinator: SigningCoordinator = Depends(get_coordinator),
) -> dict:
    url = await coordinator.resend_signing_link(principal.subject_id, document_id, signer_id)
    return success_response(request=request, data={"signerId": signer_id, "signingUrl": url})


@router.get("/{document_id}/audit")
async def read_audit(
    document_id: str,
    request: Request,
    from_sequence: int | None = Query(default=None, alias="from", ge=0),
    to_sequence: int | None = Query(default=None, alias="to", ge=0),
    principal: Principal = Depends(get_principal),
    coordinator: SigningCoordinator = Depends(get_coordinator),
) -> dict:
    if from_sequence is not None and to_sequence is not None and from_sequence > to_sequence:
        raise ValidationFailed("'from' must not exceed 'to'", reason="audit_range_invalid")
    entries = await coordinator.read_audit(
        principal.subject_id, document_id, from_sequence=from_sequence, to_sequence=to_sequence
    )
    return success_response(request=request, data=[audit_payload(entry) for entry in entries])


@router.get("/{document_id}/download")
async def download_url(
    document_id: str,
    request: Request,
    signer_id: str | None = Query(default=None),
    principal: Principal = Depends(get_principal),
    coordinator: SigningCoordinator = Depends(get_coordinator),
) -> dict:
    url = await coordinator.download_url(principal.subject_id, document_id, signer_id=signer_id)
    return success_response(request=request, data={"url": url})


@router.get("/{document_id}/signatures")
async def list_signatures(
    document_id: str,
    request: Request,
    principal: Principal = Depends(get_principal),
    coordinator: SigningCoordinator = Depends(get_coordinator),
) -> dict:
    records = await coordinator.list_signature_records(principal.subject_id, document_id)
    return success_response(request=request, data=[record_payload(record) for record in records])


@router.post("/{document_id}/validate")
async def validate_signatures(
    document_id: str,
    request: Request,
    payload: ValidateRequest | None = None,
    principal: Principal = Depends(get_principal),
    coordinator: SigningCoordinator = Depends(get_coordinator),
) -> dict:
    payload = payload or ValidateRequest()
    results = await coordinator.validate_document_signatures(
        principal.subject_id,
        document_id,
        at_time=payload.at_time,
        policy=ValidationPolicy(
            consuming_territory=payload.consuming_territory, live_revocation=payload.live_revocation
        ),
    )
    return success_response(request=request, data=results)


@router.post("/{document_id}/signatures/{record_id}/renew", status_code=201)
async def renew_archival_timestamp(
    document_id: str,
    record_id: str,
    request: Request,
    principal: Principal = Depends(get_principal),
    coordinator: SigningCoordinator = Depends(get_coordinator),
) -> dict:
    record = await coordinator.renew_archival_timestamp(principal.subject_id, document_id, record_id)
    return success_response(request=request, data=record_payload(record))
