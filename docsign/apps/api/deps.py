from __future__ import annotations

from fastapi import Header, HTTPException, Request, status
from pydantic import BaseModel

from docsign.services.audit import get_request_context
from docsign.services.signing.coordinator import SigningCoordinator, get_signing_coordinator


class Principal(BaseModel):
    # Authentication happens upstream; the gateway forwards the subject id.
    subject_id: str


def get_principal(x_subject_id: str | None = Header(default=None, alias="X-Subject-Id")) -> Principal:
    if not x_subject_id or not x_subject_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "X-Subject-Id header is required"},
        )
    return Principal(subject_id=x_subject_id.strip())


def get_coordinator() -> SigningCoordinator:
    return get_signing_coordinator()


def request_context(request: Request) -> dict[str, str | None]:
    return get_request_context(request)
